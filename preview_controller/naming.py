"""
Branch name → preview environment name derivation.

Preview names end up in namespace names, DNS labels and certificate names,
so they are capped at 20 characters. Longer branch names are shortened to a
10 character prefix plus the first 10 hex digits of a sha256 of the
sanitized name, which keeps the result stable across runs.
"""
import hashlib
import re

from .exceptions import ConfigurationError

MAX_NAME_LENGTH = 20
_PREFIX_LENGTH = 10
_HASH_LENGTH = 10

_REFS_HEADS = re.compile(r"^refs/heads/")
_INVALID_CHARS = re.compile(r"[^a-z0-9]")
_DNS_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def sanitize_branch_name(branch: str) -> str:
    """Lowercase and replace every character outside [a-z0-9] with '-'."""
    without_prefix = _REFS_HEADS.sub("", branch.strip())
    return _INVALID_CHARS.sub("-", without_prefix.lower())


def preview_name_from_branch(branch: str) -> str:
    sanitized = sanitize_branch_name(branch)
    if not sanitized:
        raise ConfigurationError(f"Cannot derive a preview name from branch '{branch}'")
    if len(sanitized) <= MAX_NAME_LENGTH:
        return sanitized
    digest = hashlib.sha256(sanitized.encode("utf-8")).hexdigest()
    return f"{sanitized[:_PREFIX_LENGTH]}{digest[:_HASH_LENGTH]}"


def legacy_preview_name_from_branch(branch: str) -> str:
    """
    Naming scheme used before names were hashed: the sanitized branch name,
    uncapped. Only used by the GC sweep to recognise older namespaces.
    """
    return sanitize_branch_name(branch)


def validate_preview_name(name: str) -> str:
    if len(name) > MAX_NAME_LENGTH or not _DNS_LABEL.match(name):
        raise ConfigurationError(
            f"Invalid preview name '{name}': must be a DNS label of at most {MAX_NAME_LENGTH} characters"
        )
    return name


def namespace_for(prefix: str, name: str) -> str:
    return f"{prefix}-{name}"


def name_from_namespace(prefix: str, namespace: str) -> str:
    """Inverse of namespace_for. Raises ConfigurationError if the prefix does not match."""
    head = f"{prefix}-"
    if not namespace.startswith(head) or len(namespace) == len(head):
        raise ConfigurationError(f"Namespace '{namespace}' does not start with '{head}'")
    return namespace[len(head):]

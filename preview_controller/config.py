"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.

Per-build options live in `BuildConfig` (see models.py) and are validated
once at the start of a deploy run.
"""
import os
from dataclasses import dataclass, field


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    # Clusters: one kubeconfig per cluster, never a shared default
    CORE_DEV_KUBECONFIG: str = os.environ.get("CORE_DEV_KUBECONFIG", "/workspace/gitpod/kubeconfigs/core-dev")
    HARVESTER_KUBECONFIG: str = os.environ.get("HARVESTER_KUBECONFIG", "/workspace/gitpod/kubeconfigs/harvester")
    VM_KUBECONFIG_DIR: str = os.environ.get("VM_KUBECONFIG_DIR", "/workspace/gitpod/kubeconfigs/vms")

    # Naming
    SHARED_NAMESPACE_PREFIX: str = os.environ.get("SHARED_NAMESPACE_PREFIX", "staging")
    VM_NAMESPACE_PREFIX: str = os.environ.get("VM_NAMESPACE_PREFIX", "preview")
    SHARED_BASE_DOMAIN: str = os.environ.get("SHARED_BASE_DOMAIN", "staging.gitpod-dev.com")
    VM_BASE_DOMAIN: str = os.environ.get("VM_BASE_DOMAIN", "preview.gitpod-dev.com")

    # Discovery label put on every preview namespace
    PREVIEW_LABEL_KEY: str = "preview.gitpod.io/environment"
    PREVIEW_LABEL_VALUE: str = "true"
    WORKLOAD_LABEL_SELECTOR: str = "component=workspace"
    NON_WORKLOAD_LABEL_SELECTOR: str = "component!=workspace"

    # Certificates
    CERT_NAMESPACE: str = os.environ.get("CERT_NAMESPACE", "certs")
    CERT_GROUP: str = "cert-manager.io"
    CERT_VERSION: str = "v1"
    CERT_PLURAL: str = "certificates"
    CERT_OWNER_ANNOTATION: str = "preview/owner"
    CERT_TERRAFORM_DIR: str = os.environ.get("CERT_TERRAFORM_DIR", ".werft/certs")
    PROXY_SECRET_NAME: str = os.environ.get("PROXY_SECRET_NAME", "proxy-config-certificates")

    # DNS
    DNS_ZONE: str = os.environ.get("DNS_ZONE", "gitpod-dev.com")
    DNS_MANAGED_ZONE: str = os.environ.get("DNS_MANAGED_ZONE", "gitpod-dev-com")
    DNS_PROJECT: str = os.environ.get("DNS_PROJECT", "gitpod-core-dev")
    DNS_TTL: int = int(os.environ.get("DNS_TTL", "300"))
    CORE_DEV_INGRESS_IP: str = os.environ.get("CORE_DEV_INGRESS_IP", "34.76.116.244")

    # Deployment
    INSTALLER_IMAGE_REPO: str = os.environ.get("INSTALLER_IMAGE_REPO", "eu.gcr.io/gitpod-core-dev/build/installer")
    HELM_CHART_PATH: str = os.environ.get("HELM_CHART_PATH", "chart")
    EE_LICENSE_PATH: str = os.environ.get("EE_LICENSE_PATH", "/mnt/secrets/gpsh-harvester/license")
    VM_SCRIPT_PATH: str = os.environ.get("VM_SCRIPT_PATH", "./dev/preview/install-vm.sh")
    PROVISION_TIMEOUT: int = int(os.environ.get("PROVISION_TIMEOUT", "600"))
    RESULT_PATH: str = os.environ.get("RESULT_PATH", "preview-result.json")

    # A VM runs its own cluster, so its daemon ports never collide
    VM_WS_DAEMON_PORT: int = 10000
    VM_REGISTRY_FACADE_PORT: int = 20000
    VM_REGISTRY_NODE_PORT: int = 31750
    LOADBALANCER_NAMESPACE: str = os.environ.get("LOADBALANCER_NAMESPACE", "loadbalancers")
    LOADBALANCER_LABEL: str = "gitpod.io/lbName"

    # GC
    TRUNK_BRANCH: str = os.environ.get("TRUNK_BRANCH", "main")
    STALE_BRANCH_DAYS: int = int(os.environ.get("STALE_BRANCH_DAYS", "2"))
    INACTIVE_HOURS: int = int(os.environ.get("INACTIVE_HOURS", "48"))
    GC_DRY_RUN: bool = _flag("GC_DRY_RUN")
    GC_MATCH_LEGACY_NAMES: bool = _flag("GC_MATCH_LEGACY_NAMES", "true")
    GIT_REMOTE: str = os.environ.get("GIT_REMOTE", "origin")

    # Events
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    # event log of a deleted environment stays readable this long
    EVENT_RETENTION_SECONDS: int = int(os.environ.get("EVENT_RETENTION_SECONDS", str(7 * 24 * 3600)))

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "10/minute")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: list = field(
        default_factory=lambda: os.environ.get("CORS_ORIGINS", "*").split(",")
    )


settings = Settings()

"""
Domain errors for the preview environment controller.

Every error raised on purpose inherits from PreviewError so a job entry
point can report all controller failures with a single except clause.
Kubernetes ApiException is not wrapped: it propagates as-is.
"""
from typing import Optional


class PreviewError(Exception):
    """Base class for all controller errors."""


class ConfigurationError(PreviewError, ValueError):
    """Invalid build configuration or name mapping. Raised before any cluster mutation."""


class CommandError(PreviewError):
    """An external command exited non-zero."""

    def __init__(self, command: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command failed (rc={returncode}): {' '.join(command)}: {stderr[:500]}"
        )


class WaitTimeoutError(PreviewError):
    """
    A bounded wait gave up.

    `last_observation` holds the last diagnostic snapshot the wait saw,
    so the failure can be inspected without re-running the job.
    """

    def __init__(self, description: str, attempts: int, last_observation: Optional[object] = None):
        self.description = description
        self.attempts = attempts
        self.last_observation = last_observation
        message = f"Timed out waiting for {description} after {attempts} attempts"
        if last_observation is not None:
            message += f" (last observed: {last_observation})"
        super().__init__(message)


class ApiReadinessTimeoutError(WaitTimeoutError):
    pass


class PodReadinessTimeoutError(WaitTimeoutError):
    pass


class CertificateTimeoutError(WaitTimeoutError):
    pass


class LoadBalancerTimeoutError(WaitTimeoutError):
    pass


class NamespaceDeletionTimeoutError(WaitTimeoutError):
    pass


class PortAllocationError(PreviewError):
    """No free port left in a requested range."""


class PodDeletionError(PreviewError):
    """A workload pod survived both the normal and the forced delete."""


class SweepError(PreviewError):
    """One or more deletions of a GC sweep failed (keyed by namespace). Siblings were not cancelled."""

    def __init__(self, failures: dict[str, str], report: Optional[object] = None):
        self.failures = failures
        self.report = report
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} preview environment deletion(s) failed: {names}")

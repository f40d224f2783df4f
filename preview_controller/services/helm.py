"""
Helm wrapper — legacy deployments of preview environments are Helm
releases; newer ones go through the installer (see installer.py).
"""
import json
import logging
from typing import Optional

from .kubernetes_service import ClusterHandle
from .shell import CommandRunner

STUCK_STATES = {"pending-install", "pending-upgrade", "pending-rollback", "failed"}


class HelmClient:
    def __init__(self, cluster: ClusterHandle, runner: CommandRunner, logger: logging.Logger):
        self.cluster = cluster
        self.runner = runner
        self.logger = logger

    def run(self, args: list[str], check: bool = True):
        return self.runner.run(self.cluster.helm(*args), check=check)

    def release_status(self, release: str, namespace: str) -> Optional[str]:
        """
        Get the status of a Helm release. Returns the status string
        (e.g. 'deployed', 'pending-install', 'failed') or None if not found.
        """
        r = self.run(["status", release, "-n", namespace, "-o", "json"], check=False)
        if r.returncode != 0:
            return None
        try:
            data = json.loads(r.stdout)
        except ValueError:
            return "unknown"
        return data.get("info", {}).get("status", "unknown")

    def release_exists(self, release: str, namespace: str) -> bool:
        return self.release_status(release, namespace) is not None

    def cleanup_stuck(self, release: str, namespace: str):
        """
        Force-remove a stuck Helm release (pending-install, pending-upgrade, failed)
        so a fresh install can proceed. Lingering release secrets are deleted directly.
        """
        self.logger.warning(f"Cleaning up stuck Helm release {release} in {namespace}")
        self.run(["uninstall", release, "-n", namespace, "--no-hooks"], check=False)
        api = self.cluster.core_api
        secrets = api.list_namespaced_secret(
            namespace=namespace,
            label_selector=f"owner=helm,name={release}",
        )
        for secret in secrets.items:
            api.delete_namespaced_secret(secret.metadata.name, namespace)
            self.logger.info(f"Deleted stuck Helm secret {secret.metadata.name}")

    def upgrade_install(self, release: str, chart: str, namespace: str, values: dict,
                        value_files: tuple = (), timeout: int = 600):
        """
        Install or upgrade a release. Does not use --wait: pod readiness is
        gated separately by the readiness gate.
        """
        status = self.release_status(release, namespace)
        if status in STUCK_STATES:
            self.logger.warning(f"Helm release {release} is stuck in '{status}' — cleaning up")
            self.cleanup_stuck(release, namespace)

        args = ["upgrade", "--install", release, chart, "-n", namespace, "--timeout", f"{timeout}s"]
        for path in value_files:
            args += ["-f", path]
        for k, v in values.items():
            args += ["--set", f"{k}={v}"]
        self.run(args)

    def uninstall(self, release: str, namespace: str):
        if self.release_exists(release, namespace):
            self.run(["uninstall", release, "-n", namespace], check=False)
            self.logger.info(f"Helm release {release} uninstalled")
        else:
            self.logger.info(f"Helm release {release} not found — skipping uninstall")

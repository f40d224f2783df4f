"""
Certificate coordination.

Issuance is an idempotent `terraform apply` which creates a cert-manager
Certificate in the fixed certificate namespace; we then poll its Ready
condition. Installation copies the resulting secret (by value) into the
destination namespace, which may live on another cluster. Installation
must wait for both the Ready certificate and the destination namespace.
"""
import asyncio
import json
import logging

import yaml
from kubernetes import client
from kubernetes.client import ApiException

from ..config import Settings
from ..exceptions import CertificateTimeoutError
from ..models import CertificateRequest
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner
from .waiting import wait_until

CERT_POLL_INTERVAL = 5
CERT_POLL_ATTEMPTS = 120


def is_ready(certificate: dict) -> bool:
    for condition in certificate.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def copy_secret(source: client.V1Secret, namespace: str, name: str) -> client.V1Secret:
    """A value copy of `source`, without any cluster-assigned metadata."""
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=source.metadata.labels,
        ),
        type=source.type,
        data=dict(source.data or {}),
    )


class CertificateCoordinator:
    def __init__(self, cluster: ClusterHandle, runner: CommandRunner,
                 logger: logging.Logger, settings: Settings,
                 poll_interval: float = CERT_POLL_INTERVAL,
                 poll_attempts: int = CERT_POLL_ATTEMPTS):
        # `cluster` holds the certificate namespace
        self.cluster = cluster
        self.runner = runner
        self.logger = logger
        self.settings = settings
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        # terraform init writes .terraform/ and the lock file into the shared working dir
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # issue
    # ------------------------------------------------------------------

    async def issue(self, request: CertificateRequest) -> dict:
        """Run the provisioning apply and wait until the Certificate is Ready."""
        tf_dir = self.settings.CERT_TERRAFORM_DIR
        env = {"KUBECONFIG": self.cluster.kubeconfig}
        self.logger.info(f"Issuing certificate {request.cert_namespace}/{request.cert_name} for {request.domain}")
        async with self._init_lock:
            await self.runner.run_async(["terraform", "init", "-input=false"], cwd=tf_dir, env=env)
        await self.runner.run_async(
            [
                "terraform", "apply", "-auto-approve", "-input=false",
                f"-state=state/{request.cert_name}.tfstate",
                "-var", f"namespace={request.cert_name}",
                "-var", f"certificate_namespace={request.cert_namespace}",
                "-var", f"dns_zone_domain={request.zone}",
                "-var", f"domain={request.domain}",
                "-var", f"public_ip={request.ip}",
                "-var", f"subdomains={json.dumps(request.subdomains)}",
            ],
            cwd=tf_dir,
            env=env,
        )

        certificate = await wait_until(
            lambda: self._poll(request),
            description=f"certificate {request.cert_namespace}/{request.cert_name}",
            interval=self.poll_interval,
            attempts=self.poll_attempts,
            logger=self.logger,
            error_cls=CertificateTimeoutError,
            diagnose=lambda: self._diagnose(request),
        )
        if request.owner:
            await self._annotate_owner(request)
        self.logger.info(f"Certificate {request.cert_name} is ready")
        return certificate

    async def _read(self, request: CertificateRequest):
        try:
            return await asyncio.to_thread(
                self.cluster.custom_api.get_namespaced_custom_object,
                self.settings.CERT_GROUP, self.settings.CERT_VERSION,
                request.cert_namespace, self.settings.CERT_PLURAL, request.cert_name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def _poll(self, request: CertificateRequest):
        certificate = await self._read(request)
        if certificate is None:
            return False, "certificate object not found"
        return is_ready(certificate), certificate.get("status", {})

    async def _diagnose(self, request: CertificateRequest) -> str:
        certificate = await self._read(request)
        status = yaml.safe_dump(certificate.get("status", {}) if certificate else {})
        self.logger.error(f"Certificate {request.cert_name} status:\n{status}")
        r = await self.runner.run_async(
            ["cmctl", "status", "certificate", request.cert_name, "-n", request.cert_namespace],
            env={"KUBECONFIG": self.cluster.kubeconfig},
            check=False,
        )
        self.logger.error(f"cmctl status certificate {request.cert_name}:\n{r.stdout}{r.stderr}")
        return f"{status}\n{r.stdout}"

    async def _annotate_owner(self, request: CertificateRequest):
        await asyncio.to_thread(
            self.cluster.custom_api.patch_namespaced_custom_object,
            self.settings.CERT_GROUP, self.settings.CERT_VERSION,
            request.cert_namespace, self.settings.CERT_PLURAL, request.cert_name,
            {"metadata": {"annotations": {self.settings.CERT_OWNER_ANNOTATION: request.owner}}},
        )

    # ------------------------------------------------------------------
    # install
    # ------------------------------------------------------------------

    async def install(self, cert_name: str, cert_namespace: str, destination: ClusterHandle,
                      destination_namespace: str, destination_secret_name: str):
        """Copy the issued secret into the destination namespace under a new name."""
        source = await asyncio.to_thread(
            self.cluster.core_api.read_namespaced_secret, cert_name, cert_namespace
        )
        body = copy_secret(source, destination_namespace, destination_secret_name)
        core = destination.core_api
        try:
            await asyncio.to_thread(core.create_namespaced_secret, destination_namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise
            await asyncio.to_thread(
                core.replace_namespaced_secret, destination_secret_name, destination_namespace, body
            )
        self.logger.info(
            f"Installed certificate {cert_namespace}/{cert_name} as "
            f"{destination_namespace}/{destination_secret_name} on {destination.name}"
        )

    async def issue_and_install(self, request: CertificateRequest, namespace_ready: asyncio.Event,
                                destination: ClusterHandle, destination_namespace: str,
                                destination_secret_name: str):
        """
        Issue, then install once `namespace_ready` fires. Issuance overlaps
        with namespace reconciliation; installation never does.
        """
        await self.issue(request)
        if not namespace_ready.is_set():
            self.logger.info(f"Certificate {request.cert_name} ready, waiting for namespace {destination_namespace}")
        await namespace_ready.wait()
        await self.install(request.cert_name, request.cert_namespace, destination,
                           destination_namespace, destination_secret_name)

    # ------------------------------------------------------------------
    # orphan cleanup
    # ------------------------------------------------------------------

    async def remove_orphan_certificates(self, live_names: set, dry_run: bool = False) -> list[str]:
        """Delete certificates whose owner annotation matches no live preview environment."""
        result = await asyncio.to_thread(
            self.cluster.custom_api.list_namespaced_custom_object,
            self.settings.CERT_GROUP, self.settings.CERT_VERSION,
            self.settings.CERT_NAMESPACE, self.settings.CERT_PLURAL,
        )
        orphans = []
        for item in result.get("items", []):
            metadata = item.get("metadata", {})
            owner = (metadata.get("annotations") or {}).get(self.settings.CERT_OWNER_ANNOTATION)
            if owner and owner not in live_names:
                orphans.append(metadata["name"])

        for name in orphans:
            if dry_run:
                self.logger.info(f"Certificate {name} would have been deleted")
                continue
            try:
                await asyncio.to_thread(
                    self.cluster.custom_api.delete_namespaced_custom_object,
                    self.settings.CERT_GROUP, self.settings.CERT_VERSION,
                    self.settings.CERT_NAMESPACE, self.settings.CERT_PLURAL, name,
                )
            except ApiException as e:
                if e.status != 404:
                    raise
            self.logger.info(f"Deleted orphan certificate {name}")
        return orphans

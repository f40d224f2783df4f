"""
Namespace reconciliation for preview environments.

  create   → idempotent, labels the namespace for discovery
  wipe     → uninstall (installer or Helm), remove workload pods,
             remove cluster-scoped objects owned by the namespace,
             delete the namespace and wait until it is gone
  recreate → wipe + create

The discovery label is the only index of preview namespaces: the GC sweep
finds environments exclusively through it.
"""
import asyncio
import logging

import urllib3
from kubernetes import client
from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from ..config import Settings
from ..exceptions import NamespaceDeletionTimeoutError, PodDeletionError
from .helm import HelmClient
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner
from .waiting import wait_until

INSTALLER_CONFIGMAP = "gitpod-app"
INSTALLER_MANIFEST_KEY = "app.yaml"
LEGACY_HELM_RELEASE = "gitpod"

POD_DELETE_TIMEOUT = 10
NAMESPACE_DELETE_INTERVAL = 5
NAMESPACE_DELETE_ATTEMPTS = 120

# Cluster-scoped kinds the deployment creates with a "<namespace>-ns-" prefix.
CLUSTER_SCOPED_KINDS = [
    ("rbac.authorization.k8s.io/v1", "ClusterRole"),
    ("rbac.authorization.k8s.io/v1", "ClusterRoleBinding"),
    ("policy/v1beta1", "PodSecurityPolicy"),
]


class NamespaceReconciler:
    def __init__(self, cluster: ClusterHandle, runner: CommandRunner,
                 logger: logging.Logger, settings: Settings,
                 delete_interval: float = NAMESPACE_DELETE_INTERVAL,
                 delete_attempts: int = NAMESPACE_DELETE_ATTEMPTS):
        self.cluster = cluster
        self.runner = runner
        self.logger = logger
        self.settings = settings
        self.helm = HelmClient(cluster, runner, logger)
        self.delete_interval = delete_interval
        self.delete_attempts = delete_attempts

    # ------------------------------------------------------------------
    # create / list
    # ------------------------------------------------------------------

    async def create_namespace(self, namespace: str) -> bool:
        """Create namespace idempotently. Returns True if created, False if it existed."""
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=namespace,
                labels={
                    "app.kubernetes.io/managed-by": "preview-controller",
                    self.settings.PREVIEW_LABEL_KEY: self.settings.PREVIEW_LABEL_VALUE,
                },
            )
        )
        try:
            await asyncio.to_thread(self.cluster.core_api.create_namespace, body)
        except ApiException as e:
            if e.status == 409:
                self.logger.info(f"Namespace {namespace} already exists")
                return False
            raise
        self.logger.info(f"Namespace {namespace} created on {self.cluster.name}")
        return True

    async def list_preview_namespaces(self) -> list[str]:
        selector = f"{self.settings.PREVIEW_LABEL_KEY}={self.settings.PREVIEW_LABEL_VALUE}"
        result = await asyncio.to_thread(
            self.cluster.core_api.list_namespace, label_selector=selector
        )
        return [ns.metadata.name for ns in result.items]

    # ------------------------------------------------------------------
    # wipe
    # ------------------------------------------------------------------

    async def wipe_namespace(self, namespace: str):
        self.logger.info(f"Wiping namespace {namespace} on {self.cluster.name}")
        await self.uninstall(namespace)
        await self.delete_workload_pods(namespace)
        await self.delete_cluster_scoped_objects(namespace)
        await self.delete_namespace(namespace)

    async def recreate_namespace(self, namespace: str):
        await self.wipe_namespace(namespace)
        await self.create_namespace(namespace)

    async def _installer_manifest(self, namespace: str):
        """The manifest applied by the installer, or None for legacy (Helm) deployments."""
        try:
            cm = await asyncio.to_thread(
                self.cluster.core_api.read_namespaced_config_map, INSTALLER_CONFIGMAP, namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return (cm.data or {}).get(INSTALLER_MANIFEST_KEY, "")

    async def uninstall(self, namespace: str):
        manifest = await self._installer_manifest(namespace)
        if manifest is None:
            self.logger.info(f"{namespace}: no installer config map, uninstalling Helm release")
            await asyncio.to_thread(self.helm.uninstall, LEGACY_HELM_RELEASE, namespace)
            return
        if not manifest:
            self.logger.warning(f"{namespace}: installer config map has no manifest, nothing to uninstall")
            return
        self.logger.info(f"{namespace}: uninstalling installer deployment")
        await self.runner.run_async(
            self.cluster.kubectl("delete", "--ignore-not-found=true", "--wait=false",
                                 "-n", namespace, "-f", "-"),
            input=manifest,
            silent=True,
        )

    async def delete_workload_pods(self, namespace: str):
        pods = await asyncio.to_thread(
            self.cluster.core_api.list_namespaced_pod,
            namespace=namespace,
            label_selector=self.settings.WORKLOAD_LABEL_SELECTOR,
        )
        names = [p.metadata.name for p in pods.items]
        if not names:
            return
        self.logger.info(f"{namespace}: deleting {len(names)} workload pods")
        for name in names:
            await self._delete_workload_pod(namespace, name)

    async def _delete_workload_pod(self, namespace: str, name: str):
        core = self.cluster.core_api
        try:
            # workload pods carry a finalizer that waits for external cleanup
            await asyncio.to_thread(
                core.patch_namespaced_pod, name, namespace, {"metadata": {"finalizers": None}}
            )
            await asyncio.to_thread(
                core.delete_namespaced_pod, name, namespace, _request_timeout=POD_DELETE_TIMEOUT
            )
            self.logger.info(f"Deleted workload pod {namespace}/{name}")
            return
        except ApiException as e:
            if e.status == 404:
                return
            self.logger.warning(f"Deleting pod {namespace}/{name} failed ({e.status}), forcing")
        except urllib3.exceptions.HTTPError as e:
            self.logger.warning(f"Deleting pod {namespace}/{name} timed out ({e}), forcing")

        try:
            await asyncio.to_thread(
                core.delete_namespaced_pod,
                name,
                namespace,
                grace_period_seconds=0,
                body=client.V1DeleteOptions(grace_period_seconds=0),
                _request_timeout=POD_DELETE_TIMEOUT,
            )
            self.logger.info(f"Force-deleted workload pod {namespace}/{name}")
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            if await self._pod_gone(namespace, name):
                self.logger.info(f"Pod {namespace}/{name} vanished during forced delete ({e})")
                return
            self.logger.error(f"Pod {namespace}/{name} survived forced delete: {e}")
            raise PodDeletionError(f"Pod {namespace}/{name} could not be deleted: {e}") from e

    async def _pod_gone(self, namespace: str, name: str) -> bool:
        try:
            await asyncio.to_thread(self.cluster.core_api.read_namespaced_pod, name, namespace)
        except ApiException as e:
            if e.status == 404:
                return True
            raise
        return False

    async def delete_cluster_scoped_objects(self, namespace: str):
        prefix = f"{namespace}-ns-"
        tasks = []
        for api_version, kind in CLUSTER_SCOPED_KINDS:
            resource, names = await asyncio.to_thread(self._owned_objects, api_version, kind, prefix)
            for name in names:
                tasks.append(asyncio.to_thread(self._delete_cluster_object, resource, kind, name))
        if tasks:
            self.logger.info(f"{namespace}: deleting {len(tasks)} cluster-scoped objects")
            await asyncio.gather(*tasks)

    def _owned_objects(self, api_version: str, kind: str, prefix: str):
        try:
            resource = self.cluster.dynamic_client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            self.logger.debug(f"{kind} ({api_version}) not served by {self.cluster.name}, skipping")
            return None, []
        items = resource.get().items
        return resource, [i.metadata.name for i in items if i.metadata.name.startswith(prefix)]

    def _delete_cluster_object(self, resource, kind: str, name: str):
        try:
            resource.delete(name=name)
        except NotFoundError:
            return
        self.logger.info(f"Deleted {kind} {name}")

    async def delete_namespace(self, namespace: str):
        core = self.cluster.core_api
        try:
            await asyncio.to_thread(core.delete_namespace, namespace)
            self.logger.info(f"Namespace {namespace} deletion initiated")
        except ApiException as e:
            if e.status != 404:
                raise
            self.logger.info(f"Namespace {namespace} already gone")
            return

        async def gone():
            try:
                ns = await asyncio.to_thread(core.read_namespace, namespace)
            except ApiException as e:
                if e.status == 404:
                    return True, "deleted"
                raise
            return False, ns.status.phase if ns.status else "unknown"

        await wait_until(
            gone,
            description=f"namespace {namespace} deletion",
            interval=self.delete_interval,
            attempts=self.delete_attempts,
            logger=self.logger,
            error_cls=NamespaceDeletionTimeoutError,
        )

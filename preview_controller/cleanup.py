"""
Deletion of a single preview environment, plus cleanup of the core-dev
load balancers that front dedicated-VM previews.

Flow: DNS records → namespace wipe (uninstall, workload pods,
cluster-scoped objects, namespace). For dedicated-VM previews the wiped
namespace is the one holding the VM on the host cluster.
"""
import asyncio
import logging
from typing import Callable, Optional

from kubernetes.client import ApiException

from .config import Settings
from .events import EventPublisher
from .models import Backing, PreviewEnvironment
from .services.dns import DNSBinder
from .services.kubernetes_service import ClusterHandle
from .services.namespaces import NamespaceReconciler


class EnvironmentDeleter:
    def __init__(self, settings: Settings, logger: logging.Logger,
                 core_dev: ClusterHandle, harvester: ClusterHandle,
                 dns: DNSBinder, events: EventPublisher,
                 namespaces_for: Callable[[ClusterHandle], NamespaceReconciler]):
        self.settings = settings
        self.logger = logger
        self.core_dev = core_dev
        self.harvester = harvester
        self.dns = dns
        self.events = events
        self.namespaces_for = namespaces_for

    def host_cluster(self, env: PreviewEnvironment) -> ClusterHandle:
        if env.backing == Backing.SHARED_CLUSTER:
            return self.core_dev
        if env.backing == Backing.DEDICATED_VM:
            return self.harvester
        raise ValueError(f"Unknown backing {env.backing}")

    async def delete(self, env: PreviewEnvironment):
        self.logger.info(f"Starting deletion of all resources related to {env.name} ({env.namespace})")
        self.events.publish(env.name, "DELETE_START", f"Deleting preview {env.name}", "Deleting")
        await self.dns.unbind(env.domain)
        await self.namespaces_for(self.host_cluster(env)).wipe_namespace(env.namespace)
        self.events.publish(env.name, "DELETE_COMPLETE", f"Preview {env.name} deleted", "Deleted")
        self.events.forget(env.name, self.settings.EVENT_RETENTION_SECONDS)
        self.logger.info(f"Preview {env.name} cleanup complete")

    async def remove_orphan_load_balancers(self, live_vm_names: set, dry_run: bool = False) -> list[str]:
        """Delete `lb-<name>` deployments/services on core-dev whose VM preview is gone."""
        ns = self.settings.LOADBALANCER_NAMESPACE
        label = self.settings.LOADBALANCER_LABEL
        deployments = await asyncio.to_thread(
            self.core_dev.apps_api.list_namespaced_deployment, ns, label_selector=label
        )
        orphans = []
        for d in deployments.items:
            lb_name = (d.metadata.labels or {}).get(label)
            if lb_name and lb_name not in live_vm_names:
                orphans.append(lb_name)

        for lb_name in orphans:
            if dry_run:
                self.logger.info(f"Load balancer lb-{lb_name} would have been deleted")
                continue
            self.logger.info(f"Deleting load balancer lb-{lb_name}")
            await self._ignore_missing(self.core_dev.apps_api.delete_namespaced_deployment, f"lb-{lb_name}", ns)
            await self._ignore_missing(self.core_dev.core_api.delete_namespaced_service, f"lb-{lb_name}", ns)
        return orphans

    @staticmethod
    async def _ignore_missing(fn, name: str, namespace: str, **kwargs) -> Optional[object]:
        try:
            return await asyncio.to_thread(fn, name, namespace, **kwargs)
        except ApiException as e:
            if e.status != 404:
                raise
            return None

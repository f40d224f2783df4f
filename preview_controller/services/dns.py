"""
DNS binding via Cloud DNS record sets (gcloud). Records are created or
updated in place, so binding twice is harmless.
"""
import asyncio
import logging

from kubernetes.client import ApiException

from ..config import Settings
from ..exceptions import LoadBalancerTimeoutError
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner
from .waiting import wait_until

LB_POLL_INTERVAL = 1
LB_POLL_ATTEMPTS = 60


def record_names(domain: str) -> list[str]:
    return [domain, f"*.{domain}", f"*.ws-dev.{domain}"]


def load_balancer_ip(service) -> str:
    ingress = (service.status.load_balancer.ingress or []) if service.status and service.status.load_balancer else []
    for entry in ingress:
        if entry.ip:
            return entry.ip
    return ""


class DNSBinder:
    def __init__(self, runner: CommandRunner, logger: logging.Logger, settings: Settings,
                 poll_interval: float = LB_POLL_INTERVAL, poll_attempts: int = LB_POLL_ATTEMPTS):
        self.runner = runner
        self.logger = logger
        self.settings = settings
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts

    def _gcloud(self, verb: str, name: str, *extra: str) -> list[str]:
        return [
            "gcloud", "dns", "record-sets", verb, f"{name}.",
            "--type=A",
            f"--zone={self.settings.DNS_MANAGED_ZONE}",
            f"--project={self.settings.DNS_PROJECT}",
            *extra,
        ]

    async def _exists(self, name: str) -> bool:
        r = await self.runner.run_async(self._gcloud("describe", name), check=False, silent=True)
        return r.returncode == 0

    async def _upsert(self, name: str, ip: str):
        verb = "update" if await self._exists(name) else "create"
        await self.runner.run_async(
            self._gcloud(verb, name, f"--ttl={self.settings.DNS_TTL}", f"--rrdatas={ip}")
        )
        self.logger.info(f"DNS {verb}: {name} -> {ip}")

    async def bind(self, domain: str, ip: str):
        for name in record_names(domain):
            await self._upsert(name, ip)

    async def unbind(self, domain: str):
        for name in record_names(domain):
            if await self._exists(name):
                await self.runner.run_async(self._gcloud("delete", name))
                self.logger.info(f"DNS record {name} deleted")

    async def wait_for_load_balancer_ip(self, cluster: ClusterHandle, namespace: str,
                                        service: str = "proxy") -> str:
        async def poll():
            try:
                svc = await asyncio.to_thread(cluster.core_api.read_namespaced_service, service, namespace)
            except ApiException as e:
                if e.status == 404:
                    return False, f"service {namespace}/{service} not found"
                raise
            ip = load_balancer_ip(svc)
            return bool(ip), ip or "no ingress IP yet"

        return await wait_until(
            poll,
            description=f"load balancer IP of {namespace}/{service}",
            interval=self.poll_interval,
            attempts=self.poll_attempts,
            logger=self.logger,
            error_cls=LoadBalancerTimeoutError,
        )

    async def bind_to_load_balancer(self, domain: str, cluster: ClusterHandle, namespace: str,
                                    service: str = "proxy") -> str:
        ip = await self.wait_for_load_balancer_ip(cluster, namespace, service)
        await self.bind(domain, ip)
        return ip

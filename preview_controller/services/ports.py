"""
Host/node port allocation for the node-local daemons of a preview.

Best effort, no lock: the reserved set is a fresh snapshot of every port
in use across all namespaces. A rare race with a concurrent build makes
the deployment fail loudly and the next build retries.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from kubernetes.client import ApiException

from ..exceptions import ConfigurationError, PortAllocationError
from ..models import DaemonsetPorts
from .kubernetes_service import ClusterHandle

HOST_PORT = "host"
NODE_PORT = "node"

RANDOM_DRAWS = 1000


@dataclass(frozen=True)
class PortRequest:
    """One port to allocate, owned by the daemon set / service `name`."""
    name: str
    kind: str
    low: int
    high: int  # inclusive

    def __contains__(self, port: int) -> bool:
        return self.low <= port <= self.high


WS_DAEMON = PortRequest("ws-daemon", HOST_PORT, 10000, 10999)
REGISTRY_FACADE = PortRequest("registry-facade", HOST_PORT, 20000, 20999)
REGISTRY_NODE_PORT = PortRequest("registry-facade", NODE_PORT, 30000, 30999)


def _check_disjoint(requests: list[PortRequest]):
    ordered = sorted(requests, key=lambda r: r.low)
    for r in ordered:
        if r.low > r.high:
            raise ConfigurationError(f"Empty port range {r.low}-{r.high} for {r.name}")
    for a, b in zip(ordered, ordered[1:]):
        if b.low <= a.high:
            raise ConfigurationError(
                f"Port ranges overlap: {a.name} {a.low}-{a.high} and {b.name} {b.low}-{b.high}"
            )


def host_ports_of(daemon_set) -> list[int]:
    ports = []
    for container in (daemon_set.spec.template.spec.containers or []):
        for p in (container.ports or []):
            if p.host_port:
                ports.append(p.host_port)
    return ports


def node_ports_of(service) -> list[int]:
    return [p.node_port for p in (service.spec.ports or []) if p.node_port]


def draw_port(request: PortRequest, reserved: set, rng: random.Random) -> int:
    """Uniform random draw within the range, falling back to a scan when the range is crowded."""
    for _ in range(RANDOM_DRAWS):
        port = rng.randint(request.low, request.high)
        if port not in reserved:
            return port
    for port in range(request.low, request.high + 1):
        if port not in reserved:
            return port
    raise PortAllocationError(
        f"No free {request.kind} port for {request.name} in {request.low}-{request.high}"
    )


class PortAllocator:
    def __init__(self, cluster: ClusterHandle, logger: logging.Logger,
                 rng: Optional[random.Random] = None):
        self.cluster = cluster
        self.logger = logger
        self.rng = rng or random.Random()

    async def allocate(self, namespace: str, requests: list[PortRequest]) -> dict[PortRequest, int]:
        """Return one free port per request."""
        _check_disjoint(requests)
        allocated: dict[PortRequest, int] = {}

        for request in requests:
            port = await self._previous_port(namespace, request)
            if port is not None:
                self.logger.info(f"Reusing {request.kind} port {port} for {namespace}/{request.name}")
                allocated[request] = port

        missing = [r for r in requests if r not in allocated]
        if not missing:
            return allocated

        reserved = await self.ports_in_use()
        reserved.update(allocated.values())
        for request in missing:
            port = draw_port(request, reserved, self.rng)
            reserved.add(port)
            allocated[request] = port
            self.logger.info(f"Allocated {request.kind} port {port} for {namespace}/{request.name}")
        return allocated

    async def allocate_daemonset_ports(self, namespace: str) -> DaemonsetPorts:
        ports = await self.allocate(namespace, [WS_DAEMON, REGISTRY_FACADE, REGISTRY_NODE_PORT])
        return DaemonsetPorts(
            ws_daemon=ports[WS_DAEMON],
            registry_facade=ports[REGISTRY_FACADE],
            registry_node_port=ports[REGISTRY_NODE_PORT],
        )

    async def ports_in_use(self) -> set:
        """Every host port and node port currently claimed, across all namespaces."""
        daemon_sets, services = await asyncio.gather(
            asyncio.to_thread(self.cluster.apps_api.list_daemon_set_for_all_namespaces),
            asyncio.to_thread(self.cluster.core_api.list_service_for_all_namespaces),
        )
        reserved = set()
        for ds in daemon_sets.items:
            reserved.update(host_ports_of(ds))
        for svc in services.items:
            reserved.update(node_ports_of(svc))
        return reserved

    async def _previous_port(self, namespace: str, request: PortRequest) -> Optional[int]:
        try:
            if request.kind == HOST_PORT:
                obj = await asyncio.to_thread(
                    self.cluster.apps_api.read_namespaced_daemon_set, request.name, namespace
                )
                candidates = host_ports_of(obj)
            elif request.kind == NODE_PORT:
                obj = await asyncio.to_thread(
                    self.cluster.core_api.read_namespaced_service, request.name, namespace
                )
                candidates = node_ports_of(obj)
            else:
                raise ConfigurationError(f"Unknown port kind {request.kind}")
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return next((p for p in candidates if p in request), None)

"""
Readiness gates: cluster API health and pod health of a namespace.

Workload (user workspace) pods are excluded from the pod gate: they have
their own lifecycle. A pod owned by a Job is healthy once Succeeded, any
other pod once Running.
"""
import asyncio
import logging

from ..config import Settings
from ..exceptions import ApiReadinessTimeoutError, PodReadinessTimeoutError
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner
from .waiting import wait_until

API_POLL_INTERVAL = 2
API_POLL_ATTEMPTS = 300
POD_POLL_INTERVAL = 3
POD_POLL_ATTEMPTS = 200


def owner_kind(pod) -> str:
    for ref in (pod.metadata.owner_references or []):
        return ref.kind
    return ""


def pod_is_healthy(pod) -> bool:
    phase = pod.status.phase if pod.status else None
    if owner_kind(pod) == "Job":
        return phase == "Succeeded"
    return phase == "Running"


def unhealthy_pods(pods: list) -> list[str]:
    """Names and phases of pods that block readiness. An empty listing is not ready."""
    if not pods:
        return ["no pods found"]
    return [
        f"{p.metadata.name}={p.status.phase if p.status else 'Unknown'}"
        for p in pods if not pod_is_healthy(p)
    ]


class ReadinessGate:
    def __init__(self, runner: CommandRunner, logger: logging.Logger, settings: Settings,
                 api_interval: float = API_POLL_INTERVAL, api_attempts: int = API_POLL_ATTEMPTS,
                 pod_interval: float = POD_POLL_INTERVAL, pod_attempts: int = POD_POLL_ATTEMPTS):
        self.runner = runner
        self.logger = logger
        self.settings = settings
        self.api_interval = api_interval
        self.api_attempts = api_attempts
        self.pod_interval = pod_interval
        self.pod_attempts = pod_attempts

    async def wait_for_api(self, cluster: ClusterHandle):
        async def poll():
            r = await self.runner.run_async(
                cluster.kubectl("get", "--raw=/readyz", "--request-timeout=5s"),
                check=False, silent=True,
            )
            body = (r.stdout or r.stderr).strip()
            return r.returncode == 0 and body == "ok", body[:200]

        await wait_until(
            poll,
            description=f"API server of {cluster.name}",
            interval=self.api_interval,
            attempts=self.api_attempts,
            logger=self.logger,
            error_cls=ApiReadinessTimeoutError,
        )
        self.logger.info(f"API server of {cluster.name} is ready")

    async def wait_for_pods(self, cluster: ClusterHandle, namespace: str):
        async def poll():
            pods = await asyncio.to_thread(
                cluster.core_api.list_namespaced_pod,
                namespace=namespace,
                label_selector=self.settings.NON_WORKLOAD_LABEL_SELECTOR,
            )
            blocking = unhealthy_pods(pods.items)
            return not blocking, ", ".join(blocking) or f"{len(pods.items)} pods ready"

        async def describe():
            r = await self.runner.run_async(
                cluster.kubectl("describe", "pods", "-n", namespace),
                check=False, silent=True,
            )
            self.logger.error(f"Pods in {namespace} did not become ready:\n{r.stdout}")
            return r.stdout

        await wait_until(
            poll,
            description=f"pods in {namespace} on {cluster.name}",
            interval=self.pod_interval,
            attempts=self.pod_attempts,
            logger=self.logger,
            error_cls=PodReadinessTimeoutError,
            diagnose=describe,
        )
        self.logger.info(f"All pods in {namespace} are ready")

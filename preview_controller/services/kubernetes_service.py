"""
Kubernetes service layer — one explicit handle per cluster.

Both clusters can hold a namespace of the same name, so nothing here
loads a process-wide default kubeconfig: every API client is bound to
the kubeconfig of the handle it was created from.
"""
import logging
from functools import cached_property

from kubernetes import client, config, dynamic

logger = logging.getLogger("kubernetes_service")


class ClusterHandle:
    """Credentials plus lazily-built API clients for one cluster."""

    def __init__(self, name: str, kubeconfig: str):
        self.name = name
        self.kubeconfig = kubeconfig

    def __repr__(self) -> str:
        return f"ClusterHandle({self.name!r}, {self.kubeconfig!r})"

    @cached_property
    def api_client(self) -> client.ApiClient:
        logger.debug(f"Loading kubeconfig {self.kubeconfig} for cluster {self.name}")
        return config.new_client_from_config(config_file=self.kubeconfig)

    @cached_property
    def core_api(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    @cached_property
    def apps_api(self) -> client.AppsV1Api:
        return client.AppsV1Api(self.api_client)

    @cached_property
    def custom_api(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self.api_client)

    @cached_property
    def dynamic_client(self) -> dynamic.DynamicClient:
        return dynamic.DynamicClient(self.api_client)

    def kubectl(self, *args: str) -> list[str]:
        """kubectl argv pinned to this cluster's kubeconfig."""
        return ["kubectl", "--kubeconfig", self.kubeconfig, *args]

    def helm(self, *args: str) -> list[str]:
        return ["helm", "--kubeconfig", self.kubeconfig, *args]


def core_dev_cluster(settings) -> ClusterHandle:
    return ClusterHandle("core-dev", settings.CORE_DEV_KUBECONFIG)


def harvester_cluster(settings) -> ClusterHandle:
    return ClusterHandle("harvester", settings.HARVESTER_KUBECONFIG)


def vm_cluster(settings, vm_name: str) -> ClusterHandle:
    """The k3s cluster running inside a dedicated preview VM."""
    return ClusterHandle(f"vm-{vm_name}", f"{settings.VM_KUBECONFIG_DIR}/{vm_name}")

"""
Dedicated VM provisioning. The VM lives in the preview's namespace on the
host (Harvester) cluster and runs its own k3s cluster, reached through a
kubeconfig the provisioning script writes out.

The kubeconfig is also kept as a Secret next to the VM, so jobs running
elsewhere (the GC sweep) can reach the VM's cluster. It goes away with the
namespace.
"""
import asyncio
import base64
import logging
import os

from kubernetes import client
from kubernetes.client import ApiException

from ..config import Settings
from ..exceptions import ConfigurationError
from ..models import PreviewEnvironment, ResourceClass
from .kubernetes_service import ClusterHandle, vm_cluster
from .shell import CommandRunner

KUBECONFIG_SECRET = "vm-kubeconfig"
KUBECONFIG_KEY = "kubeconfig"


class VMProvisioner:
    def __init__(self, host: ClusterHandle, runner: CommandRunner,
                 logger: logging.Logger, settings: Settings):
        self.host = host
        self.runner = runner
        self.logger = logger
        self.settings = settings

    async def ensure_vm(self, env: PreviewEnvironment, resources: ResourceClass) -> ClusterHandle:
        """Create the VM if missing (the script is idempotent) and return its cluster handle."""
        handle = vm_cluster(self.settings, env.vm_name)
        self.logger.info(
            f"[{env.name}] Ensuring VM {env.vm_name} ({resources.cpu} CPU, {resources.memory_gi}Gi)"
        )
        os.makedirs(os.path.dirname(handle.kubeconfig), exist_ok=True)
        await self.runner.run_async(
            [
                self.settings.VM_SCRIPT_PATH,
                "--name", env.vm_name,
                "--namespace", env.namespace,
                "--cpu", str(resources.cpu),
                "--memory", f"{resources.memory_gi}Gi",
                "--kubeconfig-out", handle.kubeconfig,
            ],
            env={"KUBECONFIG": self.host.kubeconfig},
        )
        await self.store_kubeconfig(env, handle)
        return handle

    async def store_kubeconfig(self, env: PreviewEnvironment, handle: ClusterHandle):
        with open(handle.kubeconfig, "rb") as f:
            data = base64.b64encode(f.read()).decode()
        secret = client.V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=client.V1ObjectMeta(name=KUBECONFIG_SECRET, namespace=env.namespace),
            type="Opaque",
            data={KUBECONFIG_KEY: data},
        )
        try:
            await asyncio.to_thread(self.host.core_api.create_namespaced_secret, env.namespace, secret)
        except ApiException as e:
            if e.status != 409:
                raise
            await asyncio.to_thread(
                self.host.core_api.replace_namespaced_secret, KUBECONFIG_SECRET, env.namespace, secret
            )
        self.logger.info(f"[{env.name}] Stored VM kubeconfig in {env.namespace}/{KUBECONFIG_SECRET}")

    async def restore_kubeconfig(self, env: PreviewEnvironment) -> ClusterHandle:
        """Handle to the VM's cluster, fetching the kubeconfig from the host cluster if not on disk."""
        handle = vm_cluster(self.settings, env.vm_name)
        if os.path.exists(handle.kubeconfig):
            return handle
        secret = await asyncio.to_thread(
            self.host.core_api.read_namespaced_secret, KUBECONFIG_SECRET, env.namespace
        )
        data = (secret.data or {}).get(KUBECONFIG_KEY)
        if not data:
            raise ConfigurationError(f"Secret {env.namespace}/{KUBECONFIG_SECRET} has no '{KUBECONFIG_KEY}'")
        os.makedirs(os.path.dirname(handle.kubeconfig), exist_ok=True)
        with open(handle.kubeconfig, "wb") as f:
            f.write(base64.b64decode(data))
        self.logger.info(f"Restored kubeconfig of VM {env.vm_name} to {handle.kubeconfig}")
        return handle

"""
Environment Provisioner — one provisioning run per build.

  prepare → (namespace reconcile ∥ certificate issue) → certificate install
          → deploy → pod readiness → DNS bind → done

The namespace branch and the certificate branch run concurrently. The
certificate branch installs its secret only after `namespace_ready` fires,
which happens the moment the namespace step completes.

Any failing phase aborts the run. Partially created resources stay where
they are: the next build of the branch reconciles them.
"""
import asyncio
import logging
from typing import Callable, Optional

from .config import Settings
from .events import EventPublisher, PROVISIONS
from .models import (
    Backing, BuildConfig, CertificateRequest, DaemonsetPorts, PreviewEnvironment,
    ProvisionPhase, ProvisionResult,
)
from .services.certificates import CertificateCoordinator
from .services.dns import DNSBinder
from .services.installer import Deployer
from .services.kubernetes_service import ClusterHandle, vm_cluster
from .services.namespaces import NamespaceReconciler
from .services.ports import PortAllocator
from .services.readiness import ReadinessGate
from .services.shell import CommandRunner
from .services.vm import VMProvisioner


class EnvironmentProvisioner:
    def __init__(
        self,
        settings: Settings,
        logger: logging.Logger,
        runner: CommandRunner,
        core_dev: ClusterHandle,
        harvester: ClusterHandle,
        events: EventPublisher,
        certificates: Optional[CertificateCoordinator] = None,
        dns: Optional[DNSBinder] = None,
        readiness: Optional[ReadinessGate] = None,
        vms: Optional[VMProvisioner] = None,
        namespaces_for: Optional[Callable[[ClusterHandle], NamespaceReconciler]] = None,
        deployer_for: Optional[Callable[[ClusterHandle], Deployer]] = None,
        ports_for: Optional[Callable[[ClusterHandle], PortAllocator]] = None,
    ):
        self.settings = settings
        self.logger = logger
        self.runner = runner
        self.core_dev = core_dev
        self.harvester = harvester
        self.events = events
        # certificates are issued and stored on core-dev for both backings
        self.certificates = certificates or CertificateCoordinator(core_dev, runner, logger, settings)
        self.dns = dns or DNSBinder(runner, logger, settings)
        self.readiness = readiness or ReadinessGate(runner, logger, settings)
        self.vms = vms or VMProvisioner(harvester, runner, logger, settings)
        self.namespaces_for = namespaces_for or (
            lambda cluster: NamespaceReconciler(cluster, runner, logger, settings)
        )
        self.deployer_for = deployer_for or (lambda cluster: Deployer(cluster, runner, logger, settings))
        self.ports_for = ports_for or (lambda cluster: PortAllocator(cluster, logger))

    def workload_cluster(self, env: PreviewEnvironment) -> ClusterHandle:
        if env.backing == Backing.SHARED_CLUSTER:
            return self.core_dev
        if env.backing == Backing.DEDICATED_VM:
            return vm_cluster(self.settings, env.vm_name)
        raise ValueError(f"Unknown backing {env.backing}")

    def _event(self, env: PreviewEnvironment, event_type: str, message: str, phase: ProvisionPhase):
        self.logger.info(f"[{env.name}] {message}")
        self.events.publish(env.name, event_type, message, phase.value)

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    async def allocate_ports(self, env: PreviewEnvironment) -> DaemonsetPorts:
        if env.backing == Backing.SHARED_CLUSTER:
            return await self.ports_for(self.core_dev).allocate_daemonset_ports(env.namespace)
        if env.backing == Backing.DEDICATED_VM:
            return DaemonsetPorts(
                ws_daemon=self.settings.VM_WS_DAEMON_PORT,
                registry_facade=self.settings.VM_REGISTRY_FACADE_PORT,
                registry_node_port=self.settings.VM_REGISTRY_NODE_PORT,
            )
        raise ValueError(f"Unknown backing {env.backing}")

    async def reconcile_namespace(self, env: PreviewEnvironment, build: BuildConfig):
        """Bring the environment's namespace(s) into existence, wiped first on clean-slate builds."""
        host = self.core_dev if env.backing == Backing.SHARED_CLUSTER else self.harvester
        namespaces = self.namespaces_for(host)
        if build.clean_slate:
            await namespaces.recreate_namespace(env.namespace)
        else:
            await namespaces.create_namespace(env.namespace)

        if env.backing == Backing.DEDICATED_VM:
            vm = await self.vms.ensure_vm(env, build.resource_class)
            await self.readiness.wait_for_api(vm)
            await self.namespaces_for(vm).create_namespace(env.deployment_namespace)

    def certificate_requests(self, env: PreviewEnvironment) -> list[tuple]:
        """(request, destination cluster, destination namespace, destination secret) per certificate."""
        main = CertificateRequest(
            cert_name=env.namespace,
            cert_namespace=self.settings.CERT_NAMESPACE,
            domain=env.domain,
            ip=self.settings.CORE_DEV_INGRESS_IP,
            zone=self.settings.DNS_ZONE,
            owner=env.name,
        )
        requests = [(main, self.workload_cluster(env), env.deployment_namespace,
                     self.settings.PROXY_SECRET_NAME)]
        if env.backing == Backing.DEDICATED_VM:
            ingress = CertificateRequest(
                cert_name=f"harvester-{env.name}",
                cert_namespace=self.settings.CERT_NAMESPACE,
                domain=env.domain,
                subdomains=["", "*.", "*.ws."],
                ip=self.settings.CORE_DEV_INGRESS_IP,
                zone=self.settings.DNS_ZONE,
                owner=env.name,
            )
            requests.append((ingress, self.harvester, env.namespace, f"harvester-{env.name}"))
        return requests

    async def namespace_and_certificates(self, env: PreviewEnvironment, build: BuildConfig):
        namespace_ready = asyncio.Event()

        async def namespace_branch():
            await self.reconcile_namespace(env, build)
            namespace_ready.set()
            self._event(env, "NAMESPACE_READY", f"Namespace {env.namespace} ready", ProvisionPhase.NAMESPACE)

        tasks = [asyncio.create_task(namespace_branch())]
        for request, destination, dest_ns, secret in self.certificate_requests(env):
            tasks.append(asyncio.create_task(
                self.certificates.issue_and_install(request, namespace_ready, destination, dest_ns, secret)
            ))
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # a failed namespace step would leave the install waiting forever
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def bind_dns(self, env: PreviewEnvironment) -> str:
        if env.backing == Backing.SHARED_CLUSTER:
            return await self.dns.bind_to_load_balancer(env.domain, self.core_dev, env.namespace)
        if env.backing == Backing.DEDICATED_VM:
            await self.dns.bind(env.domain, self.settings.CORE_DEV_INGRESS_IP)
            return self.settings.CORE_DEV_INGRESS_IP
        raise ValueError(f"Unknown backing {env.backing}")

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    async def provision(self, build: BuildConfig,
                        on_result: Optional[Callable[[ProvisionResult], None]] = None) -> ProvisionResult:
        """
        Run one provisioning. Configuration errors surface before anything
        touches a cluster. The result is published also when a phase fails.
        """
        env = PreviewEnvironment.from_build_config(build, self.settings)
        result = ProvisionResult(environment=env, url=f"{env.url}/workspaces")
        self.logger.info(
            f"[{env.name}] Provisioning {env.backing.value} environment in {env.namespace} "
            f"(clean_slate={build.clean_slate}, version={build.version})"
        )
        try:
            result.phase = ProvisionPhase.PREPARE
            result.ports = await self.allocate_ports(env)

            result.phase = ProvisionPhase.NAMESPACE
            self._event(env, "PROVISIONING_START", "Reconciling namespace and issuing certificates", result.phase)
            await self.namespace_and_certificates(env, build)
            self._event(env, "CERTIFICATE_READY", "Certificates installed", ProvisionPhase.CERTIFICATE)

            result.phase = ProvisionPhase.DEPLOY
            self._event(env, "DEPLOY", f"Deploying {build.version}", result.phase)
            workload = self.workload_cluster(env)
            await self.deployer_for(workload).deploy(
                env, build, result.ports, self.settings.PROXY_SECRET_NAME
            )

            result.phase = ProvisionPhase.READINESS
            self._event(env, "READINESS", "Waiting for pods", result.phase)
            await self.readiness.wait_for_pods(workload, env.deployment_namespace)

            result.phase = ProvisionPhase.DNS
            ip = await self.bind_dns(env)
            self._event(env, "DNS_READY", f"{env.domain} -> {ip}", result.phase)

            result.phase = ProvisionPhase.DONE
            result.succeeded = True
            self._event(env, "READY", f"Preview ready at {result.url}", result.phase)
            return result
        except Exception as e:
            result.error = str(e)[:500]
            self.logger.error(f"[{env.name}] Provisioning failed in phase {result.phase.value}: {e}")
            self.events.publish(env.name, "PROVISION_FAILED", result.error, result.phase.value)
            raise
        finally:
            PROVISIONS.labels(
                backing=env.backing.value,
                result="success" if result.succeeded else "failure",
            ).inc()
            self.logger.info(f"[{env.name}] result: url={result.url} phase={result.phase.value}")
            if on_result is not None:
                on_result(result)

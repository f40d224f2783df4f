"""Tests for EnvironmentProvisioner - phase ordering and failure reporting with fake services."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_cluster
from preview_controller.exceptions import CommandError, ConfigurationError
from preview_controller.models import BuildConfig, DaemonsetPorts, ProvisionPhase
from preview_controller.provisioner import EnvironmentProvisioner
from preview_controller.services.certificates import CertificateCoordinator

PORTS = DaemonsetPorts(ws_daemon=10001, registry_facade=20001, registry_node_port=30001)


class Harness:
    """Provisioner wired to fakes that record the order of side effects."""

    def __init__(self, settings, logger, runner, core_dev, harvester, events):
        self.order = []
        self.namespaces = {}
        self.deployer = MagicMock()
        self.deployer.deploy = AsyncMock(side_effect=lambda *a, **kw: self.order.append("deploy"))
        self.allocator = MagicMock()
        self.allocator.allocate_daemonset_ports = AsyncMock(return_value=PORTS)
        self.readiness = MagicMock()
        self.readiness.wait_for_pods = AsyncMock(side_effect=lambda *a: self.order.append("pods"))
        self.readiness.wait_for_api = AsyncMock(side_effect=lambda *a: self.order.append("api"))
        self.dns = MagicMock()
        self.dns.bind_to_load_balancer = AsyncMock(return_value="1.2.3.4")
        self.dns.bind = AsyncMock()
        self.vms = MagicMock()
        self.vms.ensure_vm = AsyncMock(side_effect=lambda env, res: self.order.append("vm") or make_cluster("vm-feature-x"))

        self.certificates = CertificateCoordinator(core_dev, runner, logger, settings)
        self.certificates.issue = AsyncMock(side_effect=lambda req: self.order.append(f"issue:{req.cert_name}"))
        self.certificates.install = AsyncMock(side_effect=lambda name, *a: self.order.append(f"install:{name}"))

        self.provisioner = EnvironmentProvisioner(
            settings, logger, runner, core_dev, harvester, events,
            certificates=self.certificates,
            dns=self.dns,
            readiness=self.readiness,
            vms=self.vms,
            namespaces_for=self.namespaces_for,
            deployer_for=lambda cluster: self.deployer,
            ports_for=lambda cluster: self.allocator,
        )

    def namespaces_for(self, cluster):
        if cluster.name not in self.namespaces:
            reconciler = MagicMock()

            async def recreate(ns):
                self.order.append(f"wipe:{ns}")
                await asyncio.sleep(0.01)
                self.order.append(f"namespace:{ns}")

            async def create(ns):
                self.order.append(f"namespace:{ns}")

            reconciler.recreate_namespace = AsyncMock(side_effect=recreate)
            reconciler.create_namespace = AsyncMock(side_effect=create)
            self.namespaces[cluster.name] = reconciler
        return self.namespaces[cluster.name]


@pytest.fixture
def harness(settings, logger, runner, core_dev, harvester, events):
    return Harness(settings, logger, runner, core_dev, harvester, events)


# ============================================
# Shared cluster
# ============================================


@pytest.mark.asyncio
async def test_shared_provision_phase_order(harness, events):
    results = []
    build = BuildConfig(branch="feature-x", version="v1")

    result = await harness.provisioner.provision(build, on_result=results.append)

    assert harness.order == [
        "wipe:staging-feature-x",
        "issue:staging-feature-x",
        "namespace:staging-feature-x",
        "install:staging-feature-x",
        "deploy",
        "pods",
    ]
    assert result.succeeded
    assert result.phase == ProvisionPhase.DONE
    assert result.url == "https://feature-x.staging.gitpod-dev.com/workspaces"
    assert result.ports == PORTS
    assert results == [result]
    harness.dns.bind_to_load_balancer.assert_awaited_once()


@pytest.mark.asyncio
async def test_existing_namespace_kept_without_clean_slate(harness):
    build = BuildConfig(branch="feature-x", version="v1", clean_slate=False)

    await harness.provisioner.provision(build)

    reconciler = harness.namespaces["core-dev"]
    reconciler.create_namespace.assert_awaited_once_with("staging-feature-x")
    reconciler.recreate_namespace.assert_not_called()


@pytest.mark.asyncio
async def test_failed_phase_still_publishes_result(harness, events):
    harness.deployer.deploy.side_effect = CommandError(["kubectl", "apply"], 1, stderr="boom")
    results = []
    build = BuildConfig(branch="feature-x", version="v1")

    with pytest.raises(CommandError):
        await harness.provisioner.provision(build, on_result=results.append)

    [result] = results
    assert not result.succeeded
    assert result.phase == ProvisionPhase.DEPLOY
    assert "boom" in result.error
    assert result.url == "https://feature-x.staging.gitpod-dev.com/workspaces"
    assert "PROVISION_FAILED" in [c.args[1] for c in events.publish.call_args_list]
    harness.readiness.wait_for_pods.assert_not_called()


@pytest.mark.asyncio
async def test_namespace_failure_cancels_certificate_install(harness):
    async def broken(ns):
        raise RuntimeError("namespace stuck")

    harness.namespaces_for(harness.provisioner.core_dev).recreate_namespace.side_effect = broken
    build = BuildConfig(branch="feature-x", version="v1")

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(harness.provisioner.provision(build), timeout=2)

    harness.certificates.install.assert_not_called()
    harness.deployer.deploy.assert_not_called()


@pytest.mark.asyncio
async def test_cancelled_certificate_task_finishes_before_failure_surfaces(harness):
    async def slow_issue(request):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            harness.order.append("issue-cancelled")
            raise

    async def broken(ns):
        await asyncio.sleep(0)
        raise RuntimeError("namespace stuck")

    harness.certificates.issue.side_effect = slow_issue
    harness.namespaces_for(harness.provisioner.core_dev).recreate_namespace.side_effect = broken
    build = BuildConfig(branch="feature-x", version="v1")

    with pytest.raises(RuntimeError, match="namespace stuck"):
        await asyncio.wait_for(harness.provisioner.provision(build), timeout=2)

    assert "issue-cancelled" in harness.order


@pytest.mark.asyncio
async def test_invalid_name_fails_before_any_mutation(harness):
    build = BuildConfig(branch="___", version="v1")

    with pytest.raises(ConfigurationError):
        await harness.provisioner.provision(build)

    assert harness.order == []
    harness.allocator.allocate_daemonset_ports.assert_not_called()


# ============================================
# Dedicated VM
# ============================================


@pytest.mark.asyncio
async def test_vm_provision_waits_for_vm_api_and_binds_ingress_ip(harness, settings):
    build = BuildConfig(branch="feature-x", version="v1", with_vm=True)

    result = await harness.provisioner.provision(build)

    order = harness.order
    assert order.index("vm") < order.index("api") < order.index("namespace:default")
    assert order.index("namespace:default") < order.index("install:preview-feature-x")
    assert "issue:harvester-feature-x" in order
    assert order.index("namespace:default") < order.index("install:harvester-feature-x")
    assert order[-2:] == ["deploy", "pods"]
    harness.dns.bind.assert_awaited_once_with("feature-x.preview.gitpod-dev.com", settings.CORE_DEV_INGRESS_IP)
    harness.allocator.allocate_daemonset_ports.assert_not_called()
    assert result.ports.registry_node_port == settings.VM_REGISTRY_NODE_PORT
    assert result.environment.deployment_namespace == "default"

"""Tests for cluster handles and dedicated VM provisioning."""

import base64
import dataclasses
import os
from types import SimpleNamespace

import pytest

from conftest import api_error, completed
from preview_controller.exceptions import ConfigurationError
from preview_controller.models import Backing, PreviewEnvironment, ResourceClass
from preview_controller.services.kubernetes_service import ClusterHandle, vm_cluster
from preview_controller.services.vm import KUBECONFIG_KEY, KUBECONFIG_SECRET, VMProvisioner

KUBECONFIG = b"apiVersion: v1\nkind: Config\nclusters: []\n"


@pytest.fixture
def vm_settings(settings, tmp_path):
    return dataclasses.replace(settings, VM_KUBECONFIG_DIR=str(tmp_path / "vms"))


@pytest.fixture
def env(vm_settings):
    return PreviewEnvironment.create("foo", Backing.DEDICATED_VM, vm_settings)


def test_kubectl_is_pinned_to_kubeconfig():
    cluster = ClusterHandle("core-dev", "/kc/core-dev")

    assert cluster.kubectl("get", "pods") == ["kubectl", "--kubeconfig", "/kc/core-dev", "get", "pods"]
    assert cluster.helm("list") == ["helm", "--kubeconfig", "/kc/core-dev", "list"]


def test_vm_cluster_uses_per_vm_kubeconfig(settings):
    cluster = vm_cluster(settings, "foo")

    assert cluster.name == "vm-foo"
    assert cluster.kubeconfig == f"{settings.VM_KUBECONFIG_DIR}/foo"


# ============================================
# Ensure VM
# ============================================


@pytest.mark.asyncio
async def test_ensure_vm_runs_script_and_stores_kubeconfig(env, harvester, runner, logger, vm_settings):
    async def script(argv, **kwargs):
        out = argv[argv.index("--kubeconfig-out") + 1]
        os.makedirs(os.path.dirname(out), exist_ok=True)
        with open(out, "wb") as f:
            f.write(KUBECONFIG)
        return completed()

    runner.run_async.side_effect = script

    handle = await VMProvisioner(harvester, runner, logger, vm_settings).ensure_vm(
        env, ResourceClass(cpu=8, memory_gi=16)
    )

    argv = runner.run_async.call_args.args[0]
    assert argv[0] == vm_settings.VM_SCRIPT_PATH
    assert argv[argv.index("--namespace") + 1] == "preview-foo"
    assert argv[argv.index("--cpu") + 1] == "8"
    assert argv[argv.index("--memory") + 1] == "16Gi"
    assert argv[argv.index("--kubeconfig-out") + 1] == handle.kubeconfig
    assert runner.run_async.call_args.kwargs["env"] == {"KUBECONFIG": harvester.kubeconfig}

    namespace, secret = harvester.core_api.create_namespaced_secret.call_args.args
    assert namespace == "preview-foo"
    assert secret.metadata.name == KUBECONFIG_SECRET
    assert base64.b64decode(secret.data[KUBECONFIG_KEY]) == KUBECONFIG


@pytest.mark.asyncio
async def test_stored_kubeconfig_is_replaced_on_rerun(env, harvester, runner, logger, vm_settings):
    handle = vm_cluster(vm_settings, "foo")
    os.makedirs(os.path.dirname(handle.kubeconfig))
    with open(handle.kubeconfig, "wb") as f:
        f.write(KUBECONFIG)
    harvester.core_api.create_namespaced_secret.side_effect = api_error(409)

    await VMProvisioner(harvester, runner, logger, vm_settings).store_kubeconfig(env, handle)

    name, namespace, _ = harvester.core_api.replace_namespaced_secret.call_args.args
    assert (name, namespace) == (KUBECONFIG_SECRET, "preview-foo")


# ============================================
# Restore kubeconfig
# ============================================


@pytest.mark.asyncio
async def test_restore_fetches_kubeconfig_from_host(env, harvester, runner, logger, vm_settings):
    harvester.core_api.read_namespaced_secret.return_value = SimpleNamespace(
        data={KUBECONFIG_KEY: base64.b64encode(KUBECONFIG).decode()}
    )

    handle = await VMProvisioner(harvester, runner, logger, vm_settings).restore_kubeconfig(env)

    assert handle.name == "vm-foo"
    with open(handle.kubeconfig, "rb") as f:
        assert f.read() == KUBECONFIG
    harvester.core_api.read_namespaced_secret.assert_called_once_with(KUBECONFIG_SECRET, "preview-foo")


@pytest.mark.asyncio
async def test_restore_uses_existing_file(env, harvester, runner, logger, vm_settings):
    handle = vm_cluster(vm_settings, "foo")
    os.makedirs(os.path.dirname(handle.kubeconfig))
    with open(handle.kubeconfig, "wb") as f:
        f.write(KUBECONFIG)

    await VMProvisioner(harvester, runner, logger, vm_settings).restore_kubeconfig(env)

    harvester.core_api.read_namespaced_secret.assert_not_called()


@pytest.mark.asyncio
async def test_restore_without_key_fails(env, harvester, runner, logger, vm_settings):
    harvester.core_api.read_namespaced_secret.return_value = SimpleNamespace(data={})

    with pytest.raises(ConfigurationError):
        await VMProvisioner(harvester, runner, logger, vm_settings).restore_kubeconfig(env)

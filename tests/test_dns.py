"""Tests for DNSBinder."""

from types import SimpleNamespace

import pytest

from conftest import api_error, completed
from preview_controller.exceptions import LoadBalancerTimeoutError
from preview_controller.services.dns import DNSBinder, load_balancer_ip, record_names


def svc(ip=None):
    ingress = [SimpleNamespace(ip=ip)] if ip else None
    return SimpleNamespace(status=SimpleNamespace(load_balancer=SimpleNamespace(ingress=ingress)))


@pytest.fixture
def binder(runner, logger, settings):
    return DNSBinder(runner, logger, settings, poll_interval=0, poll_attempts=3)


def test_record_names_cover_wildcards():
    assert record_names("foo.staging.gitpod-dev.com") == [
        "foo.staging.gitpod-dev.com",
        "*.foo.staging.gitpod-dev.com",
        "*.ws-dev.foo.staging.gitpod-dev.com",
    ]


def test_load_balancer_ip():
    assert load_balancer_ip(svc("10.0.0.1")) == "10.0.0.1"
    assert load_balancer_ip(svc()) == ""


# ============================================
# Bind / Unbind
# ============================================


@pytest.mark.asyncio
async def test_bind_creates_missing_and_updates_existing(binder, runner):
    def gcloud(argv, **kwargs):
        verb, name = argv[3], argv[4]
        if verb == "describe":
            return completed(returncode=0 if name.startswith("*.") else 1)
        return completed()

    runner.run_async.side_effect = gcloud

    await binder.bind("foo.staging.gitpod-dev.com", "1.2.3.4")

    writes = [c.args[0] for c in runner.run_async.call_args_list if c.args[0][3] != "describe"]
    assert [(w[3], w[4]) for w in writes] == [
        ("create", "foo.staging.gitpod-dev.com."),
        ("update", "*.foo.staging.gitpod-dev.com."),
        ("update", "*.ws-dev.foo.staging.gitpod-dev.com."),
    ]
    assert all("--rrdatas=1.2.3.4" in w for w in writes)


@pytest.mark.asyncio
async def test_unbind_deletes_only_existing_records(binder, runner):
    runner.run_async.side_effect = lambda argv, **kw: completed(
        returncode=0 if argv[3] == "delete" or argv[4].startswith("foo") else 1
    )

    await binder.unbind("foo.staging.gitpod-dev.com")

    deletes = [c.args[0][4] for c in runner.run_async.call_args_list if c.args[0][3] == "delete"]
    assert deletes == ["foo.staging.gitpod-dev.com."]


# ============================================
# Load balancer
# ============================================


@pytest.mark.asyncio
async def test_bind_to_load_balancer_waits_for_ip(binder, core_dev, runner):
    core_dev.core_api.read_namespaced_service.side_effect = [api_error(404), svc(), svc("5.6.7.8")]
    runner.run_async.return_value = completed(returncode=1)

    ip = await binder.bind_to_load_balancer("foo.staging.gitpod-dev.com", core_dev, "staging-foo")

    assert ip == "5.6.7.8"
    assert core_dev.core_api.read_namespaced_service.call_args.args == ("proxy", "staging-foo")


@pytest.mark.asyncio
async def test_load_balancer_timeout(binder, core_dev):
    core_dev.core_api.read_namespaced_service.return_value = svc()

    with pytest.raises(LoadBalancerTimeoutError):
        await binder.wait_for_load_balancer_ip(core_dev, "staging-foo")

"""Tests for host/node port allocation."""

import random
from types import SimpleNamespace

import pytest

from conftest import api_error, listing
from preview_controller.exceptions import ConfigurationError, PortAllocationError
from preview_controller.services.ports import (
    HOST_PORT,
    NODE_PORT,
    PortAllocator,
    PortRequest,
    draw_port,
)


def daemon_set(*host_ports):
    container = SimpleNamespace(ports=[SimpleNamespace(host_port=p) for p in host_ports])
    return SimpleNamespace(spec=SimpleNamespace(template=SimpleNamespace(spec=SimpleNamespace(containers=[container]))))


def service(*node_ports):
    return SimpleNamespace(spec=SimpleNamespace(ports=[SimpleNamespace(node_port=p) for p in node_ports]))


@pytest.fixture
def allocator(core_dev, logger):
    core_dev.apps_api.read_namespaced_daemon_set.side_effect = api_error(404)
    core_dev.core_api.read_namespaced_service.side_effect = api_error(404)
    core_dev.apps_api.list_daemon_set_for_all_namespaces.return_value = listing([])
    core_dev.core_api.list_service_for_all_namespaces.return_value = listing([])
    return PortAllocator(core_dev, logger, rng=random.Random(7))


# ============================================
# Drawing
# ============================================


def test_draw_port_avoids_reserved():
    request = PortRequest("x", HOST_PORT, 100, 104)
    reserved = {100, 101, 103, 104}

    assert draw_port(request, reserved, random.Random(1)) == 102


def test_draw_port_exhausted_range_raises():
    request = PortRequest("x", HOST_PORT, 100, 102)

    with pytest.raises(PortAllocationError):
        draw_port(request, {100, 101, 102}, random.Random(1))


# ============================================
# Allocation
# ============================================


@pytest.mark.asyncio
async def test_allocation_skips_ports_in_use_anywhere(allocator, core_dev):
    core_dev.apps_api.list_daemon_set_for_all_namespaces.return_value = listing(
        [daemon_set(p) for p in range(10000, 10010)]
    )
    core_dev.core_api.list_service_for_all_namespaces.return_value = listing([service(30000, 30001)])
    ws = PortRequest("ws-daemon", HOST_PORT, 10000, 10010)
    node = PortRequest("registry-facade", NODE_PORT, 30000, 30002)

    ports = await allocator.allocate("staging-foo", [ws, node])

    assert ports == {ws: 10010, node: 30002}


@pytest.mark.asyncio
async def test_sequential_allocations_are_unique_until_exhausted(allocator, core_dev):
    deployed = []
    core_dev.apps_api.list_daemon_set_for_all_namespaces.side_effect = lambda: listing(deployed)
    request = PortRequest("ws-daemon", HOST_PORT, 10000, 10049)

    seen = set()
    for i in range(50):
        port = (await allocator.allocate(f"staging-env{i}", [request]))[request]
        assert port not in seen
        seen.add(port)
        deployed.append(daemon_set(port))

    assert seen == set(range(10000, 10050))
    with pytest.raises(PortAllocationError):
        await allocator.allocate("staging-one-too-many", [request])


@pytest.mark.asyncio
async def test_previous_ports_are_reused(allocator, core_dev):
    def read_daemon_set(name, namespace):
        return {"ws-daemon": daemon_set(10500), "registry-facade": daemon_set(20500)}[name]

    core_dev.apps_api.read_namespaced_daemon_set.side_effect = read_daemon_set
    core_dev.core_api.read_namespaced_service.side_effect = None
    core_dev.core_api.read_namespaced_service.return_value = service(30500)

    ports = await allocator.allocate_daemonset_ports("staging-foo")

    assert (ports.ws_daemon, ports.registry_facade, ports.registry_node_port) == (10500, 20500, 30500)
    core_dev.apps_api.list_daemon_set_for_all_namespaces.assert_not_called()
    core_dev.core_api.list_service_for_all_namespaces.assert_not_called()


@pytest.mark.asyncio
async def test_previous_port_outside_range_is_ignored(allocator, core_dev):
    core_dev.apps_api.read_namespaced_daemon_set.side_effect = None
    core_dev.apps_api.read_namespaced_daemon_set.return_value = daemon_set(8080)
    request = PortRequest("ws-daemon", HOST_PORT, 10000, 10000)

    ports = await allocator.allocate("staging-foo", [request])

    assert ports[request] == 10000


@pytest.mark.asyncio
async def test_overlapping_ranges_are_rejected(allocator):
    a = PortRequest("a", HOST_PORT, 10000, 10100)
    b = PortRequest("b", HOST_PORT, 10050, 10200)

    with pytest.raises(ConfigurationError):
        await allocator.allocate("staging-foo", [a, b])

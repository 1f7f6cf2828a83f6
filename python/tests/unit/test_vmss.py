"""Unit tests for scale set discovery and NAT port resolution."""

from __future__ import annotations

import time
from types import SimpleNamespace as NS
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kubepool.models.pool import Instance
from kubepool.utils.vmss import (
    InstanceAccessError,
    InstanceWaitTimeout,
    VMSSAccessResolver,
    map_nat_pool,
    map_nat_rules,
    parse_backend_instance_id,
    resolve_nat_ports,
)

VMSS_ID = (
    "/subscriptions/s/resourceGroups/c1/providers/Microsoft.Compute/"
    "virtualMachineScaleSets/cp-vmss"
)


def _config_id(vmss_id: str, instance_id: str) -> str:
    return (
        f"{vmss_id}/virtualMachines/{instance_id}/networkInterfaces/nic/"
        "ipConfigurations/ipconfig1"
    )


def _rule(name: str, instance_id: str, port: int, vmss_id: str = VMSS_ID) -> NS:
    return NS(
        name=name,
        frontend_port=port,
        backend_ip_configuration=NS(id=_config_id(vmss_id, instance_id)),
    )


INSTANCES = [
    Instance(name="cp-vmss_0", instance_id="0", private_ip="10.0.0.4", index=0),
    Instance(name="cp-vmss_3", instance_id="3", private_ip="10.0.0.5", index=1),
]


class AsyncIter:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)


class TestParseBackendInstanceId:
    def test_extracts_instance(self):
        assert parse_backend_instance_id(_config_id(VMSS_ID, "3"), "cp-vmss") == "3"

    def test_case_insensitive_segments(self):
        config_id = _config_id(VMSS_ID, "7").replace("virtualMachineScaleSets", "VIRTUALMACHINESCALESETS")
        assert parse_backend_instance_id(config_id, "CP-VMSS") == "7"

    def test_other_scale_set(self):
        other = VMSS_ID.replace("cp-vmss", "cp-vmss2")
        assert parse_backend_instance_id(_config_id(other, "3"), "cp-vmss") is None

    def test_not_a_scale_set_nic(self):
        assert parse_backend_instance_id("/subscriptions/s/networkInterfaces/nic", "cp-vmss") is None


class TestNatMapping:
    def test_rules_map_by_instance_id(self):
        rules = [_rule("ssh.0", "0", 50001), _rule("ssh.3", "3", 50007), NS(name="x")]
        assert map_nat_rules(rules, "cp-vmss", INSTANCES) == {
            "cp-vmss_0": 50001,
            "cp-vmss_3": 50007,
        }

    def test_pool_uses_range_start_plus_instance_id(self):
        pools = [NS(name="http", frontend_port_range_start=40000), NS(name="ssh", frontend_port_range_start=51000)]
        assert map_nat_pool(pools, INSTANCES) == {"cp-vmss_0": 51000, "cp-vmss_3": 51003}

    def test_pool_default_start(self):
        assert map_nat_pool([NS(name="ssh", frontend_port_range_start=None)], INSTANCES) == {
            "cp-vmss_0": 50000,
            "cp-vmss_3": 50003,
        }

    def test_non_numeric_id_uses_discovery_index(self):
        odd = [Instance(name="a", instance_id="abc", index=4)]
        assert map_nat_pool([NS(name="ssh", frontend_port_range_start=50000)], odd) == {"a": 50004}

    def test_rules_win_over_pool(self):
        lb = NS(
            inbound_nat_rules=[_rule("r", "0", 60000)],
            inbound_nat_pools=[NS(name="ssh", frontend_port_range_start=50000)],
        )
        assert resolve_nat_ports(lb, "cp-vmss", INSTANCES) == {"cp-vmss_0": 60000}

    def test_pool_is_fallback(self):
        lb = NS(
            inbound_nat_rules=[_rule("r", "0", 60000, vmss_id=VMSS_ID + "-other")],
            inbound_nat_pools=[NS(name="ssh", frontend_port_range_start=50000)],
        )
        assert resolve_nat_ports(lb, "cp-vmss", INSTANCES) == {
            "cp-vmss_0": 50000,
            "cp-vmss_3": 50003,
        }

    def test_no_mapping_is_an_error(self):
        lb = NS(inbound_nat_rules=None, inbound_nat_pools=None)
        with pytest.raises(InstanceAccessError, match="cp-vmss"):
            resolve_nat_ports(lb, "cp-vmss", INSTANCES)


@pytest.fixture
def resolver():
    with patch("kubepool.utils.vmss.ComputeManagementClient") as compute_cls, patch(
        "kubepool.utils.vmss.NetworkManagementClient"
    ) as network_cls:
        compute_cls.return_value = MagicMock(close=AsyncMock())
        network_cls.return_value = MagicMock(close=AsyncMock())
        yield VMSSAccessResolver("sub", "c1", MagicMock(), poll_interval=0)


class TestVMSSAccessResolver:
    @pytest.mark.asyncio
    async def test_list_instances(self, resolver):
        resolver._compute.virtual_machine_scale_set_vms.list.return_value = AsyncIter(
            [
                NS(name="cp-vmss_0", instance_id="0", zones=["1"]),
                NS(name=None, instance_id="9", zones=None),
                NS(name="cp-vmss_1", instance_id="1", zones=None),
            ]
        )
        nics = {
            "0": [NS(ip_configurations=[NS(private_ip_address="10.0.0.4")])],
            "1": [NS(ip_configurations=[NS(private_ip_address=None)])],
        }
        resolver._network.network_interfaces.list_virtual_machine_scale_set_vm_network_interfaces.side_effect = (
            lambda rg, vmss, iid: AsyncIter(nics[iid])
        )

        instances = await resolver.list_instances("cp-vmss")

        assert [(i.name, i.private_ip, i.zone, i.index) for i in instances] == [
            ("cp-vmss_0", "10.0.0.4", "1", 0),
            ("cp-vmss_1", None, None, 1),
        ]

    @pytest.mark.asyncio
    async def test_public_address(self, resolver):
        resolver._network.load_balancers.get = AsyncMock(
            return_value=NS(
                frontend_ip_configurations=[
                    NS(public_ip_address=None),
                    NS(public_ip_address=NS(id="/subscriptions/s/publicIPAddresses/lb-pip")),
                ]
            )
        )
        resolver._network.public_ip_addresses.get = AsyncMock(return_value=NS(ip_address="20.1.2.3"))

        assert await resolver.public_address("lb") == "20.1.2.3"
        resolver._network.public_ip_addresses.get.assert_awaited_once_with("c1", "lb-pip")

    @pytest.mark.asyncio
    async def test_public_address_missing(self, resolver):
        resolver._network.load_balancers.get = AsyncMock(
            return_value=NS(frontend_ip_configurations=[])
        )
        with pytest.raises(InstanceAccessError):
            await resolver.public_address("lb")

    @pytest.mark.asyncio
    async def test_resolve_access(self, resolver):
        resolver._network.load_balancers.get = AsyncMock(
            return_value=NS(inbound_nat_rules=[_rule("r", "3", 50123)], inbound_nat_pools=[])
        )
        assert await resolver.resolve_access("cp-vmss", "lb", INSTANCES) == {"cp-vmss_3": 50123}

    @pytest.mark.asyncio
    async def test_wait_until_running(self, resolver):
        pending = [i.model_copy(update={"private_ip": None}) for i in INSTANCES]
        resolver.list_instances = AsyncMock(
            side_effect=[RuntimeError("throttled"), pending, INSTANCES]
        )

        assert await resolver.wait_until_running("cp-vmss", 2, timeout=60) == INSTANCES
        assert resolver.list_instances.await_count == 3

    @pytest.mark.asyncio
    async def test_wait_until_running_times_out(self, resolver):
        resolver.poll_interval = 0.01
        resolver.list_instances = AsyncMock(return_value=INSTANCES[:1])

        with pytest.raises(InstanceWaitTimeout, match="cp-vmss"):
            await resolver.wait_until_running("cp-vmss", 2, timeout=0.05)

    @pytest.mark.asyncio
    async def test_timeout_shorter_than_poll_interval_polls_until_deadline(self, resolver):
        resolver.poll_interval = 30
        resolver.list_instances = AsyncMock(return_value=INSTANCES[:1])

        started = time.monotonic()
        with pytest.raises(InstanceWaitTimeout):
            await resolver.wait_until_running("cp-vmss", 2, timeout=0.2)

        assert time.monotonic() - started >= 0.19
        assert 2 <= resolver.list_instances.await_count <= 3

    @pytest.mark.asyncio
    async def test_instances_arriving_at_the_deadline_are_seen(self, resolver):
        resolver.poll_interval = 30
        resolver.list_instances = AsyncMock(side_effect=[INSTANCES[:1], INSTANCES])

        assert await resolver.wait_until_running("cp-vmss", 2, timeout=0.1) == INSTANCES

    @pytest.mark.asyncio
    async def test_control_plane_pool_exists(self, resolver):
        resolver._compute.virtual_machine_scale_sets.list.return_value = AsyncIter(
            [NS(tags=None), NS(tags={"kubepool": "worker"}), NS(tags={"kubepool": "control-plane"})]
        )
        assert await resolver.control_plane_pool_exists()

    @pytest.mark.asyncio
    async def test_pool_being_bootstrapped_is_excluded(self, resolver):
        resolver._compute.virtual_machine_scale_sets.list.side_effect = lambda rg: AsyncIter(
            [NS(name="cp-vmss", tags={"kubepool": "control-plane"})]
        )

        assert not await resolver.control_plane_pool_exists(exclude="CP-VMSS")
        assert await resolver.control_plane_pool_exists()

    @pytest.mark.asyncio
    async def test_no_control_plane_pool(self, resolver):
        resolver._compute.virtual_machine_scale_sets.list.return_value = AsyncIter(
            [NS(tags={"kubepool": "worker"})]
        )
        assert not await resolver.control_plane_pool_exists()

    @pytest.mark.asyncio
    async def test_close(self, resolver):
        async with resolver:
            pass
        resolver._compute.close.assert_awaited_once()
        resolver._network.close.assert_awaited_once()

"""
kubepool/utils/vmss.py

Discovery of scale set instances and of how to reach each one over SSH.

Instances sit behind a load balancer; each is reachable at the balancer's
public address on a per-instance NAT port. Ports come from explicit inbound
NAT rules when the balancer has them, or else from the "ssh" inbound NAT pool
(frontend range start + instance ordinal).

The mapping helpers are plain functions over SDK model objects so they can be
exercised without Azure; VMSSAccessResolver wires them to the async
management clients.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Type

from azure.core.credentials_async import AsyncTokenCredential
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.network.aio import NetworkManagementClient

from kubepool.models.pool import Instance, PoolRole

logger = logging.getLogger(__name__)

DEFAULT_NAT_POOL = "ssh"
DEFAULT_NAT_PORT_START = 50000


class InstanceAccessError(RuntimeError):
    """No way to reach the pool's instances could be determined."""


class InstanceWaitTimeout(RuntimeError):
    def __init__(self, vmss_name: str, expected: int, running: int, timeout: float):
        super().__init__(
            f"Timed out after {timeout:.0f}s waiting for {expected} running "
            f"instance(s) in {vmss_name} ({running} running)"
        )
        self.vmss_name = vmss_name
        self.expected = expected
        self.running = running


def parse_backend_instance_id(config_id: str, vmss_name: str) -> Optional[str]:
    """
    Extract the scale set instance id from a NIC IP configuration resource id:
    `.../virtualMachineScaleSets/{vmss}/virtualMachines/{id}/networkInterfaces/...`

    Returns None if the id belongs to another scale set or has no instance.
    """
    parts = config_id.split("/")
    lowered = [p.lower() for p in parts]
    try:
        vmss_at = lowered.index("virtualmachinescalesets")
    except ValueError:
        return None
    if vmss_at + 1 >= len(parts) or lowered[vmss_at + 1] != vmss_name.lower():
        return None
    try:
        vm_at = lowered.index("virtualmachines", vmss_at)
    except ValueError:
        return None
    if vm_at + 1 >= len(parts) or not parts[vm_at + 1]:
        return None
    return parts[vm_at + 1]


def map_nat_rules(
    rules: Iterable[Any], vmss_name: str, instances: List[Instance]
) -> Dict[str, int]:
    """Map instance name -> frontend port from per-instance inbound NAT rules."""
    by_id = {inst.instance_id: inst.name for inst in instances}
    mappings: Dict[str, int] = {}
    for rule in rules or []:
        backend = getattr(rule, "backend_ip_configuration", None)
        backend_id = getattr(backend, "id", None)
        port = getattr(rule, "frontend_port", None)
        if not backend_id or port is None:
            continue
        instance_id = parse_backend_instance_id(backend_id, vmss_name)
        name = by_id.get(instance_id) if instance_id is not None else None
        if name is None:
            continue
        mappings[name] = int(port)
        logger.info(
            "Mapped instance %s (ID: %s) to NAT port %d via rule '%s'",
            name,
            instance_id,
            int(port),
            getattr(rule, "name", "?"),
        )
    return mappings


def _ordinal(instance: Instance) -> int:
    try:
        return int(instance.instance_id)
    except ValueError:
        logger.warning(
            "Instance id '%s' is not numeric, using discovery index %d",
            instance.instance_id,
            instance.index,
        )
        return instance.index


def map_nat_pool(
    pools: Iterable[Any],
    instances: List[Instance],
    pool_name: str = DEFAULT_NAT_POOL,
) -> Dict[str, int]:
    """Map instance name -> `frontend_port_range_start + ordinal` via the named NAT pool."""
    nat_pool = next(
        (p for p in pools or [] if getattr(p, "name", None) == pool_name), None
    )
    if nat_pool is None:
        return {}
    start = getattr(nat_pool, "frontend_port_range_start", None)
    base = DEFAULT_NAT_PORT_START if start is None else int(start)
    return {inst.name: base + _ordinal(inst) for inst in instances}


def resolve_nat_ports(
    load_balancer: Any, vmss_name: str, instances: List[Instance]
) -> Dict[str, int]:
    """
    Per-instance NAT rules win; the "ssh" NAT pool is the fallback.

    Raises:
        InstanceAccessError: If neither yields a single mapping.
    """
    mappings = map_nat_rules(
        getattr(load_balancer, "inbound_nat_rules", None), vmss_name, instances
    )
    if not mappings:
        mappings = map_nat_pool(
            getattr(load_balancer, "inbound_nat_pools", None), instances
        )
    if not mappings:
        raise InstanceAccessError(f"No NAT port mappings found for VMSS {vmss_name}")
    return mappings


class VMSSAccessResolver:
    """
    Scale set and load balancer lookups in one resource group.

    Args:
        subscription_id: Azure subscription.
        resource_group: Resource group holding the cluster (the cluster name).
        credential: An async Azure credential, owned by the caller.
        poll_interval: Seconds between polls in wait_until_running.
        pool_role_tag: Tag key whose value records a scale set's pool role.
    """

    def __init__(
        self,
        subscription_id: str,
        resource_group: str,
        credential: AsyncTokenCredential,
        *,
        poll_interval: float = 30.0,
        pool_role_tag: str = "kubepool",
    ) -> None:
        self.resource_group = resource_group
        self.poll_interval = poll_interval
        self.pool_role_tag = pool_role_tag
        self._compute = ComputeManagementClient(credential, subscription_id)
        self._network = NetworkManagementClient(credential, subscription_id)

    async def __aenter__(self) -> VMSSAccessResolver:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._compute.close()
        await self._network.close()

    async def _private_ip(self, vmss_name: str, instance_id: str) -> Optional[str]:
        nics = self._network.network_interfaces.list_virtual_machine_scale_set_vm_network_interfaces(
            self.resource_group, vmss_name, instance_id
        )
        async for nic in nics:
            for ip_config in nic.ip_configurations or []:
                if ip_config.private_ip_address:
                    return str(ip_config.private_ip_address)
        return None

    async def list_instances(self, vmss_name: str) -> List[Instance]:
        """All instances of the scale set, in listing order."""
        instances: List[Instance] = []
        vms = self._compute.virtual_machine_scale_set_vms.list(
            self.resource_group, vmss_name
        )
        async for vm in vms:
            if not vm.name or vm.instance_id is None:
                continue
            try:
                private_ip = await self._private_ip(vmss_name, vm.instance_id)
            except Exception as ex:
                logger.warning("Failed to get IP address for VM %s: %s", vm.name, ex)
                private_ip = None
            instances.append(
                Instance(
                    name=vm.name,
                    instance_id=str(vm.instance_id),
                    private_ip=private_ip,
                    zone=vm.zones[0] if vm.zones else None,
                    index=len(instances),
                )
            )
        return instances

    async def resolve_access(
        self,
        vmss_name: str,
        lb_name: str,
        instances: Optional[List[Instance]] = None,
    ) -> Dict[str, int]:
        """
        Instance name -> NAT port on the load balancer's public address.

        Raises:
            InstanceAccessError: If no mapping exists.
        """
        load_balancer = await self._network.load_balancers.get(
            self.resource_group, lb_name
        )
        if instances is None:
            instances = await self.list_instances(vmss_name)
        return resolve_nat_ports(load_balancer, vmss_name, instances)

    async def public_address(self, lb_name: str) -> str:
        """
        The first public IP attached to one of the balancer's frontends.

        Raises:
            InstanceAccessError: If the balancer has no public frontend.
        """
        load_balancer = await self._network.load_balancers.get(
            self.resource_group, lb_name
        )
        for frontend in load_balancer.frontend_ip_configurations or []:
            ref = frontend.public_ip_address
            if ref is None or not ref.id:
                continue
            pip_name = ref.id.rstrip("/").split("/")[-1]
            try:
                pip = await self._network.public_ip_addresses.get(
                    self.resource_group, pip_name
                )
            except Exception as ex:
                logger.warning("Failed to read public IP %s: %s", pip_name, ex)
                continue
            if pip.ip_address:
                return str(pip.ip_address)
        raise InstanceAccessError(
            f"No public IP address found for load balancer {lb_name}"
        )

    async def wait_until_running(
        self, vmss_name: str, expected_count: int, timeout: float
    ) -> List[Instance]:
        """
        Poll until at least `expected_count` instances have a private address.

        Raises:
            InstanceWaitTimeout: When `timeout` seconds elapse first.
        """
        logger.info(
            "Waiting for %d VMSS instance(s) of %s to be running (timeout: %.0fs)",
            expected_count,
            vmss_name,
            timeout,
        )
        start = time.monotonic()
        running = 0
        while True:
            try:
                instances = await self.list_instances(vmss_name)
            except Exception as ex:
                logger.warning("Error listing instances of %s: %s, retrying", vmss_name, ex)
            else:
                running = sum(1 for inst in instances if inst.is_running)
                elapsed = time.monotonic() - start
                if running >= expected_count:
                    logger.info(
                        "%d instance(s) running after %.0fs", running, elapsed
                    )
                    return instances
                logger.info(
                    "Found %d instance(s), %d running, waiting for %d (%.0fs elapsed)",
                    len(instances),
                    running,
                    expected_count,
                    elapsed,
                )

            remaining = timeout - (time.monotonic() - start)
            if remaining <= 0:
                raise InstanceWaitTimeout(vmss_name, expected_count, running, timeout)
            # The last poll happens at the deadline itself.
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def control_plane_pool_exists(self, exclude: Optional[str] = None) -> bool:
        """
        True if any scale set in the resource group is tagged as a control plane.

        Args:
            exclude: Scale set name to ignore, typically the pool being
                bootstrapped, which carries the tag from creation on.
        """
        async for vmss in self._compute.virtual_machine_scale_sets.list(
            self.resource_group
        ):
            if exclude and (vmss.name or "").lower() == exclude.lower():
                continue
            tags = vmss.tags or {}
            if tags.get(self.pool_role_tag) == PoolRole.CONTROL_PLANE.value:
                return True
        return False

"""
kubepool/deployment/pool.py

Bootstraps every instance of one scale set pool with kubeadm.

  1) Wait until the pool's instances report private addresses.
  2) Resolve the load balancer's public address and each instance's NAT port.
  3) For control-plane pools, read the cluster's state once.
  4) Control-plane instances are processed one at a time in discovery order.
     The first one may initialize the cluster; every later one joins it.
     Worker instances are independent and may join concurrently.

Each instance gets its own SSH session, opened and closed inside that
instance's processing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from kubepool.deployment.kubeadm import BootstrapError, KubeadmInstaller
from kubepool.deployment.roles import resolve_cluster_state, resolve_node_role
from kubepool.models.pool import (
    BootstrapStep,
    ClusterState,
    Instance,
    InstanceResult,
    NodeRole,
    Pool,
    PoolBootstrapResult,
    PoolRole,
)
from kubepool.models.settings import BootstrapSettings
from kubepool.models.ssh import SSHConfig
from kubepool.secrets.coordination import CoordinationStore
from kubepool.utils.ssh import SSHSession, open_ssh_session
from kubepool.utils.vmss import InstanceAccessError, VMSSAccessResolver

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., SSHSession]


async def bootstrap_pool(
    pool: Pool,
    resolver: VMSSAccessResolver,
    store: CoordinationStore,
    settings: BootstrapSettings,
    *,
    private_key: str,
    host_keys: Optional[List[str]] = None,
    session_factory: SessionFactory = open_ssh_session,
) -> PoolBootstrapResult:
    """
    Bootstrap all running instances of `pool`.

    Args:
        pool: The pool to bootstrap.
        resolver: Instance discovery and NAT mapping for the pool's cluster.
        store: Coordination store for join credentials.
        settings: Bootstrap tunables.
        private_key: SSH private key accepted by every instance.
        host_keys: known_hosts entries for the instances; without them host
            keys are not verified.
        session_factory: Builds an (unconnected) SSH session for one instance.

    Returns:
        Per-instance results, in processing order.

    Raises:
        InstanceWaitTimeout / InstanceAccessError / ClusterStateError: abort the pass.
        BootstrapError: An instance failed; names the instance and state.
    """
    instances = await resolver.wait_until_running(
        pool.vmss_name, pool.instance_count, settings.running_timeout
    )
    running = sorted((i for i in instances if i.is_running), key=lambda i: i.index)
    if not running:
        raise InstanceAccessError(f"No running instances found in VMSS {pool.vmss_name}")
    logger.info("Found %d running instance(s) in %s", len(running), pool.vmss_name)

    public_address = await resolver.public_address(pool.load_balancer)
    ports = await resolver.resolve_access(pool.vmss_name, pool.load_balancer, running)

    async def _bootstrap(instance: Instance, role: NodeRole) -> InstanceResult:
        return await bootstrap_instance(
            instance,
            role,
            cluster=pool.cluster,
            public_address=public_address,
            ports=ports,
            store=store,
            settings=settings,
            private_key=private_key,
            host_keys=host_keys,
            session_factory=session_factory,
        )

    result = PoolBootstrapResult(pool=pool.name)

    if pool.role == PoolRole.WORKER:
        result.instances.extend(
            await _bootstrap_workers(running, _bootstrap, settings.worker_concurrency)
        )
        return result

    state: ClusterState = await resolve_cluster_state(
        pool, resolver, store, health_timeout=settings.health_timeout
    )
    if state.needs_rebuild:
        logger.warning(
            "Control plane of %s exists but is unhealthy, it will be rebuilt",
            pool.cluster,
        )

    first_bootstrapped = False
    for instance in running:
        role = resolve_node_role(pool.role, state, first_bootstrapped)
        logger.info("Determined node type for %s: %s", instance.name, role.value)
        result.instances.append(await _bootstrap(instance, role))
        if role == NodeRole.FIRST_CONTROL_PLANE:
            first_bootstrapped = True

    return result


async def _bootstrap_workers(
    instances: List[Instance],
    bootstrap: Callable[[Instance, NodeRole], Awaitable[InstanceResult]],
    concurrency: int,
) -> List[InstanceResult]:
    """Join workers, at most `concurrency` at a time; raise the first failure once all finish."""
    semaphore = asyncio.Semaphore(concurrency)

    async def _limited(instance: Instance) -> InstanceResult:
        async with semaphore:
            return await bootstrap(instance, NodeRole.WORKER)

    outcomes = await asyncio.gather(
        *(_limited(inst) for inst in instances), return_exceptions=True
    )

    results: List[InstanceResult] = []
    errors: List[BaseException] = []
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            logger.error("%s", outcome)
            errors.append(outcome)
        else:
            results.append(outcome)
    if errors:
        raise errors[0]
    return results


async def bootstrap_instance(
    instance: Instance,
    role: NodeRole,
    *,
    cluster: str,
    public_address: str,
    ports: Dict[str, int],
    store: CoordinationStore,
    settings: BootstrapSettings,
    private_key: str,
    host_keys: Optional[List[str]] = None,
    session_factory: SessionFactory = open_ssh_session,
) -> InstanceResult:
    """Open a session to `instance`, run the installer as `role`, close the session."""
    port = ports.get(instance.name)
    if port is None:
        raise BootstrapError(
            instance.name,
            BootstrapStep.NOT_STARTED,
            InstanceAccessError(f"No NAT port mapping found for instance {instance.name}"),
        )

    deadline: Optional[float] = (
        time.monotonic() + settings.instance_timeout
        if settings.instance_timeout is not None
        else None
    )
    ssh_config = SSHConfig(
        user=settings.ssh_user,
        hostname=public_address,
        port=port,
        private_key=private_key,
        host_keys=host_keys,
        connect_timeout=settings.ssh_connect_timeout,
    )
    logger.info(
        "Installing kubeadm on instance %s (NAT port: %d)", instance.name, port
    )

    try:
        async with session_factory(
            ssh_config,
            connect_retries=settings.ssh_connect_retries,
            retry_delay=settings.ssh_connect_retry_delay,
        ) as session:
            installer = KubeadmInstaller(
                session,
                store,
                cluster,
                instance.name,
                public_address,
                settings,
                deadline=deadline,
            )
            return await installer.run(role)
    except BootstrapError:
        raise
    except Exception as ex:
        raise BootstrapError(instance.name, BootstrapStep.NOT_STARTED, ex) from ex

"""
kubepool/deployment/roles.py

Deciding which kubeadm role the next node of a pool takes.

The cluster's state is read once per pass into a ClusterState (does any
control-plane pool exist, and is the published control plane reachable) and
then threaded through the loop; resolve_node_role is a pure function of that
state, the pool's declared role and whether this pass already bootstrapped a
first control plane.
"""

from __future__ import annotations

import logging

from kubepool.models.pool import (
    ClusterState,
    NodeRole,
    Pool,
    PoolRole,
    STALE_TOKEN_PURPOSES,
    SecretPurpose,
    secret_key,
)
from kubepool.secrets.coordination import CoordinationStore
from kubepool.utils.network import check_tcp_endpoint
from kubepool.utils.vmss import VMSSAccessResolver

logger = logging.getLogger(__name__)


class ClusterStateError(RuntimeError):
    """The cluster's state could not be determined; the pass cannot continue."""


async def is_existing_control_plane_healthy(
    store: CoordinationStore, cluster: str, timeout: float = 10.0
) -> bool:
    """
    True only if a worker join command and an API endpoint are published and
    the endpoint accepts a TCP connection within `timeout` seconds.

    A missing secret or an unreachable endpoint means "unhealthy"; errors from
    the store itself propagate.
    """
    if await store.try_get(secret_key(cluster, SecretPurpose.WORKER_JOIN)) is None:
        logger.info("No worker join command published for cluster %s", cluster)
        return False

    endpoint = await store.try_get(secret_key(cluster, SecretPurpose.API_ENDPOINT))
    if not endpoint:
        logger.warning("Join tokens exist but no API endpoint found for %s", cluster)
        return False

    if not await check_tcp_endpoint(endpoint.strip(), timeout=timeout):
        logger.warning("API server at %s is unreachable", endpoint.strip())
        return False

    logger.info("Existing cluster validated, API server at %s is reachable", endpoint)
    return True


async def _credentials_published(store: CoordinationStore, cluster: str) -> bool:
    for purpose in (SecretPurpose.WORKER_JOIN, SecretPurpose.API_ENDPOINT):
        if await store.try_get(secret_key(cluster, purpose)) is not None:
            return True
    return False


async def resolve_cluster_state(
    pool: Pool,
    resolver: VMSSAccessResolver,
    store: CoordinationStore,
    *,
    health_timeout: float = 10.0,
) -> ClusterState:
    """
    Materialize the cluster facts for one pass.

    The cluster counts as initialized if another scale set is tagged as a
    control plane, or if join credentials were published by an earlier pass.
    The pool being bootstrapped is tagged from creation on, so its own tag
    says nothing about whether kubeadm ever ran.

    Raises:
        ClusterStateError: If the scale sets or the store cannot be queried.
    """
    try:
        initialized = await resolver.control_plane_pool_exists(
            exclude=pool.vmss_name
        ) or await _credentials_published(store, pool.cluster)
        healthy = (
            await is_existing_control_plane_healthy(
                store, pool.cluster, timeout=health_timeout
            )
            if initialized
            else False
        )
    except Exception as ex:
        raise ClusterStateError(
            f"Cannot determine state of cluster '{pool.cluster}': {ex}"
        ) from ex

    state = ClusterState(initialized=initialized, healthy=healthy)
    logger.info(
        "Cluster %s: initialized=%s healthy=%s", pool.cluster, initialized, healthy
    )
    return state


def resolve_node_role(
    pool_role: PoolRole, state: ClusterState, first_bootstrapped: bool
) -> NodeRole:
    if pool_role == PoolRole.WORKER:
        return NodeRole.WORKER
    if first_bootstrapped:
        return NodeRole.ADDITIONAL_CONTROL_PLANE
    if not state.initialized:
        return NodeRole.FIRST_CONTROL_PLANE
    if state.healthy:
        return NodeRole.ADDITIONAL_CONTROL_PLANE
    # Control plane exists but is unreachable: rebuild it.
    return NodeRole.FIRST_CONTROL_PLANE


async def invalidate_cluster_tokens(store: CoordinationStore, cluster: str) -> None:
    """Best-effort removal of the join commands and API endpoint of `cluster`."""
    logger.info("Removing stale join credentials for cluster %s", cluster)
    for purpose in STALE_TOKEN_PURPOSES:
        key = secret_key(cluster, purpose)
        logger.info("Removing stale secret: %s", key)
        await store.delete(key)

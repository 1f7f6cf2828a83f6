"""
kubepool/models/pool.py

Pydantic models for kubeadm pool bootstrap:
 - PoolRole / NodeRole: declared pool role vs. the role applied to one node
 - Pool, Instance: what the infrastructure layer hands us
 - ClusterState: the cluster facts materialized once per orchestration pass
 - SecretPurpose + secret_key: the coordination store key layout
 - BootstrapStep, InstanceResult, PoolBootstrapResult: per-instance progress
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class PoolRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class NodeRole(str, Enum):
    """The concrete kubeadm role applied to the next node being processed."""

    FIRST_CONTROL_PLANE = "first-master"
    ADDITIONAL_CONTROL_PLANE = "master"
    WORKER = "worker"


class Pool(BaseModel):
    """
    A homogeneous group of scale set instances sharing one declared role.

    Attributes:
        cluster: Cluster name; also the resource group holding the pool.
        name: Pool name; the scale set is named `{name}-vmss`.
        role: Declared role of every instance in the pool.
        load_balancer: Load balancer whose NAT front end reaches the instances.
        instance_count: Number of instances expected to be running.
    """

    model_config = ConfigDict(frozen=True)

    cluster: str
    name: str
    role: PoolRole
    load_balancer: str
    instance_count: int = Field(default=1, ge=1)

    @property
    def vmss_name(self) -> str:
        return f"{self.name}-vmss"


class Instance(BaseModel):
    """One scale set VM. `index` is its position in discovery order."""

    model_config = ConfigDict(frozen=True)

    name: str
    instance_id: str
    private_ip: Optional[str] = None
    zone: Optional[str] = None
    index: int = 0

    @property
    def is_running(self) -> bool:
        return bool(self.private_ip)


class ClusterState(BaseModel):
    """
    Facts about the target cluster, derived once per pass.

    initialized: some control-plane pool exists in the cluster.
    healthy: join credentials and an API endpoint are published, and the
        endpoint answers a TCP probe.
    """

    model_config = ConfigDict(frozen=True)

    initialized: bool
    healthy: bool = False

    @property
    def needs_rebuild(self) -> bool:
        return self.initialized and not self.healthy


class SecretPurpose(str, Enum):
    WORKER_JOIN = "worker-join"
    MASTER_JOIN = "master-join"
    API_ENDPOINT = "api-endpoint"
    KUBECONFIG = "kubeconfig"


STALE_TOKEN_PURPOSES = (
    SecretPurpose.WORKER_JOIN,
    SecretPurpose.MASTER_JOIN,
    SecretPurpose.API_ENDPOINT,
)


def secret_key(cluster: str, purpose: SecretPurpose) -> str:
    """Coordination store key for `purpose` in `cluster`: `{cluster}-{purpose}`."""
    return f"{cluster}-{purpose.value}"


class BootstrapStep(str, Enum):
    NOT_STARTED = "not-started"
    PREREQUISITES_ENSURED = "prerequisites-ensured"
    ROLE_APPLIED = "role-applied"
    DONE = "done"


class InstanceResult(BaseModel):
    instance: str
    role: NodeRole
    step: BootstrapStep = BootstrapStep.NOT_STARTED
    skipped: bool = False
    elapsed_seconds: float = 0.0


class PoolBootstrapResult(BaseModel):
    pool: str
    instances: List[InstanceResult] = Field(default_factory=list)

    @property
    def roles(self) -> List[NodeRole]:
        return [r.role for r in self.instances]

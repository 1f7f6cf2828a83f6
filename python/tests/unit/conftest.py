"""Shared fakes for kubepool unit tests."""

from __future__ import annotations

import textwrap
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

from kubepool.models.pool import Instance
from kubepool.models.settings import BootstrapSettings
from kubepool.secrets.coordination import CoordinationStore, SecretSoftDeletedError
from kubepool.utils.ssh import CommandError

ADMIN_CONF = textwrap.dedent(
    """\
    apiVersion: v1
    clusters:
    - cluster:
        certificate-authority-data: Q0EK
        server: https://10.0.0.4:6443
      name: kubernetes
    contexts:
    - context:
        cluster: kubernetes
        user: kubernetes-admin
      name: kubernetes-admin@kubernetes
    current-context: kubernetes-admin@kubernetes
    kind: Config
    users:
    - name: kubernetes-admin
      user:
        client-certificate-data: Q0VSVAo=
    """
)

CLUSTER_CONFIGURATION = textwrap.dedent(
    """\
    apiServer: {}
    apiVersion: kubeadm.k8s.io/v1beta4
    clusterName: kubernetes
    controllerManager: {}
    kind: ClusterConfiguration
    kubernetesVersion: v1.33.1
    networking:
      podSubnet: 10.244.0.0/16
    """
)

WORKER_JOIN_OUTPUT = (
    "kubeadm join 10.0.0.4:6443 --token abcdef.0123456789abcdef \r\n"
    "    --discovery-token-ca-cert-hash sha256:deadbeef \n"
)
WORKER_JOIN = (
    "kubeadm join 10.0.0.4:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:deadbeef"
)

TOOLCHAIN_PROBES = {
    "kubeadm version": True,
    "which kubelet": True,
    "which containerd": True,
}
MEMBER_PROBES = dict(
    TOOLCHAIN_PROBES, **{"kubelet.conf": True, "kube-apiserver.yaml": True}
)


class FakeBackend:
    """In-memory SecretBackend that models soft deletes and records every call."""

    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(values or {})
        self.soft_deleted: Set[str] = set()
        self.conflicts: Dict[str, int] = {}
        self.ops: List[Tuple[str, str]] = []

    async def read(self, key: str) -> Optional[str]:
        self.ops.append(("read", key))
        return self.values.get(key)

    async def write(self, key: str, value: str) -> None:
        self.ops.append(("write", key))
        if self.conflicts.get(key, 0) > 0:
            self.conflicts[key] -= 1
            raise SecretSoftDeletedError(key)
        if key in self.soft_deleted:
            raise SecretSoftDeletedError(key)
        self.values[key] = value

    async def delete(self, key: str) -> None:
        self.ops.append(("delete", key))
        if key in self.values:
            del self.values[key]
            self.soft_deleted.add(key)

    async def purge(self, key: str) -> None:
        self.ops.append(("purge", key))
        self.soft_deleted.discard(key)

    def keys_touched(self, op: str) -> List[str]:
        return [k for o, k in self.ops if o == op]


class FakeExecutor:
    """
    Scripted RemoteExecutor. Probes and outputs are matched by substring, first
    match wins; unmatched probes fail and unmatched commands print nothing.
    """

    def __init__(
        self,
        probes: Optional[Dict[str, bool]] = None,
        outputs: Optional[Dict[str, str]] = None,
        failures: Iterable[str] = (),
    ) -> None:
        self.probes = dict(probes or {})
        self.outputs = dict(outputs or {})
        self.failures = list(failures)
        self.probed: List[str] = []
        self.executed: List[str] = []
        self.sensitive: List[str] = []

    async def probe(self, command: str) -> bool:
        self.probed.append(command)
        for pattern, result in self.probes.items():
            if pattern in command:
                return result
        return False

    async def execute(self, command: str, *, sensitive: bool = False) -> str:
        self.executed.append(command)
        if sensitive:
            self.sensitive.append(command)
        for pattern in self.failures:
            if pattern in command:
                raise CommandError(f"failed: {pattern}", return_code=1, output="boom")
        for pattern, output in self.outputs.items():
            if pattern in command:
                return output
        return ""

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for cmd in self.executed)


def first_master_outputs(private_ip: str = "10.0.0.4") -> Dict[str, str]:
    return {
        "ip route get": f"{private_ip}\n",
        "token create --print-join-command": WORKER_JOIN_OUTPUT,
        "upload-certs --upload-certs": "certkey0123\n",
        "get configmap kubeadm-config": CLUSTER_CONFIGURATION,
        "sudo cat /etc/kubernetes/admin.conf": ADMIN_CONF,
    }


class _FakeSession:
    def __init__(self, factory: "FakeSessionFactory", port: int) -> None:
        self.factory = factory
        self.port = port

    async def __aenter__(self) -> FakeExecutor:
        self.factory.events.append(("open", self.port))
        if self.port in self.factory.unreachable:
            raise OSError(f"connection refused on port {self.port}")
        return self.factory.executors[self.port]

    async def __aexit__(self, *exc: object) -> None:
        self.factory.events.append(("close", self.port))


class FakeSessionFactory:
    """Stands in for open_ssh_session; one FakeExecutor per NAT port."""

    def __init__(
        self, executors: Dict[int, FakeExecutor], unreachable: Iterable[int] = ()
    ) -> None:
        self.executors = executors
        self.unreachable = set(unreachable)
        self.events: List[Tuple[str, int]] = []
        self.configs: List[object] = []

    def __call__(self, ssh_config, **kwargs) -> _FakeSession:
        self.configs.append(ssh_config)
        return _FakeSession(self, ssh_config.port)


class FakeResolver:
    def __init__(
        self,
        instances: List[Instance],
        ports: Dict[str, int],
        *,
        public: str = "20.1.2.3",
        control_plane_exists: bool = False,
    ) -> None:
        self.instances = instances
        self.ports = ports
        self.public = public
        self.control_plane_exists = control_plane_exists
        self.control_plane_checks = 0
        self.excluded: List[Optional[str]] = []

    async def wait_until_running(self, vmss_name, expected_count, timeout):
        return list(self.instances)

    async def public_address(self, lb_name):
        return self.public

    async def resolve_access(self, vmss_name, lb_name, instances=None):
        return dict(self.ports)

    async def control_plane_pool_exists(self, exclude=None):
        self.control_plane_checks += 1
        self.excluded.append(exclude)
        return self.control_plane_exists


def make_instances(count: int, prefix: str = "vm") -> List[Instance]:
    return [
        Instance(
            name=f"{prefix}_{i}",
            instance_id=str(i),
            private_ip=f"10.0.0.{4 + i}",
            index=i,
        )
        for i in range(count)
    ]


@pytest.fixture
def settings() -> BootstrapSettings:
    return BootstrapSettings(
        secret_wait_attempts=3,
        secret_wait_interval=0,
        purge_delay=0,
        health_timeout=1.0,
        running_timeout=0,
        running_poll_interval=0,
        ssh_connect_retries=1,
        ssh_connect_retry_delay=0,
        stabilization_delay=0,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store(backend: FakeBackend) -> CoordinationStore:
    return CoordinationStore(backend, poll_interval=0, max_attempts=3, purge_delay=0)

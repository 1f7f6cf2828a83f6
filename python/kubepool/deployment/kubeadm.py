"""
Idempotent kubeadm bootstrap of a single scale set instance (Azure Linux, tdnf).

One KubeadmInstaller drives one node, over one already-open RemoteExecutor,
through NotStarted -> PrerequisitesEnsured -> RoleApplied -> Done:

  1) Prerequisites: skipped if kubeadm, kubelet and containerd are present.
     Otherwise containerd (systemd cgroups), kernel modules, sysctl, swap off,
     the Kubernetes package repo and kubelet/kubeadm/kubectl, then any missing
     firewall rules.
  2) Role:
     - first control plane: drop stale join credentials, `kubeadm init` on the
       private address, set controlPlaneEndpoint for later joins, publish the
       admin kubeconfig (server rewritten to the public address), install the
       overlay network, then publish api-endpoint, worker-join, master-join.
       A node that is already a member only republishes missing credentials.
     - additional control plane / worker: skipped if already a member,
       otherwise wait for the published join command and run it.

Failures are wrapped in BootstrapError naming the instance and state; nothing
is rolled back, re-running relies on the probes above.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import textwrap
import time
from typing import Optional

from kubepool.deployment.roles import invalidate_cluster_tokens
from kubepool.models.pool import (
    BootstrapStep,
    InstanceResult,
    NodeRole,
    SecretPurpose,
    secret_key,
)
from kubepool.models.settings import BootstrapSettings
from kubepool.secrets.coordination import CoordinationStore
from kubepool.utils.kubeconfig import (
    build_kubeadm_config_map,
    get_control_plane_endpoint,
    rewrite_kubeconfig_server,
    set_control_plane_endpoint,
)
from kubepool.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBECTL = f"sudo kubectl --kubeconfig {ADMIN_CONF}"

FIREWALL_RULES = (
    "-p tcp --dport 6443 -j ACCEPT",
    "-p tcp --dport 2379:2380 -j ACCEPT",
    "-p tcp --dport 10250 -j ACCEPT",
    "-p tcp --dport 10259 -j ACCEPT",
    "-p tcp --dport 10257 -j ACCEPT",
    "-p tcp --dport 30000:32767 -j ACCEPT",
    "-p udp --dport 10244 -j ACCEPT",
    "-p udp --dport 8472 -j ACCEPT",
    "-i flannel.1 -j ACCEPT",
    "-i cni0 -j ACCEPT",
)


class BootstrapError(RuntimeError):
    """Bootstrapping one instance failed.

    Attributes:
        instance: Instance name.
        step: State the instance was in when the failure happened.
    """

    def __init__(self, instance: str, step: BootstrapStep, cause: BaseException) -> None:
        super().__init__(
            f"Bootstrap of instance '{instance}' failed in state '{step.value}': {cause}"
        )
        self.instance = instance
        self.step = step
        self.cause = cause


def normalize_join_command(command: str) -> str:
    """Collapse all whitespace (including CR/LF) to single spaces."""
    return " ".join(command.split())


def _hex_upload(content: str, target: str) -> str:
    """Pipe `content` to `target` without quoting issues."""
    enc = content.encode("utf-8").hex()
    return f"echo '{enc}' | xxd -r -p | {target}"


def prerequisites_script(kubernetes_version: str) -> str:
    repo = f"https://pkgs.k8s.io/core:/stable:/{kubernetes_version}/rpm/"
    return textwrap.dedent(
        f"""\
        #!/usr/bin/env bash
        set -eux
        tdnf clean all
        tdnf update -y
        tdnf install -y curl ca-certificates moby-runc moby-containerd

        systemctl enable --now containerd
        mkdir -p /etc/containerd
        containerd config default > /etc/containerd/config.toml
        sed -i 's/SystemdCgroup = false/SystemdCgroup = true/g' /etc/containerd/config.toml
        systemctl restart containerd

        cat > /etc/modules-load.d/k8s.conf <<EOF
        overlay
        br_netfilter
        EOF
        modprobe overlay
        modprobe br_netfilter

        cat > /etc/sysctl.d/k8s.conf <<EOF
        net.bridge.bridge-nf-call-iptables  = 1
        net.bridge.bridge-nf-call-ip6tables = 1
        net.ipv4.ip_forward                 = 1
        EOF
        sysctl --system

        swapoff -a
        sed -i '/ swap / s/^\\(.*\\)$/#\\1/g' /etc/fstab

        cat > /etc/yum.repos.d/kubernetes.repo <<EOF
        [kubernetes]
        name=Kubernetes
        baseurl={repo}
        enabled=1
        gpgcheck=1
        gpgkey={repo}repodata/repomd.xml.key
        EOF
        tdnf install -y kubelet kubeadm kubectl
        systemctl enable kubelet
        """
    )


class KubeadmInstaller:
    """
    Bootstrap one instance.

    Args:
        executor: Open connection to the instance.
        store: Coordination store shared by every node of the cluster.
        cluster: Cluster name, the prefix of every coordination key.
        instance: Instance name, used in logs and errors.
        public_address: Externally reachable address of the API server.
        settings: Bootstrap tunables.
        deadline: Optional time.monotonic() value after which no new step starts.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        store: CoordinationStore,
        cluster: str,
        instance: str,
        public_address: str,
        settings: BootstrapSettings,
        deadline: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.cluster = cluster
        self.instance = instance
        self.public_address = public_address
        self.settings = settings
        self.deadline = deadline

    def _key(self, purpose: SecretPurpose) -> str:
        return secret_key(self.cluster, purpose)

    @property
    def api_endpoint(self) -> str:
        return f"{self.public_address}:{self.settings.api_server_port}"

    # ------------------------------
    # State probes
    # ------------------------------
    async def is_bootstrapped(self) -> bool:
        """kubeadm works (or at least is on PATH), and kubelet and containerd exist."""
        has_kubeadm = await self.executor.probe(
            "kubeadm version -o short 2>/dev/null"
        ) or await self.executor.probe("which kubeadm")
        if not has_kubeadm:
            return False
        for binary in ("kubelet", "containerd"):
            if not await self.executor.probe(f"which {binary}"):
                return False
        return True

    async def is_cluster_member(self) -> bool:
        port = self.settings.api_server_port
        checks = (
            (f"sudo ss -tlnp | grep -q ':{port} '", "API server port in use"),
            (
                "systemctl is-active --quiet kubelet && test -f /etc/kubernetes/kubelet.conf",
                "kubelet active with config",
            ),
            (
                'sudo test -d /var/lib/etcd && [ -n "$(sudo ls -A /var/lib/etcd)" ]',
                "etcd data exists",
            ),
            (
                "test -f /etc/kubernetes/manifests/kube-apiserver.yaml",
                "API server manifest exists",
            ),
        )
        for command, reason in checks:
            if await self.executor.probe(command):
                logger.info("%s is already a cluster member (%s)", self.instance, reason)
                return True
        return False

    # ------------------------------
    # Prerequisites
    # ------------------------------
    async def install_prerequisites(self) -> None:
        logger.info("Installing kubeadm prerequisites on %s", self.instance)
        script = prerequisites_script(self.settings.kubernetes_version)
        await self.executor.execute(_hex_upload(script, "sudo bash -s"))
        await self.ensure_firewall_rules()

    async def ensure_firewall_rules(self) -> int:
        """Insert only the missing INPUT rules; returns how many were added."""
        added = 0
        for rule in FIREWALL_RULES:
            if await self.executor.probe(f"sudo iptables -C INPUT {rule}"):
                continue
            await self.executor.execute(f"sudo iptables -I INPUT {rule}")
            added += 1

        if added:
            await self.executor.execute(
                "sudo mkdir -p /etc/iptables && "
                "sudo sh -c 'iptables-save > /etc/iptables/rules.v4'"
            )
            logger.info("Added %d firewall rule(s) on %s", added, self.instance)
        else:
            logger.info("Firewall rules already configured on %s", self.instance)
        return added

    # ------------------------------
    # Shared steps
    # ------------------------------
    async def private_address(self) -> str:
        out = await self.executor.execute("ip route get 1.1.1.1 | grep -oP 'src \\K\\S+'")
        address = out.strip()
        if not address:
            raise RuntimeError(f"Could not determine private address of {self.instance}")
        return address

    async def configure_kubectl(self) -> None:
        user = self.settings.admin_user
        home = f"/home/{user}"
        await self.executor.execute(
            f"mkdir -p {home}/.kube && "
            f"sudo cp -f {ADMIN_CONF} {home}/.kube/config && "
            f"sudo chown {user}:{user} {home}/.kube/config"
        )

    async def create_worker_join(self) -> str:
        out = await self.executor.execute(
            "sudo kubeadm token create --print-join-command 2>/dev/null",
            sensitive=True,
        )
        return normalize_join_command(out)

    async def create_certificate_key(self) -> str:
        out = await self.executor.execute(
            "sudo kubeadm init phase upload-certs --upload-certs 2>/dev/null | tail -1",
            sensitive=True,
        )
        return out.strip()

    async def publish_kubeconfig(self) -> None:
        admin_conf = await self.executor.execute(f"sudo cat {ADMIN_CONF}", sensitive=True)
        external = rewrite_kubeconfig_server(
            admin_conf, self.public_address, self.settings.api_server_port
        )
        await self.store.set(self._key(SecretPurpose.KUBECONFIG), external)

    async def ensure_control_plane_endpoint(self, private_ip: str) -> None:
        """Set controlPlaneEndpoint in the kubeadm-config ConfigMap if it is unset."""
        cluster_config = await self.executor.execute(
            f"{KUBECTL} -n kube-system get configmap kubeadm-config "
            "-o jsonpath='{.data.ClusterConfiguration}'"
        )
        if get_control_plane_endpoint(cluster_config):
            logger.info("controlPlaneEndpoint already set on %s", self.cluster)
            return
        endpoint = f"{private_ip}:{self.settings.api_server_port}"
        patched = set_control_plane_endpoint(cluster_config, endpoint)
        await self.executor.execute(
            _hex_upload(build_kubeadm_config_map(patched), f"{KUBECTL} apply -f -")
        )
        logger.info("Set controlPlaneEndpoint to %s", endpoint)

    # ------------------------------
    # Roles
    # ------------------------------
    async def install_first_control_plane(self) -> None:
        private_ip = await self.private_address()
        logger.info("Initializing control plane on %s (%s)", self.instance, private_ip)

        s = self.settings
        await self.executor.execute(
            "sudo kubeadm init"
            f" --pod-network-cidr={s.pod_network_cidr}"
            f" --apiserver-advertise-address={private_ip}"
            f" --apiserver-cert-extra-sans={self.public_address}"
            " --upload-certs"
        )
        await self.configure_kubectl()
        await self.ensure_control_plane_endpoint(private_ip)
        await self.publish_kubeconfig()

        logger.info("Installing overlay network from %s", s.overlay_manifest_url)
        await self.executor.execute(f"{KUBECTL} apply -f {s.overlay_manifest_url}")

        logger.info("Waiting %.0fs for the control plane to stabilize", s.stabilization_delay)
        await asyncio.sleep(s.stabilization_delay)

        worker_join = await self.create_worker_join()
        cert_key = await self.create_certificate_key()
        master_join = f"{worker_join} --control-plane --certificate-key {cert_key}"

        await self.store.set(self._key(SecretPurpose.API_ENDPOINT), self.api_endpoint)
        await self.store.set(self._key(SecretPurpose.WORKER_JOIN), worker_join)
        await self.store.set(self._key(SecretPurpose.MASTER_JOIN), master_join)
        logger.info("Join credentials for %s published", self.cluster)

    async def ensure_join_credentials(self) -> None:
        """On an existing first control plane, republish whatever is missing."""
        api_key = self._key(SecretPurpose.API_ENDPOINT)
        worker_key = self._key(SecretPurpose.WORKER_JOIN)
        master_key = self._key(SecretPurpose.MASTER_JOIN)
        kubeconfig_key = self._key(SecretPurpose.KUBECONFIG)

        if await self.store.try_get(api_key) is None:
            await self.store.set(api_key, self.api_endpoint)

        worker_join = await self.store.try_get(worker_key)
        if worker_join is None:
            worker_join = await self.create_worker_join()
            await self.store.set(worker_key, worker_join)

        if await self.store.try_get(master_key) is None:
            cert_key = await self.create_certificate_key()
            await self.store.set(
                master_key,
                f"{normalize_join_command(worker_join)} --control-plane --certificate-key {cert_key}",
            )

        if await self.store.try_get(kubeconfig_key) is None:
            await self.publish_kubeconfig()
        logger.info("Join credentials for %s are available", self.cluster)

    async def _join(self, purpose: SecretPurpose) -> None:
        key = self._key(purpose)
        join = await self.store.wait_for(
            key,
            max_attempts=self.settings.secret_wait_attempts,
            interval=self.settings.secret_wait_interval,
        )
        command = normalize_join_command(join)
        if not command:
            raise RuntimeError(f"Secret '{key}' holds an empty join command")
        await self.executor.execute(f"sudo bash -c {shlex.quote(command)}", sensitive=True)

    async def join_additional_control_plane(self) -> None:
        logger.info("Joining %s as additional control plane", self.instance)
        await self._join(SecretPurpose.MASTER_JOIN)
        await self.configure_kubectl()

    async def join_worker(self) -> None:
        logger.info("Joining %s as worker", self.instance)
        await self._join(SecretPurpose.WORKER_JOIN)

    async def apply_role(self, role: NodeRole) -> bool:
        """Apply `role`; returns True if the node was already a member."""
        if role == NodeRole.FIRST_CONTROL_PLANE:
            await invalidate_cluster_tokens(self.store, self.cluster)
            if await self.is_cluster_member():
                logger.info("%s already initialized, ensuring join credentials", self.instance)
                await self.ensure_join_credentials()
                return True
            await self.install_first_control_plane()
            return False

        if await self.is_cluster_member():
            logger.info("Skipping join of %s, already a cluster member", self.instance)
            return True
        if role == NodeRole.ADDITIONAL_CONTROL_PLANE:
            await self.join_additional_control_plane()
        else:
            await self.join_worker()
        return False

    # ------------------------------
    # State machine
    # ------------------------------
    def _check_deadline(self, step: BootstrapStep) -> None:
        """Refuse to start the step after `step` once the deadline has passed."""
        if self.deadline is None:
            return
        overrun = time.monotonic() - self.deadline
        if overrun > 0:
            raise BootstrapError(
                self.instance,
                step,
                TimeoutError(
                    f"instance deadline passed {overrun:.1f}s before the next step"
                ),
            )

    async def run(self, role: NodeRole) -> InstanceResult:
        """
        Drive the instance to Done as `role`.

        Raises:
            BootstrapError: On any failure, naming the state it happened in.
        """
        start = time.monotonic()
        step = BootstrapStep.NOT_STARTED
        logger.info("=== %s: bootstrapping as %s ===", self.instance, role.value)
        try:
            self._check_deadline(step)
            if await self.is_bootstrapped():
                logger.info("%s already bootstrapped, skipping prerequisites", self.instance)
            else:
                await self.install_prerequisites()
            step = BootstrapStep.PREREQUISITES_ENSURED

            self._check_deadline(step)
            skipped = await self.apply_role(role)
            step = BootstrapStep.ROLE_APPLIED
            logger.info("%s: %s role applied", self.instance, role.value)

            # Finished work is never failed retroactively by the deadline.
            step = BootstrapStep.DONE
        except BootstrapError:
            raise
        except Exception as ex:
            raise BootstrapError(self.instance, step, ex) from ex

        elapsed = time.monotonic() - start
        logger.info("=== %s: done as %s in %.0fs ===", self.instance, role.value, elapsed)
        return InstanceResult(
            instance=self.instance,
            role=role,
            step=step,
            skipped=skipped,
            elapsed_seconds=elapsed,
        )

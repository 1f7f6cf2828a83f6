# kubepool/models/settings.py

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BootstrapSettings(BaseSettings):
    """
    Tunables for a pool bootstrap pass. Every field maps to a `KUBEPOOL_`
    environment variable, e.g. KUBEPOOL_SECRET_WAIT_ATTEMPTS=10.
    """

    model_config = SettingsConfigDict(env_prefix="KUBEPOOL_")

    # Coordination store
    coordination_prefix: str = "kubepool/coordination"
    secret_wait_attempts: int = Field(default=60, ge=1)
    secret_wait_interval: float = Field(default=30.0, ge=0)
    purge_delay: float = Field(default=2.0, ge=0)

    # Cluster health / instance discovery
    health_timeout: float = Field(default=10.0, gt=0)
    running_timeout: float = Field(default=600.0, ge=0)
    running_poll_interval: float = Field(default=30.0, ge=0)
    pool_role_tag: str = "kubepool"

    # SSH
    ssh_user: str = "azureuser"
    ssh_private_key_path: str = "~/.ssh/id_rsa"
    ssh_known_hosts_path: Optional[str] = None
    ssh_connect_timeout: float = 30.0
    ssh_connect_retries: int = Field(default=10, ge=1)
    ssh_connect_retry_delay: float = Field(default=6.0, ge=0)

    # Kubernetes
    admin_user: str = "azureuser"
    kubernetes_version: str = "v1.33"
    pod_network_cidr: str = "10.244.0.0/16"
    api_server_port: int = 6443
    overlay_manifest_url: str = (
        "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"
    )
    stabilization_delay: float = Field(default=60.0, ge=0)

    # Orchestration
    worker_concurrency: int = Field(default=1, ge=1)
    instance_timeout: Optional[float] = Field(default=None, gt=0)

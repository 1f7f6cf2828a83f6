"""
kubepool/utils/kubeconfig.py

YAML rewrites applied to documents read from the first control plane:
  - rewrite_kubeconfig_server: point every cluster entry of the admin
    kubeconfig at the externally reachable API address.
  - set_control_plane_endpoint: set `controlPlaneEndpoint` in a kubeadm
    ClusterConfiguration, which kubeadm requires before further control
    planes can join.
"""

from typing import Any, Dict

import yaml


def _load_mapping(document: str, what: str) -> Dict[str, Any]:
    data = yaml.safe_load(document)
    if not isinstance(data, dict):
        raise ValueError(f"{what} is not a YAML mapping")
    return data


def rewrite_kubeconfig_server(kubeconfig: str, address: str, port: int) -> str:
    """
    Returns:
        The kubeconfig with each `clusters[].cluster.server` set to
        `https://{address}:{port}`.

    Raises:
        ValueError: If the document has no clusters.
    """
    data = _load_mapping(kubeconfig, "kubeconfig")
    clusters = data.get("clusters")
    if not isinstance(clusters, list) or not clusters:
        raise ValueError("kubeconfig defines no clusters")

    for entry in clusters:
        cluster = entry.get("cluster") if isinstance(entry, dict) else None
        if isinstance(cluster, dict):
            cluster["server"] = f"https://{address}:{port}"
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def get_control_plane_endpoint(cluster_configuration: str) -> str:
    data = _load_mapping(cluster_configuration, "ClusterConfiguration")
    return str(data.get("controlPlaneEndpoint") or "")


def set_control_plane_endpoint(cluster_configuration: str, endpoint: str) -> str:
    data = _load_mapping(cluster_configuration, "ClusterConfiguration")
    data["controlPlaneEndpoint"] = endpoint
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def build_kubeadm_config_map(cluster_configuration: str) -> str:
    """A minimal ConfigMap manifest that `kubectl apply` merges into kubeadm-config."""
    manifest = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "kubeadm-config", "namespace": "kube-system"},
        "data": {"ClusterConfiguration": cluster_configuration},
    }
    return yaml.safe_dump(manifest, default_flow_style=False, sort_keys=False)

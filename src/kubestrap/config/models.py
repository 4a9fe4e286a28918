# src/kubestrap/config/models.py

from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ConnectionSpec(BaseModel):
    """
    How to reach a host over SSH. Secrets are referenced by the name of the
    environment variable that holds them, never inlined.
    """
    username: str = "root"
    port: int = 22
    pkey_path: Optional[Path] = None
    password_env: Optional[str] = None
    become_password_env: Optional[str] = None
    connect_timeout: float = 20.0


class HostSpec(BaseModel):
    address: str
    name: Optional[str] = None          # registry identifier, defaults to address
    node_name: Optional[str] = None     # kubernetes node name, defaults to name/address
    connection: Optional[ConnectionSpec] = None


class ClusterSpec(BaseModel):
    name: str = "kubernetes"
    kubernetes_version: Optional[str] = None
    kube_apt_channel: str = "v1.30"
    pod_network_cidr: str = "10.244.0.0/16"
    api_port: int = 6443
    cni_manifest: str = "https://raw.githubusercontent.com/projectcalico/calico/v3.27.3/manifests/calico.yaml"
    cni_daemonset: str = "calico-node"
    token_ttl_seconds: int = Field(default=7200, ge=0)   # 0 = never expires
    membership_marker: str = "/etc/kubernetes/kubelet.conf"
    admin_kubeconfig: str = "/etc/kubernetes/admin.conf"


class RunDefaults(BaseModel):
    step_timeout: float = 600.0
    retries: int = Field(default=0, ge=0)
    backoff_seconds: float = 5.0
    max_parallel: int = Field(default=10, ge=1)
    reachability_timeout: float = 60.0
    poll_interval: float = 2.0


class KubestrapConfig(BaseModel):
    cluster: ClusterSpec = ClusterSpec()
    connection: ConnectionSpec = ConnectionSpec()
    # role name -> host descriptors; roles are validated by the host registry
    inventory: Dict[str, Union[str, HostSpec, List[Union[str, HostSpec]]]]
    run: RunDefaults = RunDefaults()
    state_file: Path = Path(".kubestrap/state.json")
    steps_file: Optional[Path] = None

    def variables(self) -> Dict[str, object]:
        """Template variables shared by every step of a run."""
        return {
            "cluster_name": self.cluster.name,
            "kubernetes_version": self.cluster.kubernetes_version,
            "kube_apt_channel": self.cluster.kube_apt_channel,
            "pod_network_cidr": self.cluster.pod_network_cidr,
            "api_port": self.cluster.api_port,
            "cni_manifest": self.cluster.cni_manifest,
            "cni_daemonset": self.cluster.cni_daemonset,
            "membership_marker": self.cluster.membership_marker,
            "admin_kubeconfig": self.cluster.admin_kubeconfig,
        }

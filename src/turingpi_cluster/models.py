"""Node and cluster data model.

Cluster descriptions are YAML documents that name a backend (`k3s` or
`talos`) and describe control-plane and worker nodes. This module turns them
into immutable dataclasses and validates the per-backend rules.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_SSH_PORT = 22
DEFAULT_POD_CIDR = "10.244.0.0/16"
DEFAULT_SERVICE_CIDR = "10.96.0.0/12"
DEFAULT_INSTALL_TIMEOUT = 600
DEFAULT_BOOTSTRAP_TIMEOUT = 600
DEFAULT_INSTALL_DISK = "/dev/mmcblk0"
K3S_API_PORT = 6443


class Backend(Enum):
    """Provisioning strategy."""

    K3S = "k3s"
    TALOS = "talos"


class ClusterStatus(Enum):
    """Cluster health as last derived from a live signal."""

    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    DEGRADED = "degraded"


# ── Add-ons ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LoadBalancerSpec:
    """MetalLB layer-2 load balancer."""

    ip_range: str
    enabled: bool = True
    chart_version: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LoadBalancerSpec | None:
        if not data:
            return None
        ip_range = data.get("ip_range")
        if not ip_range:
            raise ConfigError("metallb.ip_range is required")
        return cls(
            ip_range=str(ip_range),
            enabled=bool(data.get("enabled", True)),
            chart_version=str(data.get("version") or ""),
        )


@dataclass(frozen=True)
class IngressSpec:
    """NGINX ingress controller."""

    enabled: bool = True
    ip: str = ""
    chart_version: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> IngressSpec | None:
        if not data:
            return None
        return cls(
            enabled=bool(data.get("enabled", True)),
            ip=str(data.get("ip") or ""),
            chart_version=str(data.get("version") or ""),
        )


# ── K3s ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SSHCredentials:
    """SSH login for one node. A private key wins over a password."""

    user: str
    private_key: str | None = None
    private_key_path: str | None = None
    password: str | None = None

    def __repr__(self) -> str:
        return (
            f"SSHCredentials(user={self.user!r}, key={self.has_key}, "
            f"password={bool(self.password)})"
        )

    @property
    def has_key(self) -> bool:
        return bool(self.private_key or self.private_key_path)


@dataclass(frozen=True)
class NodeConfig:
    """A node reachable over SSH."""

    host: str
    credentials: SSHCredentials
    port: int = DEFAULT_SSH_PORT
    hostname: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], where: str = "node") -> NodeConfig:
        if not isinstance(data, dict):
            raise ConfigError(f"{where} must be a mapping")
        host = data.get("host")
        user = data.get("ssh_user")
        if not host:
            raise ConfigError(f"{where}.host is required")
        if not user:
            raise ConfigError(f"{where}.ssh_user is required")
        credentials = SSHCredentials(
            user=str(user),
            private_key=data.get("ssh_key") or None,
            private_key_path=data.get("ssh_key_path") or None,
            password=data.get("ssh_password") or None,
        )
        if not credentials.has_key and not credentials.password:
            raise ConfigError(f"{where} needs ssh_key, ssh_key_path or ssh_password")
        return cls(
            host=str(host),
            credentials=credentials,
            port=int(data.get("ssh_port", DEFAULT_SSH_PORT)),
            hostname=data.get("hostname") or None,
        )

    @property
    def identifiers(self) -> tuple[str, ...]:
        """Names this node may appear under in `kubectl get nodes`."""
        if self.hostname:
            return (self.hostname, self.host)
        return (self.host,)


@dataclass(frozen=True)
class ClusterConfig:
    """K3s cluster: one server, any number of agents."""

    name: str
    control_plane: NodeConfig
    workers: tuple[NodeConfig, ...] = ()
    version: str = ""
    token: str = ""
    pod_cidr: str = DEFAULT_POD_CIDR
    service_cidr: str = DEFAULT_SERVICE_CIDR
    install_timeout: int = DEFAULT_INSTALL_TIMEOUT
    kubeconfig_path: str | None = None
    load_balancer: LoadBalancerSpec | None = None
    ingress: IngressSpec | None = None

    backend = Backend.K3S

    @property
    def api_endpoint(self) -> str:
        return f"https://{self.control_plane.host}:{K3S_API_PORT}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterConfig:
        name = data.get("name")
        if not name:
            raise ConfigError("name is required")

        control_plane = data.get("control_plane")
        if isinstance(control_plane, list):
            if len(control_plane) != 1:
                raise ConfigError(
                    f"k3s needs exactly one control plane, got {len(control_plane)}"
                )
            control_plane = control_plane[0]
        if not control_plane:
            raise ConfigError("control_plane is required")

        workers = data.get("workers") or data.get("worker") or []
        return cls(
            name=str(name),
            control_plane=NodeConfig.from_dict(control_plane, "control_plane"),
            workers=tuple(
                NodeConfig.from_dict(w, f"workers[{i}]") for i, w in enumerate(workers)
            ),
            version=str(data.get("k3s_version") or ""),
            token=str(data.get("cluster_token") or ""),
            pod_cidr=str(data.get("pod_cidr") or DEFAULT_POD_CIDR),
            service_cidr=str(data.get("service_cidr") or DEFAULT_SERVICE_CIDR),
            install_timeout=int(data.get("install_timeout", DEFAULT_INSTALL_TIMEOUT)),
            kubeconfig_path=data.get("kubeconfig_path") or None,
            load_balancer=LoadBalancerSpec.from_dict(data.get("metallb")),
            ingress=IngressSpec.from_dict(data.get("ingress")),
        )


@dataclass
class ClusterState:
    """Computed K3s cluster attributes."""

    token: str = ""
    kubeconfig: str = ""
    node_token: str = ""
    api_endpoint: str = ""
    status: ClusterStatus = ClusterStatus.BOOTSTRAPPING
    version: str = ""
    node_names: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterState:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ClusterStatus(values.get("status", "bootstrapping"))
        return cls(**values)


# ── Talos ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TalosNodeConfig:
    """A Talos node. No credentials: maintenance mode, then mTLS via talosconfig."""

    host: str
    hostname: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], where: str = "node") -> TalosNodeConfig:
        if isinstance(data, str):
            return cls(host=data)
        if not isinstance(data, dict) or not data.get("host"):
            raise ConfigError(f"{where}.host is required")
        return cls(host=str(data["host"]), hostname=data.get("hostname") or None)


@dataclass(frozen=True)
class TalosClusterConfig:
    """Talos cluster. Every field is fixed once the cluster exists."""

    name: str
    endpoint: str
    control_planes: tuple[TalosNodeConfig, ...]
    workers: tuple[TalosNodeConfig, ...] = ()
    install_disk: str = DEFAULT_INSTALL_DISK
    kubernetes_version: str = ""
    allow_scheduling_on_control_plane: bool = True
    bootstrap_timeout: int = DEFAULT_BOOTSTRAP_TIMEOUT
    kubeconfig_path: str | None = None
    talosconfig_path: str | None = None
    secrets_path: str | None = None
    load_balancer: LoadBalancerSpec | None = None
    ingress: IngressSpec | None = None

    backend = Backend.TALOS

    @property
    def first_control_plane(self) -> str:
        return self.control_planes[0].host

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TalosClusterConfig:
        name = data.get("name")
        endpoint = data.get("cluster_endpoint") or data.get("endpoint")
        if not name:
            raise ConfigError("name is required")
        if not endpoint:
            raise ConfigError("cluster_endpoint is required")

        control_planes = data.get("control_planes") or data.get("control_plane") or []
        if isinstance(control_planes, dict):
            control_planes = [control_planes]
        if not control_planes:
            raise ConfigError("talos needs at least one control plane")

        workers = data.get("workers") or data.get("worker") or []
        return cls(
            name=str(name),
            endpoint=str(endpoint),
            control_planes=tuple(
                TalosNodeConfig.from_dict(cp, f"control_planes[{i}]")
                for i, cp in enumerate(control_planes)
            ),
            workers=tuple(
                TalosNodeConfig.from_dict(w, f"workers[{i}]") for i, w in enumerate(workers)
            ),
            install_disk=str(data.get("install_disk") or DEFAULT_INSTALL_DISK),
            kubernetes_version=str(data.get("kubernetes_version") or ""),
            allow_scheduling_on_control_plane=bool(
                data.get("allow_scheduling_on_control_plane", True)
            ),
            bootstrap_timeout=int(data.get("bootstrap_timeout", DEFAULT_BOOTSTRAP_TIMEOUT)),
            kubeconfig_path=data.get("kubeconfig_path") or None,
            talosconfig_path=data.get("talosconfig_path") or None,
            secrets_path=data.get("secrets_path") or None,
            load_balancer=LoadBalancerSpec.from_dict(data.get("metallb")),
            ingress=IngressSpec.from_dict(data.get("ingress")),
        )


@dataclass
class TalosClusterState:
    """Computed Talos cluster attributes. `secrets_yaml` must be kept safe."""

    secrets_yaml: str = ""
    talosconfig: str = ""
    kubeconfig: str = ""
    api_endpoint: str = ""
    status: ClusterStatus = ClusterStatus.BOOTSTRAPPING
    control_plane_ips: list[str] = field(default_factory=list)
    worker_ips: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TalosClusterState:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ClusterStatus(values.get("status", "bootstrapping"))
        return cls(**values)


# ── Loading ────────────────────────────────────────────────────────

AnyClusterConfig = ClusterConfig | TalosClusterConfig

# Fields that can change without rebuilding the cluster
K3S_MUTABLE_FIELDS = {"load_balancer", "ingress", "install_timeout", "kubeconfig_path"}
TALOS_MUTABLE_FIELDS = {"load_balancer", "ingress"}


def parse_cluster(data: dict[str, Any]) -> AnyClusterConfig:
    """Build a cluster config from a description mapping.

    Raises:
        ConfigError: Unknown backend or invalid description.
    """
    if not isinstance(data, dict):
        raise ConfigError("cluster description must be a mapping")
    backend = str(data.get("backend", "k3s")).lower()
    try:
        kind = Backend(backend)
    except ValueError:
        raise ConfigError(f"Unknown backend: {backend} (expected k3s or talos)")
    try:
        if kind == Backend.K3S:
            return ClusterConfig.from_dict(data)
        return TalosClusterConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid cluster description: {e}") from e


def load_cluster_file(path: str | Path) -> tuple[AnyClusterConfig, dict[str, Any]]:
    """Load a YAML cluster description.

    Returns:
        Tuple of (parsed config, raw description mapping).
    """
    file_path = Path(path)
    try:
        with file_path.open() as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {file_path}: {e}") from e
    return parse_cluster(data), data


def changed_fields(old: AnyClusterConfig, new: AnyClusterConfig) -> list[str]:
    """List top-level fields that differ between two configs of one backend."""
    return [f.name for f in fields(old) if getattr(old, f.name) != getattr(new, f.name)]


def replacement_fields(old: AnyClusterConfig, new: AnyClusterConfig) -> list[str]:
    """Changed fields that force destroying and recreating the cluster."""
    if type(old) is not type(new):
        return ["backend"]
    mutable = K3S_MUTABLE_FIELDS if isinstance(new, ClusterConfig) else TALOS_MUTABLE_FIELDS
    result = []
    for name in changed_fields(old, new):
        if name in mutable:
            continue
        # An empty token means "keep the generated one"
        if name == "token" and not new.token:
            continue
        result.append(name)
    return result

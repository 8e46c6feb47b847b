"""Persisted cluster records.

Each cluster managed by the CLI has one YAML document under
<state_dir>/clusters/<name>.yaml holding the description it was created from
and its computed state. Records hold tokens, kubeconfigs and Talos secrets,
so they are written owner-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from .errors import ConfigError
from .models import AnyClusterConfig, ClusterState, TalosClusterState, parse_cluster
from .shared.paths import TURINGPI_DIR, ensure_dirs, remove_file, write_private_file

logger = structlog.get_logger(__name__)


@dataclass
class ClusterRecord:
    """A cluster as last persisted."""

    name: str
    backend: str
    description: dict[str, Any]
    state: ClusterState | TalosClusterState

    @property
    def config(self) -> AnyClusterConfig:
        return parse_cluster(self.description)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "backend": self.backend,
            "description": self.description,
            "state": self.state.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterRecord:
        backend = data.get("backend", "k3s")
        state_data = data.get("state") or {}
        state: ClusterState | TalosClusterState
        if backend == "talos":
            state = TalosClusterState.from_dict(state_data)
        else:
            state = ClusterState.from_dict(state_data)
        return cls(
            name=data["name"],
            backend=backend,
            description=data.get("description") or {},
            state=state,
        )


class StateStore:
    """Read and write cluster records."""

    def __init__(self, base_dir: Path | None = None):
        """Initialize the store.

        Args:
            base_dir: Base directory for turingpi data (default: ~/.turingpi)
        """
        self.base_dir = base_dir or TURINGPI_DIR
        self.clusters_dir = self.base_dir / "clusters"

    def path_for(self, name: str) -> Path:
        if not name or "/" in name or name.startswith("."):
            raise ConfigError(f"Invalid cluster name: {name!r}")
        return self.clusters_dir / f"{name}.yaml"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def load(self, name: str) -> ClusterRecord | None:
        """Load a record.

        Returns:
            The record, or None if the cluster is unknown.

        Raises:
            ConfigError: The record exists but cannot be parsed.
        """
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            return ClusterRecord.from_dict(data)
        except (OSError, yaml.YAMLError, KeyError, ValueError) as e:
            raise ConfigError(f"Corrupt state file {path}: {e}") from e

    def save(self, record: ClusterRecord) -> Path:
        """Write a record, replacing any previous one."""
        ensure_dirs(self.base_dir)
        path = self.path_for(record.name)
        write_private_file(
            path, yaml.safe_dump(record.to_dict(), default_flow_style=False, sort_keys=False)
        )
        logger.debug("Saved cluster state", cluster=record.name, path=str(path))
        return path

    def delete(self, name: str) -> bool:
        """Remove a record.

        Returns:
            True if a record was removed.
        """
        return remove_file(self.path_for(name))

    def list_names(self) -> list[str]:
        if not self.clusters_dir.exists():
            return []
        return sorted(p.stem for p in self.clusters_dir.glob("*.yaml"))

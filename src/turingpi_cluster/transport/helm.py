"""Helm chart installation through the helm CLI."""

from __future__ import annotations

import json
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

from ..errors import ClusterError, CommandError
from ..polling import Poller
from .process import run_tool

logger = structlog.get_logger(__name__)

DEFAULT_CHART_TIMEOUT = 300


class ReleaseStatus(Enum):
    """Helm release status (`helm status -o json` .info.status)."""

    DEPLOYED = "deployed"
    FAILED = "failed"
    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"
    SUPERSEDED = "superseded"
    UNINSTALLING = "uninstalling"
    UNINSTALLED = "uninstalled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> ReleaseStatus:
        try:
            return cls(value or "unknown")
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_pending(self) -> bool:
        return self.value.startswith("pending")


@dataclass(frozen=True)
class ChartSpec:
    """A chart release to install or upgrade."""

    release_name: str
    chart: str
    namespace: str
    version: str = ""
    values: dict[str, Any] = field(default_factory=dict)
    create_namespace: bool = True
    wait: bool = True
    timeout: int = DEFAULT_CHART_TIMEOUT
    # Roll back and clean up on failure
    atomic: bool = False


@dataclass(frozen=True)
class Release:
    """An installed release."""

    name: str
    namespace: str
    status: ReleaseStatus
    revision: int = 0
    description: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Release:
        info = data.get("info") or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            status=ReleaseStatus.parse(info.get("status")),
            revision=int(data.get("version") or 0),
            description=info.get("description", ""),
        )


class ChartInstaller(Protocol):
    """Install charts into one cluster."""

    def add_repository(self, name: str, url: str) -> None: ...

    def install_or_upgrade(self, spec: ChartSpec) -> Release: ...

    def get_release(self, name: str, namespace: str) -> Release: ...

    def uninstall(self, name: str, namespace: str) -> None: ...


class HelmCLI:
    """ChartInstaller backed by the helm binary."""

    def __init__(self, kubeconfig_path: str | Path, binary: str = "helm"):
        """Initialize the installer.

        Args:
            kubeconfig_path: Kubeconfig of the target cluster.
            binary: helm executable.
        """
        self.kubeconfig_path = str(kubeconfig_path)
        self.binary = binary

    def _helm_cmd(self, *args: str) -> list[str]:
        return [self.binary, *args, "--kubeconfig", self.kubeconfig_path]

    def add_repository(self, name: str, url: str) -> None:
        """Add (or refresh) a chart repository."""
        logger.debug("Adding helm repository", name=name, url=url)
        run_tool([self.binary, "repo", "add", name, url, "--force-update"])
        run_tool([self.binary, "repo", "update", name])

    def install_or_upgrade(self, spec: ChartSpec) -> Release:
        """Install the release, or upgrade it if it exists.

        Raises:
            CommandError: helm failed (including a wait timeout).
        """
        args = [
            "upgrade",
            "--install",
            spec.release_name,
            spec.chart,
            "--namespace",
            spec.namespace,
            "--timeout",
            f"{spec.timeout}s",
            "-o",
            "json",
        ]
        if spec.create_namespace:
            args.append("--create-namespace")
        if spec.wait:
            args.append("--wait")
        if spec.atomic:
            args.extend(["--atomic", "--cleanup-on-fail"])
        if spec.version:
            args.extend(["--version", spec.version])

        logger.info(f"Installing chart {spec.chart} as {spec.namespace}/{spec.release_name}")
        with tempfile.TemporaryDirectory(prefix="turingpi-helm-") as tmp:
            if spec.values:
                values_file = Path(tmp) / "values.yaml"
                values_file.write_text(yaml.safe_dump(spec.values, default_flow_style=False))
                args.extend(["--values", str(values_file)])
            output = run_tool(self._helm_cmd(*args), timeout=spec.timeout + 60)
        return _parse_release(output, spec.release_name, spec.namespace)

    def get_release(self, name: str, namespace: str) -> Release:
        """Fetch the current status of a release.

        Raises:
            CommandError: Release not found or helm failed.
        """
        output = run_tool(self._helm_cmd("status", name, "--namespace", namespace, "-o", "json"))
        return _parse_release(output, name, namespace)

    def uninstall(self, name: str, namespace: str) -> None:
        run_tool(self._helm_cmd("uninstall", name, "--namespace", namespace))


def _parse_release(output: str, name: str, namespace: str) -> Release:
    try:
        return Release.from_json(json.loads(output))
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        raise CommandError(
            f"Unreadable helm output for {namespace}/{name}: {e}", output=output
        ) from e


def wait_for_release(
    installer: ChartInstaller,
    name: str,
    namespace: str,
    timeout: float,
    poller: Poller | None = None,
) -> Release:
    """Poll until a release is deployed.

    Pending states keep the poll going; a failed release stops it.

    Raises:
        ClusterError: The release reached `failed`.
        WaitTimeoutError: Still not deployed at the deadline.
    """
    poller = poller or Poller()
    seen: dict[str, Release] = {}

    def _deployed() -> bool:
        release = installer.get_release(name, namespace)
        seen["last"] = release
        if release.status == ReleaseStatus.FAILED:
            raise ClusterError(
                f"release {namespace}/{name} failed: {release.description}", step="helm"
            )
        return release.status == ReleaseStatus.DEPLOYED

    poller.wait(_deployed, timeout, description=f"helm release {namespace}/{name}")
    return seen["last"]

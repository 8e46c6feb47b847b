"""Kubernetes object management through kubectl."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

import structlog

from .process import run_tool

logger = structlog.get_logger(__name__)


class KubeClient(Protocol):
    """Apply, delete and query objects in one cluster."""

    def apply(self, manifest_yaml: str) -> str: ...

    def delete(self, manifest_yaml: str) -> str: ...

    def get(
        self,
        kind: str,
        name: str | None = None,
        namespace: str | None = None,
        selector: str | None = None,
        output: str | None = None,
    ) -> str: ...


class KubectlClient:
    """KubeClient backed by the kubectl binary."""

    def __init__(self, kubeconfig_path: str | Path | None = None, binary: str = "kubectl"):
        """Initialize the client.

        Args:
            kubeconfig_path: Path to kubeconfig file.
            binary: kubectl executable.
        """
        self.kubeconfig_path = str(kubeconfig_path) if kubeconfig_path else None
        self.binary = binary

    def _kubectl_cmd(self) -> list[str]:
        """Build base kubectl command."""
        cmd = [self.binary]
        if self.kubeconfig_path:
            cmd.extend(["--kubeconfig", self.kubeconfig_path])
        return cmd

    def apply(self, manifest_yaml: str) -> str:
        """Apply a (multi-document) manifest read from stdin.

        Raises:
            CommandError: kubectl rejected the manifest.
        """
        return run_tool(self._kubectl_cmd() + ["apply", "-f", "-"], stdin=manifest_yaml)

    def delete(self, manifest_yaml: str) -> str:
        """Delete the objects in a manifest; missing objects are not an error."""
        return run_tool(
            self._kubectl_cmd() + ["delete", "--ignore-not-found", "-f", "-"],
            stdin=manifest_yaml,
        )

    def get(
        self,
        kind: str,
        name: str | None = None,
        namespace: str | None = None,
        selector: str | None = None,
        output: str | None = None,
    ) -> str:
        """Run `kubectl get` and return stdout.

        Raises:
            CommandError: Object missing or API unreachable.
        """
        cmd = self._kubectl_cmd() + ["get", kind]
        if name:
            cmd.append(name)
        if namespace:
            cmd.extend(["-n", namespace])
        if selector:
            cmd.extend(["-l", selector])
        if output:
            cmd.extend(["-o", output])
        return run_tool(cmd)

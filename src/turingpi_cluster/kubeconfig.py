"""Kubeconfig text helpers."""

from __future__ import annotations

import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import yaml

from .errors import ConfigError
from .shared.paths import write_private_file

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "0.0.0.0")

_SERVER_RE = re.compile(r"^(\s*server:\s*https?://)([^:/\s]+)", re.MULTILINE)


def rewrite_server_host(kubeconfig: str, host: str) -> str:
    """Point loopback `server:` entries at the node's routable address.

    K3s writes its kubeconfig for use on the server itself. Only loopback
    hosts are replaced; anything else is left as is.

    Args:
        kubeconfig: Kubeconfig YAML text.
        host: Address clients use to reach the API server.

    Returns:
        Rewritten kubeconfig text.
    """

    def _replace(match: re.Match[str]) -> str:
        if match.group(2) in LOOPBACK_HOSTS:
            return f"{match.group(1)}{host}"
        return match.group(0)

    return _SERVER_RE.sub(_replace, kubeconfig)


def extract_server(kubeconfig: str) -> str:
    """Return the `server` URL of the first cluster entry.

    Raises:
        ConfigError: Text is not a kubeconfig with at least one cluster.
    """
    try:
        data = yaml.safe_load(kubeconfig) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid kubeconfig: {e}") from e
    clusters = data.get("clusters") if isinstance(data, dict) else None
    if not clusters:
        raise ConfigError("Kubeconfig has no clusters")
    server = (clusters[0].get("cluster") or {}).get("server")
    if not server:
        raise ConfigError("Kubeconfig cluster entry has no server")
    return str(server)


@contextmanager
def temporary_kubeconfig(content: str) -> Iterator[Path]:
    """Write kubeconfig text to an owner-only temp file for CLI tools."""
    with tempfile.TemporaryDirectory(prefix="turingpi-kube-") as tmp:
        yield write_private_file(Path(tmp) / "kubeconfig", content)

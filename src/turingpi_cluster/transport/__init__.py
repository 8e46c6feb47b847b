"""Narrow interfaces to the outside world and their production implementations.

- ssh: RemoteExecutor (paramiko)
- talosctl: TalosctlRunner (subprocess)
- helm: ChartInstaller (helm CLI)
- kubectl: KubeClient (kubectl CLI)
- api: APIReachability (httpx)
"""

from .api import APIReachability, KubeAPIReachability, build_http_client
from .helm import ChartInstaller, ChartSpec, HelmCLI, Release, ReleaseStatus, wait_for_release
from .kubectl import KubeClient, KubectlClient
from .ssh import (
    ExecutorFactory,
    ParamikoExecutor,
    RemoteExecutor,
    check_connectivity,
    run_remote_command,
    wait_for_ssh,
)
from .talosctl import SubprocessTalosctl, TalosctlRunner

__all__ = [
    # SSH
    "RemoteExecutor",
    "ExecutorFactory",
    "ParamikoExecutor",
    "run_remote_command",
    "check_connectivity",
    "wait_for_ssh",
    # talosctl
    "TalosctlRunner",
    "SubprocessTalosctl",
    # helm
    "ChartInstaller",
    "ChartSpec",
    "HelmCLI",
    "Release",
    "ReleaseStatus",
    "wait_for_release",
    # kubectl
    "KubeClient",
    "KubectlClient",
    # API
    "APIReachability",
    "KubeAPIReachability",
    "build_http_client",
]

"""K3s installation over SSH.

Every operation opens its own SSH session through the executor factory, so a
node that drops its connection while the k3s service restarts is simply
reconnected on the next poll.
"""

from __future__ import annotations

import secrets
import shlex

import structlog

from .errors import CommandError
from .kubeconfig import rewrite_server_host
from .models import ClusterConfig, NodeConfig
from .parsing import (
    is_installed_marker,
    node_is_ready,
    parse_node_names,
    parse_version,
)
from .polling import Poller
from .transport.ssh import (
    ExecutorFactory,
    ParamikoExecutor,
    check_connectivity,
    run_remote_command,
)

logger = structlog.get_logger(__name__)

INSTALL_SCRIPT_URL = "https://get.k3s.io"
INSTALL_SCRIPT_PATH = "/tmp/k3s-install.sh"
K3S_BINARY = "/usr/local/bin/k3s"
SERVER_UNINSTALL_SCRIPT = "/usr/local/bin/k3s-uninstall.sh"
AGENT_UNINSTALL_SCRIPT = "/usr/local/bin/k3s-agent-uninstall.sh"
NODE_TOKEN_PATH = "/var/lib/rancher/k3s/server/node-token"
KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"
CONFIG_DIR = "/etc/rancher/k3s"

CHECK_INSTALLED_CMD = f"test -f {K3S_BINARY} && echo 'installed' || echo 'not_installed'"
DOWNLOAD_CMD = (
    f"curl -sfL {INSTALL_SCRIPT_URL} -o {INSTALL_SCRIPT_PATH} && chmod +x {INSTALL_SCRIPT_PATH}"
)
GET_NODES_CMD = "k3s kubectl get nodes -o wide 2>/dev/null"
NODE_NAMES_CMD = "k3s kubectl get nodes -o name 2>/dev/null"
VERSION_CMD = "k3s --version 2>/dev/null | head -1"


def generate_cluster_token() -> str:
    """Return a fresh 64-character hex join token."""
    return secrets.token_hex(32)


def _env_prefix(env: dict[str, str]) -> str:
    return " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items() if value)


class K3sProvisioner:
    """Install, query and remove K3s on nodes reachable over SSH."""

    def __init__(
        self, executor_factory: ExecutorFactory | None = None, poller: Poller | None = None
    ):
        """Initialize provisioner.

        Args:
            executor_factory: Builds an unconnected RemoteExecutor.
            poller: Interval and cancellation for readiness waits.
        """
        self.executor_factory = executor_factory or ParamikoExecutor
        self.poller = poller or Poller()

    def _run(self, node: NodeConfig, command: str) -> str:
        return run_remote_command(self.executor_factory, node, command)

    def _prepare(self, node: NodeConfig) -> None:
        self._run(node, "swapoff -a")
        self._run(node, f"mkdir -p {CONFIG_DIR}")

    def is_reachable(self, node: NodeConfig) -> bool:
        """Try one SSH connection to the node."""
        return check_connectivity(self.executor_factory, node)

    def check_installed(self, node: NodeConfig) -> bool:
        """Check for the k3s binary on a node."""
        return is_installed_marker(self._run(node, CHECK_INSTALLED_CMD))

    # ── Server ─────────────────────────────────────────────────────

    def install_control_plane(
        self, node: NodeConfig, config: ClusterConfig, timeout: float
    ) -> None:
        """Install the K3s server and wait for it to report Ready.

        Already installed nodes are not reinstalled; the service is started.

        Raises:
            CommandError: A preparation or install step failed.
            WaitTimeoutError: The server never became Ready.
        """
        log = logger.bind(node=node.host, role="server")
        self._prepare(node)

        if self.check_installed(node):
            log.info("K3s already installed, starting service")
            self._run(node, "systemctl start k3s")
        else:
            log.info("Installing K3s server", version=config.version or "stable")
            self._run(node, DOWNLOAD_CMD)
            env = _env_prefix({"INSTALL_K3S_VERSION": config.version, "K3S_TOKEN": config.token})
            args = [
                "server",
                "--cluster-cidr",
                config.pod_cidr,
                "--service-cidr",
                config.service_cidr,
            ]
            if node.hostname:
                args.extend(["--node-name", node.hostname])
            self._run(node, f"{env} {INSTALL_SCRIPT_PATH} {shlex.join(args)}".strip())

        self.wait_for_ready(node, timeout)
        log.info("K3s server ready")

    def wait_for_ready(self, node: NodeConfig, timeout: float) -> int:
        """Poll the server until its own node reports Ready."""
        return self.poller.wait(
            lambda: node_is_ready(self._run(node, GET_NODES_CMD), node.identifiers),
            timeout,
            description=f"K3s server on {node.host}",
        )

    def get_node_token(self, node: NodeConfig) -> str:
        """Read the agent join token from the server."""
        return self._run(node, f"cat {NODE_TOKEN_PATH}").strip()

    def get_kubeconfig(self, node: NodeConfig) -> str:
        """Read the admin kubeconfig, pointed at the node's address."""
        return rewrite_server_host(self._run(node, f"cat {KUBECONFIG_PATH}"), node.host)

    def get_version(self, node: NodeConfig) -> str:
        """Return the installed version string, e.g. `v1.29.4+k3s1`."""
        return parse_version(self._run(node, VERSION_CMD))

    def get_cluster_nodes(self, node: NodeConfig) -> list[str]:
        """List node names as seen by the server."""
        return parse_node_names(self._run(node, NODE_NAMES_CMD))

    def uninstall_control_plane(self, node: NodeConfig) -> bool:
        """Run the server uninstall script if present.

        Returns:
            False if K3s was not installed.
        """
        return self._uninstall(node, SERVER_UNINSTALL_SCRIPT)

    # ── Agent ──────────────────────────────────────────────────────

    def install_agent(
        self,
        node: NodeConfig,
        server_url: str,
        token: str,
        version: str = "",
    ) -> None:
        """Install the K3s agent.

        Readiness is not polled here; callers follow up with
        `wait_for_node_ready`.

        Raises:
            CommandError: A preparation or install step failed.
        """
        log = logger.bind(node=node.host, role="agent")
        self._prepare(node)

        if self.check_installed(node):
            log.info("K3s already installed, starting agent service")
            try:
                self._run(node, "systemctl start k3s-agent")
            except CommandError as e:
                log.warning(f"Could not start k3s-agent: {e}")
            return

        log.info("Installing K3s agent", server=server_url)
        self._run(node, DOWNLOAD_CMD)
        env = _env_prefix(
            {"K3S_URL": server_url, "K3S_TOKEN": token, "INSTALL_K3S_VERSION": version}
        )
        args = ["agent"]
        if node.hostname:
            args.extend(["--node-name", node.hostname])
        self._run(node, f"{env} {INSTALL_SCRIPT_PATH} {shlex.join(args)}")

    def wait_for_node_ready(
        self, control_plane: NodeConfig, worker: NodeConfig, timeout: float
    ) -> int:
        """Poll the server until the worker is listed as Ready.

        The worker matches by hostname or address; `NotReady` does not count.
        """
        return self.poller.wait(
            lambda: node_is_ready(self._run(control_plane, GET_NODES_CMD), worker.identifiers),
            timeout,
            description=f"node {worker.hostname or worker.host} Ready",
        )

    def uninstall_agent(self, node: NodeConfig) -> bool:
        """Run the agent uninstall script if present.

        Returns:
            False if the agent was not installed.
        """
        return self._uninstall(node, AGENT_UNINSTALL_SCRIPT)

    def _uninstall(self, node: NodeConfig, script: str) -> bool:
        check = f"test -f {script} && echo 'installed' || echo 'not_installed'"
        if not is_installed_marker(self._run(node, check)):
            logger.info(f"{script} not present on {node.host}, nothing to uninstall")
            return False
        logger.info(f"Uninstalling K3s on {node.host}")
        self._run(node, script)
        return True

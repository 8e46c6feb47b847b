"""Remote command execution over SSH (paramiko)."""

from __future__ import annotations

import io
import socket
from collections.abc import Callable
from typing import Protocol

import paramiko
import structlog

from ..errors import CommandError, ConnectivityError
from ..models import NodeConfig, SSHCredentials
from ..polling import Poller

logger = structlog.get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0

# Tried in order when a key is given as text
_KEY_TYPES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


class RemoteExecutor(Protocol):
    """Run shell commands on one remote host."""

    def connect(self, host: str, port: int, credentials: SSHCredentials) -> None: ...

    def run(self, command: str) -> str: ...

    def close(self) -> None: ...


ExecutorFactory = Callable[[], RemoteExecutor]


def load_private_key(text: str) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key held in memory.

    Raises:
        ConnectivityError: No supported key type accepts the text.
    """
    last_error: Exception | None = None
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text))
        except paramiko.SSHException as e:
            last_error = e
    raise ConnectivityError(f"Unsupported or invalid private key: {last_error}")


class ParamikoExecutor:
    """RemoteExecutor backed by a paramiko SSHClient.

    Host keys are accepted on first use: freshly flashed boards present a new
    key on every install.
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout
        self.host: str | None = None
        self._client: paramiko.SSHClient | None = None

    def connect(self, host: str, port: int, credentials: SSHCredentials) -> None:
        """Open the connection. A key is preferred over a password.

        Raises:
            ConnectivityError: Dial, handshake or authentication failed.
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs: dict = {
            "hostname": host,
            "port": port,
            "username": credentials.user,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if credentials.private_key:
            kwargs["pkey"] = load_private_key(credentials.private_key)
        elif credentials.private_key_path:
            kwargs["key_filename"] = credentials.private_key_path
        else:
            kwargs["password"] = credentials.password

        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectivityError(
                f"Authentication failed for {credentials.user}@{host}: {e}"
            ) from e
        except (paramiko.SSHException, OSError, socket.timeout) as e:
            client.close()
            raise ConnectivityError(f"SSH connection to {host}:{port} failed: {e}") from e

        self.host = host
        self._client = client

    def run(self, command: str) -> str:
        """Run a command and return its stdout.

        stderr is only kept for the error raised on a non-zero exit.

        Raises:
            ConnectivityError: Not connected, or the session broke.
            CommandError: The command exited non-zero.
        """
        if self._client is None:
            raise ConnectivityError("SSH client is not connected")

        logger.debug("ssh exec", host=self.host, command=_redact(command))
        try:
            _, stdout, stderr = self._client.exec_command(command)
            output = stdout.read().decode("utf-8", "replace")
            errors = stderr.read().decode("utf-8", "replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError, socket.timeout) as e:
            raise ConnectivityError(f"SSH session to {self.host} failed: {e}") from e

        if exit_status != 0:
            raise CommandError(
                f"Command failed on {self.host} with exit status {exit_status}",
                command=_redact(command),
                output=output + errors,
                exit_status=exit_status,
            )
        return output

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> ParamikoExecutor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _redact(command: str) -> str:
    """Hide join tokens from logs and error messages."""
    parts = []
    for part in command.split(" "):
        if part.startswith("K3S_TOKEN="):
            part = "K3S_TOKEN=***"
        parts.append(part)
    return " ".join(parts)


def connect_node(factory: ExecutorFactory, node: NodeConfig) -> RemoteExecutor:
    """Create an executor from the factory and connect it to a node."""
    executor = factory()
    executor.connect(node.host, node.port, node.credentials)
    return executor


def run_remote_command(factory: ExecutorFactory, node: NodeConfig, command: str) -> str:
    """Connect, run one command and close.

    Raises:
        ConnectivityError: Connection failed.
        CommandError: Command exited non-zero.
    """
    executor = connect_node(factory, node)
    try:
        return executor.run(command)
    finally:
        executor.close()


def check_connectivity(factory: ExecutorFactory, node: NodeConfig) -> bool:
    """Try one SSH connection, without retrying."""
    try:
        executor = connect_node(factory, node)
    except ConnectivityError as e:
        logger.debug("SSH not reachable", host=node.host, error=str(e))
        return False
    executor.close()
    return True


def wait_for_ssh(
    factory: ExecutorFactory,
    node: NodeConfig,
    timeout: float,
    poller: Poller | None = None,
) -> int:
    """Poll until an SSH connection to the node succeeds.

    Returns:
        Number of attempts it took.

    Raises:
        WaitTimeoutError: The node never accepted a connection.
    """
    poller = poller or Poller()

    def _connected() -> bool:
        connect_node(factory, node).close()
        return True

    logger.info(f"Waiting for SSH on {node.host}:{node.port}")
    return poller.wait(_connected, timeout, description=f"SSH on {node.host}:{node.port}")

"""Error taxonomy for cluster provisioning.

Maps low-level failures (SSH, talosctl, helm, kubectl) onto a small set of
exception types, and classifies them into the action the orchestrator takes:
retry inside a poll, tolerate and continue, or abort.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Substrings talosctl prints when a node drops off the network mid-reset
EXPECTED_RESET_MARKERS = ("connection refused", "context deadline exceeded")


class ClusterError(Exception):
    """Base error for all provisioning failures."""

    retryable: bool = False

    def __init__(self, message: str, step: str | None = None):
        self.message = message
        self.step = step
        super().__init__(message)

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class ConfigError(ClusterError):
    """Invalid cluster description or CLI configuration."""


class ConnectivityError(ClusterError):
    """Node or API unreachable (SSH dial failure, connection refused)."""

    retryable = True


class CommandError(ClusterError):
    """Remote command or CLI tool exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        output: str = "",
        exit_status: int | None = None,
        step: str | None = None,
    ):
        self.command = command
        self.output = output
        self.exit_status = exit_status
        super().__init__(message, step=step)

    def __str__(self) -> str:
        base = super().__str__()
        if self.output.strip():
            return f"{base}\nOutput: {self.output.strip()}"
        return base


class WaitTimeoutError(ClusterError):
    """A polling wait ran past its deadline."""

    def __init__(
        self,
        message: str,
        timeout: float,
        attempts: int = 0,
        last_error: BaseException | None = None,
        step: str | None = None,
    ):
        self.timeout = timeout
        self.attempts = attempts
        self.last_error = last_error
        if last_error is not None:
            message = f"{message}. Last error: {last_error}"
        super().__init__(message, step=step)


class WaitCancelledError(ClusterError):
    """A polling wait was cancelled before it completed."""


class ReplacementRequired(ClusterError):
    """Requested change cannot be applied in place."""

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(
            f"Changing {', '.join(fields)} requires destroying and recreating the cluster"
        )


class ErrorAction(Enum):
    """What the orchestrator does with a failure."""

    RETRY = "retry"  # Keep polling until the deadline
    TOLERATE = "tolerate"  # Record a warning and continue
    ABORT = "abort"  # Propagate to the caller


class Phase(Enum):
    """Orchestration phase a failure happened in."""

    POLL = "poll"
    INSTALL = "install"
    ADDON = "addon"
    ARTIFACT = "artifact"
    HEALTH = "health"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class ErrorPolicy:
    """Per-backend decision table for failures outside polling loops."""

    tolerated: frozenset[Phase] = frozenset({Phase.HEALTH, Phase.TEARDOWN})

    def classify(self, error: BaseException, phase: Phase) -> ErrorAction:
        """Decide how to treat a failure observed during a phase.

        Args:
            error: The exception raised by a provisioner or transport.
            phase: Phase of the orchestration the error was observed in.

        Returns:
            ErrorAction for the orchestrator to take.
        """
        if isinstance(error, (WaitCancelledError, ConfigError)):
            return ErrorAction.ABORT
        if phase == Phase.POLL:
            if isinstance(error, ClusterError) and not error.retryable:
                # Readiness checks run commands that fail until the node is up
                if isinstance(error, (CommandError, WaitTimeoutError)):
                    return ErrorAction.RETRY
                return ErrorAction.ABORT
            return ErrorAction.RETRY
        if phase in self.tolerated:
            return ErrorAction.TOLERATE
        return ErrorAction.ABORT


# K3s aborts on add-on failures; Talos keeps a degraded-but-usable cluster
K3S_POLICY = ErrorPolicy()
TALOS_POLICY = ErrorPolicy(
    tolerated=frozenset({Phase.HEALTH, Phase.TEARDOWN, Phase.ADDON, Phase.ARTIFACT})
)


def is_expected_reset_error(error: BaseException) -> bool:
    """Check whether a reset failure just means the node is rebooting."""
    text = str(error).lower()
    if isinstance(error, CommandError):
        text = f"{text}\n{error.output.lower()}"
    return any(marker in text for marker in EXPECTED_RESET_MARKERS)

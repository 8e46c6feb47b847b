"""Polling primitive shared by every readiness check.

SSH reachability, API reachability, node readiness, chart status and Talos
health are all `wait_until` with a different condition. The interval is
fixed: bootstraps are measured in minutes, so backoff buys nothing.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from .errors import ErrorAction, ErrorPolicy, Phase, WaitCancelledError, WaitTimeoutError

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 5.0

# (attempt, error or None)
AttemptCallback = Callable[[int, BaseException | None], None]


def wait_until(
    condition: Callable[[], bool],
    timeout: float,
    interval: float = DEFAULT_INTERVAL,
    description: str = "condition",
    cancel: threading.Event | None = None,
    on_attempt: AttemptCallback | None = None,
    policy: ErrorPolicy | None = None,
) -> int:
    """Call `condition` until it returns True or the deadline passes.

    An exception raised by `condition` counts as "not done yet" and is kept as
    the last observed error, unless the policy classifies it as ABORT, in
    which case it propagates immediately.

    Args:
        condition: Zero-argument callable returning True when done.
        timeout: Seconds before giving up.
        interval: Fixed seconds between attempts.
        description: What is being waited for (used in messages).
        cancel: Event that stops the wait early when set.
        on_attempt: Optional callback called after each failed attempt.
        policy: Error policy deciding which exceptions are retried.

    Returns:
        Number of attempts it took.

    Raises:
        WaitTimeoutError: Deadline passed; wraps the last observed error.
        WaitCancelledError: `cancel` was set.
    """
    policy = policy or ErrorPolicy()
    deadline = time.monotonic() + timeout
    last_error: BaseException | None = None
    attempt = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise WaitCancelledError(f"Cancelled while waiting for {description}")

        attempt += 1
        try:
            if condition():
                logger.debug(f"{description}: done after {attempt} attempt(s)")
                return attempt
            last_error = None
        except Exception as e:
            if policy.classify(e, Phase.POLL) == ErrorAction.ABORT:
                raise
            last_error = e

        if on_attempt:
            on_attempt(attempt, last_error)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            error = WaitTimeoutError(
                f"Timeout waiting for {description} after {timeout:g}s",
                timeout=timeout,
                attempts=attempt,
                last_error=last_error,
            )
            if last_error is not None:
                raise error from last_error
            raise error

        logger.debug(
            f"{description}: not ready (attempt {attempt})",
            error=str(last_error) if last_error else None,
        )
        pause = min(interval, remaining)
        if cancel is not None:
            if cancel.wait(pause):
                raise WaitCancelledError(f"Cancelled while waiting for {description}")
        else:
            time.sleep(pause)


@dataclass(frozen=True)
class Poller:
    """Interval and cancellation settings handed to every component."""

    interval: float = DEFAULT_INTERVAL
    cancel: threading.Event = field(default_factory=threading.Event)

    def wait(
        self,
        condition: Callable[[], bool],
        timeout: float,
        description: str = "condition",
        on_attempt: AttemptCallback | None = None,
    ) -> int:
        """Run `wait_until` with this poller's interval and cancel event."""
        return wait_until(
            condition,
            timeout=timeout,
            interval=self.interval,
            description=description,
            cancel=self.cancel,
            on_attempt=on_attempt,
        )

    def check_cancelled(self, what: str) -> None:
        """Raise before contacting another node once cancelled."""
        if self.cancel.is_set():
            raise WaitCancelledError(f"Cancelled before {what}")

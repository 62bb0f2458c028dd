"""Bounded polling until a remote object reaches a target state.

Remote provisioning and termination complete asynchronously and OpenNebula
has no push notification, so callers poll. Only the absence of the target
state is retried here: an exception raised by the refresh function ends the
wait immediately and propagates unchanged. Callers that want transport
retries must wrap the refresh function themselves.

Cancellation is timeout-driven only. Giving up does not cancel anything on
the remote side.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A refresh returns the observed object and a label classifying it
RefreshFunc = Callable[[], tuple[T, str]]


class PollTimeoutError(Exception):
    """Raised when the target state is not reached within the time bound."""

    def __init__(self, target: str, last_label: str | None, elapsed_seconds: float) -> None:
        self.target = target
        self.last_label = last_label
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"timeout while waiting for state '{target}' "
            f"(last state: '{last_label}', waited {elapsed_seconds:.0f}s)"
        )


def wait_for(
    refresh: RefreshFunc[T],
    target: str,
    *,
    timeout_seconds: float,
    interval_seconds: float,
    initial_delay_seconds: float = 0,
    backoff_factor: float = 1.0,
    max_interval_seconds: float | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call refresh until it reports the target label.

    Args:
        refresh: Performs one remote lookup and returns (observation, label).
        target: Label that ends the wait successfully.
        timeout_seconds: Total time budget, including the initial delay.
        interval_seconds: Sleep between attempts.
        initial_delay_seconds: Sleep once before the first attempt.
        backoff_factor: Multiplier applied to the interval after each
            non-target attempt; 1.0 keeps a fixed cadence.
        max_interval_seconds: Upper bound for the grown interval.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Returns:
        The observation that carried the target label.

    Raises:
        PollTimeoutError: If the target is not reached in time.
        Exception: Anything raised by refresh, unchanged.
    """
    start = clock()
    deadline = start + timeout_seconds
    interval = interval_seconds
    last_label: str | None = None
    attempts = 0

    if initial_delay_seconds > 0:
        sleep(initial_delay_seconds)

    while True:
        attempts += 1
        observation, label = refresh()

        if label != last_label:
            logger.info(
                "Observed state",
                extra={"label": label, "target": target, "attempt": attempts},
            )
            last_label = label

        if label == target:
            return observation

        now = clock()
        remaining = deadline - now
        if remaining <= 0:
            logger.error(
                "Timed out waiting for state",
                extra={
                    "target": target,
                    "last_label": last_label,
                    "attempts": attempts,
                    "timeout_seconds": timeout_seconds,
                },
            )
            raise PollTimeoutError(target, last_label, now - start)

        sleep(min(interval, remaining))

        if backoff_factor > 1.0:
            interval *= backoff_factor
            if max_interval_seconds is not None:
                interval = min(interval, max_interval_seconds)

"""
minectl Operation Poller
========================

Blocks until a backend-reported status reaches a terminal value.

Every driver awaits its asynchronous steps (volume ready, instance
running, volume detached, zone operation DONE) through this one
primitive. Unlike a bare sleep loop it can be bounded by a deadline and
aborted through a threading.Event, and it reports how many fetches it
made and how long it waited.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Container, Generic, Optional, TypeVar

from .errors import (
    OperationCancelledError,
    OperationFailedError,
    OperationTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL = 2.0


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Final fetched value plus observability counters."""
    value: T
    polls: int
    elapsed: float


class OperationPoller:
    """
    Re-fetch an operation's status on a fixed interval until it is terminal.

    Usage:
        poller = OperationPoller(interval=2.0, timeout=600)
        result = poller.wait(
            lambda: client.actions.get_by_id(action_id),
            done={"success"},
            failed={"error"},
            status=lambda action: action.status,
            description="volume detach",
        )
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            interval: Seconds between status fetches
            timeout: Seconds before giving up; None or 0 waits forever
            cancel_event: Set it from another thread to abort the wait
            sleep: Override the sleep function (defaults to cancel_event.wait
                when an event is given, time.sleep otherwise)
            clock: Monotonic clock used for deadline and elapsed time
        """
        self.interval = interval
        self.timeout = timeout or None
        self.cancel_event = cancel_event
        self.clock = clock
        if sleep is not None:
            self._sleep = sleep
        elif cancel_event is not None:
            self._sleep = cancel_event.wait
        else:
            self._sleep = time.sleep

    def wait(
        self,
        fetch: Callable[[], T],
        done: Container[Any],
        failed: Container[Any] = (),
        status: Callable[[T], Any] = lambda value: value,
        description: str = "operation",
        provider: Optional[str] = None,
    ) -> PollResult[T]:
        """
        Poll fetch() until status(value) is in done or failed.

        Args:
            fetch: Returns the current backend view of the operation.
                Exceptions propagate immediately and end the wait.
            done: Status values meaning success
            failed: Status values meaning terminal failure
            status: Extracts the status value from what fetch returns
            description: Used in log lines and error messages
            provider: Backend id named in error messages

        Returns:
            PollResult holding the terminal value

        Raises:
            OperationFailedError: A failure status was observed
            OperationTimeoutError: The deadline passed first
            OperationCancelledError: cancel_event was set
        """
        start = self.clock()
        polls = 0

        while True:
            value = fetch()
            polls += 1
            current = status(value)
            elapsed = self.clock() - start
            logger.debug(f"Polled {description}: {current} (poll {polls}, {elapsed:.1f}s)")

            if current in failed:
                raise OperationFailedError(
                    f"{description} failed with status {current!r}",
                    status=current,
                    polls=polls,
                    elapsed=elapsed,
                    provider=provider,
                )

            if current in done:
                return PollResult(value=value, polls=polls, elapsed=elapsed)

            if self.timeout is not None and elapsed >= self.timeout:
                raise OperationTimeoutError(
                    f"Timed out waiting for {description} after {elapsed:.1f}s "
                    f"(last status {current!r})",
                    polls=polls,
                    elapsed=elapsed,
                    provider=provider,
                )

            if self._cancelled():
                raise OperationCancelledError(
                    f"Cancelled while waiting for {description}",
                    polls=polls,
                    elapsed=elapsed,
                    provider=provider,
                )

            self._sleep(self.interval)

            if self._cancelled():
                raise OperationCancelledError(
                    f"Cancelled while waiting for {description}",
                    polls=polls,
                    elapsed=self.clock() - start,
                    provider=provider,
                )

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

"""
Blocking retry-until-condition loop.

Used for every wait in a run: image readiness, instance state changes,
external address assignment and SSH connection attempts. Sleeps happen
on the calling thread; an optional ``threading.Event`` cancels the wait
between iterations (and interrupts the sleep itself).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Tuple, Type

from .errors import Cancelled, PollTimeout

logger = logging.getLogger(__name__)


class Poller:
    """Fixed-interval poll with optional attempt cap and deadline.

    Args:
        interval: Seconds to wait between attempts.
        max_attempts: Give up after this many attempts (None: no cap).
        timeout: Give up once this many seconds have passed (None: no deadline).
        cancel: Event that aborts the poll when set.
        sleep: Replacement for the wait between attempts (tests pass a no-op).
        clock: Monotonic clock used for the deadline.
        description: What is being waited for, used in logs and errors.
    """

    def __init__(
        self,
        interval: float,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        description: str = "condition",
    ) -> None:
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.cancel = cancel
        self._sleep = sleep
        self._clock = clock
        self.description = description

    def check_cancelled(self) -> None:
        """Raise Cancelled if the cancel event is set."""
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled(f"cancelled while waiting for {self.description}")

    def _wait(self) -> None:
        if self._sleep is not None:
            self._sleep(self.interval)
        elif self.cancel is not None:
            self.cancel.wait(self.interval)
        else:
            time.sleep(self.interval)
        self.check_cancelled()

    def wait_for(
        self,
        fetch: Callable[[], Any],
        ready: Callable[[Any], bool] = bool,
        retry_on: Tuple[Type[BaseException], ...] = (),
    ) -> Any:
        """Call ``fetch`` until ``ready`` accepts its result.

        Args:
            fetch: Zero-argument callable producing the observed value.
            ready: Predicate on the value; the poll ends when it is true.
            retry_on: Exception types from ``fetch`` that count as a failed
                attempt instead of propagating.

        Returns:
            The first value accepted by ``ready``.

        Raises:
            PollTimeout: When attempts or the deadline run out.
            Cancelled: When the cancel event is set.
        """
        started = self._clock()
        attempts = 0
        last_error: Optional[BaseException] = None

        while True:
            self.check_cancelled()
            attempts += 1
            try:
                value = fetch()
            except retry_on as exc:
                last_error = exc
                logger.debug(
                    "Attempt %d waiting for %s failed: %s",
                    attempts, self.description, exc,
                )
            else:
                if ready(value):
                    return value
                logger.debug(
                    "Attempt %d waiting for %s: got %r",
                    attempts, self.description, value,
                )

            if self.max_attempts is not None and attempts >= self.max_attempts:
                raise PollTimeout(self.description, attempts, last_error)
            if self.timeout is not None and self._clock() - started >= self.timeout:
                raise PollTimeout(self.description, attempts, last_error)

            self._wait()

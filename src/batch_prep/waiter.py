"""Blocking, fixed-interval polling for long-running external operations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitResult[T]:
    """Outcome of :meth:`PollingWaiter.wait_until`.

    ``reached`` is False only when the deadline passed first.  ``value``
    is the predicate's terminal observation (e.g. ``"Succeeded"`` or
    ``"Failed"``); callers decide whether that observation is a failure.
    """

    reached: bool
    value: T | None
    elapsed: float
    polls: int

    @property
    def timed_out(self) -> bool:
        return not self.reached


class PollingWaiter:
    """Polls a predicate at a fixed interval until it yields or a deadline passes.

    The predicate returns ``None`` (or ``False``) while the operation is
    still in flight and any other value once a terminal state is
    observed.  There is no cancellation: a wait ends on a terminal
    observation or on the deadline.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._log = log or logger

    def wait_until[T](
        self,
        predicate: Callable[[], T | None],
        *,
        interval: float,
        timeout: float,
        label: str = "condition",
    ) -> WaitResult[T]:
        if interval <= 0:
            raise ValueError("interval must be > 0")

        start = self._clock()
        deadline = start + timeout
        polls = 0
        while True:
            polls += 1
            value = predicate()
            now = self._clock()
            if value is not None and value is not False:
                return WaitResult(reached=True, value=value, elapsed=now - start, polls=polls)

            remaining = deadline - now
            if remaining <= 0:
                self._log.warning("Timed out waiting for %s after %.0fs", label, now - start)
                return WaitResult(reached=False, value=None, elapsed=now - start, polls=polls)

            self._log.info("Waiting for %s (%.0fs elapsed)...", label, now - start)
            self._sleep(min(interval, remaining))

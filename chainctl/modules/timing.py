"""Deadlines and polling tickers."""

import threading
import time
from typing import Callable, Iterator, Optional


class Deadline:
    """A point in time ``timeout`` seconds after creation."""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._end = clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self._end - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._end


class Ticker:
    """Yields once per polling round until the deadline passes or it is cancelled.

    The first round is immediate; later rounds are ``interval`` apart, and the
    last pause is shortened so no round starts at or after the deadline.
    """

    def __init__(
        self,
        interval: float,
        deadline: Deadline,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.interval = interval
        self.deadline = deadline
        self.cancel = cancel
        self._sleep = sleep
        self.rounds = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _pause(self) -> None:
        delay = min(self.interval, self.deadline.remaining())
        if delay <= 0:
            return
        if self._sleep is None and self.cancel is not None:
            self.cancel.wait(delay)
        else:
            (self._sleep or time.sleep)(delay)

    def __iter__(self) -> Iterator[int]:
        while True:
            if self.rounds:
                self._pause()
            if self.cancelled or self.deadline.expired():
                return
            self.rounds += 1
            yield self.rounds

"""
Bounded fixed-interval polling.

The clock is injectable and the sleep is the cancel event's ``wait()``,
so any object with ``wait``, ``is_set`` and ``set`` can drive elapsed time.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class PollResult:
    """Outcome of one ``Poller.poll()`` call."""
    succeeded: bool
    tries: int
    elapsed: float
    cancelled: bool = False


class Poller:
    """Polls a predicate up to ``max_tries`` times, ``interval`` seconds apart.

    The predicate is checked first and the poller sleeps only between
    tries.  ``initial_delay`` adds one wait before the first check, for
    commands that need a moment after launch.  Setting the cancel event
    stops the poll at the next check or sleep.
    """

    def __init__(
        self,
        interval: float,
        max_tries: int,
        initial_delay: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: Optional[threading.Event] = None,
    ):
        if max_tries < 1:
            raise ValueError("max_tries must be at least 1")
        self.interval = interval
        self.max_tries = max_tries
        self.initial_delay = initial_delay
        self._clock = clock
        self._cancel = cancel_event or threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _sleep(self, seconds: float) -> bool:
        """Sleep, returning True if cancelled while waiting."""
        if seconds <= 0:
            return self._cancel.is_set()
        return self._cancel.wait(seconds)

    def poll(self, predicate: Callable[[], bool]) -> PollResult:
        start = self._clock()
        if self.initial_delay and self._sleep(self.initial_delay):
            return PollResult(False, 0, self._clock() - start, cancelled=True)

        tries = 0
        while tries < self.max_tries:
            if self._cancel.is_set():
                return PollResult(False, tries, self._clock() - start, cancelled=True)
            tries += 1
            if predicate():
                return PollResult(True, tries, self._clock() - start)
            if tries < self.max_tries and self._sleep(self.interval):
                return PollResult(False, tries, self._clock() - start, cancelled=True)
        return PollResult(False, tries, self._clock() - start)


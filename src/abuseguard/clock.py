"""Clock sources for AbuseGuard."""

import time
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time in epoch seconds."""

    def now(self) -> float: ...


class SystemClock:
    """Wall clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to. Used by tests and benchmarks."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = timestamp

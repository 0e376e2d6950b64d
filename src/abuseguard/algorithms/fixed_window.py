"""Fixed window counter registry.

One registry backs one scope. Every counter lives in a plain dict guarded by a
single lock; the fetch, reset, compare and increment steps of a hit run as one
critical section, so concurrent hits on the same key can never admit more than
``max_requests`` within a window.

A client that spends its whole budget at the end of one window may spend it
again at the start of the next: the window is reset hard at its boundary.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(slots=True)
class WindowCounter:
    """Request count for one key inside the current window."""

    key: str
    count: int
    window_start: float
    last_access: float


class WindowCounterRegistry:
    """In-memory fixed window counters for a single window size."""

    def __init__(self, window_seconds: float) -> None:
        """
        Initialize the registry.

        Args:
            window_seconds: Length of every window tracked by this registry
        """
        self._window = window_seconds
        self._lock = threading.Lock()
        self._counters: dict[str, WindowCounter] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    def hit(self, key: str, max_requests: int, now: float) -> tuple[bool, int, float]:
        """
        Count one request for ``key`` if the window still has room.

        Returns: (admitted, remaining, reset_at)
        """
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = WindowCounter(key=key, count=0, window_start=now, last_access=now)
                self._counters[key] = counter
            elif now - counter.window_start >= self._window:
                counter.window_start = now
                counter.count = 0

            counter.last_access = now
            reset_at = counter.window_start + self._window

            if counter.count >= max_requests:
                return False, 0, reset_at

            counter.count += 1
            return True, max_requests - counter.count, reset_at

    def peek(self, key: str, now: float) -> int:
        """Current count for ``key``; 0 once its window has elapsed."""
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now - counter.window_start >= self._window:
                return 0
            return counter.count

    def sweep(self, now: float, grace_seconds: float, batch_size: int = 1000) -> int:
        """
        Drop counters idle for longer than one window plus ``grace_seconds``.

        The lock is taken once per batch so request threads are never held up
        for the whole scan.
        """
        with self._lock:
            keys = list(self._counters)

        idle_after = self._window + grace_seconds
        removed = 0
        for start in range(0, len(keys), batch_size):
            with self._lock:
                for key in keys[start : start + batch_size]:
                    counter = self._counters.get(key)
                    if counter is not None and now - counter.last_access >= idle_after:
                        del self._counters[key]
                        removed += 1

        if removed:
            logger.debug("window_counters_swept", removed=removed, remaining=len(self))
        return removed

    def reset(self, key: str) -> None:
        """Forget the counter for ``key``."""
        with self._lock:
            self._counters.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)

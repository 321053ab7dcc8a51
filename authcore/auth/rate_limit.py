"""
authcore - Rate Limiter

Fixed-window counter keyed by an arbitrary string (IP, user id, action).
Process-wide and in-memory; one lock guards the whole map.

Every call counts, including denied ones, so a client cannot get extra
attempts by firing requests concurrently.

Expired windows are swept opportunistically from allow(), at most once
per SWEEP_INTERVAL_SECONDS, so keys that never come back do not pile up.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

SWEEP_INTERVAL_SECONDS = 1.0


@dataclass
class _Window:
    count: int
    started_at: float
    length: float

    def expired(self, now: float) -> bool:
        return now - self.started_at > self.length


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Usage:
        limiter = RateLimiter()
        if not limiter.allow(f"login:{ip}", 5, 60):
            raise RateLimited(limiter.retry_after(f"login:{ip}", 60))
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key in [k for k, w in self._windows.items() if w.expired(now)]:
            del self._windows[key]

    def allow(self, key: str, max_count: int, window_seconds: float) -> bool:
        """
        Count one attempt for key and report whether it is within the limit.

        Args:
            key: Limiter key, e.g. "login:203.0.113.7"
            max_count: Attempts allowed per window
            window_seconds: Window length

        Returns:
            False once max_count attempts have been made in the current window
        """
        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.expired(now):
                window = _Window(count=0, started_at=now, length=window_seconds)
                self._windows[key] = window
            window.count += 1
            return window.count <= max_count

    def attempts(self, key: str) -> int:
        """Attempts counted in the key's current window, denied ones included."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.expired(now):
                return 0
            return window.count

    def retry_after(self, key: str, window_seconds: float) -> int:
        """Seconds until the key's current window resets (0 if no window)."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            remaining = window.started_at + window_seconds - now
        return max(0, math.ceil(remaining))

"""In-memory sliding-window rate limiter for the webhook endpoint."""

import time
from collections import defaultdict
from collections.abc import Callable
from threading import Lock


class SlidingWindowLimiter:
    """Tracks request timestamps per key in a rolling window.

    State lives in process memory only; it throttles abusive senders and is not
    part of any correctness guarantee.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for ``key``; False when the window is already full."""
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            hits = [t for t in self._hits[key] if t > cutoff]
            if len(hits) >= self.max_requests:
                self._hits[key] = hits
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest hit for ``key`` leaves the window."""
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0
            remaining = hits[0] + self.window_seconds - self._clock()
        return max(0, int(remaining) + 1)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

# rate_limit.py
"""
Fixed-window request limiter keyed by client address
(default: 100 requests per 15 minutes).
"""

import threading
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str) -> bool:
        """Record one request for `key`; False once the window is used up."""
        if self.max_requests <= 0:
            return True
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
            return count <= self.max_requests

    def _sweep(self, now: float):
        # at most once per window; drops clients whose window has ended
        expired = [k for k, (started, _) in self._hits.items() if now - started >= self.window_seconds]
        for k in expired:
            del self._hits[k]
        self._last_sweep = now

    def retry_after(self, key: str) -> int:
        with self._lock:
            started, _ = self._hits.get(key, (self._clock(), 0))
        return max(0, int(self.window_seconds - (self._clock() - started)))

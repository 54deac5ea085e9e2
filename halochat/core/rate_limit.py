"""Per-client sliding-window rate limiter."""

import threading
import time

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Allow at most `max_requests` per `window_s` seconds for each client key."""

    def __init__(self, max_requests: int, window_s: float, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock
        self._buckets: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for `key`; False if the window is already full."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            window = self._buckets.setdefault(key, [])
            if len(window) >= self.max_requests:
                logger.warning("rate_limit.exceeded", client=key, limit=self.max_requests)
                return False
            window.append(now)
            return True

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def _prune(self, now: float) -> None:
        # Drop expired timestamps; a client with none left is forgotten
        for key in list(self._buckets):
            window = [t for t in self._buckets[key] if now - t < self.window_s]
            if window:
                self._buckets[key] = window
            else:
                del self._buckets[key]

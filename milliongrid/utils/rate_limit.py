""" module to hold per-address request limiting """

import logging
import threading
import time
from collections import deque

log = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window request counter keyed by client address.

    ``hit(key)`` records a request and returns False once ``max_hits``
    requests have been seen inside the last ``window_s`` seconds.
    """

    # Drop idle keys once the table grows past this many addresses
    prune_threshold = 10000

    def __init__(self, name: str, max_hits: int, window_s: float, clock=time.monotonic):
        self.name = name
        self.max_hits = max_hits
        self.window_s = window_s
        self._clock = clock
        self._hits = {}
        self._lock = threading.Lock()
        self._rejected = 0

    def hit(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_s
        with self._lock:
            q = self._hits.get(key)
            if q is None:
                q = self._hits[key] = deque()
            while q and q[0] <= cutoff:
                q.popleft()
            if len(q) >= self.max_hits:
                self._rejected += 1
                log.info(f"Rate limit {self.name} hit for {key}")
                return False
            q.append(now)
            if len(self._hits) > self.prune_threshold:
                self._prune(cutoff)
            return True

    def reset(self):
        with self._lock:
            self._hits.clear()

    def _prune(self, cutoff):
        idle = [k for k, q in self._hits.items() if not q or q[-1] <= cutoff]
        for k in idle:
            del self._hits[k]

    @property
    def stats(self) -> dict:
        with self._lock:
            return {"keys": len(self._hits), "rejected": self._rejected}


def default_limiters() -> dict:
    """The limiter set used by the HTTP layer."""
    return {
        "grid": RateLimiter("grid", 8, 2.0),
        "slots": RateLimiter("slots", 12, 2.0),
        "feed": RateLimiter("feed", 30, 10.0),
        "client_log": RateLimiter("client_log", 60, 60.0),
        "upload_burst": RateLimiter("upload_burst", 3, 60.0),
        "upload_hourly": RateLimiter("upload_hourly", 20, 3600.0),
    }

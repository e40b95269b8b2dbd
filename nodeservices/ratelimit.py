"""Per-client token bucket rate limiting."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

DEFAULT_MAX_IDLE = 600.0


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    last_reservation: float


class RateLimiter:
    """Limits each client to `rate` requests per second with bursts of `burst`."""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("non-positive rate limiter arg")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def exceeds_limit(self, client_id: str) -> bool:
        """Take a token for the client; True if none was available."""
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(client_id)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.burst), last_refill=now, last_reservation=now)
                self._buckets[client_id] = bucket
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now
            bucket.last_reservation = now
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return False
            return True

    def cleanup(self, max_idle: float = DEFAULT_MAX_IDLE) -> int:
        """Forget clients idle for longer than max_idle seconds; return how many."""
        with self._lock:
            now = self._clock()
            idle = [cid for cid, b in self._buckets.items() if now - b.last_reservation > max_idle]
            for cid in idle:
                del self._buckets[cid]
            return len(idle)
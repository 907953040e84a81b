"""Token-bucket rate limiter shared by every call made to one cluster."""

import asyncio
import time


class TokenBucketRateLimiter:
    """Async token bucket parameterised by queries-per-second and burst.

    Up to ``burst`` calls may proceed immediately; afterwards calls are
    admitted at ``qps``. A non-positive ``qps`` disables limiting.
    """

    def __init__(self, qps: float, burst: int):
        self.qps = qps
        self.burst = max(1, burst)
        self._tokens = float(self.burst)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)

    async def acquire(self) -> None:
        """Wait until one token is available and consume it."""
        if self.qps <= 0:
            return

        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self.qps)

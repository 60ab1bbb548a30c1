"""
Per-source request rate limiting.

Each source gets its own token bucket so a throttled source never slows
the others. Workers wait on the bucket, not on each other.
"""

import asyncio
import time
from typing import Callable, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Async token bucket.

    Args:
        rate: Tokens added per second; <= 0 disables limiting
        capacity: Burst size (defaults to max(1, rate))
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep
    ):
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def unlimited(self) -> bool:
        return self.rate <= 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self) -> float:
        """
        Take one token, waiting until one is available.

        Returns:
            Seconds spent waiting
        """
        if self.unlimited:
            return 0.0

        waited = 0.0
        # Waiters queue on the lock, so tokens are handed out in arrival order
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                delay = (1 - self._tokens) / self.rate
                await self._sleep(delay)
                waited += delay
                self._refill()
            self._tokens -= 1
        return waited


class RateLimiterRegistry:
    """One token bucket per source, created on first use"""

    def __init__(self, limits: Dict[str, float], default_rate: float, **bucket_kwargs):
        self.limits = dict(limits)
        self.default_rate = default_rate
        self._bucket_kwargs = bucket_kwargs
        self._buckets: Dict[str, TokenBucket] = {}

    def for_source(self, source_name: str) -> TokenBucket:
        bucket = self._buckets.get(source_name)
        if bucket is None:
            rate = self.limits.get(source_name, self.default_rate)
            bucket = TokenBucket(rate, **self._bucket_kwargs)
            self._buckets[source_name] = bucket
            logger.info(f"Rate limiter for {source_name}: {rate} req/s")
        return bucket

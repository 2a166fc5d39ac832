"""
Token-bucket rate limiting for outbound provider calls.

A RateLimiter combines a per-second and a per-minute bucket. Callers that
exceed either ceiling are delayed until a token is available, never failed.
Clock and sleep are injectable so tests can run without real waiting.
"""

import asyncio
import time
from typing import Awaitable, Callable

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class TokenBucket:
    """
    Classic token bucket.

    Attributes:
        capacity: Maximum burst size
        refill_rate: Tokens added per second
        tokens: Tokens currently available
    """

    def __init__(self, capacity: int, refill_rate: float, clock: Clock = time.monotonic):
        if capacity < 1 or refill_rate <= 0:
            raise ValueError("capacity must be >= 1 and refill_rate > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self.tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def wait_time(self) -> float:
        """Seconds until one token is available (0 if available now)."""
        self._refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate

    def consume(self) -> None:
        self._refill()
        self.tokens -= 1


class RateLimiter:
    """
    Per-second plus per-minute limiter shared by all calls of one integration.

    acquire() is serialized with an asyncio.Lock so waiting callers are served
    in arrival order.
    """

    def __init__(
        self,
        requests_per_second: int,
        requests_per_minute: int,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self._buckets = [
            TokenBucket(requests_per_second, float(requests_per_second), clock),
            TokenBucket(requests_per_minute, requests_per_minute / 60.0, clock),
        ]
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait until both buckets have a token, then consume one from each.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                delay = max(bucket.wait_time() for bucket in self._buckets)
                if delay <= 0:
                    break
                await self._sleep(delay)
                waited += delay
            for bucket in self._buckets:
                bucket.consume()
        return waited

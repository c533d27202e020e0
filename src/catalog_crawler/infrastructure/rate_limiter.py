"""
Request rate limiting for the pooled fetch strategy.

A token bucket enforces a global requests-per-minute ceiling shared by all
concurrent workers. It is independent of the concurrency ceiling: a worker
first takes a concurrency slot, then a token.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucketLimiter:
    """
    Token bucket rate limiter.

    Allows short bursts up to ``capacity`` while holding the long-run
    average at ``rate`` tokens per second.
    """

    def __init__(
        self,
        rate: float = 1.0,  # Tokens per second
        capacity: int = 1,  # Max burst size
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize token bucket.

        Args:
            rate: Token generation rate (per second)
            capacity: Maximum tokens in bucket
            clock: Monotonic time source
            sleep: Async sleep function
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_update = clock()
        self._lock = asyncio.Lock()
        self.total_acquired = 0
        self.total_wait = 0.0

    @classmethod
    def per_minute(cls, requests_per_minute: int, **kwargs) -> "TokenBucketLimiter":
        """Bucket allowing ``requests_per_minute`` on average, bursting one request."""
        return cls(rate=requests_per_minute / 60.0, capacity=1, **kwargs)

    async def acquire(self, tokens: int = 1) -> float:
        """
        Acquire tokens, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire

        Returns:
            Time waited (seconds)
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        async with self._lock:
            wait_time = 0.0

            while True:
                self._refill()

                if self._tokens >= tokens:
                    self._tokens -= tokens
                    self.total_acquired += tokens
                    self.total_wait += wait_time
                    if wait_time:
                        logger.debug(f"Rate limiter waited {wait_time:.2f}s")
                    return wait_time

                needed = tokens - self._tokens
                wait = needed / self.rate

                await self._sleep(wait)
                wait_time += wait

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self._clock()
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_update = now

    @property
    def available_tokens(self) -> float:
        """Current available tokens."""
        self._refill()
        return self._tokens

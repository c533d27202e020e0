"""
Request timing randomization.

Automated crawlers are easy to spot when their delays are perfectly regular.
Every pause the crawler takes (inter-item pacing, listing page delays,
challenge backoff, human dwell time) draws from an injectable jitter source
so that production runs vary while tests can replay a fixed sequence.

Features:
- JitterSource protocol (``random.Random`` satisfies it)
- SequenceJitter for deterministic replays
- DelayRange and Pacer for sleeping a randomized, logged delay
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class JitterSource(Protocol):
    """Anything that can draw a float from a closed range."""

    def uniform(self, a: float, b: float) -> float:
        ...


class SequenceJitter:
    """
    Jitter source replaying fixed fractions of each requested range.

    Each call consumes the next fraction in [0, 1] and maps it onto
    ``[a, b]``. The sequence repeats when exhausted.

    Usage:
        jitter = SequenceJitter([0.0])  # always the lower bound
    """

    def __init__(self, fractions: Iterable[float] = (0.5,)):
        self.fractions = [min(1.0, max(0.0, f)) for f in fractions] or [0.5]
        self._index = 0
        self.calls: list[tuple[float, float]] = []

    def uniform(self, a: float, b: float) -> float:
        fraction = self.fractions[self._index % len(self.fractions)]
        self._index += 1
        self.calls.append((a, b))
        return a + (b - a) * fraction


@dataclass(frozen=True)
class DelayRange:
    """Closed range of seconds a randomized delay is drawn from."""
    min_seconds: float
    max_seconds: float

    def __post_init__(self):
        if self.min_seconds < 0 or self.max_seconds < self.min_seconds:
            raise ValueError(f"Invalid delay range {self.min_seconds}-{self.max_seconds}")

    def draw(self, jitter: JitterSource) -> float:
        if self.max_seconds == self.min_seconds:
            return self.min_seconds
        return jitter.uniform(self.min_seconds, self.max_seconds)


class Pacer:
    """
    Sleeps randomized delays.

    Args:
        jitter: Jitter source, defaults to a private ``random.Random``
        sleep: Async sleep function
    """

    def __init__(self, jitter: Optional[JitterSource] = None, sleep: SleepFn = asyncio.sleep):
        self.jitter = jitter or random.Random()
        self.sleep = sleep
        self.total_slept = 0.0

    async def wait(self, delay: DelayRange, reason: str = "") -> float:
        """
        Sleep a delay drawn from ``delay``.

        Returns:
            Seconds slept
        """
        seconds = delay.draw(self.jitter)
        if seconds <= 0:
            return 0.0
        if reason:
            logger.info(f"Waiting {seconds:.1f}s ({reason})")
        await self.sleep(seconds)
        self.total_slept += seconds
        return seconds

    async def wait_fixed(self, seconds: float) -> float:
        """Sleep an exact number of seconds."""
        if seconds > 0:
            await self.sleep(seconds)
            self.total_slept += seconds
        return max(0.0, seconds)

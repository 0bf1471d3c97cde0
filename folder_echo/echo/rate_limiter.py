"""Token-bucket rate limiting for Slack uploads.

One bucket per Slack channel, shared by every folder job that posts there.
All token accounting goes through the bucket's lock, so concurrent jobs can
never be issued more than ``capacity + floor(elapsed * rate)`` tokens.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable

from folder_echo.schemas.echo import FolderJob

logger = logging.getLogger(__name__)

# Tolerance for float drift in refill arithmetic
_EPSILON = 1e-9


class TokenBucket:
    """Classic token bucket. Starts full; refills continuously up to capacity.

    Usage::

        bucket = TokenBucket.per_minute(10)
        wait = await bucket.acquire()       # 0.0 → token taken
        if await bucket.wait(max_wait=30):  # sleep until a token, or give up
            ...
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be positive")
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, uploads_per_minute: int, **kwargs) -> "TokenBucket":
        return cls(uploads_per_minute, uploads_per_minute / 60.0, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_per_second)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        """Current token level (refilled to now). For logging and tests."""
        self._refill()
        return self._tokens

    async def acquire(self) -> float:
        """Take a token if one is available.

        Returns:
            ``0.0`` if a token was taken, otherwise the number of seconds
            until the next token will be available. Never sleeps.
        """
        async with self._lock:
            self._refill()
            if self._tokens >= 1.0 - _EPSILON:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self.refill_per_second

    async def wait(self, max_wait: float | None = None) -> bool:
        """Sleep until a token is taken.

        Args:
            max_wait: Give up (without taking a token) rather than wait
                longer than this many seconds in total. ``None`` waits
                indefinitely.

        Returns:
            True if a token was taken, False if the budget ran out.
        """
        start = self._clock()
        while True:
            delay = await self.acquire()
            if delay == 0.0:
                return True
            if max_wait is not None and (self._clock() - start) + delay > max_wait:
                return False
            await asyncio.sleep(delay)


class RateLimiterRegistry:
    """Hands out one shared bucket per Slack channel.

    If several jobs post to the same channel with different limits, the
    lowest limit applies to all of them.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    @classmethod
    def from_jobs(cls, jobs: Iterable[FolderJob], **kwargs) -> "RateLimiterRegistry":
        registry = cls(**kwargs)
        limits: dict[str, int] = {}
        for job in jobs:
            limits[job.channel] = min(limits.get(job.channel, job.uploads_per_minute), job.uploads_per_minute)
        for channel, limit in limits.items():
            registry._buckets[channel] = TokenBucket.per_minute(limit, clock=registry._clock)
            logger.debug("Rate limit for %s: %d upload(s)/minute", channel, limit)
        return registry

    def for_channel(self, channel: str, uploads_per_minute: int) -> TokenBucket:
        """Return the channel's bucket, creating it on first use."""
        bucket = self._buckets.get(channel)
        if bucket is None:
            bucket = TokenBucket.per_minute(uploads_per_minute, clock=self._clock)
            self._buckets[channel] = bucket
        return bucket

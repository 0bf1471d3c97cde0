"""Tests for the token-bucket rate limiter."""

import asyncio
import math
from unittest.mock import AsyncMock, patch

import pytest

from folder_echo.echo.rate_limiter import RateLimiterRegistry, TokenBucket

# ------------------------------------------------------------------
# TokenBucket.acquire
# ------------------------------------------------------------------


class TestAcquire:
    async def test_starts_full(self, clock):
        bucket = TokenBucket.per_minute(3, clock=clock)
        assert [await bucket.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]

    async def test_reports_wait_when_empty(self, clock):
        bucket = TokenBucket(2, 0.5, clock=clock)
        await bucket.acquire()
        await bucket.acquire()
        assert await bucket.acquire() == pytest.approx(2.0)

    async def test_refills_over_time(self, clock):
        bucket = TokenBucket(1, 0.5, clock=clock)
        await bucket.acquire()
        clock.advance(1.0)
        assert await bucket.acquire() == pytest.approx(1.0)
        clock.advance(1.0)
        assert await bucket.acquire() == 0.0

    async def test_idle_tokens_capped_at_capacity(self, clock):
        bucket = TokenBucket(2, 1.0, clock=clock)
        clock.advance(1000.0)
        assert bucket.tokens == 2.0
        assert await bucket.acquire() == 0.0
        assert await bucket.acquire() == 0.0
        assert await bucket.acquire() > 0.0

    async def test_never_exceeds_capacity_plus_refill(self, clock):
        capacity, rate = 4, 0.25
        bucket = TokenBucket(capacity, rate, clock=clock)
        issued = 0
        for _ in range(400):
            while await bucket.acquire() == 0.0:
                issued += 1
            assert issued <= capacity + math.floor(clock.now * rate)
            clock.advance(0.5)

    async def test_concurrent_acquire_does_not_over_issue(self, clock):
        bucket = TokenBucket(3, 0.01, clock=clock)
        results = await asyncio.gather(*(bucket.acquire() for _ in range(10)))
        assert results.count(0.0) == 3

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            TokenBucket(0, 1.0)
        with pytest.raises(ValueError):
            TokenBucket(1, 0.0)


# ------------------------------------------------------------------
# TokenBucket.wait
# ------------------------------------------------------------------


class TestWait:
    async def test_returns_immediately_with_token(self, clock):
        bucket = TokenBucket(1, 1.0, clock=clock)
        with patch("folder_echo.echo.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await bucket.wait() is True
        sleep.assert_not_awaited()

    async def test_sleeps_until_token(self, clock):
        bucket = TokenBucket(1, 0.5, clock=clock)
        await bucket.acquire()
        with patch(
            "folder_echo.echo.rate_limiter.asyncio.sleep",
            new=AsyncMock(side_effect=clock.advance),
        ):
            assert await bucket.wait() is True
        assert clock.now == pytest.approx(2.0)

    async def test_gives_up_past_budget_without_taking_token(self, clock):
        bucket = TokenBucket.per_minute(1, clock=clock)
        await bucket.acquire()
        with patch("folder_echo.echo.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await bucket.wait(max_wait=10.0) is False
        sleep.assert_not_awaited()
        clock.advance(60.0)
        assert await bucket.acquire() == 0.0

    async def test_sustained_rate_converges_to_limit(self, clock):
        bucket = TokenBucket.per_minute(10, clock=clock)
        with patch(
            "folder_echo.echo.rate_limiter.asyncio.sleep",
            new=AsyncMock(side_effect=clock.advance),
        ):
            for _ in range(100):
                assert await bucket.wait() is True
        # 10 from the initial burst, then one every 6 seconds
        assert clock.now == pytest.approx(90 * 6.0, abs=0.01)


# ------------------------------------------------------------------
# RateLimiterRegistry
# ------------------------------------------------------------------


class TestRegistry:
    def test_same_channel_shares_bucket(self, make_job):
        jobs = [make_job("a", channel="#x"), make_job("b", channel="#x"), make_job("c", channel="#y")]
        registry = RateLimiterRegistry.from_jobs(jobs)
        assert registry.for_channel("#x", 60) is registry.for_channel("#x", 60)
        assert registry.for_channel("#x", 60) is not registry.for_channel("#y", 60)

    def test_strictest_limit_wins(self, make_job):
        jobs = [
            make_job("a", channel="#x", uploads_per_minute=10),
            make_job("b", channel="#x", uploads_per_minute=3),
        ]
        registry = RateLimiterRegistry.from_jobs(jobs)
        assert registry.for_channel("#x", 10).capacity == 3

    def test_unknown_channel_created_on_demand(self):
        registry = RateLimiterRegistry()
        bucket = registry.for_channel("#new", 5)
        assert bucket.capacity == 5
        assert registry.for_channel("#new", 99) is bucket

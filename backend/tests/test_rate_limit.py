"""
Tests for outbound rate limiting and 429 retry hints.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from einvoice.core.rate_limit import (
    MAX_BACKOFF_SECONDS,
    MAX_JITTER_SECONDS,
    RATE_LIMITS,
    EndpointRateLimiter,
    RateLimiterRegistry,
    backoff_delay,
    parse_retry_after,
)


class FakeClock:
    """Monotonic clock advanced only by the limiter's sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_min_interval_rounds_up_to_milliseconds():
    assert EndpointRateLimiter("x", 100).min_interval == 0.6
    assert EndpointRateLimiter("x", 300).min_interval == 0.2
    assert EndpointRateLimiter("x", 125).min_interval == 0.48
    assert EndpointRateLimiter("x", 7).min_interval == 8.572


def test_invalid_budget():
    with pytest.raises(ValueError):
        EndpointRateLimiter("x", 0)


@pytest.mark.asyncio
async def test_first_call_does_not_wait():
    clock = FakeClock()
    limiter = EndpointRateLimiter("submit_documents", 100, sleep=clock.sleep, clock=clock)

    assert await limiter.acquire() == 0.0
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_consecutive_calls_are_spaced():
    """Back-to-back calls are at least one interval apart"""
    clock = FakeClock()
    limiter = EndpointRateLimiter("cancel_document", 12, sleep=clock.sleep, clock=clock)

    starts = []
    for _ in range(4):
        await limiter.acquire()
        starts.append(clock.now)

    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= limiter.min_interval for gap in gaps)
    assert clock.sleeps == [5.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_elapsed_time_counts_toward_interval():
    clock = FakeClock()
    limiter = EndpointRateLimiter("login", 12, sleep=clock.sleep, clock=clock)

    await limiter.acquire()
    clock.now += 3.0
    waited = await limiter.acquire()

    assert waited == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_concurrent_callers_queue():
    clock = FakeClock()
    limiter = EndpointRateLimiter("get_submission", 300, sleep=clock.sleep, clock=clock)

    await asyncio.gather(*(limiter.acquire() for _ in range(5)))

    assert len(clock.sleeps) == 4
    assert all(wait == pytest.approx(0.2) for wait in clock.sleeps)


def test_registry_reuses_limiter_per_endpoint():
    registry = RateLimiterRegistry()
    assert registry.get("submit_documents") is registry.get("submit_documents")
    assert registry.get("submit_documents") is not registry.get("get_submission")
    assert registry.get("cancel_document").requests_per_minute == RATE_LIMITS["cancel_document"]


def test_registry_unknown_endpoint():
    with pytest.raises(KeyError):
        RateLimiterRegistry().get("unknown")


def test_retry_after_seconds():
    assert parse_retry_after({"retry-after": "2"}) == 2.0
    assert parse_retry_after({"retry-after": "-5"}) == 0.0


def test_rate_limit_reset_date():
    now = datetime(2026, 10, 15, 8, 0, 0, tzinfo=timezone.utc)
    headers = {"x-rate-limit-reset": "2026-10-15T08:00:30Z"}
    assert parse_retry_after(headers, now=now) == 30.0


def test_retry_after_http_date():
    now = datetime(2026, 10, 15, 8, 0, 0, tzinfo=timezone.utc)
    headers = {"retry-after": "Thu, 15 Oct 2026 08:00:10 GMT"}
    assert parse_retry_after(headers, now=now) == 10.0


def test_retry_after_missing_or_garbage():
    assert parse_retry_after({}) is None
    assert parse_retry_after({"retry-after": "soon"}) is None


def test_backoff_delay_grows_and_caps():
    assert 1.0 <= backoff_delay(1.0, 0) <= 1.0 + MAX_JITTER_SECONDS
    assert 4.0 <= backoff_delay(1.0, 2) <= 4.0 + MAX_JITTER_SECONDS
    assert backoff_delay(1.0, 10) <= MAX_BACKOFF_SECONDS + MAX_JITTER_SECONDS

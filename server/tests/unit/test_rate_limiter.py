"""Unit tests for the inbound rate limiter."""

import calendar
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from booking_sync.core.errors import RateLimitExceeded
from booking_sync.models.rate_limit import RateLimitCounter
from booking_sync.services.rate_limit_service import RATE_LIMITS, RateLimiter

START = datetime(2026, 10, 16, 9, 0, 0)


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_limiter(session, clock, **kwargs) -> RateLimiter:
    kwargs.setdefault("limits", {"sync": 2, "default": 5})
    return RateLimiter(session, window_seconds=60, clock=clock, cleanup_probability=0, **kwargs)


def test_preset_limits():
    assert RATE_LIMITS["sync"] == 10
    assert RATE_LIMITS["read"] == 100
    assert RATE_LIMITS["webhook"] == 30


@pytest.mark.asyncio
async def test_unknown_operation_uses_default(test_session):
    limiter = make_limiter(test_session, Clock())
    assert limiter.limit_for("sync") == 2
    assert limiter.limit_for("export") == 5


@pytest.mark.asyncio
async def test_requests_within_limit_are_counted(test_session):
    limiter = make_limiter(test_session, Clock())

    first = await limiter.check("10.0.0.1", "sync")
    second = await limiter.check("10.0.0.1", "sync")

    assert first.allowed and second.allowed
    assert (first.remaining, second.remaining) == (1, 0)
    assert first.retry_after == 0
    assert first.reset_at == calendar.timegm((START + timedelta(seconds=60)).utctimetuple())


@pytest.mark.asyncio
async def test_request_over_limit_is_denied(test_session):
    clock = Clock()
    limiter = make_limiter(test_session, clock)
    await limiter.check("10.0.0.1", "sync")
    await limiter.check("10.0.0.1", "sync")

    clock.advance(15)
    denied = await limiter.check("10.0.0.1", "sync")

    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.limit == 2
    assert denied.retry_after == 45


@pytest.mark.asyncio
async def test_window_resets_after_expiry(test_session):
    clock = Clock()
    limiter = make_limiter(test_session, clock)
    for _ in range(3):
        await limiter.check("10.0.0.1", "sync")

    clock.advance(60)
    decision = await limiter.check("10.0.0.1", "sync")

    assert decision.allowed is True
    assert decision.remaining == 1
    counter = (
        await test_session.execute(select(RateLimitCounter).execution_options(populate_existing=True))
    ).scalar_one()
    assert counter.window_start == clock.now


@pytest.mark.asyncio
async def test_counters_are_per_client_and_operation(test_session):
    limiter = make_limiter(test_session, Clock())
    await limiter.check("10.0.0.1", "sync")
    await limiter.check("10.0.0.1", "sync")

    assert (await limiter.check("10.0.0.2", "sync")).allowed is True
    assert (await limiter.check("10.0.0.1", "read")).allowed is True
    count = (await test_session.execute(select(func.count()).select_from(RateLimitCounter))).scalar_one()
    assert count == 3


@pytest.mark.asyncio
async def test_enforce_raises_with_budget_details(test_session):
    limiter = make_limiter(test_session, Clock())
    await limiter.enforce("10.0.0.1", "sync")
    await limiter.enforce("10.0.0.1", "sync")

    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.enforce("10.0.0.1", "sync")

    error = exc_info.value
    assert error.message == "Too many sync requests. Please try again later."
    assert error.limit == 2
    assert error.remaining == 0
    assert error.retry_after == 60
    assert error.reset_at is not None


@pytest.mark.asyncio
async def test_cleanup_removes_stale_counters(test_session):
    clock = Clock()
    limiter = make_limiter(test_session, clock)
    await limiter.check("10.0.0.1", "sync")

    clock.advance(3 * 24 * 3600)
    await limiter.check("10.0.0.2", "sync")
    deleted = await limiter.cleanup()

    assert deleted == 1
    remaining = (await test_session.execute(select(RateLimitCounter.client_id))).scalars().all()
    assert remaining == ["10.0.0.2"]


@pytest.mark.asyncio
async def test_reset_forgets_counter(test_session):
    limiter = make_limiter(test_session, Clock())
    await limiter.check("10.0.0.1", "sync")
    await limiter.check("10.0.0.1", "sync")

    await limiter.reset("10.0.0.1", "sync")

    assert (await limiter.check("10.0.0.1", "sync")).allowed is True

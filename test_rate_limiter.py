"""Fixed window rate limiter: allow/deny decisions, window rollover, sweep."""

import pytest

from rate_limiter import FixedWindowRateLimiter


@pytest.mark.asyncio
async def test_scenario_three_per_minute(rate_limiter, scheduler):
    """limit=3, window=60s: t=0,1,2 allowed, t=3 denied, t=61 allowed again."""
    results = []
    for _ in range(3):
        results.append(rate_limiter.check_and_increment("k"))
        await scheduler.advance(1)

    assert [r.allowed for r in results] == [True, True, True]
    assert [r.remaining for r in results] == [2, 1, 0]

    denied = rate_limiter.check_and_increment("k")  # t=3
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after == 57

    await scheduler.advance(58)  # t=61
    fresh = rate_limiter.check_and_increment("k")
    assert fresh.allowed is True
    assert fresh.remaining == 2


def test_limit_requests_allowed_then_denied(scheduler):
    limiter = FixedWindowRateLimiter(scheduler, limit=10, window_seconds=60)
    for _ in range(10):
        assert limiter.check_and_increment("client").allowed

    assert limiter.check_and_increment("client").allowed is False


@pytest.mark.asyncio
async def test_new_window_after_duration_starts_at_one(scheduler):
    limiter = FixedWindowRateLimiter(scheduler, limit=5, window_seconds=60)
    for _ in range(6):
        limiter.check_and_increment("client")

    await scheduler.advance(60)
    result = limiter.check_and_increment("client")
    assert result.allowed is True
    assert result.remaining == 4
    assert result.reset_at == scheduler.now() + 60


def test_deny_does_not_increment(rate_limiter):
    for _ in range(3):
        rate_limiter.check_and_increment("k")
    for _ in range(5):
        rate_limiter.check_and_increment("k")

    assert rate_limiter.stats()["total_requests"] == 3


def test_keys_are_independent(rate_limiter):
    for _ in range(3):
        rate_limiter.check_and_increment("a")

    assert rate_limiter.check_and_increment("a").allowed is False
    assert rate_limiter.check_and_increment("b").allowed is True


def test_get_status_does_not_count(rate_limiter, scheduler):
    status = rate_limiter.get_status("k")
    assert status.allowed is True
    assert status.remaining == 3

    rate_limiter.check_and_increment("k")
    assert rate_limiter.get_status("k").remaining == 2
    assert rate_limiter.get_status("k").remaining == 2


def test_reset_drops_window(rate_limiter):
    for _ in range(4):
        rate_limiter.check_and_increment("k")

    rate_limiter.reset("k")
    result = rate_limiter.check_and_increment("k")
    assert result.allowed is True
    assert result.remaining == 2


@pytest.mark.asyncio
async def test_periodic_sweep_removes_expired_windows(rate_limiter, scheduler):
    rate_limiter.start()
    rate_limiter.check_and_increment("a")
    rate_limiter.check_and_increment("b")
    assert rate_limiter.stats()["total_keys"] == 2

    await scheduler.advance(300)
    assert rate_limiter.stats()["total_keys"] == 0

    rate_limiter.stop()
    assert scheduler.pending == 0


def test_invalid_configuration_rejected(scheduler):
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(scheduler, limit=0)
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(scheduler, limit=1, window_seconds=0)

"""Provider health tracker."""

import asyncio

import pytest

from health_tracker import ProviderHealthTracker


def test_providers_start_healthy(health_tracker):
    assert health_tracker.is_healthy("primary") is True
    assert health_tracker.is_healthy("secondary") is True
    assert health_tracker.provider_ids == ["primary", "secondary"]


def test_unknown_provider_reads_healthy(health_tracker):
    assert health_tracker.is_healthy("nonexistent") is True


def test_mark_failed_is_immediate(health_tracker, scheduler):
    health_tracker.mark_failed("primary")

    snapshot = health_tracker.snapshot()
    assert snapshot["primary"]["healthy"] is False
    assert snapshot["primary"]["last_checked"] == scheduler.now()
    assert snapshot["secondary"]["healthy"] is True


@pytest.mark.asyncio
async def test_probe_failure_is_false_not_raised(health_tracker, primary):
    primary.healthy = False

    assert await health_tracker.probe("primary") is False
    assert health_tracker.is_healthy("primary") is False


@pytest.mark.asyncio
async def test_probe_recovers_provider(health_tracker, primary):
    health_tracker.mark_failed("primary")

    assert await health_tracker.probe("primary") is True
    assert health_tracker.is_healthy("primary") is True


@pytest.mark.asyncio
async def test_probe_bounded_by_provider_timeout(scheduler, primary):
    primary.timeout_seconds = 0.05

    async def never_answers():
        await asyncio.sleep(3600)
        return True

    primary.health_check = never_answers
    tracker = ProviderHealthTracker([primary], scheduler)

    assert await tracker.probe("primary") is False


@pytest.mark.asyncio
async def test_probe_unknown_provider(health_tracker):
    assert await health_tracker.probe("nonexistent") is False

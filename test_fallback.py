"""Circuit-breaking fallback decider: threshold, static routing, recovery, retry and timeout."""

import pytest

from fallback import CircuitBreakerState, FallbackDecider, Route


def fail_all(*providers):
    for provider in providers:
        provider.failing = True
        provider.healthy = False


async def drive_to_open(decider, threshold=3):
    for _ in range(threshold):
        explanation, route = await decider.decide(6000)
        assert route == Route.STATIC_AFTER_FAILURE
        assert explanation.source == "static"


@pytest.mark.asyncio
async def test_success_returns_provider_answer(decider, primary):
    explanation, route = await decider.decide(6000, "during deposit")

    assert route == Route.PROVIDERS
    assert explanation.source == "ai"
    assert explanation.provider == "primary"
    assert decider.circuit_state == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_failure_falls_back_to_static(decider, primary, secondary):
    fail_all(primary, secondary)

    explanation = await decider.explain(2003)

    assert explanation.source == "static"
    assert explanation.explanation
    assert decider.state.consecutive_failures == 1
    assert decider.circuit_state == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_circuit_opens_after_threshold_and_bypasses_providers(decider, primary, secondary):
    fail_all(primary, secondary)
    await drive_to_open(decider)
    assert decider.circuit_state == CircuitBreakerState.OPEN

    primary.calls = secondary.calls = 0
    primary.failing = secondary.failing = False

    explanation, route = await decider.decide(6000)

    assert route == Route.STATIC_CIRCUIT_OPEN
    assert explanation.source == "static"
    assert primary.calls == 0
    assert secondary.calls == 0


@pytest.mark.asyncio
async def test_recovery_probe_closes_circuit(decider, primary, secondary, scheduler):
    fail_all(primary, secondary)
    await drive_to_open(decider)

    primary.failing = False
    primary.healthy = True
    await scheduler.advance(decider.recovery_delay)

    assert decider.circuit_state == CircuitBreakerState.CLOSED
    assert decider.state.consecutive_failures == 0

    primary.calls = 0
    explanation, route = await decider.decide(6000)
    assert route == Route.PROVIDERS
    assert primary.calls == 1
    assert explanation.provider == "primary"


@pytest.mark.asyncio
async def test_failed_recovery_probe_rearms_timer(decider, primary, secondary, scheduler):
    fail_all(primary, secondary)
    await drive_to_open(decider)

    await scheduler.advance(decider.recovery_delay)
    assert decider.circuit_state == CircuitBreakerState.OPEN
    assert decider.state.recovery_timer is not None

    secondary.healthy = True
    secondary.failing = False
    await scheduler.advance(decider.recovery_delay)
    assert decider.circuit_state == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures(decider, primary, secondary, health_tracker):
    fail_all(primary, secondary)
    await decider.explain(1)
    await decider.explain(1)
    assert decider.state.consecutive_failures == 2

    primary.failing = False
    primary.healthy = True
    assert await health_tracker.probe("primary") is True
    await decider.explain(1)
    assert decider.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_retry_once_with_linear_backoff(decider, primary, secondary, scheduler, health_tracker):
    """First attempt fails, second succeeds after a 1s backoff."""
    secondary.failing = True
    calls = {"n": 0}
    original = primary.generate_explanation

    async def flaky(code, context=None):
        calls["n"] += 1
        primary.failing = calls["n"] == 1
        return await original(code, context)

    primary.generate_explanation = flaky
    # Failure marks both providers unhealthy; let them be tried again on retry
    health_tracker.mark_failed = lambda provider_id: None

    started = scheduler.now()
    explanation, route = await decider.decide(6000)

    assert route == Route.PROVIDERS
    assert explanation.provider == "primary"
    assert calls["n"] == 2
    assert scheduler.now() - started == pytest.approx(1.0)
    assert decider.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_retry_skips_providers_marked_by_first_attempt(decider, primary, secondary, scheduler):
    primary.failing = secondary.failing = True

    started = scheduler.now()
    _explanation, route = await decider.decide(6000)

    assert route == Route.STATIC_AFTER_FAILURE
    assert primary.calls == 1
    assert secondary.calls == 1
    assert scheduler.now() - started == pytest.approx(1.0)
    assert decider.state.consecutive_failures == 1


@pytest.mark.asyncio
async def test_hanging_primary_fails_over_within_attempt(decider, primary, secondary):
    primary.hang = True
    primary.timeout_seconds = 0.05

    explanation, route = await decider.decide(6000)

    assert route == Route.PROVIDERS
    assert explanation.provider == "secondary"
    assert decider.state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(orchestrator, scheduler, primary, secondary):
    decider = FallbackDecider(orchestrator, scheduler, attempt_timeout=0.05, max_attempts=1)
    primary.hang = True
    secondary.hang = True

    explanation, route = await decider.decide(6000)

    assert route == Route.STATIC_AFTER_FAILURE
    assert explanation.source == "static"
    assert decider.state.consecutive_failures == 1


@pytest.mark.asyncio
async def test_stop_cancels_recovery_timer(decider, primary, secondary, scheduler):
    fail_all(primary, secondary)
    await drive_to_open(decider)
    assert decider.stats()["recovery_pending"] is True

    decider.stop()
    await scheduler.advance(decider.recovery_delay)
    assert decider.circuit_state == CircuitBreakerState.OPEN
    assert decider.stats()["recovery_pending"] is False


@pytest.mark.asyncio
async def test_stats_report_state(decider):
    stats = decider.stats()
    assert stats["state"] == "closed"
    assert stats["consecutive_failures"] == 0
    assert stats["failure_threshold"] == 3
    assert stats["preferred_provider"] == "primary"

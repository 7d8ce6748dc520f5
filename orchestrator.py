"""
Multi-Provider Orchestrator - tries inference providers in priority order.

FLOW (per explain() call):
    For each provider, primary first:
    1. Skip it if the health tracker reports it unhealthy
    2. Call it, bounded by its own timeout; on success return, confidence
       reduced by CONFIDENCE_PENALTY for each priority step below the first
       provider (floored at 0)
    3. On failure mark it failed, arm a one-shot probe, continue

    When nothing answers: AllProvidersUnavailableError carrying the last error.

BACKGROUND PROBES:
    - Every PROBE_INTERVAL_SECONDS all providers are probed, regardless of traffic
    - A provider that just failed is probed again after FAILED_PROBE_DELAY_SECONDS
      so recovery is noticed before the next periodic round
"""

import asyncio
import logging
from typing import Optional, Sequence

from exceptions import AllProvidersUnavailableError, ProviderTimeoutError
from health_tracker import ProviderHealthTracker
from llm_provider import LLMProvider
from models import Explanation
from scheduler import Scheduler, TimerHandle
import metrics

logger = logging.getLogger(__name__)

CONFIDENCE_PENALTY = 0.1
PROBE_INTERVAL_SECONDS = 30
FAILED_PROBE_DELAY_SECONDS = 5


class MultiProviderOrchestrator:
    """Priority-ordered provider chain with health-aware skipping."""

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        health_tracker: ProviderHealthTracker,
        scheduler: Scheduler,
    ):
        if not providers:
            raise ValueError("at least one provider is required")
        self.providers = list(providers)
        self.health = health_tracker
        self.scheduler = scheduler
        self._ticker: Optional[TimerHandle] = None
        self._pending_probes: dict[str, TimerHandle] = {}

    def start(self) -> None:
        """Start the periodic health probe loop."""
        if self._ticker is None or self._ticker.cancelled:
            self._ticker = self.scheduler.call_every(PROBE_INTERVAL_SECONDS, self._periodic_probe, name="provider-probe")

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        for handle in self._pending_probes.values():
            handle.cancel()
        self._pending_probes.clear()

    async def explain(self, code: int, context: Optional[str] = None) -> Explanation:
        """Ask each healthy provider in turn. Raises AllProvidersUnavailableError."""
        last_error: Optional[BaseException] = None

        for position, provider in enumerate(self.providers):
            if not self.health.is_healthy(provider.name):
                logger.debug(f"Skipping unhealthy provider {provider.name}")
                metrics.record_provider_call(provider.name, "skipped")
                continue

            try:
                result = await self._call(provider, code, context)
            except Exception as e:
                last_error = e
                logger.warning(f"Provider {provider.name} failed for code {code}: {type(e).__name__}: {e}")
                metrics.record_provider_call(provider.name, "failure")
                self.health.mark_failed(provider.name)
                self._schedule_probe(provider.name)
                continue

            metrics.record_provider_call(provider.name, "success")
            confidence = max(0.0, round(result.confidence - CONFIDENCE_PENALTY * position, 4))
            if position > 0:
                logger.info(f"Answered by fallback provider {provider.name} (confidence {confidence:.2f})")
            return Explanation(
                code=code,
                explanation=result.explanation,
                fixes=result.fixes,
                source="ai",
                confidence=confidence,
                provider=provider.name,
            )

        if last_error is None:
            message = "No AI providers available"
        else:
            message = f"All AI providers failed. Last error: {last_error}"
        raise AllProvidersUnavailableError(message, last_error=last_error)

    async def _call(self, provider: LLMProvider, code: int, context: Optional[str]):
        try:
            return await asyncio.wait_for(provider.generate_explanation(code, context), timeout=provider.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{provider.name}: no answer within {provider.timeout_seconds}s", provider=provider.name
            ) from e

    async def probe_all(self) -> dict[str, bool]:
        """Probe every provider now and return their health."""
        results = {}
        for provider in self.providers:
            results[provider.name] = await self.health.probe(provider.name)
        return results

    def any_healthy(self) -> bool:
        return any(self.health.is_healthy(provider.name) for provider in self.providers)

    def preferred_provider(self) -> Optional[str]:
        """First provider in priority order that is currently healthy."""
        for provider in self.providers:
            if self.health.is_healthy(provider.name):
                return provider.name
        return None

    async def _periodic_probe(self) -> None:
        results = await self.probe_all()
        logger.debug(f"Periodic provider probe: {results}")

    def _schedule_probe(self, provider_id: str) -> None:
        pending = self._pending_probes.get(provider_id)
        if pending is not None and not pending.cancelled:
            return

        async def _probe_once() -> None:
            self._pending_probes.pop(provider_id, None)
            await self.health.probe(provider_id)

        self._pending_probes[provider_id] = self.scheduler.call_later(
            FAILED_PROBE_DELAY_SECONDS, _probe_once, name=f"provider-reprobe:{provider_id}"
        )

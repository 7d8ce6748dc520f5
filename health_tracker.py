"""Provider health tracking - last-known up/down state per inference provider."""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Iterable, Optional

from llm_provider import LLMProvider
from scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class ProviderHealth:
    """Health record for one provider. The set of records is fixed at construction."""

    provider_id: str
    healthy: bool
    last_checked: Optional[float]


class ProviderHealthTracker:
    """
    Holds ProviderHealth for every configured provider.

    Providers start healthy. mark_failed() flips a provider down immediately;
    scheduling the follow-up probe is the caller's job. probe() never raises.
    """

    def __init__(self, providers: Iterable[LLMProvider], scheduler: Scheduler):
        self.scheduler = scheduler
        self._providers: dict[str, LLMProvider] = {}
        self._health: dict[str, ProviderHealth] = {}
        for provider in providers:
            self._providers[provider.name] = provider
            self._health[provider.name] = ProviderHealth(provider_id=provider.name, healthy=True, last_checked=None)

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def is_healthy(self, provider_id: str) -> bool:
        """Last-known health; unknown providers read as healthy."""
        record = self._health.get(provider_id)
        return True if record is None else record.healthy

    def mark_failed(self, provider_id: str) -> None:
        record = self._health.get(provider_id)
        if record is None:
            return
        if record.healthy:
            logger.warning(f"Provider {provider_id} marked unhealthy")
        record.healthy = False
        record.last_checked = self.scheduler.now()

    async def probe(self, provider_id: str) -> bool:
        """Run the provider's synthetic health call (bounded by its timeout) and record the result."""
        provider = self._providers.get(provider_id)
        if provider is None:
            return False

        try:
            healthy = bool(await asyncio.wait_for(provider.health_check(), timeout=provider.timeout_seconds))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Health probe failed for {provider_id}: {type(e).__name__}: {e}")
            healthy = False

        record = self._health[provider_id]
        if healthy and not record.healthy:
            logger.info(f"Provider {provider_id} recovered")
        elif not healthy and record.healthy:
            logger.warning(f"Provider {provider_id} failed health probe")
        record.healthy = healthy
        record.last_checked = self.scheduler.now()
        return healthy

    def snapshot(self) -> dict[str, dict]:
        """Copy of every health record, keyed by provider id."""
        return {provider_id: asdict(record) for provider_id, record in self._health.items()}

"""
Explanation Service - the public core contract behind the HTTP layer.

RESPONSIBILITY:
    explain_error(code, context) -> Explanation   (total: never raises)
    check_rate_limit(identity_key) -> RateLimitResult   (total: deny is a value)

FLOW (per explain_error call):
    1. Tiered cache lookup (key "error_{code}")
    2. On miss: fallback decider, bounded by PROCESSING_DEADLINE_SECONDS
       (provider chain while the circuit is closed, static table otherwise).
       A chain cut off by the deadline counts as one breaker failure.
    3. Write the answer back into the cache
    Any unexpected fault along the way is answered from the static table.

    The API layer (main.py) owns HTTP: validation errors, status codes, headers.
    This layer owns the resilience wiring and is testable without a server.
"""

import asyncio
import logging
from typing import Optional, Sequence

import metrics
import static_errors
from cache import InMemoryCache, make_cache_key
from cache_redis import RedisCache
from config import Settings
from exceptions import CacheError
from fallback import FallbackDecider
from health_tracker import ProviderHealthTracker
from llm_provider import LLMProvider, build_providers
from models import Explanation, RateLimitResult
from orchestrator import MultiProviderOrchestrator
from rate_limiter import FixedWindowRateLimiter
from scheduler import AsyncioScheduler, Scheduler
from tiered_cache import TieredCache

logger = logging.getLogger(__name__)

PROCESSING_DEADLINE_SECONDS = 10.0


class ExplanationService:
    """
    Wires cache, fallback decider and rate limiter into the two public operations.

    Components are constructed by build_service() (or by tests) and injected,
    so one instance owns all process-wide resilience state.
    """

    def __init__(
        self,
        cache: TieredCache,
        decider: FallbackDecider,
        rate_limiter: FixedWindowRateLimiter,
        scheduler: Scheduler,
        providers: Sequence[LLMProvider] = (),
        cache_ttl_seconds: Optional[int] = None,
        processing_deadline: float = PROCESSING_DEADLINE_SECONDS,
    ):
        self.cache = cache
        self.decider = decider
        self.orchestrator = decider.orchestrator
        self.rate_limiter = rate_limiter
        self.scheduler = scheduler
        self.providers = list(providers)
        self.cache_ttl_seconds = cache_ttl_seconds
        self.processing_deadline = processing_deadline

    async def explain_error(self, code: int, context: Optional[str] = None) -> Explanation:
        """Explanation for a normalized error code. Never raises."""
        try:
            key = make_cache_key(code)
            cached = await self.cache.get(key)
            if cached is not None:
                logger.info(f"Cache hit for error code {code}")
                metrics.record_explanation("cache")
                return cached

            explanation = await self._decide(code, context)
            await self.cache.set(key, explanation, self.cache_ttl_seconds)
            metrics.record_explanation(explanation.source)
            logger.info(f"Explained error code {code} (source={explanation.source})")
            return explanation
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Explanation flow failed for code {code}: {type(e).__name__}: {e}", exc_info=True)
            metrics.record_explanation("static")
            return static_errors.explain_error(code)

    async def _decide(self, code: int, context: Optional[str]) -> Explanation:
        try:
            return await asyncio.wait_for(self.decider.explain(code, context), timeout=self.processing_deadline)
        except asyncio.TimeoutError:
            logger.error(f"Processing deadline of {self.processing_deadline}s exceeded for code {code}")
            self.decider.record_abandoned(code)
            return static_errors.explain_error(code)

    def check_rate_limit(self, identity_key: str) -> RateLimitResult:
        result = self.rate_limiter.check_and_increment(identity_key)
        if not result.allowed:
            metrics.record_rate_limit_denied(self.rate_limiter.name)
        return result

    async def start(self) -> None:
        """Open provider sessions and the persistent tier, then start background timers."""
        for provider in self.providers:
            await provider.connect()

        primary = self.cache.primary
        if isinstance(primary, RedisCache):
            try:
                await primary.connect()
            except CacheError as e:
                logger.warning(f"Starting with persistent cache degraded: {e}")
                self.cache.mark_primary_unhealthy()

        self.rate_limiter.start()
        self.cache.memory.start()
        self.orchestrator.start()
        logger.info(f"Explanation service started ({len(self.providers)} provider(s))")

    async def shutdown(self) -> None:
        """Cancel every timer and release outbound connections."""
        self.orchestrator.stop()
        self.decider.stop()
        self.cache.stop()
        self.rate_limiter.stop()
        await self.scheduler.shutdown()

        for provider in self.providers:
            try:
                await provider.disconnect()
            except Exception as e:
                logger.warning(f"Error closing provider {provider.name}: {e}")

        primary = self.cache.primary
        if isinstance(primary, RedisCache):
            try:
                await primary.disconnect()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
        logger.info("Explanation service stopped")

    def status(self) -> dict:
        return {
            "providers": self.orchestrator.health.snapshot(),
            "circuit": self.decider.stats(),
            "cache": self.cache.status(),
            "rate_limiter": self.rate_limiter.stats(),
        }


def build_service(settings: Settings, scheduler: Optional[Scheduler] = None) -> ExplanationService:
    """Construct the full component graph from validated settings."""
    scheduler = scheduler or AsyncioScheduler()

    providers = build_providers(settings, scheduler)
    health = ProviderHealthTracker(providers, scheduler)
    orchestrator = MultiProviderOrchestrator(providers, health, scheduler)
    decider = FallbackDecider(orchestrator, scheduler)

    persistent = RedisCache(redis_url=settings.redis_url) if settings.redis_url else None
    if persistent is None:
        logger.warning("REDIS_URL not set, caching in memory only")
    cache = TieredCache(persistent, InMemoryCache(scheduler), scheduler, default_ttl_seconds=settings.cache_ttl_seconds)

    limiter = FixedWindowRateLimiter(
        scheduler,
        limit=settings.rate_limit_per_minute,
        window_seconds=settings.rate_limit_window_seconds,
        name="requests",
    )

    return ExplanationService(
        cache=cache,
        decider=decider,
        rate_limiter=limiter,
        scheduler=scheduler,
        providers=providers,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )

"""Shared fixtures: virtual-time scheduler, scripted providers and an in-memory persistent store."""

import asyncio
from typing import Optional

import pytest

from cache import CacheEntry, InMemoryCache
from exceptions import CacheError, ProviderError
from fallback import FallbackDecider
from health_tracker import ProviderHealthTracker
from llm_provider import LLMProvider
from models import AIExplanation
from orchestrator import MultiProviderOrchestrator
from rate_limiter import FixedWindowRateLimiter
from scheduler import ManualScheduler
from tiered_cache import TieredCache

START_TIME = 1_000_000.0


class FakeProvider(LLMProvider):
    """
    Scripted provider.

    `failing` makes explanation calls raise, `hang` makes them block until
    cancelled, `healthy` drives health_check().
    """

    def __init__(self, name: str, confidence: float = 0.8, timeout_seconds: float = 1.0):
        super().__init__(name=name, model=f"{name}-model", timeout_seconds=timeout_seconds)
        self.confidence = confidence
        self.failing = False
        self.hang = False
        self.healthy = True
        self.calls = 0
        self.health_checks = 0
        self.connected = False

    async def invoke(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        return "ok"

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def generate_explanation(self, code: int, context: Optional[str] = None) -> AIExplanation:
        self.calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.failing:
            raise ProviderError(f"{self.name} is down", provider=self.name)
        return AIExplanation(
            explanation=f"{self.name} explains {code}",
            fixes=["Run anchor test", "Check solana logs"],
            confidence=self.confidence,
            model=self.model,
            tokens=10,
        )

    async def health_check(self) -> bool:
        self.health_checks += 1
        if not self.healthy:
            raise ProviderError(f"{self.name} health check failed", provider=self.name)
        return True


class FakeStore:
    """In-memory stand-in for RedisCache with the same conditional-write rule."""

    def __init__(self):
        self.items: dict[str, CacheEntry] = {}
        self.fail_get = False
        self.fail_put = False
        self.healthy = True
        self.get_calls = 0
        self.put_calls = 0

    async def get_item(self, key: str) -> Optional[CacheEntry]:
        self.get_calls += 1
        if self.fail_get:
            raise CacheError("store unreachable")
        return self.items.get(key)

    async def put_item(self, entry: CacheEntry, now: float) -> bool:
        self.put_calls += 1
        if self.fail_put:
            raise CacheError("store unreachable")
        current = self.items.get(entry.key)
        if current is not None and current.expires_at > now:
            return False
        self.items[entry.key] = entry
        return True

    async def health_check(self) -> bool:
        return self.healthy


@pytest.fixture
def scheduler():
    return ManualScheduler(start=START_TIME)


@pytest.fixture
def primary():
    return FakeProvider("primary", confidence=0.8)


@pytest.fixture
def secondary():
    return FakeProvider("secondary", confidence=0.75)


@pytest.fixture
def health_tracker(scheduler, primary, secondary):
    return ProviderHealthTracker([primary, secondary], scheduler)


@pytest.fixture
def orchestrator(scheduler, primary, secondary, health_tracker):
    return MultiProviderOrchestrator([primary, secondary], health_tracker, scheduler)


@pytest.fixture
def decider(orchestrator, scheduler):
    return FallbackDecider(orchestrator, scheduler, attempt_timeout=0.5)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def tiered_cache(store, scheduler):
    return TieredCache(store, InMemoryCache(scheduler), scheduler, default_ttl_seconds=3600)


@pytest.fixture
def rate_limiter(scheduler):
    return FixedWindowRateLimiter(scheduler, limit=3, window_seconds=60)

"""Tiered cache: persistent-first reads, in-memory degrade path, recheck timer, expiry."""

import pytest

from cache import CacheEntry, InMemoryCache, make_cache_key
from models import Explanation
from tiered_cache import RECHECK_DELAY_SECONDS, TieredCache


def ai_explanation(code: int = 6000, confidence: float = 0.8) -> Explanation:
    return Explanation(
        code=code,
        explanation=f"Custom program error {code}",
        fixes=["Check the program source", "Run anchor test"],
        source="ai",
        confidence=confidence,
        provider="primary",
    )


@pytest.mark.asyncio
async def test_set_then_get_from_persistent_tier(tiered_cache, store):
    key = make_cache_key(6000)
    await tiered_cache.set(key, ai_explanation())

    assert key in store.items
    result = await tiered_cache.get(key)
    assert result.source == "cache"
    assert result.explanation == "Custom program error 6000"
    assert result.confidence == 0.8
    assert result.provider == "primary"


@pytest.mark.asyncio
async def test_persistent_hit_populates_memory(tiered_cache, store, scheduler):
    key = make_cache_key(2000)
    now = scheduler.now()
    store.items[key] = CacheEntry.from_explanation(key, ai_explanation(2000), now=now, ttl_seconds=600)

    assert tiered_cache.memory.size() == 0
    await tiered_cache.get(key)
    assert tiered_cache.memory.size() == 1


@pytest.mark.asyncio
async def test_get_failure_degrades_to_memory(tiered_cache, store):
    """Persistent get fails: the value written earlier is still served from memory."""
    key = make_cache_key(6001)
    await tiered_cache.set(key, ai_explanation(6001))

    store.fail_get = True
    result = await tiered_cache.get(key)

    assert result is not None
    assert result.code == 6001
    assert tiered_cache.primary_healthy is False
    assert store.get_calls == 1

    # Within the recheck window the persistent tier is not consulted again
    await tiered_cache.get(key)
    await tiered_cache.get(key)
    assert store.get_calls == 1


@pytest.mark.asyncio
async def test_recheck_restores_primary(tiered_cache, store, scheduler):
    store.fail_get = True
    await tiered_cache.get("error_1")
    assert tiered_cache.primary_healthy is False

    store.fail_get = False
    await scheduler.advance(RECHECK_DELAY_SECONDS - 1)
    assert tiered_cache.primary_healthy is False

    await scheduler.advance(1)
    assert tiered_cache.primary_healthy is True


@pytest.mark.asyncio
async def test_recheck_rearms_while_store_stays_down(tiered_cache, store, scheduler):
    store.fail_get = True
    store.healthy = False
    await tiered_cache.get("error_1")

    await scheduler.advance(RECHECK_DELAY_SECONDS)
    assert tiered_cache.primary_healthy is False
    assert tiered_cache.status()["recheck_pending"] is True

    store.healthy = True
    await scheduler.advance(RECHECK_DELAY_SECONDS)
    assert tiered_cache.primary_healthy is True
    assert tiered_cache.status()["recheck_pending"] is False


@pytest.mark.asyncio
async def test_only_one_recheck_pending(tiered_cache, store, scheduler):
    store.fail_get = True
    for _ in range(5):
        await tiered_cache.get("error_1")
    tiered_cache.mark_primary_unhealthy()

    assert scheduler.pending == 1


@pytest.mark.asyncio
async def test_set_failure_is_swallowed(tiered_cache, store):
    store.fail_put = True
    key = make_cache_key(3012)

    await tiered_cache.set(key, ai_explanation(3012))

    assert tiered_cache.primary_healthy is False
    assert (await tiered_cache.get(key)).code == 3012


@pytest.mark.asyncio
async def test_set_while_degraded_skips_persistent(tiered_cache, store):
    tiered_cache.mark_primary_unhealthy()
    await tiered_cache.set("error_1", ai_explanation(1))

    assert store.put_calls == 0
    assert tiered_cache.memory.size() == 1


@pytest.mark.asyncio
async def test_conditional_write_keeps_live_record(tiered_cache, store, scheduler):
    key = make_cache_key(6000)
    await tiered_cache.set(key, ai_explanation(6000, confidence=0.8))
    await tiered_cache.set(key, ai_explanation(6000, confidence=0.5))

    assert store.put_calls == 2
    assert store.items[key].confidence == 0.8


@pytest.mark.asyncio
async def test_conditional_write_replaces_expired_record(tiered_cache, store, scheduler):
    key = make_cache_key(6000)
    await tiered_cache.set(key, ai_explanation(6000, confidence=0.8), ttl=60)
    await scheduler.advance(61)
    await tiered_cache.set(key, ai_explanation(6000, confidence=0.5), ttl=60)

    assert store.items[key].confidence == 0.5


@pytest.mark.asyncio
async def test_expired_entry_treated_as_absent(tiered_cache, store, scheduler):
    """A record past expires_at is a miss even if the store still holds it."""
    key = make_cache_key(2001)
    await tiered_cache.set(key, ai_explanation(2001), ttl=60)

    await scheduler.advance(60)
    assert key in store.items
    assert await tiered_cache.get(key) is None


@pytest.mark.asyncio
async def test_non_positive_ttl_uses_default(tiered_cache, store, scheduler):
    key = make_cache_key(100)
    await tiered_cache.set(key, ai_explanation(100), ttl=0)

    entry = store.items[key]
    assert entry.expires_at - entry.created_at == 3600


@pytest.mark.asyncio
async def test_cached_value_keeps_origin_source(tiered_cache, store):
    key = make_cache_key(6000)
    cached = ai_explanation(6000).model_copy(update={"source": "cache"})
    await tiered_cache.set(key, cached)

    assert store.items[key].origin_source == "ai"


@pytest.mark.asyncio
async def test_memory_only_cache_without_persistent_tier(scheduler):
    cache = TieredCache(None, InMemoryCache(scheduler), scheduler)
    assert cache.primary_healthy is False

    await cache.set("error_6000", ai_explanation(6000))
    assert (await cache.get("error_6000")).source == "cache"
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_memory_sweep_removes_expired_entries(scheduler):
    memory = InMemoryCache(scheduler)
    memory.start()
    now = scheduler.now()
    memory.set(CacheEntry.from_explanation("error_1", ai_explanation(1), now=now, ttl_seconds=60))
    memory.set(CacheEntry.from_explanation("error_2", ai_explanation(2), now=now, ttl_seconds=3600))

    await scheduler.advance(300)
    assert memory.size() == 1
    memory.stop()


def test_cache_entry_rejects_non_positive_lifetime():
    with pytest.raises(ValueError):
        CacheEntry(
            key="error_1",
            code=1,
            explanation="x",
            fixes=[],
            created_at=10.0,
            expires_at=10.0,
            origin_source="ai",
        )

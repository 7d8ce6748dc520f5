"""
Tiered Cache - persistent tier first, in-memory tier as the degrade path.

READ PATH:
    primary healthy   -> read persistent; hit populates memory and returns
                         failure marks primary unhealthy, arms recheck, falls through
    primary unhealthy -> memory only

WRITE PATH:
    memory first (value is servable even if the persistent write fails),
    then a conditional persistent write while primary is healthy.
    A persistent failure degrades the tier; it never fails the caller.

RECOVERY:
    While degraded a recheck fires every RECHECK_DELAY_SECONDS until the
    persistent store answers its health check.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import metrics
from cache import CacheEntry, InMemoryCache
from models import Explanation
from scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

RECHECK_DELAY_SECONDS = 30
DEFAULT_TTL_SECONDS = 3600


class PersistentStore(Protocol):
    """Boundary of the persistent key-value backend (RedisCache in production)."""

    async def get_item(self, key: str) -> Optional[CacheEntry]: ...

    async def put_item(self, entry: CacheEntry, now: float) -> bool: ...

    async def health_check(self) -> bool: ...


@dataclass
class CacheTierState:
    primary_healthy: bool = True


class TieredCache:
    """Explanation cache with primary/secondary degradation."""

    def __init__(
        self,
        primary: Optional[PersistentStore],
        memory: InMemoryCache,
        scheduler: Scheduler,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.primary = primary
        self.memory = memory
        self.scheduler = scheduler
        self.default_ttl_seconds = default_ttl_seconds
        self.state = CacheTierState(primary_healthy=primary is not None)
        self._recheck: Optional[TimerHandle] = None
        metrics.record_cache_tier_health(self.state.primary_healthy)

    @property
    def primary_healthy(self) -> bool:
        return self.state.primary_healthy

    async def get(self, key: str) -> Optional[Explanation]:
        """Cached explanation for key (source='cache'), or None. Never raises."""
        if self.primary is not None and self.state.primary_healthy:
            try:
                entry = await self.primary.get_item(key)
            except Exception as e:
                logger.warning(f"Persistent cache read failed, using in-memory tier: {e}")
                metrics.record_cache_lookup("persistent", "error")
                self.mark_primary_unhealthy()
            else:
                if entry is not None and not entry.is_expired(self.scheduler.now()):
                    self.memory.set(entry)
                    metrics.record_cache_lookup("persistent", "hit")
                    return entry.to_explanation()
                metrics.record_cache_lookup("persistent", "miss")

        entry = self.memory.get(key)
        if entry is None:
            metrics.record_cache_lookup("memory", "miss")
            return None
        metrics.record_cache_lookup("memory", "hit")
        return entry.to_explanation()

    async def set(self, key: str, value: Explanation, ttl: Optional[float] = None) -> None:
        """Store value under key for ttl seconds. Never raises."""
        ttl_seconds = ttl if ttl and ttl > 0 else self.default_ttl_seconds
        now = self.scheduler.now()
        entry = CacheEntry.from_explanation(key, value, now=now, ttl_seconds=ttl_seconds)
        self.memory.set(entry)

        if self.primary is None or not self.state.primary_healthy:
            return
        try:
            await self.primary.put_item(entry, now)
        except Exception as e:
            logger.warning(f"Persistent cache write failed: {e}")
            self.mark_primary_unhealthy()

    def mark_primary_unhealthy(self) -> None:
        """Degrade to the in-memory tier and arm the recheck timer (once)."""
        if self.state.primary_healthy:
            logger.warning(f"Persistent cache tier marked unhealthy, recheck in {RECHECK_DELAY_SECONDS}s")
            metrics.record_cache_tier_health(False)
        self.state.primary_healthy = False
        if self.primary is not None and (self._recheck is None or self._recheck.cancelled):
            self._recheck = self.scheduler.call_later(RECHECK_DELAY_SECONDS, self._check_primary, name="cache-recheck")

    async def _check_primary(self) -> None:
        self._recheck = None
        try:
            healthy = await self.primary.health_check()
        except Exception as e:
            logger.warning(f"Persistent cache health check failed: {e}")
            healthy = False

        if healthy:
            self.state.primary_healthy = True
            metrics.record_cache_tier_health(True)
            logger.info("Persistent cache tier is healthy again")
        else:
            self.mark_primary_unhealthy()

    def stop(self) -> None:
        if self._recheck is not None:
            self._recheck.cancel()
            self._recheck = None
        self.memory.stop()

    def status(self) -> dict:
        return {
            "persistent_configured": self.primary is not None,
            "primary_healthy": self.state.primary_healthy,
            "recheck_pending": self._recheck is not None,
            "memory": self.memory.stats(),
        }

"""
In-memory cache tier.
Process-local map with explicit expiry timestamps, swept on a fixed interval.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

from models import Explanation, ExplanationSource
from scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300


def make_cache_key(code: int) -> str:
    """Cache key for a normalized error code."""
    return f"error_{code}"


@dataclass
class CacheEntry:
    """One cached explanation. Logically absent once now >= expires_at."""

    key: str
    code: int
    explanation: str
    fixes: list[str]
    created_at: float
    expires_at: float
    origin_source: ExplanationSource
    confidence: Optional[float] = None
    provider: Optional[str] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @classmethod
    def from_explanation(cls, key: str, value: Explanation, now: float, ttl_seconds: float) -> "CacheEntry":
        # A value read back from the cache keeps the source that originally produced it
        origin = "ai" if value.source == "cache" else value.source
        return cls(
            key=key,
            code=value.code,
            explanation=value.explanation,
            fixes=list(value.fixes),
            created_at=now,
            expires_at=now + ttl_seconds,
            origin_source=origin,
            confidence=value.confidence,
            provider=value.provider,
        )

    def to_explanation(self) -> Explanation:
        return Explanation(
            code=self.code,
            explanation=self.explanation,
            fixes=list(self.fixes),
            source="cache",
            confidence=self.confidence,
            provider=self.provider,
        )

    def to_record(self) -> dict:
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict) -> "CacheEntry":
        return cls(**record)


class InMemoryCache:
    """
    Degrade-path cache tier.

    Reads check expiry themselves, so an entry the sweep hasn't reached yet
    is still reported as a miss.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        """Initialize empty cache with hit/miss counters."""
        self.scheduler = scheduler
        self._entries: dict[str, CacheEntry] = {}
        self._hits: int = 0
        self._misses: int = 0
        self._sweep_handle: Optional[TimerHandle] = None

    def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self._sweep_handle is None or self._sweep_handle.cancelled:
            self._sweep_handle = self.scheduler.call_every(SWEEP_INTERVAL_SECONDS, self._sweep, name="memory-cache-sweep")

    def stop(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None

    def get(self, key: str) -> Optional[CacheEntry]:
        """Live entry for key, or None."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self.scheduler.now()):
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def _sweep(self) -> None:
        self.sweep()

    def sweep(self) -> int:
        """Drop expired entries. Returns number removed."""
        now = self.scheduler.now()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"In-memory cache swept {len(expired)} expired entr(ies)")
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0
        return {
            "total_requests": total,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "hit_rate_percent": round(hit_rate, 2),
            "stored_items": len(self._entries),
        }

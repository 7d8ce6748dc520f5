"""Redis persistent cache tier - explanation records with server-side TTL and conditional writes."""

import asyncio
import json
import logging
import math
import os
from typing import Optional

import redis.asyncio as redis

from cache import CacheEntry
from exceptions import CacheError

logger = logging.getLogger(__name__)

OPERATION_TIMEOUT_SECONDS = 2.0

# Write only if no record exists or the stored record has already expired.
# KEYS[1] = record key, ARGV[1] = record JSON, ARGV[2] = now, ARGV[3] = TTL seconds
CONDITIONAL_PUT_LUA = """
local current = redis.call('GET', KEYS[1])
if current then
  local ok, record = pcall(cjson.decode, current)
  if ok and type(record) == 'table' then
    local expires_at = tonumber(record['expires_at'])
    if expires_at and expires_at > tonumber(ARGV[2]) then
      return 0
    end
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return 1
"""


class RedisCache:
    """
    Redis-backed persistent tier.

    Unlike the in-memory tier, every failure here raises CacheError so the
    tiered cache can degrade. A missing key is a plain None.
    """

    def __init__(self, redis_url: str | None = None, key_prefix: str = "explainer:cache:") -> None:
        """Initialize Redis cache with URL and key prefix."""
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        if not self.redis_url:
            raise ValueError("Redis URL required. Set REDIS_URL env var or pass redis_url parameter.")
        self.key_prefix = key_prefix
        self.client: Optional[redis.Redis] = None
        self._put_script = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            self.client = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
            await asyncio.wait_for(self.client.ping(), timeout=OPERATION_TIMEOUT_SECONDS)
            self._put_script = self.client.register_script(CONDITIONAL_PUT_LUA)
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            raise CacheError(f"Redis connection failed: {e}") from e

    def _make_key(self, key: str) -> str:
        """Create Redis key with prefix."""
        return f"{self.key_prefix}{key}"

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise CacheError("Redis not connected")
        return self.client

    async def get_item(self, key: str) -> Optional[CacheEntry]:
        """Stored record for key, or None. Raises CacheError when Redis fails or the record is malformed."""
        client = self._require_client()
        try:
            raw = await asyncio.wait_for(client.get(self._make_key(key)), timeout=OPERATION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise CacheError(f"Redis GET timeout after {OPERATION_TIMEOUT_SECONDS}s") from e
        except redis.RedisError as e:
            raise CacheError(f"Redis GET error: {e}") from e

        if raw is None:
            return None
        try:
            return CacheEntry.from_record(json.loads(raw))
        except (ValueError, TypeError) as e:
            raise CacheError(f"Malformed cache record for {key}: {e}") from e

    async def put_item(self, entry: CacheEntry, now: float) -> bool:
        """
        Conditional write. Returns False when a live record already exists.

        `now` is captured by the caller before the round trip, so under
        concurrent writers this is a best-effort staleness guard.
        """
        client = self._require_client()
        if self._put_script is None:
            self._put_script = client.register_script(CONDITIONAL_PUT_LUA)

        ttl_seconds = max(1, math.ceil(entry.expires_at - now))
        try:
            written = await asyncio.wait_for(
                self._put_script(keys=[self._make_key(entry.key)], args=[json.dumps(entry.to_record()), now, ttl_seconds]),
                timeout=OPERATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise CacheError(f"Redis PUT timeout after {OPERATION_TIMEOUT_SECONDS}s") from e
        except redis.RedisError as e:
            raise CacheError(f"Redis PUT error: {e}") from e

        if not written:
            logger.debug(f"Conditional write skipped for {entry.key}: live record present")
        return bool(written)

    async def health_check(self) -> bool:
        """Ping Redis, reconnecting first if the client was never established."""
        try:
            if self.client is None:
                await self.connect()
            await asyncio.wait_for(self.client.ping(), timeout=OPERATION_TIMEOUT_SECONDS)
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Redis connection closed")

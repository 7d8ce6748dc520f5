"""
Rate Limiter - Fixed window request counter per key.

RESPONSIBILITY:
    Limit requests per caller identity (client IP at the HTTP layer).
    Also used by the secondary provider to cap its own outbound call rate.

FIXED WINDOW ALGORITHM:
    - First request from a key opens a window of `window_seconds` with count 1
    - Later requests in the same window increment the count while below `limit`
    - At or above `limit` the request is denied WITHOUT incrementing
    - Once now >= reset_at the window is replaced (not incremented)

TRADE-OFFS:
    - Admits bursts at window boundaries (up to 2x limit across the edge)
    - In exchange: O(1) memory and O(1) update per key
    - Process-local: each server instance counts independently

    Denials are plain RateLimitResult values, never exceptions.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from models import RateLimitResult
from scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300


@dataclass
class RateWindow:
    """Counter for one key inside one fixed window."""

    key: str
    count: int
    window_reset_at: float
    first_request_at: float


class FixedWindowRateLimiter:
    """
    In-memory fixed window rate limiter.

    Every state transition in check_and_increment() is a single synchronous
    read-modify-write, so concurrent coroutines never see a torn window.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        limit: int = 100,
        window_seconds: float = 60,
        name: str = "requests",
    ):
        """
        Args:
            scheduler: Clock and sweep timer source
            limit: Max requests per window per key
            window_seconds: Window duration
            name: Label used in logs
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.scheduler = scheduler
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self._windows: dict[str, RateWindow] = {}
        self._sweep_handle: Optional[TimerHandle] = None

    def start(self) -> None:
        """Start the periodic sweep of expired windows."""
        if self._sweep_handle is None or self._sweep_handle.cancelled:
            self._sweep_handle = self.scheduler.call_every(
                SWEEP_INTERVAL_SECONDS, self._sweep, name=f"ratelimit-sweep:{self.name}"
            )

    def stop(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None

    def check_and_increment(self, key: str) -> RateLimitResult:
        """Count one request for key and decide whether it is allowed."""
        now = self.scheduler.now()
        window = self._windows.get(key)

        if window is None or now >= window.window_reset_at:
            window = RateWindow(key=key, count=1, window_reset_at=now + self.window_seconds, first_request_at=now)
            self._windows[key] = window
            return self._result(window, allowed=True, now=now)

        if window.count < self.limit:
            window.count += 1
            return self._result(window, allowed=True, now=now)

        logger.warning(f"Rate limit exceeded ({self.name}) for {key[:32]}: {self.limit} per {self.window_seconds}s")
        return self._result(window, allowed=False, now=now)

    def get_status(self, key: str) -> RateLimitResult:
        """Current standing for key without counting a request."""
        now = self.scheduler.now()
        window = self._windows.get(key)
        if window is None or now >= window.window_reset_at:
            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=now + self.window_seconds,
            )
        return self._result(window, allowed=window.count < self.limit, now=now)

    def reset(self, key: str) -> None:
        """Drop the window for key (admin/debug operation)."""
        if self._windows.pop(key, None) is not None:
            logger.info(f"Rate limit reset ({self.name}) for key: {key[:32]}")

    def _result(self, window: RateWindow, allowed: bool, now: float) -> RateLimitResult:
        retry_after = None if allowed else max(1, math.ceil(window.window_reset_at - now))
        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - window.count),
            reset_at=window.window_reset_at,
            retry_after=retry_after,
        )

    async def _sweep(self) -> None:
        self.sweep()

    def sweep(self) -> int:
        """Remove windows whose reset time has passed. Returns number removed."""
        now = self.scheduler.now()
        expired = [key for key, window in self._windows.items() if now >= window.window_reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter ({self.name}) swept {len(expired)} expired window(s)")
        return len(expired)

    def stats(self) -> dict:
        """Key count and request totals for the status endpoint."""
        windows = list(self._windows.values())
        return {
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "total_keys": len(windows),
            "total_requests": sum(w.count for w in windows),
            "oldest_window_at": min((w.first_request_at for w in windows), default=None),
            "newest_window_at": max((w.first_request_at for w in windows), default=None),
        }

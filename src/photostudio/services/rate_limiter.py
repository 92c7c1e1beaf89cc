"""Fixed-window rate limiting keyed by ``endpoint:identifier``.

``InMemoryRateLimiter`` keeps its windows in a process-local dict, which is
only correct for a single-instance deployment.  ``RedisRateLimiter`` keeps the
same contract on a shared Redis store for multi-instance deployments.
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from typing import Callable

import structlog

log = structlog.get_logger()

# Expired windows older than this are removed by the lazy sweep.
_SWEEP_GRACE_SECONDS = 60
_SWEEP_PROBABILITY = 0.001


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int


RATE_LIMITS: dict[str, RateLimitRule] = {
    "AUTH": RateLimitRule(max_requests=5, window_seconds=15 * 60),
    "PAYMENT_CREATE": RateLimitRule(max_requests=10, window_seconds=60 * 60),
    "PAYMENT_VERIFY": RateLimitRule(max_requests=20, window_seconds=60 * 60),
    "API_GENERAL": RateLimitRule(max_requests=100, window_seconds=15 * 60),
    "IMAGE_GENERATION": RateLimitRule(max_requests=20, window_seconds=60 * 60),
    "FILE_UPLOAD": RateLimitRule(max_requests=50, window_seconds=60 * 60),
}


@dataclass
class RateLimitResult:
    """Outcome of one fixed-window check."""

    current_count: int
    limit: int
    window: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    @property
    def allowed(self) -> bool:
        return self.current_count <= self.limit

    @property
    def exceeded(self) -> bool:
        return not self.allowed

    def retry_after(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


def create_rate_limit_key(endpoint: str, user_id: str | None, ip_address: str) -> str:
    """Prefer the authenticated user id and fall back to the client IP."""
    return f"{endpoint}:{user_id or ip_address}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """Process-local fixed-window counter."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    async def check(self, key: str, rule: RateLimitRule) -> RateLimitResult:
        now = self._clock()

        if random.random() < _SWEEP_PROBABILITY:
            self.sweep(now)

        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            window = _Window(count=0, reset_at=now + rule.window_seconds)
            self._windows[key] = window

        window.count += 1
        return RateLimitResult(
            current_count=window.count,
            limit=rule.max_requests,
            window=rule.window_seconds,
            reset_at=window.reset_at,
        )

    def status(self, key: str, rule: RateLimitRule) -> RateLimitResult:
        """Peek at the current window without counting a request."""
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            return RateLimitResult(0, rule.max_requests, rule.window_seconds, now + rule.window_seconds)
        return RateLimitResult(window.count, rule.max_requests, rule.window_seconds, window.reset_at)

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            key for key, window in self._windows.items()
            if now > window.reset_at + _SWEEP_GRACE_SECONDS
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def stats(self) -> dict:
        return {
            "total_keys": len(self._windows),
            "entries": [
                {"key": key, "count": window.count, "reset_at": window.reset_at}
                for key, window in self._windows.items()
            ],
        }


class RedisRateLimiter:
    """Fixed-window counter on Redis; fails open when the store is unreachable."""

    def __init__(self, redis, prefix: str = "ratelimit") -> None:
        self._redis = redis
        self._prefix = prefix

    async def check(self, key: str, rule: RateLimitRule) -> RateLimitResult:
        redis_key = f"{self._prefix}:{key}"
        window_ms = rule.window_seconds * 1000
        now = time.time()

        try:
            pipe = self._redis.pipeline()
            # SET NX starts a window only when none is live; INCR keeps its TTL.
            pipe.set(redis_key, 0, px=window_ms, nx=True)
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            _, count, ttl_ms = await pipe.execute()
        except Exception as exc:
            log.warning("rate_limit_redis_error", error=str(exc), key=key)
            return RateLimitResult(0, rule.max_requests, rule.window_seconds, now + rule.window_seconds)

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return RateLimitResult(
            current_count=int(count),
            limit=rule.max_requests,
            window=rule.window_seconds,
            reset_at=now + ttl_ms / 1000,
        )

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}:{key}")

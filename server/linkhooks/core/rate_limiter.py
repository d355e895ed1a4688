"""Fixed-window rate limiting for management-facing trigger endpoints."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from redis.asyncio import Redis

DEFAULT_NAMESPACE = "rate_limit"
DEFAULT_MAX_KEYS = 10_000
DEFAULT_SWEEP_INTERVAL = 1_000


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        """Whole seconds until the current window resets (at least 1)."""
        return max(1, math.ceil(self.reset_at - now))


class RateLimiter(Protocol):
    async def allow(self, key: str, limit: int, window_ms: int) -> RateLimitDecision: ...

    def now(self) -> float: ...


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """In-process fixed-window counter keyed by caller identity.

    The first call in a window sets ``count=1`` and ``reset_at = now + window``;
    later calls increment until ``limit``. A window resets once ``now`` is past
    ``reset_at``, so bursts straddling a boundary are allowed.

    Expired windows are evicted every ``sweep_interval`` calls and whenever the
    map grows past ``max_keys``.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = DEFAULT_MAX_KEYS,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self._clock = clock
        self._max_keys = max_keys
        self._sweep_interval = sweep_interval
        self._windows: dict[str, _Window] = {}
        self._calls = 0

    def __len__(self) -> int:
        return len(self._windows)

    def now(self) -> float:
        return self._clock()

    async def allow(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        return self.check(key, limit, window_ms)

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        """Synchronous form of :meth:`allow`."""
        now = self._clock()
        self._calls += 1
        if self._calls % self._sweep_interval == 0 or len(self._windows) >= self._max_keys:
            self.evict_expired(now)

        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            window = _Window(count=1, reset_at=now + window_ms / 1000)
            self._windows[key] = window
            return RateLimitDecision(allowed=True, remaining=max(limit - 1, 0), limit=limit, reset_at=window.reset_at)

        if window.count >= limit:
            return RateLimitDecision(allowed=False, remaining=0, limit=limit, reset_at=window.reset_at)

        window.count += 1
        return RateLimitDecision(allowed=True, remaining=limit - window.count, limit=limit, reset_at=window.reset_at)

    def evict_expired(self, now: float | None = None) -> int:
        """Drop windows that have already reset; returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)


class RedisRateLimiter:
    """Fixed-window counter shared across processes through Redis.

    Uses ``INCR`` on a per-key counter whose expiry is set when the window
    opens; the key disappearing is the window reset.
    """

    def __init__(self, redis: Redis, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._redis = redis
        self._namespace = namespace

    @property
    def redis(self) -> Redis:
        return self._redis

    async def aclose(self) -> None:
        await self._redis.aclose()

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def now(self) -> float:
        return time.time()

    async def allow(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        redis_key = self._key(key)
        count = await self._redis.incr(redis_key)
        if count == 1:
            await self._redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        else:
            ttl_ms = await self._redis.pttl(redis_key)
            if ttl_ms is None or ttl_ms < 0:
                # Counter lost its expiry; restart the window
                await self._redis.pexpire(redis_key, window_ms)
                ttl_ms = window_ms

        reset_at = self.now() + ttl_ms / 1000
        allowed = count <= limit
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(limit - count, 0),
            limit=limit,
            reset_at=reset_at,
        )

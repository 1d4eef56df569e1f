"""Sliding-window rate limiting over an injectable attempt store.

Every ``check`` records an attempt, including the ones that end up rejected.
The default store keeps buckets in process memory, which only yields a global
attempt count when a single process serves every request; point
``RATE_LIMIT_REDIS_URL`` at a shared Redis to count across instances.
Each store records an attempt atomically: memory under its own lock, Redis
in a single MULTI transaction over a sorted set.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from starlette.requests import Request

from backend.app import config

try:
    import redis.asyncio as redis  # type: ignore
except ImportError:  # pragma: no cover - redis is optional for tests
    redis = None

logger = logging.getLogger("security.rate_limiter")

RATE_LIMIT_PREFIX = "auth:ratelimit:"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int


def _bucket_ttl_seconds(window_ms: int) -> int:
    return max(1, math.ceil(window_ms / 1000))


class RateLimitStore:
    async def get(self, key: str) -> List[float]:
        raise NotImplementedError

    async def set(self, key: str, value: List[float], ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    async def record(self, key: str, now: float, window_ms: int) -> List[float]:
        """Drop attempts older than the window, append ``now`` and return the bucket oldest first.

        This default is a plain read-modify-write; stores shared between processes override it
        with an atomic version.
        """

        recent = [ts for ts in await self.get(key) if ts > now - window_ms]
        recent.append(now)
        await self.set(key, recent, ttl_seconds=_bucket_ttl_seconds(window_ms))
        return recent


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(
        self,
        *,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._buckets: Dict[str, Tuple[List[float], Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_interval = (
            sweep_interval_seconds if sweep_interval_seconds is not None else config.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
        )
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    async def get(self, key: str) -> List[float]:
        async with self._lock:
            return self._live_bucket(key)

    async def set(self, key: str, value: List[float], ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            self._store_bucket(key, list(value), ttl_seconds)

    async def record(self, key: str, now: float, window_ms: int) -> List[float]:
        window_start = now - window_ms
        async with self._lock:
            recent = [ts for ts in self._live_bucket(key) if ts > window_start]
            recent.append(now)
            self._store_bucket(key, recent, _bucket_ttl_seconds(window_ms))
        return list(recent)

    async def sweep(self) -> int:
        async with self._lock:
            return self._sweep(self._clock())

    def _live_bucket(self, key: str) -> List[float]:
        entry = self._buckets.get(key)
        if entry is None:
            return []
        timestamps, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._buckets.pop(key, None)
            return []
        return list(timestamps)

    def _store_bucket(self, key: str, timestamps: List[float], ttl_seconds: Optional[int]) -> None:
        now = self._clock()
        expires_at = now + ttl_seconds if ttl_seconds else None
        self._buckets[key] = (timestamps, expires_at)
        if now - self._last_sweep >= self._sweep_interval:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        stale = [key for key, (_, expires_at) in self._buckets.items() if expires_at is not None and now >= expires_at]
        for key in stale:
            del self._buckets[key]
        self._last_sweep = now
        if stale:
            logger.debug("Swept %s stale rate-limit buckets", len(stale))
        return len(stale)


class RedisRateLimitStore(RateLimitStore):
    """Buckets are sorted sets scored by attempt time, shared by every instance."""

    def __init__(self, url: str, *, client: Optional[Any] = None, prefix: str = RATE_LIMIT_PREFIX) -> None:
        if client is None and redis is None:
            raise RuntimeError("redis library is not installed; cannot use RedisRateLimitStore")
        self._client = client or redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    async def get(self, key: str) -> List[float]:
        entries = await self._client.zrange(f"{self._prefix}{key}", 0, -1, withscores=True)
        return [float(score) for _, score in entries]

    async def set(self, key: str, value: List[float], ttl_seconds: Optional[int] = None) -> None:
        bucket = f"{self._prefix}{key}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(bucket)
            if value:
                pipe.zadd(bucket, {f"{ts}:{uuid.uuid4().hex}": ts for ts in value})
                if ttl_seconds:
                    pipe.expire(bucket, ttl_seconds)
            await pipe.execute()

    async def record(self, key: str, now: float, window_ms: int) -> List[float]:
        bucket = f"{self._prefix}{key}"
        # Members must be unique even when two instances record the same millisecond.
        member = f"{now}:{uuid.uuid4().hex}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(bucket, "-inf", now - window_ms)
            pipe.zadd(bucket, {member: now})
            pipe.zrange(bucket, 0, -1, withscores=True)
            pipe.expire(bucket, _bucket_ttl_seconds(window_ms))
            _, _, entries, _ = await pipe.execute()
        return [float(score) for _, score in entries]


def _wall_clock_ms() -> float:
    return time.time() * 1000


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        clock: Callable[[], float] = _wall_clock_ms,
    ) -> None:
        self._store = store or select_rate_limit_store()
        self._clock = clock

    @property
    def store(self) -> RateLimitStore:
        return self._store

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        recent = await self._store.record(key, now, window_ms)

        count = len(recent)
        retry_after_ms = max(window_ms - (now - recent[0]), 0) if recent else 0
        return RateLimitResult(
            allowed=count <= limit,
            remaining=max(limit - count, 0),
            retry_after_seconds=math.ceil(retry_after_ms / 1000),
        )


def select_rate_limit_store(redis_url: Optional[str] = None) -> RateLimitStore:
    resolved_url = redis_url or config.RATE_LIMIT_REDIS_URL or os.getenv("REDIS_URL")
    if resolved_url:
        try:
            return RedisRateLimitStore(resolved_url)
        except Exception as exc:  # pragma: no cover - defensive fallback
            logger.warning("Falling back to in-memory rate-limit store after Redis initialization failure: %s", exc)
    return InMemoryRateLimitStore()


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # A comma-separated chain of IPs may be present; use the originating address.
        ip = forwarded.split(",")[0].strip()
        if ip:
            return ip
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"


_login_rate_limiter: Optional[SlidingWindowRateLimiter] = None


def get_login_rate_limiter() -> SlidingWindowRateLimiter:
    global _login_rate_limiter
    if _login_rate_limiter is None:
        _login_rate_limiter = SlidingWindowRateLimiter()
    return _login_rate_limiter


def configure_login_rate_limiter(
    *,
    store: Optional[RateLimitStore] = None,
    clock: Optional[Callable[[], float]] = None,
) -> SlidingWindowRateLimiter:
    global _login_rate_limiter
    _login_rate_limiter = SlidingWindowRateLimiter(store=store, clock=clock or _wall_clock_ms)
    return _login_rate_limiter

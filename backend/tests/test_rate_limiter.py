import asyncio
import os
import sys
from pathlib import Path
from typing import List

import pytest  # type: ignore[import]
from starlette.requests import Request

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from backend.app import config  # noqa: E402
from backend.app.security.rate_limiter import (  # noqa: E402
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    SlidingWindowRateLimiter,
    get_client_ip,
    select_rate_limit_store,
)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, amount: float) -> None:
        self.now += amount


def _limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(InMemoryRateLimitStore(sweep_interval_seconds=60), clock=clock)


def _request(headers: List[tuple]) -> Request:
    return Request({"type": "http", "headers": [(k.encode(), v.encode()) for k, v in headers]})


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_rejects() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)

    results = [await limiter.check("login:1.1.1.1", 5, 15 * 60 * 1000) for _ in range(6)]

    assert [result.allowed for result in results] == [True] * 5 + [False]
    assert [result.remaining for result in results] == [4, 3, 2, 1, 0, 0]
    assert results[-1].retry_after_seconds == 15 * 60


@pytest.mark.asyncio
async def test_window_expiry_readmits_key() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        await limiter.check("login:2.2.2.2", 5, 1000)
    assert not (await limiter.check("login:2.2.2.2", 5, 1000)).allowed

    clock.advance(1001)

    result = await limiter.check("login:2.2.2.2", 5, 1000)
    assert result.allowed
    assert result.remaining == 4


@pytest.mark.asyncio
async def test_rejected_attempts_still_count() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(6):
        await limiter.check("login:3.3.3.3", 5, 1000)

    clock.advance(500)
    result = await limiter.check("login:3.3.3.3", 5, 1000)

    assert not result.allowed
    assert result.remaining == 0
    assert result.retry_after_seconds == 1


@pytest.mark.asyncio
async def test_retry_after_tracks_oldest_attempt_in_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    await limiter.check("k", 1, 10_000)
    clock.advance(7_500)

    result = await limiter.check("k", 1, 10_000)

    assert not result.allowed
    assert result.retry_after_seconds == 3


@pytest.mark.asyncio
async def test_keys_are_counted_independently() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        await limiter.check("login:a", 5, 1000)

    assert not (await limiter.check("login:a", 5, 1000)).allowed
    assert (await limiter.check("login:b", 5, 1000)).allowed


@pytest.mark.asyncio
async def test_zero_limit_rejects_first_attempt() -> None:
    limiter = _limiter(FakeClock())

    result = await limiter.check("login:zero", 0, 1000)

    assert not result.allowed
    assert result.remaining == 0


@pytest.mark.asyncio
async def test_zero_window_only_counts_current_attempt() -> None:
    limiter = _limiter(FakeClock())

    results = [await limiter.check("login:window", 1, 0) for _ in range(3)]

    assert all(result.allowed for result in results)
    assert all(result.retry_after_seconds == 0 for result in results)


@pytest.mark.asyncio
async def test_concurrent_checks_do_not_lose_updates() -> None:
    limiter = _limiter(FakeClock())

    results = await asyncio.gather(*(limiter.check("login:burst", 5, 60_000) for _ in range(12)))

    assert sum(1 for result in results if result.allowed) == 5


@pytest.mark.asyncio
async def test_real_clock_window_expires() -> None:
    limiter = SlidingWindowRateLimiter(InMemoryRateLimitStore())

    assert (await limiter.check("login:sleepy", 1, 1000)).allowed
    assert not (await limiter.check("login:sleepy", 1, 1000)).allowed
    await asyncio.sleep(1.1)
    assert (await limiter.check("login:sleepy", 1, 1000)).allowed


@pytest.mark.asyncio
async def test_in_memory_store_drops_expired_buckets() -> None:
    clock = FakeClock(start=0.0)
    store = InMemoryRateLimitStore(sweep_interval_seconds=60, clock=clock)
    await store.set("stale", [1.0], ttl_seconds=5)
    await store.set("fresh", [2.0], ttl_seconds=500)
    assert len(store) == 2

    clock.advance(10)
    assert await store.get("stale") == []
    assert await store.get("fresh") == [2.0]

    await store.set("other", [3.0], ttl_seconds=5)
    clock.advance(100)
    removed = await store.sweep()

    assert removed == 1
    assert len(store) == 1
    assert await store.get("fresh") == [2.0]


@pytest.mark.asyncio
async def test_in_memory_store_sweeps_lazily_on_write() -> None:
    clock = FakeClock(start=0.0)
    store = InMemoryRateLimitStore(sweep_interval_seconds=30, clock=clock)
    for index in range(10):
        await store.set(f"ip-{index}", [float(index)], ttl_seconds=1)
    assert len(store) == 10

    clock.advance(31)
    await store.set("new", [0.0], ttl_seconds=1)

    assert len(store) == 1


@pytest.mark.asyncio
async def test_redis_store_with_fakeredis() -> None:
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    fake_client = fakeredis_module.FakeRedis(decode_responses=True)

    store = RedisRateLimitStore("redis://localhost", client=fake_client)
    limiter = SlidingWindowRateLimiter(store, clock=FakeClock())

    for _ in range(2):
        assert (await limiter.check("login:redis", 2, 60_000)).allowed
    assert not (await limiter.check("login:redis", 2, 60_000)).allowed

    assert len(await store.get("login:redis")) == 3
    ttl = await fake_client.ttl("auth:ratelimit:login:redis")
    assert 0 < ttl <= 60

    await fake_client.aclose()


def test_store_selection_defaults_to_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "RATE_LIMIT_REDIS_URL", None)
    monkeypatch.delenv("REDIS_URL", raising=False)

    assert isinstance(select_rate_limit_store(), InMemoryRateLimitStore)


def test_client_ip_prefers_first_forwarded_address() -> None:
    request = _request([("x-forwarded-for", "203.0.113.9, 10.0.0.1"), ("x-real-ip", "10.0.0.2")])

    assert get_client_ip(request) == "203.0.113.9"


def test_client_ip_falls_back_to_real_ip_then_unknown() -> None:
    assert get_client_ip(_request([("x-real-ip", "198.51.100.4")])) == "198.51.100.4"
    assert get_client_ip(_request([])) == "unknown"


@pytest.mark.asyncio
async def test_short_window_readmits_after_real_wait() -> None:
    limiter = SlidingWindowRateLimiter(InMemoryRateLimitStore())

    assert (await limiter.check("login:short", 2, 100)).allowed
    assert (await limiter.check("login:short", 2, 100)).allowed
    blocked = await limiter.check("login:short", 2, 100)
    assert not blocked.allowed
    assert blocked.retry_after_seconds > 0

    await asyncio.sleep(0.15)

    assert (await limiter.check("login:short", 2, 100)).allowed


@pytest.mark.asyncio
async def test_instances_sharing_redis_never_lose_attempts() -> None:
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    fake_client = fakeredis_module.FakeRedis(decode_responses=True)
    first = SlidingWindowRateLimiter(RedisRateLimitStore("redis://localhost", client=fake_client))
    second = SlidingWindowRateLimiter(RedisRateLimitStore("redis://localhost", client=fake_client))

    results = await asyncio.gather(
        *(limiter.check("login:spread", 5, 60_000) for limiter in [first, second] * 10)
    )

    assert sum(1 for result in results if result.allowed) == 5
    assert await fake_client.zcard("auth:ratelimit:login:spread") == 20

    await fake_client.aclose()


@pytest.mark.asyncio
async def test_redis_store_prunes_attempts_outside_window() -> None:
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    fake_client = fakeredis_module.FakeRedis(decode_responses=True)
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(RedisRateLimitStore("redis://localhost", client=fake_client), clock=clock)

    assert (await limiter.check("login:prune", 1, 1000)).allowed
    assert not (await limiter.check("login:prune", 1, 1000)).allowed
    clock.advance(1001)

    result = await limiter.check("login:prune", 1, 1000)

    assert result.allowed
    assert await limiter.store.get("login:prune") == [clock.now]

    await fake_client.aclose()


@pytest.mark.asyncio
async def test_limiters_sharing_memory_store_count_together() -> None:
    store = InMemoryRateLimitStore()
    first = SlidingWindowRateLimiter(store, clock=FakeClock())
    second = SlidingWindowRateLimiter(store, clock=FakeClock())

    results = await asyncio.gather(
        *(limiter.check("login:shared", 3, 60_000) for limiter in [first, second] * 4)
    )

    assert sum(1 for result in results if result.allowed) == 3
    assert len(await store.get("login:shared")) == 8


@pytest.mark.asyncio
async def test_redis_store_set_replaces_bucket() -> None:
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    fake_client = fakeredis_module.FakeRedis(decode_responses=True)
    store = RedisRateLimitStore("redis://localhost", client=fake_client)

    await store.set("login:seeded", [3.0, 1.0, 2.0], ttl_seconds=30)
    assert await store.get("login:seeded") == [1.0, 2.0, 3.0]
    assert 0 < await fake_client.ttl("auth:ratelimit:login:seeded") <= 30

    await store.set("login:seeded", [])
    assert await store.get("login:seeded") == []

    await fake_client.aclose()

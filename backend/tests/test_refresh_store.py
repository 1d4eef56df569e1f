import asyncio
import os
import sys
import time
from pathlib import Path

import pytest  # type: ignore[import]

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import backend.app.security.refresh_store as refresh_store  # noqa: E402
from backend.app.security.refresh_store import (  # noqa: E402
    InMemoryAdapter,
    RedisAdapter,
    RefreshStore,
    hash_refresh_id,
)


@pytest.mark.asyncio
async def test_inmemory_consume_is_single_use() -> None:
    store = RefreshStore(adapter=InMemoryAdapter(), revocation_ttl_seconds=30)
    expires_at = int(time.time()) + 30

    assert await store.consume_refresh_token("token-1", expires_at)
    assert not await store.consume_refresh_token("token-1", expires_at)
    assert await store.is_refresh_token_revoked("token-1")
    assert not await store.is_refresh_token_revoked("token-2")


@pytest.mark.asyncio
async def test_concurrent_consumers_only_one_wins() -> None:
    store = RefreshStore(adapter=InMemoryAdapter())
    expires_at = int(time.time()) + 60

    results = await asyncio.gather(*(store.consume_refresh_token("racy", expires_at) for _ in range(5)))

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_inmemory_revocation_expires_with_token() -> None:
    store = RefreshStore(adapter=InMemoryAdapter(), revocation_ttl_seconds=30)

    await store.revoke_refresh_token("token-ttl", int(time.time()) + 1)
    assert await store.is_refresh_token_revoked("token-ttl")
    await asyncio.sleep(1.1)
    assert not await store.is_refresh_token_revoked("token-ttl")


@pytest.mark.asyncio
async def test_logout_revocation_without_expiry_uses_default_ttl() -> None:
    adapter = InMemoryAdapter()
    store = RefreshStore(adapter=adapter, revocation_ttl_seconds=45)

    await store.revoke_refresh_token("token-default")

    assert await store.is_refresh_token_revoked("token-default")
    assert not await store.consume_refresh_token("token-default", int(time.time()) + 30)


@pytest.mark.asyncio
async def test_redis_adapter_revocation_with_fakeredis() -> None:
    fakeredis_module = pytest.importorskip("fakeredis.aioredis")
    fake_client = fakeredis_module.FakeRedis(decode_responses=True)

    adapter = RedisAdapter("redis://localhost", client=fake_client)
    store = RefreshStore(adapter=adapter, revocation_ttl_seconds=15)
    expires_at = int(time.time()) + 30

    assert await store.consume_refresh_token("token-redis", expires_at)
    assert not await store.consume_refresh_token("token-redis", expires_at)
    assert await store.is_refresh_token_revoked("token-redis")

    key = f"{refresh_store.REFRESH_REVOKED_PREFIX}{hash_refresh_id('token-redis')}"
    ttl = await fake_client.ttl(key)
    assert 0 < ttl <= 30

    await fake_client.aclose()


def test_token_ids_are_stored_hashed() -> None:
    hashed = hash_refresh_id("plain-id")

    assert hashed != "plain-id"
    assert len(hashed) == 64
    assert hashed == hash_refresh_id("plain-id")


def test_refresh_store_prefers_redis_when_url_present(monkeypatch: pytest.MonkeyPatch) -> None:
    class DummyAdapter(refresh_store.RevocationStorageAdapter):
        def __init__(self, url: str) -> None:
            self.url = url

    monkeypatch.setattr(refresh_store.config, "REFRESH_STORE_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setattr(refresh_store, "RedisAdapter", DummyAdapter)

    store = refresh_store.RefreshStore()

    assert isinstance(store.adapter, DummyAdapter)
    assert store.adapter.url == "redis://cache:6379/0"


def test_refresh_store_defaults_to_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(refresh_store.config, "REFRESH_STORE_REDIS_URL", None)
    monkeypatch.delenv("REDIS_URL", raising=False)

    assert isinstance(refresh_store.RefreshStore().adapter, InMemoryAdapter)

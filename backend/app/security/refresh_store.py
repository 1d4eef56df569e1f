from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from typing import Any, Dict, Optional

from backend.app import config
from backend.app.utils.observability import record_refresh_revocation

try:
    import redis.asyncio as redis  # type: ignore
except ImportError:  # pragma: no cover - redis is optional for tests
    redis = None

logger = logging.getLogger("auth.refresh_store")


REFRESH_REVOKED_PREFIX = "auth:refresh:revoked:"


def _parse_positive_ttl(env_var: str, default_seconds: int) -> int:
    raw_value = os.getenv(env_var)
    if raw_value is None:
        return default_seconds
    try:
        parsed = int(raw_value)
    except ValueError:
        logger.warning("Invalid integer for %s=%s; falling back to default %s", env_var, raw_value, default_seconds)
        return default_seconds
    if parsed <= 0:
        logger.warning("Non-positive TTL for %s=%s; using default %s", env_var, raw_value, default_seconds)
        return default_seconds
    return parsed


DEFAULT_REVOCATION_TTL_SECONDS = _parse_positive_ttl("REFRESH_REVOCATION_TTL", 60 * 60 * 24 * 7)


class RevocationStorageAdapter:
    async def revoke(self, hash_: str, ttl_seconds: int) -> bool:
        """Mark ``hash_`` revoked; returns False when it already was."""
        raise NotImplementedError

    async def is_revoked(self, hash_: str) -> bool:
        raise NotImplementedError


class RedisAdapter(RevocationStorageAdapter):
    def __init__(self, url: str, *, client: Optional[Any] = None):
        if client is None and redis is None:
            raise RuntimeError("redis library is not installed; cannot use RedisAdapter")
        self._client = client or redis.from_url(url, decode_responses=True)

    async def revoke(self, hash_: str, ttl_seconds: int) -> bool:
        key = f"{REFRESH_REVOKED_PREFIX}{hash_}"
        created = await self._client.set(key, "1", ex=ttl_seconds, nx=True)
        return bool(created)

    async def is_revoked(self, hash_: str) -> bool:
        key = f"{REFRESH_REVOKED_PREFIX}{hash_}"
        value = await self._client.get(key)
        return value is not None


class InMemoryAdapter(RevocationStorageAdapter):
    def __init__(self) -> None:
        self._revoked: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _purge_expired(self, now: float) -> None:
        for hash_ in [h for h, expiry in self._revoked.items() if now > expiry]:
            del self._revoked[hash_]

    async def revoke(self, hash_: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = time.time()
            self._purge_expired(now)
            if hash_ in self._revoked:
                return False
            self._revoked[hash_] = now + ttl_seconds
            return True

    async def is_revoked(self, hash_: str) -> bool:
        async with self._lock:
            expiry = self._revoked.get(hash_)
            if expiry is None:
                return False
            if time.time() > expiry:
                self._revoked.pop(hash_, None)
                return False
            return True


class RefreshStore:
    """Remembers refresh tokens that were rotated away or logged out.

    Only revoked token ids are stored, each for the remaining lifetime of its
    token, so the store never grows into a session table.
    """

    def __init__(
        self,
        *,
        adapter: Optional[RevocationStorageAdapter] = None,
        redis_url: Optional[str] = None,
        revocation_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._adapter = adapter or self._select_adapter(redis_url=redis_url)
        self._revocation_ttl_default = self._resolve_ttl(revocation_ttl_seconds, DEFAULT_REVOCATION_TTL_SECONDS)

    def _select_adapter(self, *, redis_url: Optional[str]) -> RevocationStorageAdapter:
        resolved_url = redis_url or config.REFRESH_STORE_REDIS_URL or os.getenv("REDIS_URL")
        if resolved_url:
            try:
                return RedisAdapter(resolved_url)
            except Exception as exc:  # pragma: no cover - defensive fallback
                logger.warning("Falling back to in-memory refresh store after Redis initialization failure: %s", exc)
        return InMemoryAdapter()

    @property
    def adapter(self) -> RevocationStorageAdapter:
        return self._adapter

    async def consume_refresh_token(self, token_id: str, expires_at: int) -> bool:
        """Single-use guard for rotation: True only for the first caller presenting ``token_id``."""

        ttl = self._ttl_until(expires_at)
        consumed = await self._adapter.revoke(hash_refresh_id(token_id), ttl)
        if consumed:
            record_refresh_revocation("rotation")
        return consumed

    async def revoke_refresh_token(self, token_id: str, expires_at: Optional[int] = None) -> None:
        ttl = self._ttl_until(expires_at) if expires_at is not None else self._revocation_ttl_default
        if await self._adapter.revoke(hash_refresh_id(token_id), ttl):
            record_refresh_revocation("logout")

    async def is_refresh_token_revoked(self, token_id: str) -> bool:
        return await self._adapter.is_revoked(hash_refresh_id(token_id))

    def _ttl_until(self, expires_at: int) -> int:
        remaining = int(expires_at - time.time())
        return self._resolve_ttl(remaining if remaining > 0 else 1, self._revocation_ttl_default)

    @staticmethod
    def _resolve_ttl(ttl_seconds: Optional[int], default_seconds: int) -> int:
        if ttl_seconds is None:
            return default_seconds
        if ttl_seconds <= 0:
            logger.warning("Received non-positive TTL override (%s); using default %s", ttl_seconds, default_seconds)
            return default_seconds
        return ttl_seconds


_refresh_store: Optional[RefreshStore] = None


def get_refresh_store() -> RefreshStore:
    global _refresh_store
    if _refresh_store is None:
        _refresh_store = RefreshStore()
    return _refresh_store


def configure_refresh_store(
    *,
    adapter: Optional[RevocationStorageAdapter] = None,
    redis_url: Optional[str] = None,
    revocation_ttl_seconds: Optional[int] = None,
) -> RefreshStore:
    global _refresh_store
    _refresh_store = RefreshStore(
        adapter=adapter,
        redis_url=redis_url,
        revocation_ttl_seconds=revocation_ttl_seconds,
    )
    return _refresh_store


def hash_refresh_id(refresh_id: str) -> str:
    return hashlib.sha256(refresh_id.encode("utf-8")).hexdigest()

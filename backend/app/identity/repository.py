"""Identity and role storage.

The relational datastore lives outside this service; ``IdentityRepository`` is
the seam it plugs into. ``InMemoryIdentityRepository`` backs development and
tests.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from backend.app import config
from backend.app.identity.models import DEFAULT_ROLES, Identity, Role

logger = logging.getLogger("identity.repository")


class IdentityStoreError(RuntimeError):
    """Base class for identity storage failures callers are expected to handle."""


class IdentityNotFoundError(IdentityStoreError):
    pass


class IdentityConflictError(IdentityStoreError):
    pass


class RoleNotFoundError(IdentityStoreError):
    pass


class IdentityRepository:
    async def list_roles(self) -> List[Role]:
        raise NotImplementedError

    async def get_role(self, role_id: str) -> Optional[Role]:
        raise NotImplementedError

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        raise NotImplementedError

    async def get_by_id(self, identity_id: str) -> Optional[Identity]:
        raise NotImplementedError

    async def get_by_username(self, username: str) -> Optional[Identity]:
        raise NotImplementedError

    async def list_identities(self) -> List[Identity]:
        raise NotImplementedError

    async def create(
        self,
        *,
        username: str,
        password_hash: str,
        role_id: str,
        created_by: Optional[str] = None,
    ) -> Identity:
        raise NotImplementedError

    async def update(
        self,
        identity_id: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Identity:
        raise NotImplementedError

    async def soft_delete(self, identity_id: str, *, deleted_by: Optional[str] = None) -> Identity:
        raise NotImplementedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryIdentityRepository(IdentityRepository):
    def __init__(self, roles: Optional[List[Role]] = None) -> None:
        if roles is None:
            roles = [Role(id=str(uuid.uuid4()), name=name, level=level) for name, level in DEFAULT_ROLES]
        self._roles: Dict[str, Role] = {role.id: role for role in roles}
        self._identities: Dict[str, Identity] = {}
        self._lock = asyncio.Lock()

    async def list_roles(self) -> List[Role]:
        return sorted(self._roles.values(), key=lambda role: role.level)

    async def get_role(self, role_id: str) -> Optional[Role]:
        return self._roles.get(role_id)

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        lowered = name.lower()
        for role in self._roles.values():
            if role.name.lower() == lowered:
                return role
        return None

    async def get_by_id(self, identity_id: str) -> Optional[Identity]:
        identity = self._identities.get(identity_id)
        if identity is None or identity.is_deleted:
            return None
        return identity

    async def get_by_username(self, username: str) -> Optional[Identity]:
        return self._find_active_by_username(username)

    async def list_identities(self) -> List[Identity]:
        active = [identity for identity in self._identities.values() if not identity.is_deleted]
        return sorted(active, key=lambda identity: identity.created_at, reverse=True)

    async def create(
        self,
        *,
        username: str,
        password_hash: str,
        role_id: str,
        created_by: Optional[str] = None,
    ) -> Identity:
        async with self._lock:
            if role_id not in self._roles:
                raise RoleNotFoundError(role_id)
            if self._find_active_by_username(username) is not None:
                raise IdentityConflictError(username)
            identity = Identity(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                role_id=role_id,
                created_at=_utcnow(),
                created_by=created_by,
            )
            self._identities[identity.id] = identity
            return identity

    async def update(
        self,
        identity_id: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        role_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Identity:
        async with self._lock:
            current = self._identities.get(identity_id)
            if current is None or current.is_deleted:
                raise IdentityNotFoundError(identity_id)
            if role_id is not None and role_id not in self._roles:
                raise RoleNotFoundError(role_id)
            if username is not None and username != current.username:
                if self._find_active_by_username(username) is not None:
                    raise IdentityConflictError(username)

            # Credentials or privileges changed: outstanding refresh tokens must stop working.
            credentials_changed = password_hash is not None or (role_id is not None and role_id != current.role_id)
            updated = dataclasses.replace(
                current,
                username=username if username is not None else current.username,
                password_hash=password_hash if password_hash is not None else current.password_hash,
                role_id=role_id if role_id is not None else current.role_id,
                token_version=current.token_version + 1 if credentials_changed else current.token_version,
                updated_at=_utcnow(),
                updated_by=updated_by,
            )
            self._identities[identity_id] = updated
            return updated

    async def soft_delete(self, identity_id: str, *, deleted_by: Optional[str] = None) -> Identity:
        async with self._lock:
            current = self._identities.get(identity_id)
            if current is None or current.is_deleted:
                raise IdentityNotFoundError(identity_id)
            now = _utcnow()
            deleted = dataclasses.replace(
                current,
                token_version=current.token_version + 1,
                updated_at=now,
                updated_by=deleted_by,
                deleted_at=now,
            )
            self._identities[identity_id] = deleted
            return deleted

    def seed(self, *, username: str, password_hash: str, role_name: str) -> Identity:
        """Insert an identity synchronously, bypassing admin checks (startup seeding and tests)."""

        role = next((r for r in self._roles.values() if r.name == role_name), None)
        if role is None:
            raise RoleNotFoundError(role_name)
        identity = Identity(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            role_id=role.id,
            created_at=_utcnow(),
        )
        self._identities[identity.id] = identity
        return identity

    def _find_active_by_username(self, username: str) -> Optional[Identity]:
        for identity in self._identities.values():
            if identity.username == username and not identity.is_deleted:
                return identity
        return None


def _build_default_repository() -> InMemoryIdentityRepository:
    repository = InMemoryIdentityRepository()
    username = config.SEED_ADMIN_USERNAME
    password_hash = config.SEED_ADMIN_PASSWORD_HASH
    if username and password_hash:
        repository.seed(username=username, password_hash=password_hash, role_name="admin")
        logger.info("Seeded admin identity", extra={"json_fields": {"username": username}})
    return repository


_identity_repository: Optional[IdentityRepository] = None


def get_identity_repository() -> IdentityRepository:
    global _identity_repository
    if _identity_repository is None:
        _identity_repository = _build_default_repository()
    return _identity_repository


def configure_identity_repository(repository: Optional[IdentityRepository] = None) -> IdentityRepository:
    global _identity_repository
    _identity_repository = repository or _build_default_repository()
    return _identity_repository

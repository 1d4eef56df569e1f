from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    level: int


@dataclass(frozen=True)
class Identity:
    """A principal able to authenticate. ``password_hash`` never leaves the server."""

    id: str
    username: str
    password_hash: str
    role_id: str
    created_at: datetime
    token_version: int = 0
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# Seeded once; identities reference roles by id.
DEFAULT_ROLES = (
    ("seller", 0),
    ("manager", 1),
    ("admin", 2),
)

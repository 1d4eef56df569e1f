from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.identity.models import Identity, Role
from backend.app.security.passwords import BCRYPT_MAX_PASSWORD_BYTES


class AuthContext(BaseModel):
    """Represents the authenticated principal derived from an access token."""

    user_id: str
    username: str
    role: str
    role_level: int
    token_version: int = 0

    def has_level(self, threshold: int) -> bool:
        return self.role_level >= threshold


class IdentityPublic(BaseModel):
    """Outward view of an identity; credentials are never part of it."""

    id: str
    username: str
    role: str
    roleLevel: int

    @classmethod
    def from_identity(cls, identity: Identity, role: Role) -> "IdentityPublic":
        return cls(id=identity.id, username=identity.username, role=role.name, roleLevel=role.level)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class SessionResponse(BaseModel):
    success: bool = True
    user: IdentityPublic


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ValidationErrorResponse(BaseModel):
    detail: str
    details: List[Dict[str, Any]]


def _check_password_length(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must not exceed {BCRYPT_MAX_PASSWORD_BYTES} bytes")
    return value


class RolePublic(BaseModel):
    id: str
    name: str
    level: int


class AdminIdentity(BaseModel):
    id: str
    username: str
    roleId: str
    roleName: str
    roleLevel: int
    createdAt: str


class CreateIdentityRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100)
    password: str = Field(min_length=6)
    roleId: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def check_password_length(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_length(value)


class UpdateIdentityRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=100)
    password: Optional[str] = Field(default=None, min_length=6)
    roleId: Optional[str] = Field(default=None, min_length=1)

    @field_validator("password")
    @classmethod
    def check_password_length(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_length(value)

"""Identities, roles and the repository seam to the datastore."""

from .models import Identity, Role
from .repository import (
    IdentityConflictError,
    IdentityNotFoundError,
    IdentityRepository,
    IdentityStoreError,
    InMemoryIdentityRepository,
    RoleNotFoundError,
    configure_identity_repository,
    get_identity_repository,
)

__all__ = [
    "Identity",
    "Role",
    "IdentityConflictError",
    "IdentityNotFoundError",
    "IdentityRepository",
    "IdentityStoreError",
    "InMemoryIdentityRepository",
    "RoleNotFoundError",
    "configure_identity_repository",
    "get_identity_repository",
]

"""Session authentication: the auth context model and the FastAPI gate dependencies."""

from .dependencies import (
    optional_authenticated_user,
    require_admin_user,
    require_authenticated_user,
    require_role_level,
    require_trusted_origin,
)
from .schemas import AuthContext, IdentityPublic

__all__ = [
    "AuthContext",
    "IdentityPublic",
    "optional_authenticated_user",
    "require_admin_user",
    "require_authenticated_user",
    "require_role_level",
    "require_trusted_origin",
]

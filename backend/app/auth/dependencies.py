from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from backend.app import config
from backend.app.auth.schemas import AuthContext
from backend.app.security.tokens import TokenKind, TokenService, get_token_service

logger = logging.getLogger("auth.gate")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def extract_access_token(request: Request) -> Optional[str]:
    token = request.cookies.get(config.ACCESS_COOKIE_NAME)
    return token or None


def authenticate(request: Request, token_service: Optional[TokenService] = None) -> Optional[AuthContext]:
    """Resolve the caller from the access-token cookie, or ``None`` when that is not possible."""

    token = extract_access_token(request)
    if token is None:
        return None

    service = token_service or get_token_service()
    payload = service.verify(TokenKind.ACCESS, token)
    if payload is None:
        return None
    return AuthContext(**payload.model_dump())


def has_required_level(claims: Optional[AuthContext], threshold: int) -> bool:
    if claims is None:
        return False
    return claims.role_level >= threshold


async def require_authenticated_user(request: Request) -> AuthContext:
    context = authenticate(request)
    if context is None:
        raise _unauthorized("Authentication required")
    request.state.auth = context
    return context


def require_role_level(threshold: Optional[int] = None) -> Callable[..., Awaitable[AuthContext]]:
    """Build a dependency admitting callers whose role level is at least ``threshold``.

    Without an explicit threshold the administrative level from config applies.
    """

    async def dependency(
        request: Request,
        context: AuthContext = Depends(require_authenticated_user),
    ) -> AuthContext:
        required = threshold if threshold is not None else config.ADMIN_ROLE_LEVEL
        if not has_required_level(context, required):
            logger.info(
                "Insufficient role level",
                extra={
                    "json_fields": {
                        "event": "authorization_denied",
                        "userId": context.user_id,
                        "roleLevel": context.role_level,
                        "required": required,
                        "path": request.url.path,
                    }
                },
            )
            raise _forbidden("Administrator privileges required")
        request.state.auth = context
        return context

    return dependency


require_admin_user = require_role_level()


async def optional_authenticated_user(request: Request) -> Optional[AuthContext]:
    context = authenticate(request)
    if context is not None:
        request.state.auth = context
    return context


async def require_trusted_origin(request: Request) -> None:
    """Reject cross-site state-changing requests riding on the session cookies."""

    origin = request.headers.get("origin")
    if origin and origin not in config.ALLOWED_ORIGINS:
        logger.warning(
            "Rejected request from untrusted origin",
            extra={"json_fields": {"event": "csrf_rejected", "origin": origin, "path": request.url.path}},
        )
        raise _forbidden("Untrusted request origin")

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from backend.app import config
from backend.app.api.errors import INVALID_REQUEST_RESPONSES, validation_error_response
from backend.app.auth.dependencies import require_authenticated_user, require_trusted_origin
from backend.app.auth.rate_limiting import (
    check_login_rate_limit,
    limiter,
    rate_limited_response,
    refresh_rate_limit,
)
from backend.app.auth.schemas import AuthContext, IdentityPublic, LoginRequest, MessageResponse, SessionResponse
from backend.app.identity import Identity, Role, get_identity_repository
from backend.app.security.passwords import get_password_hasher
from backend.app.security.rate_limiter import get_client_ip
from backend.app.security.refresh_store import get_refresh_store
from backend.app.security.tokens import TokenKind, TokenPair, TokenPayload, TokenService, get_token_service
from backend.app.utils.observability import record_login_attempt, record_token_refresh

logger = logging.getLogger("auth.session")

router = APIRouter(prefix="/auth", tags=["auth"], responses=INVALID_REQUEST_RESPONSES)

INVALID_CREDENTIALS = "Incorrect credentials"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _token_payload(identity: Identity, role: Role) -> TokenPayload:
    return TokenPayload(
        user_id=identity.id,
        username=identity.username,
        role=role.name,
        role_level=role.level,
        token_version=identity.token_version,
    )


def _set_session_cookies(response: JSONResponse, tokens: TokenPair, service: TokenService) -> None:
    for name, value, kind in (
        (config.ACCESS_COOKIE_NAME, tokens.access, TokenKind.ACCESS),
        (config.REFRESH_COOKIE_NAME, tokens.refresh, TokenKind.REFRESH),
    ):
        response.set_cookie(
            key=name,
            value=value,
            max_age=service.ttl_seconds(kind),
            path="/",
            secure=config.COOKIE_SECURE,
            httponly=True,
            samesite=config.COOKIE_SAMESITE,
        )


def _clear_session_cookies(response: JSONResponse) -> None:
    for name in (config.ACCESS_COOKIE_NAME, config.REFRESH_COOKIE_NAME):
        response.delete_cookie(
            key=name,
            path="/",
            secure=config.COOKIE_SECURE,
            httponly=True,
            samesite=config.COOKIE_SAMESITE,
        )


@router.post("/login", response_model=SessionResponse, dependencies=[Depends(require_trusted_origin)])
async def login(request: Request) -> JSONResponse:
    client_ip = get_client_ip(request)

    # Checked before the body is parsed so malformed attempts count too.
    limit = await check_login_rate_limit(request)
    if not limit.allowed:
        record_login_attempt("rate_limited")
        logger.warning(
            "Login rate limit exceeded",
            extra={
                "json_fields": {
                    "event": "login_rate_limited",
                    "client": client_ip,
                    "retryAfter": limit.retry_after_seconds,
                }
            },
        )
        return rate_limited_response(limit.retry_after_seconds)

    try:
        body = await request.json()
    except ValueError:
        record_login_attempt("invalid_request")
        return validation_error_response([{"loc": ("body",), "msg": "Request body must be valid JSON", "type": "json_invalid"}])

    try:
        credentials = LoginRequest.model_validate(body)
    except ValidationError as exc:
        record_login_attempt("invalid_request")
        return validation_error_response(exc.errors(include_url=False))

    repository = get_identity_repository()
    hasher = get_password_hasher()
    loop = asyncio.get_running_loop()

    identity = await repository.get_by_username(credentials.username)
    if identity is None:
        await loop.run_in_executor(None, hasher.verify_dummy, credentials.password)
        valid = False
    else:
        valid = await loop.run_in_executor(None, hasher.verify, credentials.password, identity.password_hash)

    role = await repository.get_role(identity.role_id) if identity is not None and valid else None
    if identity is None or role is None or not valid:
        record_login_attempt("invalid_credentials")
        logger.warning(
            "Login rejected",
            extra={
                "json_fields": {
                    "event": "login_failed",
                    "username": credentials.username,
                    "client": client_ip,
                    "remaining": limit.remaining,
                }
            },
        )
        raise _unauthorized(INVALID_CREDENTIALS)

    service = get_token_service()
    tokens = service.issue_pair(_token_payload(identity, role))

    response = JSONResponse(
        status_code=200,
        content=SessionResponse(user=IdentityPublic.from_identity(identity, role)).model_dump(),
    )
    _set_session_cookies(response, tokens, service)

    record_login_attempt("success")
    logger.info(
        "Login succeeded",
        extra={
            "json_fields": {
                "event": "login_succeeded",
                "userId": identity.id,
                "role": role.name,
                "client": client_ip,
            }
        },
    )
    return response


@router.post("/refresh", response_model=SessionResponse, dependencies=[Depends(require_trusted_origin)])
@limiter.limit(refresh_rate_limit)
async def refresh_session(request: Request) -> JSONResponse:
    service = get_token_service()
    verified = service.decode(TokenKind.REFRESH, request.cookies.get(config.REFRESH_COOKIE_NAME))
    if verified is None:
        record_token_refresh("failure")
        raise _unauthorized(INVALID_REFRESH_TOKEN)

    # Refresh tokens are single use; a second presentation is rejected.
    if not await get_refresh_store().consume_refresh_token(verified.token_id, verified.expires_at):
        record_token_refresh("failure")
        logger.warning(
            "Refresh token reuse rejected",
            extra={"json_fields": {"event": "refresh_reuse", "userId": verified.payload.user_id}},
        )
        raise _unauthorized(INVALID_REFRESH_TOKEN)

    repository = get_identity_repository()
    identity = await repository.get_by_id(verified.payload.user_id)
    role = await repository.get_role(identity.role_id) if identity is not None else None
    if identity is None or role is None or identity.token_version != verified.payload.token_version:
        record_token_refresh("failure")
        logger.info(
            "Refresh rejected for outdated identity",
            extra={"json_fields": {"event": "refresh_outdated", "userId": verified.payload.user_id}},
        )
        raise _unauthorized(INVALID_REFRESH_TOKEN)

    tokens = service.issue_pair(_token_payload(identity, role))
    response = JSONResponse(
        status_code=200,
        content=SessionResponse(user=IdentityPublic.from_identity(identity, role)).model_dump(),
    )
    _set_session_cookies(response, tokens, service)
    record_token_refresh("success")
    return response


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Always succeeds; clears the session cookies and retires the refresh token if one is presented."""

    refresh_token = request.cookies.get(config.REFRESH_COOKIE_NAME)
    if refresh_token:
        verified = get_token_service().decode(TokenKind.REFRESH, refresh_token)
        if verified is not None:
            store = get_refresh_store()
            if await store.is_refresh_token_revoked(verified.token_id):
                # A spent token here means the cookie jar missed a rotation or the token leaked.
                logger.warning(
                    "Logout presented a retired refresh token",
                    extra={"json_fields": {"event": "logout_retired_token", "userId": verified.payload.user_id}},
                )
            else:
                await store.revoke_refresh_token(verified.token_id, verified.expires_at)
                logger.info(
                    "Logout",
                    extra={"json_fields": {"event": "logout", "userId": verified.payload.user_id}},
                )

    response = JSONResponse(status_code=200, content=MessageResponse(message="Logged out").model_dump())
    _clear_session_cookies(response)
    return response


@router.get("/me", response_model=SessionResponse)
async def read_current_identity(context: AuthContext = Depends(require_authenticated_user)) -> SessionResponse:
    repository = get_identity_repository()
    identity = await repository.get_by_id(context.user_id)
    role = await repository.get_role(identity.role_id) if identity is not None else None
    if identity is None or role is None:
        raise _unauthorized("Session is no longer valid")
    return SessionResponse(user=IdentityPublic.from_identity(identity, role))

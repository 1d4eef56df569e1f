from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter  # type: ignore[import]
from slowapi.errors import RateLimitExceeded  # type: ignore[import]

from backend.app import config
from backend.app.security.rate_limiter import RateLimitResult, get_client_ip, get_login_rate_limiter


def _rate_limit_key(request: Request) -> str:
    auth = getattr(request.state, "auth", None)
    if auth and getattr(auth, "user_id", None):
        return f"user:{auth.user_id}"
    return f"ip:{get_client_ip(request)}"


limiter = Limiter(key_func=_rate_limit_key, headers_enabled=True)


def rate_limited_response(retry_after_seconds: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many attempts, please try again later"},
        headers={"Retry-After": str(max(int(retry_after_seconds), 0))},
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = JSONResponse(status_code=429, content={"detail": f"Rate limit exceeded: {exc.detail}"})
    view_rate_limit = getattr(request.state, "view_rate_limit", None)
    if view_rate_limit is not None:
        # Adds X-RateLimit-* and Retry-After for the limit that tripped.
        response = request.app.state.limiter._inject_headers(response, view_rate_limit)
    return response


def refresh_rate_limit() -> str:
    return config.REFRESH_RATE_LIMIT


def admin_rate_limit() -> str:
    return config.ADMIN_RATE_LIMIT


def login_rate_limit_key(request: Request) -> str:
    return f"login:{get_client_ip(request)}"


async def check_login_rate_limit(request: Request) -> RateLimitResult:
    return await get_login_rate_limiter().check(
        login_rate_limit_key(request),
        config.LOGIN_RATE_LIMIT_ATTEMPTS,
        config.LOGIN_RATE_LIMIT_WINDOW_MS,
    )

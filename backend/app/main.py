import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from backend.app import config
from backend.app.api import admin_endpoints, auth_endpoints
from backend.app.api.errors import fatal_error_handler, request_validation_handler
from backend.app.auth.dependencies import require_admin_user
from backend.app.auth.rate_limiting import limiter, rate_limit_handler
from backend.app.security.passwords import PasswordHashingError
from backend.app.security.tokens import TokenConfigurationError, get_token_service
from backend.app.utils.observability import configure_logging, configure_metrics
from slowapi.errors import RateLimitExceeded  # type: ignore[import]
from slowapi.middleware import SlowAPIMiddleware  # type: ignore[import]

configure_logging()
logger = logging.getLogger("app")

SECURITY_HEADERS = {
    "X-DNS-Prefetch-Control": "on",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

# Disable default docs endpoints by setting docs_url, redoc_url, and openapi_url to None
app = FastAPI(title="Bookkeeping Dashboard API", docs_url=None, redoc_url=None, openapi_url=None)
configure_metrics(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.ALLOWED_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    max_age=86400,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(TokenConfigurationError, fatal_error_handler)
app.add_exception_handler(PasswordHashingError, fatal_error_handler)
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


app.include_router(auth_endpoints.router)
app.include_router(admin_endpoints.router)


@app.get("/")
async def read_root():
    return {"message": "Bookkeeping Dashboard API"}


def _openapi_document() -> dict:
    if app.openapi_schema is None:
        app.openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            routes=app.routes,
        )
    return app.openapi_schema


# API documentation is only served to administrators.
admin_only = [Depends(require_admin_user)]


@app.get("/openapi.json", include_in_schema=False, dependencies=admin_only)
async def openapi_json() -> JSONResponse:
    return JSONResponse(content=_openapi_document())


@app.get("/docs", include_in_schema=False, dependencies=admin_only)
async def swagger_documentation():
    return get_swagger_ui_html(openapi_url="/openapi.json", title=f"{app.title} docs")


@app.get("/redoc", include_in_schema=False, dependencies=admin_only)
async def redoc_documentation():
    return get_redoc_html(openapi_url="/openapi.json", title=f"{app.title} docs")


@app.on_event("startup")
async def check_signing_configuration():
    try:
        get_token_service()
    except TokenConfigurationError as exc:
        # Login and refresh answer 500 until the secrets are fixed.
        logger.error("Token service misconfigured", extra={"json_fields": {"error": str(exc)}})
    else:
        logger.info("Token service initialized")

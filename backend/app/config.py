import os


def _get_bool_env(name: str, default: bool) -> bool:
	raw = os.environ.get(name)
	if raw is None:
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
	raw = os.environ.get(name)
	if raw is None:
		return default
	try:
		return int(raw)
	except ValueError:
		return default


def _get_list_env(name: str, default: str) -> tuple[str, ...]:
	return tuple(part.strip() for part in os.environ.get(name, default).split(",") if part.strip())


# Deployment environment ("development", "production", ...)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

# Token signing. Access and refresh tokens must use different secrets.
JWT_ACCESS_SECRET = os.environ.get("JWT_ACCESS_SECRET")
JWT_REFRESH_SECRET = os.environ.get("JWT_REFRESH_SECRET")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.environ.get("JWT_ISSUER", "bookkeeping-dashboard")
JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE", "bookkeeping-dashboard")

ACCESS_TOKEN_TTL_SECONDS = _get_int_env("ACCESS_TOKEN_TTL_SECONDS", 15 * 60)
REFRESH_TOKEN_TTL_SECONDS = _get_int_env("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60)

# Token transport (HttpOnly cookies)
ACCESS_COOKIE_NAME = os.environ.get("ACCESS_COOKIE_NAME", "accessToken")
REFRESH_COOKIE_NAME = os.environ.get("REFRESH_COOKIE_NAME", "refreshToken")
COOKIE_SECURE = _get_bool_env("COOKIE_SECURE", ENVIRONMENT == "production")
COOKIE_SAMESITE = os.environ.get("COOKIE_SAMESITE", "lax")

# Origins trusted for credentialed cross-origin requests
ALLOWED_ORIGINS = _get_list_env("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:6413")

# Password hashing
BCRYPT_ROUNDS = _get_int_env("BCRYPT_ROUNDS", 12)

# Authorization
ADMIN_ROLE_LEVEL = _get_int_env("ADMIN_ROLE_LEVEL", 2)

# Rate limiting
LOGIN_RATE_LIMIT_ATTEMPTS = _get_int_env("LOGIN_RATE_LIMIT_ATTEMPTS", 5)
LOGIN_RATE_LIMIT_WINDOW_MS = _get_int_env("LOGIN_RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000)
RATE_LIMIT_REDIS_URL = os.environ.get("RATE_LIMIT_REDIS_URL")
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = _get_int_env("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", 60)
REFRESH_RATE_LIMIT = os.environ.get("REFRESH_RATE_LIMIT", "30/minute")
ADMIN_RATE_LIMIT = os.environ.get("ADMIN_RATE_LIMIT", "120/minute")

# Refresh token revocation store
REFRESH_STORE_REDIS_URL = os.environ.get("REFRESH_STORE_REDIS_URL")

# Identity seeding for the in-memory repository
SEED_ADMIN_USERNAME = os.environ.get("SEED_ADMIN_USERNAME")
SEED_ADMIN_PASSWORD_HASH = os.environ.get("SEED_ADMIN_PASSWORD_HASH")

# Client session orchestration
SESSION_REFRESH_INTERVAL_SECONDS = _get_int_env("SESSION_REFRESH_INTERVAL_SECONDS", 10 * 60)
SESSION_REQUEST_TIMEOUT_SECONDS = _get_int_env("SESSION_REQUEST_TIMEOUT_SECONDS", 10)

# Observability configuration
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
ENABLE_CLOUD_LOGGING = _get_bool_env("ENABLE_CLOUD_LOGGING", False)
CLOUD_LOGGING_LOG_NAME = os.environ.get("CLOUD_LOGGING_LOG_NAME", "bookkeeping-auth-service")
CLOUD_LOGGING_EXCLUDED_LOGGERS = _get_list_env("CLOUD_LOGGING_EXCLUDED_LOGGERS", "httpx")

ENABLE_PROMETHEUS_METRICS = _get_bool_env("ENABLE_PROMETHEUS_METRICS", False)
PROMETHEUS_METRICS_NAMESPACE = os.environ.get("PROMETHEUS_METRICS_NAMESPACE", "bookkeeping")
PROMETHEUS_METRICS_SUBSYSTEM = os.environ.get("PROMETHEUS_METRICS_SUBSYSTEM", "auth")

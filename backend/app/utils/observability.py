from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional

from prometheus_client import Counter  # type: ignore[import]
from prometheus_fastapi_instrumentator import Instrumentator, metrics  # type: ignore[import]

from backend.app import config

try:  # pragma: no cover - installed with the "cloud" extra
    import google.cloud.logging  # type: ignore[import]
    from google.cloud.logging_v2.handlers import CloudLoggingHandler  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover - installed with the "cloud" extra
    google = None  # type: ignore[assignment]
    CloudLoggingHandler = None  # type: ignore[assignment]

logger = logging.getLogger("observability")

REDACTED = "[redacted]"

# Keys that may carry credentials; their values never reach a log sink.
SENSITIVE_LOG_KEYS = frozenset(
    {
        "password",
        "passwordhash",
        "password_hash",
        "token",
        "accesstoken",
        "refreshtoken",
        "authorization",
        "cookie",
        "secret",
    }
)


def redact_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if key.lower() in SENSITIVE_LOG_KEYS:
            cleaned[key] = REDACTED
        elif isinstance(value, dict):
            cleaned[key] = redact_fields(value)
        else:
            cleaned[key] = value
    return cleaned


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured ``json_fields`` are merged in after redaction."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "severity": record.levelname,
            "logger": record.name,
            "environment": config.ENVIRONMENT,
            "message": record.getMessage(),
        }
        json_fields = getattr(record, "json_fields", None)
        if isinstance(json_fields, dict):
            entry.update(redact_fields(json_fields))
        if record.exc_info:
            entry["trace"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, separators=(",", ":"))


def _cloud_handler(excluded: Iterable[str]) -> Optional[logging.Handler]:
    if not config.ENABLE_CLOUD_LOGGING or google is None or CloudLoggingHandler is None:
        return None
    try:  # pragma: no cover - needs Google credentials
        handler = CloudLoggingHandler(google.cloud.logging.Client(), name=config.CLOUD_LOGGING_LOG_NAME)
    except Exception as exc:  # pragma: no cover - needs Google credentials
        logger.warning(
            "Cloud Logging unavailable; using JSON console output",
            extra={"json_fields": {"error": str(exc)}},
        )
        return None
    for name in excluded:
        logging.getLogger(name).propagate = False
    return handler


def configure_logging(level: Optional[str] = None) -> None:
    """Route every logger through Cloud Logging when enabled, otherwise JSON lines on stderr."""

    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    excluded = [name for name in config.CLOUD_LOGGING_EXCLUDED_LOGGERS if name]

    handler = _cloud_handler(excluded)
    destination = "cloud" if handler is not None else "console"
    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)
    logger.info(
        "Logging configured",
        extra={
            "json_fields": {
                "destination": destination,
                "logLevel": logging.getLevelName(log_level),
                "logName": config.CLOUD_LOGGING_LOG_NAME if destination == "cloud" else None,
            }
        },
    )


def _auth_counter(name: str, documentation: str, label: str) -> Counter:
    return Counter(
        name,
        documentation,
        labelnames=(label,),
        namespace=config.PROMETHEUS_METRICS_NAMESPACE,
        subsystem=config.PROMETHEUS_METRICS_SUBSYSTEM,
    )


_login_attempt_counter = _auth_counter(
    "login_attempts_total", "Login attempts by outcome", "outcome"
)
_token_refresh_counter = _auth_counter(
    "token_refresh_total", "Refresh token exchanges by outcome", "outcome"
)
_refresh_revocation_counter = _auth_counter(
    "refresh_tokens_revoked_total", "Refresh tokens retired by rotation or logout", "reason"
)


def configure_metrics(app) -> None:
    """Expose request metrics on ``/metrics`` when enabled in config."""

    if not config.ENABLE_PROMETHEUS_METRICS:
        logger.info("Prometheus metrics disabled via configuration")
        return

    labels = {
        "metric_namespace": config.PROMETHEUS_METRICS_NAMESPACE,
        "metric_subsystem": config.PROMETHEUS_METRICS_SUBSYSTEM,
    }
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=[".*metrics", "/docs", "/redoc", "/openapi.json"],
    )
    instrumentator.add(metrics.requests(**labels))
    instrumentator.add(metrics.latency(**labels))
    instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
    logger.info("Prometheus metrics exposed", extra={"json_fields": {"endpoint": "/metrics", **labels}})


def record_login_attempt(outcome: str) -> None:
    _login_attempt_counter.labels(outcome=outcome).inc()


def record_token_refresh(outcome: str) -> None:
    _token_refresh_counter.labels(outcome=outcome).inc()


def record_refresh_revocation(reason: str) -> None:
    _refresh_revocation_counter.labels(reason=reason).inc()


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "configure_metrics",
    "record_login_attempt",
    "record_refresh_revocation",
    "record_token_refresh",
    "redact_fields",
]

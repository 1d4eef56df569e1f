from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.auth.schemas import ValidationErrorResponse

logger = logging.getLogger("api.errors")


def _field_errors(errors: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    details = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append(
            {
                "field": ".".join(location) or None,
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type"),
            }
        )
    return details


# Body of every 400 answer, advertised in the API schema.
INVALID_REQUEST_RESPONSES: Dict[int, Dict[str, Any]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ValidationErrorResponse, "description": "Invalid request"},
}


def validation_error_response(errors: Iterable[Dict[str, Any]]) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ValidationErrorResponse(detail="Invalid request", details=_field_errors(errors)).model_dump(),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return validation_error_response(exc.errors())


async def fatal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Internal detail stays in the log.
    logger.exception(
        "Unrecoverable error while handling request",
        exc_info=exc,
        extra={"json_fields": {"event": "fatal_error", "path": request.url.path, "error": exc.__class__.__name__}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )

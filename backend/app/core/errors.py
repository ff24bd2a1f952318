"""
Centralised error handling — exception hierarchy + FastAPI handlers.

The SOS engine itself never raises these to its callers: location and
transport failures are converted into degraded results at the seams
(LocationUnavailable, failed DeliveryAttempt). They surface where a
collaborator reports a failure and on the HTTP layer, where every error,
including request-body validation, leaves in one JSON envelope tagged with
the request's correlation id.

Usage:
    from backend.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Contact", contact_id="c-42")
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.logging_config import get_request_context

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafetyAppError(Exception):
    """
    Base for errors that map onto an HTTP status and a stable error code.

    Subclasses set ``status_code`` / ``error_code`` as class attributes;
    keyword arguments become ``details``.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal error", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class NotFoundError(SafetyAppError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", resource=resource, **identifiers)


class ValidationError(SafetyAppError):
    """Rejected input that passed schema validation (duplicate ids etc.)."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, **details)


class ConflictError(SafetyAppError):
    """The request does not fit the current state (e.g. refresh while sharing is off)."""

    status_code = 409
    error_code = "CONFLICT"


class PositionErrorCode(IntEnum):
    """Geolocation failure codes (same numbering as browser geolocation)."""
    PERMISSION_DENIED    = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT              = 3


class PositionError(SafetyAppError):
    """Reported by a position source through its error callback."""

    status_code = 503
    error_code = "POSITION_ERROR"

    def __init__(self, code: PositionErrorCode, message: str = ""):
        super().__init__(
            message or code.name.replace("_", " ").lower(),
            code=int(code),
            reason=code.name.lower(),
        )
        self.code = code


class TransportError(SafetyAppError):
    """A notification could not be handed to its carrier."""

    status_code = 502
    error_code = "TRANSPORT_ERROR"

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(f"Transport '{channel}' failed: {message}", channel=channel, **details)


# ═══════════════════════════════════════════════════════════════════════════
# Error Envelope
# ═══════════════════════════════════════════════════════════════════════════

# Detail keys that double as structured log fields
_LOGGED_DETAILS = ("contact_id", "channel", "session_id")


def error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """
    Every error leaves the API in the same envelope:

        {"error": {"code", "message", "status",
                   "details"?, "request_id"?, "path"?, "method"?}}

    ``path`` and ``method`` are included outside production only.
    """
    error: Dict[str, Any] = {
        "code": error_code,
        "message": message,
        "status": status_code,
    }
    if details:
        error["details"] = details
    request_id = get_request_context().get("request_id")
    if request_id:
        error["request_id"] = request_id
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(status_code=status_code, content={"error": error})


def _invalid_fields(exc: RequestValidationError) -> List[Dict[str, str]]:
    # loc is ("body", "contacts", 0, "phone"); drop the "body" root
    return [
        {
            "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Route application, validation and unexpected errors into the envelope."""

    @app.exception_handler(SafetyAppError)
    async def handle_app_error(request: Request, exc: SafetyAppError):
        fields = {k: exc.details[k] for k in _LOGGED_DETAILS if k in exc.details}
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s on %s %s: %s",
            exc.error_code, request.method, request.url.path, exc.message,
            extra={"status_code": exc.status_code, **fields},
        )
        return error_response(
            exc.status_code, exc.error_code, exc.message, exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = _invalid_fields(exc)
        logger.warning(
            "Rejected %s %s: %d invalid field(s)",
            request.method, request.url.path, len(fields),
        )
        return error_response(
            422, "VALIDATION_ERROR", "Request validation failed",
            {"fields": fields}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return error_response(422, "VALIDATION_ERROR", str(exc), request=request)

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.error(
            "Unhandled %s on %s %s",
            type(exc).__name__, request.method, request.url.path,
            exc_info=exc,
        )
        message = f"{type(exc).__name__}: {exc}" if settings.DEBUG else "Internal server error"
        return error_response(500, "INTERNAL_ERROR", message, request=request)

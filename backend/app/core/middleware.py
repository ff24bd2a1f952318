"""
Request middleware — correlation IDs, timing, one log line per request.

A caller-supplied X-Request-ID is echoed back when it looks like an id
(1-64 chars of [A-Za-z0-9_-]); anything else is replaced with a fresh one.
Health probes and docs are served without a log line.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def correlation_id(request: Request) -> str:
    supplied = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex[:16]


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = correlation_id(request)
        path = request.url.path
        set_request_context(
            request_id=request_id,
            endpoint=path,
            method=request.method,
            client_ip=request.client.host if request.client else "unknown",
        )

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = (
                f"{(time.perf_counter() - start) * 1000:.1f}ms"
            )
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if status_code >= 500 or not path.startswith(QUIET_PREFIXES):
                logger.log(
                    _level_for(status_code),
                    "%s %s → %d (%.1fms)",
                    request.method, path, status_code, duration_ms,
                    extra={"duration_ms": round(duration_ms, 1), "status_code": status_code},
                )
            set_request_context()

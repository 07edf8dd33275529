"""Per-request JSON access log.

Each request produces exactly one ``INFO`` line on this module's logger,
written after the response is known (or, when a handler raises, with status
``500`` before the exception propagates)::

    {"event": "http_request", "correlation_id": "...", "session_id": "9f2c...",
     "method": "GET", "path": "/api/status/9f2c...", "status_code": 200,
     "client_ip": "203.0.113.7", "duration_ms": 12.4}

The correlation id comes from ``X-Correlation-ID`` or ``X-Request-ID`` when
the caller sends one and is otherwise a new UUID4.  Handlers can read it from
``request.state.correlation_id``; it is returned in the ``X-Correlation-ID``
response header.  ``session_id`` is whatever the scan routes stored on
``request.state.session_id`` and ``null`` elsewhere.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from radarscan.api.provenance import client_ip

logger = logging.getLogger(__name__)

_CORRELATION_HEADERS: tuple[str, ...] = ("x-correlation-id", "x-request-id")


def correlation_id_for(request: Request) -> str:
    """Return the caller-supplied correlation id, or a fresh UUID4."""
    for header in _CORRELATION_HEADERS:
        supplied = request.headers.get(header, "").strip()
        if supplied:
            return supplied
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one JSON access log line per request and echo the correlation id."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.correlation_id = correlation_id_for(request)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, 500, started)
            raise
        self._log(request, response.status_code, started)
        response.headers["X-Correlation-ID"] = request.state.correlation_id
        return response

    @staticmethod
    def _log(request: Request, status_code: int, started: float) -> None:
        entry: dict[str, Any] = {
            "event": "http_request",
            "correlation_id": request.state.correlation_id,
            "session_id": getattr(request.state, "session_id", None),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "client_ip": client_ip(request),
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        }
        logger.info(json.dumps(entry))

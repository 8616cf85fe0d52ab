"""Structured JSON request logging middleware for the ColdStore API.

:class:`RequestLoggingMiddleware` records every HTTP request as one JSON log
entry at ``INFO`` level, enriched with:

* A **correlation ID**, propagated from the incoming ``X-Correlation-ID``
  (or ``X-Request-ID``) header, or generated as a UUID v4 when absent.
* **Tenant context**, read from ``request.state.context`` (set by
  :class:`~coldstore.api.middleware.tenant_context.TenantContextMiddleware`).
* Request metadata: HTTP method, URL path, response status code, and
  wall-clock duration in milliseconds.

The correlation ID is also bound to
:data:`~coldstore.services.audit.correlation_id_var` for the duration of the
request, so audit entries written by the handlers carry it, and it is echoed
back in the ``X-Correlation-ID`` response header.

Middleware registration order
------------------------------
Register this middleware **after** ``TenantContextMiddleware`` so that it is
the outermost layer and sees the populated context::

    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)  # outermost, runs first

Log entry format
----------------
::

    {
      "event": "http_request",
      "correlation_id": "550e8400-e29b-41d4-a716-446655440000",
      "tenant_id": "d290f1ee-6c54-4b01-90e6-d701748f0851",
      "method": "POST",
      "path": "/v1/operations/arc-3f2a.../approve",
      "status_code": 200,
      "duration_ms": 42.7
    }
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from coldstore.services.audit import correlation_id_var

logger = logging.getLogger(__name__)

# Headers checked (in priority order) for an incoming correlation ID.
_CORRELATION_HEADERS: tuple[str, ...] = ("x-correlation-id", "x-request-id")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = self._extract_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)

        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        context = getattr(request.state, "context", None)
        tenant_id = getattr(context, "tenant_id", None)

        log_entry = {
            "event": "http_request",
            "correlation_id": correlation_id,
            "tenant_id": str(tenant_id) if tenant_id is not None else None,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        logger.info(json.dumps(log_entry))

        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @staticmethod
    def _extract_correlation_id(request: Request) -> str:
        """Return the first correlation header present, or a fresh UUID v4."""
        for header in _CORRELATION_HEADERS:
            value = request.headers.get(header, "").strip()
            if value:
                return value
        return str(uuid.uuid4())

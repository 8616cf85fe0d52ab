"""Unit tests for coldstore/api/middleware/logging.py.

Tests are fully offline: no database or Redis connections are required.

Coverage targets:
* Correlation ID extracted from X-Correlation-ID, then X-Request-ID.
* Fresh UUID v4 generated when no correlation header is present.
* Correlation ID stored on request.state and bound to the audit context var
  for the duration of the request only.
* One structured JSON log entry per request with the documented fields.
* tenant_id populated from the request context set by TenantContextMiddleware.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from coldstore.api.middleware.logging import RequestLoggingMiddleware
from coldstore.api.middleware.tenant_context import TenantContextMiddleware
from coldstore.services.audit import correlation_id_var

_LOGGER = "coldstore.api.middleware.logging"


def _make_app(with_tenant_context: bool = False) -> FastAPI:
    app = FastAPI()

    @app.get("/v1/operations")
    async def operations(request: Request) -> dict:
        return {
            "correlation_id": getattr(request.state, "correlation_id", None),
            "bound": correlation_id_var.get(),
        }

    @app.get("/healthz")
    async def health() -> dict:
        return {"status": "ok"}

    if with_tenant_context:
        app.add_middleware(TenantContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    return app


def _http_entries(caplog: Any) -> list[dict]:
    entries = []
    for record in caplog.records:
        if record.name != _LOGGER:
            continue
        payload = json.loads(record.getMessage())
        if payload.get("event") == "http_request":
            entries.append(payload)
    return entries


class TestCorrelationIdExtraction:
    def test_uses_x_correlation_id_header(self) -> None:
        client = TestClient(_make_app())
        response = client.get("/healthz", headers={"X-Correlation-ID": "corr-123"})
        assert response.headers["x-correlation-id"] == "corr-123"

    def test_falls_back_to_x_request_id(self) -> None:
        client = TestClient(_make_app())
        response = client.get("/healthz", headers={"X-Request-ID": "req-456"})
        assert response.headers["x-correlation-id"] == "req-456"

    def test_correlation_id_takes_priority(self) -> None:
        client = TestClient(_make_app())
        response = client.get(
            "/healthz",
            headers={"X-Correlation-ID": "primary", "X-Request-ID": "secondary"},
        )
        assert response.headers["x-correlation-id"] == "primary"

    def test_generates_uuid_when_absent(self) -> None:
        client = TestClient(_make_app())
        corr_id = client.get("/healthz").headers["x-correlation-id"]
        assert str(uuid.UUID(corr_id)) == corr_id


class TestCorrelationIdBinding:
    def test_request_state_and_context_var_are_set(self) -> None:
        client = TestClient(_make_app())
        body = client.get("/v1/operations", headers={"X-Correlation-ID": "bound-1"}).json()
        assert body == {"correlation_id": "bound-1", "bound": "bound-1"}

    def test_context_var_reset_after_request(self) -> None:
        client = TestClient(_make_app())
        client.get("/v1/operations", headers={"X-Correlation-ID": "bound-2"})
        assert correlation_id_var.get() is None


class TestLogEntry:
    def test_emits_one_entry_with_required_fields(self, caplog: Any) -> None:
        client = TestClient(_make_app())
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            client.get("/healthz", headers={"X-Correlation-ID": "log-1"})

        entries = _http_entries(caplog)
        assert len(entries) == 1
        entry = entries[0]
        assert entry["correlation_id"] == "log-1"
        assert entry["method"] == "GET"
        assert entry["path"] == "/healthz"
        assert entry["status_code"] == 200
        assert entry["duration_ms"] >= 0
        assert entry["tenant_id"] is None

    def test_tenant_id_from_request_context(self, caplog: Any) -> None:
        tenant_id = uuid.uuid4()
        client = TestClient(_make_app(with_tenant_context=True))
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            client.get("/healthz", headers={"X-Tenant-ID": str(tenant_id)})

        assert _http_entries(caplog)[0]["tenant_id"] == str(tenant_id)

    def test_404_is_logged_with_status(self, caplog: Any) -> None:
        client = TestClient(_make_app())
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            response = client.get("/missing")

        assert response.status_code == 404
        assert _http_entries(caplog)[0]["status_code"] == 404

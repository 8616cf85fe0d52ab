"""Tenant and actor context for the ColdStore API.

Callers are authenticated upstream (the MSP portal's gateway); this
middleware only resolves the identity headers it forwards into
``request.state.context``:

* ``X-Tenant-ID``: the client tenant the request acts on (UUID).
* ``X-Msp-Org-ID``: the managing MSP organisation (UUID).
* ``X-Actor-ID`` / ``X-Actor-Name``: who is acting; recorded on approvals,
  vetoes and audit entries.

A malformed UUID is rejected with ``422``.  Whether a header is *required*
is decided per route by the :func:`require_tenant` / :func:`require_org` /
:func:`require_actor` dependencies, which answer ``400`` when it is absent.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response


@dataclass(frozen=True)
class RequestContext:
    tenant_id: uuid.UUID | None = None
    msp_org_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_name: str | None = None

    @property
    def actor(self) -> str | None:
        return self.actor_name or self.actor_id


def _parse_uuid(value: str | None, header: str) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        raise ValueError(f"{header} must be a UUID") from None


class TenantContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            tenant_id = _parse_uuid(request.headers.get("x-tenant-id"), "X-Tenant-ID")
            msp_org_id = _parse_uuid(request.headers.get("x-msp-org-id"), "X-Msp-Org-ID")
        except ValueError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=422)

        request.state.context = RequestContext(
            tenant_id=tenant_id,
            msp_org_id=msp_org_id,
            actor_id=(request.headers.get("x-actor-id") or "").strip() or None,
            actor_name=(request.headers.get("x-actor-name") or "").strip() or None,
        )
        return await call_next(request)


def get_context(request: Request) -> RequestContext:
    return getattr(request.state, "context", None) or RequestContext()


def require_tenant(request: Request) -> uuid.UUID:
    tenant_id = get_context(request).tenant_id
    if tenant_id is None:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def require_org(request: Request) -> uuid.UUID:
    msp_org_id = get_context(request).msp_org_id
    if msp_org_id is None:
        raise HTTPException(status_code=400, detail="X-Msp-Org-ID header is required")
    return msp_org_id


def require_actor(request: Request) -> str:
    actor = get_context(request).actor
    if not actor:
        raise HTTPException(status_code=400, detail="X-Actor-ID or X-Actor-Name header is required")
    return actor

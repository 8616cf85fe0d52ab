"""Archive operation routes: listing, approval, veto and veto resolution.

Endpoints
---------
GET  /v1/operations
    Tenant-scoped, paginated list of archive operations, optionally filtered
    by ``status`` and ``site_id``.
POST /v1/operations/{operation_id}/approve
POST /v1/operations/{operation_id}/veto
    Approve or veto one waiting operation.  Repeating the request is
    harmless: the second call reports ``changed: false``.
POST /v1/operations/{operation_id}/resolve-veto
    Accept, override or exclude a vetoed operation.

The acting user comes from the ``X-Actor-Name`` / ``X-Actor-ID`` headers.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.api.middleware.tenant_context import require_actor, require_tenant
from coldstore.core import state_machine as sm
from coldstore.db.session import get_db
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.schemas.operations import (
    ArchiveOperationListResponse,
    ArchiveOperationOut,
    ResolveVetoRequest,
    ResolveVetoResponse,
    TransitionResponse,
    VetoRequest,
)
from coldstore.services.approval import ApprovalWorkflow
from coldstore.services.operation_store import OperationStore
from coldstore.services.veto import VetoResolver

router = APIRouter(prefix="/v1/operations", tags=["operations"])

_store = OperationStore()
_workflow = ApprovalWorkflow(store=_store)
_resolver = VetoResolver(store=_store)


@router.get("", response_model=ArchiveOperationListResponse)
async def list_operations(
    status: Annotated[str | None, Query(description="Filter by operation status")] = None,
    site_id: Annotated[str | None, Query(description="Filter by site id")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db),
) -> ArchiveOperationListResponse:
    if status is not None and status not in sm.ARCHIVE_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"status must be one of: {', '.join(sm.ARCHIVE_STATUSES)}",
        )

    filters = [ArchiveOperation.tenant_id == tenant_id]
    if status is not None:
        filters.append(ArchiveOperation.status == status)
    if site_id is not None:
        filters.append(ArchiveOperation.site_id == site_id)

    total = await session.scalar(select(func.count()).select_from(ArchiveOperation).where(*filters))
    result = await session.execute(
        select(ArchiveOperation)
        .where(*filters)
        .order_by(ArchiveOperation.created_at.desc(), ArchiveOperation.operation_id)
        .limit(limit)
        .offset(offset)
    )
    return ArchiveOperationListResponse(
        operations=[ArchiveOperationOut.model_validate(op) for op in result.scalars().all()],
        total=total or 0,
        limit=limit,
        offset=offset,
    )


@router.post("/{operation_id}/approve", response_model=TransitionResponse)
async def approve_operation(
    operation_id: str,
    tenant_id: uuid.UUID = Depends(require_tenant),
    actor: str = Depends(require_actor),
    session: AsyncSession = Depends(get_db),
) -> TransitionResponse:
    changed = await _workflow.record_approval(session, tenant_id, operation_id, actor)
    await session.commit()
    op = await _store.get(session, operation_id, refresh=True)
    return TransitionResponse(operation_id=operation_id, status=op.status, changed=changed)


@router.post("/{operation_id}/veto", response_model=TransitionResponse)
async def veto_operation(
    operation_id: str,
    body: VetoRequest | None = None,
    tenant_id: uuid.UUID = Depends(require_tenant),
    actor: str = Depends(require_actor),
    session: AsyncSession = Depends(get_db),
) -> TransitionResponse:
    reason = body.reason if body is not None else None
    changed = await _workflow.record_veto(session, tenant_id, operation_id, actor, reason)
    await session.commit()
    op = await _store.get(session, operation_id, refresh=True)
    return TransitionResponse(operation_id=operation_id, status=op.status, changed=changed)


@router.post("/{operation_id}/resolve-veto", response_model=ResolveVetoResponse)
async def resolve_veto(
    operation_id: str,
    body: ResolveVetoRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    actor: str = Depends(require_actor),
    session: AsyncSession = Depends(get_db),
) -> ResolveVetoResponse:
    outcome = await _resolver.resolve(
        session,
        tenant_id=tenant_id,
        operation_id=operation_id,
        resolution=body.resolution,
        actor=actor,
        scope=body.scope,
    )
    await session.commit()
    return ResolveVetoResponse.model_validate(outcome)

"""Savings trend route.

GET /v1/savings/trends
    Monthly savings snapshots for the caller's MSP organisation (or one of
    its tenants with ``tenant_id``), oldest first, with the current and
    previous month called out.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.api.middleware.tenant_context import require_org
from coldstore.core.errors import NotFoundError
from coldstore.db.session import get_db
from coldstore.models.tenant import ClientTenant
from coldstore.schemas.savings import SavingsSnapshotOut, SavingsTrendsResponse
from coldstore.services import snapshots

router = APIRouter(prefix="/v1/savings", tags=["savings"])


@router.get("/trends", response_model=SavingsTrendsResponse)
async def savings_trends(
    months: Annotated[int, Query(ge=1, le=36)] = 12,
    tenant_id: Annotated[uuid.UUID | None, Query(description="Limit to one tenant")] = None,
    msp_org_id: uuid.UUID = Depends(require_org),
    session: AsyncSession = Depends(get_db),
) -> SavingsTrendsResponse:
    if tenant_id is not None:
        owned = await session.scalar(
            select(ClientTenant.id).where(
                ClientTenant.id == tenant_id, ClientTenant.msp_org_id == msp_org_id
            )
        )
        if owned is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")

    trends = await snapshots.get_trends(session, msp_org_id, months=months, tenant_id=tenant_id)

    def _out(row):
        return SavingsSnapshotOut.model_validate(row) if row is not None else None

    return SavingsTrendsResponse(
        months=[_out(row) for row in trends.months],
        current=_out(trends.current),
        previous=_out(trends.previous),
    )

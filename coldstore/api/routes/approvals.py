"""Approval card callback route.

POST /v1/approvals/callback
    Receives the ``approve`` / ``reject`` / ``review`` action an owner chose
    on an approval card and applies it to the site's waiting operations.
    Delivering the same callback twice moves nothing the second time.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.db.session import get_db
from coldstore.schemas.operations import ApprovalCallbackRequest, ApprovalCallbackResponse
from coldstore.services.approval import ApprovalCallback, ApprovalWorkflow

router = APIRouter(prefix="/v1/approvals", tags=["approvals"])

_workflow = ApprovalWorkflow()


@router.post("/callback", response_model=ApprovalCallbackResponse)
async def approval_callback(
    body: ApprovalCallbackRequest,
    session: AsyncSession = Depends(get_db),
) -> ApprovalCallbackResponse:
    moved = await _workflow.handle_action(
        session,
        ApprovalCallback(
            action=body.action,
            tenant_id=body.tenant_id,
            actor=body.actor,
            site_id=body.site_id,
            operation_ids=body.operation_ids,
            reason=body.reason,
        ),
    )
    await session.commit()
    return ApprovalCallbackResponse(action=body.action, operation_ids=moved)

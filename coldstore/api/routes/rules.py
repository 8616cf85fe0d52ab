"""Rule preview routes.

Endpoints
---------
POST /v1/rules/preview
    Preview an unsaved archive rule: how many files it would archive, their
    size, the annual savings estimate and the top sites.
GET  /v1/rules/{rule_id}/preview
    The same preview for a stored archive rule.
GET  /v1/rules/{rule_id}/exclusion-scope
    How many files a stored exclusion rule protects.

Previews never write anything.  Invalid criteria or tiers answer ``422``;
a rule belonging to another tenant answers ``404``.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.api.middleware.tenant_context import require_tenant
from coldstore.db.session import get_db
from coldstore.schemas.rules import ExclusionScopeResponse, RulePreviewRequest, RulePreviewResponse
from coldstore.services.dry_run import DryRunEstimator

router = APIRouter(prefix="/v1/rules", tags=["rules"])

_estimator = DryRunEstimator()


@router.post("/preview", response_model=RulePreviewResponse)
async def preview_unsaved_rule(
    body: RulePreviewRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db),
) -> RulePreviewResponse:
    result = await _estimator.preview(
        session, tenant_id, body.rule_type, body.criteria, body.target_tier
    )
    return RulePreviewResponse.model_validate(result)


@router.get("/{rule_id}/preview", response_model=RulePreviewResponse)
async def preview_stored_rule(
    rule_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db),
) -> RulePreviewResponse:
    result = await _estimator.preview_rule(session, tenant_id, rule_id)
    return RulePreviewResponse.model_validate(result)


@router.get("/{rule_id}/exclusion-scope", response_model=ExclusionScopeResponse)
async def exclusion_scope(
    rule_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db),
) -> ExclusionScopeResponse:
    scope = await _estimator.exclusion_scope(session, tenant_id, rule_id)
    return ExclusionScopeResponse.model_validate(scope)

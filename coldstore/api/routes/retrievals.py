"""Retrieval routes.

POST /v1/retrievals
    Request that an archived file be restored to its original location.
    Answers ``202`` with a new operation (and enqueues
    :func:`~coldstore.workers.lifecycle_worker.start_retrieval`), or ``200``
    with the retrieval already in progress for that file.
GET  /v1/retrievals/{operation_id}
    Current state of a retrieval.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.api.middleware.tenant_context import require_actor, require_tenant
from coldstore.db.session import get_db
from coldstore.schemas.retrievals import RetrievalOut, RetrievalRequest
from coldstore.services.file_source import GraphFileSource
from coldstore.services.graph_auth import ClientCredentialsTokenProvider
from coldstore.services.operation_store import OperationStore
from coldstore.services.retrieval_pipeline import RetrievalPipeline
from coldstore.services.tiered_store import S3TieredStore
from coldstore.workers.lifecycle_worker import start_retrieval

router = APIRouter(prefix="/v1/retrievals", tags=["retrievals"])

_store = OperationStore(retrieval=True)


def get_retrieval_pipeline() -> RetrievalPipeline:
    return RetrievalPipeline(
        source=GraphFileSource(token_provider=ClientCredentialsTokenProvider()),
        store=S3TieredStore(),
    )


@router.post("", response_model=RetrievalOut)
async def request_retrieval(
    body: RetrievalRequest,
    response: Response,
    tenant_id: uuid.UUID = Depends(require_tenant),
    actor: str = Depends(require_actor),
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline),
    session: AsyncSession = Depends(get_db),
) -> RetrievalOut:
    op, created = await pipeline.request(session, tenant_id, body.file_id, actor)
    await session.commit()
    # Reload so server-generated columns are populated.
    op = await _store.get(session, op.operation_id, refresh=True)
    if created:
        start_retrieval.delay(op.operation_id)
        response.status_code = 202
    return RetrievalOut.model_validate(op)


@router.get("/{operation_id}", response_model=RetrievalOut)
async def get_retrieval(
    operation_id: str,
    tenant_id: uuid.UUID = Depends(require_tenant),
    session: AsyncSession = Depends(get_db),
) -> RetrievalOut:
    op = await _store.require(session, operation_id, tenant_id=tenant_id)
    return RetrievalOut.model_validate(op)

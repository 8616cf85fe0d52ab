"""Pydantic schemas for retrieval API requests and responses."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class RetrievalRequest(BaseModel):
    file_id: uuid.UUID


class RetrievalOut(BaseModel):
    """Serialisable view of a :class:`~coldstore.models.archive_operation.RetrievalOperation`."""

    model_config = {"from_attributes": True}

    operation_id: str
    tenant_id: uuid.UUID
    file_id: uuid.UUID
    cycle: int
    source_path: str
    blob_key: str
    tier_at_request: str | None = None
    size_bytes: int
    requested_by: str
    status: str
    rehydration_started_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

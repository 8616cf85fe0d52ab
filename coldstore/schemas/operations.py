"""Pydantic schemas for archive operation and approval API traffic."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class ArchiveOperationOut(BaseModel):
    """Serialisable view of an :class:`~coldstore.models.archive_operation.ArchiveOperation`."""

    model_config = {"from_attributes": True}

    operation_id: str
    tenant_id: uuid.UUID
    file_id: uuid.UUID
    rule_id: uuid.UUID | None = None
    site_id: str
    cycle: int
    source_path: str
    destination_path: str
    target_tier: str
    size_bytes: int
    status: str
    approved_by: str | None = None
    vetoed_by: str | None = None
    veto_reason: str | None = None
    vetoed_at: datetime | None = None
    awaiting_since: datetime | None = None
    notification_delivered: bool | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class ArchiveOperationListResponse(BaseModel):
    """Page of archive operations.

    Attributes:
        operations: Page of operation records.
        total: Number of matching operations across all pages.
        limit: Page size requested.
        offset: Zero-based offset of the first returned record.
    """

    operations: list[ArchiveOperationOut]
    total: int
    limit: int
    offset: int


class VetoRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class TransitionResponse(BaseModel):
    """Result of a single approve / veto request.

    ``changed`` is ``False`` when the operation was no longer waiting (for
    example, a repeated request); ``status`` is its current status.
    """

    operation_id: str
    status: str
    changed: bool


class ResolveVetoRequest(BaseModel):
    resolution: str = Field(description="'accept', 'override' or 'exclude'")
    scope: str = Field(default="file", description="Exclusion scope: 'file' or 'library'")


class ResolveVetoResponse(BaseModel):
    model_config = {"from_attributes": True}

    operation_id: str
    resolution: str
    status: str
    changed: bool
    new_operation_id: str | None = None
    exclusion_rule_id: uuid.UUID | None = None
    related_operation_ids: list[str] = Field(default_factory=list)


class ApprovalCallbackRequest(BaseModel):
    """Payload posted back by an approval card action.

    Attributes:
        action: ``approve``, ``reject`` or ``review``.
        tenant_id: Tenant the card was sent for.
        site_id: Site whose waiting operations the action applies to.
        operation_ids: Explicit operations, instead of a whole site.
        actor: Who pressed the button (UPN or display name).
        reason: Optional free text for ``reject`` / ``review``.
    """

    action: str
    tenant_id: uuid.UUID
    actor: str = Field(min_length=1)
    site_id: str | None = None
    operation_ids: list[str] | None = None
    reason: str | None = Field(default=None, max_length=2000)


class ApprovalCallbackResponse(BaseModel):
    action: str
    operation_ids: list[str]

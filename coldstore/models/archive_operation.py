"""ArchiveOperation ORM model.

One row per (file, logical action, cycle).  Rows are never deleted: together
with :class:`~coldstore.models.audit_entry.AuditEntry` they are the audit
trail of every attempted file action.

``operation_id`` is the idempotency key produced by
:func:`coldstore.core.state_machine.make_operation_id`; its unique constraint
is what makes re-submission of the same logical operation a no-op.  Status
changes go exclusively through
:meth:`coldstore.services.operation_store.OperationStore.transition`.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.core.state_machine import ARCHIVE_STATUSES, RETRIEVAL_STATUSES
from coldstore.db.base import Base

ArchiveOperationStatus = Enum(*ARCHIVE_STATUSES, name="archive_operation_status")
RetrievalOperationStatus = Enum(*RETRIEVAL_STATUSES, name="retrieval_operation_status")


class ArchiveOperation(Base):
    __tablename__ = "archive_operation"
    __table_args__ = (
        UniqueConstraint("operation_id", name="uq_archive_operation_operation_id"),
        Index("ix_archive_operation_tenant_status", "tenant_id", "status"),
        Index("ix_archive_operation_file", "file_id", "action", "cycle"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    operation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=False
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("file_record.id", ondelete="CASCADE"), nullable=False
    )
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("archive_rule.id", ondelete="SET NULL"), nullable=True
    )
    site_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False, default="archive")
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    source_path: Mapped[str] = mapped_column(Text, nullable=False)
    destination_path: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(ArchiveOperationStatus, nullable=False, default="Pending")

    # Approval (mutually exclusive with the veto fields)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vetoed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    veto_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    vetoed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Approval wait checkpoint; the auto-approval timer is measured from here.
    awaiting_since: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notification_delivered: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    notification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notification_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RetrievalOperation(Base):
    __tablename__ = "retrieval_operation"
    __table_args__ = (
        UniqueConstraint("operation_id", name="uq_retrieval_operation_operation_id"),
        Index("ix_retrieval_operation_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    operation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=False
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("file_record.id", ondelete="CASCADE"), nullable=False
    )
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source_path: Mapped[str] = mapped_column(Text, nullable=False)
    blob_key: Mapped[str] = mapped_column(Text, nullable=False)
    tier_at_request: Mapped[str | None] = mapped_column(String(16), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        RetrievalOperationStatus, nullable=False, default="Pending"
    )
    rehydration_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

"""AuditEntry ORM model: append-only lifecycle audit trail.

Every archive/retrieval state transition, veto resolution and scan start is
recorded here by :class:`~coldstore.services.audit.AuditService`, signed with
an HMAC-SHA256 over the immutable fields.  The service never issues UPDATE or
DELETE statements against this table.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.db.base import Base, JSONType


class AuditEntry(Base):
    __tablename__ = "audit_entry"
    __table_args__ = (
        Index("ix_audit_entry_tenant_timestamp", "tenant_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    msp_org_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=True
    )
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=True
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    hmac_signature: Mapped[str] = mapped_column(Text, nullable=False)

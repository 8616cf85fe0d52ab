"""FileRecord ORM model.

One row per file discovered by a tenant scan.  The scan ingestion upserts
these rows; the archive and retrieval pipelines flip ``archive_status`` and
``blob_tier`` on terminal transitions only, so a file is never observed as
partially archived.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.db.base import Base, JSONType

FileArchiveStatus = Enum(
    "Active", "AwaitingApproval", "Archived",
    name="file_archive_status",
)


class FileRecord(Base):
    __tablename__ = "file_record"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "site_id", "drive_id", "item_id", name="uq_file_record_identity"
        ),
        Index("ix_file_record_tenant_status", "tenant_id", "archive_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=False
    )
    site_id: Mapped[str] = mapped_column(String(255), nullable=False)
    drive_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)

    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    owner: Mapped[str | None] = mapped_column(String(320), nullable=True)
    compliance_tags: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    archive_status: Mapped[str] = mapped_column(
        FileArchiveStatus, nullable=False, default="Active"
    )
    blob_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

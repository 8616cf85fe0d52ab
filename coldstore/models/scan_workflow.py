"""ScanWorkflow ORM model.

Durable record of the per-tenant scan workflow instance.  ``instance_id`` is
derived from the tenant identity (``scan-{tenant_id}``) so there is exactly
one row per tenant; starting a scan is a compare-and-set on
``runtime_status`` which makes a second start while ``Pending``/``Running``
detectable instead of double-queued.  ``claim_id`` identifies the run that
owns a ``Running`` instance, so a worker whose instance was reclaimed cannot
finish the new run.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.db.base import Base

ScanRuntimeStatus = Enum(
    "Pending", "Running", "Completed", "Failed",
    name="scan_runtime_status",
)


class ScanWorkflow(Base):
    __tablename__ = "scan_workflow"
    __table_args__ = (
        UniqueConstraint("instance_id", name="uq_scan_workflow_instance_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=False
    )
    runtime_status: Mapped[str] = mapped_column(ScanRuntimeStatus, nullable=False)
    claim_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    files_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

"""MonthlySavingsSnapshot ORM model.

One row per (organisation, tenant-or-org, month).  Org-level rows have a
``NULL`` ``tenant_id``; because most databases treat ``NULL`` values as
distinct inside unique constraints, uniqueness is enforced on ``scope_key``
instead, which holds the tenant UUID string or the literal ``"org"``.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.db.base import Base, JSONType

ORG_SCOPE_KEY = "org"


class MonthlySavingsSnapshot(Base):
    __tablename__ = "monthly_savings_snapshot"
    __table_args__ = (
        UniqueConstraint(
            "msp_org_id", "scope_key", "month", name="uq_monthly_savings_snapshot_scope_month"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=True
    )
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False)
    # Calendar month in ``YYYY-MM`` form (UTC).
    month: Mapped[str] = mapped_column(String(7), nullable=False)

    total_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    stale_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    archived_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    archived_bytes_by_tier: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    achieved_savings: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False), nullable=False, default=0
    )
    potential_savings: Mapped[float] = mapped_column(
        Numeric(14, 2, asdecimal=False), nullable=False, default=0
    )

    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

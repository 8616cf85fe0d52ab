import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from coldstore.db.base import Base, JSONType

RuleType = Enum(
    "age", "size", "type", "owner", "exclusion",
    name="archive_rule_type",
)


class ArchiveRule(Base):
    """Tenant-scoped archive or exclusion rule.

    ``criteria`` holds the camelCase payload accepted by
    :func:`coldstore.schemas.criteria.parse_criteria`; it is validated on the
    way in and re-parsed on every evaluation.  The engine only ever reads
    active rules; tenant admins own their lifecycle.
    """

    __tablename__ = "archive_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("msp_organization.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_tenant.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_type: Mapped[str] = mapped_column(RuleType, nullable=False)
    criteria: Mapped[dict] = mapped_column(JSONType, nullable=False)
    # Ignored for exclusion rules.
    target_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="Cool")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

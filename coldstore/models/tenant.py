"""MSP organisation, client tenant and document-library site models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coldstore.db.base import Base

TENANT_CONNECTED = "Connected"

TenantStatus = Enum(
    "Pending", "Connected", "Disconnected", "Error",
    name="tenant_status",
)


class MspOrganization(Base):
    """A managed-service provider that owns one or more client tenants."""

    __tablename__ = "msp_organization"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    tenants: Mapped[list["ClientTenant"]] = relationship(
        "ClientTenant", back_populates="msp_org", cascade="all, delete-orphan"
    )


class ClientTenant(Base):
    """A client organisation whose document libraries are managed.

    ``auto_approval_days`` is tri-state: ``None`` never auto-approves, ``0``
    approves immediately, and ``1..365`` approves after that many days of
    waiting.  It is read when a timer fires, never captured on the operation.
    """

    __tablename__ = "client_tenant"
    __table_args__ = (
        UniqueConstraint("msp_org_id", "external_tenant_id", name="uq_client_tenant_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    msp_org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("msp_organization.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(TenantStatus, nullable=False, default="Pending")
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # IANA zone name; invalid or missing values fall back to UTC.
    scan_schedule_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auto_approval_days: Mapped[int | None] = mapped_column(Integer, nullable=True, default=7)
    review_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Incoming-webhook URL for approval cards; falls back to the global setting.
    notification_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    msp_org: Mapped["MspOrganization"] = relationship("MspOrganization", back_populates="tenants")
    sites: Mapped[list["Site"]] = relationship(
        "Site", back_populates="tenant", cascade="all, delete-orphan"
    )


class Site(Base):
    """A document-library site discovered in a tenant."""

    __tablename__ = "site"
    __table_args__ = (
        UniqueConstraint("tenant_id", "site_id", name="uq_site_tenant_site"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("client_tenant.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    site_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    storage_used_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    owner_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    tenant: Mapped["ClientTenant"] = relationship("ClientTenant", back_populates="sites")

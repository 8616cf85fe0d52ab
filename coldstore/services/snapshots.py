"""Monthly savings snapshots.

:func:`capture_snapshots` computes, for every ``Connected`` tenant of an
organisation, the current storage and savings figures and upserts the row
for the current month; it then upserts an org-level row (``tenant_id`` is
``NULL``, ``scope_key`` is ``"org"``) summing the tenants.  Running it any
number of times in a month converges on the latest figures; nothing
accumulates.

Figures per tenant:

* ``total_storage_bytes``: storage used by the tenant's selected sites.
* ``archived_storage_bytes`` / ``archived_bytes_by_tier``: sizes of archived
  files, by tier (a missing tier counts as ``Cool``).
* ``active_storage_bytes``: sizes of files not archived.
* ``stale_storage_bytes``: active files not accessed (or modified) for
  ``STALE_THRESHOLD_DAYS``.
* ``achieved_savings``: ``Σ tier_GB × (source − tier) × 12``.
* ``potential_savings``: ``stale_GB × (source − Cool) × 12 + achieved``.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import SUPPORTED_TIERS, settings
from coldstore.core import state_machine as sm
from coldstore.core.rates import bytes_to_gb, monthly_savings_per_gb
from coldstore.core.timeutil import month_key, utcnow
from coldstore.models.file_record import FileRecord
from coldstore.models.savings_snapshot import ORG_SCOPE_KEY, MonthlySavingsSnapshot
from coldstore.models.tenant import TENANT_CONNECTED, ClientTenant, MspOrganization, Site

logger = logging.getLogger(__name__)


@dataclass
class SnapshotFigures:
    total_storage_bytes: int = 0
    active_storage_bytes: int = 0
    stale_storage_bytes: int = 0
    archived_bytes_by_tier: dict[str, int] = field(
        default_factory=lambda: {tier: 0 for tier in SUPPORTED_TIERS}
    )

    @property
    def archived_storage_bytes(self) -> int:
        return sum(self.archived_bytes_by_tier.values())

    def _achieved(self) -> float:
        return sum(
            bytes_to_gb(size) * max(0.0, monthly_savings_per_gb(tier)) * 12
            for tier, size in self.archived_bytes_by_tier.items()
        )

    @property
    def achieved_savings(self) -> float:
        return round(self._achieved(), 2)

    @property
    def potential_savings(self) -> float:
        stale = bytes_to_gb(self.stale_storage_bytes) * max(0.0, monthly_savings_per_gb("Cool")) * 12
        return round(stale + self._achieved(), 2)

    def add(self, other: "SnapshotFigures") -> None:
        self.total_storage_bytes += other.total_storage_bytes
        self.active_storage_bytes += other.active_storage_bytes
        self.stale_storage_bytes += other.stale_storage_bytes
        for tier, size in other.archived_bytes_by_tier.items():
            self.archived_bytes_by_tier[tier] = self.archived_bytes_by_tier.get(tier, 0) + size


@dataclass
class SavingsTrends:
    months: list[MonthlySavingsSnapshot]
    current: MonthlySavingsSnapshot | None
    previous: MonthlySavingsSnapshot | None


async def tenant_figures(
    session: AsyncSession, tenant_id: uuid.UUID, *, now: datetime | None = None
) -> SnapshotFigures:
    now = now or utcnow()
    figures = SnapshotFigures()

    figures.total_storage_bytes = int(
        await session.scalar(
            select(func.coalesce(func.sum(Site.storage_used_bytes), 0)).where(
                Site.tenant_id == tenant_id, Site.is_selected.is_(True)
            )
        )
        or 0
    )

    archived = await session.execute(
        select(FileRecord.blob_tier, func.coalesce(func.sum(FileRecord.size_bytes), 0))
        .where(FileRecord.tenant_id == tenant_id, FileRecord.archive_status == sm.FILE_ARCHIVED)
        .group_by(FileRecord.blob_tier)
    )
    for tier, size in archived.all():
        tier = tier or "Cool"
        figures.archived_bytes_by_tier[tier] = figures.archived_bytes_by_tier.get(tier, 0) + int(size)

    not_archived = FileRecord.archive_status != sm.FILE_ARCHIVED
    figures.active_storage_bytes = int(
        await session.scalar(
            select(func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(
                FileRecord.tenant_id == tenant_id, not_archived
            )
        )
        or 0
    )

    cutoff = now - timedelta(days=settings.STALE_THRESHOLD_DAYS)
    figures.stale_storage_bytes = int(
        await session.scalar(
            select(func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(
                FileRecord.tenant_id == tenant_id,
                not_archived,
                or_(
                    FileRecord.last_accessed_at < cutoff,
                    and_(
                        FileRecord.last_accessed_at.is_(None),
                        FileRecord.last_modified_at < cutoff,
                    ),
                ),
            )
        )
        or 0
    )
    return figures


async def capture_snapshots(
    session: AsyncSession, org_id: uuid.UUID, *, now: datetime | None = None
) -> list[MonthlySavingsSnapshot]:
    """Upsert this month's snapshots for *org_id*.  Does not commit."""
    now = now or utcnow()
    month = month_key(now)
    tenants = (
        await session.execute(
            select(ClientTenant).where(
                ClientTenant.msp_org_id == org_id, ClientTenant.status == TENANT_CONNECTED
            )
        )
    ).scalars().all()

    rows: list[MonthlySavingsSnapshot] = []
    org_figures = SnapshotFigures()
    for tenant in tenants:
        figures = await tenant_figures(session, tenant.id, now=now)
        org_figures.add(figures)
        rows.append(await _upsert(session, org_id, tenant.id, month, figures, now))
    rows.append(await _upsert(session, org_id, None, month, org_figures, now))

    logger.info(
        json.dumps(
            {
                "event": "savings_snapshots_captured",
                "msp_org_id": str(org_id),
                "month": month,
                "tenants": len(tenants),
                "achieved_savings": org_figures.achieved_savings,
            }
        )
    )
    return rows


async def capture_all(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Capture snapshots for every organisation; returns the number of orgs."""
    org_ids = (await session.execute(select(MspOrganization.id))).scalars().all()
    for org_id in org_ids:
        await capture_snapshots(session, org_id, now=now)
    return len(org_ids)


async def get_trends(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    months: int = 12,
    tenant_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> SavingsTrends:
    """Return snapshots for the last *months* calendar months, current included, oldest first.

    Org-level rows unless *tenant_id* is given.
    """
    now = now or utcnow()
    current_month = month_key(now)
    scope_key = str(tenant_id) if tenant_id is not None else ORG_SCOPE_KEY
    result = await session.execute(
        select(MonthlySavingsSnapshot)
        .where(
            MonthlySavingsSnapshot.msp_org_id == org_id,
            MonthlySavingsSnapshot.scope_key == scope_key,
            MonthlySavingsSnapshot.month >= shift_month(current_month, -(months - 1)),
        )
        .order_by(MonthlySavingsSnapshot.month)
    )
    rows = list(result.scalars().all())
    by_month = {row.month: row for row in rows}
    return SavingsTrends(
        months=rows,
        current=by_month.get(current_month) or (rows[-1] if rows else None),
        previous=by_month.get(shift_month(current_month, -1)),
    )


def shift_month(month: str, delta: int) -> str:
    """``shift_month("2026-01", -1) == "2025-12"``."""
    year, mon = (int(part) for part in month.split("-"))
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


async def _upsert(
    session: AsyncSession,
    org_id: uuid.UUID,
    tenant_id: uuid.UUID | None,
    month: str,
    figures: SnapshotFigures,
    now: datetime,
) -> MonthlySavingsSnapshot:
    scope_key = str(tenant_id) if tenant_id is not None else ORG_SCOPE_KEY
    values = {
        "total_storage_bytes": figures.total_storage_bytes,
        "active_storage_bytes": figures.active_storage_bytes,
        "stale_storage_bytes": figures.stale_storage_bytes,
        "archived_storage_bytes": figures.archived_storage_bytes,
        "archived_bytes_by_tier": dict(figures.archived_bytes_by_tier),
        "achieved_savings": figures.achieved_savings,
        "potential_savings": figures.potential_savings,
        "captured_at": now,
    }
    row = await _get_snapshot(session, org_id, scope_key, month)
    if row is None:
        row = MonthlySavingsSnapshot(
            msp_org_id=org_id, tenant_id=tenant_id, scope_key=scope_key, month=month, **values
        )
        try:
            async with session.begin_nested():
                session.add(row)
            return row
        except IntegrityError:
            # A concurrent capture inserted the row first; update it instead.
            row = await _get_snapshot(session, org_id, scope_key, month)
    for name, value in values.items():
        setattr(row, name, value)
    await session.flush()
    return row


async def _get_snapshot(
    session: AsyncSession, org_id: uuid.UUID, scope_key: str, month: str
) -> MonthlySavingsSnapshot | None:
    result = await session.execute(
        select(MonthlySavingsSnapshot).where(
            MonthlySavingsSnapshot.msp_org_id == org_id,
            MonthlySavingsSnapshot.scope_key == scope_key,
            MonthlySavingsSnapshot.month == month,
        )
    )
    return result.scalar_one_or_none()

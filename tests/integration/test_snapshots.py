"""Integration tests for monthly savings snapshots.

Test coverage
-------------
- per-tenant figures: storage of selected sites, archived bytes by tier,
  active and stale bytes, achieved and potential savings
- org row sums connected tenants only
- capturing twice in a month updates the same rows
- ``get_trends`` window, ordering, current / previous month
- ``shift_month`` across year boundaries
"""
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from coldstore.core import state_machine as sm
from coldstore.models.savings_snapshot import ORG_SCOPE_KEY, MonthlySavingsSnapshot
from coldstore.models.tenant import ClientTenant
from coldstore.services import snapshots

from .conftest import NOW

GIB = 1024**3


async def _seed_files(make_file):
    await make_file(size_bytes=GIB, archive_status=sm.FILE_ARCHIVED, blob_tier="Cool")
    await make_file(size_bytes=2 * GIB, archive_status=sm.FILE_ARCHIVED, blob_tier="Archive")
    await make_file(size_bytes=GIB)  # stale
    await make_file(size_bytes=GIB, last_accessed_at=NOW - timedelta(days=3))


class TestCapture:
    async def test_tenant_and_org_rows(self, session, org, tenant, make_file):
        await _seed_files(make_file)

        rows = await snapshots.capture_snapshots(session, org.id, now=NOW)
        await session.commit()

        tenant_row, org_row = rows
        assert tenant_row.scope_key == str(tenant.id)
        assert tenant_row.month == "2026-06"
        assert tenant_row.total_storage_bytes == 10 * GIB
        assert tenant_row.archived_storage_bytes == 3 * GIB
        assert tenant_row.archived_bytes_by_tier == {"Cool": GIB, "Cold": 0, "Archive": 2 * GIB}
        assert tenant_row.active_storage_bytes == 2 * GIB
        assert tenant_row.stale_storage_bytes == GIB
        # Cool 1 GiB × 0.19 × 12 + Archive 2 GiB × 0.198 × 12
        assert tenant_row.achieved_savings == pytest.approx(7.03)
        assert tenant_row.potential_savings == pytest.approx(9.31)

        assert org_row.scope_key == ORG_SCOPE_KEY
        assert org_row.tenant_id is None
        assert org_row.achieved_savings == tenant_row.achieved_savings

    async def test_disconnected_tenants_excluded(self, session, org, tenant, make_file):
        other = ClientTenant(
            id=uuid.uuid4(),
            msp_org_id=org.id,
            external_tenant_id="fabrikam-ext",
            display_name="Fabrikam",
            status="Disconnected",
            created_at=NOW,
        )
        session.add(other)
        await session.commit()

        rows = await snapshots.capture_snapshots(session, org.id, now=NOW)

        assert [row.scope_key for row in rows] == [str(tenant.id), ORG_SCOPE_KEY]

    async def test_capture_is_idempotent_within_month(self, session, org, tenant, make_file):
        await snapshots.capture_snapshots(session, org.id, now=NOW)
        await session.commit()
        await _seed_files(make_file)

        rows = await snapshots.capture_snapshots(session, org.id, now=NOW + timedelta(days=3))
        await session.commit()

        count = await session.scalar(select(func.count()).select_from(MonthlySavingsSnapshot))
        assert count == 2
        assert rows[0].archived_storage_bytes == 3 * GIB

    async def test_capture_all(self, session, org, tenant):
        assert await snapshots.capture_all(session, now=NOW) == 1


class TestTrends:
    async def _row(self, session, org, month: str, achieved: float) -> None:
        session.add(
            MonthlySavingsSnapshot(
                msp_org_id=org.id,
                tenant_id=None,
                scope_key=ORG_SCOPE_KEY,
                month=month,
                archived_bytes_by_tier={},
                achieved_savings=achieved,
                potential_savings=achieved,
                captured_at=NOW,
            )
        )
        await session.commit()

    async def test_window_and_order(self, session, org):
        for month, achieved in [("2026-06", 30.0), ("2025-06", 1.0), ("2026-04", 10.0), ("2026-05", 20.0)]:
            await self._row(session, org, month, achieved)

        trends = await snapshots.get_trends(session, org.id, months=12, now=NOW)

        assert [row.month for row in trends.months] == ["2026-04", "2026-05", "2026-06"]
        assert trends.current.month == "2026-06"
        assert trends.previous.month == "2026-05"

    async def test_short_window(self, session, org):
        for month in ("2026-04", "2026-05", "2026-06"):
            await self._row(session, org, month, 1.0)

        trends = await snapshots.get_trends(session, org.id, months=2, now=NOW)
        assert [row.month for row in trends.months] == ["2026-05", "2026-06"]

    async def test_no_current_month_falls_back_to_latest(self, session, org):
        await self._row(session, org, "2026-04", 5.0)

        trends = await snapshots.get_trends(session, org.id, now=NOW)

        assert trends.current.month == "2026-04"
        assert trends.previous is None

    async def test_tenant_scope(self, session, org, tenant):
        await snapshots.capture_snapshots(session, org.id, now=NOW)
        await session.commit()

        trends = await snapshots.get_trends(session, org.id, tenant_id=tenant.id, now=NOW)
        assert [row.scope_key for row in trends.months] == [str(tenant.id)]


@pytest.mark.parametrize(
    "month, delta, expected",
    [("2026-01", -1, "2025-12"), ("2026-06", -11, "2025-07"), ("2025-12", 1, "2026-01"), ("2026-03", 0, "2026-03")],
)
def test_shift_month(month, delta, expected):
    assert snapshots.shift_month(month, delta) == expected

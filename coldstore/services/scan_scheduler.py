"""ScanScheduler: when a tenant is scanned, and only once at a time.

A tenant is due for a scan when

* it is ``Connected``,
* the current hour in the tenant's ``scan_schedule_timezone`` (UTC when
  unset or not a valid IANA name) equals ``SCAN_TARGET_HOUR``, and
* its last scan finished more than ``SCAN_COOLDOWN_HOURS`` ago.

Both conditions are re-evaluated on every scheduler tick; nothing is cached.

Each tenant owns exactly one :class:`~coldstore.models.scan_workflow.ScanWorkflow`
row, keyed ``scan-{tenant_id}``.  Starting a scan is a compare-and-set from
``Completed``/``Failed`` (or no row yet) to ``Pending``, so a second start
while an instance is ``Pending`` or ``Running`` is detected and skipped
rather than queued twice.  An instance that has not finished within
``STALE_SCAN_HOURS`` is considered abandoned and may be restarted.

The worker that moves an instance to ``Running`` receives a claim id from
:func:`mark_running` and presents it when completing or failing the scan.
A run whose instance was reclaimed in the meantime holds a stale claim, so
its late result is ignored instead of finishing the new run.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import settings
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.models.scan_workflow import ScanWorkflow
from coldstore.models.tenant import TENANT_CONNECTED, ClientTenant

logger = logging.getLogger(__name__)

SCAN_PENDING = "Pending"
SCAN_RUNNING = "Running"
SCAN_COMPLETED = "Completed"
SCAN_FAILED = "Failed"

STALE_SCAN_HOURS = 12

scans_total = Counter(
    "coldstore_scans_total",
    "Tenant scan workflow events",
    ["outcome"],  # started | skipped | completed | failed
)


def instance_key(tenant_id: uuid.UUID | str) -> str:
    return f"scan-{tenant_id}"


def tenant_zone(tenant: ClientTenant) -> ZoneInfo:
    name = tenant.scan_schedule_timezone
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Invalid scan timezone %r for tenant %s; using UTC", name, tenant.id)
    return ZoneInfo("UTC")


def is_due(tenant: ClientTenant, now: datetime | None = None) -> bool:
    now = as_utc(now) or utcnow()
    if tenant.status != TENANT_CONNECTED:
        return False
    if now.astimezone(tenant_zone(tenant)).hour != settings.SCAN_TARGET_HOUR:
        return False
    last = as_utc(tenant.last_scanned_at)
    if last is not None and now - last < timedelta(hours=settings.SCAN_COOLDOWN_HOURS):
        return False
    return True


async def due_tenants(session: AsyncSession, now: datetime | None = None) -> list[ClientTenant]:
    result = await session.execute(
        select(ClientTenant)
        .where(ClientTenant.status == TENANT_CONNECTED)
        .order_by(ClientTenant.created_at, ClientTenant.id)
    )
    return [tenant for tenant in result.scalars().all() if is_due(tenant, now)]


async def start_scan(
    session: AsyncSession, tenant_id: uuid.UUID, *, now: datetime | None = None
) -> ScanWorkflow | None:
    """Claim the tenant's scan instance; ``None`` if one is already in flight."""
    now = now or utcnow()
    key = instance_key(tenant_id)
    existing = await _get(session, key)

    if existing is None:
        workflow = ScanWorkflow(
            instance_id=key,
            tenant_id=tenant_id,
            runtime_status=SCAN_PENDING,
            started_at=now,
        )
        try:
            async with session.begin_nested():
                session.add(workflow)
        except IntegrityError:
            _log_skip(tenant_id, key)
            return None
        scans_total.labels(outcome="started").inc()
        _log_event("scan_started", tenant_id, key)
        return workflow

    stale_before = now - timedelta(hours=STALE_SCAN_HOURS)
    result = await session.execute(
        update(ScanWorkflow)
        .where(
            ScanWorkflow.instance_id == key,
            or_(
                ScanWorkflow.runtime_status.in_((SCAN_COMPLETED, SCAN_FAILED)),
                ScanWorkflow.started_at < stale_before,
            ),
        )
        .values(
            runtime_status=SCAN_PENDING,
            claim_id=None,
            started_at=now,
            finished_at=None,
            files_scanned=0,
            error_message=None,
        )
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        _log_skip(tenant_id, key)
        return None
    scans_total.labels(outcome="started").inc()
    _log_event("scan_started", tenant_id, key)
    return await _get(session, key, refresh=True)


async def mark_running(session: AsyncSession, instance_id: str) -> uuid.UUID | None:
    """Move a ``Pending`` instance to ``Running``.

    Returns the claim id the caller must pass to :func:`complete_scan` and
    :func:`fail_scan`, or ``None`` if the instance was not ``Pending``.
    """
    claim_id = uuid.uuid4()
    result = await session.execute(
        update(ScanWorkflow)
        .where(ScanWorkflow.instance_id == instance_id, ScanWorkflow.runtime_status == SCAN_PENDING)
        .values(runtime_status=SCAN_RUNNING, claim_id=claim_id)
    )
    return claim_id if result.rowcount == 1 else None


async def complete_scan(
    session: AsyncSession,
    instance_id: str,
    files_scanned: int,
    *,
    claim_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> bool:
    """Record a finished scan and stamp the tenant's ``last_scanned_at``.

    With *claim_id* the instance is only completed if it is still the run
    that :func:`mark_running` issued that id to.
    """
    now = now or utcnow()
    workflow = await _get(session, instance_id)
    if workflow is None:
        return False
    stmt = update(ScanWorkflow).where(
        ScanWorkflow.instance_id == instance_id, ScanWorkflow.runtime_status == SCAN_RUNNING
    )
    if claim_id is not None:
        stmt = stmt.where(ScanWorkflow.claim_id == claim_id)
    result = await session.execute(
        stmt.values(runtime_status=SCAN_COMPLETED, finished_at=now, files_scanned=files_scanned)
    )
    if result.rowcount != 1:
        _log_event("scan_completion_skipped", workflow.tenant_id, instance_id)
        return False
    await session.execute(
        update(ClientTenant).where(ClientTenant.id == workflow.tenant_id).values(last_scanned_at=now)
    )
    scans_total.labels(outcome="completed").inc()
    _log_event("scan_completed", workflow.tenant_id, instance_id, files_scanned=files_scanned)
    return True


async def fail_scan(
    session: AsyncSession,
    instance_id: str,
    error: str,
    *,
    claim_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> bool:
    stmt = update(ScanWorkflow).where(
        ScanWorkflow.instance_id == instance_id,
        ScanWorkflow.runtime_status.in_((SCAN_PENDING, SCAN_RUNNING)),
    )
    if claim_id is not None:
        stmt = stmt.where(ScanWorkflow.claim_id == claim_id)
    result = await session.execute(
        stmt.values(runtime_status=SCAN_FAILED, finished_at=now or utcnow(), error_message=error[:2000])
    )
    if result.rowcount == 1:
        scans_total.labels(outcome="failed").inc()
        logger.error(json.dumps({"event": "scan_failed", "instance_id": instance_id, "error": error}))
        return True
    return False


async def _get(session: AsyncSession, instance_id: str, *, refresh: bool = False) -> ScanWorkflow | None:
    stmt = select(ScanWorkflow).where(ScanWorkflow.instance_id == instance_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


def _log_skip(tenant_id: uuid.UUID, key: str) -> None:
    scans_total.labels(outcome="skipped").inc()
    _log_event("scan_skipped_in_flight", tenant_id, key)


def _log_event(event: str, tenant_id: uuid.UUID, key: str, **extra: object) -> None:
    logger.info(
        json.dumps({"event": event, "tenant_id": str(tenant_id), "instance_id": key, **extra})
    )

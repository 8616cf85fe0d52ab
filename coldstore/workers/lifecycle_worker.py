"""Celery lifecycle worker: scans, approval timers, transfers, snapshots.

Every durable workflow in ColdStore is a set of database checkpoints driven
forward by the tasks in this module.  No task waits in memory for a human or
for the tiered store; a task either finishes a step and checkpoints it, or
schedules the next tick.

Beat tasks (see :mod:`coldstore.celery_app`):

* :func:`scan_scheduler_tick`: claims a scan instance for every due tenant
  and fans out :func:`run_tenant_scan`.
* :func:`sweep_approval_timers`: expires auto-approval timers, fails
  abandoned ``Archiving`` transfers and enqueues
  :func:`archive_approved_operations` in batches of ``ARCHIVE_BATCH_SIZE``.
* :func:`sweep_retrievals`: restarts retrievals that never started, re-polls
  rehydrations whose poll chain stopped and fails stale transfers.
* :func:`capture_savings_snapshots`: upserts this month's savings rows.

On-demand tasks:

* :func:`start_retrieval`: begins a retrieval; when the object needs
  rehydrating it schedules :func:`poll_rehydration`.
* :func:`poll_rehydration`: re-schedules itself every
  ``REHYDRATION_POLL_SECONDS`` while the operation is ``Rehydrating``.

**Retry policy**

:class:`~coldstore.core.errors.TransientIOError` that escapes a component's
own bounded retries, and unexpected errors such as a database blip, retry
the whole task with exponential back-off (2 s, 4 s, 8 s).  Every task is
idempotent: status transitions are compare-and-set, so a redelivered or
retried task never transfers a file twice.

Database access uses :func:`asyncio.run` to drive
:data:`~coldstore.db.session.AsyncSessionLocal` from the synchronous worker.
Every run gets a new event loop and asyncpg connections are bound to the
loop that opened them, so :func:`_run_async` disposes the engine's pool
before the loop closes; the next task opens fresh connections.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Awaitable, TypeVar

from sqlalchemy import select

from coldstore.celery_app import celery_app
from coldstore.config import settings
from coldstore.core import state_machine as sm
from coldstore.core.errors import TransientIOError
from coldstore.db.session import AsyncSessionLocal, engine
from coldstore.models.tenant import TENANT_CONNECTED, ClientTenant
from coldstore.services import scan_scheduler, snapshots
from coldstore.services.approval import ApprovalWorkflow
from coldstore.services.archive_pipeline import ArchivePipeline
from coldstore.services.file_source import GraphFileSource
from coldstore.services.graph_auth import ClientCredentialsTokenProvider
from coldstore.services.retrieval_pipeline import RetrievalOutcome, RetrievalPipeline, RetrievalRecovery
from coldstore.services.tenant_scan import TenantScanner
from coldstore.services.tiered_store import S3TieredStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum number of automatic retries for transient failures.
_MAX_RETRIES: int = 3

#: Base retry countdown in seconds; doubles on each successive attempt.
_RETRY_BASE_SECONDS: int = 2


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def _build_file_source() -> GraphFileSource:
    return GraphFileSource(token_provider=ClientCredentialsTokenProvider())


def _build_store() -> S3TieredStore:
    return S3TieredStore()


def _build_archive_pipeline() -> ArchivePipeline:
    return ArchivePipeline(source=_build_file_source(), store=_build_store())


def _build_retrieval_pipeline() -> RetrievalPipeline:
    return RetrievalPipeline(source=_build_file_source(), store=_build_store())


def _build_scanner() -> TenantScanner:
    return TenantScanner(source=_build_file_source(), approval=ApprovalWorkflow())


def _countdown(task: Any) -> int:
    return _RETRY_BASE_SECONDS * (2 ** task.request.retries)


def _chunks(ids: list[str], size: int) -> list[list[str]]:
    return [ids[i : i + size] for i in range(0, len(ids), size)]


def _run_async(body: Awaitable[T]) -> T:
    """Run *body* in a fresh event loop and release its pooled connections."""

    async def _main() -> T:
        try:
            return await body
        finally:
            await engine.dispose()

    return asyncio.run(_main())


# ---------------------------------------------------------------------------
# Async bodies
# ---------------------------------------------------------------------------


async def _connected_tenant_ids(session) -> list[uuid.UUID]:
    result = await session.execute(
        select(ClientTenant.id).where(ClientTenant.status == TENANT_CONNECTED)
    )
    return list(result.scalars().all())


async def _start_due_scans() -> list[str]:
    started: list[str] = []
    async with AsyncSessionLocal() as session:
        for tenant in await scan_scheduler.due_tenants(session):
            if await scan_scheduler.start_scan(session, tenant.id) is not None:
                started.append(str(tenant.id))
        await session.commit()
    return started


async def _run_scan(tenant_id: str, *, reclaim: bool = False) -> dict[str, Any]:
    tid = uuid.UUID(tenant_id)
    key = scan_scheduler.instance_key(tid)
    scanner = _build_scanner()
    async with AsyncSessionLocal() as session:
        # A retried task finds its own instance Failed and claims it again.
        if reclaim and await scan_scheduler.start_scan(session, tid) is None:
            await session.rollback()
            return {"tenant_id": tenant_id, "status": "skipped"}
        claim_id = await scan_scheduler.mark_running(session, key)
        if claim_id is None:
            await session.rollback()
            return {"tenant_id": tenant_id, "status": "skipped"}
        await session.commit()

        try:
            summary = await scanner.run(session, tid)
            completed = await scan_scheduler.complete_scan(
                session, key, summary.files_scanned, claim_id=claim_id
            )
            await session.commit()
        except Exception as exc:
            await session.rollback()
            await scan_scheduler.fail_scan(session, key, str(exc), claim_id=claim_id)
            await session.commit()
            raise

    return {
        "tenant_id": tenant_id,
        # A reclaimed instance belongs to a newer run.
        "status": scan_scheduler.SCAN_COMPLETED if completed else "superseded",
        "files_scanned": summary.files_scanned,
        "files_matched": summary.files_matched,
        "operations_proposed": summary.operations_proposed,
    }


async def _sweep() -> dict[str, Any]:
    approval = ApprovalWorkflow()
    pipeline = _build_archive_pipeline()
    auto_approved = 0
    batches: list[list[str]] = []
    async with AsyncSessionLocal() as session:
        tenant_ids = await _connected_tenant_ids(session)
        for tenant_id in tenant_ids:
            auto_approved += len(await approval.expire_timers(session, tenant_id))
            await session.commit()

        stale = await pipeline.recover_stale(
            session, older_than=timedelta(minutes=settings.TRANSFER_STALE_MINUTES)
        )

        for tenant_id in tenant_ids:
            ids = await pipeline.approved_operation_ids(session, tenant_id)
            batches.extend(_chunks(ids, settings.ARCHIVE_BATCH_SIZE))

    return {
        "tenants": len(tenant_ids),
        "auto_approved": auto_approved,
        "stale_failed": len(stale),
        "batches": batches,
    }


async def _archive_batch(operation_ids: list[str]) -> dict[str, int]:
    pipeline = _build_archive_pipeline()
    outcomes = await pipeline.execute_batch(AsyncSessionLocal, operation_ids)
    executed = [o for o in outcomes if o.executed]
    return {
        "requested": len(operation_ids),
        "executed": len(executed),
        "archived": sum(1 for o in executed if o.status == sm.ARCHIVED),
        "failed": sum(1 for o in executed if o.status == sm.FAILED),
    }


async def _start_retrieval(operation_id: str) -> RetrievalOutcome:
    pipeline = _build_retrieval_pipeline()
    async with AsyncSessionLocal() as session:
        return await pipeline.start(session, operation_id)


async def _poll_rehydration(operation_id: str) -> RetrievalOutcome:
    pipeline = _build_retrieval_pipeline()
    async with AsyncSessionLocal() as session:
        return await pipeline.poll(session, operation_id)


async def _recover_retrievals() -> RetrievalRecovery:
    pipeline = _build_retrieval_pipeline()
    async with AsyncSessionLocal() as session:
        return await pipeline.recover(
            session,
            stale_after=timedelta(minutes=settings.TRANSFER_STALE_MINUTES),
            # A live poll chain stamps the row every REHYDRATION_POLL_SECONDS.
            poll_after=timedelta(seconds=2 * settings.REHYDRATION_POLL_SECONDS),
        )


async def _capture_snapshots() -> int:
    async with AsyncSessionLocal() as session:
        orgs = await snapshots.capture_all(session)
        await session.commit()
    return orgs


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.scan_scheduler_tick",
)
def scan_scheduler_tick() -> dict[str, Any]:
    """Celery beat task: start a scan for every tenant that is due.

    Tenants whose instance is still ``Pending`` or ``Running`` are skipped
    by :func:`~coldstore.services.scan_scheduler.start_scan`.
    """
    started = _run_async(_start_due_scans())
    for tenant_id in started:
        run_tenant_scan.delay(tenant_id)
    logger.info("scan_scheduler_tick: started %d tenant scans", len(started))
    return {"started": started}


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.run_tenant_scan",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_tenant_scan(self: Any, tenant_id: str) -> dict[str, Any]:
    """Celery task: run the claimed scan instance of one tenant.

    The instance is recorded ``Failed`` on any error; a transient error
    then retries the task, which claims the instance afresh.
    """
    try:
        return _run_async(_run_scan(tenant_id, reclaim=self.request.retries > 0))
    except TransientIOError as exc:
        countdown = _countdown(self)
        logger.warning(
            "run_tenant_scan: transient error, retry %d/%d in %ds: tenant_id=%s error=%r",
            self.request.retries + 1,
            _MAX_RETRIES,
            countdown,
            tenant_id,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.sweep_approval_timers",
    bind=True,
    max_retries=_MAX_RETRIES,
)
def sweep_approval_timers(self: Any) -> dict[str, Any]:
    """Celery beat task: expire approval timers and enqueue archive batches.

    Auto-approval settings are read from each tenant row at sweep time, so a
    changed ``auto_approval_days`` applies to operations already waiting.
    """
    try:
        result = _run_async(_sweep())
    except Exception as exc:
        countdown = _countdown(self)
        logger.error("sweep_approval_timers: error, retry in %ds: %r", countdown, exc)
        raise self.retry(exc=exc, countdown=countdown)

    batches = result.pop("batches")
    for batch in batches:
        archive_approved_operations.delay(batch)
    result["batches_enqueued"] = len(batches)
    logger.info(
        "sweep_approval_timers: tenants=%d auto_approved=%d stale_failed=%d batches=%d",
        result["tenants"],
        result["auto_approved"],
        result["stale_failed"],
        len(batches),
    )
    return result


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.archive_approved_operations",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def archive_approved_operations(self: Any, operation_ids: list[str]) -> dict[str, int]:
    """Celery task: archive one batch of ``Approved`` operations.

    Transfer failures are recorded on the operations themselves and do not
    fail the task.  Only infrastructure errors retry it; operations already
    claimed by the first attempt are skipped by the retry.
    """
    try:
        result = _run_async(_archive_batch(operation_ids))
    except Exception as exc:
        countdown = _countdown(self)
        logger.error(
            "archive_approved_operations: error, retry %d/%d in %ds: %r",
            self.request.retries + 1,
            _MAX_RETRIES,
            countdown,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)
    logger.info("archive_approved_operations: %s", result)
    return result


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.start_retrieval",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def start_retrieval(self: Any, operation_id: str) -> dict[str, Any]:
    """Celery task: start a ``Pending`` retrieval."""
    try:
        outcome = _run_async(_start_retrieval(operation_id))
    except Exception as exc:
        countdown = _countdown(self)
        logger.error("start_retrieval: error, retry in %ds: operation_id=%s error=%r", countdown, operation_id, exc)
        raise self.retry(exc=exc, countdown=countdown)

    if outcome.awaiting_rehydration:
        poll_rehydration.apply_async(args=[operation_id], countdown=settings.REHYDRATION_POLL_SECONDS)
    return asdict(outcome)


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.poll_rehydration",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def poll_rehydration(self: Any, operation_id: str) -> dict[str, Any]:
    """Celery task: check a ``Rehydrating`` retrieval and re-schedule until done."""
    try:
        outcome = _run_async(_poll_rehydration(operation_id))
    except Exception as exc:
        countdown = _countdown(self)
        logger.error("poll_rehydration: error, retry in %ds: operation_id=%s error=%r", countdown, operation_id, exc)
        raise self.retry(exc=exc, countdown=countdown)

    if outcome.awaiting_rehydration:
        poll_rehydration.apply_async(args=[operation_id], countdown=settings.REHYDRATION_POLL_SECONDS)
    return asdict(outcome)


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.sweep_retrievals",
    bind=True,
    max_retries=_MAX_RETRIES,
)
def sweep_retrievals(self: Any) -> dict[str, int]:
    """Celery beat task: resume retrievals whose start or poll message was lost.

    Stale ``Retrieving`` transfers are failed by the sweep itself.
    """
    try:
        recovery = _run_async(_recover_retrievals())
    except Exception as exc:
        countdown = _countdown(self)
        logger.error("sweep_retrievals: error, retry in %ds: %r", countdown, exc)
        raise self.retry(exc=exc, countdown=countdown)

    for operation_id in recovery.to_start:
        start_retrieval.delay(operation_id)
    for operation_id in recovery.to_poll:
        poll_rehydration.delay(operation_id)
    logger.info(
        "sweep_retrievals: restarted=%d repolled=%d failed=%d",
        len(recovery.to_start),
        len(recovery.to_poll),
        len(recovery.failed),
    )
    return {
        "restarted": len(recovery.to_start),
        "repolled": len(recovery.to_poll),
        "failed": len(recovery.failed),
    }


@celery_app.task(
    name="coldstore.workers.lifecycle_worker.capture_savings_snapshots",
)
def capture_savings_snapshots() -> dict[str, Any]:
    """Celery beat task: upsert this month's savings snapshots for every organisation."""
    orgs = _run_async(_capture_snapshots())
    logger.info("capture_savings_snapshots: captured %d organisations", orgs)
    return {"organisations": orgs}

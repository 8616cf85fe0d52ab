"""ArchivePipeline: at-most-once physical transfer of approved files.

:meth:`ArchivePipeline.execute` moves one ``Approved`` archive operation
through these steps, each wrapped in a named OpenTelemetry span:

1. **claim**: compare-and-set ``Approved → Archiving`` and commit.  A caller
   that loses the race returns without touching the file, so a transfer runs
   at most once per operation id however often it is enqueued.
2. **download**: read the file bytes from the :class:`FileSource`.
3. **upload**: ``put_object`` into the tiered store under
   ``tenant-{tenant_id}/{site_id}/{file_path}`` with the original location
   recorded as object metadata.
4. **verify**: the stored object's size and SHA-256 must match what was
   downloaded; on mismatch the object is deleted and the step fails.
5. **commit**: ``Archiving → Archived`` and the file record flips to
   ``Archived`` in the same transaction.

Transient I/O is retried inside the download / upload / verify steps with
bounded exponential back-off.  Any step failure records ``Failed`` with the
(truncated) error and returns the file to ``Active``.  An unsupported target
tier fails the operation immediately without a transfer.

The pipeline commits its own checkpoints: the claim is committed before any
I/O so that a worker crash leaves a visible ``Archiving`` row, which
:meth:`ArchivePipeline.recover_stale` later fails.  Between steps the
worker refreshes ``updated_at`` so a live transfer is not mistaken for a
crashed one.  If the operation has nevertheless left ``Archiving`` (the
heartbeat or the commit compare-and-set finds it moved), the transfer is
abandoned: the uploaded object is deleted and the file record is not touched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coldstore.config import SUPPORTED_TIERS, settings
from coldstore.core import state_machine as sm
from coldstore.core.errors import ColdStoreError
from coldstore.core.retry import retry_transient
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant
from coldstore.services.approval import set_file_status
from coldstore.services.file_source import FileRef, FileSource
from coldstore.services.operation_store import OperationStore
from coldstore.services.tiered_store import TieredObjectStore, blob_key, sha256_hex

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "coldstore.archive_pipeline",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

ARCHIVE_PIPELINE_ACTOR = "System:ArchivePipeline"

archive_transfers_total = Counter(
    "coldstore_archive_transfers_total",
    "Archive transfer outcomes",
    ["outcome"],  # archived | failed | skipped
)


class TransferError(ColdStoreError):
    """Raised when a pipeline step fails.

    Attributes:
        step_name: The failing step (``"download"``, ``"upload"``, ...).
        original: The underlying exception.
    """

    def __init__(self, step_name: str, original: Exception) -> None:
        super().__init__(f"{step_name} failed: {original}")
        self.step_name = step_name
        self.original = original


class IntegrityMismatchError(ColdStoreError):
    """Raised when a stored object does not match the downloaded bytes."""


@dataclass(frozen=True)
class ArchiveOutcome:
    operation_id: str
    status: str
    executed: bool
    error_message: str | None = None


class ArchivePipeline:
    """Execute approved archive operations.

    Args:
        source: Where files are downloaded from.
        store: Tiered object store the files are written to.
        operations: Archive operation store.
        max_attempts: Attempts per I/O step.  Defaults to
            ``settings.TRANSFER_MAX_ATTEMPTS``.
        retry_base_delay: Back-off base.  Defaults to
            ``settings.TRANSFER_RETRY_BASE_SECONDS``.
        sleep: Injectable sleep coroutine for tests.
    """

    def __init__(
        self,
        source: FileSource,
        store: TieredObjectStore,
        operations: OperationStore | None = None,
        *,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._ops = operations or OperationStore()
        self._max_attempts = max_attempts or settings.TRANSFER_MAX_ATTEMPTS
        self._retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.TRANSFER_RETRY_BASE_SECONDS
        )
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    async def execute(self, session: AsyncSession, operation_id: str) -> ArchiveOutcome:
        """Run one operation to a terminal state.

        Repeating the call after the operation is terminal (or while another
        worker holds it in ``Archiving``) returns the stored status with
        ``executed=False``.
        """
        op = await self._ops.require(session, operation_id)
        if op.status != sm.APPROVED:
            archive_transfers_total.labels(outcome="skipped").inc()
            return ArchiveOutcome(operation_id, op.status, executed=False, error_message=op.error_message)

        if op.target_tier not in SUPPORTED_TIERS:
            await self._fail(
                session, op, sm.APPROVED, f"Unsupported target tier '{op.target_tier}'"
            )
            await session.commit()
            return ArchiveOutcome(operation_id, sm.FAILED, executed=False, error_message=op.error_message)

        file = await session.get(FileRecord, op.file_id)
        tenant = await session.get(ClientTenant, op.tenant_id)
        key = blob_key(op.tenant_id, op.site_id, file.file_path)

        claimed = await self._ops.transition(
            session,
            operation_id,
            expected=(sm.APPROVED,),
            target=sm.ARCHIVING,
            actor=ARCHIVE_PIPELINE_ACTOR,
            destination_path=key,
        )
        if not claimed:
            current = await self._ops.get(session, operation_id, refresh=True)
            archive_transfers_total.labels(outcome="skipped").inc()
            return ArchiveOutcome(operation_id, current.status, executed=False)
        await session.commit()

        ref = FileRef(
            tenant_external_id=tenant.external_tenant_id,
            site_id=file.site_id,
            drive_id=file.drive_id,
            item_id=file.item_id,
            file_path=file.file_path,
        )
        start_ms = int(time.monotonic() * 1000)
        with tracer.start_as_current_span("coldstore.archive", kind=trace.SpanKind.INTERNAL) as root_span:
            root_span.set_attribute("operation.id", operation_id)
            root_span.set_attribute("operation.tenant_id", str(op.tenant_id))
            root_span.set_attribute("operation.target_tier", op.target_tier)
            try:
                data = await self._run_step(
                    operation_id, "download", lambda: self._source.download_file(ref)
                )
                if not await self._heartbeat(session, operation_id):
                    return await self._superseded(session, operation_id)
                await self._run_step(
                    operation_id,
                    "upload",
                    lambda: self._store.put_object(key, data, op.target_tier, _object_metadata(op, file)),
                )
                if not await self._heartbeat(session, operation_id):
                    return await self._superseded(session, operation_id, key)
                await self._run_step(operation_id, "verify", lambda: self._verify(key, data))
            except TransferError as exc:
                root_span.record_exception(exc.original)
                root_span.set_status(Status(StatusCode.ERROR, str(exc)))
                root_span.set_attribute("operation.failed_step", exc.step_name)
                await self._fail(session, op, sm.ARCHIVING, str(exc))
                await session.commit()
                logger.error(
                    json.dumps(
                        {
                            "event": "archive_failed",
                            "operation_id": operation_id,
                            "tenant_id": str(op.tenant_id),
                            "step": exc.step_name,
                            "error": str(exc.original),
                        }
                    )
                )
                return ArchiveOutcome(operation_id, sm.FAILED, executed=True, error_message=str(exc))

            with tracer.start_as_current_span("coldstore.commit"):
                committed = await self._ops.transition(
                    session,
                    operation_id,
                    expected=(sm.ARCHIVING,),
                    target=sm.ARCHIVED,
                    actor=ARCHIVE_PIPELINE_ACTOR,
                    details={
                        "sourcePath": op.source_path,
                        "destinationBlob": key,
                        "fileSize": len(data),
                        "targetTier": op.target_tier,
                        "approvedBy": op.approved_by,
                    },
                )
                if not committed:
                    await session.commit()
                    return await self._superseded(session, operation_id, key)
                await session.execute(
                    update(FileRecord)
                    .where(FileRecord.id == op.file_id)
                    .values(archive_status=sm.FILE_ARCHIVED, blob_tier=op.target_tier)
                )
                await session.commit()
            root_span.set_attribute("operation.duration_ms", int(time.monotonic() * 1000) - start_ms)

        archive_transfers_total.labels(outcome="archived").inc()
        logger.info(
            json.dumps(
                {
                    "event": "archive_completed",
                    "operation_id": operation_id,
                    "tenant_id": str(op.tenant_id),
                    "blob_key": key,
                    "size_bytes": len(data),
                    "tier": op.target_tier,
                }
            )
        )
        return ArchiveOutcome(operation_id, sm.ARCHIVED, executed=True)

    async def execute_batch(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        operation_ids: Iterable[str],
        *,
        concurrency: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[ArchiveOutcome]:
        """Execute many operations, at most *concurrency* transfers at a time.

        Each operation gets its own session.  Once *cancel* is set no new
        transfer starts; transfers already running finish normally.  Skipped
        operations are absent from the result.
        """
        semaphore = asyncio.Semaphore(concurrency or settings.TRANSFER_CONCURRENCY)

        async def _one(operation_id: str) -> ArchiveOutcome | None:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    return None
                async with session_factory() as session:
                    return await self.execute(session, operation_id)

        results = await asyncio.gather(*(_one(op_id) for op_id in operation_ids))
        return [r for r in results if r is not None]

    async def recover_stale(
        self, session: AsyncSession, *, older_than: timedelta, now: datetime | None = None
    ) -> list[str]:
        """Fail ``Archiving`` operations whose worker stopped checkpointing.

        Returns the ids that were failed.  Commits.
        """
        cutoff = (now or utcnow()) - older_than
        result = await session.execute(
            select(ArchiveOperation).where(ArchiveOperation.status == sm.ARCHIVING)
        )
        stale = [
            op for op in result.scalars().all()
            if op.updated_at is None or as_utc(op.updated_at) < cutoff
        ]
        failed: list[str] = []
        for op in stale:
            if await self._fail(session, op, sm.ARCHIVING, "Transfer interrupted before completion"):
                failed.append(op.operation_id)
        await session.commit()
        if failed:
            logger.warning(json.dumps({"event": "stale_archives_failed", "count": len(failed)}))
        return failed

    async def approved_operation_ids(
        self, session: AsyncSession, tenant_id: uuid.UUID, *, limit: int | None = None
    ) -> list[str]:
        ops = await self._ops.list_by_status(session, tenant_id, (sm.APPROVED,), limit=limit)
        return [op.operation_id for op in ops]

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_step(self, operation_id: str, step_name: str, func: Callable[[], Awaitable[Any]]) -> Any:
        with tracer.start_as_current_span(f"coldstore.{step_name}") as span:
            span.set_attribute("step.name", step_name)
            span.set_attribute("operation.id", operation_id)
            try:
                return await retry_transient(
                    func,
                    attempts=self._max_attempts,
                    base_delay=self._retry_base_delay,
                    step=step_name,
                    **self._retry_kwargs,
                )
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise TransferError(step_name, exc) from exc

    async def _heartbeat(self, session: AsyncSession, operation_id: str) -> bool:
        alive = await self._ops.touch(session, operation_id, expected=(sm.ARCHIVING,))
        await session.commit()
        return alive

    async def _superseded(
        self, session: AsyncSession, operation_id: str, key: str | None = None
    ) -> ArchiveOutcome:
        """Abandon a transfer whose operation left ``Archiving`` under it.

        The file record belongs to whoever moved the operation, so it is left
        alone; an object this transfer uploaded is removed.
        """
        if key is not None:
            await self._store.delete_object(key)
        current = await self._ops.get(session, operation_id, refresh=True)
        archive_transfers_total.labels(outcome="skipped").inc()
        logger.warning(
            json.dumps(
                {
                    "event": "archive_superseded",
                    "operation_id": operation_id,
                    "status": current.status,
                    "blob_key": key,
                }
            )
        )
        return ArchiveOutcome(
            operation_id, current.status, executed=False, error_message=current.error_message
        )

    async def _verify(self, key: str, data: bytes) -> None:
        info = await self._store.stat_object(key)
        expected_sha = sha256_hex(data)
        if info is not None and info.size_bytes == len(data) and info.sha256 == expected_sha:
            return
        await self._store.delete_object(key)
        if info is None:
            raise IntegrityMismatchError(f"Object {key} not found after upload")
        raise IntegrityMismatchError(
            f"Object {key} does not match source: size {info.size_bytes} != {len(data)} "
            f"or sha256 {info.sha256} != {expected_sha}"
        )

    async def _fail(self, session: AsyncSession, op: ArchiveOperation, expected: str, message: str) -> bool:
        failed = await self._ops.transition(
            session,
            op.operation_id,
            expected=(expected,),
            target=sm.FAILED,
            actor=ARCHIVE_PIPELINE_ACTOR,
            details={"error": sm.truncate_error(message)},
            error_message=message,
        )
        if failed:
            archive_transfers_total.labels(outcome="failed").inc()
            await set_file_status(session, [op.file_id], sm.FILE_ACTIVE)
        return failed


def _object_metadata(op: ArchiveOperation, file: FileRecord) -> dict[str, str]:
    return {
        "original-site-id": file.site_id,
        "original-drive-id": file.drive_id,
        "original-item-id": file.item_id,
        "original-path": file.file_path.encode("ascii", "backslashreplace").decode("ascii"),
        "operation-id": op.operation_id,
        "archived-at": utcnow().isoformat(),
    }

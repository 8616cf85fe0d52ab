"""RetrievalPipeline: bring an archived file back to the source system.

A retrieval is a durable, resumable operation::

    request ─► Pending ─► start ─┬─► Retrieving ─► Completed
                                 └─► Rehydrating ─► poll ... ─► Retrieving ─► Completed

Objects in a tier that cannot be read directly are rehydrated first.
:meth:`RetrievalPipeline.start` asks the store to move the object to
``Cool`` and checkpoints ``rehydration_started_at``; the Celery task
``poll_rehydration`` then calls :meth:`RetrievalPipeline.poll` every
``REHYDRATION_POLL_SECONDS`` until the object is readable or
``REHYDRATION_MAX_HOURS`` have passed.  No step waits in memory.

On completion the file is written back to its original drive item, its
record returns to ``Active`` with the tier cleared and ``last_accessed_at``
stamped.  A failed retrieval leaves the file ``Archived``.

Each poll and each transfer step stamps ``updated_at``.
:meth:`RetrievalPipeline.recover` relies on that to resume work whose Celery
message was lost: ``Pending`` operations that never started are restarted,
``Rehydrating`` operations whose poll chain stopped are polled again, and
``Retrieving`` transfers that stopped checkpointing are failed.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import settings
from coldstore.core import state_machine as sm
from coldstore.core.errors import ColdStoreError, NotFoundError, ValidationError
from coldstore.core.retry import retry_transient
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.models.archive_operation import ArchiveOperation, RetrievalOperation
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant
from coldstore.services.file_source import FileRef, FileSource
from coldstore.services.operation_store import OperationStore
from coldstore.services.tiered_store import REHYDRATION_TIERS, TieredObjectStore, blob_key

logger = logging.getLogger(__name__)

RETRIEVAL_PIPELINE_ACTOR = "System:RetrievalPipeline"
REHYDRATED_TIER = "Cool"

retrievals_total = Counter(
    "coldstore_retrievals_total",
    "Retrieval outcomes",
    ["outcome"],  # completed | failed | rehydrating
)


@dataclass(frozen=True)
class RetrievalOutcome:
    operation_id: str
    status: str
    executed: bool
    error_message: str | None = None

    @property
    def awaiting_rehydration(self) -> bool:
        return self.status == sm.REHYDRATING


@dataclass
class RetrievalRecovery:
    """Operation ids found by one :meth:`RetrievalPipeline.recover` sweep."""

    to_start: list[str] = field(default_factory=list)
    to_poll: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RetrievalPipeline:
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
        self._ops = operations or OperationStore(retrieval=True)
        self._max_attempts = max_attempts or settings.TRANSFER_MAX_ATTEMPTS
        self._retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.TRANSFER_RETRY_BASE_SECONDS
        )
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def request(
        self, session: AsyncSession, tenant_id: uuid.UUID, file_id: uuid.UUID, actor: str
    ) -> tuple[RetrievalOperation, bool]:
        """Create (or return the open) retrieval operation for a file.

        Returns:
            ``(operation, created)``.

        Raises:
            NotFoundError: The file does not belong to *tenant_id*.
            ValidationError: The file is not archived or exceeds
                ``RETRIEVAL_MAX_BYTES``.
        """
        result = await session.execute(
            select(FileRecord).where(FileRecord.id == file_id, FileRecord.tenant_id == tenant_id)
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise NotFoundError(f"File {file_id} not found")
        if file.archive_status != sm.FILE_ARCHIVED:
            raise ValidationError(f"File {file_id} is not archived")
        if file.size_bytes > settings.RETRIEVAL_MAX_BYTES:
            raise ValidationError(
                f"File {file_id} is {file.size_bytes} bytes; retrievals are limited to "
                f"{settings.RETRIEVAL_MAX_BYTES} bytes"
            )

        latest = await self._ops.latest_for_file(session, file_id)
        if latest is not None and latest.status not in sm.RETRIEVAL_TERMINAL:
            return latest, False

        cycle = latest.cycle + 1 if latest is not None else 1
        op = RetrievalOperation(
            operation_id=sm.make_operation_id(
                tenant_id, file.site_id, file.drive_id, file.item_id, sm.ACTION_RETRIEVE, cycle
            ),
            msp_org_id=file.msp_org_id,
            tenant_id=tenant_id,
            file_id=file.id,
            cycle=cycle,
            source_path=file.file_path,
            blob_key=await _archived_blob_key(session, file),
            tier_at_request=file.blob_tier,
            size_bytes=file.size_bytes,
            requested_by=actor,
            status=sm.PENDING,
        )
        return await self._ops.create(session, op, actor=actor)

    async def start(
        self, session: AsyncSession, operation_id: str, *, now: datetime | None = None
    ) -> RetrievalOutcome:
        """Begin a ``Pending`` retrieval: rehydrate, or transfer straight away."""
        now = now or utcnow()
        op = await self._ops.require(session, operation_id)
        if op.status != sm.PENDING:
            return RetrievalOutcome(operation_id, op.status, executed=False, error_message=op.error_message)

        try:
            tier = await self._retry(lambda: self._store.get_tier(op.blob_key), "tier_check")
            if tier is None:
                raise ColdStoreError(f"Archived object {op.blob_key} not found")
            if tier in REHYDRATION_TIERS:
                await self._retry(
                    lambda: self._store.set_tier(op.blob_key, REHYDRATED_TIER), "rehydrate"
                )
        except Exception as exc:
            return await self._fail(session, op, sm.PENDING, f"Retrieval could not start: {exc}")

        if tier in REHYDRATION_TIERS:
            moved = await self._ops.transition(
                session,
                operation_id,
                expected=(sm.PENDING,),
                target=sm.REHYDRATING,
                actor=RETRIEVAL_PIPELINE_ACTOR,
                details={"tier": tier},
                rehydration_started_at=now,
            )
            await session.commit()
            if moved:
                retrievals_total.labels(outcome="rehydrating").inc()
            return RetrievalOutcome(operation_id, op.status, executed=moved)

        if not await self._ops.transition(
            session,
            operation_id,
            expected=(sm.PENDING,),
            target=sm.RETRIEVING,
            actor=RETRIEVAL_PIPELINE_ACTOR,
            details={"tier": tier},
        ):
            return RetrievalOutcome(operation_id, op.status, executed=False)
        await session.commit()
        return await self._transfer(session, op, now=now)

    async def poll(
        self, session: AsyncSession, operation_id: str, *, now: datetime | None = None
    ) -> RetrievalOutcome:
        """Advance a ``Rehydrating`` retrieval if its object is readable.

        Fails the operation once ``REHYDRATION_MAX_HOURS`` have passed since
        rehydration started.
        """
        now = now or utcnow()
        op = await self._ops.require(session, operation_id)
        if op.status != sm.REHYDRATING:
            return RetrievalOutcome(operation_id, op.status, executed=False, error_message=op.error_message)

        try:
            readable = await self._retry(lambda: self._store.is_readable(op.blob_key), "rehydration_poll")
        except Exception as exc:
            # A failed poll is retried on the next tick.
            logger.warning(
                json.dumps(
                    {"event": "rehydration_poll_failed", "operation_id": operation_id, "error": str(exc)}
                )
            )
            readable = False

        if readable:
            if not await self._ops.transition(
                session,
                operation_id,
                expected=(sm.REHYDRATING,),
                target=sm.RETRIEVING,
                actor=RETRIEVAL_PIPELINE_ACTOR,
            ):
                return RetrievalOutcome(operation_id, op.status, executed=False)
            await session.commit()
            return await self._transfer(session, op, now=now)

        started = as_utc(op.rehydration_started_at) or now
        if now - started >= timedelta(hours=settings.REHYDRATION_MAX_HOURS):
            return await self._fail(
                session,
                op,
                sm.REHYDRATING,
                f"Rehydration did not complete within {settings.REHYDRATION_MAX_HOURS} hours",
            )
        await self._ops.touch(session, operation_id, expected=(sm.REHYDRATING,))
        await session.commit()
        return RetrievalOutcome(operation_id, sm.REHYDRATING, executed=False)

    async def recover(
        self,
        session: AsyncSession,
        *,
        stale_after: timedelta,
        poll_after: timedelta,
        now: datetime | None = None,
    ) -> RetrievalRecovery:
        """Find retrievals whose driving task is gone.

        * ``Pending`` for longer than *stale_after*: returned in ``to_start``.
        * ``Rehydrating`` and not polled for *poll_after*: returned in
          ``to_poll``.
        * ``Retrieving`` and not checkpointed for *stale_after*: failed here
          and returned in ``failed``.

        The caller enqueues the start and poll tasks.  Both are
        compare-and-set, so resuming an operation that is in fact still
        moving is harmless.  Commits.
        """
        now = now or utcnow()
        result = await session.execute(
            select(RetrievalOperation).where(
                RetrievalOperation.status.in_((sm.PENDING, sm.REHYDRATING, sm.RETRIEVING))
            )
        )
        recovery = RetrievalRecovery()
        for op in result.scalars().all():
            idle = now - (as_utc(op.updated_at) or as_utc(op.created_at) or now)
            if op.status == sm.PENDING and idle >= stale_after:
                recovery.to_start.append(op.operation_id)
            elif op.status == sm.REHYDRATING and idle >= poll_after:
                recovery.to_poll.append(op.operation_id)
            elif op.status == sm.RETRIEVING and idle >= stale_after:
                outcome = await self._fail(session, op, sm.RETRIEVING, "Transfer interrupted before completion")
                if outcome.executed:
                    recovery.failed.append(op.operation_id)
        await session.commit()

        if recovery.to_start or recovery.to_poll or recovery.failed:
            logger.warning(
                json.dumps(
                    {
                        "event": "retrievals_recovered",
                        "restarted": len(recovery.to_start),
                        "repolled": len(recovery.to_poll),
                        "failed": len(recovery.failed),
                    }
                )
            )
        return recovery

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transfer(
        self, session: AsyncSession, op: RetrievalOperation, *, now: datetime
    ) -> RetrievalOutcome:
        file = await session.get(FileRecord, op.file_id)
        tenant = await session.get(ClientTenant, op.tenant_id)
        ref = FileRef(
            tenant_external_id=tenant.external_tenant_id,
            site_id=file.site_id,
            drive_id=file.drive_id,
            item_id=file.item_id,
            file_path=file.file_path,
        )
        try:
            data = await self._retry(lambda: self._store.get_object(op.blob_key), "download")
        except Exception as exc:
            return await self._fail(session, op, sm.RETRIEVING, f"Retrieval transfer failed: {exc}")
        if not await self._ops.touch(session, op.operation_id, expected=(sm.RETRIEVING,)):
            await session.commit()
            return await self._superseded(session, op.operation_id)
        await session.commit()

        try:
            await self._retry(lambda: self._source.upload_file(ref, data), "upload")
        except Exception as exc:
            return await self._fail(session, op, sm.RETRIEVING, f"Retrieval transfer failed: {exc}")

        completed = await self._ops.transition(
            session,
            op.operation_id,
            expected=(sm.RETRIEVING,),
            target=sm.COMPLETED,
            actor=RETRIEVAL_PIPELINE_ACTOR,
            details={
                "sourceBlob": op.blob_key,
                "destinationPath": op.source_path,
                "fileSize": len(data),
                "blobTier": op.tier_at_request,
            },
        )
        if not completed:
            # Failed by the staleness sweep; the file record stays Archived.
            await session.commit()
            return await self._superseded(session, op.operation_id)
        await session.execute(
            update(FileRecord)
            .where(FileRecord.id == op.file_id)
            .values(archive_status=sm.FILE_ACTIVE, blob_tier=None, last_accessed_at=now)
        )
        await session.commit()
        retrievals_total.labels(outcome="completed").inc()
        logger.info(
            json.dumps(
                {
                    "event": "retrieval_completed",
                    "operation_id": op.operation_id,
                    "tenant_id": str(op.tenant_id),
                    "size_bytes": len(data),
                }
            )
        )
        return RetrievalOutcome(op.operation_id, sm.COMPLETED, executed=True)

    async def _fail(
        self, session: AsyncSession, op: RetrievalOperation, expected: str, message: str
    ) -> RetrievalOutcome:
        failed = await self._ops.transition(
            session,
            op.operation_id,
            expected=(expected,),
            target=sm.FAILED,
            actor=RETRIEVAL_PIPELINE_ACTOR,
            details={"error": sm.truncate_error(message)},
            error_message=message,
        )
        await session.commit()
        if failed:
            retrievals_total.labels(outcome="failed").inc()
            logger.error(
                json.dumps(
                    {"event": "retrieval_failed", "operation_id": op.operation_id, "error": message}
                )
            )
        return RetrievalOutcome(op.operation_id, op.status, executed=failed, error_message=op.error_message)

    async def _superseded(self, session: AsyncSession, operation_id: str) -> RetrievalOutcome:
        current = await self._ops.get(session, operation_id, refresh=True)
        logger.warning(
            json.dumps(
                {"event": "retrieval_superseded", "operation_id": operation_id, "status": current.status}
            )
        )
        return RetrievalOutcome(
            operation_id, current.status, executed=False, error_message=current.error_message
        )

    async def _retry(self, func, step: str):
        return await retry_transient(
            func,
            attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            step=step,
            **self._retry_kwargs,
        )


async def _archived_blob_key(session: AsyncSession, file: FileRecord) -> str:
    """Return the key the file was archived under (latest archived cycle)."""
    result = await session.execute(
        select(ArchiveOperation.destination_path)
        .where(ArchiveOperation.file_id == file.id, ArchiveOperation.status == sm.ARCHIVED)
        .order_by(ArchiveOperation.cycle.desc())
        .limit(1)
    )
    key = result.scalar_one_or_none()
    return key or blob_key(file.tenant_id, file.site_id, file.file_path)

"""OperationStore: uniqueness and compare-and-set transitions for operations.

The operation tables are the only shared mutable state of the lifecycle
engine.  Every status change is issued as::

    UPDATE archive_operation
       SET status = :target, ...
     WHERE operation_id = :operation_id AND status IN (:expected...)

and the affected row count decides the outcome: ``1`` means this caller won,
``0`` means another caller moved the operation first.  The loser of a race
gets ``False`` back and must treat it as a no-op; nothing is raised unless
``strict=True`` is requested.

Each successful transition is audited through
:class:`~coldstore.services.audit.AuditService` inside the same transaction.

Usage::

    store = OperationStore()
    won = await store.transition(
        session,
        op.operation_id,
        expected=(AWAITING_APPROVAL,),
        target=APPROVED,
        actor="owner@contoso.com",
        approved_by="owner@contoso.com",
    )
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable

from prometheus_client import Counter
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.core import state_machine as sm
from coldstore.core.errors import ConflictError, NotFoundError
from coldstore.core.timeutil import utcnow
from coldstore.models.archive_operation import ArchiveOperation, RetrievalOperation
from coldstore.services.audit import AuditService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_TRANSITIONS = Counter(
    "coldstore_operation_transitions_total",
    "Operation status transitions applied, by operation kind and target status",
    ["kind", "status"],
)
_LOST_RACES = Counter(
    "coldstore_operation_transition_conflicts_total",
    "Compare-and-set transitions that found the operation already moved",
    ["kind"],
)


class OperationStore:
    """Persistence helper for :class:`ArchiveOperation` / :class:`RetrievalOperation`.

    Args:
        retrieval: When ``True`` the store manages retrieval operations and
            validates transitions against the retrieval state machine.
        audit: Audit sink; defaults to a new :class:`AuditService`.
    """

    def __init__(self, *, retrieval: bool = False, audit: AuditService | None = None) -> None:
        self.retrieval = retrieval
        self.model: type[ArchiveOperation] | type[RetrievalOperation] = (
            RetrievalOperation if retrieval else ArchiveOperation
        )
        self.kind = "retrieval" if retrieval else "archive"
        self._audit = audit or AuditService()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        session: AsyncSession,
        operation_id: str,
        *,
        tenant_id: uuid.UUID | None = None,
        refresh: bool = False,
    ) -> Any | None:
        stmt = select(self.model).where(self.model.operation_id == operation_id)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def require(
        self, session: AsyncSession, operation_id: str, *, tenant_id: uuid.UUID | None = None
    ) -> Any:
        op = await self.get(session, operation_id, tenant_id=tenant_id)
        if op is None:
            raise NotFoundError(f"{self.kind.capitalize()} operation {operation_id} not found")
        return op

    async def latest_for_file(self, session: AsyncSession, file_id: uuid.UUID) -> Any | None:
        """Return the highest-cycle operation recorded for *file_id*."""
        result = await session.execute(
            select(self.model)
            .where(self.model.file_id == file_id)
            .order_by(self.model.cycle.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_for_files(
        self, session: AsyncSession, file_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, Any]:
        """Return ``{file_id: latest operation}`` for every id that has one."""
        ids = list(file_ids)
        if not ids:
            return {}
        latest_cycle = (
            select(self.model.file_id, func.max(self.model.cycle).label("cycle"))
            .where(self.model.file_id.in_(ids))
            .group_by(self.model.file_id)
            .subquery()
        )
        result = await session.execute(
            select(self.model).join(
                latest_cycle,
                (self.model.file_id == latest_cycle.c.file_id)
                & (self.model.cycle == latest_cycle.c.cycle),
            )
        )
        return {op.file_id: op for op in result.scalars().all()}

    async def list_by_status(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        statuses: Iterable[str],
        *,
        site_ids: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Any]:
        stmt = (
            select(self.model)
            .where(self.model.tenant_id == tenant_id, self.model.status.in_(list(statuses)))
            .order_by(self.model.created_at, self.model.operation_id)
        )
        if site_ids is not None and hasattr(self.model, "site_id"):
            stmt = stmt.where(self.model.site_id.in_(list(site_ids)))
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self, session: AsyncSession, op: Any, *, actor: str = "System"
    ) -> tuple[Any, bool]:
        """Insert *op* unless its ``operation_id`` already exists.

        The insert runs in a savepoint so a unique-constraint violation from
        a concurrent creator only rolls back this insert.

        Returns:
            ``(operation, created)`` where *operation* is the stored row
            (the pre-existing one when ``created`` is ``False``).
        """
        existing = await self.get(session, op.operation_id)
        if existing is not None:
            return existing, False
        try:
            async with session.begin_nested():
                session.add(op)
        except IntegrityError:
            existing = await self.get(session, op.operation_id)
            if existing is None:
                raise
            return existing, False

        _TRANSITIONS.labels(kind=self.kind, status=op.status).inc()
        await self._audit.log(
            session,
            actor_id=actor,
            action=f"{self.kind}_operation.created",
            details={"operationId": op.operation_id, "status": op.status, "cycle": op.cycle},
            tenant_id=op.tenant_id,
            msp_org_id=op.msp_org_id,
        )
        return op, True

    async def transition(
        self,
        session: AsyncSession,
        operation_id: str,
        *,
        expected: Iterable[str],
        target: str,
        actor: str = "System",
        details: dict[str, Any] | None = None,
        strict: bool = False,
        **values: Any,
    ) -> bool:
        """Compare-and-set *operation_id* from one of *expected* to *target*.

        Extra keyword arguments are written in the same UPDATE.  ``updated_at``
        is always stamped; ``completed_at`` is stamped when *target* is a
        completed terminal state; ``error_message`` is truncated.

        Returns:
            ``True`` if this call applied the transition, ``False`` if the
            operation was not in an expected state (lost race / repeat call).

        Raises:
            ValueError: If any ``expected → target`` pair is not a legal
                transition (a programming error, never a race).
            ConflictError: If ``strict`` and the transition was not applied.
        """
        expected = tuple(expected)
        illegal = [s for s in expected if not sm.can_transition(s, target, retrieval=self.retrieval)]
        if illegal:
            raise ValueError(f"Illegal {self.kind} transition {illegal} -> {target}")

        now = utcnow()
        values["updated_at"] = now
        completed = sm.RETRIEVAL_TERMINAL - {sm.FAILED} if self.retrieval else sm.ARCHIVE_COMPLETED
        if target in completed:
            values.setdefault("completed_at", now)
        if values.get("error_message"):
            values["error_message"] = sm.truncate_error(values["error_message"])

        result = await session.execute(
            update(self.model)
            .where(self.model.operation_id == operation_id, self.model.status.in_(expected))
            .values(status=target, **values)
        )
        if result.rowcount != 1:
            _LOST_RACES.labels(kind=self.kind).inc()
            logger.info(
                json.dumps(
                    {
                        "event": "operation_transition_skipped",
                        "kind": self.kind,
                        "operation_id": operation_id,
                        "expected": list(expected),
                        "target": target,
                    }
                )
            )
            if strict:
                raise ConflictError(operation_id, expected, target)
            return False

        _TRANSITIONS.labels(kind=self.kind, status=target).inc()
        op = await self.get(session, operation_id, refresh=True)
        logger.info(
            json.dumps(
                {
                    "event": "operation_transitioned",
                    "kind": self.kind,
                    "operation_id": operation_id,
                    "tenant_id": str(op.tenant_id),
                    "status": target,
                    "actor": actor,
                }
            )
        )
        await self._audit.log(
            session,
            actor_id=actor,
            action=f"{self.kind}_operation.{target}",
            details={"operationId": operation_id, "status": target, **(details or {})},
            tenant_id=op.tenant_id,
            msp_org_id=op.msp_org_id,
        )
        return True

    async def touch(self, session: AsyncSession, operation_id: str, *, expected: Iterable[str]) -> bool:
        """Stamp ``updated_at`` if the operation is still in one of *expected*.

        Long-running workers call this between steps so staleness sweeps can
        tell a live transfer from an abandoned one.  Returns ``False`` once
        another caller has moved the operation on.
        """
        result = await session.execute(
            update(self.model)
            .where(self.model.operation_id == operation_id, self.model.status.in_(tuple(expected)))
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition_many(
        self,
        session: AsyncSession,
        operation_ids: Iterable[str],
        *,
        expected: Iterable[str],
        target: str,
        actor: str = "System",
        details: dict[str, Any] | None = None,
        **values: Any,
    ) -> list[str]:
        """Apply :meth:`transition` to each id; return the ids this call moved.

        All updates share the caller's transaction, so a batch either commits
        together or not at all.
        """
        expected = tuple(expected)
        moved: list[str] = []
        for operation_id in operation_ids:
            if await self.transition(
                session,
                operation_id,
                expected=expected,
                target=target,
                actor=actor,
                details=details,
                **dict(values),
            ):
                moved.append(operation_id)
        return moved

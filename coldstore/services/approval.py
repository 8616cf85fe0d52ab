"""ApprovalWorkflow: owner approval of proposed archive operations.

The workflow is durable.  Nothing waits in memory: every step persists its
outcome on the operation rows and returns, and the next step is triggered by
a timer sweep (Celery beat) or by an owner's callback.

1. :meth:`ApprovalWorkflow.propose` creates ``Pending`` operations for files
   the rule evaluator matched, skipping files already covered by an
   unresolved operation.
2. :meth:`ApprovalWorkflow.start_cycle` moves the tenant's ``Pending``
   operations into ``AwaitingApproval`` (stamping ``awaiting_since``), groups
   them by site and owner, and sends one approval card per group.  With
   ``auto_approval_days == 0`` operations go straight to ``Approved`` and no
   card is sent.
3. :meth:`ApprovalWorkflow.expire_timers` approves waiting operations whose
   timer has elapsed.  The tenant's ``auto_approval_days`` is read at that
   moment, so an admin change applies to operations already waiting.
4. :meth:`ApprovalWorkflow.handle_action` maps an owner's ``approve`` /
   ``reject`` / ``review`` callback onto compare-and-set transitions.

Delivery failures never block the timer: operations whose card could not be
delivered stay ``AwaitingApproval`` and auto-approve like any other.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import SUPPORTED_TIERS
from coldstore.core import state_machine as sm
from coldstore.core.errors import NotFoundError, ValidationError
from coldstore.core.rule_evaluator import EvaluationResult
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant, Site
from coldstore.services.notifications import ApprovalGroup, DeliveryResult, Notifier, TeamsNotifier
from coldstore.services.operation_store import OperationStore

logger = logging.getLogger(__name__)

AUTO_APPROVAL_ACTOR = "System:AutoApproval"
RULE_EVALUATION_ACTOR = "System:RuleEvaluation"

APPROVAL_ACTIONS = ("approve", "reject", "review")


@dataclass
class ApprovalCallback:
    """An owner's response to an approval card (or a dashboard action).

    Exactly one of ``site_id`` / ``operation_ids`` selects the operations.
    """

    action: str
    tenant_id: uuid.UUID
    actor: str
    site_id: str | None = None
    operation_ids: list[str] | None = None
    reason: str | None = None


@dataclass
class CycleResult:
    tenant_id: uuid.UUID
    awaiting: list[str] = field(default_factory=list)
    auto_approved: list[str] = field(default_factory=list)
    notifications_sent: int = 0
    notifications_failed: int = 0


class ApprovalWorkflow:
    """Drive archive operations from ``Pending`` to ``Approved`` or ``Vetoed``.

    Args:
        store: Operation store for archive operations.
        notifier: Approval card channel; defaults to :class:`TeamsNotifier`.
    """

    def __init__(
        self,
        store: OperationStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._store = store or OperationStore()
        self._notifier = notifier or TeamsNotifier()

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    async def propose(
        self,
        session: AsyncSession,
        tenant: ClientTenant,
        matches: Iterable[tuple[FileRecord, EvaluationResult]],
    ) -> list[ArchiveOperation]:
        """Create ``Pending`` operations for matched, non-excluded files.

        A file whose latest operation is unresolved (or was vetoed and
        accepted, or excluded) gets no new operation.  A file whose latest
        operation failed, or which was archived and later retrieved, starts
        the next cycle.  An unsupported target tier yields an operation that
        is failed immediately; later scans leave that failed cycle in place
        until the rule's tier changes.
        """
        candidates = [
            (file, result)
            for file, result in matches
            if result.is_match and file.archive_status != sm.FILE_ARCHIVED
        ]
        latest = await self._store.latest_for_files(session, [f.id for f, _ in candidates])

        created: list[ArchiveOperation] = []
        for file, result in candidates:
            previous = latest.get(file.id)
            if previous is not None and previous.status in sm.BLOCKS_REPROPOSAL:
                continue
            tier = result.target_tier or ""
            if (
                tier not in SUPPORTED_TIERS
                and previous is not None
                and previous.status == sm.FAILED
                and previous.target_tier == tier
            ):
                continue
            cycle = previous.cycle + 1 if previous is not None else 1
            op = ArchiveOperation(
                operation_id=sm.make_operation_id(
                    tenant.id, file.site_id, file.drive_id, file.item_id, sm.ACTION_ARCHIVE, cycle
                ),
                msp_org_id=tenant.msp_org_id,
                tenant_id=tenant.id,
                file_id=file.id,
                rule_id=result.matched_archive_rule_id,
                site_id=file.site_id,
                action=sm.ACTION_ARCHIVE,
                cycle=cycle,
                source_path=file.file_path,
                target_tier=tier,
                size_bytes=file.size_bytes,
                status=sm.PENDING,
            )
            op, was_created = await self._store.create(session, op, actor=RULE_EVALUATION_ACTOR)
            if not was_created:
                continue
            if op.target_tier not in SUPPORTED_TIERS:
                await self._store.transition(
                    session,
                    op.operation_id,
                    expected=(sm.PENDING,),
                    target=sm.FAILED,
                    actor=RULE_EVALUATION_ACTOR,
                    error_message=f"Unsupported target tier '{op.target_tier}'",
                )
                continue
            created.append(op)

        if created:
            logger.info(
                json.dumps(
                    {
                        "event": "archive_operations_proposed",
                        "tenant_id": str(tenant.id),
                        "count": len(created),
                    }
                )
            )
        return created

    # ------------------------------------------------------------------
    # Grouping and notification
    # ------------------------------------------------------------------

    async def group_files_by_site_owner(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        operations: Iterable[ArchiveOperation],
    ) -> list[ApprovalGroup]:
        """Group *operations* by (site, owner).

        The owner is the site's recorded owner, falling back to the file's
        owner.  Files with neither form a group with an empty owner, which
        is not notified but still waits for the auto-approval timer.  The
        site name falls back to the site id; the group's target tier is that
        of its first operation.
        """
        operations = list(operations)
        if not operations:
            return []

        files = {
            f.id: f
            for f in (
                await session.execute(
                    select(FileRecord).where(
                        FileRecord.tenant_id == tenant_id,
                        FileRecord.id.in_([op.file_id for op in operations]),
                    )
                )
            ).scalars()
        }
        sites = {
            s.site_id: s
            for s in (
                await session.execute(
                    select(Site).where(
                        Site.tenant_id == tenant_id,
                        Site.site_id.in_({op.site_id for op in operations}),
                    )
                )
            ).scalars()
        }
        tenant = await session.get(ClientTenant, tenant_id)
        webhook_url = tenant.notification_webhook_url if tenant is not None else None

        groups: dict[tuple[str, str], ApprovalGroup] = {}
        for op in operations:
            file = files.get(op.file_id)
            site = sites.get(op.site_id)
            owner = (site.owner_email if site is not None else None) or (file.owner if file else None)
            owner = (owner or "").strip()
            key = (op.site_id, owner.lower())
            group = groups.get(key)
            if group is None:
                group = ApprovalGroup(
                    tenant_id=tenant_id,
                    site_id=op.site_id,
                    site_name=(site.display_name if site is not None else "") or op.site_id,
                    owner_email=owner,
                    owner_id=owner.lower(),
                    file_count=0,
                    total_size_bytes=0,
                    target_tier=op.target_tier,
                    webhook_url=webhook_url,
                )
                groups[key] = group
            group.file_count += 1
            group.total_size_bytes += op.size_bytes
            group.operation_ids.append(op.operation_id)

        return [groups[key] for key in sorted(groups)]

    async def set_awaiting_approval(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        site_ids: Iterable[str],
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Move every ``Pending`` operation of *site_ids* to ``AwaitingApproval``.

        All transitions share the caller's transaction.  Returns the ids this
        call moved; operations another caller moved first are skipped.
        """
        now = now or utcnow()
        pending = await self._store.list_by_status(
            session, tenant_id, (sm.PENDING,), site_ids=list(site_ids)
        )
        moved = await self._store.transition_many(
            session,
            [op.operation_id for op in pending],
            expected=(sm.PENDING,),
            target=sm.AWAITING_APPROVAL,
            awaiting_since=now,
        )
        moved_set = set(moved)
        await set_file_status(
            session,
            [op.file_id for op in pending if op.operation_id in moved_set],
            sm.FILE_AWAITING_APPROVAL,
            only_from=(sm.FILE_ACTIVE,),
        )
        return moved

    async def start_cycle(
        self, session: AsyncSession, tenant_id: uuid.UUID, *, now: datetime | None = None
    ) -> CycleResult:
        """Request approval for all of the tenant's ``Pending`` operations."""
        now = now or utcnow()
        tenant = await load_tenant(session, tenant_id)
        result = CycleResult(tenant_id=tenant_id)

        pending = await self._store.list_by_status(session, tenant_id, (sm.PENDING,))
        if not pending:
            return result

        if tenant.auto_approval_days == 0:
            result.auto_approved = await self._store.transition_many(
                session,
                [op.operation_id for op in pending],
                expected=(sm.PENDING,),
                target=sm.APPROVED,
                actor=AUTO_APPROVAL_ACTOR,
                details={"autoApprovalDays": 0},
                approved_by=AUTO_APPROVAL_ACTOR,
            )
            self._log_cycle(result)
            return result

        result.awaiting = await self.set_awaiting_approval(
            session, tenant_id, {op.site_id for op in pending}, now=now
        )
        moved = set(result.awaiting)
        groups = await self.group_files_by_site_owner(
            session, tenant_id, [op for op in pending if op.operation_id in moved]
        )
        for group in groups:
            delivery = await self.send_approval_request(group)
            await self._record_delivery(session, group, delivery)
            if delivery.delivered:
                result.notifications_sent += 1
            else:
                result.notifications_failed += 1

        self._log_cycle(result)
        return result

    async def send_approval_request(self, group: ApprovalGroup) -> DeliveryResult:
        if not group.owner_email:
            return DeliveryResult(
                delivered=False, error_message="No site owner to notify", attempt_count=0
            )
        return await self._notifier.send_approval_request(group)

    async def _record_delivery(
        self, session: AsyncSession, group: ApprovalGroup, delivery: DeliveryResult
    ) -> None:
        await session.execute(
            update(ArchiveOperation)
            .where(
                ArchiveOperation.tenant_id == group.tenant_id,
                ArchiveOperation.operation_id.in_(group.operation_ids),
            )
            .values(
                notification_delivered=delivery.delivered,
                notification_attempts=delivery.attempt_count,
                notification_error=delivery.error_message,
                conversation_id=delivery.conversation_id,
            )
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def expire_timers(
        self, session: AsyncSession, tenant_id: uuid.UUID, *, now: datetime | None = None
    ) -> list[str]:
        """Approve waiting operations whose auto-approval window has elapsed.

        ``None`` days never approves; ``0`` approves everything waiting;
        ``n`` approves operations that entered ``AwaitingApproval`` at least
        ``n`` days before *now*.
        """
        now = now or utcnow()
        tenant = await load_tenant(session, tenant_id)
        days = tenant.auto_approval_days
        if days is None:
            return []

        waiting = await self._store.list_by_status(session, tenant_id, (sm.AWAITING_APPROVAL,))
        cutoff = now - timedelta(days=days)
        due = [
            op.operation_id
            for op in waiting
            if days == 0 or (op.awaiting_since is not None and as_utc(op.awaiting_since) <= cutoff)
        ]
        approved = await self._store.transition_many(
            session,
            due,
            expected=(sm.AWAITING_APPROVAL,),
            target=sm.APPROVED,
            actor=AUTO_APPROVAL_ACTOR,
            details={"autoApprovalDays": days},
            approved_by=AUTO_APPROVAL_ACTOR,
        )
        if approved:
            logger.info(
                json.dumps(
                    {
                        "event": "auto_approval_timers_expired",
                        "tenant_id": str(tenant_id),
                        "auto_approval_days": days,
                        "approved": len(approved),
                    }
                )
            )
        return approved

    # ------------------------------------------------------------------
    # Owner / admin actions
    # ------------------------------------------------------------------

    async def handle_action(self, session: AsyncSession, callback: ApprovalCallback) -> list[str]:
        """Apply an approve / reject / review callback; return the ids moved.

        Repeating a callback is harmless: operations already past the
        waiting states are not selected, so the second call moves nothing.

        Raises:
            ValidationError: Unknown action, or no site / operation selector.
        """
        if callback.action not in APPROVAL_ACTIONS:
            raise ValidationError(
                f"Unknown approval action '{callback.action}'. "
                f"Valid actions: {', '.join(APPROVAL_ACTIONS)}"
            )
        if not callback.site_id and not callback.operation_ids:
            raise ValidationError("Approval callback needs a site_id or operation_ids")
        if not callback.actor:
            raise ValidationError("Approval callback needs an actor")

        await load_tenant(session, callback.tenant_id)
        sources = (sm.AWAITING_APPROVAL,) if callback.action == "review" else (
            sm.AWAITING_APPROVAL,
            sm.REVIEW_REQUESTED,
        )
        ops = await self._store.list_by_status(
            session,
            callback.tenant_id,
            sources,
            site_ids=[callback.site_id] if callback.site_id else None,
        )
        if callback.operation_ids:
            wanted = set(callback.operation_ids)
            ops = [op for op in ops if op.operation_id in wanted]
        ids = [op.operation_id for op in ops]

        if callback.action == "approve":
            moved = await self._store.transition_many(
                session,
                ids,
                expected=sources,
                target=sm.APPROVED,
                actor=callback.actor,
                approved_by=callback.actor,
            )
            if moved:
                await clear_review_flag_if_resolved(session, callback.tenant_id)
        elif callback.action == "reject":
            moved = await self._store.transition_many(
                session,
                ids,
                expected=sources,
                target=sm.VETOED,
                actor=callback.actor,
                details={"reason": callback.reason},
                vetoed_by=callback.actor,
                veto_reason=callback.reason or "",
                vetoed_at=utcnow(),
            )
            moved_set = set(moved)
            await set_file_status(
                session, [op.file_id for op in ops if op.operation_id in moved_set], sm.FILE_ACTIVE
            )
        else:
            moved = await self._store.transition_many(
                session,
                ids,
                expected=sources,
                target=sm.REVIEW_REQUESTED,
                actor=callback.actor,
                details={"reason": callback.reason},
            )
            if moved:
                await set_review_flag(session, callback.tenant_id, True)

        logger.info(
            json.dumps(
                {
                    "event": "approval_action_handled",
                    "tenant_id": str(callback.tenant_id),
                    "site_id": callback.site_id,
                    "action": callback.action,
                    "actor": callback.actor,
                    "operations": len(moved),
                }
            )
        )
        return moved

    async def record_approval(
        self, session: AsyncSession, tenant_id: uuid.UUID, operation_id: str, actor: str
    ) -> bool:
        """Approve a single operation; ``False`` if it was not waiting."""
        await self._store.require(session, operation_id, tenant_id=tenant_id)
        approved = await self._store.transition(
            session,
            operation_id,
            expected=(sm.AWAITING_APPROVAL, sm.REVIEW_REQUESTED),
            target=sm.APPROVED,
            actor=actor,
            approved_by=actor,
        )
        if approved:
            await clear_review_flag_if_resolved(session, tenant_id)
        return approved

    async def record_veto(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        operation_id: str,
        actor: str,
        reason: str | None = None,
    ) -> bool:
        """Veto a single operation; ``False`` if it was not waiting."""
        op = await self._store.require(session, operation_id, tenant_id=tenant_id)
        vetoed = await self._store.transition(
            session,
            operation_id,
            expected=(sm.AWAITING_APPROVAL, sm.REVIEW_REQUESTED),
            target=sm.VETOED,
            actor=actor,
            details={"reason": reason},
            vetoed_by=actor,
            veto_reason=reason or "",
            vetoed_at=utcnow(),
        )
        if vetoed:
            await set_file_status(session, [op.file_id], sm.FILE_ACTIVE)
        return vetoed

    @staticmethod
    def _log_cycle(result: CycleResult) -> None:
        logger.info(
            json.dumps(
                {
                    "event": "approval_cycle_started",
                    "tenant_id": str(result.tenant_id),
                    "awaiting": len(result.awaiting),
                    "auto_approved": len(result.auto_approved),
                    "notifications_sent": result.notifications_sent,
                    "notifications_failed": result.notifications_failed,
                }
            )
        )


# ---------------------------------------------------------------------------
# Helpers shared with veto resolution
# ---------------------------------------------------------------------------


async def load_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> ClientTenant:
    # populate_existing so settings changed by another transaction are seen.
    result = await session.execute(
        select(ClientTenant)
        .where(ClientTenant.id == tenant_id)
        .execution_options(populate_existing=True)
    )
    tenant = result.scalar_one_or_none()
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return tenant


async def set_file_status(
    session: AsyncSession,
    file_ids: list[uuid.UUID],
    status: str,
    *,
    only_from: tuple[str, ...] = (sm.FILE_ACTIVE, sm.FILE_AWAITING_APPROVAL),
) -> None:
    if not file_ids:
        return
    await session.execute(
        update(FileRecord)
        .where(FileRecord.id.in_(file_ids), FileRecord.archive_status.in_(only_from))
        .values(archive_status=status)
    )


async def set_review_flag(session: AsyncSession, tenant_id: uuid.UUID, flagged: bool) -> None:
    await session.execute(
        update(ClientTenant).where(ClientTenant.id == tenant_id).values(review_flagged=flagged)
    )


async def clear_review_flag_if_resolved(session: AsyncSession, tenant_id: uuid.UUID) -> bool:
    """Clear ``review_flagged`` once no vetoed or review-requested operations remain."""
    remaining = await session.scalar(
        select(func.count())
        .select_from(ArchiveOperation)
        .where(
            ArchiveOperation.tenant_id == tenant_id,
            ArchiveOperation.status.in_((sm.VETOED, sm.REVIEW_REQUESTED)),
        )
    )
    if remaining:
        return False
    await set_review_flag(session, tenant_id, False)
    return True

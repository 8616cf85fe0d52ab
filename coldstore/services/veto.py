"""Veto resolution: what happens after an owner rejects an archive proposal.

A ``Vetoed`` operation is resolved by an administrator in one of three ways:

``accept``
    The owner was right.  The operation becomes ``VetoAccepted`` and the file
    stays active; the file is not proposed again.
``override``
    The archive should go ahead anyway.  The operation becomes
    ``VetoOverridden`` and a new ``Pending`` operation (next cycle, new
    operation id) is created for the same file and rule, which then goes
    through approval again.
``exclude``
    The file must never be archived.  The operation becomes ``Excluded`` and
    an exclusion rule is created or extended so the rule evaluator never
    matches the file again.  With ``scope="file"`` the file's site, drive
    and item ids are appended to the tenant's system ``Vetoed files`` rule;
    with ``scope="library"`` a rule protecting the library on the file's
    site is created and that library's other vetoed operations on the same
    site are accepted.  Neither reaches files on other sites.

Resolving an operation that already carries the requested outcome is a
no-op.  Once no vetoed or review-requested operations remain, the tenant's
``review_flagged`` marker is cleared.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.core import state_machine as sm
from coldstore.core.errors import ValidationError
from coldstore.core.timeutil import utcnow
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.file_record import FileRecord
from coldstore.schemas.criteria import normalise_path
from coldstore.services.approval import clear_review_flag_if_resolved, set_file_status
from coldstore.services.operation_store import OperationStore

logger = logging.getLogger(__name__)

VETO_EXCLUSION_ACTOR = "System:VetoExclusion"
VETOED_FILES_RULE_NAME = "Vetoed files"

_RESOLUTION_STATUS = {
    "accept": sm.VETO_ACCEPTED,
    "override": sm.VETO_OVERRIDDEN,
    "exclude": sm.EXCLUDED,
}
EXCLUDE_SCOPES = ("file", "library")


@dataclass
class VetoResolution:
    operation_id: str
    resolution: str
    status: str
    changed: bool
    new_operation_id: str | None = None
    exclusion_rule_id: uuid.UUID | None = None
    related_operation_ids: list[str] = field(default_factory=list)


def library_of(path: str) -> str:
    """Return the first segment of *path* (its document library), or ``""``."""
    cleaned = (path or "").strip().replace("\\", "/").strip("/")
    return cleaned.split("/", 1)[0] if cleaned else ""


class VetoResolver:
    def __init__(self, store: OperationStore | None = None) -> None:
        self._store = store or OperationStore()

    async def resolve(
        self,
        session: AsyncSession,
        *,
        tenant_id: uuid.UUID,
        operation_id: str,
        resolution: str,
        actor: str,
        scope: str = "file",
    ) -> VetoResolution:
        """Resolve a vetoed operation.

        Raises:
            ValidationError: Unknown resolution or scope, an operation that is
                not vetoed, or a library exclusion for a file with no
                library in its path.
            NotFoundError: The operation does not belong to *tenant_id*.
        """
        target = _RESOLUTION_STATUS.get(resolution)
        if target is None:
            raise ValidationError(
                f"Unknown veto resolution '{resolution}'. "
                f"Valid resolutions: {', '.join(_RESOLUTION_STATUS)}"
            )
        if resolution == "exclude" and scope not in EXCLUDE_SCOPES:
            raise ValidationError(f"Unknown exclusion scope '{scope}'")

        op = await self._store.require(session, operation_id, tenant_id=tenant_id)
        if op.status == target:
            return VetoResolution(operation_id, resolution, op.status, changed=False)
        if op.status != sm.VETOED:
            raise ValidationError(f"Operation {operation_id} is {op.status}, not Vetoed")

        file = await session.get(FileRecord, op.file_id)
        library = library_of(file.file_path if file is not None else op.source_path)
        if resolution == "exclude" and scope == "library" and not library:
            raise ValidationError(
                f"Cannot derive a library from '{op.source_path}' for a library exclusion"
            )

        won = await self._store.transition(
            session,
            operation_id,
            expected=(sm.VETOED,),
            target=target,
            actor=actor,
            details={"resolution": resolution, "scope": scope if resolution == "exclude" else None},
        )
        if not won:
            current = await self._store.get(session, operation_id, refresh=True)
            return VetoResolution(operation_id, resolution, current.status, changed=False)

        outcome = VetoResolution(operation_id, resolution, target, changed=True)
        if resolution == "override":
            outcome.new_operation_id = await self._requeue(session, op, actor)
        elif resolution == "exclude":
            if scope == "library":
                rule = await self._exclude_library(session, op, library, actor)
                outcome.related_operation_ids = await self._accept_library_vetoes(
                    session, op, library, actor
                )
            else:
                rule = await self._exclude_file(session, op, file)
            outcome.exclusion_rule_id = rule.id

        await set_file_status(session, [op.file_id], sm.FILE_ACTIVE)
        await clear_review_flag_if_resolved(session, tenant_id)

        logger.info(
            json.dumps(
                {
                    "event": "veto_resolved",
                    "tenant_id": str(tenant_id),
                    "operation_id": operation_id,
                    "resolution": resolution,
                    "actor": actor,
                    "new_operation_id": outcome.new_operation_id,
                }
            )
        )
        return outcome

    async def _requeue(self, session: AsyncSession, op: ArchiveOperation, actor: str) -> str:
        file = await session.get(FileRecord, op.file_id)
        latest = await self._store.latest_for_file(session, op.file_id)
        cycle = (latest.cycle if latest is not None else op.cycle) + 1
        new_op = ArchiveOperation(
            operation_id=sm.make_operation_id(
                op.tenant_id, file.site_id, file.drive_id, file.item_id, sm.ACTION_ARCHIVE, cycle
            ),
            msp_org_id=op.msp_org_id,
            tenant_id=op.tenant_id,
            file_id=op.file_id,
            rule_id=op.rule_id,
            site_id=op.site_id,
            action=sm.ACTION_ARCHIVE,
            cycle=cycle,
            source_path=op.source_path,
            target_tier=op.target_tier,
            size_bytes=file.size_bytes,
            status=sm.PENDING,
        )
        stored, _ = await self._store.create(session, new_op, actor=actor)
        return stored.operation_id

    async def _exclude_file(self, session: AsyncSession, op: ArchiveOperation, file: FileRecord) -> ArchiveRule:
        entry = {
            "siteId": file.site_id,
            "driveId": file.drive_id,
            "itemId": file.item_id,
            "path": file.file_path,
        }
        result = await session.execute(
            select(ArchiveRule)
            .where(
                ArchiveRule.tenant_id == op.tenant_id,
                ArchiveRule.rule_type == "exclusion",
                ArchiveRule.created_by == VETO_EXCLUSION_ACTOR,
                ArchiveRule.name == VETOED_FILES_RULE_NAME,
            )
            .order_by(ArchiveRule.created_at)
            .limit(1)
        )
        rule = result.scalar_one_or_none()
        if rule is None:
            rule = ArchiveRule(
                id=uuid.uuid4(),
                msp_org_id=op.msp_org_id,
                tenant_id=op.tenant_id,
                name=VETOED_FILES_RULE_NAME,
                rule_type="exclusion",
                criteria={"files": [entry]},
                target_tier="Cool",
                is_active=True,
                created_by=VETO_EXCLUSION_ACTOR,
                created_at=utcnow(),
            )
            session.add(rule)
        else:
            files = list(rule.criteria.get("files", []))
            identity = (file.site_id, file.drive_id, file.item_id)
            if identity not in {(f.get("siteId"), f.get("driveId"), f.get("itemId")) for f in files}:
                files.append(entry)
            # Assign a new dict so the JSON column change is detected.
            rule.criteria = {**rule.criteria, "files": files}
            rule.is_active = True
        await session.flush()
        return rule

    async def _exclude_library(
        self, session: AsyncSession, op: ArchiveOperation, library: str, actor: str
    ) -> ArchiveRule:
        result = await session.execute(
            select(ArchiveRule).where(
                ArchiveRule.tenant_id == op.tenant_id,
                ArchiveRule.rule_type == "exclusion",
                ArchiveRule.is_active.is_(True),
            )
        )
        for rule in result.scalars():
            if normalise_path(rule.criteria.get("libraryPath") or "") != normalise_path(library):
                continue
            # A tenant-wide library rule already covers this site.
            if rule.criteria.get("siteId") in (None, op.site_id):
                return rule
        rule = ArchiveRule(
            id=uuid.uuid4(),
            msp_org_id=op.msp_org_id,
            tenant_id=op.tenant_id,
            name=f"Excluded: {library}",
            rule_type="exclusion",
            criteria={"libraryPath": library, "siteId": op.site_id},
            target_tier="Cool",
            is_active=True,
            created_by=VETO_EXCLUSION_ACTOR,
            created_at=utcnow(),
        )
        session.add(rule)
        await session.flush()
        return rule

    async def _accept_library_vetoes(
        self, session: AsyncSession, op: ArchiveOperation, library: str, actor: str
    ) -> list[str]:
        vetoed = await self._store.list_by_status(
            session, op.tenant_id, (sm.VETOED,), site_ids=[op.site_id]
        )
        related = [
            other
            for other in vetoed
            if other.operation_id != op.operation_id
            and normalise_path(library_of(other.source_path)) == normalise_path(library)
        ]
        moved = await self._store.transition_many(
            session,
            [other.operation_id for other in related],
            expected=(sm.VETOED,),
            target=sm.VETO_ACCEPTED,
            actor=actor,
            details={"resolution": "accept", "reason": f"Library '{library}' excluded"},
        )
        moved_set = set(moved)
        await set_file_status(
            session, [o.file_id for o in related if o.operation_id in moved_set], sm.FILE_ACTIVE
        )
        return moved

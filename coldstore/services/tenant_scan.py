"""Tenant scan: enumerate files, evaluate rules, propose archive operations.

:class:`TenantScanner` is the body of the scan workflow started by
:mod:`coldstore.services.scan_scheduler`.  For each selected site of the
tenant it lists files from the :class:`FileSource`, upserts the
:class:`FileRecord` rows (archive state is never overwritten by a scan),
evaluates the tenant's active rules against every non-archived file,
proposes ``Pending`` operations for the matches and starts the approval
cycle.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import settings
from coldstore.core import state_machine as sm
from coldstore.core.retry import retry_transient
from coldstore.core.rule_evaluator import RuleEvaluator
from coldstore.core.timeutil import utcnow
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant, Site
from coldstore.services.approval import ApprovalWorkflow, CycleResult, load_tenant
from coldstore.services.file_source import FileSource, SourceFile

logger = logging.getLogger(__name__)

# Fields a re-scan refreshes; archive_status and blob_tier belong to the pipelines.
_SCANNED_FIELDS = (
    "file_name",
    "file_path",
    "file_type",
    "size_bytes",
    "owner",
    "created_at",
    "last_modified_at",
    "last_accessed_at",
    "compliance_tags",
)


@dataclass
class ScanSummary:
    tenant_id: uuid.UUID
    files_scanned: int = 0
    files_matched: int = 0
    files_excluded: int = 0
    operations_proposed: int = 0
    cycle: CycleResult | None = None


class TenantScanner:
    def __init__(
        self,
        source: FileSource,
        approval: ApprovalWorkflow | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._source = source
        self._approval = approval or ApprovalWorkflow()
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    async def run(
        self, session: AsyncSession, tenant_id: uuid.UUID, *, now: datetime | None = None
    ) -> ScanSummary:
        """Scan one tenant.  Does not commit; the caller owns the transaction."""
        now = now or utcnow()
        tenant = await load_tenant(session, tenant_id)
        summary = ScanSummary(tenant_id=tenant_id)

        sites = (
            await session.execute(
                select(Site).where(Site.tenant_id == tenant_id, Site.is_selected.is_(True))
            )
        ).scalars().all()

        files: list[FileRecord] = []
        for site in sites:
            listed = await retry_transient(
                lambda site_id=site.site_id: self._source.list_files(tenant.external_tenant_id, site_id),
                attempts=settings.TRANSFER_MAX_ATTEMPTS,
                base_delay=settings.TRANSFER_RETRY_BASE_SECONDS,
                step="list_files",
                **self._retry_kwargs,
            )
            files.extend(await self._ingest(session, tenant, site.site_id, listed, now))
        summary.files_scanned = len(files)

        rules = (
            await session.execute(
                select(ArchiveRule).where(
                    ArchiveRule.tenant_id == tenant_id, ArchiveRule.is_active.is_(True)
                )
            )
        ).scalars().all()
        evaluator = RuleEvaluator(rules)

        matches = []
        for file in files:
            if file.archive_status == sm.FILE_ARCHIVED:
                continue
            result = evaluator.evaluate(file, now=now)
            if result.is_excluded:
                summary.files_excluded += 1
            elif result.is_match:
                matches.append((file, result))
        summary.files_matched = len(matches)

        proposed = await self._approval.propose(session, tenant, matches)
        summary.operations_proposed = len(proposed)
        summary.cycle = await self._approval.start_cycle(session, tenant_id, now=now)

        logger.info(
            json.dumps(
                {
                    "event": "tenant_scan_completed",
                    "tenant_id": str(tenant_id),
                    "sites": len(sites),
                    "files_scanned": summary.files_scanned,
                    "files_matched": summary.files_matched,
                    "files_excluded": summary.files_excluded,
                    "operations_proposed": summary.operations_proposed,
                }
            )
        )
        return summary

    async def _ingest(
        self,
        session: AsyncSession,
        tenant: ClientTenant,
        site_id: str,
        listed: list[SourceFile],
        now: datetime,
    ) -> list[FileRecord]:
        existing = {
            (f.drive_id, f.item_id): f
            for f in (
                await session.execute(
                    select(FileRecord).where(
                        FileRecord.tenant_id == tenant.id, FileRecord.site_id == site_id
                    )
                )
            ).scalars()
        }
        records: list[FileRecord] = []
        for source_file in listed:
            record = existing.get((source_file.drive_id, source_file.item_id))
            if record is None:
                record = FileRecord(
                    id=uuid.uuid4(),
                    msp_org_id=tenant.msp_org_id,
                    tenant_id=tenant.id,
                    site_id=site_id,
                    drive_id=source_file.drive_id,
                    item_id=source_file.item_id,
                    archive_status=sm.FILE_ACTIVE,
                )
                session.add(record)
                existing[(source_file.drive_id, source_file.item_id)] = record
            for name in _SCANNED_FIELDS:
                setattr(record, name, getattr(source_file, name))
            record.scanned_at = now
            records.append(record)
        await session.flush()
        return records

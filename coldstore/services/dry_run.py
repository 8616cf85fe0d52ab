"""DryRunEstimator: what an archive rule would do, without doing it.

Previews read the tenant's file records and run them through the same
:class:`~coldstore.core.rule_evaluator.RuleEvaluator` the scan workflow uses,
with the tenant's *current* active exclusion rules in force.  Nothing is
written.

A preview answers four questions for a candidate rule:

* how many active files it would match (``file_count``) and their total
  size,
* what moving them would save per year at the configured rates,
* which sites contribute most (``top_sites``: file count descending, then
  bytes descending, at most ``PREVIEW_TOP_SITES`` entries),
* how many active files the current exclusions protect, whether or not the
  candidate would match them (``excluded_file_count``).

Scanning stops after ``PREVIEW_MAX_FILES`` records; ``truncated`` reports it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import SimpleNamespace
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import settings
from coldstore.core import state_machine as sm
from coldstore.core.errors import NotFoundError, ValidationError
from coldstore.core.rates import annual_savings
from coldstore.core.rule_evaluator import (
    CompiledRule,
    RuleEvaluator,
    matches_archive_rule,
    matches_exclusion,
)
from coldstore.core.timeutil import utcnow
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import Site
from coldstore.schemas.criteria import ARCHIVE_RULE_TYPES, parse_criteria, validate_target_tier


@dataclass(frozen=True)
class SitePreview:
    site_id: str
    site_name: str
    file_count: int
    total_size_bytes: int


@dataclass
class PreviewResult:
    file_count: int = 0
    total_size_bytes: int = 0
    estimated_annual_savings: float = 0.0
    top_sites: list[SitePreview] = field(default_factory=list)
    excluded_file_count: int = 0
    truncated: bool = False


@dataclass
class ExclusionScope:
    rule_id: uuid.UUID
    file_count: int = 0
    total_size_bytes: int = 0
    truncated: bool = False


class DryRunEstimator:
    def __init__(self, *, top_sites: int | None = None, max_files: int | None = None) -> None:
        self._top_sites = top_sites or settings.PREVIEW_TOP_SITES
        self._max_files = max_files or settings.PREVIEW_MAX_FILES

    async def preview(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        rule_type: str,
        criteria: dict[str, Any],
        target_tier: str,
        *,
        now: datetime | None = None,
    ) -> PreviewResult:
        """Preview an unsaved archive rule.

        Raises:
            ValidationError: Exclusion rule type, invalid criteria or an
                unsupported tier.
        """
        if rule_type not in ARCHIVE_RULE_TYPES:
            raise ValidationError(
                f"Rule type '{rule_type}' cannot be previewed as an archive rule"
            )
        parse_criteria(rule_type, criteria)
        validate_target_tier(target_tier)
        candidate = SimpleNamespace(
            id=uuid.uuid4(),
            rule_type=rule_type,
            criteria=criteria,
            target_tier=target_tier,
            is_active=True,
            created_at=None,
        )
        return await self._run(session, tenant_id, candidate, now=now)

    async def preview_rule(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        rule_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> PreviewResult:
        """Preview a stored archive rule (active or not)."""
        rule = await _load_rule(session, tenant_id, rule_id)
        if rule.rule_type == "exclusion":
            raise ValidationError(
                "Exclusion rules cannot be previewed as archive rules; use the exclusion scope"
            )
        return await self._run(session, tenant_id, rule, now=now)

    async def exclusion_scope(
        self, session: AsyncSession, tenant_id: uuid.UUID, rule_id: uuid.UUID
    ) -> ExclusionScope:
        """Count the active files an exclusion rule protects."""
        rule = await _load_rule(session, tenant_id, rule_id)
        if rule.rule_type != "exclusion":
            raise ValidationError(f"Rule {rule_id} is not an exclusion rule")
        criteria = parse_criteria("exclusion", rule.criteria)

        scope = ExclusionScope(rule_id=rule.id)
        files, scope.truncated = await self._load_files(session, tenant_id)
        for file in files:
            if matches_exclusion(file, criteria):
                scope.file_count += 1
                scope.total_size_bytes += file.size_bytes
        return scope

    async def _run(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        rule: Any,
        *,
        now: datetime | None,
    ) -> PreviewResult:
        now = now or utcnow()
        exclusions = (
            await session.execute(
                select(ArchiveRule).where(
                    ArchiveRule.tenant_id == tenant_id,
                    ArchiveRule.rule_type == "exclusion",
                    ArchiveRule.is_active.is_(True),
                )
            )
        ).scalars().all()
        evaluator = RuleEvaluator(exclusions)
        # The candidate is evaluated on its own, active or not.
        compiled = CompiledRule.from_rule(rule)

        files, truncated = await self._load_files(session, tenant_id)
        result = PreviewResult(truncated=truncated)
        per_site: dict[str, list[int]] = {}
        for file in files:
            if evaluator.matching_exclusion(file) is not None:
                result.excluded_file_count += 1
                continue
            if not matches_archive_rule(file, compiled, now):
                continue
            result.file_count += 1
            result.total_size_bytes += file.size_bytes
            counts = per_site.setdefault(file.site_id, [0, 0])
            counts[0] += 1
            counts[1] += file.size_bytes

        result.estimated_annual_savings = annual_savings(result.total_size_bytes, rule.target_tier)
        ranked = sorted(per_site.items(), key=lambda kv: (-kv[1][0], -kv[1][1], kv[0]))
        ranked = ranked[: self._top_sites]
        names = await _site_names(session, tenant_id, [site_id for site_id, _ in ranked])
        result.top_sites = [
            SitePreview(
                site_id=site_id,
                site_name=names.get(site_id) or site_id,
                file_count=count,
                total_size_bytes=size,
            )
            for site_id, (count, size) in ranked
        ]
        return result

    async def _load_files(
        self, session: AsyncSession, tenant_id: uuid.UUID
    ) -> tuple[list[FileRecord], bool]:
        result = await session.execute(
            select(FileRecord)
            .where(
                FileRecord.tenant_id == tenant_id,
                FileRecord.archive_status == sm.FILE_ACTIVE,
            )
            .order_by(FileRecord.id)
            .limit(self._max_files + 1)
        )
        files = list(result.scalars().all())
        if len(files) > self._max_files:
            return files[: self._max_files], True
        return files, False


async def _load_rule(session: AsyncSession, tenant_id: uuid.UUID, rule_id: uuid.UUID) -> ArchiveRule:
    result = await session.execute(
        select(ArchiveRule).where(ArchiveRule.id == rule_id, ArchiveRule.tenant_id == tenant_id)
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        raise NotFoundError(f"Rule {rule_id} not found")
    return rule


async def _site_names(
    session: AsyncSession, tenant_id: uuid.UUID, site_ids: list[str]
) -> dict[str, str]:
    if not site_ids:
        return {}
    result = await session.execute(
        select(Site.site_id, Site.display_name).where(
            Site.tenant_id == tenant_id, Site.site_id.in_(site_ids)
        )
    )
    return {site_id: name for site_id, name in result.all()}

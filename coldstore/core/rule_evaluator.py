"""RuleEvaluator: decide whether a file is excluded, matched, and at which tier.

Evaluation is pure: no I/O, no mutation of the inputs, safe to call
repeatedly and concurrently (previews call it on thousands of files).

Precedence
----------
1. **Exclusion rules** are checked first.  If any active exclusion rule
   matches, the file is excluded and no archive rule is considered.
2. **Archive rules** are checked in a deterministic order and the first
   match wins.  The default order is creation time ascending with the rule id
   as a tie-breaker, so the oldest rule applies first.  With
   ``RULE_TIE_BREAK=coldest_tier`` rules targeting cheaper tiers are tried
   first, creation order breaking ties within a tier.

Archived files must be filtered out by the caller before evaluation.

Usage::

    from coldstore.core.rule_evaluator import RuleEvaluator

    evaluator = RuleEvaluator(active_rules)
    for file in files:
        result = evaluator.evaluate(file, now=now)
        if result.is_match:
            ...
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Protocol

from coldstore.config import settings
from coldstore.core.errors import ValidationError
from coldstore.core.rates import coldest_tier_rank
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.schemas.criteria import (
    AgeCriteria,
    Criteria,
    ExclusionCriteria,
    OwnerCriteria,
    SizeCriteria,
    TypeCriteria,
    normalise_extension,
    normalise_path,
    parse_criteria,
)

logger = logging.getLogger(__name__)

# Sorts not-yet-persisted rules (previews) after every stored rule.
_UNSAVED_CREATED_AT = datetime.max.replace(tzinfo=timezone.utc)


class FileLike(Protocol):
    """Attributes the evaluator reads from a file record."""

    site_id: str
    drive_id: str
    item_id: str
    file_name: str
    file_path: str
    file_type: str
    size_bytes: int
    owner: str | None
    last_modified_at: datetime
    last_accessed_at: datetime | None
    compliance_tags: list[str] | None


@dataclass(frozen=True)
class EvaluationResult:
    is_excluded: bool
    matched_archive_rule_id: uuid.UUID | None = None
    matched_exclusion_rule_id: uuid.UUID | None = None
    target_tier: str | None = None

    @property
    def is_match(self) -> bool:
        return not self.is_excluded and self.matched_archive_rule_id is not None


_NO_MATCH = EvaluationResult(is_excluded=False)


@dataclass(frozen=True)
class CompiledRule:
    """An active rule with its criteria parsed once."""

    id: uuid.UUID
    rule_type: str
    criteria: Criteria
    target_tier: str | None
    created_at: datetime

    @classmethod
    def from_rule(cls, rule: Any) -> "CompiledRule":
        return cls(
            id=rule.id,
            rule_type=rule.rule_type,
            criteria=parse_criteria(rule.rule_type, rule.criteria),
            target_tier=rule.target_tier,
            created_at=as_utc(rule.created_at) or _UNSAVED_CREATED_AT,
        )

    @property
    def creation_key(self) -> tuple[datetime, str]:
        return (self.created_at, str(self.id))


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def file_extension(file: FileLike) -> str:
    if file.file_type:
        return normalise_extension(file.file_type)
    name = file.file_name or ""
    return normalise_extension(name.rsplit(".", 1)[1]) if "." in name else ""


def _path_has_prefix(path: str, prefix: str) -> bool:
    prefix = normalise_path(prefix)
    if not prefix:
        return False
    return path == prefix or path.startswith(prefix + "/")


def matches_age(file: FileLike, criteria: AgeCriteria, now: datetime) -> bool:
    reference = as_utc(file.last_accessed_at) or as_utc(file.last_modified_at)
    if reference is None:
        return False
    return now - reference >= timedelta(days=criteria.inactive_days)


def matches_size(file: FileLike, criteria: SizeCriteria) -> bool:
    if criteria.min_size_bytes is not None and file.size_bytes < criteria.min_size_bytes:
        return False
    if criteria.max_size_bytes is not None and file.size_bytes > criteria.max_size_bytes:
        return False
    return True


def matches_type(file: FileLike, file_types: Iterable[str]) -> bool:
    extension = file_extension(file)
    return bool(extension) and extension in set(file_types)


def matches_owner(file: FileLike, criteria: OwnerCriteria) -> bool:
    return bool(file.owner) and file.owner.strip().lower() in criteria.emails


def matches_exclusion(file: FileLike, criteria: ExclusionCriteria) -> bool:
    if criteria.site_id and file.site_id != criteria.site_id:
        return False
    if criteria.files and (file.site_id, file.drive_id, file.item_id) in {
        f.identity for f in criteria.files
    }:
        return True
    path = normalise_path(file.file_path or "")
    if criteria.library_path and _path_has_prefix(path, criteria.library_path):
        return True
    if criteria.folder_path and _path_has_prefix(path, criteria.folder_path):
        return True
    if criteria.file_paths and path in {normalise_path(p) for p in criteria.file_paths}:
        return True
    if criteria.file_types and matches_type(file, criteria.file_types):
        return True
    if criteria.compliance_tags:
        tags = {t.strip().lower() for t in (file.compliance_tags or [])}
        if tags & {t.strip().lower() for t in criteria.compliance_tags}:
            return True
    return False


def matches_archive_rule(file: FileLike, rule: CompiledRule, now: datetime) -> bool:
    criteria = rule.criteria
    if isinstance(criteria, AgeCriteria):
        return matches_age(file, criteria, now)
    if isinstance(criteria, SizeCriteria):
        return matches_size(file, criteria)
    if isinstance(criteria, TypeCriteria):
        return matches_type(file, criteria.file_types)
    if isinstance(criteria, OwnerCriteria):
        return matches_owner(file, criteria)
    return False


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class RuleEvaluator:
    """Evaluate files against a tenant's active rule set.

    Rules are compiled (criteria parsed and ordered) once at construction.
    Inactive rules are ignored.  A stored rule whose criteria no longer
    validate is skipped and logged rather than failing the whole evaluation.

    Args:
        rules: ``ArchiveRule`` rows (or any objects with ``id``,
            ``rule_type``, ``criteria``, ``target_tier``, ``is_active`` and
            ``created_at``).
        tie_break: ``"creation_order"`` or ``"coldest_tier"``.  Defaults to
            ``settings.RULE_TIE_BREAK``.
    """

    def __init__(self, rules: Iterable[Any], *, tie_break: str | None = None) -> None:
        self._tie_break = tie_break or settings.RULE_TIE_BREAK
        exclusions: list[CompiledRule] = []
        archive: list[CompiledRule] = []
        for rule in rules:
            if not getattr(rule, "is_active", True):
                continue
            try:
                compiled = CompiledRule.from_rule(rule)
            except ValidationError as exc:
                logger.warning(
                    json.dumps(
                        {"event": "rule_criteria_invalid", "rule_id": str(rule.id), "error": str(exc)}
                    )
                )
                continue
            if compiled.rule_type == "exclusion":
                exclusions.append(compiled)
            else:
                archive.append(compiled)

        self.exclusion_rules: list[CompiledRule] = sorted(exclusions, key=lambda r: r.creation_key)
        self.archive_rules: list[CompiledRule] = sorted(archive, key=self._archive_sort_key)

    def _archive_sort_key(self, rule: CompiledRule) -> tuple:
        if self._tie_break == "coldest_tier":
            return (coldest_tier_rank(rule.target_tier or ""), *rule.creation_key)
        return rule.creation_key

    def matching_exclusion(self, file: FileLike) -> CompiledRule | None:
        for rule in self.exclusion_rules:
            if matches_exclusion(file, rule.criteria):
                return rule
        return None

    def evaluate(self, file: FileLike, now: datetime | None = None) -> EvaluationResult:
        now = as_utc(now) or utcnow()

        exclusion = self.matching_exclusion(file)
        if exclusion is not None:
            return EvaluationResult(is_excluded=True, matched_exclusion_rule_id=exclusion.id)

        for rule in self.archive_rules:
            if matches_archive_rule(file, rule, now):
                return EvaluationResult(
                    is_excluded=False,
                    matched_archive_rule_id=rule.id,
                    target_tier=rule.target_tier,
                )
        return _NO_MATCH


def evaluate(file: FileLike, active_rules: Iterable[Any], now: datetime | None = None) -> EvaluationResult:
    """One-shot convenience wrapper around :class:`RuleEvaluator`."""
    return RuleEvaluator(active_rules).evaluate(file, now=now)

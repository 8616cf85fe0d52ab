"""Unit tests for coldstore/core/rule_evaluator.py.

The evaluator is pure, so these tests use plain namespaces for files and rules.

Test coverage:
* Each archive predicate (age, size, type, owner) including boundaries.
* Exclusion precedence over archive rules; exclusion path prefix matching.
* Deterministic first-match ordering (creation order, coldest-tier option).
* Inactive and invalid stored rules are skipped.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from coldstore.core.rule_evaluator import RuleEvaluator, evaluate, file_extension

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_file(**overrides) -> SimpleNamespace:
    defaults = dict(
        site_id="site-finance",
        drive_id="drive-1",
        item_id="item-1",
        file_name="report.pdf",
        file_path="Shared Documents/Finance/report.pdf",
        file_type="pdf",
        size_bytes=10 * 1024 * 1024,
        owner="alice@contoso.com",
        last_modified_at=NOW - timedelta(days=400),
        last_accessed_at=None,
        compliance_tags=None,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _make_rule(rule_type: str, criteria: dict, **overrides) -> SimpleNamespace:
    defaults = dict(
        id=uuid.uuid4(),
        rule_type=rule_type,
        criteria=criteria,
        target_tier="Cool",
        is_active=True,
        created_at=NOW - timedelta(days=30),
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


class TestArchivePredicates:
    def test_age_match_at_exact_boundary(self) -> None:
        rule = _make_rule("age", {"inactiveDays": 180})
        file = _make_file(last_modified_at=NOW - timedelta(days=180))
        assert evaluate(file, [rule], now=NOW).matched_archive_rule_id == rule.id

    def test_age_no_match_just_inside_window(self) -> None:
        rule = _make_rule("age", {"inactiveDays": 180})
        file = _make_file(last_modified_at=NOW - timedelta(days=179, hours=23))
        assert not evaluate(file, [rule], now=NOW).is_match

    def test_age_prefers_last_accessed(self) -> None:
        rule = _make_rule("age", {"inactiveDays": 180})
        file = _make_file(last_accessed_at=NOW - timedelta(days=10))
        assert not evaluate(file, [rule], now=NOW).is_match

    def test_age_handles_naive_timestamps(self) -> None:
        rule = _make_rule("age", {"inactiveDays": 30})
        file = _make_file(last_modified_at=(NOW - timedelta(days=31)).replace(tzinfo=None))
        assert evaluate(file, [rule], now=NOW).is_match

    @pytest.mark.parametrize(
        "size,expected",
        [(1024, True), (2048, True), (1023, False), (2049, False)],
    )
    def test_size_bounds_inclusive(self, size: int, expected: bool) -> None:
        rule = _make_rule("size", {"minSizeBytes": 1024, "maxSizeBytes": 2048})
        assert evaluate(_make_file(size_bytes=size), [rule], now=NOW).is_match is expected

    def test_type_uses_file_type_case_insensitive(self) -> None:
        rule = _make_rule("type", {"fileTypes": [".PDF"]})
        assert evaluate(_make_file(file_type="PDF"), [rule], now=NOW).is_match

    def test_type_falls_back_to_file_name(self) -> None:
        file = _make_file(file_type="", file_name="clip.MP4")
        assert file_extension(file) == "mp4"

    def test_type_no_extension_never_matches(self) -> None:
        rule = _make_rule("type", {"fileTypes": ["pdf"]})
        file = _make_file(file_type="", file_name="README")
        assert not evaluate(file, [rule], now=NOW).is_match

    def test_owner_case_insensitive(self) -> None:
        rule = _make_rule("owner", {"owners": ["ALICE@contoso.com"]})
        assert evaluate(_make_file(), [rule], now=NOW).is_match

    def test_owner_missing_never_matches(self) -> None:
        rule = _make_rule("owner", {"owner": "alice@contoso.com"})
        assert not evaluate(_make_file(owner=None), [rule], now=NOW).is_match


class TestExclusions:
    def test_exclusion_wins_over_archive_rule(self) -> None:
        archive = _make_rule("age", {"inactiveDays": 30})
        exclusion = _make_rule("exclusion", {"folderPath": "/Shared Documents/Finance"})
        result = evaluate(_make_file(), [archive, exclusion], now=NOW)
        assert result.is_excluded
        assert result.matched_exclusion_rule_id == exclusion.id
        assert result.matched_archive_rule_id is None
        assert not result.is_match

    def test_folder_prefix_respects_segment_boundary(self) -> None:
        exclusion = _make_rule("exclusion", {"folderPath": "Shared Documents/Fin"})
        assert not evaluate(_make_file(), [exclusion], now=NOW).is_excluded

    def test_exact_file_path(self) -> None:
        exclusion = _make_rule(
            "exclusion", {"filePaths": ["shared documents/finance/REPORT.pdf"]}
        )
        assert evaluate(_make_file(), [exclusion], now=NOW).is_excluded

    def test_file_identity_is_scoped_to_its_site(self) -> None:
        archive = _make_rule("age", {"inactiveDays": 30})
        exclusion = _make_rule(
            "exclusion",
            {
                "files": [
                    {
                        "siteId": "site-finance",
                        "driveId": "drive-1",
                        "itemId": "item-1",
                        "path": "Shared Documents/Finance/report.pdf",
                    }
                ]
            },
        )
        same_file = evaluate(_make_file(), [archive, exclusion], now=NOW)
        other_site = evaluate(
            _make_file(site_id="site-hr", item_id="item-9"), [archive, exclusion], now=NOW
        )
        assert same_file.is_excluded
        assert not other_site.is_excluded
        assert other_site.is_match

    def test_site_id_limits_library_exclusion(self) -> None:
        exclusion = _make_rule(
            "exclusion", {"libraryPath": "Shared Documents", "siteId": "site-finance"}
        )
        assert evaluate(_make_file(), [exclusion], now=NOW).is_excluded
        assert not evaluate(_make_file(site_id="site-hr"), [exclusion], now=NOW).is_excluded

    def test_compliance_tag(self) -> None:
        exclusion = _make_rule("exclusion", {"complianceTags": ["legal hold"]})
        file = _make_file(compliance_tags=["Legal Hold"])
        assert evaluate(file, [exclusion], now=NOW).is_excluded

    def test_file_type(self) -> None:
        exclusion = _make_rule("exclusion", {"fileTypes": ["pdf"]})
        assert evaluate(_make_file(), [exclusion], now=NOW).is_excluded


class TestOrdering:
    def test_oldest_rule_wins(self) -> None:
        newer = _make_rule("age", {"inactiveDays": 30}, target_tier="Archive", created_at=NOW)
        older = _make_rule(
            "size", {"minSizeBytes": 1}, target_tier="Cool", created_at=NOW - timedelta(days=90)
        )
        result = RuleEvaluator([newer, older], tie_break="creation_order").evaluate(
            _make_file(), now=NOW
        )
        assert result.matched_archive_rule_id == older.id
        assert result.target_tier == "Cool"

    def test_coldest_tier_tie_break(self) -> None:
        cool = _make_rule("age", {"inactiveDays": 30}, target_tier="Cool")
        archive = _make_rule("size", {"minSizeBytes": 1}, target_tier="Archive", created_at=NOW)
        result = RuleEvaluator([cool, archive], tie_break="coldest_tier").evaluate(
            _make_file(), now=NOW
        )
        assert result.target_tier == "Archive"

    def test_result_is_deterministic(self) -> None:
        rules = [_make_rule("age", {"inactiveDays": 30}) for _ in range(5)]
        evaluator = RuleEvaluator(rules)
        first = evaluator.evaluate(_make_file(), now=NOW)
        assert all(evaluator.evaluate(_make_file(), now=NOW) == first for _ in range(3))
        assert RuleEvaluator(list(reversed(rules))).evaluate(_make_file(), now=NOW) == first


class TestRuleFiltering:
    def test_inactive_rule_ignored(self) -> None:
        rule = _make_rule("age", {"inactiveDays": 30}, is_active=False)
        assert not evaluate(_make_file(), [rule], now=NOW).is_match

    def test_invalid_stored_criteria_skipped(self) -> None:
        broken = _make_rule("age", {"inactiveDays": "soon"})
        valid = _make_rule("size", {"minSizeBytes": 1})
        evaluator = RuleEvaluator([broken, valid])
        assert [r.id for r in evaluator.archive_rules] == [valid.id]

    def test_no_rules_no_match(self) -> None:
        result = evaluate(_make_file(), [], now=NOW)
        assert not result.is_excluded
        assert not result.is_match

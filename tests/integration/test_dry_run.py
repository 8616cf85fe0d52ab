"""Integration tests for DryRunEstimator.

Default rates: source 0.20, Cool 0.01, Cold 0.006, Archive 0.002 per
GB-month, so one GiB moved to Cool saves 0.19 × 12 = 2.28 a year.

Test coverage
-------------
- unsaved rule preview: counts, size, savings; only Active files are read
- active exclusions reduce the count; every Active file they protect is
  reported, whether or not the candidate rule matches it
- top sites ordered by file count then size, capped, named from the site
  inventory
- truncation flag when the inventory exceeds the cap
- stored rule preview, exclusion scope, and the validation errors
"""
from __future__ import annotations

import uuid

import pytest

from coldstore.core import state_machine as sm
from coldstore.core.errors import NotFoundError, ValidationError
from coldstore.services.dry_run import DryRunEstimator

from .conftest import NOW

GIB = 1024**3


class TestPreview:
    async def test_counts_matching_files(self, session, tenant, make_file):
        await make_file(size_bytes=GIB)
        await make_file(size_bytes=GIB, last_modified_at=NOW)  # recently used
        await make_file(size_bytes=GIB, archive_status=sm.FILE_ARCHIVED, blob_tier="Cool")

        result = await DryRunEstimator().preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert result.file_count == 1
        assert result.total_size_bytes == GIB
        assert result.estimated_annual_savings == pytest.approx(2.28)
        assert result.excluded_file_count == 0
        assert result.truncated is False

    async def test_exclusions_reported_separately(self, session, tenant, make_file, make_rule):
        await make_rule("exclusion", {"libraryPath": "Legal"}, name="Legal hold")
        await make_file(file_path="Legal/contract.pdf")
        await make_file()

        result = await DryRunEstimator().preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert result.file_count == 1
        assert result.excluded_file_count == 1

    async def test_excluded_count_does_not_depend_on_candidate(
        self, session, tenant, make_file, make_rule
    ):
        await make_rule("exclusion", {"libraryPath": "Legal"}, name="Legal hold")
        await make_file(file_path="Legal/old.pdf")
        await make_file(file_path="Legal/recent.pdf", last_modified_at=NOW)
        await make_file(file_path="Legal/pending.pdf", archive_status=sm.FILE_AWAITING_APPROVAL)
        await make_file()

        result = await DryRunEstimator().preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert result.file_count == 1
        assert result.excluded_file_count == 2

    async def test_only_active_files_are_counted(self, session, tenant, make_file):
        await make_file()
        await make_file(archive_status=sm.FILE_AWAITING_APPROVAL)

        result = await DryRunEstimator().preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert result.file_count == 1

    async def test_inactive_exclusion_ignored(self, session, tenant, make_file, make_rule):
        await make_rule("exclusion", {"libraryPath": "Legal"}, is_active=False)
        await make_file(file_path="Legal/contract.pdf")

        result = await DryRunEstimator().preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )
        assert result.file_count == 1

    async def test_top_sites_ranked_and_capped(self, session, tenant, make_file):
        await make_file(site_id="site-finance")
        await make_file(site_id="site-finance")
        await make_file(site_id="site-hr", size_bytes=5 * GIB)
        await make_file(site_id="site-ops", size_bytes=1)

        result = await DryRunEstimator(top_sites=2).preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert [s.site_id for s in result.top_sites] == ["site-finance", "site-hr"]
        assert result.top_sites[0].site_name == "Finance"
        assert result.top_sites[0].file_count == 2
        assert result.top_sites[1].site_name == "site-hr"
        assert result.file_count == 4

    async def test_truncated(self, session, tenant, make_file):
        for _ in range(3):
            await make_file()

        result = await DryRunEstimator(max_files=2).preview(
            session, tenant.id, "age", {"inactiveDays": 180}, "Cool", now=NOW
        )

        assert result.truncated is True
        assert result.file_count == 2

    async def test_exclusion_type_rejected(self, session, tenant):
        with pytest.raises(ValidationError):
            await DryRunEstimator().preview(
                session, tenant.id, "exclusion", {"libraryPath": "Legal"}, "Cool", now=NOW
            )

    async def test_bad_tier_rejected(self, session, tenant):
        with pytest.raises(ValidationError):
            await DryRunEstimator().preview(
                session, tenant.id, "age", {"inactiveDays": 180}, "Hot", now=NOW
            )


class TestStoredRules:
    async def test_preview_rule(self, session, tenant, make_file, make_rule):
        rule = await make_rule("size", {"minSizeBytes": 1000}, target_tier="Archive", is_active=False)
        await make_file(size_bytes=GIB)
        await make_file(size_bytes=10)

        result = await DryRunEstimator().preview_rule(session, tenant.id, rule.id, now=NOW)

        assert result.file_count == 1
        assert result.estimated_annual_savings == pytest.approx(2.38)

    async def test_preview_exclusion_rule_rejected(self, session, tenant, make_rule):
        rule = await make_rule("exclusion", {"libraryPath": "Legal"})
        with pytest.raises(ValidationError):
            await DryRunEstimator().preview_rule(session, tenant.id, rule.id, now=NOW)

    async def test_exclusion_scope(self, session, tenant, make_file, make_rule):
        rule = await make_rule("exclusion", {"libraryPath": "Legal"})
        await make_file(file_path="Legal/a.pdf", size_bytes=100)
        await make_file(file_path="Legal/b.pdf", size_bytes=200)
        await make_file(file_path="Legal/c.pdf", archive_status=sm.FILE_ARCHIVED)
        await make_file()

        scope = await DryRunEstimator().exclusion_scope(session, tenant.id, rule.id)

        assert scope.rule_id == rule.id
        assert scope.file_count == 2
        assert scope.total_size_bytes == 300

    async def test_exclusion_scope_of_archive_rule(self, session, tenant, make_rule):
        rule = await make_rule("age")
        with pytest.raises(ValidationError):
            await DryRunEstimator().exclusion_scope(session, tenant.id, rule.id)

    async def test_unknown_rule(self, session, tenant):
        with pytest.raises(NotFoundError):
            await DryRunEstimator().preview_rule(session, tenant.id, uuid.uuid4(), now=NOW)

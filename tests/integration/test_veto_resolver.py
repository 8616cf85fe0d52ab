"""Integration tests for VetoResolver.

Test coverage
-------------
- accept: VetoAccepted, file stays Active, review flag cleared when nothing
  else needs attention
- override: VetoOverridden plus a new Pending operation at the next cycle
- exclude (file): appends the file identity to the system "Vetoed files"
  exclusion rule; a same-path file on another site stays eligible
- exclude (library): creates one site-scoped libraryPath rule and accepts
  the library's other vetoed operations on that site only
- repeat resolution is a no-op; non-vetoed operations and unknown
  resolutions / scopes are rejected
"""
from __future__ import annotations

import uuid

import pytest
from sqlalchemy import select

from coldstore.core import state_machine as sm
from coldstore.core.errors import NotFoundError, ValidationError
from coldstore.core.rule_evaluator import evaluate
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant
from coldstore.services.veto import (
    VETO_EXCLUSION_ACTOR,
    VETOED_FILES_RULE_NAME,
    VetoResolver,
    library_of,
)

from .conftest import NOW

ADMIN = "admin@northwind.com"


async def _reload(session, model, **where):
    stmt = select(model).filter_by(**where).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().all()


@pytest.fixture
def make_vetoed(session, tenant, make_file, make_operation):
    async def _make(path: str | None = None, **overrides):
        if path:
            overrides["file_path"] = path
        file = await make_file(**overrides)
        op = await make_operation(
            file, status=sm.VETOED, source_path=file.file_path, vetoed_by="owner", veto_reason="keep"
        )
        return file, op

    return _make


class TestLibraryOf:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("Shared Documents/Reports/q1.pdf", "Shared Documents"),
            ("/Legal/contract.docx", "Legal"),
            ("Legal\\Archive\\old.docx", "Legal"),
            ("", ""),
        ],
    )
    def test_first_segment(self, path, expected):
        assert library_of(path) == expected


class TestAccept:
    async def test_accept_clears_review_flag(self, session, tenant, make_vetoed):
        tenant.review_flagged = True
        await session.commit()
        file, op = await make_vetoed()

        outcome = await VetoResolver().resolve(
            session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="accept", actor=ADMIN
        )
        await session.commit()

        assert outcome.changed is True
        assert outcome.status == sm.VETO_ACCEPTED
        (stored_tenant,) = await _reload(session, ClientTenant, id=tenant.id)
        assert stored_tenant.review_flagged is False
        (stored_file,) = await _reload(session, FileRecord, id=file.id)
        assert stored_file.archive_status == sm.FILE_ACTIVE

    async def test_flag_kept_while_other_vetoes_remain(self, session, tenant, make_vetoed):
        tenant.review_flagged = True
        await session.commit()
        _, first = await make_vetoed()
        await make_vetoed()

        await VetoResolver().resolve(
            session, tenant_id=tenant.id, operation_id=first.operation_id, resolution="accept", actor=ADMIN
        )
        await session.commit()

        (stored_tenant,) = await _reload(session, ClientTenant, id=tenant.id)
        assert stored_tenant.review_flagged is True

    async def test_repeat_is_noop(self, session, tenant, make_vetoed):
        _, op = await make_vetoed()
        resolver = VetoResolver()
        await resolver.resolve(
            session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="accept", actor=ADMIN
        )
        await session.commit()

        again = await resolver.resolve(
            session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="accept", actor=ADMIN
        )
        assert again.changed is False
        assert again.status == sm.VETO_ACCEPTED


class TestOverride:
    async def test_creates_next_cycle_pending_operation(self, session, tenant, make_vetoed):
        file, op = await make_vetoed()

        outcome = await VetoResolver().resolve(
            session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="override", actor=ADMIN
        )
        await session.commit()

        assert outcome.status == sm.VETO_OVERRIDDEN
        expected_id = sm.make_operation_id(
            tenant.id, file.site_id, file.drive_id, file.item_id, sm.ACTION_ARCHIVE, 2
        )
        assert outcome.new_operation_id == expected_id
        (new_op,) = await _reload(session, ArchiveOperation, operation_id=expected_id)
        assert new_op.status == sm.PENDING
        assert new_op.cycle == 2
        assert new_op.target_tier == op.target_tier


class TestExclude:
    async def test_file_scope_extends_system_rule(self, session, tenant, make_vetoed):
        first_file, first = await make_vetoed("Shared Documents/a.pdf")
        second_file, second = await make_vetoed("Shared Documents/b.pdf")
        resolver = VetoResolver()

        one = await resolver.resolve(
            session, tenant_id=tenant.id, operation_id=first.operation_id, resolution="exclude", actor=ADMIN
        )
        two = await resolver.resolve(
            session, tenant_id=tenant.id, operation_id=second.operation_id, resolution="exclude", actor=ADMIN
        )
        await session.commit()

        assert one.exclusion_rule_id == two.exclusion_rule_id
        (rule,) = await _reload(session, ArchiveRule, tenant_id=tenant.id, rule_type="exclusion")
        assert rule.name == VETOED_FILES_RULE_NAME
        assert rule.created_by == VETO_EXCLUSION_ACTOR
        assert [f["itemId"] for f in rule.criteria["files"]] == [first_file.item_id, second_file.item_id]
        assert {f["siteId"] for f in rule.criteria["files"]} == {"site-finance"}
        assert "filePaths" not in rule.criteria

    async def test_file_scope_does_not_reach_other_sites(
        self, session, tenant, make_vetoed, make_file, make_rule
    ):
        await make_rule("age", {"inactiveDays": 30})
        vetoed_file, op = await make_vetoed("Shared Documents/budget.xlsx")
        other_site_file = await make_file(site_id="site-hr", file_path="Shared Documents/budget.xlsx")

        await VetoResolver().resolve(
            session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="exclude", actor=ADMIN
        )
        await session.commit()

        rules = await _reload(session, ArchiveRule, tenant_id=tenant.id, is_active=True)
        assert evaluate(vetoed_file, rules, now=NOW).is_excluded
        other = evaluate(other_site_file, rules, now=NOW)
        assert not other.is_excluded
        assert other.is_match

    async def test_library_scope_accepts_sibling_vetoes(self, session, tenant, make_vetoed):
        _, target = await make_vetoed("Legal/contracts/a.docx")
        _, sibling = await make_vetoed("Legal/old/b.docx")
        _, other_library = await make_vetoed("Finance/c.xlsx")
        _, other_site = await make_vetoed("Legal/d.docx", site_id="site-hr")

        outcome = await VetoResolver().resolve(
            session,
            tenant_id=tenant.id,
            operation_id=target.operation_id,
            resolution="exclude",
            actor=ADMIN,
            scope="library",
        )
        await session.commit()

        assert outcome.status == sm.EXCLUDED
        assert outcome.related_operation_ids == [sibling.operation_id]
        (rule,) = await _reload(session, ArchiveRule, id=outcome.exclusion_rule_id)
        assert rule.name == "Excluded: Legal"
        assert rule.criteria == {"libraryPath": "Legal", "siteId": "site-finance"}
        (stored_sibling,) = await _reload(session, ArchiveOperation, operation_id=sibling.operation_id)
        assert stored_sibling.status == sm.VETO_ACCEPTED
        (untouched,) = await _reload(session, ArchiveOperation, operation_id=other_library.operation_id)
        assert untouched.status == sm.VETOED
        (other_site_op,) = await _reload(session, ArchiveOperation, operation_id=other_site.operation_id)
        assert other_site_op.status == sm.VETOED

    async def test_library_scope_does_not_reach_other_sites(
        self, session, tenant, make_vetoed, make_file, make_rule
    ):
        await make_rule("age", {"inactiveDays": 30})
        _, op = await make_vetoed("Legal/a.docx")
        same_site = await make_file(file_path="Legal/b.docx")
        other_site = await make_file(site_id="site-hr", file_path="Legal/b.docx")

        await VetoResolver().resolve(
            session,
            tenant_id=tenant.id,
            operation_id=op.operation_id,
            resolution="exclude",
            actor=ADMIN,
            scope="library",
        )
        await session.commit()

        rules = await _reload(session, ArchiveRule, tenant_id=tenant.id, is_active=True)
        assert evaluate(same_site, rules, now=NOW).is_excluded
        assert not evaluate(other_site, rules, now=NOW).is_excluded

    async def test_library_rule_reused(self, session, tenant, make_vetoed, make_rule):
        existing = await make_rule("exclusion", {"libraryPath": "Legal"}, name="Legal hold")
        _, op = await make_vetoed("Legal/a.docx")

        outcome = await VetoResolver().resolve(
            session,
            tenant_id=tenant.id,
            operation_id=op.operation_id,
            resolution="exclude",
            actor=ADMIN,
            scope="library",
        )
        assert outcome.exclusion_rule_id == existing.id

    async def test_unknown_scope(self, session, tenant, make_vetoed):
        _, op = await make_vetoed()
        with pytest.raises(ValidationError):
            await VetoResolver().resolve(
                session,
                tenant_id=tenant.id,
                operation_id=op.operation_id,
                resolution="exclude",
                actor=ADMIN,
                scope="site",
            )


class TestErrors:
    async def test_unknown_resolution(self, session, tenant, make_vetoed):
        _, op = await make_vetoed()
        with pytest.raises(ValidationError):
            await VetoResolver().resolve(
                session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="ignore", actor=ADMIN
            )

    async def test_not_vetoed(self, session, tenant, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)
        with pytest.raises(ValidationError):
            await VetoResolver().resolve(
                session, tenant_id=tenant.id, operation_id=op.operation_id, resolution="accept", actor=ADMIN
            )

    async def test_other_tenant(self, session, make_vetoed):
        _, op = await make_vetoed()
        with pytest.raises(NotFoundError):
            await VetoResolver().resolve(
                session, tenant_id=uuid.uuid4(), operation_id=op.operation_id, resolution="accept", actor=ADMIN
            )

"""HTTP-level tests for the ColdStore API against the in-memory database.

``get_db`` is overridden with the per-test session factory, the retrieval
pipeline with one built on the in-memory fakes, and the Celery task the
retrieval route enqueues is replaced with a mock.

Test coverage
-------------
- identity headers: missing tenant / actor → 400, malformed UUID → 422
- rule previews (unsaved, stored, exclusion scope) and their 404 / 422s
- operation listing with filters; approve / veto / resolve-veto, including
  repeated requests reporting ``changed: false``
- approval card callback
- retrieval request (202 + enqueue, 200 for the open operation) and lookup
- savings trends, tenant ownership check
"""
from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from coldstore.api.routes import retrievals as retrievals_routes
from coldstore.core import state_machine as sm
from coldstore.db.session import get_db
from coldstore.main import app
from coldstore.services.retrieval_pipeline import RetrievalPipeline
from coldstore.services.snapshots import capture_snapshots

ADMIN = "admin@northwind.com"


@pytest.fixture
def retrieval_task(monkeypatch) -> MagicMock:
    task = MagicMock()
    monkeypatch.setattr(retrievals_routes, "start_retrieval", task)
    return task


@pytest_asyncio.fixture
async def client(session_factory, fake_source, fake_store, retrieval_task):
    async def _get_db():
        async with session_factory() as sess:
            yield sess

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[retrievals_routes.get_retrieval_pipeline] = lambda: RetrievalPipeline(
        source=fake_source, store=fake_store
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def headers(tenant, org):
    return {
        "X-Tenant-ID": str(tenant.id),
        "X-Msp-Org-ID": str(org.id),
        "X-Actor-Name": ADMIN,
    }


class TestIdentityHeaders:
    async def test_missing_tenant(self, client):
        resp = await client.get("/v1/operations")
        assert resp.status_code == 400

    async def test_malformed_tenant(self, client):
        resp = await client.get("/v1/operations", headers={"X-Tenant-ID": "not-a-uuid"})
        assert resp.status_code == 422

    async def test_missing_actor(self, client, tenant, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)
        resp = await client.post(
            f"/v1/operations/{op.operation_id}/approve", headers={"X-Tenant-ID": str(tenant.id)}
        )
        assert resp.status_code == 400


class TestRulePreview:
    async def test_unsaved_rule(self, client, headers, make_file):
        await make_file(size_bytes=1024**3)

        resp = await client.post(
            "/v1/rules/preview",
            json={"rule_type": "age", "criteria": {"inactiveDays": 30}, "target_tier": "Cool"},
            headers=headers,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["file_count"] == 1
        assert body["estimated_annual_savings"] == pytest.approx(2.28)
        assert body["top_sites"][0]["site_name"] == "Finance"

    async def test_invalid_criteria(self, client, headers):
        resp = await client.post(
            "/v1/rules/preview",
            json={"rule_type": "age", "criteria": {"inactiveDays": -1}},
            headers=headers,
        )
        assert resp.status_code == 422

    async def test_stored_rule_of_other_tenant(self, client, headers):
        resp = await client.get(f"/v1/rules/{uuid.uuid4()}/preview", headers=headers)
        assert resp.status_code == 404

    async def test_exclusion_scope(self, client, headers, make_rule, make_file):
        rule = await make_rule("exclusion", {"libraryPath": "Legal"})
        await make_file(file_path="Legal/a.pdf", size_bytes=10)

        resp = await client.get(f"/v1/rules/{rule.id}/exclusion-scope", headers=headers)

        assert resp.status_code == 200
        assert resp.json()["file_count"] == 1


class TestOperations:
    async def test_list_with_filters(self, client, headers, make_file, make_operation):
        await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)
        await make_operation(await make_file(), status=sm.APPROVED)

        resp = await client.get("/v1/operations", params={"status": sm.APPROVED}, headers=headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["operations"][0]["status"] == sm.APPROVED

    async def test_list_rejects_unknown_status(self, client, headers):
        resp = await client.get("/v1/operations", params={"status": "Lost"}, headers=headers)
        assert resp.status_code == 422

    async def test_approve_twice(self, client, headers, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)
        url = f"/v1/operations/{op.operation_id}/approve"

        first = await client.post(url, headers=headers)
        second = await client.post(url, headers=headers)

        assert first.json() == {"operation_id": op.operation_id, "status": sm.APPROVED, "changed": True}
        assert second.json()["changed"] is False

    async def test_veto_then_resolve(self, client, headers, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)

        veto = await client.post(
            f"/v1/operations/{op.operation_id}/veto", json={"reason": "legal hold"}, headers=headers
        )
        assert veto.json()["status"] == sm.VETOED

        resolved = await client.post(
            f"/v1/operations/{op.operation_id}/resolve-veto",
            json={"resolution": "override"},
            headers=headers,
        )
        body = resolved.json()
        assert resolved.status_code == 200
        assert body["status"] == sm.VETO_OVERRIDDEN
        assert body["new_operation_id"]

    async def test_resolve_unknown_resolution(self, client, headers, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.VETOED)
        resp = await client.post(
            f"/v1/operations/{op.operation_id}/resolve-veto",
            json={"resolution": "shrug"},
            headers=headers,
        )
        assert resp.status_code == 422

    async def test_unknown_operation(self, client, headers):
        resp = await client.post("/v1/operations/does-not-exist/approve", headers=headers)
        assert resp.status_code == 404


class TestApprovalCallback:
    async def test_approve_site(self, client, tenant, make_file, make_operation):
        op = await make_operation(await make_file(), status=sm.AWAITING_APPROVAL)
        payload = {
            "action": "approve",
            "tenant_id": str(tenant.id),
            "site_id": "site-finance",
            "actor": "owner@contoso.com",
        }

        first = await client.post("/v1/approvals/callback", json=payload)
        second = await client.post("/v1/approvals/callback", json=payload)

        assert first.json()["operation_ids"] == [op.operation_id]
        assert second.json()["operation_ids"] == []

    async def test_unknown_action(self, client, tenant):
        resp = await client.post(
            "/v1/approvals/callback",
            json={"action": "archive", "tenant_id": str(tenant.id), "site_id": "s", "actor": "x"},
        )
        assert resp.status_code == 422


class TestRetrievals:
    async def test_request_enqueues_once(self, client, headers, make_file, retrieval_task):
        file = await make_file(archive_status=sm.FILE_ARCHIVED, blob_tier="Cool")

        first = await client.post("/v1/retrievals", json={"file_id": str(file.id)}, headers=headers)
        second = await client.post("/v1/retrievals", json={"file_id": str(file.id)}, headers=headers)

        assert first.status_code == 202
        assert second.status_code == 200
        assert first.json()["operation_id"] == second.json()["operation_id"]
        retrieval_task.delay.assert_called_once_with(first.json()["operation_id"])

        lookup = await client.get(f"/v1/retrievals/{first.json()['operation_id']}", headers=headers)
        assert lookup.status_code == 200
        assert lookup.json()["status"] == sm.PENDING

    async def test_not_archived(self, client, headers, make_file):
        file = await make_file()
        resp = await client.post("/v1/retrievals", json={"file_id": str(file.id)}, headers=headers)
        assert resp.status_code == 422

    async def test_unknown_file(self, client, headers):
        resp = await client.post("/v1/retrievals", json={"file_id": str(uuid.uuid4())}, headers=headers)
        assert resp.status_code == 404


class TestSavingsTrends:
    async def test_org_trends(self, client, headers, session, org, tenant, site):
        await capture_snapshots(session, org.id)
        await session.commit()

        resp = await client.get("/v1/savings/trends", headers=headers)

        assert resp.status_code == 200
        body = resp.json()
        assert len(body["months"]) == 1
        assert body["current"]["total_storage_bytes"] == 10 * 1024**3
        assert body["previous"] is None

    async def test_foreign_tenant(self, client, headers):
        resp = await client.get(
            "/v1/savings/trends", params={"tenant_id": str(uuid.uuid4())}, headers=headers
        )
        assert resp.status_code == 404

    async def test_org_header_required(self, client):
        resp = await client.get("/v1/savings/trends")
        assert resp.status_code == 400

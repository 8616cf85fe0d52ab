"""Unit tests for coldstore/services/notifications.py.

All HTTP traffic goes through ``httpx.MockTransport``; back-off sleeps are
replaced by a recording no-op.

Test coverage:
* Card payload: facts, actions and dashboard link.
* Delivery succeeds on the first attempt and returns the conversation id.
* Transient statuses and network errors are retried, then reported as
  ``delivered=False`` without raising.
* Non-retryable HTTP errors fail after a single attempt.
* No webhook configured: nothing is sent.
* A group-level webhook overrides the notifier default.
"""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from coldstore.services.notifications import (
    ApprovalGroup,
    TeamsNotifier,
    build_approval_card,
    format_size,
)

WEBHOOK = "https://hooks.example.test/approvals"


def _make_group(**overrides) -> ApprovalGroup:
    defaults = dict(
        tenant_id=uuid.uuid4(),
        site_id="site-1",
        site_name="Finance",
        owner_email="alice@contoso.com",
        owner_id="alice@contoso.com",
        file_count=3,
        total_size_bytes=5 * 1024 * 1024,
        target_tier="Cool",
        operation_ids=["a", "b", "c"],
    )
    defaults.update(overrides)
    return ApprovalGroup(**defaults)


class _Recorder:
    def __init__(self, responses: list) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _no_sleep(_: float) -> None:
    return None


def _notifier(recorder: _Recorder, webhook_url: str = WEBHOOK) -> TeamsNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return TeamsNotifier(
        webhook_url=webhook_url,
        http_client=client,
        max_attempts=3,
        retry_base_delay=0,
        sleep=_no_sleep,
    )


class TestFormatSize:
    @pytest.mark.parametrize(
        "size,expected",
        [(512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB"), (3 * 1024**3, "3.0 GB")],
    )
    def test_units(self, size: int, expected: str) -> None:
        assert format_size(size) == expected


class TestApprovalCard:
    def test_card_contents(self) -> None:
        group = _make_group()
        payload = build_approval_card(group, "https://portal.test/")
        card = payload["attachments"][0]["content"]

        facts = {f["title"]: f["value"] for f in card["body"][1]["facts"]}
        assert facts == {"Files": "3", "Total size": "5.0 MB", "Target tier": "Cool"}

        submit = [a for a in card["actions"] if a["type"] == "Action.Submit"]
        assert [a["data"]["action"] for a in submit] == ["approve", "reject", "review"]
        assert all(a["data"]["tenantId"] == str(group.tenant_id) for a in submit)

        link = card["actions"][-1]["url"]
        assert link == f"https://portal.test/tenants/{group.tenant_id}/approvals?site=site-1"


class TestDelivery:
    async def test_delivered_first_attempt(self) -> None:
        recorder = _Recorder([httpx.Response(200, json={"conversationId": "conv-1"})])
        result = await _notifier(recorder).send_approval_request(_make_group())

        assert result.delivered
        assert result.conversation_id == "conv-1"
        assert result.attempt_count == 1
        body = json.loads(recorder.requests[0].content)
        assert body["type"] == "message"

    async def test_empty_body_still_delivered(self) -> None:
        recorder = _Recorder([httpx.Response(202, content=b"")])
        result = await _notifier(recorder).send_approval_request(_make_group())
        assert result.delivered
        assert result.conversation_id is None

    async def test_transient_then_success(self) -> None:
        recorder = _Recorder([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={})])
        result = await _notifier(recorder).send_approval_request(_make_group())
        assert result.delivered
        assert result.attempt_count == 3

    async def test_exhausted_retries_reported_not_raised(self) -> None:
        recorder = _Recorder([httpx.ConnectError("refused")])
        result = await _notifier(recorder).send_approval_request(_make_group())

        assert not result.delivered
        assert result.attempt_count == 3
        assert "refused" in result.error_message
        assert len(recorder.requests) == 3

    async def test_non_retryable_status_single_attempt(self) -> None:
        recorder = _Recorder([httpx.Response(400)])
        result = await _notifier(recorder).send_approval_request(_make_group())
        assert not result.delivered
        assert result.attempt_count == 1

    async def test_no_webhook_skips_delivery(self) -> None:
        recorder = _Recorder([httpx.Response(200)])
        result = await _notifier(recorder, webhook_url="").send_approval_request(_make_group())
        assert not result.delivered
        assert result.attempt_count == 0
        assert recorder.requests == []

    async def test_group_webhook_overrides_default(self) -> None:
        recorder = _Recorder([httpx.Response(200, json={})])
        group = _make_group(webhook_url="https://hooks.example.test/tenant-specific")
        await _notifier(recorder).send_approval_request(group)
        assert str(recorder.requests[0].url) == "https://hooks.example.test/tenant-specific"

"""Approval notifications: adaptive cards posted to a chat webhook.

:class:`TeamsNotifier` sends one approval card per (site, owner) group.  The
card lists the number and total size of the files proposed for archiving and
carries ``approve`` / ``reject`` / ``review`` actions whose payloads come back
to ``POST /v1/approvals/callback``.

Retry policy
------------
Transient failures (network errors, HTTP 408/429/5xx) are retried with
exponential back-off, by default 3 attempts, waiting 10 s then 20 s.  A
delivery that still fails is reported as ``delivered=False`` with the last
error; it is never raised, because the operations stay ``AwaitingApproval``
and remain subject to the auto-approval timer regardless of delivery.

Usage::

    notifier = TeamsNotifier()
    result = await notifier.send_approval_request(group)
    if not result.delivered:
        print(result.error_message, result.attempt_count)
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import httpx
from prometheus_client import Counter

from coldstore.config import settings
from coldstore.core.errors import TransientIOError
from coldstore.core.retry import retry_transient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

notification_deliveries_total = Counter(
    "coldstore_notification_deliveries_total",
    "Approval notification delivery outcomes",
    ["outcome"],  # delivered | failed | skipped
)

#: Maximum seconds to wait for a single webhook request.
_HTTP_TIMEOUT = 10.0

#: HTTP status codes that are considered transient and should trigger a retry.
_RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class ApprovalGroup:
    """Files of one site awaiting approval from one owner."""

    tenant_id: uuid.UUID
    site_id: str
    site_name: str
    owner_email: str
    owner_id: str
    file_count: int
    total_size_bytes: int
    target_tier: str
    operation_ids: list[str] = field(default_factory=list)
    # Tenant-specific webhook; overrides the notifier default when set.
    webhook_url: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    conversation_id: str | None = None
    error_message: str | None = None
    attempt_count: int = 0


@runtime_checkable
class Notifier(Protocol):
    async def send_approval_request(self, group: ApprovalGroup) -> DeliveryResult:
        ...


# ---------------------------------------------------------------------------
# Card construction
# ---------------------------------------------------------------------------


def format_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"  # pragma: no cover


def build_approval_card(group: ApprovalGroup, dashboard_url: str) -> dict[str, Any]:
    """Return the message payload (an adaptive-card attachment) for *group*."""
    action_data = {
        "tenantId": str(group.tenant_id),
        "siteId": group.site_id,
        "ownerId": group.owner_id,
    }
    card = {
        "type": "AdaptiveCard",
        "version": "1.4",
        "body": [
            {
                "type": "TextBlock",
                "size": "Medium",
                "weight": "Bolder",
                "text": f"Files ready to archive in {group.site_name}",
            },
            {
                "type": "FactSet",
                "facts": [
                    {"title": "Files", "value": str(group.file_count)},
                    {"title": "Total size", "value": format_size(group.total_size_bytes)},
                    {"title": "Target tier", "value": group.target_tier},
                ],
            },
            {
                "type": "TextBlock",
                "wrap": True,
                "text": "Approve to archive these files, reject to keep them, "
                "or request a review by your administrator.",
            },
        ],
        "actions": [
            {"type": "Action.Submit", "title": "Approve", "data": {**action_data, "action": "approve"}},
            {"type": "Action.Submit", "title": "Reject", "data": {**action_data, "action": "reject"}},
            {"type": "Action.Submit", "title": "Request review", "data": {**action_data, "action": "review"}},
            {
                "type": "Action.OpenUrl",
                "title": "View files",
                "url": f"{dashboard_url.rstrip('/')}/tenants/{group.tenant_id}/approvals?site={group.site_id}",
            },
        ],
    }
    return {
        "type": "message",
        "summary": f"{group.file_count} files ready to archive",
        "attachments": [
            {"contentType": "application/vnd.microsoft.card.adaptive", "content": card}
        ],
    }


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class TeamsNotifier:
    """Deliver approval cards to an incoming-webhook endpoint.

    Args:
        webhook_url: Target URL.  Defaults to ``settings.NOTIFICATION_WEBHOOK_URL``;
            when empty, nothing is sent and the result is ``delivered=False``
            with ``attempt_count=0``.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a client is created per delivery.
        max_attempts: Total delivery attempts.  Defaults to
            ``settings.NOTIFICATION_MAX_ATTEMPTS``.
        retry_base_delay: Back-off base in seconds.  Defaults to
            ``settings.NOTIFICATION_RETRY_BASE_SECONDS``.
        sleep: Injectable sleep coroutine (tests pass a no-op).
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self._http_client = http_client
        self._max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS
        self._retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.NOTIFICATION_RETRY_BASE_SECONDS
        )
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    async def send_approval_request(self, group: ApprovalGroup) -> DeliveryResult:
        webhook_url = group.webhook_url or self._webhook_url
        if not webhook_url:
            notification_deliveries_total.labels(outcome="skipped").inc()
            return DeliveryResult(
                delivered=False,
                error_message="No notification webhook configured",
                attempt_count=0,
            )

        payload = build_approval_card(group, settings.DASHBOARD_BASE_URL)
        attempts = 0

        async def _attempt() -> str | None:
            nonlocal attempts
            attempts += 1
            return await self._post(webhook_url, payload)

        try:
            conversation_id = await retry_transient(
                _attempt,
                attempts=self._max_attempts,
                base_delay=self._retry_base_delay,
                step="approval_notification",
                **self._sleep_kwargs,
            )
        except (TransientIOError, httpx.HTTPStatusError) as exc:
            notification_deliveries_total.labels(outcome="failed").inc()
            logger.warning(
                json.dumps(
                    {
                        "event": "approval_notification_failed",
                        "tenant_id": str(group.tenant_id),
                        "site_id": group.site_id,
                        "attempts": attempts,
                        "error": str(exc),
                    }
                )
            )
            return DeliveryResult(delivered=False, error_message=str(exc), attempt_count=attempts)

        notification_deliveries_total.labels(outcome="delivered").inc()
        logger.info(
            json.dumps(
                {
                    "event": "approval_notification_sent",
                    "tenant_id": str(group.tenant_id),
                    "site_id": group.site_id,
                    "file_count": group.file_count,
                    "attempts": attempts,
                }
            )
        )
        return DeliveryResult(
            delivered=True, conversation_id=conversation_id, attempt_count=attempts
        )

    async def _post(self, webhook_url: str, payload: dict[str, Any]) -> str | None:
        """POST *payload*; return the conversation id when the endpoint reports one.

        Raises:
            TransientIOError: On network errors and retryable HTTP statuses.
            httpx.HTTPStatusError: On non-retryable HTTP errors.
        """
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    webhook_url, json=payload, timeout=_HTTP_TIMEOUT
                )
            else:
                async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
                    response = await client.post(webhook_url, json=payload)
        except httpx.RequestError as exc:
            raise TransientIOError(f"Notification request failed: {exc}") from exc

        if response.status_code in _RETRYABLE_HTTP_STATUSES:
            raise TransientIOError(f"Notification endpoint returned HTTP {response.status_code}")
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get("conversationId") or body.get("id")
        return None

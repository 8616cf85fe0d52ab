"""AuditService: tamper-evident lifecycle audit trail.

:class:`AuditService` persists :class:`~coldstore.models.audit_entry.AuditEntry`
rows with an HMAC-SHA256 integrity signature computed over the canonical
immutable fields of each record.  All writes are INSERT-only; the service
contains no UPDATE or DELETE code paths.

It is called after every archive/retrieval state transition, veto resolution
and scan start.  The entry is added to the caller's session, so it commits
(or rolls back) together with the transition it describes; callers do not
inspect the result.

A structured JSON log line carrying ``correlation_id``, ``tenant_id`` and
``action`` is emitted for every entry.

Usage::

    from coldstore.services.audit import AuditService

    audit = AuditService()

    async with AsyncSessionLocal() as session:
        async with session.begin():
            await audit.log(
                session,
                actor_id="System:AutoApproval",
                action="archive_operation.approved",
                details={"operationId": op.operation_id},
                tenant_id=op.tenant_id,
                msp_org_id=op.msp_org_id,
            )
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from coldstore.config import settings
from coldstore.core.errors import ColdStoreError
from coldstore.core.timeutil import as_utc, utcnow
from coldstore.models.audit_entry import AuditEntry

logger = logging.getLogger(__name__)

#: Request- or task-scoped correlation id.  Set by
#: :class:`~coldstore.api.middleware.logging.RequestLoggingMiddleware` and by
#: the Celery tasks; used when a caller does not pass one explicitly.
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Fields included in HMAC computation (order matters; never reorder).
_HMAC_FIELDS = ("id", "tenant_id", "actor_id", "action", "details", "timestamp")


class AuditError(ColdStoreError):
    """Raised when :class:`AuditService` cannot persist an :class:`AuditEntry`.

    Callers must not silently ignore this exception; it aborts the
    transaction of the transition being audited.
    """


class AuditService:
    """Append-only audit log service with HMAC-SHA256 integrity signing.

    Args:
        secret_key: Raw HMAC secret.  Defaults to ``settings.SECRET_KEY``.
    """

    def __init__(self, secret_key: str | None = None) -> None:
        self._secret_key: bytes = (secret_key or settings.SECRET_KEY).encode("utf-8")

    # ------------------------------------------------------------------
    # Signature helpers
    # ------------------------------------------------------------------

    def compute_hmac(self, entry: AuditEntry) -> str:
        """Return the HMAC-SHA256 hex digest for *entry*.

        The canonical message is the compact, key-sorted JSON serialisation
        of the fields in :data:`_HMAC_FIELDS`, with ``timestamp`` rendered as
        ISO-8601 UTC.
        """
        timestamp = as_utc(entry.timestamp)
        values = {
            "id": str(entry.id),
            "tenant_id": str(entry.tenant_id) if entry.tenant_id else None,
            "actor_id": entry.actor_id,
            "action": entry.action,
            "details": entry.details,
            "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else None,
        }
        canonical = json.dumps(
            {name: values[name] for name in _HMAC_FIELDS},
            separators=(",", ":"),
            sort_keys=True,
            default=str,
        )
        return hmac.new(self._secret_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hmac(self, entry: AuditEntry) -> bool:
        """Return ``True`` if *entry*'s stored signature is valid."""
        return hmac.compare_digest(self.compute_hmac(entry), entry.hmac_signature)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def log(
        self,
        session: AsyncSession,
        *,
        actor_id: str,
        action: str,
        details: dict[str, Any] | None = None,
        tenant_id: uuid.UUID | None = None,
        msp_org_id: uuid.UUID | None = None,
        actor_name: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditEntry:
        """Sign and persist one audit entry within the caller's transaction.

        Raises:
            AuditError: If the database INSERT fails for any reason.
        """
        entry = AuditEntry(
            id=uuid.uuid4(),
            msp_org_id=msp_org_id,
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_name=actor_name,
            action=action,
            details=details,
            correlation_id=correlation_id or correlation_id_var.get(),
            timestamp=utcnow(),
        )
        entry.hmac_signature = self.compute_hmac(entry)

        try:
            session.add(entry)
            await session.flush()
        except Exception as exc:
            raise AuditError(f"Failed to persist audit entry '{action}': {exc}") from exc

        logger.info(
            json.dumps(
                {
                    "event": "audit_logged",
                    "action": action,
                    "actor_id": actor_id,
                    "tenant_id": str(tenant_id) if tenant_id else None,
                    "correlation_id": entry.correlation_id,
                }
            )
        )
        return entry

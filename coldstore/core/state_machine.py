"""Archive and retrieval operation state machines.

Archive operations::

    Pending ─► AwaitingApproval ─► Approved ─► Archiving ─► Archived
       │              │    ▲           │            │
       │              │    └── ReviewRequested      └─► Failed
       │              ▼           │
       │           Vetoed ◄───────┘
       │              ├─► VetoAccepted   (file stays active)
       │              ├─► VetoOverridden (a new Pending cycle is created)
       │              └─► Excluded       (file protected by an exclusion rule)
       └─► Approved (auto-approval with zero waiting days) / Failed

Retrieval operations::

    Pending ─► [Rehydrating] ─► Retrieving ─► Completed
                                   any non-terminal ─► Failed

Transitions are only ever applied as compare-and-set updates (see
:mod:`coldstore.services.operation_store`), so the tables here are the single
source of truth for which ``expected → target`` pairs are legal.
"""

from __future__ import annotations

import hashlib
import uuid

# ---------------------------------------------------------------------------
# Archive operation statuses
# ---------------------------------------------------------------------------

PENDING = "Pending"
AWAITING_APPROVAL = "AwaitingApproval"
REVIEW_REQUESTED = "ReviewRequested"
APPROVED = "Approved"
ARCHIVING = "Archiving"
ARCHIVED = "Archived"
FAILED = "Failed"
VETOED = "Vetoed"
VETO_ACCEPTED = "VetoAccepted"
VETO_OVERRIDDEN = "VetoOverridden"
EXCLUDED = "Excluded"

ARCHIVE_STATUSES: tuple[str, ...] = (
    PENDING,
    AWAITING_APPROVAL,
    REVIEW_REQUESTED,
    APPROVED,
    ARCHIVING,
    ARCHIVED,
    FAILED,
    VETOED,
    VETO_ACCEPTED,
    VETO_OVERRIDDEN,
    EXCLUDED,
)

ARCHIVE_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({AWAITING_APPROVAL, APPROVED, FAILED}),
    AWAITING_APPROVAL: frozenset({APPROVED, VETOED, REVIEW_REQUESTED}),
    REVIEW_REQUESTED: frozenset({APPROVED, VETOED}),
    APPROVED: frozenset({ARCHIVING, FAILED}),
    ARCHIVING: frozenset({ARCHIVED, FAILED}),
    VETOED: frozenset({VETO_ACCEPTED, VETO_OVERRIDDEN, EXCLUDED}),
}

ARCHIVE_TERMINAL: frozenset[str] = frozenset(
    {ARCHIVED, FAILED, VETO_ACCEPTED, VETO_OVERRIDDEN, EXCLUDED}
)

#: Terminal states that represent a completed resolution; ``completed_at``
#: is stamped when an operation enters one of these.
ARCHIVE_COMPLETED: frozenset[str] = frozenset(
    {ARCHIVED, VETO_ACCEPTED, VETO_OVERRIDDEN, EXCLUDED}
)

#: Latest-cycle states that block a new proposal for the same file.
BLOCKS_REPROPOSAL: frozenset[str] = frozenset(
    set(ARCHIVE_STATUSES) - {FAILED, ARCHIVED, VETO_OVERRIDDEN}
)

# ---------------------------------------------------------------------------
# Retrieval operation statuses
# ---------------------------------------------------------------------------

REHYDRATING = "Rehydrating"
RETRIEVING = "Retrieving"
COMPLETED = "Completed"

RETRIEVAL_STATUSES: tuple[str, ...] = (PENDING, REHYDRATING, RETRIEVING, COMPLETED, FAILED)

RETRIEVAL_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({REHYDRATING, RETRIEVING, FAILED}),
    REHYDRATING: frozenset({RETRIEVING, FAILED}),
    RETRIEVING: frozenset({COMPLETED, FAILED}),
}

RETRIEVAL_TERMINAL: frozenset[str] = frozenset({COMPLETED, FAILED})

# ---------------------------------------------------------------------------
# File archive statuses
# ---------------------------------------------------------------------------

FILE_ACTIVE = "Active"
FILE_AWAITING_APPROVAL = "AwaitingApproval"
FILE_ARCHIVED = "Archived"

ACTION_ARCHIVE = "archive"
ACTION_RETRIEVE = "retrieve"

#: Maximum stored length of ``error_message``.
MAX_ERROR_MESSAGE_LENGTH = 2000


def can_transition(current: str, target: str, *, retrieval: bool = False) -> bool:
    """Return ``True`` if *current* → *target* is a legal transition."""
    table = RETRIEVAL_TRANSITIONS if retrieval else ARCHIVE_TRANSITIONS
    return target in table.get(current, frozenset())


def sources_for(target: str, *, retrieval: bool = False) -> tuple[str, ...]:
    """Return every status from which *target* may be entered, sorted."""
    table = RETRIEVAL_TRANSITIONS if retrieval else ARCHIVE_TRANSITIONS
    return tuple(sorted(src for src, targets in table.items() if target in targets))


def is_terminal(status: str, *, retrieval: bool = False) -> bool:
    return status in (RETRIEVAL_TERMINAL if retrieval else ARCHIVE_TERMINAL)


def make_operation_id(
    tenant_id: uuid.UUID | str,
    site_id: str,
    drive_id: str,
    item_id: str,
    action: str,
    cycle: int = 1,
) -> str:
    """Return the deterministic idempotency key for one logical file action.

    The key is the first 32 hex characters of a SHA-256 digest over the file
    identity, the action and the cycle number.  Re-submitting the same
    logical operation therefore always yields the same key; a veto override
    or re-evaluation after a failure bumps *cycle* to get a fresh one.
    """
    raw = f"{tenant_id}|{site_id}|{drive_id}|{item_id}|{action}|{cycle}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def truncate_error(message: str) -> str:
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."

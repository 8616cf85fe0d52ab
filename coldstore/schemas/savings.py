"""Pydantic schemas for savings trend responses."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel


class SavingsSnapshotOut(BaseModel):
    model_config = {"from_attributes": True}

    month: str
    tenant_id: uuid.UUID | None = None
    total_storage_bytes: int
    active_storage_bytes: int
    stale_storage_bytes: int
    archived_storage_bytes: int
    archived_bytes_by_tier: dict[str, int]
    achieved_savings: float
    potential_savings: float
    captured_at: datetime


class SavingsTrendsResponse(BaseModel):
    """Monthly snapshots, oldest first, plus the current and previous month.

    Attributes:
        months: Snapshots within the requested window.
        current: This month's snapshot, or the latest one available.
        previous: Last month's snapshot, when captured.
    """

    months: list[SavingsSnapshotOut]
    current: SavingsSnapshotOut | None = None
    previous: SavingsSnapshotOut | None = None

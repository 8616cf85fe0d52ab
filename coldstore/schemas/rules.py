"""Pydantic schemas for rule preview API requests and responses."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field


class RulePreviewRequest(BaseModel):
    """An unsaved archive rule to preview.

    Attributes:
        rule_type: ``age``, ``size``, ``type`` or ``owner``.
        criteria: Criteria payload for *rule_type* (see
            :func:`coldstore.schemas.criteria.parse_criteria`).
        target_tier: ``Cool``, ``Cold`` or ``Archive``.
    """

    rule_type: str
    criteria: dict[str, Any] = Field(default_factory=dict)
    target_tier: str = "Cool"


class SitePreviewOut(BaseModel):
    model_config = {"from_attributes": True}

    site_id: str
    site_name: str
    file_count: int
    total_size_bytes: int


class RulePreviewResponse(BaseModel):
    """What a rule would archive, without changing anything.

    Attributes:
        file_count: Files the rule would archive.
        total_size_bytes: Their combined size.
        estimated_annual_savings: Annualised savings at the configured rates.
        top_sites: Sites with the most matching files.
        excluded_file_count: Matching files protected by an exclusion rule.
        truncated: ``True`` when the file inventory exceeded the preview cap.
    """

    model_config = {"from_attributes": True}

    file_count: int
    total_size_bytes: int
    estimated_annual_savings: float
    top_sites: list[SitePreviewOut]
    excluded_file_count: int
    truncated: bool


class ExclusionScopeResponse(BaseModel):
    model_config = {"from_attributes": True}

    rule_id: uuid.UUID
    file_count: int
    total_size_bytes: int
    truncated: bool

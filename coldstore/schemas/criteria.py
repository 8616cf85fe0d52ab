"""Rule criteria: one validated model per rule type.

The shape of ``ArchiveRule.criteria`` depends on ``ArchiveRule.rule_type``.
Rather than passing a loose dict around, every consumer goes through
:func:`parse_criteria`, which selects the model for the rule type and
validates the payload.  Payload keys are camelCase on the wire and in the
database (``inactiveDays``, ``minSizeBytes`` ...); Python attributes are
snake_case.

=============  =====================================================
rule type      payload
=============  =====================================================
``age``        ``{"inactiveDays": 180}``
``size``       ``{"minSizeBytes": 1048576, "maxSizeBytes": null}``
``type``       ``{"fileTypes": [".psd", "mp4"]}``
``owner``      ``{"owner": "a@x.com"}`` or ``{"owners": [...]}``
``exclusion``  any of ``libraryPath``, ``folderPath``, ``filePaths``,
               ``files`` (``siteId``/``driveId``/``itemId``),
               ``fileTypes``, ``complianceTags``; ``siteId`` limits
               the rule to one site
=============  =====================================================
"""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from coldstore.config import SUPPORTED_TIERS
from coldstore.core.errors import ValidationError

RULE_TYPES: tuple[str, ...] = ("age", "size", "type", "owner", "exclusion")
ARCHIVE_RULE_TYPES: tuple[str, ...] = ("age", "size", "type", "owner")


def normalise_extension(value: str) -> str:
    """Return *value* lower-cased without a leading dot (``".PDF"`` → ``"pdf"``)."""
    return value.strip().lower().lstrip(".")


def normalise_path(value: str) -> str:
    """Return *value* lower-cased, ``/``-separated, without leading/trailing slashes."""
    return value.strip().replace("\\", "/").strip("/").lower()


class _Criteria(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude_defaults=True)


class AgeCriteria(_Criteria):
    inactive_days: int = Field(alias="inactiveDays", gt=0, le=36_500)


class SizeCriteria(_Criteria):
    min_size_bytes: int | None = Field(default=None, alias="minSizeBytes", ge=0)
    max_size_bytes: int | None = Field(default=None, alias="maxSizeBytes", ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "SizeCriteria":
        if self.min_size_bytes is None and self.max_size_bytes is None:
            raise ValueError("at least one of minSizeBytes or maxSizeBytes is required")
        if (
            self.min_size_bytes is not None
            and self.max_size_bytes is not None
            and self.min_size_bytes > self.max_size_bytes
        ):
            raise ValueError("minSizeBytes must not exceed maxSizeBytes")
        return self


class TypeCriteria(_Criteria):
    file_types: tuple[str, ...] = Field(alias="fileTypes", min_length=1)

    @field_validator("file_types")
    @classmethod
    def validate_file_types(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        normalised = tuple(normalise_extension(t) for t in v)
        if not all(normalised):
            raise ValueError("fileTypes must not contain empty entries")
        return normalised


class OwnerCriteria(_Criteria):
    owner: str | None = None
    owners: tuple[str, ...] = ()

    @model_validator(mode="after")
    def check_owner(self) -> "OwnerCriteria":
        if not self.emails:
            raise ValueError("owner or owners is required")
        return self

    @property
    def emails(self) -> frozenset[str]:
        values = list(self.owners)
        if self.owner:
            values.append(self.owner)
        return frozenset(v.strip().lower() for v in values if v and v.strip())


class ExcludedFile(_Criteria):
    """One file protected by identity, as recorded by a veto exclusion."""

    site_id: str = Field(alias="siteId", min_length=1)
    drive_id: str = Field(alias="driveId", min_length=1)
    item_id: str = Field(alias="itemId", min_length=1)
    path: str | None = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.site_id, self.drive_id, self.item_id)


class ExclusionCriteria(_Criteria):
    site_id: str | None = Field(default=None, alias="siteId")
    library_path: str | None = Field(default=None, alias="libraryPath")
    folder_path: str | None = Field(default=None, alias="folderPath")
    file_paths: tuple[str, ...] = Field(default=(), alias="filePaths")
    files: tuple[ExcludedFile, ...] = ()
    file_types: tuple[str, ...] = Field(default=(), alias="fileTypes")
    compliance_tags: tuple[str, ...] = Field(default=(), alias="complianceTags")

    @field_validator("file_types")
    @classmethod
    def validate_file_types(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(normalise_extension(t) for t in v if t.strip())

    @model_validator(mode="after")
    def check_any(self) -> "ExclusionCriteria":
        if not (
            (self.library_path and self.library_path.strip())
            or (self.folder_path and self.folder_path.strip())
            or self.file_paths
            or self.files
            or self.file_types
            or self.compliance_tags
        ):
            raise ValueError(
                "exclusion criteria need at least one of libraryPath, folderPath, "
                "filePaths, files, fileTypes or complianceTags"
            )
        return self


Criteria = Union[AgeCriteria, SizeCriteria, TypeCriteria, OwnerCriteria, ExclusionCriteria]

_CRITERIA_MODELS: dict[str, type[_Criteria]] = {
    "age": AgeCriteria,
    "size": SizeCriteria,
    "type": TypeCriteria,
    "owner": OwnerCriteria,
    "exclusion": ExclusionCriteria,
}


def parse_criteria(rule_type: str, payload: dict[str, Any] | None) -> Criteria:
    """Validate *payload* against the model for *rule_type*.

    Raises:
        ValidationError: For an unknown rule type or a payload that does not
            satisfy the rule type's schema.
    """
    model = _CRITERIA_MODELS.get(rule_type)
    if model is None:
        raise ValidationError(
            f"Unknown rule type '{rule_type}'. Valid types: {', '.join(RULE_TYPES)}"
        )
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as exc:
        errors = "; ".join(err["msg"] for err in exc.errors())
        raise ValidationError(f"Invalid {rule_type} criteria: {errors}") from exc


def validate_target_tier(tier: str | None) -> str:
    """Return *tier* if it names a supported tier, else raise ``ValidationError``."""
    if tier not in SUPPORTED_TIERS:
        raise ValidationError(
            f"Invalid target tier '{tier}'. Valid tiers: {', '.join(SUPPORTED_TIERS)}"
        )
    return tier

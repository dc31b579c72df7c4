"""Base model and enum for workshop entities.

Every entity model inherits from :class:`EntityModel` which provides:

* a required, string-normalised ``id`` (uuid or integer keys both map to
  ``str``); a row without an id fails validation and never reaches the
  cache.
* optional ``created_at`` / ``updated_at`` parsed to aware UTC datetimes.
* a ``raw`` dict holding the full original row, so columns the schema
  does not model survive a shallow merge.
* :meth:`EntityModel.merged_with` implementing the cache's shallow-merge
  rule: keys in the patch overwrite, keys absent from the patch are kept.

Enumerations inherit from :class:`EntityEnum`, which resolves unknown
values to ``UNKNOWN`` instead of raising.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Any, Self

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from workshopsync.ingestion.normalize import coerce_id, parse_timestamp, safe_float

Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type coercing ISO strings or epoch numbers to UTC datetimes."""

Amount = Annotated[float, BeforeValidator(lambda v: safe_float(v) or 0.0)]
"""Money amount; missing or garbage values count as zero."""


class EntityEnum(enum.StrEnum):
    """Base for string enums stored in row columns.

    Every subclass **must** define ``UNKNOWN``.
    """

    @classmethod
    def _missing_(cls, value: object) -> EntityEnum:
        if isinstance(value, str):
            stripped = value.strip()
            for member in cls:
                if member.value == stripped:
                    return member
        unknown: EntityEnum = cls.UNKNOWN  # type: ignore[attr-defined]
        return unknown


class EntityModel(BaseModel):
    """Base for rows mirrored in the entity cache."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    id: str
    created_at: Timestamp = None
    updated_at: Timestamp = None

    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
    """Original row as received (merged across partial updates)."""

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        if "raw" in values:
            return values
        merged = dict(values)
        merged["raw"] = dict(values)
        return merged

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: Any) -> str:
        normalised = coerce_id(value)
        if normalised is None:
            raise ValueError("id must be a non-empty string or integer")
        return normalised

    def merged_with(self, patch: dict[str, Any]) -> Self:
        """Return a new instance with *patch* shallow-merged over this row."""
        row = dict(self.raw) if self.raw else self.model_dump(mode="json", exclude={"raw"})
        row.update(patch)
        row["id"] = self.id
        return type(self).model_validate(row)

    @property
    def sort_key(self) -> float:
        """Creation time as epoch seconds; rows without one sort last."""
        if self.created_at is None:
            return float("-inf")
        return self.created_at.timestamp()

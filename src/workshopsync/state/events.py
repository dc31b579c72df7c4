"""Normalized change events.

Every write path (change feed, confirmed mutations, fetches) converts its
input into a :class:`ChangeEvent`. Only the cache applies them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workshopsync.ingestion.normalize import coerce_id


class EntityType(StrEnum):
    """Cached entity types; values are the backing table names."""

    REQUEST = "inspection_requests"
    CLIENT = "clients"
    CAR = "cars"
    CAR_MAKE = "car_makes"
    CAR_MODEL = "car_models"
    BROKER = "brokers"
    EMPLOYEE = "employees"
    EXPENSE = "expenses"
    REVENUE = "other_revenues"
    NOTIFICATION = "notifications"
    MESSAGE = "internal_messages"
    RESERVATION = "reservations"

    @property
    def table(self) -> str:
        return self.value


class ChangeKind(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeSource(StrEnum):
    FEED = "feed"
    MUTATION = "mutation"
    FETCH = "fetch"


class ChangeEvent(BaseModel):
    """One insert/update/delete against one entity."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    entity_type: EntityType
    entity_id: str = Field(..., description="Id of the affected row")
    payload: dict[str, Any] = Field(default_factory=dict, description="Full or partial row (empty for deletes)")
    actor_id: str | None = Field(default=None, description="User who caused the change, when known")
    source: ChangeSource = ChangeSource.FEED
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("entity_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        entity_id = coerce_id(value)
        if entity_id is None:
            raise ValueError("entity_id must be non-empty")
        return entity_id

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

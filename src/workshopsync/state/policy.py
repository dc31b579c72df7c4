"""Per-type cache policy: schema, ordering and actor resolution.

No payload parsing happens here; this only answers questions the cache
and the pipeline ask about an entity type.
"""

from __future__ import annotations

from typing import Any

from workshopsync.models import (
    AppNotification,
    Broker,
    Car,
    CarMake,
    CarModel,
    Client,
    Employee,
    EntityModel,
    Expense,
    InspectionRequest,
    InternalMessage,
    Reservation,
    Revenue,
)
from workshopsync.state.events import ChangeKind, EntityType

ENTITY_MODELS: dict[EntityType, type[EntityModel]] = {
    EntityType.REQUEST: InspectionRequest,
    EntityType.CLIENT: Client,
    EntityType.CAR: Car,
    EntityType.CAR_MAKE: CarMake,
    EntityType.CAR_MODEL: CarModel,
    EntityType.BROKER: Broker,
    EntityType.EMPLOYEE: Employee,
    EntityType.EXPENSE: Expense,
    EntityType.REVENUE: Revenue,
    EntityType.NOTIFICATION: AppNotification,
    EntityType.MESSAGE: InternalMessage,
    EntityType.RESERVATION: Reservation,
}

# Collections kept newest-first; every other type keeps insertion order.
_TIME_ORDERED: frozenset[EntityType] = frozenset(
    {
        EntityType.REQUEST,
        EntityType.NOTIFICATION,
        EntityType.MESSAGE,
        EntityType.RESERVATION,
    }
)

_ACTOR_FIELDS: dict[EntityType, str] = {
    EntityType.REQUEST: "employee_id",
    EntityType.EXPENSE: "employee_id",
    EntityType.REVENUE: "employee_id",
    EntityType.MESSAGE: "sender_id",
}

#: Change-feed streams opened once a session is ready, with the event
#: kinds each one delivers (``None`` means every kind).
WATCHED_STREAMS: dict[EntityType, frozenset[ChangeKind] | None] = {
    EntityType.REQUEST: None,
    EntityType.NOTIFICATION: frozenset({ChangeKind.INSERT}),
    EntityType.MESSAGE: frozenset({ChangeKind.INSERT}),
}


def model_for(entity_type: EntityType) -> type[EntityModel]:
    return ENTITY_MODELS[entity_type]


def is_time_ordered(entity_type: EntityType) -> bool:
    return entity_type in _TIME_ORDERED


def actor_of(entity_type: EntityType, payload: dict[str, Any]) -> str | None:
    """Return the id of the user who authored *payload*, if the type tracks one."""
    field = _ACTOR_FIELDS.get(entity_type)
    if field is None:
        return None
    value = payload.get(field)
    if value is None and field == "employee_id":
        value = payload.get("employeeId")
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None

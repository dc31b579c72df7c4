"""Change-feed payload parsing.

Accepts both payload shapes the realtime service has used:

- ``{"eventType": "INSERT", "new": {...}, "old": {...}}``
- ``{"type": "INSERT", "record": {...}, "old_record": {...}}``

Anything else is dropped and logged; nothing here raises.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from workshopsync._redact import redact_for_log
from workshopsync.ingestion.normalize import coerce_id, parse_timestamp
from workshopsync.state.events import ChangeEvent, ChangeKind, ChangeSource, EntityType
from workshopsync.state.policy import actor_of

_logger = logging.getLogger(__name__)


def _row(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, dict) and value:
            return value
    return {}


def parse_change(entity_type: EntityType, data: Any) -> ChangeEvent | None:
    """Build a :class:`ChangeEvent` from one raw feed payload, or ``None``."""
    if not isinstance(data, dict):
        _logger.warning("Dropping non-object %s change: %r", entity_type.value, type(data).__name__)
        return None

    table = data.get("table")
    if table is not None and table != entity_type.value:
        _logger.warning("Dropping change for table %r on the %s stream", table, entity_type.value)
        return None

    raw_kind = data.get("eventType") or data.get("type")
    try:
        kind = ChangeKind(str(raw_kind).upper())
    except ValueError:
        _logger.warning("Dropping %s change with unknown kind %r", entity_type.value, raw_kind)
        return None

    new_row = _row(data, "new", "record")
    old_row = _row(data, "old", "old_record")
    source_row = old_row if kind is ChangeKind.DELETE else new_row
    entity_id = coerce_id(source_row.get("id"))
    if entity_id is None:
        _logger.warning(
            "Dropping %s %s change without id: %s",
            kind.value,
            entity_type.value,
            redact_for_log(data),
        )
        return None

    observed_at = parse_timestamp(data.get("commit_timestamp"))
    try:
        return ChangeEvent(
            kind=kind,
            entity_type=entity_type,
            entity_id=entity_id,
            payload={} if kind is ChangeKind.DELETE else new_row,
            actor_id=actor_of(entity_type, new_row),
            source=ChangeSource.FEED,
            **({"observed_at": observed_at} if observed_at is not None else {}),
        )
    except ValidationError as exc:
        _logger.warning("Dropping malformed %s change: %s", entity_type.value, exc.errors(include_url=False))
        return None

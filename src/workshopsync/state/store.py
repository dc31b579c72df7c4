"""Deterministic in-memory entity cache.

This is the only component allowed to merge rows into the collections the
application reads. It is written by the ingestion pipeline and by
confirmed-mutation handlers; every other component only reads it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

from pydantic import ValidationError

from workshopsync._redact import redact_for_log
from workshopsync.models import EntityModel, InspectionRequest
from workshopsync.state.events import ChangeEvent, ChangeKind, ChangeSource, EntityType
from workshopsync.state.policy import is_time_ordered, model_for

_logger = logging.getLogger(__name__)

CacheListener = Callable[[ChangeEvent], None]


def _patch_of(entity: EntityModel) -> dict[str, Any]:
    if entity.raw:
        return dict(entity.raw)
    return entity.model_dump(exclude={"raw"}, exclude_unset=True)


def _newest_first(entity: EntityModel) -> tuple[float, str]:
    return (entity.sort_key, entity.id)


class EntityCollection:
    """Ordered, id-unique rows of one entity type.

    Time-ordered types are re-sorted by ``created_at`` descending after
    every insert (ties broken by id); all other types keep insertion
    order. Updates and removals never change the relative order.
    """

    def __init__(self, entity_type: EntityType) -> None:
        self.entity_type = entity_type
        self.model = model_for(entity_type)
        self._time_ordered = is_time_ordered(entity_type)
        self._rows: dict[str, EntityModel] = {}
        self._order: list[str] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._rows

    def __iter__(self) -> Iterator[Any]:
        for entity_id in self._order:
            yield self._rows[entity_id]

    def __repr__(self) -> str:
        return f"EntityCollection({self.entity_type.value!r}, size={len(self)})"

    def get(self, entity_id: str) -> Any | None:
        return self._rows.get(entity_id)

    def ids(self) -> list[str]:
        return list(self._order)

    def to_list(self) -> list[Any]:
        return list(self)

    def find(self, predicate: Callable[[Any], bool]) -> Any | None:
        for entity in self:
            if predicate(entity):
                return entity
        return None

    def insert(self, entity: EntityModel) -> EntityModel:
        """Add *entity*; an existing id is merged instead (never duplicated)."""
        if entity.id in self._rows:
            return self.update(entity.id, _patch_of(entity)) or self._rows[entity.id]
        self._rows[entity.id] = entity
        self._order.append(entity.id)
        if self._time_ordered:
            self._resort()
        return entity

    def append(self, entity: EntityModel) -> EntityModel:
        """Add *entity* at the tail without re-sorting (paged loads)."""
        if entity.id in self._rows:
            return self.update(entity.id, _patch_of(entity)) or self._rows[entity.id]
        self._rows[entity.id] = entity
        self._order.append(entity.id)
        return entity

    def update(self, entity_id: str, patch: Mapping[str, Any]) -> EntityModel | None:
        existing = self._rows.get(entity_id)
        if existing is None:
            return None
        merged = existing.merged_with(dict(patch))
        self._rows[entity_id] = merged
        return merged

    def remove(self, entity_id: str) -> EntityModel | None:
        removed = self._rows.pop(entity_id, None)
        if removed is not None:
            self._order.remove(entity_id)
        return removed

    def clear(self) -> None:
        self._rows.clear()
        self._order.clear()

    def _resort(self) -> None:
        self._order.sort(key=lambda entity_id: _newest_first(self._rows[entity_id]), reverse=True)


class EntityCache:
    """Per-type entity collections plus the search and highlight side views.

    Change-level operations (:meth:`apply`, :meth:`apply_insert`,
    :meth:`apply_update`, :meth:`apply_delete`) are idempotent and notify
    listeners. Bulk operations (:meth:`replace`, :meth:`extend`) are used by
    loaders and do not notify.
    """

    def __init__(self) -> None:
        self._collections: dict[EntityType, EntityCollection] = {
            entity_type: EntityCollection(entity_type) for entity_type in EntityType
        }
        self._search_results: list[InspectionRequest] | None = None
        self._highlighted: set[str] = set()
        self._listeners: list[CacheListener] = []
        self.unread_messages: int = 0

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def collection(self, entity_type: EntityType) -> EntityCollection:
        return self._collections[entity_type]

    __getitem__ = collection

    @property
    def requests(self) -> EntityCollection:
        return self._collections[EntityType.REQUEST]

    @property
    def search_results(self) -> list[InspectionRequest] | None:
        """Active search results, or ``None`` when no search is active."""
        if self._search_results is None:
            return None
        return list(self._search_results)

    @property
    def highlighted(self) -> frozenset[str]:
        return frozenset(self._highlighted)

    def get(self, entity_type: EntityType, entity_id: str) -> Any | None:
        return self._collections[entity_type].get(entity_id)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: CacheListener) -> Callable[[], None]:
        """Register *listener* for applied change events; returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                _logger.warning("Cache listener failed for %s %s", event.kind, event.entity_type, exc_info=True)

    # ------------------------------------------------------------------
    # Change-level operations
    # ------------------------------------------------------------------

    def parse(self, entity_type: EntityType, row: Any) -> EntityModel | None:
        """Validate *row* into the type's model; malformed rows yield ``None``."""
        if isinstance(row, EntityModel):
            return row
        if not isinstance(row, Mapping):
            _logger.warning("Dropping non-object %s row: %r", entity_type.value, type(row).__name__)
            return None
        try:
            return model_for(entity_type).model_validate(dict(row))
        except ValidationError as exc:
            _logger.warning(
                "Dropping malformed %s row: %s payload=%s",
                entity_type.value,
                exc.errors(include_url=False),
                redact_for_log(dict(row)),
            )
            return None

    def apply(self, event: ChangeEvent) -> EntityModel | None:
        """Apply one change event.

        Returns the stored (or removed) entity, or ``None`` when the event
        was a no-op or malformed. Never raises for bad payloads.
        """
        collection = self._collections[event.entity_type]
        result: EntityModel | None

        try:
            if event.kind is ChangeKind.DELETE:
                result = self._delete(event.entity_type, event.entity_id)
            elif event.kind is ChangeKind.INSERT:
                entity = self.parse(event.entity_type, {**event.payload, "id": event.entity_id})
                if entity is None:
                    return None
                result = collection.insert(entity)
            else:
                result = collection.update(event.entity_id, event.payload)
                if event.entity_type is EntityType.REQUEST:
                    searched = self._refresh_search_entry(event.entity_id, event.payload, result)
                    result = result or searched
                if result is None:
                    _logger.debug("Ignoring update for uncached %s id=%s", event.entity_type.value, event.entity_id)
        except ValidationError as exc:
            _logger.warning(
                "Dropping %s %s id=%s: %s",
                event.kind.value,
                event.entity_type.value,
                event.entity_id,
                exc.errors(include_url=False),
            )
            return None

        if result is not None:
            self._notify(event)
        return result

    def apply_insert(
        self,
        entity_type: EntityType,
        entity: EntityModel | Mapping[str, Any],
        *,
        source: ChangeSource = ChangeSource.MUTATION,
        actor_id: str | None = None,
    ) -> EntityModel | None:
        model = self.parse(entity_type, entity)
        if model is None:
            return None
        return self.apply(
            ChangeEvent(
                kind=ChangeKind.INSERT,
                entity_type=entity_type,
                entity_id=model.id,
                payload=_patch_of(model),
                actor_id=actor_id,
                source=source,
            )
        )

    def apply_update(
        self,
        entity_type: EntityType,
        patch: EntityModel | Mapping[str, Any],
        *,
        source: ChangeSource = ChangeSource.MUTATION,
    ) -> EntityModel | None:
        payload = _patch_of(patch) if isinstance(patch, EntityModel) else dict(patch)
        entity_id = payload.get("id")
        if entity_id is None:
            _logger.warning("Dropping %s update without id", entity_type.value)
            return None
        try:
            event = ChangeEvent(
                kind=ChangeKind.UPDATE,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=payload,
                source=source,
            )
        except ValidationError:
            _logger.warning("Dropping %s update with invalid id %r", entity_type.value, entity_id)
            return None
        return self.apply(event)

    def apply_delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        source: ChangeSource = ChangeSource.MUTATION,
    ) -> EntityModel | None:
        return self.apply(
            ChangeEvent(kind=ChangeKind.DELETE, entity_type=entity_type, entity_id=entity_id, source=source)
        )

    def _delete(self, entity_type: EntityType, entity_id: str) -> EntityModel | None:
        removed = self._collections[entity_type].remove(entity_id)
        if entity_type is EntityType.REQUEST:
            self._highlighted.discard(entity_id)
            if self._search_results is not None:
                for row in self._search_results:
                    if row.id == entity_id:
                        removed = removed or row
                self._search_results = [row for row in self._search_results if row.id != entity_id]
        return removed

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def replace(self, entity_type: EntityType, rows: Iterable[Any]) -> int:
        """Replace a whole collection (full reload). Returns rows kept."""
        collection = self._collections[entity_type]
        collection.clear()
        for row in rows:
            entity = self.parse(entity_type, row)
            if entity is not None:
                collection.insert(entity)
        return len(collection)

    def extend(self, entity_type: EntityType, rows: Iterable[Any]) -> list[EntityModel]:
        """Append rows at the collection tail (known ids are merged in place)."""
        collection = self._collections[entity_type]
        stored: list[EntityModel] = []
        for row in rows:
            entity = self.parse(entity_type, row)
            if entity is not None:
                stored.append(collection.append(entity))
        return stored

    def merge_missing(self, entity_type: EntityType, rows: Iterable[Any]) -> int:
        """Add rows whose ids are not cached yet; cached rows are left alone."""
        collection = self._collections[entity_type]
        added = 0
        for row in rows:
            entity = self.parse(entity_type, row)
            if entity is not None and entity.id not in collection:
                collection.insert(entity)
                added += 1
        return added

    # ------------------------------------------------------------------
    # Side views
    # ------------------------------------------------------------------

    def set_search_results(self, rows: Iterable[Any]) -> list[InspectionRequest]:
        results: list[InspectionRequest] = []
        seen: set[str] = set()
        for row in rows:
            entity = self.parse(EntityType.REQUEST, row)
            if isinstance(entity, InspectionRequest) and entity.id not in seen:
                seen.add(entity.id)
                results.append(entity)
        self._search_results = results
        return list(results)

    def clear_search_results(self) -> None:
        self._search_results = None

    def _refresh_search_entry(
        self, entity_id: str, patch: Mapping[str, Any], merged: EntityModel | None
    ) -> InspectionRequest | None:
        """Apply an update to the search slot; rows only found by search are merged there."""
        if self._search_results is None:
            return None
        refreshed: InspectionRequest | None = None
        results: list[InspectionRequest] = []
        for row in self._search_results:
            if row.id == entity_id:
                updated = merged if isinstance(merged, InspectionRequest) else row.merged_with(dict(patch))
                refreshed = updated
                row = updated
            results.append(row)
        self._search_results = results
        return refreshed

    def highlight(self, entity_id: str) -> None:
        self._highlighted.add(entity_id)

    def unhighlight(self, entity_id: str) -> None:
        self._highlighted.discard(entity_id)

    def reset(self) -> None:
        """Drop every cached row and side view (sign-out)."""
        for collection in self._collections.values():
            collection.clear()
        self._search_results = None
        self._highlighted.clear()
        self.unread_messages = 0

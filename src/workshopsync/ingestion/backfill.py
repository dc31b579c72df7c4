"""Dependent-entity back-fill.

Before a request is exposed to readers, the client and car it references
(and that car's make and model) are loaded into the cache if missing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from workshopsync._api.base import RowGateway
from workshopsync._api.query import Query, in_
from workshopsync.exceptions import WorkshopError
from workshopsync.ingestion.normalize import coerce_id
from workshopsync.models import Car
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)


def _ref(row: Any, field: str) -> str | None:
    value = row.get(field) if isinstance(row, dict) else getattr(row, field, None)
    return coerce_id(value)


class EntityBackfill:
    def __init__(self, rows: RowGateway, cache: EntityCache) -> None:
        self._rows = rows
        self._cache = cache

    def _missing(self, entity_type: EntityType, ids: Iterable[str | None]) -> list[str]:
        collection = self._cache.collection(entity_type)
        return sorted({entity_id for entity_id in ids if entity_id and entity_id not in collection})

    async def _load(self, entity_type: EntityType, ids: list[str]) -> int:
        if not ids:
            return 0
        try:
            rows = await self._rows.select(Query(entity_type.table).where(in_("id", ids)))
        except WorkshopError:
            _logger.warning("Back-fill of %d %s failed", len(ids), entity_type.value, exc_info=True)
            return 0
        return self._cache.merge_missing(entity_type, rows)

    async def ensure_loaded(self, requests: Iterable[Any]) -> None:
        """Load clients, cars, makes and models referenced by *requests*.

        Failures are logged; the requests are still usable without them.
        """
        requests = list(requests)
        if not requests:
            return

        client_ids = self._missing(EntityType.CLIENT, (_ref(r, "client_id") for r in requests))
        car_ids = self._missing(EntityType.CAR, (_ref(r, "car_id") for r in requests))
        await asyncio.gather(
            self._load(EntityType.CLIENT, client_ids),
            self._load(EntityType.CAR, car_ids),
        )

        car_collection = self._cache.collection(EntityType.CAR)
        cars: list[Car] = [
            car
            for car in (car_collection.get(car_id) for car_id in {_ref(r, "car_id") for r in requests} if car_id)
            if car is not None
        ]
        make_ids = self._missing(EntityType.CAR_MAKE, (car.make_id for car in cars))
        model_ids = self._missing(EntityType.CAR_MODEL, (car.model_id for car in cars))
        await asyncio.gather(
            self._load(EntityType.CAR_MAKE, make_ids),
            self._load(EntityType.CAR_MODEL, model_ids),
        )
        if client_ids or car_ids or make_ids or model_ids:
            _logger.debug(
                "Back-filled for %d requests: clients=%d cars=%d makes=%d models=%d",
                len(requests),
                len(client_ids),
                len(car_ids),
                len(make_ids),
                len(model_ids),
            )

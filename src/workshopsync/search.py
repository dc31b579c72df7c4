"""Free-text request search and entity lookups.

Free-text search resolves a query into matching vehicles and clients with
parallel substring lookups, then fetches the requests referencing any of
them. Results land in the cache's search slot, separate from the
paginated list. Only the most recently issued search may write the slot.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from typing import Any

from workshopsync._api.base import RowGateway
from workshopsync._api.query import Filter, Query, eq, ilike, in_
from workshopsync._constants import (
    CAR_HISTORY_LIMIT,
    CAR_SEARCH_LIMIT,
    CLIENT_SEARCH_LIMIT,
    LOOKUP_LIMIT,
    MAKE_MODEL_CAR_LIMIT,
)
from workshopsync.exceptions import WorkshopError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.models import Car, Client, InspectionRequest
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)

_REQUEST_NUMBER = re.compile(r"[0-9]+")


def _compact(text: str) -> str:
    return "".join(text.split())


def _spaced(text: str) -> str:
    """Plate numbers are stored with a space between characters."""
    return " ".join(text)


def _ids(rows: list[dict[str, Any]]) -> list[str]:
    return list(dict.fromkeys(str(row["id"]) for row in rows if row.get("id") is not None))


@dataclasses.dataclass(frozen=True)
class CarHistory:
    """A known vehicle with its most recent requests and last client."""

    car: Car
    previous_requests: list[InspectionRequest]
    last_client: Client | None = None


class SearchAggregator:
    def __init__(
        self,
        rows: RowGateway,
        cache: EntityCache,
        backfill: EntityBackfill,
        *,
        limit: int = 50,
    ) -> None:
        self._rows = rows
        self._cache = cache
        self._backfill = backfill
        self._limit = limit
        self._generation = 0

    # ------------------------------------------------------------------
    # Free-text request search
    # ------------------------------------------------------------------

    async def search_by_free_text(self, query: str) -> list[InspectionRequest]:
        """Search requests by number, plate, VIN, make, model, client name or phone.

        An empty query clears the search slot. Failures are logged and
        produce an empty result. A search overtaken by a newer one returns
        its rows without writing them to the cache.
        """
        text = (query or "").strip()
        self._generation += 1
        generation = self._generation
        if not text:
            self._cache.clear_search_results()
            return []

        try:
            rows = await self._find_requests(text)
        except WorkshopError:
            _logger.warning("Request search failed for %r", text, exc_info=True)
            rows = []

        if generation != self._generation:
            _logger.debug("Discarding stale search results for %r", text)
            parsed = (self._cache.parse(EntityType.REQUEST, row) for row in rows)
            return [entity for entity in parsed if isinstance(entity, InspectionRequest)]
        return self._cache.set_search_results(rows)

    def clear_search(self) -> None:
        self._generation += 1
        self._cache.clear_search_results()

    async def _find_requests(self, text: str) -> list[dict[str, Any]]:
        requests = Query(EntityType.REQUEST.table)

        if _REQUEST_NUMBER.fullmatch(text):
            rows = await self._rows.select(requests.where(eq("request_number", int(text))).order("created_at"))
            await self._backfill.ensure_loaded(rows)
            return rows

        compact, spaced = _compact(text), _spaced(text)
        car_lookup = (
            Query(EntityType.CAR.table)
            .select("id")
            .or_(
                ilike("plate_number", compact),
                ilike("plate_number", spaced),
                ilike("plate_number_en", compact),
                ilike("plate_number_en", spaced),
                ilike("vin", compact),
            )
            .limit(CAR_SEARCH_LIMIT)
        )
        make_lookup = Query(EntityType.CAR_MAKE.table).select("id").or_(ilike("name_ar", text), ilike("name_en", text))
        model_lookup = (
            Query(EntityType.CAR_MODEL.table).select("id").or_(ilike("name_ar", text), ilike("name_en", text))
        )
        client_lookup = (
            Query(EntityType.CLIENT.table)
            .select("id")
            .or_(ilike("name", text), ilike("phone", text))
            .limit(CLIENT_SEARCH_LIMIT)
        )
        cars, makes, models, clients = await asyncio.gather(
            self._rows.select(car_lookup),
            self._rows.select(make_lookup),
            self._rows.select(model_lookup),
            self._rows.select(client_lookup),
        )

        car_ids = _ids(cars)
        make_ids, model_ids = _ids(makes), _ids(models)
        if make_ids or model_ids:
            by_make_or_model: list[Filter] = []
            if make_ids:
                by_make_or_model.append(in_("make_id", make_ids))
            if model_ids:
                by_make_or_model.append(in_("model_id", model_ids))
            more = await self._rows.select(
                Query(EntityType.CAR.table).select("id").or_(*by_make_or_model).limit(MAKE_MODEL_CAR_LIMIT)
            )
            car_ids = list(dict.fromkeys(car_ids + _ids(more)))

        client_ids = _ids(clients)
        if not car_ids and not client_ids:
            return []

        referencing: list[Filter] = []
        if car_ids:
            referencing.append(in_("car_id", car_ids))
        if client_ids:
            referencing.append(in_("client_id", client_ids))
        rows = await self._rows.select(requests.or_(*referencing).order("created_at").limit(self._limit))
        await self._backfill.ensure_loaded(rows)
        return rows

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def search_clients(self, query: str) -> list[Client]:
        """Clients whose name or phone contains *query* (at least two characters)."""
        text = (query or "").strip()
        if len(text) < 2:
            return []
        lookup = Query(EntityType.CLIENT.table).or_(ilike("name", text), ilike("phone", text)).limit(LOOKUP_LIMIT)
        try:
            rows = await self._rows.select(lookup)
        except WorkshopError:
            _logger.warning("Client lookup failed for %r", text, exc_info=True)
            return []
        self._cache.merge_missing(EntityType.CLIENT, rows)
        return [client for client in (self._cache.parse(EntityType.CLIENT, row) for row in rows) if client]

    async def search_cars(self, query: str) -> list[Car]:
        """Cars whose plate (either script) or VIN contains *query*."""
        text = _compact(query or "")
        if not text:
            return []
        lookup = (
            Query(EntityType.CAR.table)
            .or_(ilike("plate_number", text), ilike("plate_number_en", text), ilike("vin", text))
            .limit(LOOKUP_LIMIT)
        )
        try:
            rows = await self._rows.select(lookup)
        except WorkshopError:
            _logger.warning("Car lookup failed for %r", text, exc_info=True)
            return []
        self._cache.merge_missing(EntityType.CAR, rows)
        return [car for car in (self._cache.parse(EntityType.CAR, row) for row in rows) if car]

    async def check_car_history(self, plate: str | None = None, vin: str | None = None) -> CarHistory | None:
        """Find a vehicle by plate or VIN and return its recent request history.

        The cache is consulted before the server. Returns ``None`` when no
        vehicle matches or the lookup fails.
        """
        plate = (plate or "").strip()
        vin = (vin or "").strip()
        if not plate and not vin:
            return None

        cars = self._cache.collection(EntityType.CAR)
        car: Car | None = None
        if plate:
            car = cars.find(lambda candidate: candidate.matches_plate(plate))
        if car is None and vin:
            car = cars.find(lambda candidate: candidate.matches_vin(vin))

        try:
            if car is None:
                car = await self._fetch_car(plate, vin)
            if car is None:
                return None

            history_rows = await self._rows.select(
                Query(EntityType.REQUEST.table)
                .where(eq("car_id", car.id))
                .order("created_at")
                .limit(CAR_HISTORY_LIMIT)
            )
            history = [
                request
                for request in (self._cache.parse(EntityType.REQUEST, row) for row in history_rows)
                if isinstance(request, InspectionRequest)
            ]
            last_client = await self._fetch_client(history[0].client_id) if history else None
        except WorkshopError:
            _logger.warning("Car history lookup failed plate=%r vin=%r", plate, vin, exc_info=True)
            return None
        return CarHistory(car=car, previous_requests=history, last_client=last_client)

    async def _fetch_car(self, plate: str, vin: str) -> Car | None:
        matchers: list[Filter] = []
        if plate:
            compact = _compact(plate)
            matchers += [
                ilike("plate_number", compact),
                ilike("plate_number", _spaced(compact)),
                ilike("plate_number_en", compact),
                ilike("plate_number_en", _spaced(compact)),
            ]
        if vin:
            matchers.append(eq("vin", vin))
        row = await self._rows.select_maybe_one(Query(EntityType.CAR.table).or_(*matchers))
        if row is None:
            return None
        self._cache.merge_missing(EntityType.CAR, [row])
        entity = self._cache.parse(EntityType.CAR, row)
        return entity if isinstance(entity, Car) else None

    async def _fetch_client(self, client_id: str | None) -> Client | None:
        if client_id is None:
            return None
        cached = self._cache.get(EntityType.CLIENT, client_id)
        if cached is not None:
            return cached
        row = await self._rows.select_maybe_one(Query(EntityType.CLIENT.table).where(eq("id", client_id)))
        if row is None:
            return None
        self._cache.merge_missing(EntityType.CLIENT, [row])
        entity = self._cache.parse(EntityType.CLIENT, row)
        return entity if isinstance(entity, Client) else None

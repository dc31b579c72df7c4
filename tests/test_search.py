from __future__ import annotations

import asyncio

import pytest
from conftest import ids, request_row

from workshopsync._api.memory import InMemoryDataService
from workshopsync.exceptions import WorkshopTransportError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.search import SearchAggregator
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

REQUESTS = "inspection_requests"


def _seed(service: InMemoryDataService) -> None:
    service.rows.seed("car_makes", [{"id": "mk-1", "name_ar": "تويوتا", "name_en": "Toyota"}])
    service.rows.seed("car_models", [{"id": "md-1", "make_id": "mk-2", "name_en": "Patrol"}])
    service.rows.seed(
        "cars",
        [
            {"id": "car-1", "plate_number": "أ ب ج 1 2 3", "plate_number_en": "A B C 1 2 3", "vin": "JT111"},
            {"id": "car-2", "make_id": "mk-1", "plate_number_en": "X Y Z 9 9 9"},
            {"id": "car-3", "make_id": "mk-2", "model_id": "md-1"},
        ],
    )
    service.rows.seed(
        "clients",
        [
            {"id": "c-1", "name": "Toyota Fleet Services", "phone": "0500000001"},
            {"id": "c-2", "name": "Nasser", "phone": "0555123456"},
        ],
    )
    service.rows.seed(
        REQUESTS,
        [
            request_row("r-1", 10, request_number=1041, car_id="car-1", client_id="c-2"),
            request_row("r-2", 20, request_number=1042, car_id="car-2", client_id="c-2"),
            request_row("r-3", 30, request_number=1043, car_id="car-3", client_id="c-1"),
            request_row("r-4", 40, request_number=1044, car_id="car-9", client_id="c-9"),
        ],
    )


def _aggregator(service: InMemoryDataService, cache: EntityCache) -> SearchAggregator:
    return SearchAggregator(service.rows, cache, EntityBackfill(service.rows, cache), limit=50)


@pytest.mark.asyncio
async def test_numeric_query_looks_up_request_number(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    results = await search.search_by_free_text(" 1042 ")

    assert ids(results) == ["r-2"]
    assert ids(cache.search_results or []) == ["r-2"]
    assert len(cache.requests) == 0


@pytest.mark.asyncio
async def test_make_and_client_matches_are_unioned(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    results = await search.search_by_free_text("toyota")

    # car-2 through its make, r-3 through the client name.
    assert ids(results) == ["r-3", "r-2"]


@pytest.mark.asyncio
async def test_model_match_finds_cars_of_that_model(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    assert ids(await search.search_by_free_text("patrol")) == ["r-3"]


@pytest.mark.asyncio
async def test_plate_typed_without_spaces_matches_spaced_plate(
    service: InMemoryDataService, cache: EntityCache
) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    results = await search.search_by_free_text("ABC123")

    assert ids(results) == ["r-1"]
    assert cache.get(EntityType.CAR, "car-1") is not None
    assert cache.get(EntityType.CLIENT, "c-2") is not None


@pytest.mark.asyncio
async def test_no_vehicle_or_client_match_skips_request_query(
    service: InMemoryDataService, cache: EntityCache
) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    assert await search.search_by_free_text("no such thing") == []
    assert service.rows.calls_for(REQUESTS) == []
    assert cache.search_results == []


@pytest.mark.asyncio
async def test_lookup_failure_yields_empty_results(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    service.rows.fail("clients", WorkshopTransportError("connection reset"))
    search = _aggregator(service, cache)

    assert await search.search_by_free_text("toyota") == []
    assert cache.search_results == []


@pytest.mark.asyncio
async def test_empty_query_clears_the_slot(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)
    await search.search_by_free_text("1041")

    assert await search.search_by_free_text("   ") == []
    assert cache.search_results is None


@pytest.mark.asyncio
async def test_only_latest_search_writes_the_slot(cache: EntityCache) -> None:
    service = InMemoryDataService.create(latency=0.01)
    _seed(service)
    search = _aggregator(service, cache)

    slow = asyncio.create_task(search.search_by_free_text("toyota"))
    await asyncio.sleep(0)
    latest = await search.search_by_free_text("1041")
    stale = await slow

    assert ids(latest) == ["r-1"]
    assert ids(stale) == ["r-3", "r-2"]
    assert ids(cache.search_results or []) == ["r-1"]


@pytest.mark.asyncio
async def test_clear_search_discards_in_flight_results(cache: EntityCache) -> None:
    service = InMemoryDataService.create(latency=0.01)
    _seed(service)
    search = _aggregator(service, cache)

    pending = asyncio.create_task(search.search_by_free_text("1041"))
    await asyncio.sleep(0)
    search.clear_search()
    await pending

    assert cache.search_results is None


@pytest.mark.asyncio
async def test_search_clients_needs_two_characters(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    assert await search.search_clients("n") == []
    assert service.rows.calls_for("clients") == []

    clients = await search.search_clients("0555")
    assert ids(clients) == ["c-2"]
    assert "c-2" in cache.collection(EntityType.CLIENT)


@pytest.mark.asyncio
async def test_search_cars_ignores_spaces_in_query(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    assert ids(await search.search_cars(" jt 111 ")) == ["car-1"]


@pytest.mark.asyncio
async def test_car_history_prefers_the_cache(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    service.rows.seed(REQUESTS, [request_row(f"h-{n}", 100 + n, car_id="car-1", client_id="c-2") for n in range(6)])
    cache.apply_insert(EntityType.CAR, {"id": "car-1", "plate_number_en": "A B C 1 2 3"})
    search = _aggregator(service, cache)

    history = await search.check_car_history(plate="abc 123")

    assert history is not None
    assert history.car.id == "car-1"
    assert service.rows.calls_for("cars") == []
    assert ids(history.previous_requests) == ["h-5", "h-4", "h-3", "h-2", "h-1"]
    assert history.last_client is not None
    assert history.last_client.name == "Nasser"


@pytest.mark.asyncio
async def test_car_history_falls_back_to_server_by_vin(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    history = await search.check_car_history(vin="JT111")

    assert history is not None
    assert history.car.id == "car-1"
    assert "car-1" in cache.collection(EntityType.CAR)
    assert ids(history.previous_requests) == ["r-1"]


@pytest.mark.asyncio
async def test_car_history_unknown_vehicle(service: InMemoryDataService, cache: EntityCache) -> None:
    _seed(service)
    search = _aggregator(service, cache)

    assert await search.check_car_history(plate="QQQ 000") is None
    assert await search.check_car_history() is None

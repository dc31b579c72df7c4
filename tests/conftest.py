from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from workshopsync._api.memory import InMemoryDataService
from workshopsync.config import WorkshopConfig
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.local_store import MemoryStateStore, PersistedState
from workshopsync.state.store import EntityCache

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


def iso(offset_minutes: float = 0.0) -> str:
    return (BASE_TIME + timedelta(minutes=offset_minutes)).isoformat()


def request_row(request_id: str, offset_minutes: float = 0.0, **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": request_id,
        "request_number": None,
        "client_id": None,
        "car_id": None,
        "price": 100,
        "status": "جديد",
        "payment_type": "نقدي",
        "created_at": iso(offset_minutes),
    }
    row.update(extra)
    return row


def numbered_requests(count: int, *, start: int = 1) -> list[dict[str, Any]]:
    """*count* requests one minute apart; ``r-0001`` is the oldest."""
    return [request_row(f"r-{n:04d}", float(n), request_number=n) for n in range(start, start + count)]


def ids(entities: Iterable[Any]) -> list[str]:
    return [entity.id for entity in entities]


@pytest.fixture
def config() -> WorkshopConfig:
    return WorkshopConfig(
        base_url="https://workshop.example.test",
        api_key="anon-key",
        time_zone="UTC",
        session_init_timeout=0.5,
        sign_out_timeout=0.05,
        incoming_signal_ttl=0.05,
        highlight_ttl=0.05,
        day_check_interval=3600.0,
    )


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def persisted(store: MemoryStateStore) -> PersistedState:
    return PersistedState(store)


@pytest.fixture
def service(persisted: PersistedState) -> InMemoryDataService:
    return InMemoryDataService.create(persisted=persisted)


@pytest.fixture
def cache() -> EntityCache:
    return EntityCache()


@pytest.fixture
def backfill(service: InMemoryDataService, cache: EntityCache) -> EntityBackfill:
    return EntityBackfill(service.rows, cache)

from __future__ import annotations

import asyncio

import pytest

from workshopsync.ingestion.changes import parse_change
from workshopsync.ingestion.channels import ChangeBus, ChangeChannel
from workshopsync.state.events import ChangeEvent, ChangeKind, EntityType


def test_parses_new_old_payload_shape() -> None:
    event = parse_change(
        EntityType.REQUEST,
        {
            "table": "inspection_requests",
            "eventType": "INSERT",
            "commit_timestamp": "2026-01-05T09:00:00Z",
            "new": {"id": 17, "price": 100, "employee_id": "u-2"},
            "old": {},
        },
    )

    assert event is not None
    assert event.kind is ChangeKind.INSERT
    assert event.entity_id == "17"
    assert event.actor_id == "u-2"
    assert event.payload["price"] == 100
    assert event.observed_at.year == 2026


def test_parses_record_payload_shape() -> None:
    event = parse_change(
        EntityType.MESSAGE,
        {"type": "insert", "record": {"id": "m-1", "sender_id": "u-9"}, "old_record": None},
    )

    assert event is not None
    assert event.kind is ChangeKind.INSERT
    assert event.actor_id == "u-9"


def test_delete_takes_id_from_old_row_and_drops_payload() -> None:
    event = parse_change(EntityType.REQUEST, {"eventType": "DELETE", "new": {}, "old": {"id": "r-1"}})

    assert event is not None
    assert event.kind is ChangeKind.DELETE
    assert event.entity_id == "r-1"
    assert event.payload == {}


@pytest.mark.parametrize(
    "data",
    [
        None,
        "INSERT r-1",
        {"eventType": "UPSERT", "new": {"id": "r-1"}},
        {"eventType": "INSERT", "new": {}},
        {"eventType": "UPDATE", "new": {"id": ""}},
        {"eventType": "DELETE", "old": {}},
        {"table": "clients", "eventType": "INSERT", "new": {"id": "c-1"}},
    ],
)
def test_unusable_payloads_are_dropped(data: object) -> None:
    assert parse_change(EntityType.REQUEST, data) is None


def test_channel_refuses_events_of_another_type() -> None:
    channel = ChangeChannel(EntityType.CLIENT)
    event = ChangeEvent(kind=ChangeKind.INSERT, entity_type=EntityType.REQUEST, entity_id="r-1")

    assert channel.publish(event) is False
    assert len(channel) == 0


def test_full_channel_drops_instead_of_blocking() -> None:
    channel = ChangeChannel(EntityType.REQUEST, maxsize=1)
    first = ChangeEvent(kind=ChangeKind.INSERT, entity_type=EntityType.REQUEST, entity_id="r-1")
    second = ChangeEvent(kind=ChangeKind.INSERT, entity_type=EntityType.REQUEST, entity_id="r-2")

    assert channel.publish(first) is True
    assert channel.publish(second) is False


@pytest.mark.asyncio
async def test_bus_routes_by_type_and_preserves_order() -> None:
    bus = ChangeBus()
    for entity_id in ("r-1", "r-2", "r-3"):
        bus.publish(ChangeEvent(kind=ChangeKind.UPDATE, entity_type=EntityType.REQUEST, entity_id=entity_id))
    bus.publish(ChangeEvent(kind=ChangeKind.INSERT, entity_type=EntityType.MESSAGE, entity_id="m-1"))

    requests = bus.channel(EntityType.REQUEST)
    seen = []
    for _ in range(3):
        seen.append((await requests.get()).entity_id)
        requests.task_done()

    assert seen == ["r-1", "r-2", "r-3"]
    assert len(bus.channel(EntityType.MESSAGE)) == 1

    messages = bus.channel(EntityType.MESSAGE)
    await messages.get()
    messages.task_done()
    await asyncio.wait_for(bus.join(), timeout=1.0)

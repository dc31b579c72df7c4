from __future__ import annotations

from typing import Any

from conftest import ids, iso, request_row

from workshopsync.models import InspectionRequest
from workshopsync.state.events import ChangeEvent, ChangeKind, ChangeSource, EntityType
from workshopsync.state.store import EntityCache


def _event(
    kind: ChangeKind,
    entity_id: str,
    payload: dict[str, Any] | None = None,
    *,
    entity_type: EntityType = EntityType.REQUEST,
) -> ChangeEvent:
    return ChangeEvent(
        kind=kind,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        source=ChangeSource.FEED,
    )


def test_insert_is_idempotent() -> None:
    cache = EntityCache()
    event = _event(ChangeKind.INSERT, "r-1", request_row("r-1", price=250))

    cache.apply(event)
    cache.apply(event)

    assert ids(cache.requests) == ["r-1"]
    assert cache.get(EntityType.REQUEST, "r-1").price == 250


def test_insert_of_known_id_merges_instead_of_duplicating() -> None:
    cache = EntityCache()
    cache.apply(_event(ChangeKind.INSERT, "r-1", request_row("r-1", price=100, payment_note="first")))
    cache.apply(_event(ChangeKind.INSERT, "r-1", {"price": 150}))

    request = cache.get(EntityType.REQUEST, "r-1")
    assert len(cache.requests) == 1
    assert request.price == 150
    assert request.payment_note == "first"


def test_update_keeps_absent_fields_and_applies_explicit_nulls() -> None:
    cache = EntityCache()
    cache.apply(
        _event(
            ChangeKind.INSERT,
            "r-1",
            request_row("r-1", price=300, payment_note="paid half", broker={"id": "b-1", "commission": 20}),
        )
    )

    cache.apply(_event(ChangeKind.UPDATE, "r-1", {"payment_note": None}))

    request = cache.get(EntityType.REQUEST, "r-1")
    assert request.payment_note is None
    assert request.price == 300
    assert request.commission == 20


def test_update_preserves_columns_the_model_does_not_declare() -> None:
    cache = EntityCache()
    cache.apply(_event(ChangeKind.INSERT, "r-1", request_row("r-1", activity_log=[{"action": "created"}])))

    cache.apply(_event(ChangeKind.UPDATE, "r-1", {"status": "مكتمل"}))

    request = cache.get(EntityType.REQUEST, "r-1")
    assert request.raw["activity_log"] == [{"action": "created"}]
    assert request.status == "مكتمل"


def test_update_for_uncached_id_is_ignored() -> None:
    cache = EntityCache()
    received: list[ChangeEvent] = []
    cache.add_listener(received.append)

    assert cache.apply(_event(ChangeKind.UPDATE, "r-404", {"price": 1})) is None
    assert len(cache.requests) == 0
    assert received == []


def test_requests_stay_newest_first_after_out_of_order_inserts() -> None:
    cache = EntityCache()
    for request_id, offset in (("r-b", 10), ("r-a", 30), ("r-c", 20)):
        cache.apply_insert(EntityType.REQUEST, request_row(request_id, offset))

    assert ids(cache.requests) == ["r-a", "r-c", "r-b"]


def test_equal_timestamps_are_ordered_by_id() -> None:
    cache = EntityCache()
    cache.apply_insert(EntityType.REQUEST, request_row("r-1", 5))
    cache.apply_insert(EntityType.REQUEST, request_row("r-2", 5))

    assert ids(cache.requests) == ["r-2", "r-1"]


def test_reference_collections_keep_insertion_order() -> None:
    cache = EntityCache()
    cache.apply_insert(EntityType.CLIENT, {"id": "c-2", "name": "Second", "created_at": iso(0)})
    cache.apply_insert(EntityType.CLIENT, {"id": "c-1", "name": "First", "created_at": iso(10)})

    assert ids(cache.collection(EntityType.CLIENT)) == ["c-2", "c-1"]


def test_extend_appends_pages_at_the_tail() -> None:
    cache = EntityCache()
    cache.replace(EntityType.REQUEST, [request_row("r-new", 60)])
    cache.extend(EntityType.REQUEST, [request_row("r-old-1", 20), request_row("r-old-2", 10)])

    assert ids(cache.requests) == ["r-new", "r-old-1", "r-old-2"]


def test_delete_removes_row_from_every_view() -> None:
    cache = EntityCache()
    row = request_row("r-1")
    cache.apply_insert(EntityType.REQUEST, row)
    cache.set_search_results([row, request_row("r-2")])
    cache.highlight("r-1")

    removed = cache.apply(_event(ChangeKind.DELETE, "r-1"))

    assert isinstance(removed, InspectionRequest)
    assert "r-1" not in cache.requests
    assert ids(cache.search_results or []) == ["r-2"]
    assert "r-1" not in cache.highlighted


def test_delete_of_unknown_id_is_a_noop() -> None:
    cache = EntityCache()
    cache.apply_insert(EntityType.REQUEST, request_row("r-1"))

    assert cache.apply_delete(EntityType.REQUEST, "r-2") is None
    assert ids(cache.requests) == ["r-1"]


def test_update_refreshes_search_entry() -> None:
    cache = EntityCache()
    row = request_row("r-1", price=100)
    cache.apply_insert(EntityType.REQUEST, row)
    cache.set_search_results([row])

    cache.apply_update(EntityType.REQUEST, {"id": "r-1", "price": 175})

    assert (cache.search_results or [])[0].price == 175


def test_update_reaches_rows_only_found_by_search() -> None:
    cache = EntityCache()
    cache.set_search_results([request_row("r-old", price=100, general_notes=["tyres"])])
    received: list[str] = []
    cache.add_listener(lambda event: received.append(event.entity_id))

    merged = cache.apply(_event(ChangeKind.UPDATE, "r-old", {"price": 180}))

    assert isinstance(merged, InspectionRequest)
    [searched] = cache.search_results or []
    assert searched.price == 180
    assert searched.raw["general_notes"] == ["tyres"]
    assert "r-old" not in cache.requests
    assert received == ["r-old"]


def test_malformed_rows_are_dropped_without_raising() -> None:
    cache = EntityCache()

    assert cache.apply_insert(EntityType.EMPLOYEE, {"id": "e-1", "name": {"first": "Sara"}}) is None
    assert cache.apply_insert(EntityType.REQUEST, {"price": 10}) is None
    assert cache.apply_update(EntityType.REQUEST, {"price": 10}) is None
    assert cache.replace(EntityType.CLIENT, [{"id": "c-1", "name": "Ok"}, "not-a-row", {"name": "no id"}]) == 1


def test_unknown_enum_values_resolve_to_unknown() -> None:
    cache = EntityCache()
    request = cache.apply_insert(EntityType.REQUEST, request_row("r-1", status="archived", payment_type="cheque"))

    assert isinstance(request, InspectionRequest)
    assert request.status == "unknown"
    assert request.payment_type == "unknown"


def test_failing_listener_does_not_block_others() -> None:
    cache = EntityCache()
    received: list[str] = []

    def _broken(_event: ChangeEvent) -> None:
        raise RuntimeError("listener bug")

    cache.add_listener(_broken)
    remove = cache.add_listener(lambda event: received.append(event.entity_id))

    cache.apply_insert(EntityType.REQUEST, request_row("r-1"))
    remove()
    cache.apply_insert(EntityType.REQUEST, request_row("r-2"))

    assert received == ["r-1"]


def test_bulk_operations_do_not_notify() -> None:
    cache = EntityCache()
    received: list[ChangeEvent] = []
    cache.add_listener(received.append)

    cache.replace(EntityType.REQUEST, [request_row("r-1")])
    cache.extend(EntityType.REQUEST, [request_row("r-2")])
    cache.merge_missing(EntityType.CLIENT, [{"id": "c-1"}])

    assert received == []


def test_merge_missing_leaves_cached_rows_alone() -> None:
    cache = EntityCache()
    cache.apply_insert(EntityType.CLIENT, {"id": "c-1", "name": "Cached"})

    added = cache.merge_missing(EntityType.CLIENT, [{"id": "c-1", "name": "Server"}, {"id": "c-2", "name": "New"}])

    assert added == 1
    assert cache.get(EntityType.CLIENT, "c-1").name == "Cached"
    assert cache.get(EntityType.CLIENT, "c-2").name == "New"


def test_search_slot_is_separate_from_the_request_list() -> None:
    cache = EntityCache()
    cache.replace(EntityType.REQUEST, [request_row("r-1")])
    assert cache.search_results is None

    cache.set_search_results([request_row("r-9"), request_row("r-9")])
    assert ids(cache.search_results or []) == ["r-9"]
    assert ids(cache.requests) == ["r-1"]

    cache.clear_search_results()
    assert cache.search_results is None
    assert ids(cache.requests) == ["r-1"]


def test_reset_drops_everything() -> None:
    cache = EntityCache()
    cache.apply_insert(EntityType.REQUEST, request_row("r-1"))
    cache.apply_insert(EntityType.CLIENT, {"id": "c-1"})
    cache.set_search_results([request_row("r-1")])
    cache.highlight("r-1")
    cache.unread_messages = 3

    cache.reset()

    assert len(cache.requests) == 0
    assert len(cache.collection(EntityType.CLIENT)) == 0
    assert cache.search_results is None
    assert cache.highlighted == frozenset()
    assert cache.unread_messages == 0

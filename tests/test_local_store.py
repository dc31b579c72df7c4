from __future__ import annotations

import json
from datetime import date
from pathlib import Path

from workshopsync._api.auth import AuthStateTracker
from workshopsync._api.base import AuthEvent
from workshopsync.local_store import JsonFileStateStore, MemoryStateStore, PersistedState
from workshopsync.models import AuthSession, AuthUser


def _session(user_id: str = "u-1") -> AuthSession:
    return AuthSession(access_token="at", refresh_token="rt", expires_at=4102444800.0, user=AuthUser(id=user_id))


def test_persisted_state_round_trips_typed_values() -> None:
    state = PersistedState(MemoryStateStore())

    state.selected_request_id = "r-1"
    state.login_date = date(2026, 3, 10)
    state.last_active_time = 1773129600.0
    state.install_prompt_dismissed_at = 1773129000.0

    assert state.selected_request_id == "r-1"
    assert state.login_date == date(2026, 3, 10)
    assert state.store.get("loginDate") == "2026-03-10"
    assert state.last_active_time == 1773129600.0
    assert state.install_prompt_dismissed_at == 1773129000.0

    state.selected_request_id = None
    assert state.store.get("selectedRequestId") is None


def test_unreadable_values_read_as_none() -> None:
    state = PersistedState(MemoryStateStore({"loginDate": "yesterday", "lastActiveTime": "soon", "authSession": {"x": 1}}))

    assert state.login_date is None
    assert state.last_active_time is None
    assert state.load_session() is None
    assert state.store.get("authSession") is None


def test_forget_login_keeps_selections() -> None:
    state = PersistedState(MemoryStateStore())
    state.selected_client_id = "c-1"
    state.login_date = date(2026, 3, 10)
    state.last_active_time = 1.0

    state.forget_login()

    assert state.login_date is None
    assert state.last_active_time is None
    assert state.selected_client_id == "c-1"


def test_json_file_store_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "state" / "workshop.json"
    state = PersistedState(JsonFileStateStore(path))
    state.selected_request_id = "r-9"
    state.save_session(_session())

    reopened = PersistedState(JsonFileStateStore(path))

    assert reopened.selected_request_id == "r-9"
    restored = reopened.load_session()
    assert restored is not None
    assert restored.user_id == "u-1"
    assert json.loads(path.read_text(encoding="utf-8"))["selectedRequestId"] == "r-9"


def test_json_file_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "workshop.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonFileStateStore(path)
    assert store.get("anything") is None

    store.set("k", "v")
    store.clear()
    assert not path.exists()


def test_auth_tracker_restores_and_persists_sessions() -> None:
    persisted = PersistedState(MemoryStateStore())
    persisted.save_session(_session("u-7"))
    events: list[AuthEvent] = []

    tracker = AuthStateTracker(persisted)
    tracker.add_listener(lambda event, _session: events.append(event))

    restored = tracker.session
    assert restored is not None
    assert restored.user_id == "u-7"

    tracker.set(_session("u-8"), AuthEvent.TOKEN_REFRESHED)
    assert persisted.load_session().user_id == "u-8"  # type: ignore[union-attr]

    tracker.clear()
    assert persisted.load_session() is None
    assert events == [AuthEvent.TOKEN_REFRESHED, AuthEvent.SIGNED_OUT]

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime, timedelta

import pytest
import pytest_asyncio
from conftest import numbered_requests

from workshopsync._api.base import StreamStatus
from workshopsync._api.memory import InMemoryDataService
from workshopsync.client import WorkshopClient
from workshopsync.config import WorkshopConfig
from workshopsync.exceptions import (
    WorkshopAuthenticationError,
    WorkshopSessionInitError,
    WorkshopTransportError,
)
from workshopsync.lifecycle import AppPhase, ConnectionStatus, fold_connection_status, merge_settings
from workshopsync.local_store import MemoryStateStore
from workshopsync.models import AuthUser

EMAIL = "sara@workshop.test"
PASSWORD = "correct-horse"
WATCHED = ["inspection_requests", "internal_messages", "notifications"]


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta).total_seconds()


class _BrokenStore(MemoryStateStore):
    def clear(self) -> None:
        raise OSError("storage quota exceeded")


def _employee(service: InMemoryDataService, user_id: str = "u-1", name: str = "Sara") -> AuthUser:
    email = EMAIL if user_id == "u-1" else f"{user_id}@workshop.test"
    user = service.auth.add_user(email, PASSWORD, user_id=user_id)
    service.rows.seed("employees", [{"id": user_id, "name": name, "email": email, "role": "receptionist"}])
    return user


async def _settle(client: WorkshopClient) -> None:
    """Wait for lifecycle work scheduled by auth events."""
    pending = set(client.lifecycle._background)  # type: ignore[attr-defined]
    if pending:
        await asyncio.wait(pending, timeout=2.0)


@pytest.fixture
def clock() -> _Clock:
    return _Clock(datetime(2026, 3, 10, 8, 0, tzinfo=UTC))


@pytest.fixture
def reloads() -> list[str | None]:
    return []


@pytest_asyncio.fixture
async def client(
    config: WorkshopConfig,
    service: InMemoryDataService,
    store: MemoryStateStore,
    clock: _Clock,
    reloads: list[str | None],
) -> AsyncIterator[WorkshopClient]:
    async def _reload(marker: str | None) -> None:
        reloads.append(marker)

    async with WorkshopClient(config, service=service, state_store=store, reload=_reload, clock=clock) as client:
        yield client


def test_fold_connection_status_worst_wins() -> None:
    connected, connecting, disconnected = (
        ConnectionStatus.CONNECTED,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    )
    assert fold_connection_status([]) is disconnected
    assert fold_connection_status([connected, connected]) is connected
    assert fold_connection_status([connected, connecting]) is connecting
    assert fold_connection_status([connecting, disconnected, connected]) is disconnected


def test_merge_settings_overlays_defaults_one_level_deep() -> None:
    merged = merge_settings({"appName": "Al Noor", "reportSettings": {"showStamp": True}})

    assert merged["appName"] == "Al Noor"
    assert merged["setupCompleted"] is False
    assert merged["reportSettings"] == {"showStamp": True}
    assert merge_settings(None)["appName"] == "Workshop"


@pytest.mark.asyncio
async def test_start_without_session_is_ready_and_signed_out(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    assert await client.start() is AppPhase.READY
    assert client.profile is None
    assert client.connection_status is ConnectionStatus.DISCONNECTED
    assert service.feed.subscribe_calls == []


@pytest.mark.asyncio
async def test_start_with_restored_session_loads_and_subscribes(
    config: WorkshopConfig, service: InMemoryDataService, store: MemoryStateStore
) -> None:
    service.auth.establish(_employee(service))
    service.rows.seed("inspection_requests", numbered_requests(60))
    service.rows.seed("app_settings", [{"id": 1, "settings_data": {"appName": "Al Noor"}}])

    async with WorkshopClient(config, service=service, state_store=store) as client:
        assert await client.start() is AppPhase.READY
        assert client.profile is not None
        assert client.profile.name == "Sara"
        assert client.settings["appName"] == "Al Noor"
        assert len(client.requests) == 50
        assert client.has_more
        assert sorted(service.feed.active_tables()) == WATCHED
        assert client.connection_status is ConnectionStatus.CONNECTED

    assert service.feed.active_tables() == []


@pytest.mark.asyncio
async def test_second_start_replaces_the_running_session(client: WorkshopClient, service: InMemoryDataService) -> None:
    service.auth.establish(_employee(service))
    service.rows.seed("inspection_requests", numbered_requests(3))

    await client.start()
    await client.start()

    timers = [task for task in asyncio.all_tasks() if task.get_name() == "session-timers" and not task.done()]
    assert len(timers) == 1
    assert len(client.requests) == 3
    assert sorted(service.feed.active_tables()) == WATCHED


@pytest.mark.asyncio
async def test_start_timeout_is_a_session_error(
    config: WorkshopConfig, service: InMemoryDataService, store: MemoryStateStore
) -> None:
    service.auth.get_session_delay = 1.0
    fast = dataclasses.replace(config, session_init_timeout=0.05)

    async with WorkshopClient(fast, service=service, state_store=store) as client:
        assert await client.start() is AppPhase.SESSION_ERROR
        assert isinstance(client.lifecycle.last_error, WorkshopSessionInitError)


@pytest.mark.asyncio
async def test_session_without_profile_is_signed_out(
    config: WorkshopConfig, service: InMemoryDataService, store: MemoryStateStore
) -> None:
    service.auth.establish(service.auth.add_user("ghost@workshop.test", PASSWORD, user_id="u-ghost"))

    async with WorkshopClient(config, service=service, state_store=store) as client:
        assert await client.start() is AppPhase.READY
        assert client.profile is None
        assert service.auth.current_session is None
        assert "sign_out" in service.auth.calls


@pytest.mark.asyncio
async def test_profile_fetch_failure_is_a_session_error(
    config: WorkshopConfig, service: InMemoryDataService, store: MemoryStateStore
) -> None:
    service.auth.establish(_employee(service))
    service.rows.fail("employees", WorkshopTransportError("gateway timeout", status_code=504))

    async with WorkshopClient(config, service=service, state_store=store) as client:
        assert await client.start() is AppPhase.SESSION_ERROR
        assert isinstance(client.lifecycle.last_error, WorkshopTransportError)


@pytest.mark.asyncio
async def test_login_records_login_state_and_notifies(
    client: WorkshopClient, service: InMemoryDataService, clock: _Clock
) -> None:
    _employee(service)
    await client.start()

    profile = await client.login(EMAIL, PASSWORD)

    assert profile.id == "u-1"
    assert client.phase is AppPhase.READY
    assert client.persisted.login_date == date(2026, 3, 10)
    assert client.persisted.last_active_time == clock.now
    assert [row["type"] for row in service.rows.tables["notifications"]] == ["login"]
    assert client.connection_status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_login_with_wrong_password_raises(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()

    with pytest.raises(WorkshopAuthenticationError):
        await client.login(EMAIL, "wrong")
    assert client.profile is None


@pytest.mark.asyncio
async def test_login_without_profile_raises_and_signs_out(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    service.auth.add_user("ghost@workshop.test", PASSWORD, user_id="u-ghost")
    await client.start()

    with pytest.raises(WorkshopAuthenticationError):
        await client.login("ghost@workshop.test", PASSWORD)
    assert service.auth.current_session is None


@pytest.mark.asyncio
async def test_logout_forgets_login_state(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    service.rows.seed("inspection_requests", numbered_requests(3))
    await client.start()
    await client.login(EMAIL, PASSWORD)
    client.persisted.selected_request_id = "r-0001"
    client.navigate("requests")

    await client.logout()

    assert client.profile is None
    assert client.requests == []
    assert client.persisted.login_date is None
    assert client.persisted.last_active_time is None
    assert client.persisted.selected_request_id is None
    assert client.navigation.pages == ["dashboard"]
    assert service.feed.active_tables() == []


@pytest.mark.asyncio
async def test_next_session_pages_from_the_start_after_a_failed_load(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    _employee(service)
    service.rows.seed("inspection_requests", numbered_requests(3))
    await client.start()
    await client.login(EMAIL, PASSWORD)
    assert not client.has_more

    await client.logout()
    service.rows.fail("inspection_requests", WorkshopTransportError("offline"))
    await client.login(EMAIL, PASSWORD)
    service.rows.recover("inspection_requests")

    assert client.has_more
    assert await client.load_more() == 3
    assert len(client.requests) == 3
    assert not client.has_more


@pytest.mark.asyncio
async def test_failed_stream_makes_status_disconnected_until_retry(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    _employee(service)
    service.feed.failing_tables.add("notifications")
    await client.start()
    await client.login(EMAIL, PASSWORD)

    assert client.connection_status is ConnectionStatus.DISCONNECTED

    service.feed.failing_tables.clear()
    await client.retry_connection()

    assert client.connection_status is ConnectionStatus.CONNECTED
    assert sorted(service.feed.active_tables()) == WATCHED
    assert sorted(service.feed.unsubscribe_calls) == WATCHED


@pytest.mark.asyncio
async def test_dropped_channel_is_reported(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)

    service.feed.drop("inspection_requests", StreamStatus.TIMED_OUT)

    assert client.connection_status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_offline_then_online_resubscribes(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    subscribed = len(service.feed.subscribe_calls)

    client.handle_offline()
    assert client.connection_status is ConnectionStatus.DISCONNECTED

    await client.handle_online()
    assert client.connection_status is ConnectionStatus.CONNECTED
    assert len(service.feed.subscribe_calls) == subscribed + 3


@pytest.mark.asyncio
async def test_pushed_changes_reach_the_cache_after_login(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)

    service.feed.emit(
        "inspection_requests",
        "INSERT",
        {"id": "r-77", "price": 400, "employee_id": "u-2", "created_at": "2026-03-10T08:05:00+00:00"},
    )
    await client.lifecycle._pipeline.wait_idle()  # type: ignore[attr-defined]

    assert client.incoming_request is not None
    assert client.incoming_request.id == "r-77"
    assert [request.id for request in client.requests] == ["r-77"]


@pytest.mark.asyncio
async def test_foreground_identity_drift_triggers_reload(
    client: WorkshopClient, service: InMemoryDataService, reloads: list[str | None]
) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    service.auth.server_user = AuthUser(id="u-2", email="other@workshop.test")

    await client.handle_foreground()

    assert reloads == [None]


@pytest.mark.asyncio
async def test_foreground_reconnects_dropped_streams(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    service.feed.drop()

    await client.handle_foreground()

    assert client.connection_status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_foreground_with_expired_session_and_failed_refresh(
    client: WorkshopClient, service: InMemoryDataService
) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    service.auth.get_session_error = WorkshopTransportError("offline")
    service.auth.fail_refresh = True

    await client.handle_foreground()

    assert client.phase is AppPhase.SESSION_ERROR


@pytest.mark.asyncio
async def test_refresh_session_and_reload_succeeds(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    client.lifecycle.last_error = WorkshopTransportError("earlier failure")

    assert await client.refresh_session_and_reload() is True
    assert "refresh" in service.auth.calls
    assert client.phase is AppPhase.READY
    assert client.lifecycle.last_error is None
    assert client.connection_status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_hard_reset_runs_even_when_sign_out_and_clear_fail(
    config: WorkshopConfig, service: InMemoryDataService, clock: _Clock
) -> None:
    _employee(service)
    reloads: list[str | None] = []

    async def _reload(marker: str | None) -> None:
        reloads.append(marker)

    async with WorkshopClient(
        config, service=service, state_store=_BrokenStore(), reload=_reload, clock=clock
    ) as client:
        await client.start()
        await client.login(EMAIL, PASSWORD)
        service.auth.fail_refresh = True
        service.auth.fail_sign_out = True

        assert await client.refresh_session_and_reload() is False

        assert len(reloads) == 1
        assert reloads[0] == f"reset_ts={int(clock.now * 1000)}"
        assert client.profile is None
        assert service.feed.active_tables() == []


@pytest.mark.asyncio
async def test_hard_reset_does_not_wait_for_a_hanging_sign_out(
    client: WorkshopClient, service: InMemoryDataService, reloads: list[str | None]
) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    service.auth.sign_out_delay = 5.0

    await asyncio.wait_for(client.lifecycle.hard_reset(), timeout=1.0)

    assert len(reloads) == 1
    assert (reloads[0] or "").startswith("reset_ts=")


@pytest.mark.asyncio
async def test_day_rollover_logs_out_once(client: WorkshopClient, service: InMemoryDataService, clock: _Clock) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)

    clock.advance(days=1)
    await client.lifecycle._tick()  # type: ignore[attr-defined]
    await client.lifecycle._tick()  # type: ignore[attr-defined]

    assert client.profile is None
    assert client.persisted.login_date is None
    assert service.auth.calls.count("sign_out") == 1


@pytest.mark.asyncio
async def test_inactivity_collapses_navigation_without_logout(
    client: WorkshopClient, service: InMemoryDataService, clock: _Clock
) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)
    client.navigate("requests")
    client.navigate("request-details")

    clock.advance(hours=5)
    await client.lifecycle._tick()  # type: ignore[attr-defined]

    assert client.navigation.current == "dashboard"
    assert client.profile is not None
    assert client.persisted.last_active_time == clock.now


@pytest.mark.asyncio
async def test_sign_in_elsewhere_adopts_the_new_user(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    other = _employee(service, user_id="u-2", name="Omar")
    await client.start()
    await client.login(EMAIL, PASSWORD)

    service.auth.establish(other)
    await _settle(client)

    assert client.profile is not None
    assert client.profile.id == "u-2"
    assert client.connection_status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_sign_out_elsewhere_ends_the_session(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)

    await service.auth.sign_out()
    await _settle(client)

    assert client.profile is None
    assert service.feed.active_tables() == []


@pytest.mark.asyncio
async def test_update_password_requires_six_characters(client: WorkshopClient, service: InMemoryDataService) -> None:
    _employee(service)
    await client.start()
    await client.login(EMAIL, PASSWORD)

    with pytest.raises(WorkshopAuthenticationError) as excinfo:
        await client.update_password("12345")
    assert excinfo.value.code == "weak_password"

    await client.update_password("123456")
    assert "update_password" in service.auth.calls

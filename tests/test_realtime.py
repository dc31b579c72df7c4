from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import aiohttp
import pytest

from workshopsync._api.base import StreamStatus
from workshopsync._realtime import RealtimeChangeFeed, RealtimeSubscription
from workshopsync.config import WorkshopConfig

TOPIC = "realtime:public:clients"


class _FakeSocket:
    """Websocket double fed from a queue; ``None`` ends the stream."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._frames: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, message: dict[str, Any] | str | None) -> None:
        if message is None:
            self._frames.put_nowait(None)
            return
        data = message if isinstance(message, str) else json.dumps(message)
        self._frames.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data))

    async def send_str(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def __aiter__(self) -> _FakeSocket:
        return self

    async def __anext__(self) -> Any:
        frame = await self._frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def close(self) -> None:
        self.closed = True


class _FakeHttp:
    def __init__(self, socket: _FakeSocket | None = None) -> None:
        self.socket = socket
        self.urls: list[str] = []

    async def ws_connect(self, url: str) -> _FakeSocket:
        self.urls.append(url)
        if self.socket is None:
            raise aiohttp.ClientConnectionError("refused")
        return self.socket


def _subscription(changes: list[dict[str, Any]], statuses: list[StreamStatus]) -> RealtimeSubscription:
    return RealtimeSubscription(
        table="clients",
        schema="public",
        events="*",
        on_change=changes.append,
        on_status=statuses.append,
        heartbeat=30.0,
    )


def _change(row_id: str) -> dict[str, Any]:
    return {
        "topic": TOPIC,
        "event": "postgres_changes",
        "payload": {"data": {"table": "clients", "type": "INSERT", "record": {"id": row_id}}},
    }


def test_handle_text_dispatches_by_event() -> None:
    changes: list[dict[str, Any]] = []
    statuses: list[StreamStatus] = []
    subscription = _subscription(changes, statuses)
    subscription._join_ref = "1"  # type: ignore[attr-defined]

    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "phx_reply", "ref": "1", "payload": {"status": "ok"}}))
    subscription._handle_text(json.dumps(_change("c-1")))
    subscription._handle_text(json.dumps({**_change("c-2"), "topic": "realtime:public:cars"}))
    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "postgres_changes", "payload": {"data": "x"}}))
    subscription._handle_text("not json")
    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "phx_error", "payload": {}}))
    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "phx_close", "payload": {}}))

    assert [change["record"]["id"] for change in changes] == ["c-1"]
    assert statuses == [StreamStatus.SUBSCRIBED, StreamStatus.CHANNEL_ERROR, StreamStatus.CLOSED]


def test_rejected_join_and_system_error_report_channel_error() -> None:
    statuses: list[StreamStatus] = []
    subscription = _subscription([], statuses)
    subscription._join_ref = "1"  # type: ignore[attr-defined]

    subscription._handle_text(
        json.dumps({"topic": TOPIC, "event": "phx_reply", "ref": "1", "payload": {"status": "error"}})
    )
    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "system", "payload": {"status": "error"}}))
    subscription._handle_text(json.dumps({"topic": TOPIC, "event": "phx_reply", "ref": "7", "payload": {"status": "ok"}}))

    assert statuses == [StreamStatus.CHANNEL_ERROR]


def test_repeated_status_is_reported_once() -> None:
    statuses: list[StreamStatus] = []
    subscription = _subscription([], statuses)

    for _ in range(3):
        subscription._handle_text(json.dumps({"topic": TOPIC, "event": "phx_error", "payload": {}}))

    assert statuses == [StreamStatus.CHANNEL_ERROR]


@pytest.mark.asyncio
async def test_open_joins_reads_and_reports_close() -> None:
    changes: list[dict[str, Any]] = []
    statuses: list[StreamStatus] = []
    socket = _FakeSocket()
    subscription = _subscription(changes, statuses)

    await subscription.open(_FakeHttp(socket), "wss://x.test/realtime/v1/websocket", "token-1")  # type: ignore[arg-type]

    [join] = socket.sent
    assert join["event"] == "phx_join"
    assert join["topic"] == TOPIC
    assert join["payload"]["access_token"] == "token-1"
    assert join["payload"]["config"]["postgres_changes"] == [{"event": "*", "schema": "public", "table": "clients"}]
    assert subscription.is_active

    socket.push({"topic": TOPIC, "event": "phx_reply", "ref": join["ref"], "payload": {"status": "ok"}})
    socket.push(_change("c-1"))
    socket.push(None)
    await asyncio.wait_for(subscription._tasks[0], timeout=1.0)  # type: ignore[attr-defined]

    assert [change["record"]["id"] for change in changes] == ["c-1"]
    assert statuses == [StreamStatus.SUBSCRIBED, StreamStatus.CLOSED]

    await subscription.close()
    assert socket.sent[-1]["event"] == "phx_leave"
    assert socket.closed
    assert not subscription.is_active


@pytest.mark.asyncio
async def test_close_reports_nothing() -> None:
    statuses: list[StreamStatus] = []
    socket = _FakeSocket()
    subscription = _subscription([], statuses)
    await subscription.open(_FakeHttp(socket), "wss://x.test", None)  # type: ignore[arg-type]

    await subscription.close()
    await asyncio.sleep(0)

    assert statuses == []
    assert socket.closed


@pytest.mark.asyncio
async def test_failed_connect_reports_channel_error() -> None:
    statuses: list[StreamStatus] = []
    subscription = _subscription([], statuses)

    await subscription.open(_FakeHttp(), "wss://x.test", None)  # type: ignore[arg-type]

    assert statuses == [StreamStatus.CHANNEL_ERROR]
    assert not subscription.is_active


@pytest.mark.asyncio
async def test_feed_connects_with_api_key_and_falls_back_to_it_as_token() -> None:
    config = WorkshopConfig(base_url="https://workshop.example.test", api_key="anon-key")
    socket = _FakeSocket()
    http = _FakeHttp(socket)
    feed = RealtimeChangeFeed(config, http, token_provider=lambda: None)  # type: ignore[arg-type]

    subscription = await feed.subscribe("clients", on_change=lambda _data: None, on_status=lambda _status: None)

    assert http.urls == ["wss://workshop.example.test/realtime/v1/websocket?apikey=anon-key&vsn=1.0.0"]
    assert socket.sent[0]["payload"]["access_token"] == "anon-key"

    await feed.unsubscribe(subscription)
    assert socket.closed

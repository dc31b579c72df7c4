"""Internal change-feed runtime over the realtime websocket.

Each subscription owns one websocket joined to one ``postgres_changes``
channel. Row changes are handed to the subscriber as raw ``data`` dicts;
parsing into change events happens in :mod:`workshopsync.ingestion`.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from workshopsync._api.base import ChangeCallback, StatusCallback, StreamStatus
from workshopsync._redact import redact_for_log
from workshopsync.config import WorkshopConfig

_JOIN_TIMEOUT_S = 10.0
_PHOENIX_TOPIC = "phoenix"


class RealtimeSubscription:
    """One joined channel; reports status and delivers row changes."""

    def __init__(
        self,
        *,
        table: str,
        schema: str,
        events: str,
        on_change: ChangeCallback,
        on_status: StatusCallback,
        heartbeat: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self._table = table
        self._schema = schema
        self._events = events
        self._on_change = on_change
        self._on_status = on_status
        self._heartbeat = heartbeat
        self._logger = logger or logging.getLogger(__name__)
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._joined = False
        self._closing = False
        self._status: StreamStatus | None = None

    @property
    def table(self) -> str:
        return self._table

    @property
    def topic(self) -> str:
        return f"realtime:{self._schema}:{self._table}"

    @property
    def is_active(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closing

    @property
    def status(self) -> StreamStatus | None:
        return self._status

    def _report(self, status: StreamStatus) -> None:
        if self._closing or status == self._status:
            return
        self._status = status
        self._logger.debug("Realtime channel %s status=%s", self.topic, status)
        try:
            self._on_status(status)
        except Exception:
            self._logger.warning("Realtime status callback failed topic=%s", self.topic, exc_info=True)

    def _deliver(self, data: dict[str, Any]) -> None:
        try:
            self._on_change(data)
        except Exception:
            self._logger.warning("Realtime change callback failed topic=%s", self.topic, exc_info=True)

    async def _send(self, event: str, payload: dict[str, Any], *, topic: str | None = None) -> str:
        ref = str(next(self._refs))
        if self._ws is None or self._ws.closed:
            return ref
        message = {
            "topic": topic or self.topic,
            "event": event,
            "payload": payload,
            "ref": ref,
            "join_ref": self._join_ref,
        }
        await self._ws.send_str(json.dumps(message, separators=(",", ":")))
        return ref

    async def open(self, http: aiohttp.ClientSession, url: str, access_token: str | None) -> None:
        """Connect and join; failures are reported as ``CHANNEL_ERROR``."""
        try:
            self._ws = await http.ws_connect(url)
            self._join_ref = await self._send(
                "phx_join",
                {
                    "config": {
                        "postgres_changes": [{"event": self._events, "schema": self._schema, "table": self._table}],
                    },
                    "access_token": access_token,
                },
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            self._logger.warning("Realtime connect failed topic=%s", self.topic, exc_info=True)
            self._report(StreamStatus.CHANNEL_ERROR)
            await self.close()
            return

        self._tasks = [
            asyncio.create_task(self._read_loop(), name=f"realtime-read-{self._table}"),
            asyncio.create_task(self._heartbeat_loop(), name=f"realtime-heartbeat-{self._table}"),
            asyncio.create_task(self._join_watchdog(), name=f"realtime-join-{self._table}"),
        ]

    async def _read_loop(self) -> None:
        assert self._ws is not None  # noqa: S101
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        except (aiohttp.ClientError, asyncio.TimeoutError):
            self._logger.debug("Realtime read failure topic=%s", self.topic, exc_info=True)
        if not self._closing:
            self._report(StreamStatus.CLOSED)

    def _handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            self._logger.debug("Realtime non-JSON frame topic=%s", self.topic)
            return
        if not isinstance(message, dict):
            return

        event = message.get("event")
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
        if message.get("topic") != self.topic:
            return

        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self._joined = True
                self._report(StreamStatus.SUBSCRIBED)
            else:
                self._logger.warning("Realtime join rejected topic=%s reply=%s", self.topic, redact_for_log(payload))
                self._report(StreamStatus.CHANNEL_ERROR)
        elif event == "postgres_changes":
            data = payload.get("data")
            if isinstance(data, dict):
                self._deliver(data)
            else:
                self._logger.debug("Realtime change without data topic=%s", self.topic)
        elif event == "phx_error":
            self._report(StreamStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._report(StreamStatus.CLOSED)
        elif event == "system" and payload.get("status") == "error":
            self._logger.warning("Realtime system error topic=%s payload=%s", self.topic, redact_for_log(payload))
            self._report(StreamStatus.CHANNEL_ERROR)

    async def _heartbeat_loop(self) -> None:
        while self.is_active:
            await asyncio.sleep(self._heartbeat)
            try:
                await self._send("heartbeat", {}, topic=_PHOENIX_TOPIC)
            except (aiohttp.ClientError, ConnectionError):
                self._logger.debug("Realtime heartbeat failed topic=%s", self.topic, exc_info=True)
                self._report(StreamStatus.CLOSED)
                return

    async def _join_watchdog(self) -> None:
        await asyncio.sleep(_JOIN_TIMEOUT_S)
        if not self._joined:
            self._report(StreamStatus.TIMED_OUT)

    async def close(self) -> None:
        """Leave the channel and close the socket (no status is reported)."""
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(aiohttp.ClientError, ConnectionError):
                await self._send("phx_leave", {})
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks = []
        if ws is not None:
            await ws.close()
        self._ws = None


class RealtimeChangeFeed:
    """Change feed backed by one websocket per subscribed table."""

    def __init__(
        self,
        config: WorkshopConfig,
        http_session: aiohttp.ClientSession,
        *,
        token_provider: Callable[[], str | None],
    ) -> None:
        self._config = config
        self._http = http_session
        self._token_provider = token_provider
        self._logger = logging.getLogger(__name__)

    def _url(self) -> str:
        return f"{self._config.realtime_url}?apikey={self._config.api_key}&vsn=1.0.0"

    async def subscribe(
        self,
        table: str,
        *,
        on_change: ChangeCallback,
        on_status: StatusCallback,
        events: str = "*",
    ) -> RealtimeSubscription:
        subscription = RealtimeSubscription(
            table=table,
            schema=self._config.schema,
            events=events,
            on_change=on_change,
            on_status=on_status,
            heartbeat=self._config.realtime_heartbeat,
            logger=self._logger,
        )
        self._logger.debug("Realtime subscribe requested table=%s events=%s", table, events)
        await subscription.open(self._http, self._url(), self._token_provider() or self._config.api_key)
        return subscription

    async def unsubscribe(self, subscription: Any) -> None:
        if isinstance(subscription, RealtimeSubscription):
            self._logger.debug("Realtime unsubscribe table=%s", subscription.table)
            await subscription.close()

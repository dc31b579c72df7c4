"""Change ingestion pipeline.

Feed callbacks only parse and enqueue. One drain task per entity type
applies events to the cache in dequeue order, back-filling dependents of
pushed requests first. Side effects for the presentation layer (incoming
signal, highlight, remote-delete announcements, unread counter) are
raised here. Nothing in this module lets an exception escape into the
event source.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from workshopsync._api.base import ChangeCallback
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.ingestion.changes import parse_change
from workshopsync.ingestion.channels import ChangeBus, ChangeChannel
from workshopsync.ingestion.normalize import coerce_id
from workshopsync.models import InspectionRequest
from workshopsync.state.events import ChangeEvent, ChangeKind, ChangeSource, EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)

IncomingListener = Callable[[InspectionRequest | None], None]
DeleteListener = Callable[[EntityType, str], None]


def _remover(listeners: list[Any], listener: Any) -> Callable[[], None]:
    def _remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return _remove


class IngestionPipeline:
    """Drains per-type change channels into the :class:`EntityCache`.

    Parameters
    ----------
    cache : EntityCache
        The cache events are applied to.
    backfill : EntityBackfill
        Used to resolve clients/cars/makes/models of pushed requests.
    current_user : Callable[[], str | None]
        Returns the signed-in user's id (``None`` when signed out).
    incoming_signal_ttl : float
        Seconds before an undismissed incoming-request signal clears.
    highlight_ttl : float
        Seconds a pushed request stays highlighted.
    """

    def __init__(
        self,
        cache: EntityCache,
        backfill: EntityBackfill,
        *,
        current_user: Callable[[], str | None],
        incoming_signal_ttl: float = 10.0,
        highlight_ttl: float = 2.0,
        bus: ChangeBus | None = None,
    ) -> None:
        self._cache = cache
        self._backfill = backfill
        self._current_user = current_user
        self._incoming_ttl = incoming_signal_ttl
        self._highlight_ttl = highlight_ttl
        self._bus = bus or ChangeBus()
        self._tasks: list[asyncio.Task[None]] = []
        self._incoming: InspectionRequest | None = None
        self._incoming_timer: asyncio.TimerHandle | None = None
        self._highlight_timers: dict[str, asyncio.TimerHandle] = {}
        self._incoming_listeners: list[IncomingListener] = []
        self._delete_listeners: list[DeleteListener] = []
        self.dropped_events = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start one drain task per entity type (no-op when running)."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._drain(channel), name=f"ingest-{channel.entity_type.value}")
            for channel in self._bus.channels()
        ]
        _logger.debug("Ingestion pipeline started with %d channels", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self.dismiss_incoming()
        for entity_id, handle in list(self._highlight_timers.items()):
            handle.cancel()
            self._cache.unhighlight(entity_id)
        self._highlight_timers.clear()

    async def wait_idle(self) -> None:
        """Wait until every enqueued event has been applied."""
        await self._bus.join()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def feed_callback(self, entity_type: EntityType) -> ChangeCallback:
        """Callback to hand to a change-feed subscription for *entity_type*."""

        def _on_change(data: dict[str, Any]) -> None:
            self.submit_raw(entity_type, data)

        return _on_change

    def submit_raw(self, entity_type: EntityType, data: Any) -> bool:
        try:
            event = parse_change(entity_type, data)
        except Exception:
            _logger.warning("Unexpected failure parsing %s change", entity_type.value, exc_info=True)
            event = None
        if event is None:
            self.dropped_events += 1
            return False
        return self.submit(event)

    def submit(self, event: ChangeEvent) -> bool:
        return self._bus.publish(event)

    # ------------------------------------------------------------------
    # Presentation signals
    # ------------------------------------------------------------------

    @property
    def incoming_request(self) -> InspectionRequest | None:
        return self._incoming

    def on_incoming(self, listener: IncomingListener) -> Callable[[], None]:
        self._incoming_listeners.append(listener)
        return _remover(self._incoming_listeners, listener)

    def on_remote_delete(self, listener: DeleteListener) -> Callable[[], None]:
        self._delete_listeners.append(listener)
        return _remover(self._delete_listeners, listener)

    def dismiss_incoming(self) -> None:
        if self._incoming_timer is not None:
            self._incoming_timer.cancel()
            self._incoming_timer = None
        if self._incoming is not None:
            self._incoming = None
            self._emit_incoming(None)

    def _raise_incoming(self, request: InspectionRequest) -> None:
        if self._incoming_timer is not None:
            self._incoming_timer.cancel()
        self._incoming = request
        loop = asyncio.get_running_loop()
        self._incoming_timer = loop.call_later(self._incoming_ttl, self._expire_incoming, request.id)
        self._emit_incoming(request)

    def _expire_incoming(self, request_id: str) -> None:
        if self._incoming is not None and self._incoming.id == request_id:
            self._incoming_timer = None
            self._incoming = None
            self._emit_incoming(None)

    def _emit_incoming(self, request: InspectionRequest | None) -> None:
        for listener in list(self._incoming_listeners):
            try:
                listener(request)
            except Exception:
                _logger.warning("Incoming-request listener failed", exc_info=True)

    def _highlight(self, entity_id: str) -> None:
        previous = self._highlight_timers.pop(entity_id, None)
        if previous is not None:
            previous.cancel()
        self._cache.highlight(entity_id)
        loop = asyncio.get_running_loop()
        self._highlight_timers[entity_id] = loop.call_later(self._highlight_ttl, self._unhighlight, entity_id)

    def _unhighlight(self, entity_id: str) -> None:
        self._highlight_timers.pop(entity_id, None)
        self._cache.unhighlight(entity_id)

    def _announce_delete(self, entity_type: EntityType, entity_id: str) -> None:
        for listener in list(self._delete_listeners):
            try:
                listener(entity_type, entity_id)
            except Exception:
                _logger.warning("Remote-delete listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _drain(self, channel: ChangeChannel) -> None:
        while True:
            event = await channel.get()
            try:
                await self.process(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception("Failed to apply %s %s id=%s", event.kind, event.entity_type, event.entity_id)
            finally:
                channel.task_done()

    def _accepts(self, event: ChangeEvent) -> bool:
        """Stream filters for per-user streams."""
        user_id = self._current_user()
        if event.kind is not ChangeKind.INSERT:
            return True
        if event.entity_type is EntityType.NOTIFICATION:
            target = coerce_id(event.payload.get("user_id"))
            return target is None or target == user_id
        if event.entity_type is EntityType.MESSAGE:
            return user_id is not None and coerce_id(event.payload.get("receiver_id")) == user_id
        return True

    async def process(self, event: ChangeEvent) -> None:
        """Apply one event and raise its presentation side effects."""
        if not self._accepts(event):
            _logger.debug("Filtered %s %s id=%s", event.kind, event.entity_type, event.entity_id)
            return

        is_request = event.entity_type is EntityType.REQUEST
        already_cached = event.entity_id in self._cache.collection(event.entity_type)

        if is_request and event.kind is not ChangeKind.DELETE and event.payload:
            await self._backfill.ensure_loaded([event.payload])

        result = self._cache.apply(event)
        if event.source is not ChangeSource.FEED:
            return

        if event.entity_type is EntityType.MESSAGE and result is not None and not already_cached:
            self._cache.unread_messages += 1

        if is_request and event.kind is ChangeKind.INSERT and isinstance(result, InspectionRequest):
            self._highlight(result.id)
            user_id = self._current_user()
            if not already_cached and user_id is not None and event.actor_id != user_id:
                self._raise_incoming(result)
        elif event.kind is ChangeKind.DELETE:
            if self._incoming is not None and self._incoming.id == event.entity_id:
                self.dismiss_incoming()
            self._announce_delete(event.entity_type, event.entity_id)

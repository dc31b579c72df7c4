"""One FIFO channel per entity type between the feed and the pipeline."""

from __future__ import annotations

import asyncio
import logging

from workshopsync.state.events import ChangeEvent, EntityType

_logger = logging.getLogger(__name__)


class ChangeChannel:
    """Queue of change events for a single entity type.

    Events are consumed in the order they were published.
    """

    def __init__(self, entity_type: EntityType, *, maxsize: int = 0) -> None:
        self.entity_type = entity_type
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize)

    def __len__(self) -> int:
        return self._queue.qsize()

    def publish(self, event: ChangeEvent) -> bool:
        if event.entity_type is not self.entity_type:
            _logger.warning("Refusing %s event on the %s channel", event.entity_type, self.entity_type)
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            _logger.warning("Channel %s full; dropping %s id=%s", self.entity_type, event.kind, event.entity_id)
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every published event has been processed."""
        await self._queue.join()


class ChangeBus:
    """Routes events to the channel of their entity type."""

    def __init__(self, *, maxsize: int = 0) -> None:
        self._channels = {entity_type: ChangeChannel(entity_type, maxsize=maxsize) for entity_type in EntityType}

    def channel(self, entity_type: EntityType) -> ChangeChannel:
        return self._channels[entity_type]

    def channels(self) -> list[ChangeChannel]:
        return list(self._channels.values())

    def publish(self, event: ChangeEvent) -> bool:
        return self._channels[event.entity_type].publish(event)

    async def join(self) -> None:
        for channel in self._channels.values():
            await channel.join()

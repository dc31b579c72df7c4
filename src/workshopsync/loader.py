"""Full reload of every cached collection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from workshopsync._api.base import RowGateway
from workshopsync._api.query import Filter, Query, eq
from workshopsync._constants import (
    CAR_PREFETCH_LIMIT,
    CLIENT_PREFETCH_LIMIT,
    NOTIFICATION_PREFETCH_LIMIT,
    REQUEST_LIST_COLUMNS,
    RESERVATION_PREFETCH_LIMIT,
)
from workshopsync.exceptions import WorkshopError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)


class BulkLoader:
    """Loads the first request page and every reference collection in parallel."""

    def __init__(
        self,
        rows: RowGateway,
        cache: EntityCache,
        backfill: EntityBackfill,
        *,
        page_size: int = 50,
        current_user: Callable[[], str | None] = lambda: None,
    ) -> None:
        self._rows = rows
        self._cache = cache
        self._backfill = backfill
        self._page_size = page_size
        self._current_user = current_user

    def _queries(self, user_id: str | None) -> dict[EntityType, Query]:
        notifications = Query(EntityType.NOTIFICATION.table)
        if user_id is not None:
            notifications = notifications.or_(Filter("user_id", "is", None), eq("user_id", user_id))
        return {
            EntityType.REQUEST: Query(EntityType.REQUEST.table)
            .select(*REQUEST_LIST_COLUMNS)
            .order("created_at")
            .limit(self._page_size),
            EntityType.CAR_MAKE: Query(EntityType.CAR_MAKE.table),
            EntityType.BROKER: Query(EntityType.BROKER.table),
            EntityType.EXPENSE: Query(EntityType.EXPENSE.table).order("date"),
            EntityType.CLIENT: Query(EntityType.CLIENT.table).limit(CLIENT_PREFETCH_LIMIT),
            EntityType.CAR: Query(EntityType.CAR.table).limit(CAR_PREFETCH_LIMIT),
            EntityType.EMPLOYEE: Query(EntityType.EMPLOYEE.table),
            EntityType.NOTIFICATION: notifications.order("created_at").limit(NOTIFICATION_PREFETCH_LIMIT),
            EntityType.RESERVATION: Query(EntityType.RESERVATION.table)
            .order("created_at")
            .limit(RESERVATION_PREFETCH_LIMIT),
        }

    async def fetch_all(self) -> int:
        """Replace every loaded collection; returns the size of the first request page.

        A failed request page raises. A failed reference collection is
        logged and keeps its previous contents.
        """
        user_id = self._current_user()
        queries = self._queries(user_id)
        results = await asyncio.gather(
            *(self._rows.select(query) for query in queries.values()),
            return_exceptions=True,
        )

        request_rows: list[dict[str, Any]] = []
        for entity_type, result in zip(queries, results, strict=True):
            if isinstance(result, BaseException):
                if entity_type is EntityType.REQUEST:
                    raise result
                _logger.warning("Bulk load of %s failed: %s", entity_type.value, result)
                continue
            if entity_type is EntityType.REQUEST:
                request_rows = result
                continue
            self._cache.replace(entity_type, result)

        # Reference collections must be in place before back-fill runs.
        await self._backfill.ensure_loaded(request_rows)
        self._cache.replace(EntityType.REQUEST, request_rows)
        self._cache.clear_search_results()
        await self.refresh_unread_count()

        _logger.debug(
            "Bulk load complete: requests=%d clients=%d cars=%d",
            len(self._cache.requests),
            len(self._cache.collection(EntityType.CLIENT)),
            len(self._cache.collection(EntityType.CAR)),
        )
        return len(request_rows)

    async def refresh_unread_count(self) -> int:
        user_id = self._current_user()
        if user_id is None:
            self._cache.unread_messages = 0
            return 0
        query = Query(EntityType.MESSAGE.table).where(eq("receiver_id", user_id), eq("is_read", False))
        try:
            count = await self._rows.count(query)
        except WorkshopError:
            _logger.warning("Unread message count failed", exc_info=True)
            return self._cache.unread_messages
        self._cache.unread_messages = count
        return count

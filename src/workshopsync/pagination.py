"""Offset pagination over the request list."""

from __future__ import annotations

import asyncio
import dataclasses
import logging

from workshopsync._api.base import RowGateway
from workshopsync._api.query import Query
from workshopsync._constants import REQUEST_LIST_COLUMNS
from workshopsync.exceptions import WorkshopError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class PaginationCursor:
    offset: int = 0
    page_size: int = 50
    exhausted: bool = False


class PaginationController:
    """Appends older request pages to the cache on demand.

    At most one page fetch is in flight; concurrent :meth:`load_more`
    calls share it. A short page marks the cursor exhausted and further
    calls return without touching the network. A failed fetch leaves the
    cursor unchanged so the next call retries the same page.
    """

    def __init__(
        self,
        rows: RowGateway,
        cache: EntityCache,
        backfill: EntityBackfill,
        *,
        page_size: int = 50,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._rows = rows
        self._cache = cache
        self._backfill = backfill
        self._cursor = PaginationCursor(page_size=page_size)
        self._inflight: asyncio.Task[int] | None = None
        self._generation = 0

    @property
    def cursor(self) -> PaginationCursor:
        return self._cursor

    @property
    def has_more(self) -> bool:
        return not self._cursor.exhausted

    @property
    def is_loading(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def reset(self, loaded: int = 0) -> None:
        """Restart after a full reload that fetched *loaded* rows of the first page."""
        self._generation += 1
        size = self._cursor.page_size
        self._cursor = PaginationCursor(offset=loaded, page_size=size, exhausted=loaded < size)
        self._inflight = None

    def clear(self) -> None:
        """Forget the cursor at session end; the next session pages from the start."""
        self._generation += 1
        self._cursor = PaginationCursor(page_size=self._cursor.page_size)
        self._inflight = None

    async def load_more(self) -> int:
        """Fetch the next page; returns the number of rows it held."""
        if self.is_loading:
            assert self._inflight is not None  # noqa: S101
            return await asyncio.shield(self._inflight)
        if self._cursor.exhausted:
            return 0
        task = asyncio.create_task(self._load_page(self._generation), name="request-page")
        self._inflight = task
        return await asyncio.shield(task)

    async def _load_page(self, generation: int) -> int:
        cursor = self._cursor
        start = cursor.offset
        query = (
            Query(EntityType.REQUEST.table)
            .select(*REQUEST_LIST_COLUMNS)
            .order("created_at")
            .range(start, start + cursor.page_size - 1)
        )
        try:
            rows = await self._rows.select(query)
        except WorkshopError as exc:
            _logger.warning("Request page at offset %d failed: %s", start, exc)
            return 0

        await self._backfill.ensure_loaded(rows)
        if generation != self._generation:
            _logger.debug("Discarding request page at offset %d after reset", start)
            return 0

        self._cache.extend(EntityType.REQUEST, rows)
        self._cursor = dataclasses.replace(
            cursor,
            offset=start + len(rows),
            exhausted=len(rows) < cursor.page_size,
        )
        _logger.debug("Loaded %d requests at offset %d exhausted=%s", len(rows), start, self._cursor.exhausted)
        return len(rows)

"""High-level async client for the workshop backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

import aiohttp

from workshopsync._api.base import DataService
from workshopsync._api.query import Query, eq, gte, lte
from workshopsync._api.remote import create_remote_service
from workshopsync.analytics import FinancialAnalytics
from workshopsync.config import WorkshopConfig
from workshopsync.exceptions import WorkshopError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.ingestion.pipeline import DeleteListener, IncomingListener, IngestionPipeline
from workshopsync.lifecycle import AppPhase, ConnectionStatus, ReloadCallback, SessionLifecycle
from workshopsync.loader import BulkLoader
from workshopsync.local_store import LocalStateStore, MemoryStateStore, PersistedState
from workshopsync.models import (
    AuthSession,
    Car,
    Client,
    Employee,
    EntityModel,
    FinancialSnapshot,
    InspectionRequest,
)
from workshopsync.mutations import MutationService
from workshopsync.navigation import NavigationHistory
from workshopsync.pagination import PaginationController
from workshopsync.search import CarHistory, SearchAggregator
from workshopsync.state.events import ChangeSource, EntityType
from workshopsync.state.store import CacheListener, EntityCache

_logger = logging.getLogger(__name__)


class WorkshopClient:
    """Async client keeping a local, live copy of the workshop data.

    Usage::

        async with WorkshopClient(config, state_store=JsonFileStateStore(path)) as client:
            await client.start()
            if client.profile is None:
                await client.login(email, password)
            await client.load_more()

    Parameters
    ----------
    config : WorkshopConfig
        Endpoints, timeouts and limits.
    session : aiohttp.ClientSession, optional
        HTTP session to use; one is created (and closed) otherwise.
    service : DataService, optional
        Backend to use instead of the HTTP one (e.g. the in-memory backend).
    state_store : LocalStateStore, optional
        Persisted local state. Defaults to process memory.
    reload : Callable[[str | None], Awaitable[None]], optional
        Full-reload hook of the host application. The default ends the
        current session and starts again.
    clock : Callable[[], float]
        Epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        config: WorkshopConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        service: DataService | None = None,
        state_store: LocalStateStore | None = None,
        reload: ReloadCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._service = service
        self._persisted = PersistedState(state_store or MemoryStateStore())
        self._reload_hook = reload
        self._clock = clock
        self._tz = ZoneInfo(config.time_zone)
        self.cache = EntityCache()
        self.navigation = NavigationHistory()
        self.last_reload_marker: str | None = None

        self._backfill: EntityBackfill | None = None
        self._pipeline: IngestionPipeline | None = None
        self._loader: BulkLoader | None = None
        self._pagination: PaginationController | None = None
        self._search: SearchAggregator | None = None
        self._analytics: FinancialAnalytics | None = None
        self._mutations: MutationService | None = None
        self._lifecycle: SessionLifecycle | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> WorkshopClient:
        if self._service is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._service = create_remote_service(self._config, self._http_session, persisted=self._persisted)
        self._wire(self._service)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._lifecycle is not None:
            await self._lifecycle.close()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._lifecycle = None

    def _wire(self, service: DataService) -> None:
        config = self._config
        backfill = EntityBackfill(service.rows, self.cache)
        self._backfill = backfill
        self._pipeline = IngestionPipeline(
            self.cache,
            backfill,
            current_user=self._current_user_id,
            incoming_signal_ttl=config.incoming_signal_ttl,
            highlight_ttl=config.highlight_ttl,
        )
        self._loader = BulkLoader(
            service.rows,
            self.cache,
            backfill,
            page_size=config.page_size,
            current_user=self._current_user_id,
        )
        self._pagination = PaginationController(service.rows, self.cache, backfill, page_size=config.page_size)
        self._search = SearchAggregator(service.rows, self.cache, backfill, limit=config.search_limit)
        self._analytics = FinancialAnalytics(service.rows, self.cache, backfill, time_zone=config.time_zone)
        self._mutations = MutationService(
            service.rows,
            self.cache,
            service.storage,
            backfill,
            current_profile=lambda: self.profile,
        )
        self._lifecycle = SessionLifecycle(
            service,
            self.cache,
            self._pipeline,
            self._persisted,
            config=config,
            load_data=self.reload_data,
            reload=self._reload,
            navigation=self.navigation,
            on_session_end=self._pagination.clear,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_service(self) -> DataService:
        if self._service is None or self._lifecycle is None:
            raise WorkshopError("Client not initialized. Use 'async with WorkshopClient(...) as client:'")
        return self._service

    def _require_lifecycle(self) -> SessionLifecycle:
        self._require_service()
        assert self._lifecycle is not None  # noqa: S101
        return self._lifecycle

    def _current_user_id(self) -> str | None:
        return self._lifecycle.user_id if self._lifecycle is not None else None

    async def _reload(self, marker: str | None) -> None:
        self.last_reload_marker = marker
        _logger.debug("Full reload requested marker=%s", marker)
        if self._reload_hook is not None:
            await self._reload_hook(marker)
            return
        await self._require_lifecycle().restart()

    def _parse_requests(self, rows: list[dict[str, Any]]) -> list[InspectionRequest]:
        parsed = (self.cache.parse(EntityType.REQUEST, row) for row in rows)
        return [request for request in parsed if isinstance(request, InspectionRequest)]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def config(self) -> WorkshopConfig:
        return self._config

    @property
    def service(self) -> DataService:
        return self._require_service()

    @property
    def persisted(self) -> PersistedState:
        return self._persisted

    @property
    def lifecycle(self) -> SessionLifecycle:
        return self._require_lifecycle()

    @property
    def phase(self) -> AppPhase:
        return self._lifecycle.phase if self._lifecycle is not None else AppPhase.UNINITIALIZED

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._lifecycle is None:
            return ConnectionStatus.DISCONNECTED
        return self._lifecycle.connection_status

    @property
    def profile(self) -> Employee | None:
        return self._lifecycle.profile if self._lifecycle is not None else None

    @property
    def session(self) -> AuthSession | None:
        return self._lifecycle.session if self._lifecycle is not None else None

    @property
    def settings(self) -> dict[str, Any]:
        return self._require_lifecycle().settings

    @property
    def requests(self) -> list[InspectionRequest]:
        return self.cache.requests.to_list()

    @property
    def search_results(self) -> list[InspectionRequest] | None:
        return self.cache.search_results

    @property
    def highlighted(self) -> frozenset[str]:
        return self.cache.highlighted

    @property
    def unread_messages(self) -> int:
        return self.cache.unread_messages

    @property
    def incoming_request(self) -> InspectionRequest | None:
        return self._pipeline.incoming_request if self._pipeline is not None else None

    @property
    def has_more(self) -> bool:
        return self._pagination is not None and self._pagination.has_more

    def add_cache_listener(self, listener: CacheListener) -> Callable[[], None]:
        return self.cache.add_listener(listener)

    def on_incoming(self, listener: IncomingListener) -> Callable[[], None]:
        self._require_service()
        assert self._pipeline is not None  # noqa: S101
        return self._pipeline.on_incoming(listener)

    def on_remote_delete(self, listener: DeleteListener) -> Callable[[], None]:
        self._require_service()
        assert self._pipeline is not None  # noqa: S101
        return self._pipeline.on_remote_delete(listener)

    def dismiss_incoming(self) -> None:
        if self._pipeline is not None:
            self._pipeline.dismiss_incoming()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def start(self) -> AppPhase:
        return await self._require_lifecycle().start()

    async def login(self, email: str, password: str) -> Employee:
        profile = await self._require_lifecycle().login(email, password)
        assert self._mutations is not None  # noqa: S101
        await self._mutations.send_system_notification(
            "تسجيل دخول",
            f"قام {profile.name} بتسجيل الدخول",
            "login",
        )
        return profile

    async def logout(self) -> None:
        await self._require_lifecycle().logout()

    async def update_password(self, new_password: str) -> None:
        await self._require_lifecycle().update_password(new_password)

    async def retry_connection(self) -> None:
        await self._require_lifecycle().retry_connection()

    async def refresh_session_and_reload(self) -> bool:
        return await self._require_lifecycle().refresh_session_and_reload()

    def handle_offline(self) -> None:
        self._require_lifecycle().handle_offline()

    async def handle_online(self) -> None:
        await self._require_lifecycle().handle_online()

    async def handle_foreground(self) -> None:
        await self._require_lifecycle().handle_foreground()

    def record_activity(self) -> None:
        self._require_lifecycle().record_activity()

    def navigate(self, page: str) -> None:
        self.navigation.push(page)
        self.record_activity()

    def go_back(self) -> str:
        self.record_activity()
        return self.navigation.go_back()

    # ------------------------------------------------------------------
    # Loading, pagination and search
    # ------------------------------------------------------------------

    async def reload_data(self) -> None:
        """Bulk reload every collection and restart pagination."""
        self._require_service()
        assert self._loader is not None and self._pagination is not None  # noqa: S101
        loaded = await self._loader.fetch_all()
        self._pagination.reset(loaded)

    async def load_more(self) -> int:
        self._require_service()
        assert self._pagination is not None  # noqa: S101
        return await self._pagination.load_more()

    async def search_by_free_text(self, query: str) -> list[InspectionRequest]:
        self._require_service()
        assert self._search is not None  # noqa: S101
        return await self._search.search_by_free_text(query)

    def clear_search(self) -> None:
        if self._search is not None:
            self._search.clear_search()

    async def search_clients(self, query: str) -> list[Client]:
        self._require_service()
        assert self._search is not None  # noqa: S101
        return await self._search.search_clients(query)

    async def search_cars(self, query: str) -> list[Car]:
        self._require_service()
        assert self._search is not None  # noqa: S101
        return await self._search.search_cars(query)

    async def check_car_history(self, plate: str | None = None, vin: str | None = None) -> CarHistory | None:
        self._require_service()
        assert self._search is not None  # noqa: S101
        return await self._search.check_car_history(plate, vin)

    # ------------------------------------------------------------------
    # Direct request reads
    # ------------------------------------------------------------------

    async def fetch_request_by_number(self, request_number: int) -> InspectionRequest | None:
        """Load one request (all columns) by its number."""
        service = self._require_service()
        row = await service.rows.select_maybe_one(
            Query(EntityType.REQUEST.table).where(eq("request_number", request_number))
        )
        if row is None:
            return None
        return await self._absorb_request(row)

    async def refresh_request(self, request_id: str) -> InspectionRequest | None:
        """Re-read one request from the server and merge it into the cache.

        A request the cache does not hold yet is added to it.
        """
        service = self._require_service()
        row = await service.rows.select_maybe_one(Query(EntityType.REQUEST.table).where(eq("id", request_id)))
        if row is None:
            self.cache.apply_delete(EntityType.REQUEST, request_id, source=ChangeSource.FETCH)
            return None
        return await self._absorb_request(row, add_missing=True)

    async def _absorb_request(self, row: dict[str, Any], *, add_missing: bool = False) -> InspectionRequest | None:
        assert self._backfill is not None  # noqa: S101
        await self._backfill.ensure_loaded([row])
        if add_missing:
            merged = self.cache.apply_insert(EntityType.REQUEST, row, source=ChangeSource.FETCH)
        else:
            merged = self.cache.apply_update(EntityType.REQUEST, row, source=ChangeSource.FETCH)
        request = merged or self.cache.parse(EntityType.REQUEST, row)
        return request if isinstance(request, InspectionRequest) else None

    async def fetch_requests_by_date_range(self, start: datetime | date, end: datetime | date) -> list[InspectionRequest]:
        """Requests created between *start* and *end* (whole local days for dates), newest first."""
        service = self._require_service()
        lower, upper = self._bounds(start, end)
        rows = await service.rows.select(
            Query(EntityType.REQUEST.table)
            .where(gte("created_at", lower), lte("created_at", upper))
            .order("created_at")
        )
        assert self._backfill is not None  # noqa: S101
        await self._backfill.ensure_loaded(rows)
        return self._parse_requests(rows)

    async def fetch_client_requests(self, client_id: str) -> list[InspectionRequest]:
        service = self._require_service()
        rows = await service.rows.select(
            Query(EntityType.REQUEST.table).where(eq("client_id", client_id)).order("created_at")
        )
        assert self._backfill is not None  # noqa: S101
        await self._backfill.ensure_loaded(rows)
        return self._parse_requests(rows)

    def _bounds(self, start: datetime | date, end: datetime | date) -> tuple[str, str]:
        def _edge(value: datetime | date, *, upper: bool) -> str:
            if isinstance(value, datetime):
                return (value if value.tzinfo is not None else value.replace(tzinfo=self._tz)).isoformat()
            clock_time = datetime.max.time() if upper else datetime.min.time()
            return datetime.combine(value, clock_time, tzinfo=self._tz).isoformat()

        return _edge(start, upper=False), _edge(end, upper=True)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def compute_financials(
        self,
        start: datetime | date,
        end: datetime | date,
        *,
        completed_only: bool = True,
    ) -> FinancialSnapshot:
        self._require_service()
        assert self._analytics is not None  # noqa: S101
        return await self._analytics.compute_financials(start, end, completed_only=completed_only)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @property
    def mutations(self) -> MutationService:
        self._require_service()
        assert self._mutations is not None  # noqa: S101
        return self._mutations

    async def create(self, entity_type: EntityType, values: Mapping[str, Any]) -> EntityModel:
        return await self.mutations.create(entity_type, values)

    async def update(self, entity_type: EntityType, entity_id: str, patch: Mapping[str, Any]) -> EntityModel:
        return await self.mutations.update(entity_type, entity_id, patch)

    async def delete(self, entity_type: EntityType, entity_id: str) -> None:
        await self.mutations.delete(entity_type, entity_id)

    async def create_request(self, values: Mapping[str, Any]) -> InspectionRequest:
        return await self.mutations.create_request(values)

    async def update_request(self, request_id: str, patch: Mapping[str, Any]) -> InspectionRequest:
        return await self.mutations.update_request(request_id, patch)

    async def delete_request(self, request_id: str) -> None:
        await self.mutations.delete_request(request_id)

    async def delete_client(self, client_id: str) -> None:
        await self.mutations.delete_client(client_id)

    async def mark_notification_read(self, notification_id: str) -> None:
        await self.mutations.mark_notification_read(notification_id)

    async def mark_all_notifications_read(self) -> int:
        return await self.mutations.mark_all_notifications_read()

    async def upload_attachment(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> str:
        return await self.mutations.upload_attachment(bucket, path, content, content_type=content_type)

    async def delete_attachment(self, url: str) -> bool:
        return await self.mutations.delete_attachment(url)

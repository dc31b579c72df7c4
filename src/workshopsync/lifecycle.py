"""Connection and session lifecycle.

:class:`SessionLifecycle` owns everything that exists only while an
employee is signed in: the change-feed subscriptions, the ingestion
drain tasks and the periodic session checks. It moves the application
through ``uninitialized -> loading -> ready | session_error`` and folds
per-stream subscription statuses into one connection status.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Iterator, Mapping
from datetime import date, datetime
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo

from workshopsync._api.base import AuthEvent, DataService, StatusCallback, StreamStatus, Subscription
from workshopsync._api.query import Query, eq
from workshopsync._constants import DEFAULT_SETTINGS, SETTINGS_ROW_ID, SETTINGS_TABLE
from workshopsync.config import WorkshopConfig
from workshopsync.exceptions import (
    WorkshopApiError,
    WorkshopAuthenticationError,
    WorkshopError,
    WorkshopRowNotFoundError,
    WorkshopSessionInitError,
)
from workshopsync.ingestion.pipeline import IngestionPipeline
from workshopsync.local_store import PersistedState
from workshopsync.models import AuthSession, Employee
from workshopsync.navigation import NavigationHistory
from workshopsync.state.events import EntityType
from workshopsync.state.policy import WATCHED_STREAMS
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)


class AppPhase(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    SESSION_ERROR = "session_error"


class ConnectionStatus(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


_STREAM_STATUS: dict[StreamStatus, ConnectionStatus] = {
    StreamStatus.SUBSCRIBED: ConnectionStatus.CONNECTED,
    StreamStatus.CHANNEL_ERROR: ConnectionStatus.DISCONNECTED,
    StreamStatus.TIMED_OUT: ConnectionStatus.DISCONNECTED,
    StreamStatus.CLOSED: ConnectionStatus.DISCONNECTED,
}

LifecycleListener = Callable[["SessionLifecycle"], None]
ReloadCallback = Callable[[str | None], Awaitable[None]]


def fold_connection_status(statuses: Iterable[ConnectionStatus]) -> ConnectionStatus:
    """Worst status wins; no streams at all counts as disconnected."""
    statuses = list(statuses)
    if not statuses or ConnectionStatus.DISCONNECTED in statuses:
        return ConnectionStatus.DISCONNECTED
    if ConnectionStatus.CONNECTING in statuses:
        return ConnectionStatus.CONNECTING
    return ConnectionStatus.CONNECTED


def merge_settings(stored: Mapping[str, Any] | None) -> dict[str, Any]:
    """Overlay the stored settings document on :data:`DEFAULT_SETTINGS`."""
    merged: dict[str, Any] = dict(DEFAULT_SETTINGS)
    for key, value in (stored or {}).items():
        default = merged.get(key)
        if isinstance(default, dict) and isinstance(value, Mapping):
            merged[key] = {**default, **value}
        else:
            merged[key] = value
    return merged


class SessionTimers:
    """Periodic session check, started at session start and stopped at its end.

    The tick runs once immediately and then every *interval* seconds.
    Instances are single-use.
    """

    def __init__(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        self._interval = interval
        self._tick = tick
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None and not self._stopped:
            self._task = asyncio.create_task(self._run(), name="session-timers")

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        # A tick may end the session itself; it must not cancel its own task.
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while not self._stopped:
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.warning("Session check failed", exc_info=True)
            if self._stopped:
                break
            await asyncio.sleep(self._interval)


class SessionLifecycle:
    """Phase and connection state machine of one client.

    Parameters
    ----------
    service : DataService
        Backend gateways.
    cache : EntityCache
        Reset when a session ends.
    pipeline : IngestionPipeline
        Started at session start; receives every subscribed stream.
    persisted : PersistedState
        Login date, activity timestamp and selections.
    config : WorkshopConfig
        Timeouts and intervals.
    load_data : Callable[[], Awaitable[Any]]
        Bulk load of every collection.
    reload : Callable[[str | None], Awaitable[None]]
        Full application reload. Receives a cache-busting marker after a
        hard reset, ``None`` otherwise.
    navigation : NavigationHistory, optional
        Collapsed to its root after inactivity and at logout.
    on_session_end : Callable[[], None], optional
        Called after the cache has been reset at session end.
    clock : Callable[[], float]
        Epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        service: DataService,
        cache: EntityCache,
        pipeline: IngestionPipeline,
        persisted: PersistedState,
        *,
        config: WorkshopConfig,
        load_data: Callable[[], Awaitable[Any]],
        reload: ReloadCallback,
        navigation: NavigationHistory | None = None,
        on_session_end: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._service = service
        self._cache = cache
        self._pipeline = pipeline
        self._persisted = persisted
        self._config = config
        self._load_data = load_data
        self._reload = reload
        self._navigation = navigation or NavigationHistory()
        self._on_session_end = on_session_end
        self._clock = clock
        self._tz = ZoneInfo(config.time_zone)

        self._phase = AppPhase.UNINITIALIZED
        self._profile: Employee | None = None
        self._settings = merge_settings(None)
        self._online = True
        self._subscriptions: dict[EntityType, Subscription] = {}
        self._stream_status: dict[EntityType, ConnectionStatus] = {}
        self._feed_generation = 0
        self._connection_lock = asyncio.Lock()
        self._timers: SessionTimers | None = None
        self._busy = 0
        self._background: set[asyncio.Task[None]] = set()
        self._listeners: list[LifecycleListener] = []
        self.last_error: BaseException | None = None
        self._remove_auth_listener = service.auth.on_auth_state_change(self._on_auth_state)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> AppPhase:
        return self._phase

    @property
    def profile(self) -> Employee | None:
        """Employee profile of the signed-in user."""
        return self._profile

    @property
    def user_id(self) -> str | None:
        return self._profile.id if self._profile is not None else None

    @property
    def session(self) -> AuthSession | None:
        return self._service.auth.current_session

    @property
    def settings(self) -> dict[str, Any]:
        return dict(self._settings)

    @property
    def navigation(self) -> NavigationHistory:
        return self._navigation

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def stream_statuses(self) -> dict[EntityType, ConnectionStatus]:
        return dict(self._stream_status)

    @property
    def connection_status(self) -> ConnectionStatus:
        if not self._online:
            return ConnectionStatus.DISCONNECTED
        return fold_connection_status(self._stream_status.values())

    def add_listener(self, listener: LifecycleListener) -> Callable[[], None]:
        """Register *listener* for phase and connection changes; returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                _logger.warning("Lifecycle listener failed", exc_info=True)

    def _set_phase(self, phase: AppPhase) -> None:
        if phase is not self._phase:
            _logger.debug("Lifecycle phase %s -> %s", self._phase, phase)
            self._phase = phase
        self._notify()

    def _fail(self, exc: BaseException) -> None:
        self.last_error = exc
        self._set_phase(AppPhase.SESSION_ERROR)

    @contextlib.contextmanager
    def _owning(self) -> Iterator[None]:
        """Mark a lifecycle operation in progress; auth events are ours meanwhile."""
        self._busy += 1
        try:
            yield
        finally:
            self._busy -= 1

    def _today(self, timestamp: float) -> date:
        return datetime.fromtimestamp(timestamp, self._tz).date()

    # ------------------------------------------------------------------
    # Startup and authentication
    # ------------------------------------------------------------------

    async def start(self) -> AppPhase:
        """Initialise settings and session; begin the session when a profile exists."""
        timeout = self._config.session_init_timeout
        with self._owning():
            self.last_error = None
            self._set_phase(AppPhase.LOADING)
            try:
                async with asyncio.timeout(timeout):
                    self._settings = merge_settings(await self._fetch_settings())
                    session = await self._service.auth.get_session()
                    profile = await self._fetch_profile(session.user_id) if session is not None else None
            except TimeoutError:
                _logger.warning("Session initialisation exceeded %.1fs", timeout)
                self._fail(WorkshopSessionInitError(f"Session initialisation exceeded {timeout:.1f}s"))
                return self._phase
            except WorkshopRowNotFoundError:
                _logger.warning("Session has no employee profile; signing out")
                await self._sign_out_quietly()
                self._set_phase(AppPhase.READY)
                return self._phase
            except WorkshopError as exc:
                _logger.warning("Session initialisation failed: %s", exc)
                self._fail(exc)
                return self._phase

            if self._profile is not None:
                await self._end_session()
            if profile is None:
                self._set_phase(AppPhase.READY)
            else:
                await self._begin_session(profile)
        return self._phase

    async def restart(self) -> AppPhase:
        """End the current session, if any, and run :meth:`start` again."""
        with self._owning():
            await self._end_session()
            return await self.start()

    async def login(self, email: str, password: str) -> Employee:
        """Sign in and begin a session; raises :class:`WorkshopAuthenticationError`."""
        with self._owning():
            session = await self._service.auth.sign_in_with_password(email, password)
            try:
                profile = await self._fetch_profile(session.user_id)
            except WorkshopRowNotFoundError as exc:
                await self._sign_out_quietly()
                raise WorkshopAuthenticationError("No employee profile for this account", table="employees") from exc

            if self._profile is not None:
                await self._end_session()
            now = self._clock()
            self._persisted.login_date = self._today(now)
            self._persisted.last_active_time = now
            self.last_error = None
            await self._begin_session(profile)
            _logger.debug("Signed in as employee id=%s", profile.id)
            return profile

    async def logout(self) -> None:
        """Sign out, tear the session down and forget per-login state."""
        with self._owning():
            try:
                await self._service.auth.sign_out()
            except WorkshopError as exc:
                _logger.warning("Remote sign-out failed, signing out locally: %s", exc)
            await self._end_session()
            self._navigation.reset_to_root()
            self._persisted.selected_request_id = None
            self._persisted.selected_client_id = None
            self._persisted.forget_login()
            self._set_phase(AppPhase.READY)

    async def update_password(self, new_password: str) -> None:
        if len(new_password) < 6:
            raise WorkshopAuthenticationError("Password must be at least 6 characters", code="weak_password")
        await self._service.auth.update_password(new_password)

    async def _fetch_settings(self) -> Mapping[str, Any] | None:
        row = await self._service.rows.select_maybe_one(
            Query(SETTINGS_TABLE).select("settings_data").where(eq("id", SETTINGS_ROW_ID))
        )
        data = row.get("settings_data") if row is not None else None
        return data if isinstance(data, Mapping) else None

    async def _fetch_profile(self, user_id: str) -> Employee:
        row = await self._service.rows.select_one(Query(EntityType.EMPLOYEE.table).where(eq("id", user_id)))
        profile = self._cache.parse(EntityType.EMPLOYEE, row)
        if not isinstance(profile, Employee):
            raise WorkshopApiError(f"Malformed employee profile id={user_id}", table=EntityType.EMPLOYEE.table)
        return profile

    async def _sign_out_quietly(self) -> None:
        try:
            await self._service.auth.sign_out()
        except WorkshopError:
            _logger.warning("Sign-out failed", exc_info=True)

    # ------------------------------------------------------------------
    # Session scope
    # ------------------------------------------------------------------

    async def _begin_session(self, profile: Employee) -> None:
        self._profile = profile
        self._set_phase(AppPhase.READY)
        self._pipeline.start()
        await self._load()
        async with self._connection_lock:
            await self._subscribe_all()
        self._timers = SessionTimers(self._config.day_check_interval, self._tick)
        self._timers.start()

    async def _end_session(self) -> None:
        if self._timers is not None:
            await self._timers.stop()
            self._timers = None
        async with self._connection_lock:
            await self._unsubscribe_all()
        await self._pipeline.stop()
        self._cache.reset()
        self._profile = None
        if self._on_session_end is not None:
            self._on_session_end()
        self._notify()

    async def _load(self) -> None:
        try:
            await self._load_data()
        except WorkshopError:
            _logger.warning("Bulk load failed", exc_info=True)

    async def close(self) -> None:
        """Stop everything this lifecycle started, without signing out."""
        self._remove_auth_listener()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._timers is not None:
            await self._timers.stop()
            self._timers = None
        async with self._connection_lock:
            await self._unsubscribe_all()
        await self._pipeline.stop()

    # ------------------------------------------------------------------
    # Change-feed subscriptions
    # ------------------------------------------------------------------

    def _status_callback(self, entity_type: EntityType, generation: int) -> StatusCallback:
        def _on_status(status: StreamStatus) -> None:
            if generation != self._feed_generation:
                return
            mapped = _STREAM_STATUS.get(status, ConnectionStatus.DISCONNECTED)
            if self._stream_status.get(entity_type) is mapped:
                return
            self._stream_status[entity_type] = mapped
            if mapped is ConnectionStatus.DISCONNECTED:
                _logger.warning("Change stream %s reported %s", entity_type.value, status)
            else:
                _logger.debug("Change stream %s reported %s", entity_type.value, status)
            self._notify()

        return _on_status

    async def _subscribe_all(self) -> None:
        generation = self._feed_generation
        for entity_type, kinds in WATCHED_STREAMS.items():
            if entity_type in self._subscriptions:
                continue
            events = "*" if kinds is None else ",".join(sorted(kind.value for kind in kinds))
            self._stream_status[entity_type] = ConnectionStatus.CONNECTING
            try:
                subscription = await self._service.feed.subscribe(
                    entity_type.table,
                    on_change=self._pipeline.feed_callback(entity_type),
                    on_status=self._status_callback(entity_type, generation),
                    events=events,
                )
            except WorkshopError:
                _logger.warning("Subscribing to %s failed", entity_type.value, exc_info=True)
                self._stream_status[entity_type] = ConnectionStatus.DISCONNECTED
                continue
            self._subscriptions[entity_type] = subscription
        self._notify()

    async def _unsubscribe_all(self) -> None:
        self._feed_generation += 1
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        self._stream_status.clear()
        for subscription in subscriptions:
            try:
                await self._service.feed.unsubscribe(subscription)
            except Exception:
                _logger.debug("Unsubscribe from %s failed", subscription.table, exc_info=True)

    async def retry_connection(self) -> None:
        """Tear down every subscription and subscribe again from scratch."""
        if self._profile is None:
            return
        async with self._connection_lock:
            _logger.debug("Resubscribing change streams")
            await self._unsubscribe_all()
            await self._subscribe_all()

    # ------------------------------------------------------------------
    # Environment signals
    # ------------------------------------------------------------------

    def handle_offline(self) -> None:
        if self._online:
            _logger.debug("Network offline")
        self._online = False
        self._notify()

    async def handle_online(self) -> None:
        _logger.debug("Network online")
        self._online = True
        self._notify()
        await self.retry_connection()

    async def handle_foreground(self) -> None:
        """Re-validate the session after the application returns to the foreground."""
        drifted = False
        with self._owning():
            try:
                session = await self._service.auth.get_session()
            except WorkshopError as exc:
                _logger.warning("Session check failed: %s", exc)
                session = None

            if session is None:
                if self._profile is None:
                    return
                try:
                    session = await self._service.auth.refresh_session()
                except WorkshopError as exc:
                    _logger.warning("Session expired in the background and could not be refreshed")
                    self._fail(exc)
                    return

            if self._profile is not None and session.user_id != self._profile.id:
                _logger.warning(
                    "Signed-in identity changed from %s to %s; reloading",
                    self._profile.id,
                    session.user_id,
                )
                drifted = True

        if drifted:
            await self._reload(None)
        elif self._online and self.connection_status is ConnectionStatus.DISCONNECTED:
            await self.retry_connection()

    async def refresh_session_and_reload(self) -> bool:
        """Recover from a session error.

        Returns ``True`` when a silent refresh succeeded. Otherwise a hard
        reset is performed and ``False`` is returned.
        """
        with self._owning():
            try:
                session = await self._service.auth.refresh_session()
                if self._profile is not None and self._profile.id == session.user_id:
                    await self.retry_connection()
                    await self._load()
                    self.last_error = None
                    self._set_phase(AppPhase.READY)
                else:
                    profile = await self._fetch_profile(session.user_id)
                    if self._profile is not None:
                        await self._end_session()
                    self.last_error = None
                    await self._begin_session(profile)
                _logger.debug("Session refreshed for user id=%s", session.user_id)
                return True
            except WorkshopError as exc:
                _logger.warning("Silent session refresh failed, performing hard reset: %s", exc)
        await self.hard_reset()
        return False

    async def hard_reset(self) -> None:
        """Best-effort sign-out, wipe local state, then reload with a cache-busting marker."""
        with self._owning():
            _logger.warning("Hard reset: clearing local state")
            try:
                await asyncio.wait_for(self._service.auth.sign_out(), timeout=self._config.sign_out_timeout)
            except TimeoutError:
                _logger.warning("Sign-out did not finish within %.1fs", self._config.sign_out_timeout)
            except Exception:
                _logger.warning("Sign-out failed during hard reset", exc_info=True)
            try:
                self._persisted.store.clear()
            except Exception:
                _logger.warning("Clearing local state failed during hard reset", exc_info=True)
            try:
                await self._end_session()
            except Exception:
                _logger.warning("Session teardown failed during hard reset", exc_info=True)
        await self._reload(f"reset_ts={int(self._clock() * 1000)}")

    def record_activity(self) -> None:
        self._persisted.last_active_time = self._clock()

    # ------------------------------------------------------------------
    # Periodic checks and auth events
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        with self._owning():
            now = self._clock()
            last_active = self._persisted.last_active_time
            if last_active is None:
                self._persisted.last_active_time = now
            elif now - last_active > self._config.inactivity_limit:
                _logger.debug("Inactive for %.0fs; returning to %s", now - last_active, self._navigation.root)
                self._navigation.reset_to_root()
                self._persisted.last_active_time = now

            login_day = self._persisted.login_date
            if self._profile is not None and login_day is not None and login_day != self._today(now):
                _logger.warning("Calendar day changed since login on %s; signing out", login_day)
                await self.logout()

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_auth_state(self, event: AuthEvent, session: AuthSession | None) -> None:
        if self._busy:
            return
        if event in (AuthEvent.SIGNED_IN, AuthEvent.TOKEN_REFRESHED) and session is not None:
            if self._profile is None or self._profile.id != session.user_id:
                self._schedule(self._adopt_session(session))
        elif event is AuthEvent.SIGNED_OUT and self._profile is not None:
            self._schedule(self._drop_session())

    async def _adopt_session(self, session: AuthSession) -> None:
        with self._owning():
            try:
                profile = await self._fetch_profile(session.user_id)
            except WorkshopRowNotFoundError:
                _logger.warning("Signed-in user id=%s has no employee profile", session.user_id)
                await self._sign_out_quietly()
                return
            except WorkshopError:
                _logger.warning("Profile fetch after sign-in failed", exc_info=True)
                return
            if self._profile is not None:
                await self._end_session()
            await self._begin_session(profile)

    async def _drop_session(self) -> None:
        with self._owning():
            _logger.debug("Signed out elsewhere; ending session")
            await self._end_session()
            self._set_phase(AppPhase.READY)

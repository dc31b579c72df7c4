"""In-process backend.

Implements the same gateways as the HTTP backend against plain dict
tables. Row writes are echoed onto the change feed the way the realtime
service would echo them, which makes this backend usable for offline
demos and as the test double for every sync scenario.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import secrets
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from workshopsync._api.auth import AuthStateTracker
from workshopsync._api.base import (
    AuthEvent,
    AuthListener,
    ChangeCallback,
    DataService,
    StatusCallback,
    StreamStatus,
)
from workshopsync._api.query import Query
from workshopsync._constants import ROW_NOT_FOUND_CODE
from workshopsync.exceptions import WorkshopAuthenticationError, WorkshopRowNotFoundError
from workshopsync.local_store import PersistedState
from workshopsync.models.session import AuthSession, AuthUser

_logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


# ----------------------------------------------------------------------
# Change feed
# ----------------------------------------------------------------------


@dataclasses.dataclass(eq=False)
class MemorySubscription:
    table: str
    events: str
    on_change: ChangeCallback
    on_status: StatusCallback
    active: bool = True

    @property
    def is_active(self) -> bool:
        return self.active

    def report(self, status: StreamStatus) -> None:
        try:
            self.on_status(status)
        except Exception:
            _logger.warning("Status callback failed table=%s", self.table, exc_info=True)


class InMemoryChangeFeed:
    """Change feed that delivers :meth:`emit` calls to live subscriptions."""

    def __init__(self) -> None:
        self.subscriptions: list[MemorySubscription] = []
        self.failing_tables: set[str] = set()
        self.subscribe_calls: list[str] = []
        self.unsubscribe_calls: list[str] = []

    async def subscribe(
        self,
        table: str,
        *,
        on_change: ChangeCallback,
        on_status: StatusCallback,
        events: str = "*",
    ) -> MemorySubscription:
        self.subscribe_calls.append(table)
        subscription = MemorySubscription(table=table, events=events, on_change=on_change, on_status=on_status)
        await asyncio.sleep(0)
        if table in self.failing_tables:
            subscription.active = False
            subscription.report(StreamStatus.CHANNEL_ERROR)
        else:
            self.subscriptions.append(subscription)
            subscription.report(StreamStatus.SUBSCRIBED)
        return subscription

    async def unsubscribe(self, subscription: Any) -> None:
        if isinstance(subscription, MemorySubscription):
            self.unsubscribe_calls.append(subscription.table)
            subscription.active = False
            if subscription in self.subscriptions:
                self.subscriptions.remove(subscription)
        await asyncio.sleep(0)

    def active_tables(self) -> list[str]:
        return [sub.table for sub in self.subscriptions if sub.active]

    def emit(
        self,
        table: str,
        kind: str,
        new: Mapping[str, Any] | None = None,
        old: Mapping[str, Any] | None = None,
    ) -> int:
        """Deliver one row change; returns how many subscriptions received it."""
        data = {
            "schema": "public",
            "table": table,
            "commit_timestamp": _utcnow_iso(),
            "eventType": kind,
            "new": dict(new or {}),
            "old": dict(old or {}),
        }
        delivered = 0
        for subscription in list(self.subscriptions):
            if not subscription.active or subscription.table != table:
                continue
            if subscription.events not in ("*", kind):
                continue
            try:
                subscription.on_change(dict(data))
            except Exception:
                _logger.warning("Change callback failed table=%s", table, exc_info=True)
            delivered += 1
        return delivered

    def drop(self, table: str | None = None, status: StreamStatus = StreamStatus.CLOSED) -> None:
        """Simulate a channel failure on *table* (or every table)."""
        for subscription in list(self.subscriptions):
            if table is None or subscription.table == table:
                subscription.active = False
                subscription.report(status)


# ----------------------------------------------------------------------
# Rows
# ----------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class RowCall:
    """One recorded gateway call."""

    op: str
    table: str
    query: Query | None = None


class InMemoryRowGateway:
    """Dict-backed tables evaluated with :meth:`Query.apply`."""

    def __init__(self, feed: InMemoryChangeFeed | None = None, *, latency: float = 0.0) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.calls: list[RowCall] = []
        self.failures: dict[str, Exception] = {}
        self.latency = latency
        self.echo_changes = True
        self._feed = feed

    def seed(self, table: str, rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Store rows without emitting change events."""
        stored = [self._prepare(row) for row in rows]
        self.tables[table].extend(stored)
        return [dict(row) for row in stored]

    def fail(self, table: str, exc: Exception) -> None:
        """Make every following call on *table* raise *exc* until :meth:`recover`."""
        self.failures[table] = exc

    def recover(self, table: str) -> None:
        self.failures.pop(table, None)

    def calls_for(self, table: str, op: str | None = None) -> list[RowCall]:
        return [call for call in self.calls if call.table == table and (op is None or call.op == op)]

    def _prepare(self, row: Mapping[str, Any]) -> dict[str, Any]:
        prepared = dict(row)
        prepared.setdefault("id", str(uuid.uuid4()))
        prepared.setdefault("created_at", _utcnow_iso())
        return prepared

    async def _enter(self, op: str, table: str, query: Query | None = None) -> None:
        self.calls.append(RowCall(op, table, query))
        await asyncio.sleep(self.latency)
        failure = self.failures.get(table)
        if failure is not None:
            raise failure

    def _emit(self, table: str, kind: str, new: Mapping[str, Any] | None, old: Mapping[str, Any] | None) -> None:
        if self.echo_changes and self._feed is not None:
            self._feed.emit(table, kind, new, old)

    async def select(self, query: Query) -> list[dict[str, Any]]:
        await self._enter("select", query.table, query)
        return query.apply(self.tables[query.table])

    async def select_one(self, query: Query) -> dict[str, Any]:
        await self._enter("select_one", query.table, query)
        rows = query.apply(self.tables[query.table])
        if len(rows) != 1:
            raise WorkshopRowNotFoundError(
                f"Expected one row in {query.table}, found {len(rows)}",
                code=ROW_NOT_FOUND_CODE,
                table=query.table,
                status_code=406,
            )
        return rows[0]

    async def select_maybe_one(self, query: Query) -> dict[str, Any] | None:
        rows = await self.select(query.limit(1))
        return rows[0] if rows else None

    async def count(self, query: Query) -> int:
        await self._enter("count", query.table, query)
        return sum(1 for row in self.tables[query.table] if query.matches(row))

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        await self._enter("insert", table)
        stored = self._prepare(row)
        self.tables[table].append(stored)
        self._emit(table, "INSERT", stored, None)
        return dict(stored)

    async def update(self, query: Query, patch: Mapping[str, Any]) -> list[dict[str, Any]]:
        await self._enter("update", query.table, query)
        updated: list[dict[str, Any]] = []
        for row in self.tables[query.table]:
            if query.matches(row):
                row.update(dict(patch))
                row["updated_at"] = _utcnow_iso()
                updated.append(dict(row))
        for row in updated:
            self._emit(query.table, "UPDATE", row, {"id": row["id"]})
        return updated

    async def delete(self, query: Query) -> list[dict[str, Any]]:
        await self._enter("delete", query.table, query)
        table = self.tables[query.table]
        removed = [row for row in table if query.matches(row)]
        table[:] = [row for row in table if not query.matches(row)]
        for row in removed:
            self._emit(query.table, "DELETE", None, {"id": row["id"]})
        return [dict(row) for row in removed]


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------


class InMemoryAuthGateway:
    """Password auth against a dict of users, with failure switches."""

    def __init__(self, *, persisted: PersistedState | None = None) -> None:
        self._state = AuthStateTracker(persisted)
        self._users: dict[str, tuple[str, AuthUser]] = {}
        self.fail_refresh = False
        self.fail_sign_out = False
        self.sign_out_delay = 0.0
        self.get_session_error: Exception | None = None
        self.get_session_delay = 0.0
        self.server_user: AuthUser | None = None
        self.calls: list[str] = []

    @property
    def current_session(self) -> AuthSession | None:
        return self._state.session

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        return self._state.add_listener(listener)

    def add_user(self, email: str, password: str, *, user_id: str | None = None) -> AuthUser:
        user = AuthUser(id=user_id or str(uuid.uuid4()), email=email)
        self._users[email.strip().lower()] = (password, user)
        return user

    def _issue(self, user: AuthUser) -> AuthSession:
        return AuthSession(access_token=secrets.token_hex(16), refresh_token=secrets.token_hex(16), user=user)

    def establish(self, user: AuthUser) -> AuthSession:
        """Install a session directly, as if restored from a previous run."""
        session = self._issue(user)
        self._state.set(session, AuthEvent.SIGNED_IN)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        self.calls.append("sign_in")
        await asyncio.sleep(0)
        entry = self._users.get(email.strip().lower())
        if entry is None or entry[0] != password:
            raise WorkshopAuthenticationError("Invalid login credentials", code="invalid_credentials", status_code=400)
        session = self._issue(entry[1])
        self._state.set(session, AuthEvent.SIGNED_IN)
        return session

    async def refresh_session(self) -> AuthSession:
        self.calls.append("refresh")
        await asyncio.sleep(0)
        current = self._state.session
        if current is None or self.fail_refresh:
            raise WorkshopAuthenticationError("Refresh token rejected", code="refresh_token_not_found", status_code=400)
        session = self._issue(current.user)
        self._state.set(session, AuthEvent.TOKEN_REFRESHED)
        return session

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        try:
            await asyncio.sleep(self.sign_out_delay)
            if self.fail_sign_out:
                raise WorkshopAuthenticationError("Sign-out request failed", status_code=503)
        finally:
            self._state.clear()

    async def get_session(self) -> AuthSession | None:
        self.calls.append("get_session")
        await asyncio.sleep(self.get_session_delay)
        if self.get_session_error is not None:
            raise self.get_session_error
        session = self._state.session
        if session is None:
            return None
        if session.is_expired:
            session = await self.refresh_session()
        if self.server_user is not None and self.server_user != session.user:
            return session.model_copy(update={"user": self.server_user})
        return session

    async def update_password(self, new_password: str) -> None:
        self.calls.append("update_password")
        session = self._state.session
        if session is None:
            raise WorkshopAuthenticationError("Not signed in")
        for email, (_, user) in list(self._users.items()):
            if user.id == session.user.id:
                self._users[email] = (new_password, user)
        self._state.set(session, AuthEvent.USER_UPDATED)


# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------


class InMemoryBlobStorage:
    BASE_URL = "memory://storage/v1"

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}

    async def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> str:
        await asyncio.sleep(0)
        self.objects[(bucket, path)] = bytes(content)
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.BASE_URL}/object/public/{bucket}/{path}"

    async def remove(self, bucket: str, paths: list[str]) -> None:
        await asyncio.sleep(0)
        for path in paths:
            self.objects.pop((bucket, path), None)


@dataclasses.dataclass
class InMemoryDataService(DataService):
    """All four gateways wired together in process."""

    rows: InMemoryRowGateway
    auth: InMemoryAuthGateway
    feed: InMemoryChangeFeed
    storage: InMemoryBlobStorage

    @classmethod
    def create(cls, *, persisted: PersistedState | None = None, latency: float = 0.0) -> InMemoryDataService:
        feed = InMemoryChangeFeed()
        return cls(
            rows=InMemoryRowGateway(feed, latency=latency),
            auth=InMemoryAuthGateway(persisted=persisted),
            feed=feed,
            storage=InMemoryBlobStorage(),
        )

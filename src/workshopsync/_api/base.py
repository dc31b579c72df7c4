"""Boundary protocols of the remote data service.

The sync engine only talks to the service through these narrow
interfaces. :mod:`workshopsync._api.remote` implements them over HTTP and
websockets, :mod:`workshopsync._api.memory` in process.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any, Protocol

from workshopsync._api.query import Query
from workshopsync.models.session import AuthSession


class StreamStatus(StrEnum):
    """Status reported by one change-feed subscription."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class AuthEvent(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


ChangeCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[StreamStatus], None]
AuthListener = Callable[[AuthEvent, AuthSession | None], None]


class RowGateway(Protocol):
    async def select(self, query: Query) -> list[dict[str, Any]]: ...

    async def select_one(self, query: Query) -> dict[str, Any]: ...

    async def select_maybe_one(self, query: Query) -> dict[str, Any] | None: ...

    async def count(self, query: Query) -> int: ...

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update(self, query: Query, patch: Mapping[str, Any]) -> list[dict[str, Any]]: ...

    async def delete(self, query: Query) -> list[dict[str, Any]]: ...


class AuthGateway(Protocol):
    @property
    def current_session(self) -> AuthSession | None: ...

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession: ...

    async def sign_out(self) -> None: ...

    async def get_session(self) -> AuthSession | None: ...

    async def refresh_session(self) -> AuthSession: ...

    async def update_password(self, new_password: str) -> None: ...

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]: ...


class Subscription(Protocol):
    @property
    def table(self) -> str: ...

    @property
    def is_active(self) -> bool: ...


class ChangeFeed(Protocol):
    async def subscribe(
        self,
        table: str,
        *,
        on_change: ChangeCallback,
        on_status: StatusCallback,
        events: str = "*",
    ) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


class BlobStorage(Protocol):
    async def upload(self, bucket: str, path: str, content: bytes, *, content_type: str = ...) -> str: ...

    def get_public_url(self, bucket: str, path: str) -> str: ...

    async def remove(self, bucket: str, paths: list[str]) -> None: ...


@dataclasses.dataclass
class DataService:
    """The four boundary gateways of one backend."""

    rows: RowGateway
    auth: AuthGateway
    feed: ChangeFeed
    storage: BlobStorage

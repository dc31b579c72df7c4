"""Wiring of the HTTP/websocket backend."""

from __future__ import annotations

import aiohttp

from workshopsync._api.auth import RestAuthGateway
from workshopsync._api.base import DataService
from workshopsync._api.rows import RestRowGateway
from workshopsync._api.storage import RestBlobStorage
from workshopsync._realtime import RealtimeChangeFeed
from workshopsync._transport import RestTransport
from workshopsync.config import WorkshopConfig
from workshopsync.local_store import PersistedState


def create_remote_service(
    config: WorkshopConfig,
    http_session: aiohttp.ClientSession,
    *,
    persisted: PersistedState | None = None,
) -> DataService:
    """Build the REST/auth/storage/realtime gateways sharing one transport."""
    transport = RestTransport(config, http_session)
    auth = RestAuthGateway(transport, config.auth_url, persisted=persisted)

    def _access_token() -> str | None:
        session = auth.current_session
        return session.access_token if session is not None else None

    return DataService(
        rows=RestRowGateway(transport, config.rest_url),
        auth=auth,
        feed=RealtimeChangeFeed(config, http_session, token_provider=_access_token),
        storage=RestBlobStorage(transport, config.storage_url),
    )

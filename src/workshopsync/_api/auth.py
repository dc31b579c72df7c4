"""Password auth against the GoTrue-style auth endpoint."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from workshopsync._api.base import AuthEvent, AuthListener
from workshopsync._transport import Transport
from workshopsync.exceptions import WorkshopApiError, WorkshopAuthenticationError, WorkshopSessionExpiredError
from workshopsync.local_store import PersistedState
from workshopsync.models.session import AuthSession, AuthUser

_logger = logging.getLogger(__name__)


class AuthStateTracker:
    """Current session, its persisted copy and auth-state listeners.

    Shared by every auth gateway so that persistence and notification
    behave the same whichever backend is in use.
    """

    def __init__(
        self,
        persisted: PersistedState | None = None,
        *,
        on_token: Callable[[str | None], None] | None = None,
    ) -> None:
        self._persisted = persisted
        self._on_token = on_token
        self._session: AuthSession | None = None
        self._listeners: list[AuthListener] = []
        self._restored = False

    @property
    def session(self) -> AuthSession | None:
        if self._session is None and not self._restored:
            self._restored = True
            if self._persisted is not None:
                self._session = self._persisted.load_session()
                if self._session is not None and self._on_token is not None:
                    self._on_token(self._session.access_token)
        return self._session

    def set(self, session: AuthSession, event: AuthEvent) -> None:
        self._session = session
        self._restored = True
        if self._persisted is not None:
            self._persisted.save_session(session)
        if self._on_token is not None:
            self._on_token(session.access_token)
        self._emit(event, session)

    def clear(self) -> None:
        had_session = self._session is not None
        self._session = None
        self._restored = True
        if self._persisted is not None:
            self._persisted.save_session(None)
        if self._on_token is not None:
            self._on_token(None)
        if had_session:
            self._emit(AuthEvent.SIGNED_OUT, None)

    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, event: AuthEvent, session: AuthSession | None) -> None:
        _logger.debug("Auth state change: %s", event)
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                _logger.warning("Auth listener failed for %s", event, exc_info=True)


class RestAuthGateway:
    """Auth gateway over ``/auth/v1``."""

    def __init__(self, transport: Transport, auth_url: str, *, persisted: PersistedState | None = None) -> None:
        self._transport = transport
        self._auth_url = auth_url.rstrip("/")
        self._state = AuthStateTracker(persisted, on_token=transport.set_access_token)

    @property
    def current_session(self) -> AuthSession | None:
        return self._state.session

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        return self._state.add_listener(listener)

    async def _token(self, grant_type: str, body: dict[str, Any]) -> AuthSession:
        try:
            payload = await self._transport.request(
                "POST",
                f"{self._auth_url}/token",
                params=[("grant_type", grant_type)],
                json_body=body,
            )
        except WorkshopApiError as exc:
            raise WorkshopAuthenticationError(
                f"Auth grant '{grant_type}' rejected: {exc}",
                code=exc.code,
                status_code=exc.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise WorkshopAuthenticationError(f"Auth grant '{grant_type}' returned no session")
        try:
            return AuthSession.from_api(payload)
        except ValueError as exc:
            raise WorkshopAuthenticationError(f"Malformed auth response: {exc}") from exc

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        session = await self._token("password", {"email": email.strip(), "password": password})
        self._state.set(session, AuthEvent.SIGNED_IN)
        return session

    async def refresh_session(self) -> AuthSession:
        current = self._state.session
        if current is None or not current.refresh_token:
            raise WorkshopAuthenticationError("No session to refresh")
        session = await self._token("refresh_token", {"refresh_token": current.refresh_token})
        self._state.set(session, AuthEvent.TOKEN_REFRESHED)
        return session

    async def sign_out(self) -> None:
        """Revoke the session server-side; the local session is dropped regardless."""
        try:
            if self._state.session is not None:
                await self._transport.request("POST", f"{self._auth_url}/logout", params=[("scope", "local")])
        finally:
            self._state.clear()

    async def _fetch_user(self) -> AuthUser:
        payload = await self._transport.request("GET", f"{self._auth_url}/user")
        if not isinstance(payload, dict) or not payload.get("id"):
            raise WorkshopAuthenticationError("Auth server returned no user")
        return AuthUser(id=str(payload["id"]), email=payload.get("email"))

    async def get_session(self) -> AuthSession | None:
        """Return the current session as validated by the server.

        An expired token is refreshed first. The returned session carries
        the user the *server* associates with the token.
        """
        session = self._state.session
        if session is None:
            return None
        if session.is_expired:
            session = await self.refresh_session()
        try:
            user = await self._fetch_user()
        except WorkshopSessionExpiredError:
            session = await self.refresh_session()
            user = await self._fetch_user()
        if user != session.user:
            session = session.model_copy(update={"user": user})
        return session

    async def update_password(self, new_password: str) -> None:
        session = self._state.session
        if session is None:
            raise WorkshopAuthenticationError("Not signed in")
        try:
            await self._transport.request("PUT", f"{self._auth_url}/user", json_body={"password": new_password})
        except WorkshopApiError as exc:
            raise WorkshopAuthenticationError(f"Password update rejected: {exc}", code=exc.code) from exc
        self._state.set(session, AuthEvent.USER_UPDATED)

"""Small persisted key-value state used for UX continuity.

Holds the last selected record ids, the last-active timestamp, the login
date, the install-prompt dismissal timestamp and the persisted auth
session. Nothing in here is needed for the correctness of the cache.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from workshopsync.models.session import AuthSession

_logger = logging.getLogger(__name__)


class LocalStateStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryStateStore:
    """Process-local store; forgotten on exit."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class JsonFileStateStore:
    """Store persisted as one JSON object, rewritten atomically on change."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            _logger.warning("Ignoring corrupt state file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def clear(self) -> None:
        self._data = {}
        self._path.unlink(missing_ok=True)


class PersistedState:
    """Typed accessors over a :class:`LocalStateStore`."""

    SELECTED_REQUEST_ID = "selectedRequestId"
    SELECTED_CLIENT_ID = "selectedClientId"
    LAST_ACTIVE_TIME = "lastActiveTime"
    LOGIN_DATE = "loginDate"
    INSTALL_PROMPT_DISMISSED_AT = "installPromptDismissedAt"
    AUTH_SESSION = "authSession"

    def __init__(self, store: LocalStateStore) -> None:
        self.store = store

    @property
    def selected_request_id(self) -> str | None:
        return self.store.get(self.SELECTED_REQUEST_ID)

    @selected_request_id.setter
    def selected_request_id(self, value: str | None) -> None:
        self._set_or_remove(self.SELECTED_REQUEST_ID, value)

    @property
    def selected_client_id(self) -> str | None:
        return self.store.get(self.SELECTED_CLIENT_ID)

    @selected_client_id.setter
    def selected_client_id(self, value: str | None) -> None:
        self._set_or_remove(self.SELECTED_CLIENT_ID, value)

    @property
    def last_active_time(self) -> float | None:
        """Epoch seconds of the last recorded user activity."""
        value = self.store.get(self.LAST_ACTIVE_TIME)
        return float(value) if isinstance(value, (int, float)) else None

    @last_active_time.setter
    def last_active_time(self, value: float | None) -> None:
        self._set_or_remove(self.LAST_ACTIVE_TIME, value)

    @property
    def login_date(self) -> date | None:
        value = self.store.get(self.LOGIN_DATE)
        if not isinstance(value, str):
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            return None

    @login_date.setter
    def login_date(self, value: date | None) -> None:
        self._set_or_remove(self.LOGIN_DATE, value.isoformat() if value is not None else None)

    @property
    def install_prompt_dismissed_at(self) -> float | None:
        value = self.store.get(self.INSTALL_PROMPT_DISMISSED_AT)
        return float(value) if isinstance(value, (int, float)) else None

    @install_prompt_dismissed_at.setter
    def install_prompt_dismissed_at(self, value: float | None) -> None:
        self._set_or_remove(self.INSTALL_PROMPT_DISMISSED_AT, value)

    def load_session(self) -> AuthSession | None:
        value = self.store.get(self.AUTH_SESSION)
        if not isinstance(value, dict):
            return None
        try:
            return AuthSession.model_validate(value)
        except ValidationError:
            _logger.warning("Discarding unreadable persisted session")
            self.store.remove(self.AUTH_SESSION)
            return None

    def save_session(self, session: AuthSession | None) -> None:
        self._set_or_remove(self.AUTH_SESSION, session.model_dump() if session is not None else None)

    def forget_login(self) -> None:
        self.store.remove(self.LOGIN_DATE)
        self.store.remove(self.LAST_ACTIVE_TIME)

    def _set_or_remove(self, key: str, value: Any) -> None:
        if value is None:
            self.store.remove(key)
        else:
            self.store.set(key, value)

"""Authenticated session mirrored from the auth service."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workshopsync.ingestion.normalize import coerce_id, safe_float, safe_str

#: Token lifetime assumed when the auth response carries no expiry.
DEFAULT_SESSION_TTL: float = 3600.0


class AuthUser(BaseModel):
    """Identity half of a session."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str | None = None


class AuthSession(BaseModel):
    """Access/refresh token pair for one signed-in user.

    Parameters
    ----------
    access_token : str
        Bearer token sent on every row, storage and realtime call.
    refresh_token : str
        Token exchanged for a new session by ``refresh_session``.
    expires_at : float
        Wall-clock expiry (epoch seconds).
    user : AuthUser
        The user the tokens belong to.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    access_token: str
    refresh_token: str
    expires_at: float = Field(default_factory=lambda: time.time() + DEFAULT_SESSION_TTL)
    user: AuthUser

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_expired(self) -> bool:
        """Whether the access token has passed its expiry."""
        return time.time() >= self.expires_at

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> AuthSession:
        """Build a session from a token endpoint response.

        ``expires_at`` wins over ``expires_in`` when both are present.
        """
        user = payload.get("user")
        if not isinstance(user, dict):
            raise ValueError("token response has no user object")
        user_id = coerce_id(user.get("id"))
        if user_id is None:
            raise ValueError("token response user has no id")

        expires_at = safe_float(payload.get("expires_at"))
        if expires_at is None:
            expires_in = safe_float(payload.get("expires_in"))
            expires_at = time.time() + (expires_in if expires_in is not None else DEFAULT_SESSION_TTL)

        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=expires_at,
            user=AuthUser(id=user_id, email=safe_str(user.get("email"))),
        )

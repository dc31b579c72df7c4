"""Client configuration for workshopsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from workshopsync.exceptions import WorkshopConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class WorkshopConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Project URL of the data service (e.g. ``https://abc.supabase.co``).
        REST, auth, storage and realtime endpoints are derived from it.
    api_key : str
        Public (anon) API key sent with every request.
    schema : str
        Database schema watched by the change feed.
    time_zone : str
        IANA time zone used to bucket timestamps into calendar days
        (financial ledger, day-rollover logout).
    page_size : int
        Rows per page for the inspection-request list.
    search_limit : int
        Maximum number of requests returned by a free-text search.
    session_init_timeout : float
        Ceiling in seconds for fetching settings + session at startup.
    sign_out_timeout : float
        How long the hard-reset path waits for a graceful sign-out.
    incoming_signal_ttl : float
        Seconds before an "incoming request" signal expires on its own.
    highlight_ttl : float
        Seconds a pushed request stays in the highlighted set.
    inactivity_limit : float
        Seconds of inactivity after which navigation collapses to root.
    day_check_interval : float
        Poll interval in seconds for the day-rollover and inactivity checks.
    realtime_heartbeat : float
        Heartbeat interval in seconds for change-feed websockets.
    request_timeout : float
        Total timeout in seconds for a single HTTP request.
    api_trace_enabled : bool
        Log (redacted) request and response bodies at DEBUG level.
    """

    base_url: str
    api_key: str
    schema: str = "public"
    time_zone: str = "Asia/Riyadh"
    page_size: int = 50
    search_limit: int = 50
    session_init_timeout: float = 7.0
    sign_out_timeout: float = 0.5
    incoming_signal_ttl: float = 10.0
    highlight_ttl: float = 2.0
    inactivity_limit: float = 4 * 3600
    day_check_interval: float = 60.0
    realtime_heartbeat: float = 25.0
    request_timeout: float = 20.0
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise WorkshopConfigError(f"page_size must be positive, got {self.page_size}")
        if self.session_init_timeout <= 0:
            raise WorkshopConfigError("session_init_timeout must be positive")

    @property
    def rest_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/v1"

    @property
    def storage_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/storage/v1"

    @property
    def realtime_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    @classmethod
    def from_env(cls, **overrides: Any) -> WorkshopConfig:
        """Create configuration from environment variables.

        Reads ``WORKSHOP_URL``, ``WORKSHOP_API_KEY`` and optional
        ``WORKSHOP_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        WorkshopConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "WORKSHOP_URL": "base_url",
            "WORKSHOP_API_KEY": "api_key",
            "WORKSHOP_SCHEMA": "schema",
            "WORKSHOP_TIME_ZONE": "time_zone",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_INT_MAP = {
            "WORKSHOP_PAGE_SIZE": "page_size",
            "WORKSHOP_SEARCH_LIMIT": "search_limit",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = int(val)

        _ENV_FLOAT_MAP = {
            "WORKSHOP_SESSION_INIT_TIMEOUT": "session_init_timeout",
            "WORKSHOP_INACTIVITY_LIMIT": "inactivity_limit",
            "WORKSHOP_REQUEST_TIMEOUT": "request_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(
                env.get("WORKSHOP_API_TRACE_ENABLED"),
                False,
            )

        config_kwargs.update(overrides)

        missing = [name for name in ("base_url", "api_key") if not config_kwargs.get(name)]
        if missing:
            raise WorkshopConfigError(f"Missing required configuration: {', '.join(missing)}")

        return cls(**config_kwargs)

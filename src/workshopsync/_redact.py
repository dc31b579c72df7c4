"""Helpers for safe debug logging.

Row payloads, auth responses and request headers carry secrets (the API
key, access/refresh tokens, passwords). Everything that reaches a DEBUG
log goes through :func:`redact_for_log` first.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "new_password",
        "access_token",
        "refresh_token",
        "provider_token",
        "token",
        "apikey",
        "api_key",
        "authorization",
        "cookie",
    }
)

# Compact JWS: three base64url segments, header always starts with "eyJ".
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_QUERY_SECRET_RE = re.compile(r"((?:apikey|access_token|token)=)[^&\s]+", re.IGNORECASE)

REDACTED = "<redacted>"


def _scrub_text(text: str, max_string: int) -> str:
    text = _JWT_RE.sub("<jwt>", text)
    text = _QUERY_SECRET_RE.sub(rf"\1{REDACTED}", text)
    if len(text) > max_string:
        return f"{text[:max_string]}…<truncated>"
    return text


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Mapping values under sensitive keys are replaced wholesale; free text
    is scrubbed of embedded JWTs and ``apikey=``/``token=`` query values.
    """
    if _depth > 20:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return _scrub_text(value, max_string)

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(k): REDACTED
            if str(k).lower() in _SENSITIVE_KEYS
            else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)

"""HTTP transport with API-key/bearer headers and error mapping."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import aiohttp

from workshopsync._constants import ROW_NOT_FOUND_CODE, SESSION_EXPIRED_CODES, USER_AGENT
from workshopsync._redact import redact_for_log
from workshopsync.config import WorkshopConfig
from workshopsync.exceptions import (
    WorkshopApiError,
    WorkshopRowNotFoundError,
    WorkshopSessionExpiredError,
    WorkshopTransportError,
)

_logger = logging.getLogger(__name__)

Params = Sequence[tuple[str, str]] | Mapping[str, str]


class Transport(Protocol):
    """Structural transport interface used by the gateway modules.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`RestTransport`) concrete.
    """

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Params | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any: ...

    async def request_with_headers(
        self,
        method: str,
        url: str,
        *,
        params: Params | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[Any, Mapping[str, str]]: ...

    def set_access_token(self, token: str | None) -> None: ...


def _error_fields(body: Any) -> tuple[str, str]:
    """Extract ``(code, message)`` from a PostgREST or auth error body."""
    if not isinstance(body, dict):
        return "", ""
    code = body.get("code") or body.get("error_code") or body.get("error") or ""
    message = body.get("message") or body.get("msg") or body.get("error_description") or ""
    return str(code), str(message)


def raise_for_error(status: int, body: Any, path: str) -> None:
    """Map an HTTP error response onto the exception hierarchy."""
    if status < 400:
        return
    code, message = _error_fields(body)
    text = message or (body if isinstance(body, str) else "")
    detail = f"HTTP {status} from {path}: {code} {text}".strip()

    if code == ROW_NOT_FOUND_CODE:
        raise WorkshopRowNotFoundError(detail, code=code, table=path, status_code=status)
    if status == 401 or code in SESSION_EXPIRED_CODES:
        raise WorkshopSessionExpiredError(detail, code=code, table=path, status_code=status)
    raise WorkshopApiError(detail, code=code, table=path, status_code=status)


class RestTransport:
    """aiohttp transport for the data service's REST, auth and storage endpoints.

    Every request carries the project API key; the bearer token is the
    signed-in user's access token when one is set, otherwise the API key.
    """

    def __init__(self, config: WorkshopConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._access_token: str | None = None
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def _headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers: dict[str, str] = {
            "apikey": self._config.api_key,
            "authorization": f"Bearer {self._access_token or self._config.api_key}",
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Params | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (``None`` when empty)."""
        body, _headers = await self._send(method, url, params=params, json_body=json_body, data=data, headers=headers)
        return body

    async def request_with_headers(
        self,
        method: str,
        url: str,
        *,
        params: Params | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[Any, Mapping[str, str]]:
        """Like :meth:`request`, also returning the response headers."""
        return await self._send(method, url, params=params, headers=headers)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Params | None = None,
        json_body: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[Any, Mapping[str, str]]:
        path = url.removeprefix(self._config.base_url.rstrip("/"))
        request_headers = self._headers(headers)
        query = list(params.items()) if isinstance(params, Mapping) else params

        _logger.debug("%s %s params=%s", method, path, redact_for_log(query))
        if self._config.api_trace_enabled and json_body is not None:
            _logger.debug("%s %s body=%s", method, path, redact_for_log(json_body))

        try:
            async with self._http.request(
                method,
                url,
                params=query,
                json=json_body if data is None else None,
                data=data,
                headers=request_headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                response_headers = dict(resp.headers)
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise WorkshopTransportError(f"Request to {path} failed: {exc!r}", path=path) from exc

        body: Any = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError as exc:
                if status < 400:
                    raise WorkshopTransportError(
                        f"Invalid JSON from {path}: {text[:200]}",
                        status_code=status,
                        path=path,
                    ) from exc
                body = text[:200]

        if self._config.api_trace_enabled:
            _logger.debug("%s %s -> %s body=%s", method, path, status, redact_for_log(body))

        raise_for_error(status, body, path)
        return body, response_headers

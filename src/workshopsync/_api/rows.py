"""Row CRUD over the PostgREST endpoint."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from workshopsync._api.query import Query
from workshopsync._transport import Transport
from workshopsync.exceptions import WorkshopApiError, WorkshopRowNotFoundError, WorkshopTransportError

_SINGLE_OBJECT = "application/vnd.pgrst.object+json"
_RETURN_ROWS = "return=representation"
_EXACT_COUNT = "count=exact"


def _as_rows(body: Any, path: str) -> list[dict[str, Any]]:
    if body is None:
        return []
    if isinstance(body, dict):
        return [body]
    if not isinstance(body, list):
        raise WorkshopTransportError(f"Expected a row list from {path}", path=path)
    return [row for row in body if isinstance(row, dict)]


class RestRowGateway:
    """Row access for every table through one :class:`Transport`."""

    def __init__(self, transport: Transport, rest_url: str) -> None:
        self._transport = transport
        self._rest_url = rest_url.rstrip("/")

    def _url(self, table: str) -> str:
        return f"{self._rest_url}/{table}"

    async def select(self, query: Query) -> list[dict[str, Any]]:
        body = await self._transport.request("GET", self._url(query.table), params=query.to_params())
        return _as_rows(body, query.table)

    async def select_one(self, query: Query) -> dict[str, Any]:
        """Return exactly one row; raises :class:`WorkshopRowNotFoundError` otherwise."""
        body = await self._transport.request(
            "GET",
            self._url(query.table),
            params=query.to_params(),
            headers={"accept": _SINGLE_OBJECT},
        )
        if not isinstance(body, dict):
            raise WorkshopRowNotFoundError(f"No row in {query.table}", code="PGRST116", table=query.table)
        return body

    async def select_maybe_one(self, query: Query) -> dict[str, Any] | None:
        rows = await self.select(query.limit(1))
        return rows[0] if rows else None

    async def count(self, query: Query) -> int:
        """Exact row count from the ``Content-Range`` header; no rows are transferred."""
        _body, headers = await self._transport.request_with_headers(
            "GET",
            self._url(query.table),
            params=query.select("id").limit(0).to_params(),
            headers={"prefer": _EXACT_COUNT},
        )
        content_range = next((value for key, value in headers.items() if key.lower() == "content-range"), "")
        _, _, total = content_range.rpartition("/")
        if not total.isdigit():
            raise WorkshopTransportError(
                f"Missing row count from {query.table}: {content_range!r}", path=query.table
            )
        return int(total)

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        body = await self._transport.request(
            "POST",
            self._url(table),
            json_body=dict(row),
            headers={"prefer": _RETURN_ROWS},
        )
        rows = _as_rows(body, table)
        if not rows:
            raise WorkshopApiError(f"Insert into {table} returned no row", table=table)
        return rows[0]

    async def update(self, query: Query, patch: Mapping[str, Any]) -> list[dict[str, Any]]:
        params = [(k, v) for k, v in query.to_params() if k not in {"select", "order", "limit", "offset"}]
        body = await self._transport.request(
            "PATCH",
            self._url(query.table),
            params=params,
            json_body=dict(patch),
            headers={"prefer": _RETURN_ROWS},
        )
        return _as_rows(body, query.table)

    async def delete(self, query: Query) -> list[dict[str, Any]]:
        params = [(k, v) for k, v in query.to_params() if k not in {"select", "order", "limit", "offset"}]
        if not params:
            raise ValueError(f"Refusing unfiltered delete on {query.table}")
        body = await self._transport.request(
            "DELETE",
            self._url(query.table),
            params=params,
            headers={"prefer": _RETURN_ROWS},
        )
        return _as_rows(body, query.table)

"""Row query description shared by the REST and in-memory backends.

A :class:`Query` is an immutable description of a ``select`` (or the row
set targeted by an ``update``/``delete``). :meth:`Query.to_params` encodes
it the way PostgREST expects; :meth:`Query.apply` evaluates it against
plain dict rows.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from typing import Any

from workshopsync.ingestion.normalize import parse_timestamp

_RESERVED = set(',()."\\:')


@dataclasses.dataclass(frozen=True)
class Filter:
    """One ``column <op> value`` condition."""

    column: str
    op: str
    value: Any

    def encode(self) -> str:
        """PostgREST operator expression (``eq.5``, ``in.(a,b)``, ``ilike.*x*``)."""
        if self.op == "in":
            return f"in.({','.join(_quote(v) for v in self.value)})"
        if self.op == "ilike":
            return f"ilike.*{self.value}*"
        if self.op == "is":
            return f"is.{_literal(self.value)}"
        return f"{self.op}.{_literal(self.value)}"

    def encode_nested(self) -> str:
        """Form used inside ``or=(...)``; values with reserved characters are quoted."""
        if self.op == "ilike":
            return f"{self.column}.ilike.{_quote(f'*{self.value}*')}"
        if self.op in {"in", "is"}:
            return f"{self.column}.{self.encode()}"
        return f"{self.column}.{self.op}.{_quote(self.value)}"

    def matches(self, row: dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return actual is not None and _literal(actual) == _literal(self.value)
        if self.op == "neq":
            return actual is not None and _literal(actual) != _literal(self.value)
        if self.op == "is":
            return actual is None if self.value is None else _literal(actual) == _literal(self.value)
        if self.op == "in":
            wanted = {_literal(v) for v in self.value}
            return actual is not None and _literal(actual) in wanted
        if self.op == "ilike":
            return actual is not None and str(self.value).casefold() in str(actual).casefold()
        if self.op in {"gte", "lte", "gt", "lt"}:
            left, right = _comparable(actual), _comparable(self.value)
            if left is None or right is None or type(left) is not type(right):
                return False
            if self.op == "gte":
                return left >= right
            if self.op == "lte":
                return left <= right
            if self.op == "gt":
                return left > right
            return left < right
        raise ValueError(f"Unsupported filter operator: {self.op}")


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _quote(value: Any) -> str:
    text = _literal(value)
    if any(ch in _RESERVED for ch in text) or text != text.strip():
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _comparable(value: Any) -> float | str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    parsed = parse_timestamp(value)
    if parsed is not None:
        return parsed.timestamp()
    return str(value)


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def ilike(column: str, text: str) -> Filter:
    """Case-insensitive substring match."""
    return Filter(column, "ilike", text)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


@dataclasses.dataclass(frozen=True)
class Order:
    column: str
    descending: bool = True


@dataclasses.dataclass(frozen=True)
class Query:
    """Immutable row query against one table.

    Every builder method returns a new query::

        Query("inspection_requests").where(eq("status", "مكتمل")).order("created_at").limit(50)
    """

    table: str
    columns: tuple[str, ...] = ("*",)
    filters: tuple[Filter, ...] = ()
    any_of: tuple[tuple[Filter, ...], ...] = ()
    orders: tuple[Order, ...] = ()
    row_limit: int | None = None
    row_offset: int = 0

    def select(self, *columns: str) -> Query:
        return dataclasses.replace(self, columns=tuple(columns) or ("*",))

    def where(self, *filters: Filter) -> Query:
        return dataclasses.replace(self, filters=self.filters + filters)

    def or_(self, *filters: Filter) -> Query:
        """Require at least one of *filters* to match (ANDed with the rest)."""
        if not filters:
            return self
        return dataclasses.replace(self, any_of=self.any_of + (tuple(filters),))

    def order(self, column: str, *, descending: bool = True) -> Query:
        return dataclasses.replace(self, orders=self.orders + (Order(column, descending),))

    def limit(self, count: int) -> Query:
        return dataclasses.replace(self, row_limit=count)

    def range(self, start: int, end: int) -> Query:
        """Inclusive row range, as in ``Range: start-end``."""
        return dataclasses.replace(self, row_offset=start, row_limit=end - start + 1)

    def to_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [("select", ",".join(self.columns))]
        params.extend((f.column, f.encode()) for f in self.filters)
        params.extend(("or", f"({','.join(f.encode_nested() for f in group)})") for group in self.any_of)
        if self.orders:
            params.append(
                ("order", ",".join(f"{o.column}.{'desc' if o.descending else 'asc'}.nullslast" for o in self.orders))
            )
        if self.row_limit is not None:
            params.append(("limit", str(self.row_limit)))
        if self.row_offset:
            params.append(("offset", str(self.row_offset)))
        return params

    def matches(self, row: dict[str, Any]) -> bool:
        if not all(f.matches(row) for f in self.filters):
            return False
        return all(any(f.matches(row) for f in group) for group in self.any_of)

    def apply(self, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Evaluate the query against in-memory rows (filter, order, page, project)."""
        selected = [row for row in rows if self.matches(row)]
        for order in reversed(self.orders):
            present = [row for row in selected if _comparable(row.get(order.column)) is not None]
            missing = [row for row in selected if _comparable(row.get(order.column)) is None]
            present.sort(key=lambda row, col=order.column: _sort_value(row.get(col)), reverse=order.descending)
            selected = present + missing
        end = None if self.row_limit is None else self.row_offset + self.row_limit
        page = selected[self.row_offset : end]
        if self.columns == ("*",):
            return [dict(row) for row in page]
        return [{col: row.get(col) for col in self.columns} for row in page]


def _sort_value(value: Any) -> tuple[int, float | str]:
    comparable = _comparable(value)
    if isinstance(comparable, float):
        return (0, comparable)
    return (1, str(comparable))

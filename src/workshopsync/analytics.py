"""Financial aggregation over a date range.

:func:`summarize_financials` and :func:`build_forecast` are pure and work
on already-parsed entities. :class:`FinancialAnalytics` fetches the rows
for a range and runs them.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from workshopsync._api.base import RowGateway
from workshopsync._api.query import Query, eq, gte, lte, neq
from workshopsync._constants import (
    CHART_HISTORY_DAYS,
    EXPENSE_CATEGORY_ADVANCES,
    FINANCIAL_REQUEST_COLUMNS,
    FORECAST_HISTORY_DAYS,
    FORECAST_HORIZON_DAYS,
    NON_OPERATIONAL_EXPENSE_CATEGORIES,
    TREND_SLOPE_THRESHOLD,
)
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.models import (
    Broker,
    BrokerSummary,
    ChartPoint,
    Expense,
    FinancialSnapshot,
    Forecast,
    InspectionRequest,
    LedgerRow,
    PaymentSlice,
    PaymentType,
    RequestStatus,
    Revenue,
    Trend,
)
from workshopsync.models._base import EntityModel
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)

_T = TypeVar("_T", bound=EntityModel)

UNKNOWN_BROKER_NAME = "غير معروف"

#: (label, colour) of each payment-distribution slice, in display order.
PAYMENT_SLICES: tuple[tuple[str, str], ...] = (
    ("نقدي", "#10b981"),
    ("بطاقة", "#3b82f6"),
    ("تحويل", "#f59e0b"),
    ("آجل", "#ef4444"),
)

_LEDGER_FIELDS = ("cars", "revenue", "cash", "card", "transfer", "unpaid", "expenses", "commission")
_REQUEST_BUCKETS = {
    PaymentType.CASH: "cash",
    PaymentType.CARD: "card",
    PaymentType.TRANSFER: "transfer",
    PaymentType.UNPAID: "unpaid",
}
_REVENUE_BUCKETS = {
    PaymentType.CASH: "cash",
    PaymentType.CARD: "card",
    PaymentType.TRANSFER: "transfer",
}


def _short_label(day: date) -> str:
    return f"{day.day}/{day.month}"


def _local_day(value: datetime | None, tz: ZoneInfo) -> date | None:
    return value.astimezone(tz).date() if value is not None else None


def _payment_parts(request: InspectionRequest) -> dict[str, float]:
    """Amount of *request* attributed to each payment bucket."""
    if request.payment_type is PaymentType.SPLIT:
        split = request.split_payment_details
        if split is None:
            return {}
        return {"cash": split.cash, "card": split.card}
    bucket = _REQUEST_BUCKETS.get(request.payment_type) if request.payment_type is not None else None
    return {bucket: request.price} if bucket else {}


class _Ledger:
    def __init__(self, tz: ZoneInfo) -> None:
        self._tz = tz
        self._days: dict[date, dict[str, float]] = {}

    def add(self, when: datetime | None, **amounts: float) -> None:
        day = _local_day(when, self._tz)
        if day is None:
            return
        totals = self._days.setdefault(day, dict.fromkeys(_LEDGER_FIELDS, 0.0))
        for field, amount in amounts.items():
            totals[field] += amount

    def rows(self) -> list[LedgerRow]:
        return [
            LedgerRow(date=day, **{**totals, "cars": int(totals["cars"])})
            for day, totals in sorted(self._days.items(), reverse=True)
        ]


def summarize_financials(
    requests: Iterable[InspectionRequest],
    expenses: Iterable[Expense],
    revenues: Iterable[Revenue],
    *,
    brokers: Mapping[str, Broker] | None = None,
    tz: ZoneInfo | str = "UTC",
) -> FinancialSnapshot:
    """Aggregate one range of requests, expenses and other revenues.

    Split payments add their recorded cash and card parts, not the
    request price. Deductions and advances are kept out of operating
    expenses; advances still reduce :attr:`FinancialSnapshot.cash_on_hand`.
    """
    tz = ZoneInfo(tz) if isinstance(tz, str) else tz
    brokers = brokers or {}
    requests, expenses, revenues = list(requests), list(expenses), list(revenues)
    ledger = _Ledger(tz)
    buckets = dict.fromkeys(("cash", "card", "transfer", "unpaid"), 0.0)
    broker_totals: dict[str, BrokerSummary] = {}

    for request in requests:
        parts = _payment_parts(request)
        for bucket, amount in parts.items():
            buckets[bucket] += amount
        ledger.add(request.created_at, cars=1, revenue=request.price, commission=request.commission, **parts)

        if request.broker is not None:
            broker_id = request.broker.id
            known = brokers.get(broker_id)
            current = broker_totals.get(broker_id) or BrokerSummary(
                broker_id=broker_id,
                name=known.name if known is not None else UNKNOWN_BROKER_NAME,
            )
            broker_totals[broker_id] = current.model_copy(
                update={"amount": current.amount + request.commission, "count": current.count + 1}
            )

    for revenue in revenues:
        bucket = _REVENUE_BUCKETS.get(revenue.payment_method) if revenue.payment_method is not None else None
        extra = {bucket: revenue.amount} if bucket else {}
        if bucket:
            buckets[bucket] += revenue.amount
        ledger.add(revenue.date, revenue=revenue.amount, **extra)

    operational = [e for e in expenses if e.category not in NON_OPERATIONAL_EXPENSE_CATEGORIES]
    non_operational = [e for e in expenses if e.category in NON_OPERATIONAL_EXPENSE_CATEGORIES]
    for expense in operational:
        ledger.add(expense.date, expenses=expense.amount)

    total_other_revenue = sum(r.amount for r in revenues)
    actual_cash_flow = buckets["cash"] + buckets["card"] + buckets["transfer"]
    total_expenses = sum(e.amount for e in operational)
    total_advances = sum(e.amount for e in non_operational if e.category == EXPENSE_CATEGORY_ADVANCES)
    total_commissions = sum(r.commission for r in requests)
    net_profit = actual_cash_flow - total_expenses - total_commissions

    ledger_rows = ledger.rows()
    slice_values = (buckets["cash"], buckets["card"], buckets["transfer"], buckets["unpaid"])
    return FinancialSnapshot(
        total_revenue=sum(r.price for r in requests) + total_other_revenue,
        total_other_revenue=total_other_revenue,
        actual_cash_flow=actual_cash_flow,
        cash_total=buckets["cash"],
        card_total=buckets["card"],
        transfer_total=buckets["transfer"],
        unpaid_total=buckets["unpaid"],
        total_expenses=total_expenses,
        total_advances=total_advances,
        total_commissions=total_commissions,
        net_profit=net_profit,
        cash_on_hand=net_profit - total_advances,
        ledger=ledger_rows,
        daily_revenue_chart=[
            ChartPoint(date=row.date, value=row.revenue, label=_short_label(row.date)) for row in reversed(ledger_rows)
        ],
        payment_distribution=[
            PaymentSlice(label=label, value=value, color=color)
            for (label, color), value in zip(PAYMENT_SLICES, slice_values, strict=True)
            if value > 0
        ],
        broker_summary=list(broker_totals.values()),
        requests=requests,
        expenses=operational,
        non_operational_expenses=non_operational,
        revenues=revenues,
    )


def linear_regression(points: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """Least-squares ``(slope, intercept)``; a degenerate x spread yields slope 0."""
    n = len(points)
    if n == 0:
        return 0.0, 0.0
    sum_x = sum(x for x, _ in points)
    sum_y = sum(y for _, y in points)
    sum_xy = sum(x * y for x, y in points)
    sum_xx = sum(x * x for x, _ in points)
    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0, sum_y / n
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    return slope, (sum_y - slope * sum_x) / n


def classify_trend(slope: float, threshold: float = TREND_SLOPE_THRESHOLD) -> Trend:
    if slope > threshold:
        return Trend.UP
    if slope < -threshold:
        return Trend.DOWN
    return Trend.FLAT


def build_forecast(
    daily_totals: Mapping[date, float],
    *,
    today: date,
    history_days: int = FORECAST_HISTORY_DAYS,
    horizon_days: int = FORECAST_HORIZON_DAYS,
    chart_days: int = CHART_HISTORY_DAYS,
) -> Forecast:
    """Project daily completed revenue *horizon_days* ahead.

    The trailing *history_days* (ending *today*, missing days counted as
    zero) are fitted with a straight line. Projections are clamped at zero
    and rounded half up.
    """
    points: list[tuple[float, float]] = []
    history: list[ChartPoint] = []
    for offset in range(history_days - 1, -1, -1):
        day = today - timedelta(days=offset)
        value = float(daily_totals.get(day, 0.0))
        points.append((float(history_days - 1 - offset), value))
        if offset < chart_days:
            history.append(ChartPoint(date=day, value=value, label=_short_label(day)))

    slope, intercept = linear_regression(points)
    projected: list[ChartPoint] = []
    for step in range(1, horizon_days + 1):
        day = today + timedelta(days=step)
        predicted = max(0.0, slope * (history_days - 1 + step) + intercept)
        projected.append(ChartPoint(date=day, value=float(math.floor(predicted + 0.5)), label=_short_label(day)))

    return Forecast(
        history=history,
        data=projected,
        trend=classify_trend(slope),
        slope=slope,
        intercept=intercept,
    )


def _range_bound(value: datetime | date, tz: ZoneInfo, *, end: bool) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    return datetime.combine(value, time.max if end else time.min, tzinfo=tz)


class FinancialAnalytics:
    def __init__(
        self,
        rows: RowGateway,
        cache: EntityCache,
        backfill: EntityBackfill,
        *,
        time_zone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rows = rows
        self._cache = cache
        self._backfill = backfill
        self._tz = ZoneInfo(time_zone)
        self._clock = clock or (lambda: datetime.now(UTC))

    def _parse_all(self, entity_type: EntityType, rows: Iterable[Any], model: type[_T]) -> list[_T]:
        parsed = (self._cache.parse(entity_type, row) for row in rows)
        return [entity for entity in parsed if isinstance(entity, model)]

    async def compute_financials(
        self,
        start: datetime | date,
        end: datetime | date,
        *,
        completed_only: bool = True,
    ) -> FinancialSnapshot:
        """Fetch and aggregate everything recorded between *start* and *end*.

        Dates are expanded to whole local days. Server errors propagate
        to the caller.
        """
        lower = _range_bound(start, self._tz, end=False).isoformat()
        upper = _range_bound(end, self._tz, end=True).isoformat()

        requests_query = (
            Query(EntityType.REQUEST.table)
            .select(*FINANCIAL_REQUEST_COLUMNS)
            .where(gte("created_at", lower), lte("created_at", upper))
        )
        if completed_only:
            requests_query = requests_query.where(eq("status", RequestStatus.COMPLETE.value))
        else:
            requests_query = requests_query.where(neq("status", RequestStatus.CANCELLED.value))

        now = self._clock()
        history_query = (
            Query(EntityType.REQUEST.table)
            .select("id", "price", "created_at")
            .where(
                gte("created_at", (now - timedelta(days=FORECAST_HISTORY_DAYS)).isoformat()),
                lte("created_at", now.isoformat()),
                eq("status", RequestStatus.COMPLETE.value),
            )
        )
        request_rows, expense_rows, revenue_rows, history_rows = await asyncio.gather(
            self._rows.select(requests_query),
            self._rows.select(Query(EntityType.EXPENSE.table).where(gte("date", lower), lte("date", upper))),
            self._rows.select(Query(EntityType.REVENUE.table).where(gte("date", lower), lte("date", upper))),
            self._rows.select(history_query),
        )

        brokers = {broker.id: broker for broker in self._cache.collection(EntityType.BROKER)}
        snapshot = summarize_financials(
            self._parse_all(EntityType.REQUEST, request_rows, InspectionRequest),
            self._parse_all(EntityType.EXPENSE, expense_rows, Expense),
            self._parse_all(EntityType.REVENUE, revenue_rows, Revenue),
            brokers=brokers,
            tz=self._tz,
        )

        daily_totals: dict[date, float] = {}
        for request in self._parse_all(EntityType.REQUEST, history_rows, InspectionRequest):
            day = _local_day(request.created_at, self._tz)
            if day is not None:
                daily_totals[day] = daily_totals.get(day, 0.0) + request.price
        forecast = build_forecast(daily_totals, today=now.astimezone(self._tz).date())

        await self._backfill.ensure_loaded(request_rows)
        _logger.debug(
            "Financials %s..%s: requests=%d revenue=%.2f trend=%s",
            lower,
            upper,
            len(snapshot.requests),
            snapshot.total_revenue,
            forecast.trend,
        )
        return snapshot.model_copy(update={"forecast": forecast})

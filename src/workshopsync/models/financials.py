"""Derived financial aggregates.

None of these are persisted; a :class:`FinancialSnapshot` lives only as
long as the call that produced it.
"""

from __future__ import annotations

from datetime import date
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from workshopsync.models.ledger import Expense, Revenue
from workshopsync.models.request import InspectionRequest


class Trend(StrEnum):
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class _Aggregate(BaseModel):
    model_config = ConfigDict(frozen=True)


class LedgerRow(_Aggregate):
    """Per-day totals; one row per calendar day with any activity."""

    date: date
    cars: int = 0
    revenue: float = 0.0
    cash: float = 0.0
    card: float = 0.0
    transfer: float = 0.0
    unpaid: float = 0.0
    expenses: float = 0.0
    commission: float = 0.0


class ChartPoint(_Aggregate):
    date: date
    value: float
    label: str


class PaymentSlice(_Aggregate):
    label: str
    value: float
    color: str


class BrokerSummary(_Aggregate):
    broker_id: str
    name: str
    amount: float = 0.0
    count: int = 0


class Forecast(_Aggregate):
    """Trailing history, forward projection and a coarse trend label."""

    history: list[ChartPoint] = Field(default_factory=list)
    data: list[ChartPoint] = Field(default_factory=list)
    trend: Trend = Trend.FLAT
    slope: float = 0.0
    intercept: float = 0.0


class FinancialSnapshot(_Aggregate):
    total_revenue: float = 0.0
    total_other_revenue: float = 0.0
    actual_cash_flow: float = 0.0
    cash_total: float = 0.0
    card_total: float = 0.0
    transfer_total: float = 0.0
    unpaid_total: float = 0.0
    total_expenses: float = 0.0
    """Operational expenses only (deductions and advances excluded)."""
    total_advances: float = 0.0
    total_commissions: float = 0.0
    net_profit: float = 0.0
    cash_on_hand: float = 0.0
    """Net profit minus advances paid out of the drawer."""
    ledger: list[LedgerRow] = Field(default_factory=list)
    daily_revenue_chart: list[ChartPoint] = Field(default_factory=list)
    payment_distribution: list[PaymentSlice] = Field(default_factory=list)
    broker_summary: list[BrokerSummary] = Field(default_factory=list)
    forecast: Forecast = Field(default_factory=Forecast)
    requests: list[InspectionRequest] = Field(default_factory=list, repr=False)
    expenses: list[Expense] = Field(default_factory=list, repr=False)
    """Operational expenses in range."""
    non_operational_expenses: list[Expense] = Field(default_factory=list, repr=False)
    """Deductions and advances, surfaced separately."""
    revenues: list[Revenue] = Field(default_factory=list, repr=False)

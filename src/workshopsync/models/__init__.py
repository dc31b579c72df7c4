"""Validated entity and aggregate models."""

from workshopsync.models._base import Amount, EntityEnum, EntityModel, Timestamp
from workshopsync.models.catalog import Broker, Car, CarMake, CarModel, Client, Employee
from workshopsync.models.financials import (
    BrokerSummary,
    ChartPoint,
    FinancialSnapshot,
    Forecast,
    LedgerRow,
    PaymentSlice,
    Trend,
)
from workshopsync.models.inbox import AppNotification, InternalMessage, Reservation
from workshopsync.models.ledger import Expense, Revenue
from workshopsync.models.request import BrokerCommission, InspectionRequest, PaymentType, RequestStatus, SplitPayment
from workshopsync.models.session import AuthSession, AuthUser

__all__ = [
    "Amount",
    "AppNotification",
    "AuthSession",
    "AuthUser",
    "Broker",
    "BrokerCommission",
    "BrokerSummary",
    "Car",
    "CarMake",
    "CarModel",
    "ChartPoint",
    "Client",
    "Employee",
    "EntityEnum",
    "EntityModel",
    "Expense",
    "FinancialSnapshot",
    "Forecast",
    "InspectionRequest",
    "InternalMessage",
    "LedgerRow",
    "PaymentSlice",
    "PaymentType",
    "RequestStatus",
    "Reservation",
    "Revenue",
    "SplitPayment",
    "Timestamp",
    "Trend",
]

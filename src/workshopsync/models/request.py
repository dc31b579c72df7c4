"""Inspection request model."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from workshopsync.ingestion.normalize import coerce_id, safe_int
from workshopsync.models._base import Amount, EntityEnum, EntityModel


class RequestStatus(EntityEnum):
    """Lifecycle status of an inspection request (stored as Arabic labels)."""

    IN_PROGRESS = "قيد التنفيذ"
    COMPLETE = "مكتمل"
    NEW = "جديد"
    WAITING_PAYMENT = "بانتظار الدفع"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class PaymentType(EntityEnum):
    """How a request or revenue was paid."""

    CASH = "نقدي"
    CARD = "بطاقة"
    TRANSFER = "تحويل"
    SPLIT = "دفع مجزأ (نقدي + بطاقة)"
    UNPAID = "غير مدفوع"
    UNKNOWN = "unknown"


class SplitPayment(BaseModel):
    """Cash/card parts of a split payment."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    cash: Amount = 0.0
    card: Amount = 0.0


class BrokerCommission(BaseModel):
    """Broker attached to a request and the commission owed for it."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    commission: Amount = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: Any) -> str:
        normalised = coerce_id(value)
        if normalised is None:
            raise ValueError("broker id must be non-empty")
        return normalised


class InspectionRequest(EntityModel):
    """A vehicle inspection request, the dominant high-volume entity.

    Fields are mapped from the ``inspection_requests`` table. Heavy JSON
    columns (notes, findings, attachments) are not modelled and stay
    available through :attr:`raw`.
    """

    request_number: int | None = None
    """Human-facing sequential number."""
    client_id: str | None = None
    car_id: str | None = None
    inspection_type_id: str | None = None
    employee_id: str | None = Field(default=None, validation_alias=AliasChoices("employee_id", "employeeId"))
    """Employee who created the request (the actor of an insert)."""
    payment_type: PaymentType | None = None
    split_payment_details: SplitPayment | None = None
    price: Amount = 0.0
    status: RequestStatus | None = None
    broker: BrokerCommission | None = None
    payment_note: str | None = None

    @field_validator("client_id", "car_id", "inspection_type_id", "employee_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> str | None:
        return coerce_id(value)

    @field_validator("request_number", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("broker", "split_payment_details", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if not value:
            return None
        return value

    @property
    def commission(self) -> float:
        return self.broker.commission if self.broker is not None else 0.0

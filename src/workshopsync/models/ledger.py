"""Expense and other-revenue entries."""

from __future__ import annotations

from pydantic import AliasChoices, Field

from workshopsync.models._base import Amount, EntityModel, Timestamp
from workshopsync.models.request import PaymentType


class Expense(EntityModel):
    date: Timestamp = None
    category: str = ""
    description: str = ""
    amount: Amount = 0.0
    employee_id: str | None = Field(default=None, validation_alias=AliasChoices("employee_id", "employeeId"))
    employee_name: str | None = Field(default=None, validation_alias=AliasChoices("employee_name", "employeeName"))


class Revenue(EntityModel):
    """Revenue not tied to an inspection request (``other_revenues``)."""

    date: Timestamp = None
    category: str = ""
    description: str = ""
    amount: Amount = 0.0
    payment_method: PaymentType | None = None
    employee_id: str | None = Field(default=None, validation_alias=AliasChoices("employee_id", "employeeId"))
    employee_name: str | None = Field(default=None, validation_alias=AliasChoices("employee_name", "employeeName"))

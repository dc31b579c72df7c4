"""Reference entities: clients, cars, makes/models, brokers, employees."""

from __future__ import annotations

from typing import Any

from pydantic import Field, field_validator

from workshopsync.ingestion.normalize import coerce_id, safe_bool, safe_int
from workshopsync.models._base import Amount, EntityModel


class Client(EntityModel):
    name: str = ""
    phone: str = ""
    is_vip: bool = False

    @field_validator("name", "phone", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("is_vip", mode="before")
    @classmethod
    def _coerce_vip(cls, value: Any) -> bool:
        return safe_bool(value)


class Car(EntityModel):
    """A vehicle. Plates are stored in Arabic and Latin renderings."""

    make_id: str | None = None
    model_id: str | None = None
    year: int | None = None
    plate_number: str | None = None
    plate_number_en: str | None = None
    vin: str | None = None

    @field_validator("make_id", "model_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> str | None:
        return coerce_id(value)

    @field_validator("year", mode="before")
    @classmethod
    def _coerce_year(cls, value: Any) -> int | None:
        return safe_int(value)

    def matches_plate(self, plate: str) -> bool:
        """Whitespace- and case-insensitive plate comparison."""
        target = _compact(plate)
        return any(
            candidate is not None and _compact(candidate) == target
            for candidate in (self.plate_number, self.plate_number_en)
        )

    def matches_vin(self, vin: str) -> bool:
        return self.vin is not None and _compact(self.vin) == _compact(vin)


def _compact(value: str) -> str:
    return "".join(value.split()).upper()


class CarMake(EntityModel):
    name_ar: str = ""
    name_en: str = ""
    logo_url: str | None = None


class CarModel(EntityModel):
    make_id: str | None = None
    name_ar: str = ""
    name_en: str = ""

    @field_validator("make_id", mode="before")
    @classmethod
    def _coerce_make(cls, value: Any) -> str | None:
        return coerce_id(value)


class Broker(EntityModel):
    name: str = ""
    phone: str | None = None
    default_commission: Amount = 0.0
    is_active: bool = True


class Employee(EntityModel):
    """Employee profile; every authenticated user must have one."""

    email: str = ""
    name: str = ""
    role: str = "employee"
    permissions: list[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("permissions", mode="before")
    @classmethod
    def _coerce_permissions(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if item]

    def can(self, permission: str) -> bool:
        if self.role == "general_manager":
            return True
        return permission in self.permissions

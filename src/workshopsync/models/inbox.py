"""Notifications, internal messages and reservations."""

from __future__ import annotations

from typing import Any

from pydantic import field_validator

from workshopsync.ingestion.normalize import coerce_id, safe_bool
from workshopsync.models._base import EntityModel


class AppNotification(EntityModel):
    """System notification; ``user_id`` of ``None`` means broadcast."""

    title: str = ""
    message: str = ""
    type: str = "general"
    is_read: bool = False
    user_id: str | None = None
    link: str | None = None
    link_id: str | None = None
    created_by_name: str | None = None

    @field_validator("user_id", "link_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> str | None:
        return coerce_id(value)

    @field_validator("is_read", mode="before")
    @classmethod
    def _coerce_read(cls, value: Any) -> bool:
        return safe_bool(value)

    def is_visible_to(self, user_id: str | None) -> bool:
        return self.user_id is None or self.user_id == user_id


class InternalMessage(EntityModel):
    sender_id: str | None = None
    receiver_id: str | None = None
    sender_name: str = ""
    receiver_name: str = ""
    subject: str = ""
    content: str = ""
    is_read: bool = False
    priority: str = "normal"

    @field_validator("sender_id", "receiver_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> str | None:
        return coerce_id(value)


class Reservation(EntityModel):
    client_name: str = ""
    client_phone: str = ""
    car_details: str = ""
    plate_text: str = ""
    service_type: str = ""
    notes: str | None = None
    status: str = "new"
    car_make_id: str | None = None
    car_model_id: str | None = None

"""Confirmed writes.

Every write goes to the server first; the cache is updated from the row
the server returns, never optimistically. A rejected write raises
:class:`WorkshopMutationError` and leaves the cache as it was. The change
feed later echoes the same write, which the cache absorbs idempotently.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, TypeVar

from workshopsync._api.base import BlobStorage, RowGateway
from workshopsync._api.query import Filter, Query, eq, in_
from workshopsync._api.storage import split_public_url
from workshopsync.exceptions import WorkshopError, WorkshopMutationError
from workshopsync.ingestion.backfill import EntityBackfill
from workshopsync.models import AppNotification, Employee, EntityModel, InspectionRequest, InternalMessage
from workshopsync.state.events import EntityType
from workshopsync.state.store import EntityCache

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")

SYSTEM_SENDER_NAME = "النظام"
CLIENT_HAS_REQUESTS_MESSAGE = "لا يمكن حذف عميل لديه طلبات فحص."


class MutationService:
    def __init__(
        self,
        rows: RowGateway,
        cache: EntityCache,
        storage: BlobStorage,
        backfill: EntityBackfill,
        *,
        current_profile: Callable[[], Employee | None] = lambda: None,
    ) -> None:
        self._rows = rows
        self._cache = cache
        self._storage = storage
        self._backfill = backfill
        self._current_profile = current_profile

    async def _confirmed(self, operation: str, table: str, call: Awaitable[_T]) -> _T:
        try:
            return await call
        except WorkshopError as exc:
            _logger.warning("%s on %s rejected: %s", operation, table, exc)
            raise WorkshopMutationError(f"{operation} on {table} failed: {exc}", table=table, operation=operation) from exc

    def _actor_id(self) -> str | None:
        profile = self._current_profile()
        return profile.id if profile is not None else None

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def create(self, entity_type: EntityType, values: Mapping[str, Any]) -> EntityModel:
        """Insert a row and cache the stored version."""
        table = entity_type.table
        row = await self._confirmed("create", table, self._rows.insert(table, dict(values)))
        entity = self._cache.apply_insert(entity_type, row, actor_id=self._actor_id())
        if entity is None:
            raise WorkshopMutationError(f"create on {table} returned an unreadable row", table=table, operation="create")
        return entity

    async def update(self, entity_type: EntityType, entity_id: str, patch: Mapping[str, Any]) -> EntityModel:
        """Patch one row; returns the merged entity.

        Rows not currently cached are returned without being added.
        """
        table = entity_type.table
        values = {key: value for key, value in patch.items() if key != "id"}
        updated = await self._confirmed(
            "update", table, self._rows.update(Query(table).where(eq("id", entity_id)), values)
        )
        if not updated:
            raise WorkshopMutationError(f"update on {table} matched no row id={entity_id}", table=table, operation="update")
        merged = self._cache.apply_update(entity_type, updated[0])
        entity = merged or self._cache.parse(entity_type, updated[0])
        if entity is None:
            raise WorkshopMutationError(f"update on {table} returned an unreadable row", table=table, operation="update")
        return entity

    async def delete(self, entity_type: EntityType, entity_id: str) -> None:
        table = entity_type.table
        await self._confirmed("delete", table, self._rows.delete(Query(table).where(eq("id", entity_id))))
        self._cache.apply_delete(entity_type, entity_id)

    async def delete_many(self, entity_type: EntityType, entity_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return 0
        table = entity_type.table
        await self._confirmed("delete", table, self._rows.delete(Query(table).where(in_("id", ids))))
        for entity_id in ids:
            self._cache.apply_delete(entity_type, entity_id)
        return len(ids)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_request(self, values: Mapping[str, Any]) -> InspectionRequest:
        """Create a request; the server assigns ``request_number``."""
        row = {key: value for key, value in values.items() if key != "request_number"}
        actor_id = self._actor_id()
        if actor_id is not None:
            row.setdefault("employee_id", actor_id)
        await self._backfill.ensure_loaded([row])
        request = await self.create(EntityType.REQUEST, row)
        assert isinstance(request, InspectionRequest)  # noqa: S101
        await self.send_system_notification(
            "طلب جديد",
            f"تم إنشاء طلب جديد برقم #{request.request_number}",
            "new_request",
            link="requests",
            link_id=request.id,
        )
        return request

    async def update_request(self, request_id: str, patch: Mapping[str, Any]) -> InspectionRequest:
        request = await self.update(EntityType.REQUEST, request_id, patch)
        assert isinstance(request, InspectionRequest)  # noqa: S101
        return request

    async def delete_request(self, request_id: str) -> None:
        cached = self._cache.get(EntityType.REQUEST, request_id)
        number = cached.request_number if cached is not None else "???"
        await self.delete(EntityType.REQUEST, request_id)
        profile = self._current_profile()
        if profile is not None:
            await self.send_system_notification(
                "حذف طلب",
                f"قام {profile.name} بحذف الطلب رقم #{number}",
                "delete_request",
            )

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def delete_client(self, client_id: str) -> None:
        """Delete a client; refused while any request references it."""
        table = EntityType.REQUEST.table
        referencing = await self._confirmed(
            "delete", EntityType.CLIENT.table, self._rows.count(Query(table).where(eq("client_id", client_id)))
        )
        if referencing:
            raise WorkshopMutationError(CLIENT_HAS_REQUESTS_MESSAGE, table=EntityType.CLIENT.table, operation="delete")
        await self.delete(EntityType.CLIENT, client_id)

    # ------------------------------------------------------------------
    # Notifications and messages
    # ------------------------------------------------------------------

    async def send_system_notification(
        self,
        title: str,
        message: str,
        kind: str = "general",
        *,
        link: str | None = None,
        link_id: str | None = None,
        user_id: str | None = None,
    ) -> AppNotification | None:
        """Broadcast (or target) a notification; failures are logged and return ``None``."""
        profile = self._current_profile()
        row = {
            "title": title,
            "message": message,
            "type": kind,
            "link": link,
            "link_id": link_id,
            "user_id": user_id,
            "created_by_name": profile.name if profile is not None else SYSTEM_SENDER_NAME,
            "is_read": False,
        }
        try:
            notification = await self.create(EntityType.NOTIFICATION, row)
        except WorkshopMutationError:
            _logger.warning("System notification %r not sent", kind, exc_info=True)
            return None
        return notification if isinstance(notification, AppNotification) else None

    async def mark_notification_read(self, notification_id: str) -> None:
        await self.update(EntityType.NOTIFICATION, notification_id, {"is_read": True})

    async def mark_all_notifications_read(self) -> int:
        """Mark every unread notification visible to the current user as read."""
        table = EntityType.NOTIFICATION.table
        query = Query(table).where(eq("is_read", False))
        user_id = self._actor_id()
        if user_id is not None:
            query = query.or_(Filter("user_id", "is", None), eq("user_id", user_id))
        updated = await self._confirmed("update", table, self._rows.update(query, {"is_read": True}))
        for row in updated:
            self._cache.apply_update(EntityType.NOTIFICATION, row)
        return len(updated)

    async def mark_message_read(self, message_id: str) -> None:
        """Mark a message read; only a cached unread message lowers the unread count."""
        cached = self._cache.get(EntityType.MESSAGE, message_id)
        message = await self.update(EntityType.MESSAGE, message_id, {"is_read": True})
        was_unread = cached is not None and not cached.is_read
        if isinstance(message, InternalMessage) and was_unread and message.receiver_id == self._actor_id():
            self._cache.unread_messages = max(0, self._cache.unread_messages - 1)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def upload_attachment(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Store *content* and return its public URL."""
        stored = await self._confirmed(
            "upload", bucket, self._storage.upload(bucket, path, content, content_type=content_type)
        )
        return self._storage.get_public_url(bucket, stored)

    async def delete_attachment(self, url: str) -> bool:
        """Remove the object behind a public URL; unknown URLs are ignored."""
        location = split_public_url(url)
        if location is None:
            _logger.debug("Not a storage URL, nothing to delete: %s", url)
            return False
        bucket, path = location
        await self._confirmed("delete", bucket, self._storage.remove(bucket, [path]))
        return True

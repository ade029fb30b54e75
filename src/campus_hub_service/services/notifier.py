"""Notification recording and push delivery."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger
from campus_hub_service.services.task_store import now_iso

if TYPE_CHECKING:
    from campus_hub_service.services.connection_hub import ConnectionHub
    from campus_hub_service.services.notification_store import NotificationStore

NOTIFICATION_TYPES = frozenset({"application", "assignment", "completion", "payment", "general"})


class Notifier:
    """
    Records per-user notifications and pushes them to the user's room.

    ``notify`` never raises: a failure to record or push is logged and the
    caller's state change stands.
    """

    def __init__(self, store: NotificationStore, hub: ConnectionHub, list_limit: int) -> None:
        self._store = store
        self._hub = hub
        self._list_limit = list_limit
        self._logger = get_logger(__name__)

    async def notify(
        self,
        user_id: str,
        message: str,
        notification_type: str,
        related_task: str | None = None,
        related_user: str | None = None,
    ) -> dict[str, Any] | None:
        """Record a notification and push it as ``newNotification``."""
        if notification_type not in NOTIFICATION_TYPES:
            notification_type = "general"

        notification = {
            "notification_id": f"n-{uuid.uuid4()}",
            "user_id": user_id,
            "message": message,
            "type": notification_type,
            "related_task": related_task,
            "related_user": related_user,
            "is_read": False,
            "created_at": now_iso(),
        }
        try:
            self._store.insert_notification(notification)
        except sqlite3.Error:
            self._logger.exception(
                "Failed to record notification",
                extra={"user_id": user_id, "type": notification_type, "task_id": related_task},
            )
            return None

        delivered = await self._hub.emit_to_user(user_id, "newNotification", notification)
        self._logger.info(
            "Notification sent",
            extra={
                "notification_id": notification["notification_id"],
                "user_id": user_id,
                "type": notification_type,
                "delivered": delivered,
            },
        )
        return notification

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        """Latest notifications for a user, newest first."""
        return self._store.list_for_user(user_id, self._list_limit)

    def unread_count(self, user_id: str) -> int:
        return self._store.count_unread(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> dict[str, Any]:
        """
        Mark one of the user's notifications as read.

        Raises:
            ServiceError: NOTIFICATION_NOT_FOUND if missing or owned by someone else
        """
        if self._store.mark_read(notification_id, user_id) == 0:
            raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {})
        notification = self._store.get_notification(notification_id)
        if notification is None:
            raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {})
        return notification

    def mark_all_read(self, user_id: str) -> int:
        return self._store.mark_all_read(user_id)

    def delete(self, notification_id: str, user_id: str) -> None:
        """
        Delete one of the user's notifications.

        Raises:
            ServiceError: NOTIFICATION_NOT_FOUND if missing or owned by someone else
        """
        if self._store.delete_notification(notification_id, user_id) == 0:
            raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {})

"""Per-task chat between a task's owner and its assignee."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger
from campus_hub_service.services.task_store import now_iso

if TYPE_CHECKING:
    from campus_hub_service.services.connection_hub import ConnectionHub
    from campus_hub_service.services.message_store import MessageStore
    from campus_hub_service.services.task_store import TaskStore
    from campus_hub_service.services.user_store import UserStore

MESSAGE_MAX_LENGTH = 1000


class MessageManager:
    """Stores chat messages and relays new ones to the task room."""

    def __init__(
        self,
        store: MessageStore,
        task_store: TaskStore,
        user_store: UserStore,
        hub: ConnectionHub,
    ) -> None:
        self._store = store
        self._task_store = task_store
        self._user_store = user_store
        self._hub = hub
        self._logger = get_logger(__name__)

    def _require_participant(self, task_id: str, user_id: str) -> dict[str, Any]:
        task = self._task_store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        if user_id not in (task["posted_by"], task["assigned_to"]):
            raise ServiceError(
                "FORBIDDEN", "Only the task owner or assignee can access these messages", 403, {}
            )
        return task

    def list_messages(self, task_id: str, user_id: str) -> list[dict[str, Any]]:
        """Messages of a task, oldest first."""
        self._require_participant(task_id, user_id)
        return self._store.list_for_task(task_id)

    async def send_message(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Store a message and push it to the task room as ``newMessage``.

        Error precedence:
        1. VALIDATION_ERROR: empty or oversized content, missing task_id
        2. USER_NOT_FOUND
        3. TASK_NOT_FOUND
        4. FORBIDDEN: caller is neither owner nor assignee
        """
        content = data.get("content")
        if not isinstance(content, str) or len(content.strip()) < 1:
            raise ServiceError(
                "VALIDATION_ERROR", "Message content is required", 400, {"field": "content"}
            )
        content = content.strip()
        if len(content) > MESSAGE_MAX_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Message content must not exceed {MESSAGE_MAX_LENGTH} characters",
                400,
                {"field": "content"},
            )

        task_id = data.get("task_id")
        if not isinstance(task_id, str) or len(task_id) < 1:
            raise ServiceError(
                "VALIDATION_ERROR", "Task ID is required", 400, {"field": "task_id"}
            )

        sender = self._user_store.get_user(user_id)
        if sender is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {})
        self._require_participant(task_id, user_id)

        message = {
            "message_id": f"m-{uuid.uuid4()}",
            "task_id": task_id,
            "sender_id": user_id,
            "sender_name": sender["name"],
            "content": content,
            "is_read": False,
            "created_at": now_iso(),
        }
        self._store.insert_message(message)
        await self._hub.emit_to_task(task_id, "newMessage", message)
        self._logger.info(
            "Message sent", extra={"message_id": message["message_id"], "task_id": task_id}
        )
        return message

    def mark_read(self, task_id: str, user_id: str) -> int:
        """Mark messages addressed to the caller as read. The caller's own messages are skipped."""
        self._require_participant(task_id, user_id)
        return self._store.mark_read(task_id, user_id)

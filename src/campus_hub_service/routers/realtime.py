"""WebSocket endpoint for notification and chat fan-out."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.core.state import get_app_state
from campus_hub_service.logging import get_logger
from campus_hub_service.services.connection_hub import task_room, user_room

if TYPE_CHECKING:
    from campus_hub_service.core.state import AppState

router = APIRouter()
logger = get_logger(__name__)


async def _send(websocket: WebSocket, event: str, data: Any) -> None:
    await websocket.send_json({"event": event, "data": data})


async def _send_error(websocket: WebSocket, error: str, message: str) -> None:
    await _send(websocket, "error", {"error": error, "message": message})


def _task_id_from(data: Any) -> str | None:
    if isinstance(data, str) and data:
        return data
    if isinstance(data, dict):
        value = data.get("task_id", data.get("taskId"))
        if isinstance(value, str) and value:
            return value
    return None


class RealtimeSession:
    """Protocol state of one WebSocket connection."""

    def __init__(self, websocket: WebSocket, state: AppState) -> None:
        if state.connection_hub is None or state.token_validator is None:
            msg = "Realtime services not initialized"
            raise RuntimeError(msg)
        self._websocket = websocket
        self._state = state
        self.hub = state.connection_hub
        self._token_validator = state.token_validator
        self.user_id: str | None = None

    async def handle(self, event: object, data: Any) -> None:
        if event == "authenticate":
            await self._authenticate(data)
        elif event == "joinTaskRoom":
            await self._join_task_room(data)
        elif event == "leaveTaskRoom":
            await self._leave_task_room(data)
        elif event == "sendMessage":
            await self._relay_message(data)
        elif event == "markNotificationRead":
            await self._mark_notification_read(data)
        else:
            await _send_error(self._websocket, "UNKNOWN_EVENT", f"Unknown event: {event}")

    async def _authenticate(self, data: Any) -> None:
        token = data.get("token") if isinstance(data, dict) else data
        try:
            user_id = self._token_validator.validate_token(token if isinstance(token, str) else "")
        except ServiceError as exc:
            await _send(self._websocket, "authError", {"message": exc.message})
            return

        if self.user_id is not None and self.user_id != user_id:
            self.hub.leave(self._websocket, user_room(self.user_id))
        self.user_id = user_id
        self.hub.join(self._websocket, user_room(user_id))
        logger.info("Realtime client authenticated", extra={"user_id": user_id})
        await _send(self._websocket, "authenticated", {"user_id": user_id})

    async def _require_user(self) -> str | None:
        if self.user_id is None:
            await _send_error(self._websocket, "UNAUTHORIZED", "Authenticate first")
        return self.user_id

    async def _join_task_room(self, data: Any) -> None:
        user_id = await self._require_user()
        if user_id is None:
            return
        task_id = _task_id_from(data)
        if task_id is None:
            await _send_error(self._websocket, "VALIDATION_ERROR", "Task ID is required")
            return
        task_manager = self._state.task_manager
        if task_manager is None or not task_manager.is_participant(task_id, user_id):
            await _send_error(
                self._websocket, "FORBIDDEN", "Only the task owner or assignee can join"
            )
            return
        self.hub.join(self._websocket, task_room(task_id))
        await _send(self._websocket, "joinedTaskRoom", {"task_id": task_id})

    async def _leave_task_room(self, data: Any) -> None:
        task_id = _task_id_from(data)
        if task_id is not None:
            self.hub.leave(self._websocket, task_room(task_id))

    async def _relay_message(self, data: Any) -> None:
        user_id = await self._require_user()
        if user_id is None:
            return
        task_id = _task_id_from(data)
        if task_id is None or task_room(task_id) not in self.hub.rooms_of(self._websocket):
            await _send_error(self._websocket, "FORBIDDEN", "Join the task room first")
            return
        await self.hub.emit_to_task(task_id, "newMessage", data, exclude=self._websocket)

    async def _mark_notification_read(self, data: Any) -> None:
        user_id = await self._require_user()
        if user_id is None:
            return
        notifier = self._state.notifier
        if not isinstance(data, str) or notifier is None:
            await _send_error(self._websocket, "VALIDATION_ERROR", "Notification ID is required")
            return
        try:
            notification = notifier.mark_read(data, user_id)
        except ServiceError as exc:
            await _send_error(self._websocket, exc.error, exc.message)
            return
        await _send(self._websocket, "notificationRead", notification)


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """
    JSON frames ``{"event": ..., "data": ...}`` in both directions.

    Client events: authenticate, joinTaskRoom, leaveTaskRoom, sendMessage,
    markNotificationRead. Server events: authenticated, authError,
    joinedTaskRoom, newNotification, newMessage, notificationRead, error.
    """
    state = get_app_state()
    await websocket.accept()
    session = RealtimeSession(websocket, state)
    hub = session.hub
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await _send_error(websocket, "INVALID_JSON", "Frame is not valid JSON")
                continue
            if not isinstance(frame, dict):
                await _send_error(websocket, "INVALID_JSON", "Frame must be a JSON object")
                continue
            await session.handle(frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        logger.info("Realtime client disconnected", extra={"user_id": session.user_id})
    finally:
        hub.disconnect(websocket)

"""In-process room registry for WebSocket fan-out."""

from __future__ import annotations

from typing import Any, Protocol

from starlette.websockets import WebSocketDisconnect

from campus_hub_service.logging import get_logger


class RealtimeConnection(Protocol):
    """Anything that can receive a JSON frame."""

    async def send_json(self, data: Any) -> None: ...


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


def task_room(task_id: str) -> str:
    return f"task_{task_id}"


class ConnectionHub:
    """
    Tracks which live connections belong to which rooms.

    Delivery is best-effort: frames go only to connections present at
    publish time, nothing is queued, and a connection whose send fails is
    removed from every room it had joined.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[RealtimeConnection]] = {}
        self._memberships: dict[RealtimeConnection, set[str]] = {}
        self._logger = get_logger(__name__)

    def join(self, connection: RealtimeConnection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(room)

    def leave(self, connection: RealtimeConnection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._rooms[room]
        rooms = self._memberships.get(connection)
        if rooms is not None:
            rooms.discard(room)

    def disconnect(self, connection: RealtimeConnection) -> None:
        """Drop a connection from every room."""
        for room in self._memberships.pop(connection, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self._rooms[room]

    def rooms_of(self, connection: RealtimeConnection) -> set[str]:
        return set(self._memberships.get(connection, set()))

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, set()))

    async def emit(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude: RealtimeConnection | None = None,
    ) -> int:
        """
        Send ``{"event": event, "data": data}`` to every member of ``room``.

        Returns the number of connections the frame was delivered to.
        """
        frame = {"event": event, "data": data}
        delivered = 0
        for connection in list(self._rooms.get(room, set())):
            if connection is exclude:
                continue
            try:
                await connection.send_json(frame)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                self._logger.info(
                    "Dropping connection after failed send",
                    extra={"room": room, "event": event, "error": str(exc)},
                )
                self.disconnect(connection)
                continue
            delivered += 1
        return delivered

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self.emit(user_room(user_id), event, data)

    async def emit_to_task(
        self,
        task_id: str,
        event: str,
        data: Any,
        *,
        exclude: RealtimeConnection | None = None,
    ) -> int:
        return await self.emit(task_room(task_id), event, data, exclude=exclude)

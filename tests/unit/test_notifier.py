"""Unit tests for Notifier."""

from __future__ import annotations

import sqlite3
from typing import Any
from unittest.mock import MagicMock

import pytest

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.services.connection_hub import ConnectionHub, user_room
from campus_hub_service.services.notification_store import NotificationStore
from campus_hub_service.services.notifier import Notifier


class Recorder:
    def __init__(self) -> None:
        self.frames: list[Any] = []

    async def send_json(self, data: Any) -> None:
        self.frames.append(data)


@pytest.fixture
def store(tmp_path):
    notification_store = NotificationStore(db_path=str(tmp_path / "campus-hub.db"))
    yield notification_store
    notification_store.close()


@pytest.mark.unit
async def test_notify_records_and_pushes(store: NotificationStore) -> None:
    hub = ConnectionHub()
    socket = Recorder()
    hub.join(socket, user_room("u-1"))
    notifier = Notifier(store=store, hub=hub, list_limit=50)

    notification = await notifier.notify(
        "u-1", "Bob applied", "application", related_task="t-1", related_user="u-2"
    )
    assert notification is not None
    assert notification["is_read"] is False
    assert socket.frames == [{"event": "newNotification", "data": notification}]
    assert notifier.list_notifications("u-1") == [notification]
    assert notifier.unread_count("u-1") == 1


@pytest.mark.unit
async def test_unknown_type_becomes_general(store: NotificationStore) -> None:
    notifier = Notifier(store=store, hub=ConnectionHub(), list_limit=50)
    notification = await notifier.notify("u-1", "Hello", "marketing")
    assert notification is not None
    assert notification["type"] == "general"


@pytest.mark.unit
async def test_notify_never_raises_on_storage_failure() -> None:
    broken_store = MagicMock(spec=NotificationStore)
    broken_store.insert_notification.side_effect = sqlite3.OperationalError("disk I/O error")
    hub = ConnectionHub()
    socket = Recorder()
    hub.join(socket, user_room("u-1"))
    notifier = Notifier(store=broken_store, hub=hub, list_limit=50)

    assert await notifier.notify("u-1", "Hello", "payment") is None
    assert socket.frames == []


@pytest.mark.unit
async def test_listing_is_newest_first_and_limited(store: NotificationStore) -> None:
    notifier = Notifier(store=store, hub=ConnectionHub(), list_limit=3)
    for index in range(5):
        await notifier.notify("u-1", f"message {index}", "general")

    messages = [n["message"] for n in notifier.list_notifications("u-1")]
    assert messages == ["message 4", "message 3", "message 2"]


@pytest.mark.unit
async def test_read_and_delete_are_owner_scoped(store: NotificationStore) -> None:
    notifier = Notifier(store=store, hub=ConnectionHub(), list_limit=50)
    mine = await notifier.notify("u-1", "mine", "general")
    await notifier.notify("u-1", "also mine", "general")
    assert mine is not None

    with pytest.raises(ServiceError) as exc_info:
        notifier.mark_read(mine["notification_id"], "u-2")
    assert exc_info.value.error == "NOTIFICATION_NOT_FOUND"
    with pytest.raises(ServiceError):
        notifier.delete(mine["notification_id"], "u-2")

    assert notifier.mark_read(mine["notification_id"], "u-1")["is_read"] is True
    assert notifier.mark_all_read("u-1") == 1
    assert notifier.unread_count("u-1") == 0

    notifier.delete(mine["notification_id"], "u-1")
    assert [n["message"] for n in notifier.list_notifications("u-1")] == ["also mine"]

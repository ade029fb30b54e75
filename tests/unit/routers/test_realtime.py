"""WebSocket fan-out tests for notifications and task chat."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from fastapi.testclient import TestClient

from campus_hub_service.app import create_app
from campus_hub_service.config import clear_settings_cache
from campus_hub_service.core.state import get_app_state, reset_app_state
from tests.helpers import registration_payload, write_config

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from starlette.testclient import WebSocketTestSession


@pytest.fixture
def ws_client(tmp_path: Path) -> Iterator[TestClient]:
    """Synchronous client whose context runs the app lifespan."""
    config_path = write_config(tmp_path)
    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)
    clear_settings_cache()
    reset_app_state()

    with TestClient(create_app()) as client:
        yield client

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


def _register(client: TestClient, name: str) -> dict[str, Any]:
    response = client.post("/api/auth/register", json=registration_payload(name))
    assert response.status_code == 201
    body = response.json()
    return {"token": body["token"], "user_id": body["user"]["user_id"]}


def _headers(user: dict[str, Any]) -> dict[str, str]:
    return {"Authorization": f"Bearer {user['token']}"}


def _assigned_task(client: TestClient, owner: dict[str, Any], assignee: dict[str, Any]) -> str:
    response = client.post(
        "/api/tasks",
        json={"title": "Lab report", "description": "Format the lab report", "budget": 400},
        headers=_headers(owner),
    )
    task_id: str = response.json()["task_id"]
    client.post(f"/api/tasks/{task_id}/apply", json={}, headers=_headers(assignee))
    client.post(
        f"/api/tasks/{task_id}/assign",
        json={"applicant_id": assignee["user_id"]},
        headers=_headers(owner),
    )
    return task_id


def _authenticate(ws: WebSocketTestSession, user: dict[str, Any]) -> None:
    ws.send_json({"event": "authenticate", "data": user["token"]})
    frame = ws.receive_json()
    assert frame == {"event": "authenticated", "data": {"user_id": user["user_id"]}}


def _join(ws: WebSocketTestSession, task_id: str) -> None:
    ws.send_json({"event": "joinTaskRoom", "data": task_id})
    assert ws.receive_json() == {"event": "joinedTaskRoom", "data": {"task_id": task_id}}


@pytest.mark.unit
def test_authenticate_with_invalid_token(ws_client: TestClient) -> None:
    """A bad token gets authError and the connection stays usable."""
    with ws_client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "authenticate", "data": {"token": "garbage"}})
        frame = ws.receive_json()
        assert frame["event"] == "authError"

        ws.send_json({"event": "joinTaskRoom", "data": "t-1"})
        frame = ws.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["error"] == "UNAUTHORIZED"


@pytest.mark.unit
def test_notification_pushed_to_user_room(ws_client: TestClient) -> None:
    """State changes push newNotification to the recipient's room."""
    alice = _register(ws_client, "Alice")
    bob = _register(ws_client, "Bob")
    task_id = _assigned_task(ws_client, alice, bob)

    with ws_client.websocket_connect("/ws") as ws:
        _authenticate(ws, alice)
        response = ws_client.patch(f"/api/tasks/{task_id}/complete", headers=_headers(bob))
        assert response.status_code == 200

        frame = ws.receive_json()
        assert frame["event"] == "newNotification"
        assert frame["data"]["type"] == "completion"
        assert frame["data"]["user_id"] == alice["user_id"]
        assert frame["data"]["related_task"] == task_id

        ws.send_json(
            {"event": "markNotificationRead", "data": frame["data"]["notification_id"]}
        )
        ack = ws.receive_json()
        assert ack["event"] == "notificationRead"
        assert ack["data"]["is_read"] is True


@pytest.mark.unit
def test_chat_message_fan_out(ws_client: TestClient) -> None:
    """Messages posted over HTTP reach every socket in the task room."""
    alice = _register(ws_client, "Alice")
    bob = _register(ws_client, "Bob")
    task_id = _assigned_task(ws_client, alice, bob)

    with ws_client.websocket_connect("/ws") as ws_alice, ws_client.websocket_connect(
        "/ws"
    ) as ws_bob:
        _authenticate(ws_alice, alice)
        _authenticate(ws_bob, bob)
        _join(ws_alice, task_id)
        _join(ws_bob, task_id)

        response = ws_client.post(
            "/api/messages",
            json={"task_id": task_id, "content": "Draft is ready"},
            headers=_headers(bob),
        )
        assert response.status_code == 201

        for ws in (ws_alice, ws_bob):
            frame = ws.receive_json()
            assert frame["event"] == "newMessage"
            assert frame["data"]["content"] == "Draft is ready"


@pytest.mark.unit
def test_socket_relay_excludes_sender(ws_client: TestClient) -> None:
    """sendMessage relays to the other room members only."""
    alice = _register(ws_client, "Alice")
    bob = _register(ws_client, "Bob")
    task_id = _assigned_task(ws_client, alice, bob)

    with ws_client.websocket_connect("/ws") as ws_alice, ws_client.websocket_connect(
        "/ws"
    ) as ws_bob:
        _authenticate(ws_alice, alice)
        _authenticate(ws_bob, bob)
        _join(ws_alice, task_id)
        _join(ws_bob, task_id)

        ws_alice.send_json(
            {"event": "sendMessage", "data": {"task_id": task_id, "content": "typing..."}}
        )
        frame = ws_bob.receive_json()
        assert frame == {
            "event": "newMessage",
            "data": {"task_id": task_id, "content": "typing..."},
        }

        # The next frame Alice sees is the reply to her own request, not her relay.
        ws_alice.send_json({"event": "ping"})
        frame = ws_alice.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["error"] == "UNKNOWN_EVENT"


@pytest.mark.unit
def test_only_participants_join_task_room(ws_client: TestClient) -> None:
    """Applicants and strangers cannot join a task room."""
    alice = _register(ws_client, "Alice")
    bob = _register(ws_client, "Bob")
    carol = _register(ws_client, "Carol")
    task_id = _assigned_task(ws_client, alice, bob)

    with ws_client.websocket_connect("/ws") as ws:
        _authenticate(ws, carol)
        ws.send_json({"event": "joinTaskRoom", "data": {"task_id": task_id}})
        frame = ws.receive_json()
        assert frame["event"] == "error"
        assert frame["data"]["error"] == "FORBIDDEN"

        ws.send_json({"event": "sendMessage", "data": {"task_id": task_id, "content": "hi"}})
        frame = ws.receive_json()
        assert frame["data"]["error"] == "FORBIDDEN"


@pytest.mark.unit
def test_invalid_frames(ws_client: TestClient) -> None:
    """Non-JSON and non-object frames are answered with INVALID_JSON."""
    with ws_client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["data"]["error"] == "INVALID_JSON"
        ws.send_text("[1, 2, 3]")
        assert ws.receive_json()["data"]["error"] == "INVALID_JSON"


@pytest.mark.unit
def test_disconnect_leaves_all_rooms(ws_client: TestClient) -> None:
    """Closing a socket removes it from every room."""
    alice = _register(ws_client, "Alice")
    bob = _register(ws_client, "Bob")
    task_id = _assigned_task(ws_client, alice, bob)
    hub = get_app_state().connection_hub
    assert hub is not None

    with ws_client.websocket_connect("/ws") as ws:
        _authenticate(ws, alice)
        _join(ws, task_id)
        assert hub.room_size(f"user_{alice['user_id']}") == 1
        assert hub.room_size(f"task_{task_id}") == 1

    assert hub.room_size(f"user_{alice['user_id']}") == 0
    assert hub.room_size(f"task_{task_id}") == 0

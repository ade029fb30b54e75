"""Router test fixtures with a mocked M-Pesa gateway."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from campus_hub_service.app import create_app
from campus_hub_service.clients.mpesa_client import MpesaClient
from campus_hub_service.config import clear_settings_cache
from campus_hub_service.core.lifespan import lifespan
from campus_hub_service.core.state import get_app_state, reset_app_state
from tests.helpers import (
    confirmation_payload,
    gateway_ack,
    registration_payload,
    write_config,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and a mocked M-Pesa gateway."""
    config_path = write_config(tmp_path)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)
    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()
        mpesa = AsyncMock(spec=MpesaClient)
        mpesa.register_urls = AsyncMock(return_value=gateway_ack("REG"))
        mpesa.simulate_c2b = AsyncMock(side_effect=lambda **_kwargs: gateway_ack("C2B"))
        mpesa.b2c_payment_request = AsyncMock(side_effect=lambda **_kwargs: gateway_ack("B2C"))
        mpesa.account_balance = AsyncMock(return_value=gateway_ack("BAL"))
        state.mpesa_client = mpesa
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def mpesa(app: Any) -> AsyncMock:  # noqa: ARG001
    """The mocked gateway client installed by the ``app`` fixture."""
    mock: AsyncMock = get_app_state().mpesa_client  # type: ignore[assignment]
    return mock


@pytest.fixture
async def poster(client: AsyncClient) -> dict[str, Any]:
    """A registered task owner."""
    return await register_user(client, "Alice Poster")


@pytest.fixture
async def worker(client: AsyncClient) -> dict[str, Any]:
    """A registered student who applies for work."""
    return await register_user(client, "Bob Worker")


@pytest.fixture
async def outsider(client: AsyncClient) -> dict[str, Any]:
    """A registered user unrelated to the tasks under test."""
    return await register_user(client, "Carol Outsider")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def auth(user: dict[str, Any]) -> dict[str, str]:
    """Authorization header for a registered user."""
    return {"Authorization": f"Bearer {user['token']}"}


async def register_user(client: AsyncClient, name: str) -> dict[str, Any]:
    """Register a user and return ``{"token", "user_id", "phone_number", ...}``."""
    payload = registration_payload(name)
    response = await client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    body = response.json()
    return {
        "token": body["token"],
        "user_id": body["user"]["user_id"],
        "phone_number": body["user"]["phone_number"],
        "email": payload["email"],
        "password": payload["password"],
    }


async def create_task(
    client: AsyncClient,
    owner: dict[str, Any],
    *,
    title: str = "Proofread my thesis chapter",
    budget: float = 500,
    category: str = "Academic",
) -> Any:
    """Create a task via POST /api/tasks and return the response."""
    return await client.post(
        "/api/tasks",
        json={
            "title": title,
            "description": "Check grammar and citations in chapter three.",
            "budget": budget,
            "category": category,
            "deadline": "2030-01-31T17:00:00Z",
        },
        headers=auth(owner),
    )


async def apply(client: AsyncClient, user: dict[str, Any], task_id: str) -> Any:
    return await client.post(
        f"/api/tasks/{task_id}/apply",
        json={"message": "I can do this by Friday."},
        headers=auth(user),
    )


async def assign(
    client: AsyncClient, owner: dict[str, Any], task_id: str, applicant_id: str
) -> Any:
    return await client.post(
        f"/api/tasks/{task_id}/assign",
        json={"applicant_id": applicant_id},
        headers=auth(owner),
    )


async def complete(client: AsyncClient, user: dict[str, Any], task_id: str) -> Any:
    return await client.patch(f"/api/tasks/{task_id}/complete", headers=auth(user))


async def pay(client: AsyncClient, user: dict[str, Any], task_id: str) -> Any:
    return await client.patch(f"/api/tasks/{task_id}/pay", headers=auth(user))


async def notifications_for(client: AsyncClient, user: dict[str, Any]) -> list[dict[str, Any]]:
    response = await client.get("/api/notifications", headers=auth(user))
    assert response.status_code == 200
    notifications: list[dict[str, Any]] = response.json()["notifications"]
    return notifications


# ---------------------------------------------------------------------------
# Lifecycle setup helpers
# ---------------------------------------------------------------------------
async def setup_open_task(
    client: AsyncClient, owner: dict[str, Any], *, budget: float = 500
) -> str:
    """Create an open task and return its id."""
    response = await create_task(client, owner, budget=budget)
    assert response.status_code == 201, response.text
    task_id: str = response.json()["task_id"]
    return task_id


async def setup_assigned_task(
    client: AsyncClient,
    owner: dict[str, Any],
    assignee: dict[str, Any],
    *,
    budget: float = 500,
) -> str:
    """Create a task, have ``assignee`` apply, and assign it. Returns the task id."""
    task_id = await setup_open_task(client, owner, budget=budget)
    response = await apply(client, assignee, task_id)
    assert response.status_code == 200, response.text
    response = await assign(client, owner, task_id, assignee["user_id"])
    assert response.status_code == 200, response.text
    return task_id


async def setup_completed_task(
    client: AsyncClient,
    owner: dict[str, Any],
    assignee: dict[str, Any],
    *,
    budget: float = 500,
) -> str:
    """Advance a task to ``completed``. Returns the task id."""
    task_id = await setup_assigned_task(client, owner, assignee, budget=budget)
    response = await complete(client, assignee, task_id)
    assert response.status_code == 200, response.text
    return task_id


async def fund_task(
    client: AsyncClient,
    owner: dict[str, Any],
    task_id: str,
    *,
    amount: float = 500,
    trans_id: str = "RKTQDM7W6S",
) -> str:
    """Initiate a collection and deliver its confirmation. Returns the transaction id."""
    response = await client.post(
        "/api/mpesa/simulate-c2b",
        json={"task_id": task_id, "phone_number": owner["phone_number"], "amount": amount},
        headers=auth(owner),
    )
    assert response.status_code == 200, response.text
    transaction_id: str = response.json()["transaction_id"]

    response = await client.post(
        "/api/mpesa/confirmation",
        json=confirmation_payload(task_id, trans_id=trans_id, amount=f"{amount:.2f}"),
    )
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Success"}
    return transaction_id


async def request_payout(client: AsyncClient, owner: dict[str, Any], task_id: str) -> Any:
    return await client.post(
        "/api/mpesa/b2c-payment",
        json={"task_id": task_id, "phone_number": "0712345678"},
        headers=auth(owner),
    )

"""Task chat endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from campus_hub_service.core.state import get_app_state
from campus_hub_service.routers.validation import authenticate, read_json_body

if TYPE_CHECKING:
    from campus_hub_service.services.message_manager import MessageManager

router = APIRouter()


def _get_message_manager() -> MessageManager:
    state = get_app_state()
    if state.message_manager is None:
        msg = "MessageManager not initialized"
        raise RuntimeError(msg)
    return state.message_manager


@router.post("/messages", status_code=201)
async def send_message(request: Request) -> JSONResponse:
    """Send a message to the other party of a task."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    message = await _get_message_manager().send_message(user_id, data)
    return JSONResponse(status_code=201, content=message)


@router.get("/messages/{task_id}")
async def list_messages(task_id: str, request: Request) -> dict[str, Any]:
    """Messages of a task, oldest first."""
    user_id = authenticate(request)
    return {"messages": _get_message_manager().list_messages(task_id, user_id)}


@router.put("/messages/{task_id}/read")
async def mark_messages_read(task_id: str, request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    return {"updated": _get_message_manager().mark_read(task_id, user_id)}

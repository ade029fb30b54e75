"""Notification endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from campus_hub_service.core.state import get_app_state
from campus_hub_service.routers.validation import authenticate

if TYPE_CHECKING:
    from campus_hub_service.services.notifier import Notifier

router = APIRouter()


def _get_notifier() -> Notifier:
    state = get_app_state()
    if state.notifier is None:
        msg = "Notifier not initialized"
        raise RuntimeError(msg)
    return state.notifier


@router.get("/notifications")
async def list_notifications(request: Request) -> dict[str, Any]:
    """The caller's latest notifications, newest first."""
    user_id = authenticate(request)
    return {"notifications": _get_notifier().list_notifications(user_id)}


@router.get("/notifications/unread-count")
async def unread_count(request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    return {"count": _get_notifier().unread_count(user_id)}


# MUST be before PATCH /notifications/{notification_id}/read
@router.patch("/notifications/mark-all-read")
async def mark_all_read(request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    return {"updated": _get_notifier().mark_all_read(user_id)}


@router.patch("/notifications/{notification_id}/read")
async def mark_read(notification_id: str, request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    return _get_notifier().mark_read(notification_id, user_id)


@router.delete("/notifications/{notification_id}")
async def delete_notification(notification_id: str, request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    _get_notifier().delete(notification_id, user_id)
    return {"notification_id": notification_id, "deleted": True}

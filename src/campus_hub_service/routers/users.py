"""User profile endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from campus_hub_service.core.state import get_app_state
from campus_hub_service.routers.validation import authenticate

router = APIRouter()


@router.get("/users/profile")
async def get_profile(request: Request) -> dict[str, Any]:
    """Return the caller's profile."""
    user_id = authenticate(request)

    state = get_app_state()
    if state.user_manager is None:
        msg = "UserManager not initialized"
        raise RuntimeError(msg)

    return state.user_manager.get_profile(user_id)

"""Account registration and login endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from campus_hub_service.core.state import get_app_state
from campus_hub_service.routers.validation import read_json_body

router = APIRouter()


@router.post("/auth/register", status_code=201)
async def register(request: Request) -> JSONResponse:
    """Create an account and return a bearer token."""
    data = await read_json_body(request)

    state = get_app_state()
    if state.user_manager is None:
        msg = "UserManager not initialized"
        raise RuntimeError(msg)

    result = state.user_manager.register(data)
    return JSONResponse(status_code=201, content=result)


@router.post("/auth/login")
async def login(request: Request) -> JSONResponse:
    """Exchange email and password for a bearer token."""
    data = await read_json_body(request)

    state = get_app_state()
    if state.user_manager is None:
        msg = "UserManager not initialized"
        raise RuntimeError(msg)

    result = state.user_manager.login(data)
    return JSONResponse(status_code=200, content=result)

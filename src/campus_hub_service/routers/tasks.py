"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from campus_hub_service.core.state import get_app_state
from campus_hub_service.routers.validation import authenticate, parse_int_query, read_json_body
from campus_hub_service.services.task_manager import parse_status_filter

if TYPE_CHECKING:
    from campus_hub_service.services.task_manager import TaskManager

router = APIRouter()


def _get_task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


# ---------------------------------------------------------------------------
# Collection routes (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a new task."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    result = _get_task_manager().create_task(user_id, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List all tasks, newest first."""
    authenticate(request)
    statuses = parse_status_filter(request.query_params.get("status"))
    limit = parse_int_query(request, "limit", default=None, minimum=1)
    offset = parse_int_query(request, "offset", default=None, minimum=0)
    tasks = _get_task_manager().list_tasks(statuses=statuses, limit=limit, offset=offset)
    return {"tasks": tasks}


@router.get("/tasks/dashboard")
async def dashboard(request: Request) -> dict[str, Any]:
    """The caller's tasks for one role, optionally filtered by status."""
    user_id = authenticate(request)
    role = request.query_params.get("role") or "participant"
    statuses = parse_status_filter(request.query_params.get("status"))
    tasks = _get_task_manager().dashboard(user_id, role, statuses)
    return {"role": role, "tasks": tasks}


# Legacy dashboard lists, served from the same view.


@router.get("/tasks/my-tasks")
async def my_tasks(request: Request) -> dict[str, Any]:
    """Tasks posted by the caller."""
    user_id = authenticate(request)
    return {"tasks": _get_task_manager().dashboard(user_id, "poster", None)}


@router.get("/tasks/applied")
async def applied_tasks(request: Request) -> dict[str, Any]:
    """Tasks the caller applied to and is not assigned to."""
    user_id = authenticate(request)
    return {"tasks": _get_task_manager().dashboard(user_id, "applicant", None)}


@router.get("/tasks/assigned")
async def assigned_tasks(request: Request) -> dict[str, Any]:
    """In-progress tasks assigned to the caller."""
    user_id = authenticate(request)
    return {"tasks": _get_task_manager().dashboard(user_id, "worker", ("in-progress",))}


@router.get("/tasks/completed")
async def completed_tasks(request: Request) -> dict[str, Any]:
    """Completed or paid tasks the caller posted or worked on."""
    user_id = authenticate(request)
    return {
        "tasks": _get_task_manager().dashboard(user_id, "participant", ("completed", "paid"))
    }


# ---------------------------------------------------------------------------
# Single-task routes
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Get one task with its applicants."""
    authenticate(request)
    return _get_task_manager().get_task(task_id)


@router.post("/tasks/{task_id}/apply")
async def apply_to_task(task_id: str, request: Request) -> dict[str, Any]:
    """Apply to an open task."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    return await _get_task_manager().apply(task_id, user_id, data)


@router.post("/tasks/{task_id}/assign")
async def assign_task(task_id: str, request: Request) -> dict[str, Any]:
    """Assign the task to one of its applicants."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    return await _get_task_manager().assign(task_id, user_id, data)


@router.patch("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Mark the task completed (assignee only)."""
    user_id = authenticate(request)
    return await _get_task_manager().complete(task_id, user_id)


@router.patch("/tasks/{task_id}/pay")
async def pay_task(task_id: str, request: Request) -> dict[str, Any]:
    """Settle a completed task (owner only)."""
    user_id = authenticate(request)
    return await _get_task_manager().pay(task_id, user_id)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Delete an unpaid task (owner only)."""
    user_id = authenticate(request)
    _get_task_manager().delete_task(task_id, user_id)
    return {"task_id": task_id, "deleted": True}

"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from campus_hub_service.core.state import get_app_state
from campus_hub_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    total_tasks = 0
    tasks_by_status: dict[str, int] = {}
    if state.task_store is not None:
        total_tasks = state.task_store.count_tasks()
        tasks_by_status = state.task_store.count_tasks_by_status()
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
    )

"""API routers."""

from campus_hub_service.routers import (
    auth,
    health,
    messages,
    mpesa,
    notifications,
    realtime,
    tasks,
    users,
)

__all__ = ["auth", "health", "messages", "mpesa", "notifications", "realtime", "tasks", "users"]

"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from campus_hub_service.config import get_settings
from campus_hub_service.core.exceptions import register_exception_handlers
from campus_hub_service.core.lifespan import lifespan
from campus_hub_service.core.middleware import RequestValidationMiddleware
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

API_PREFIX = "/api"


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(auth.router, prefix=API_PREFIX, tags=["Auth"])
    app.include_router(users.router, prefix=API_PREFIX, tags=["Users"])
    app.include_router(tasks.router, prefix=API_PREFIX, tags=["Tasks"])
    app.include_router(notifications.router, prefix=API_PREFIX, tags=["Notifications"])
    app.include_router(messages.router, prefix=API_PREFIX, tags=["Messages"])
    app.include_router(mpesa.router, prefix=API_PREFIX, tags=["M-Pesa"])
    app.include_router(realtime.router, tags=["Realtime"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app

"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from campus_hub_service.clients.mpesa_client import MpesaClient
from campus_hub_service.config import get_settings
from campus_hub_service.core.state import init_app_state
from campus_hub_service.logging import get_logger, setup_logging
from campus_hub_service.services.connection_hub import ConnectionHub
from campus_hub_service.services.message_manager import MessageManager
from campus_hub_service.services.message_store import MessageStore
from campus_hub_service.services.notification_store import NotificationStore
from campus_hub_service.services.notifier import Notifier
from campus_hub_service.services.payment_manager import PaymentManager
from campus_hub_service.services.task_manager import TaskManager
from campus_hub_service.services.task_store import TaskStore
from campus_hub_service.services.token_validator import TokenValidator
from campus_hub_service.services.transaction_store import TransactionStore
from campus_hub_service.services.user_manager import UserManager
from campus_hub_service.services.user_store import UserStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path
    task_store = TaskStore(db_path=db_path)
    transaction_store = TransactionStore(db_path=db_path)
    notification_store = NotificationStore(db_path=db_path)
    message_store = MessageStore(db_path=db_path)
    user_store = UserStore(db_path=db_path)
    state.task_store = task_store

    # Room registry for WebSocket fan-out
    hub = ConnectionHub()
    state.connection_hub = hub

    notifier = Notifier(
        store=notification_store,
        hub=hub,
        list_limit=settings.notifications.list_limit,
    )
    state.notifier = notifier

    token_validator = TokenValidator(
        secret=settings.auth.jwt_secret,
        ttl_seconds=settings.auth.token_ttl_seconds,
    )
    state.token_validator = token_validator
    state.user_manager = UserManager(store=user_store, token_validator=token_validator)

    mpesa_client = MpesaClient(
        base_url=settings.mpesa.base_url,
        consumer_key=settings.mpesa.consumer_key,
        consumer_secret=settings.mpesa.consumer_secret,
        shortcode=settings.mpesa.shortcode,
        initiator_name=settings.mpesa.initiator_name,
        security_credential=settings.mpesa.security_credential,
        callback_base_url=settings.mpesa.callback_base_url,
        timeout_seconds=settings.mpesa.timeout_seconds,
        token_safety_margin_seconds=settings.mpesa.token_safety_margin_seconds,
    )

    state.task_manager = TaskManager(
        store=task_store,
        user_store=user_store,
        transaction_store=transaction_store,
        message_store=message_store,
        notifier=notifier,
    )
    state.payment_manager = PaymentManager(
        mpesa_client=mpesa_client,
        task_store=task_store,
        transaction_store=transaction_store,
        notifier=notifier,
    )
    state.mpesa_client = mpesa_client
    state.message_manager = MessageManager(
        store=message_store,
        task_store=task_store,
        user_store=user_store,
        hub=hub,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "mpesa_base_url": settings.mpesa.base_url,
            "callback_base_url": settings.mpesa.callback_base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    for store in (task_store, transaction_store, notification_store, message_store, user_store):
        store.close()

    await mpesa_client.close()

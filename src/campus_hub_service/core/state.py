"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from campus_hub_service.clients.mpesa_client import MpesaClient
    from campus_hub_service.services.connection_hub import ConnectionHub
    from campus_hub_service.services.message_manager import MessageManager
    from campus_hub_service.services.notifier import Notifier
    from campus_hub_service.services.payment_manager import PaymentManager
    from campus_hub_service.services.task_manager import TaskManager
    from campus_hub_service.services.task_store import TaskStore
    from campus_hub_service.services.token_validator import TokenValidator
    from campus_hub_service.services.user_manager import UserManager


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    task_store: TaskStore | None = None
    task_manager: TaskManager | None = None
    payment_manager: PaymentManager | None = None
    message_manager: MessageManager | None = None
    user_manager: UserManager | None = None
    notifier: Notifier | None = None
    connection_hub: ConnectionHub | None = None
    token_validator: TokenValidator | None = None
    mpesa_client: MpesaClient | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the PaymentManager gateway client in sync with the AppState field."""
        super().__setattr__(name, value)

        payment_manager = self.__dict__.get("payment_manager")
        if payment_manager is None:
            return

        if name == "mpesa_client" and value is not None:
            payment_manager.set_mpesa_client(value)
        elif name == "payment_manager" and value is not None:
            mpesa_client = self.__dict__.get("mpesa_client")
            if mpesa_client is not None:
                value.set_mpesa_client(mpesa_client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None

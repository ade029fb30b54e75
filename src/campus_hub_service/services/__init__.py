"""Service layer components."""

from campus_hub_service.services.connection_hub import ConnectionHub
from campus_hub_service.services.message_manager import MessageManager
from campus_hub_service.services.notifier import Notifier
from campus_hub_service.services.payment_manager import PaymentManager
from campus_hub_service.services.task_manager import TaskManager
from campus_hub_service.services.token_validator import TokenValidator
from campus_hub_service.services.user_manager import UserManager

__all__ = [
    "ConnectionHub",
    "MessageManager",
    "Notifier",
    "PaymentManager",
    "TaskManager",
    "TokenValidator",
    "UserManager",
]

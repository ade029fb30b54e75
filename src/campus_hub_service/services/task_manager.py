"""Task lifecycle management: all task business logic lives here."""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger
from campus_hub_service.services.payment_manager import new_transaction, split_commission
from campus_hub_service.services.task_store import DuplicateApplicantError, now_iso
from campus_hub_service.services.transaction_store import DuplicatePayoutError

if TYPE_CHECKING:
    from campus_hub_service.services.message_store import MessageStore
    from campus_hub_service.services.notifier import Notifier
    from campus_hub_service.services.task_store import TaskStore
    from campus_hub_service.services.transaction_store import TransactionStore
    from campus_hub_service.services.user_store import UserStore

TASK_STATUSES = frozenset({"open", "in-progress", "completed", "paid", "cancelled"})
TASK_CATEGORIES = frozenset({"Academic", "Technical", "Creative", "Research", "Other"})
DASHBOARD_ROLES = frozenset({"poster", "applicant", "worker", "participant"})

_ACTIVE_PAYOUT_STATUSES = ("pending", "completed")
_TITLE_MAX_LENGTH = 100
_DESCRIPTION_MAX_LENGTH = 1000
_APPLICATION_MESSAGE_MAX_LENGTH = 500


def _is_positive_number(value: object) -> bool:
    """Check if value is a positive, finite int or float (not bool)."""
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


def _validate_text(data: dict[str, Any], field_name: str, max_length: int) -> str:
    value = data.get(field_name)
    if not isinstance(value, str) or len(value.strip()) < 1:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Field '{field_name}' is required and must be a non-empty string",
            400,
            {"field": field_name},
        )
    value = value.strip()
    if len(value) > max_length:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Field '{field_name}' must not exceed {max_length} characters",
            400,
            {"field": field_name},
        )
    return value


def _validate_deadline(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "VALIDATION_ERROR", "deadline must be an ISO 8601 string", 400, {"field": "deadline"}
        )
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ServiceError(
            "VALIDATION_ERROR", "deadline must be an ISO 8601 string", 400, {"field": "deadline"}
        ) from exc
    return value


def parse_status_filter(raw: str | None) -> tuple[str, ...] | None:
    """Parse a comma-separated status filter, rejecting unknown statuses."""
    if raw is None or raw == "":
        return None
    statuses = tuple(part.strip() for part in raw.split(",") if part.strip())
    unknown = [status for status in statuses if status not in TASK_STATUSES]
    if unknown:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"Unknown task status: {unknown[0]}",
            400,
            {"allowed": sorted(TASK_STATUSES)},
        )
    return statuses or None


class TaskManager:
    """
    Manages the task lifecycle: creation, applications, assignment,
    completion, settlement and deletion.

    Every transition is a compare-and-swap on the stored status, so two
    racing requests cannot both move the same task. Notifications are sent
    after the transition and never undo it.
    """

    def __init__(
        self,
        store: TaskStore,
        user_store: UserStore,
        transaction_store: TransactionStore,
        message_store: MessageStore,
        notifier: Notifier,
    ) -> None:
        self._store = store
        self._user_store = user_store
        self._transaction_store = transaction_store
        self._message_store = message_store
        self._notifier = notifier
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        return task

    def _reload_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} disappeared during update"
            raise RuntimeError(msg)
        return task

    def _user_name(self, user_id: str) -> str:
        user = self._user_store.get_user(user_id)
        return str(user["name"]) if user is not None else "Someone"

    def _lost_race(self, task_id: str, action: str) -> ServiceError:
        current = self._store.get_task(task_id)
        current_status = current["status"] if current is not None else None
        self._logger.info(
            "Task transition lost to a concurrent update",
            extra={"task_id": task_id, "action": action, "status": current_status},
        )
        return ServiceError(
            "INVALID_STATUS",
            f"Task changed while trying to {action}",
            409,
            {"status": current_status},
        )

    # ------------------------------------------------------------------
    # Public methods, called by routers
    # ------------------------------------------------------------------

    def create_task(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create an open task owned by ``user_id``.

        Raises:
            ServiceError: VALIDATION_ERROR
        """
        title = _validate_text(data, "title", _TITLE_MAX_LENGTH)
        description = _validate_text(data, "description", _DESCRIPTION_MAX_LENGTH)

        budget = data.get("budget")
        if not _is_positive_number(budget):
            raise ServiceError(
                "VALIDATION_ERROR", "budget must be a positive number", 400, {"field": "budget"}
            )

        category = data.get("category", "Other")
        if category is None:
            category = "Other"
        if category not in TASK_CATEGORIES:
            raise ServiceError(
                "VALIDATION_ERROR",
                "category is not a known category",
                400,
                {"field": "category", "allowed": sorted(TASK_CATEGORIES)},
            )

        deadline = _validate_deadline(data.get("deadline"))

        created_at = now_iso()
        task_id = f"t-{uuid.uuid4()}"
        self._store.insert_task(
            {
                "task_id": task_id,
                "title": title,
                "description": description,
                "budget": budget,
                "category": category,
                "status": "open",
                "payment_status": "unpaid",
                "deadline": deadline,
                "posted_by": user_id,
                "assigned_to": None,
                "completed_at": None,
                "paid_at": None,
                "funded_at": None,
                "created_at": created_at,
                "updated_at": created_at,
            }
        )
        self._logger.info("Task created", extra={"task_id": task_id, "posted_by": user_id})
        return self._reload_task(task_id)

    def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        return self._load_task(task_id)

    def list_tasks(
        self,
        statuses: tuple[str, ...] | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List every task, newest first."""
        return self._store.list_tasks(statuses=statuses, limit=limit, offset=offset)

    def dashboard(
        self,
        user_id: str,
        role: str,
        statuses: tuple[str, ...] | None,
    ) -> list[dict[str, Any]]:
        """
        One server-computed view of a user's tasks keyed by role and status.

        - poster: tasks the user posted
        - applicant: tasks the user applied to but is not assigned to
        - worker: tasks assigned to the user
        - participant: tasks the user posted or is assigned to
        """
        if role not in DASHBOARD_ROLES:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Unknown dashboard role: {role}",
                400,
                {"allowed": sorted(DASHBOARD_ROLES)},
            )

        if role == "poster":
            return self._store.list_tasks(posted_by=user_id, statuses=statuses)
        if role == "applicant":
            return self._store.list_tasks(
                applicant_id=user_id, exclude_assigned_to=user_id, statuses=statuses
            )
        if role == "worker":
            return self._store.list_tasks(assigned_to=user_id, statuses=statuses)
        return self._store.list_tasks(participant_id=user_id, statuses=statuses)

    async def apply(self, task_id: str, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Apply to an open task.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: applying to one's own task
        3. ALREADY_APPLIED
        4. INVALID_STATUS: task is not open
        """
        message = data.get("message")
        if message is not None:
            if not isinstance(message, str):
                raise ServiceError(
                    "VALIDATION_ERROR", "message must be a string", 400, {"field": "message"}
                )
            message = message.strip()[:_APPLICATION_MESSAGE_MAX_LENGTH] or None

        task = self._load_task(task_id)
        if task["posted_by"] == user_id:
            raise ServiceError("FORBIDDEN", "You cannot apply to your own task", 403, {})
        if any(applicant["user_id"] == user_id for applicant in task["applicants"]):
            raise ServiceError("ALREADY_APPLIED", "You already applied to this task", 409, {})
        if task["status"] != "open":
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot apply to a task in '{task['status']}' status, must be 'open'",
                409,
                {"status": task["status"]},
            )

        try:
            applied = self._store.insert_applicant(
                task_id, user_id, message, now_iso(), expected_status="open"
            )
        except DuplicateApplicantError as exc:
            raise ServiceError(
                "ALREADY_APPLIED", "You already applied to this task", 409, {}
            ) from exc
        if not applied:
            raise self._lost_race(task_id, "apply")

        await self._notifier.notify(
            str(task["posted_by"]),
            f'{self._user_name(user_id)} applied to your task "{task["title"]}"',
            "application",
            related_task=task_id,
            related_user=user_id,
        )
        return self._reload_task(task_id)

    async def assign(self, task_id: str, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Assign the task to one of its applicants. Reassignment replaces the worker.

        Error precedence:
        1. VALIDATION_ERROR: applicant_id missing
        2. TASK_NOT_FOUND
        3. FORBIDDEN: caller is not the owner
        4. NOT_AN_APPLICANT
        5. INVALID_STATUS: task is neither open nor in progress
        """
        applicant_id = data.get("applicant_id")
        if not isinstance(applicant_id, str) or len(applicant_id) < 1:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Field 'applicant_id' is required",
                400,
                {"field": "applicant_id"},
            )

        task = self._load_task(task_id)
        if task["posted_by"] != user_id:
            raise ServiceError("FORBIDDEN", "Only the task owner can assign this task", 403, {})
        if not any(applicant["user_id"] == applicant_id for applicant in task["applicants"]):
            raise ServiceError(
                "NOT_AN_APPLICANT", "The selected user has not applied to this task", 409, {}
            )
        if task["status"] not in ("open", "in-progress"):
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot assign a task in '{task['status']}' status",
                409,
                {"status": task["status"]},
            )

        updated = self._store.update_task(
            task_id,
            {"status": "in-progress", "assigned_to": applicant_id},
            expected_status=str(task["status"]),
        )
        if updated == 0:
            raise self._lost_race(task_id, "assign")

        self._logger.info(
            "Task assigned", extra={"task_id": task_id, "assigned_to": applicant_id}
        )
        await self._notifier.notify(
            applicant_id,
            f'You have been assigned to the task "{task["title"]}"',
            "assignment",
            related_task=task_id,
            related_user=user_id,
        )
        return self._reload_task(task_id)

    async def complete(self, task_id: str, user_id: str) -> dict[str, Any]:
        """
        Mark an in-progress task completed. Only the assignee may do this.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the assignee
        3. INVALID_STATUS: task is not in progress
        """
        task = self._load_task(task_id)
        if task["assigned_to"] != user_id:
            raise ServiceError(
                "FORBIDDEN", "Only the assigned user can complete this task", 403, {}
            )
        if task["status"] != "in-progress":
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot complete a task in '{task['status']}' status, must be 'in-progress'",
                409,
                {"status": task["status"]},
            )

        updated = self._store.update_task(
            task_id,
            {"status": "completed", "completed_at": now_iso()},
            expected_status="in-progress",
        )
        if updated == 0:
            raise self._lost_race(task_id, "complete")

        self._user_store.increment_tasks_completed(user_id)
        self._logger.info("Task completed", extra={"task_id": task_id, "worker": user_id})
        await self._notifier.notify(
            str(task["posted_by"]),
            f'{self._user_name(user_id)} completed your task "{task["title"]}"',
            "completion",
            related_task=task_id,
            related_user=user_id,
        )
        return self._reload_task(task_id)

    async def pay(self, task_id: str, user_id: str) -> dict[str, Any]:
        """
        Settle a completed task directly, moving it to paid.

        The settlement is written to the ledger as a completed payout of the
        full budget, split into commission and net. The row is inserted
        before the status swap and cancelled if the swap loses.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the owner
        3. ALREADY_PAID
        4. INVALID_STATUS: task is not completed
        5. NO_ASSIGNEE
        6. PAYOUT_IN_PROGRESS: a gateway payout is pending or done
        """
        task = self._load_task(task_id)
        if task["posted_by"] != user_id:
            raise ServiceError(
                "FORBIDDEN", "Only the task owner can process payment", 403, {}
            )
        if task["payment_status"] == "paid" or task["status"] == "paid":
            raise ServiceError("ALREADY_PAID", "Task already paid", 409, {})
        if task["status"] != "completed":
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot pay a task in '{task['status']}' status, must be 'completed'",
                409,
                {"status": task["status"]},
            )
        if task["assigned_to"] is None:
            raise ServiceError("NO_ASSIGNEE", "Task has no assigned user to pay", 409, {})

        active_payouts = self._transaction_store.find_for_task(
            task_id, "payout", _ACTIVE_PAYOUT_STATUSES
        )
        if active_payouts:
            raise self._payout_in_progress(active_payouts[0]["transaction_id"])

        assignee_id = str(task["assigned_to"])
        assignee = self._user_store.get_user(assignee_id)
        commission, net = split_commission(task["budget"])
        settlement = new_transaction(
            "payout",
            amount=float(task["budget"]),
            commission=float(commission),
            net_amount=float(net),
            phone_number=assignee["phone_number"] if assignee is not None else "",
            from_user=user_id,
            to_user=assignee_id,
            task_id=task_id,
            status="completed",
        )
        settlement["response_description"] = "Settled directly by the task owner"
        try:
            self._transaction_store.insert_transaction(settlement)
        except DuplicatePayoutError as exc:
            raise self._payout_in_progress(None) from exc

        updated = self._store.update_task(
            task_id,
            {"status": "paid", "payment_status": "paid", "paid_at": now_iso()},
            expected_status="completed",
        )
        if updated == 0:
            self._transaction_store.update_transaction(
                settlement["transaction_id"],
                {"status": "cancelled", "error_message": "Task changed before settlement"},
                expected_status="completed",
            )
            current = self._store.get_task(task_id)
            if current is not None and current["payment_status"] == "paid":
                raise ServiceError("ALREADY_PAID", "Task already paid", 409, {})
            raise self._lost_race(task_id, "pay")

        self._logger.info(
            "Task paid",
            extra={
                "task_id": task_id,
                "transaction_id": settlement["transaction_id"],
                "amount": task["budget"],
                "commission": float(commission),
            },
        )
        await self._notifier.notify(
            assignee_id,
            f'Payment of KES {task["budget"]} has been processed for task "{task["title"]}"',
            "payment",
            related_task=task_id,
            related_user=user_id,
        )
        return self._reload_task(task_id)

    @staticmethod
    def _payout_in_progress(transaction_id: str | None) -> ServiceError:
        details = {} if transaction_id is None else {"transaction_id": transaction_id}
        return ServiceError(
            "PAYOUT_IN_PROGRESS", "A gateway payout already exists for this task", 409, details
        )

    def delete_task(self, task_id: str, user_id: str) -> None:
        """
        Delete a task that has not been paid.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, ALREADY_PAID, PAYOUT_IN_PROGRESS
        """
        task = self._load_task(task_id)
        if task["posted_by"] != user_id:
            raise ServiceError("FORBIDDEN", "Only the task owner can delete this task", 403, {})
        if task["payment_status"] == "paid" or task["status"] == "paid":
            raise ServiceError("ALREADY_PAID", "A paid task cannot be deleted", 409, {})
        if self._transaction_store.find_for_task(task_id, "payout", ("pending",)):
            raise ServiceError(
                "PAYOUT_IN_PROGRESS", "A payout for this task is still pending", 409, {}
            )

        self._store.delete_task(task_id)
        self._message_store.delete_for_task(task_id)
        self._logger.info("Task deleted", extra={"task_id": task_id})

    def is_participant(self, task_id: str, user_id: str) -> bool:
        """True if ``user_id`` owns the task or is assigned to it."""
        task = self._store.get_task(task_id)
        if task is None:
            return False
        return user_id in (task["posted_by"], task["assigned_to"])

"""Payment settlement through the M-Pesa gateway and callback reconciliation."""

from __future__ import annotations

import math
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger
from campus_hub_service.services.phone import normalize_phone_number
from campus_hub_service.services.task_store import now_iso
from campus_hub_service.services.transaction_store import DuplicatePayoutError

if TYPE_CHECKING:
    from campus_hub_service.clients.mpesa_client import MpesaClient
    from campus_hub_service.services.notifier import Notifier
    from campus_hub_service.services.task_store import TaskStore
    from campus_hub_service.services.transaction_store import TransactionStore

COMMISSION_RATE = Decimal("0.10")
BILL_REF_PREFIX = "TASK_"
ORIGINATOR_ID_PREFIX = "campus-hub-"
CALLBACK_ACK: dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Success"}

_CENTS = Decimal("0.01")
_ACTIVE_PAYOUT_STATUSES = ("pending", "completed")
_TRANSACTION_TYPE_ALIASES = {
    "collection": "collection",
    "payout": "payout",
    "reversal": "reversal",
    "c2b": "collection",
    "b2c": "payout",
}


def split_commission(amount: float | Decimal) -> tuple[Decimal, Decimal]:
    """Return ``(commission, net)`` for a gross amount at the fixed 10% rate."""
    gross = Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    commission = (gross * COMMISSION_RATE).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return commission, gross - commission


def to_gateway_amount(amount: float | Decimal) -> int:
    """Round to whole shillings, half up, as the gateway only accepts integers."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bill_reference(task_id: str) -> str:
    return f"{BILL_REF_PREFIX}{task_id}"


def task_id_from_bill_reference(bill_ref_number: object) -> str | None:
    """Extract the task id from a ``TASK_<id>`` reference, or None if malformed."""
    if not isinstance(bill_ref_number, str) or not bill_ref_number.startswith(BILL_REF_PREFIX):
        return None
    task_id = bill_ref_number[len(BILL_REF_PREFIX) :]
    return task_id or None


def _amounts_match(received: object, budget: float) -> bool:
    try:
        value = Decimal(str(received))
    except ArithmeticError:
        return False
    if not value.is_finite():
        return False
    return value.quantize(_CENTS) == Decimal(str(budget)).quantize(_CENTS)


def _result_parameter(result: dict[str, Any], *keys: str) -> str | None:
    parameters = (result.get("ResultParameters") or {}).get("ResultParameter") or []
    if isinstance(parameters, dict):
        parameters = [parameters]
    for parameter in parameters:
        if isinstance(parameter, dict) and parameter.get("Key") in keys:
            return str(parameter.get("Value"))
    return None


def _is_success_code(value: object) -> bool:
    return str(value).strip() == "0"


def new_transaction(
    transaction_type: str,
    *,
    amount: float,
    commission: float,
    net_amount: float | None,
    phone_number: str,
    from_user: str | None,
    to_user: str | None,
    task_id: str,
    status: str = "pending",
) -> dict[str, Any]:
    """Build a ledger row. Only settled rows carry ``completed_at``."""
    timestamp = now_iso()
    return {
        "transaction_id": f"tx-{uuid.uuid4()}",
        "transaction_type": transaction_type,
        "gateway_transaction_id": None,
        "gateway_receipt_number": None,
        "conversation_id": None,
        "originator_conversation_id": None,
        "amount": amount,
        "commission": commission,
        "net_amount": net_amount,
        "phone_number": phone_number,
        "from_user": from_user,
        "to_user": to_user,
        "task_id": task_id,
        "status": status,
        "response_code": None,
        "response_description": None,
        "error_message": None,
        "callback_received": False,
        "callback_data": None,
        "initiated_at": timestamp,
        "completed_at": timestamp if status == "completed" else None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


class PaymentManager:
    """
    Collection (payer to platform) and payout (platform to worker) flows.

    A pending ledger row is always written before the gateway is called.
    Callbacks move a row out of ``pending`` with a conditional update, so a
    re-delivered callback finds nothing to change and has no side effects.
    """

    def __init__(
        self,
        mpesa_client: MpesaClient,
        task_store: TaskStore,
        transaction_store: TransactionStore,
        notifier: Notifier,
    ) -> None:
        self._mpesa_client = mpesa_client
        self._task_store = task_store
        self._transaction_store = transaction_store
        self._notifier = notifier
        self._logger = get_logger(__name__)

    def set_mpesa_client(self, mpesa_client: MpesaClient) -> None:
        """Replace the gateway client (tests swap in a mock)."""
        self._mpesa_client = mpesa_client

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _record_gateway_response(
        self,
        transaction_id: str,
        response: dict[str, Any],
        *,
        keep_originator: bool = False,
    ) -> None:
        updates: dict[str, Any] = {
            "conversation_id": response.get("ConversationID"),
            "response_code": (
                None if response.get("ResponseCode") is None
                else str(response.get("ResponseCode"))
            ),
            "response_description": response.get("ResponseDescription"),
        }
        if not keep_originator:
            updates["originator_conversation_id"] = response.get("OriginatorConversationID")
        self._transaction_store.update_transaction(
            transaction_id, updates, expected_status="pending"
        )

    def _load_owned_task(self, task_id: str, user_id: str, action: str) -> dict[str, Any]:
        task = self._task_store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        if task["posted_by"] != user_id:
            raise ServiceError("FORBIDDEN", f"Only the task owner can {action}", 403, {})
        return task

    @staticmethod
    def _require_field(data: dict[str, Any], field_name: str) -> str:
        value = data.get(field_name)
        if not isinstance(value, str) or len(value.strip()) < 1:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Field '{field_name}' is required",
                400,
                {"field": field_name},
            )
        return value.strip()

    # ------------------------------------------------------------------
    # Gateway-initiating operations
    # ------------------------------------------------------------------

    async def register_urls(self) -> dict[str, Any]:
        """Register the C2B confirmation and validation callback URLs."""
        response = await self._mpesa_client.register_urls()
        self._logger.info("M-Pesa callback URLs registered")
        return response

    async def account_balance(self) -> dict[str, Any]:
        """Start a balance inquiry; the answer arrives on the balance callbacks."""
        return await self._mpesa_client.account_balance()

    async def simulate_collection(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Collect the task payment from the owner's phone into the platform.

        Error precedence:
        1. VALIDATION_ERROR: missing task_id, phone_number or non-positive amount
        2. TASK_NOT_FOUND
        3. FORBIDDEN: caller is not the task owner
        4. INVALID_PHONE_NUMBER
        5. GATEWAY_*: the pending transaction stays for later reconciliation
        """
        task_id = self._require_field(data, "task_id")
        phone_raw = self._require_field(data, "phone_number")
        amount = data.get("amount")
        if (
            not isinstance(amount, int | float)
            or isinstance(amount, bool)
            or not math.isfinite(amount)
            or amount <= 0
        ):
            raise ServiceError(
                "VALIDATION_ERROR", "amount must be a positive number", 400, {"field": "amount"}
            )

        self._load_owned_task(task_id, user_id, "initiate payment")
        phone_number = normalize_phone_number(phone_raw)

        transaction = new_transaction(
            "collection",
            amount=float(amount),
            commission=0.0,
            net_amount=None,
            phone_number=phone_number,
            from_user=user_id,
            to_user=None,
            task_id=task_id,
        )
        self._transaction_store.insert_transaction(transaction)
        transaction_id = str(transaction["transaction_id"])
        self._logger.info(
            "Collection initiated",
            extra={"transaction_id": transaction_id, "task_id": task_id, "amount": amount},
        )

        try:
            response = await self._mpesa_client.simulate_c2b(
                amount=to_gateway_amount(amount),
                phone_number=phone_number,
                bill_ref_number=bill_reference(task_id),
            )
        except ServiceError as exc:
            self._transaction_store.update_transaction(
                transaction_id,
                {"error_message": exc.message},
                expected_status="pending",
            )
            raise

        self._record_gateway_response(transaction_id, response)
        return {
            "transaction_id": transaction_id,
            "status": "pending",
            "gateway_response": response,
        }

    async def request_payout(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Pay the worker the collected amount minus the platform commission.

        Guard, evaluated in order. A failing check writes nothing and calls no gateway:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is not the task owner
        3. INVALID_STATUS: task is not completed
        4. NO_ASSIGNEE
        5. NO_CONFIRMED_COLLECTION
        6. PAYOUT_ALREADY_EXISTS: a pending or completed payout exists
        """
        task_id = self._require_field(data, "task_id")
        phone_raw = self._require_field(data, "phone_number")

        task = self._load_owned_task(task_id, user_id, "trigger payment")
        if task["status"] != "completed":
            raise ServiceError(
                "INVALID_STATUS",
                "Task must be completed before payment",
                409,
                {"status": task["status"]},
            )
        if task["assigned_to"] is None:
            raise ServiceError("NO_ASSIGNEE", "Task has no assigned user to pay", 409, {})

        collections = self._transaction_store.find_for_task(task_id, "collection", ("completed",))
        if not collections:
            raise ServiceError(
                "NO_CONFIRMED_COLLECTION", "No confirmed payment found for this task", 409, {}
            )
        if self._transaction_store.find_for_task(task_id, "payout", _ACTIVE_PAYOUT_STATUSES):
            raise ServiceError(
                "PAYOUT_ALREADY_EXISTS", "Payment already processed for this task", 409, {}
            )

        phone_number = normalize_phone_number(phone_raw)
        gross = Decimal(str(collections[0]["amount"]))
        commission, net = split_commission(gross)
        payout_amount = to_gateway_amount(net)
        if payout_amount < 1:
            raise ServiceError(
                "VALIDATION_ERROR", "Payout amount is below the gateway minimum", 400, {}
            )

        transaction = new_transaction(
            "payout",
            amount=float(gross),
            commission=float(commission),
            net_amount=float(net),
            phone_number=phone_number,
            from_user=user_id,
            to_user=str(task["assigned_to"]),
            task_id=task_id,
        )
        originator_conversation_id = f"{ORIGINATOR_ID_PREFIX}{uuid.uuid4()}"
        transaction["originator_conversation_id"] = originator_conversation_id
        try:
            self._transaction_store.insert_transaction(transaction)
        except DuplicatePayoutError as exc:
            raise ServiceError(
                "PAYOUT_ALREADY_EXISTS", "Payment already processed for this task", 409, {}
            ) from exc
        transaction_id = str(transaction["transaction_id"])
        self._logger.info(
            "Payout initiated",
            extra={
                "transaction_id": transaction_id,
                "task_id": task_id,
                "amount": float(gross),
                "commission": float(commission),
                "net_amount": float(net),
            },
        )

        try:
            response = await self._mpesa_client.b2c_payment_request(
                amount=payout_amount,
                phone_number=phone_number,
                remarks=f"Payment for task: {task['title']}"[:100],
                occasion=f"Task_{task_id}_Payment",
                originator_conversation_id=originator_conversation_id,
            )
        except ServiceError as exc:
            # A request that may have reached the gateway stays pending until
            # a callback carrying the originator id settles it.
            terminal = exc.error in ("GATEWAY_REJECTED", "GATEWAY_AUTH_FAILED") or (
                exc.error == "GATEWAY_UNAVAILABLE" and exc.details.get("request_sent") is False
            )
            updates: dict[str, Any] = {"error_message": exc.message}
            if terminal:
                updates["status"] = "failed"
            self._transaction_store.update_transaction(
                transaction_id, updates, expected_status="pending"
            )
            raise

        self._record_gateway_response(transaction_id, response, keep_originator=True)
        return {
            "transaction_id": transaction_id,
            "status": "pending",
            "amount": float(gross),
            "commission": float(commission),
            "net_amount": float(net),
            "gateway_response": response,
        }

    # ------------------------------------------------------------------
    # Gateway callbacks. Callers always acknowledge the gateway.
    # ------------------------------------------------------------------

    async def handle_confirmation(self, payload: dict[str, Any]) -> None:
        """Complete the pending collection named by ``BillRefNumber``."""
        task_id = task_id_from_bill_reference(payload.get("BillRefNumber"))
        if task_id is None:
            self._logger.warning(
                "Confirmation without a task reference",
                extra={"bill_ref_number": payload.get("BillRefNumber")},
            )
            return

        trans_id = payload.get("TransID")
        collections = self._transaction_store.find_for_task(task_id, "collection")
        if trans_id and any(tx["gateway_transaction_id"] == trans_id for tx in collections):
            self._logger.info(
                "Duplicate confirmation ignored",
                extra={"task_id": task_id, "trans_id": trans_id},
            )
            return

        pending = [tx for tx in collections if tx["status"] == "pending"]
        if not pending:
            self._logger.warning(
                "No pending collection for confirmation", extra={"task_id": task_id}
            )
            return

        transaction = pending[0]
        updated = self._transaction_store.update_transaction(
            str(transaction["transaction_id"]),
            {
                "status": "completed",
                "gateway_transaction_id": trans_id,
                "gateway_receipt_number": trans_id,
                "completed_at": now_iso(),
                "callback_received": True,
                "callback_data": payload,
            },
            expected_status="pending",
        )
        if updated == 0:
            return

        self._task_store.update_task(task_id, {"funded_at": now_iso()}, expected_status=None)
        task = self._task_store.get_task(task_id)
        self._logger.info(
            "Collection confirmed",
            extra={"transaction_id": transaction["transaction_id"], "task_id": task_id},
        )
        if transaction["from_user"] is not None:
            title = task["title"] if task is not None else task_id
            await self._notifier.notify(
                str(transaction["from_user"]),
                f'Payment of KES {payload.get("TransAmount", transaction["amount"])} '
                f'confirmed for task "{title}"',
                "payment",
                related_task=task_id,
            )

    def handle_validation(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Accept or reject an incoming C2B payment before the gateway processes it."""
        task_id = task_id_from_bill_reference(payload.get("BillRefNumber"))
        if task_id is None:
            return {"ResultCode": "C2B00011", "ResultDesc": "Invalid Bill Reference"}

        task = self._task_store.get_task(task_id)
        if task is None:
            return {"ResultCode": "C2B00012", "ResultDesc": "Task not found"}

        if not _amounts_match(payload.get("TransAmount"), float(task["budget"])):
            return {"ResultCode": "C2B00013", "ResultDesc": "Amount does not match task budget"}

        return dict(CALLBACK_ACK)

    async def handle_payout_result(self, payload: dict[str, Any]) -> None:
        """Finish a pending payout and, on success, move the task to paid."""
        result = payload.get("Result")
        if not isinstance(result, dict):
            self._logger.warning("Payout result without Result body")
            return

        transaction = self._transaction_store.find_by_conversation(
            result.get("ConversationID"),
            result.get("OriginatorConversationID"),
            "payout",
        )
        if transaction is None:
            self._logger.warning(
                "Payout not found for result",
                extra={"conversation_id": result.get("ConversationID")},
            )
            return
        if transaction["status"] != "pending":
            self._logger.info(
                "Payout result for settled transaction ignored",
                extra={
                    "transaction_id": transaction["transaction_id"],
                    "status": transaction["status"],
                },
            )
            return

        transaction_id = str(transaction["transaction_id"])
        task_id = str(transaction["task_id"])
        result_code = result.get("ResultCode")
        result_desc = result.get("ResultDesc")
        common = {
            "conversation_id": transaction["conversation_id"] or result.get("ConversationID"),
            "response_code": None if result_code is None else str(result_code),
            "response_description": result_desc,
            "callback_received": True,
            "callback_data": payload,
        }

        if _is_success_code(result_code):
            receipt = _result_parameter(result, "TransactionReceipt", "TransactionID")
            updated = self._transaction_store.update_transaction(
                transaction_id,
                {
                    **common,
                    "status": "completed",
                    "completed_at": now_iso(),
                    "gateway_transaction_id": receipt or result.get("TransactionID"),
                    "gateway_receipt_number": receipt,
                },
                expected_status="pending",
            )
            if updated == 0:
                return

            moved = self._task_store.update_task(
                task_id,
                {"status": "paid", "payment_status": "paid", "paid_at": now_iso()},
                expected_status="completed",
            )
            if moved == 0:
                self._logger.warning(
                    "Payout completed but task was not in completed status",
                    extra={"transaction_id": transaction_id, "task_id": task_id},
                )
            self._logger.info(
                "Payout completed",
                extra={"transaction_id": transaction_id, "task_id": task_id},
            )
            task = self._task_store.get_task(task_id)
            if transaction["to_user"] is not None:
                title = task["title"] if task is not None else task_id
                await self._notifier.notify(
                    str(transaction["to_user"]),
                    f'Payment of KES {transaction["net_amount"]} received for task "{title}"',
                    "payment",
                    related_task=task_id,
                    related_user=transaction["from_user"],
                )
            return

        updated = self._transaction_store.update_transaction(
            transaction_id,
            {**common, "status": "failed", "error_message": result_desc},
            expected_status="pending",
        )
        if updated == 0:
            return
        self._logger.warning(
            "Payout failed",
            extra={"transaction_id": transaction_id, "task_id": task_id, "reason": result_desc},
        )
        if transaction["from_user"] is not None:
            await self._notifier.notify(
                str(transaction["from_user"]),
                f"Payment to worker failed: {result_desc or 'unknown error'}",
                "payment",
                related_task=task_id,
            )

    async def handle_payout_timeout(self, payload: dict[str, Any]) -> None:
        """Mark a pending payout as timed out and tell the owner."""
        result = payload.get("Result")
        if not isinstance(result, dict):
            result = {}

        transaction = self._transaction_store.find_by_conversation(
            result.get("ConversationID"),
            result.get("OriginatorConversationID"),
            "payout",
        )
        if transaction is None or transaction["status"] != "pending":
            self._logger.warning(
                "No pending payout for timeout callback",
                extra={"conversation_id": result.get("ConversationID")},
            )
            return

        result_code = result.get("ResultCode")
        result_desc = result.get("ResultDesc")
        updated = self._transaction_store.update_transaction(
            str(transaction["transaction_id"]),
            {
                "status": "timeout",
                "error_message": result_desc or "Transaction timed out",
                "conversation_id": (
                    transaction["conversation_id"] or result.get("ConversationID")
                ),
                "response_code": "TIMEOUT" if result_code is None else str(result_code),
                "response_description": result_desc or "Request timed out",
                "callback_received": True,
                "callback_data": payload,
            },
            expected_status="pending",
        )
        if updated == 0:
            return

        self._logger.warning(
            "Payout timed out", extra={"transaction_id": transaction["transaction_id"]}
        )
        if transaction["from_user"] is not None:
            await self._notifier.notify(
                str(transaction["from_user"]),
                "Payment to worker timed out. Please try again or contact support.",
                "payment",
                related_task=transaction["task_id"],
            )

    def handle_balance_result(self, payload: dict[str, Any], *, timed_out: bool) -> None:
        """Log the outcome of an asynchronous balance inquiry."""
        result = payload.get("Result")
        result = result if isinstance(result, dict) else {}
        self._logger.info(
            "Balance inquiry timed out" if timed_out else "Balance inquiry result",
            extra={
                "result_code": result.get("ResultCode"),
                "result_desc": result.get("ResultDesc"),
                "balance": _result_parameter(result, "AccountBalance"),
            },
        )

    # ------------------------------------------------------------------
    # Ledger queries
    # ------------------------------------------------------------------

    def list_transactions(
        self,
        user_id: str,
        *,
        task_id: str | None,
        transaction_type: str | None,
        page: int,
        limit: int,
    ) -> dict[str, Any]:
        """Transactions where the user is payer or payee, newest first, paginated."""
        normalized_type: str | None = None
        if transaction_type:
            normalized_type = _TRANSACTION_TYPE_ALIASES.get(transaction_type.lower())
            if normalized_type is None:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    f"Unknown transaction type: {transaction_type}",
                    400,
                    {"allowed": ["collection", "payout", "reversal"]},
                )

        transactions, total = self._transaction_store.list_for_user(
            user_id,
            task_id=task_id,
            transaction_type=normalized_type,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "pages": math.ceil(total / limit) if total else 0,
                "total": total,
            },
        }

    def get_transaction(self, user_id: str, transaction_id: str) -> dict[str, Any]:
        """
        Fetch one transaction the user is party to.

        Raises:
            ServiceError: TRANSACTION_NOT_FOUND (also for transactions of other users)
        """
        transaction = self._transaction_store.get_transaction(transaction_id)
        if transaction is None or user_id not in (transaction["from_user"], transaction["to_user"]):
            raise ServiceError("TRANSACTION_NOT_FOUND", "Transaction not found", 404, {})
        return transaction

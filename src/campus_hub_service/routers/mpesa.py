"""M-Pesa payment endpoints and gateway callbacks."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from campus_hub_service.core.state import get_app_state
from campus_hub_service.logging import get_logger
from campus_hub_service.routers.validation import (
    authenticate,
    parse_int_query,
    parse_json_body,
    read_json_body,
)
from campus_hub_service.schemas import CallbackAck
from campus_hub_service.services.payment_manager import CALLBACK_ACK

if TYPE_CHECKING:
    from campus_hub_service.services.payment_manager import PaymentManager

router = APIRouter()
logger = get_logger(__name__)


def _get_payment_manager() -> PaymentManager:
    state = get_app_state()
    if state.payment_manager is None:
        msg = "PaymentManager not initialized"
        raise RuntimeError(msg)
    return state.payment_manager


async def _callback_payload(request: Request, callback: str) -> dict[str, Any]:
    payload = parse_json_body(await request.body())
    logger.info("M-Pesa callback received", extra={"callback": callback, "payload": payload})
    return payload


# ---------------------------------------------------------------------------
# Authenticated, gateway-initiating operations
# ---------------------------------------------------------------------------


@router.post("/mpesa/register")
async def register_urls(request: Request) -> dict[str, Any]:
    """Register the C2B confirmation and validation URLs with the gateway."""
    authenticate(request)
    response = await _get_payment_manager().register_urls()
    return {"message": "M-Pesa URLs registered successfully", "data": response}


@router.post("/mpesa/simulate-c2b")
async def simulate_c2b(request: Request) -> dict[str, Any]:
    """Collect a task payment from the owner's phone."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    return await _get_payment_manager().simulate_collection(user_id, data)


@router.post("/mpesa/b2c-payment")
async def b2c_payment(request: Request) -> dict[str, Any]:
    """Pay the worker of a completed, funded task."""
    user_id = authenticate(request)
    data = await read_json_body(request)
    return await _get_payment_manager().request_payout(user_id, data)


@router.get("/mpesa/transactions")
async def list_transactions(request: Request) -> dict[str, Any]:
    """The caller's transactions, newest first."""
    user_id = authenticate(request)
    page = parse_int_query(request, "page", default=1, minimum=1)
    limit = parse_int_query(request, "limit", default=10, minimum=1, maximum=100)
    return _get_payment_manager().list_transactions(
        user_id,
        task_id=request.query_params.get("task_id") or None,
        transaction_type=request.query_params.get("type") or None,
        page=page or 1,
        limit=limit or 10,
    )


@router.get("/mpesa/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, request: Request) -> dict[str, Any]:
    user_id = authenticate(request)
    return _get_payment_manager().get_transaction(user_id, transaction_id)


@router.get("/mpesa/balance")
async def account_balance(request: Request) -> dict[str, Any]:
    """Start a balance inquiry on the platform shortcode."""
    authenticate(request)
    response = await _get_payment_manager().account_balance()
    return {"message": "Balance inquiry initiated", "data": response}


# ---------------------------------------------------------------------------
# Gateway callbacks: unauthenticated, always acknowledged
# ---------------------------------------------------------------------------


@router.post("/mpesa/confirmation", response_model=CallbackAck)
async def confirmation(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "confirmation")
        await _get_payment_manager().handle_confirmation(payload)
    except Exception:
        logger.exception("Confirmation callback processing failed")
    return dict(CALLBACK_ACK)


@router.post("/mpesa/validation", response_model=CallbackAck)
async def validation(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "validation")
        result = _get_payment_manager().handle_validation(payload)
    except Exception:
        logger.exception("Validation callback processing failed")
        return dict(CALLBACK_ACK)
    if result["ResultCode"] != 0:
        logger.info("C2B payment rejected", extra={"result": result})
    return result


@router.post("/mpesa/b2c-result", response_model=CallbackAck)
async def b2c_result(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "b2c-result")
        await _get_payment_manager().handle_payout_result(payload)
    except Exception:
        logger.exception("Payout result callback processing failed")
    return dict(CALLBACK_ACK)


@router.post("/mpesa/b2c-timeout", response_model=CallbackAck)
async def b2c_timeout(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "b2c-timeout")
        await _get_payment_manager().handle_payout_timeout(payload)
    except Exception:
        logger.exception("Payout timeout callback processing failed")
    return dict(CALLBACK_ACK)


@router.post("/mpesa/balance-result", response_model=CallbackAck)
async def balance_result(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "balance-result")
        _get_payment_manager().handle_balance_result(payload, timed_out=False)
    except Exception:
        logger.exception("Balance result callback processing failed")
    return dict(CALLBACK_ACK)


@router.post("/mpesa/balance-timeout", response_model=CallbackAck)
async def balance_timeout(request: Request) -> dict[str, Any]:
    try:
        payload = await _callback_payload(request, "balance-timeout")
        _get_payment_manager().handle_balance_result(payload, timed_out=True)
    except Exception:
        logger.exception("Balance timeout callback processing failed")
    return dict(CALLBACK_ACK)

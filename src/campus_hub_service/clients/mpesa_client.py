"""Async HTTP client for the M-Pesa (Daraja) payment gateway."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger

SUCCESS_RESPONSE_CODE = "0"


@dataclass
class CachedToken:
    """An OAuth access token and the instant it stops being reused."""

    access_token: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


class MpesaClient:
    """
    Client for the M-Pesa gateway.

    Every request is authorized with an OAuth bearer token obtained via
    client credentials. Tokens are cached per consumer key until
    ``expires_in - token_safety_margin_seconds`` and refreshed single-flight:
    concurrent callers that find the cache stale wait on one refresh and
    reuse its token.

    Operations:
    1. register_urls: tell the gateway where to send C2B callbacks
    2. simulate_c2b: simulate a customer paying the platform for a task
    3. b2c_payment_request: pay a worker from the platform shortcode
    4. account_balance: start an asynchronous balance inquiry
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        initiator_name: str,
        security_credential: str,
        callback_base_url: str,
        timeout_seconds: int,
        token_safety_margin_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._shortcode = shortcode
        self._initiator_name = initiator_name
        self._security_credential = security_credential
        self._callback_base_url = callback_base_url.rstrip("/")
        self._token_safety_margin = timedelta(seconds=token_safety_margin_seconds)
        self._token_cache: dict[str, CachedToken] = {}
        self._token_locks: dict[str, asyncio.Lock] = {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    @property
    def shortcode(self) -> str:
        return self._shortcode

    def callback_url(self, path: str) -> str:
        """Absolute URL of one of this service's gateway callback routes."""
        return f"{self._callback_base_url}/api/mpesa/{path}"

    async def get_access_token(self) -> str:
        """
        Return a cached OAuth token, refreshing it when stale.

        Raises:
            ServiceError: GATEWAY_AUTH_FAILED (502) if the token request fails
        """
        cached = self._token_cache.get(self._consumer_key)
        if cached is not None and cached.is_fresh(datetime.now(UTC)):
            return cached.access_token

        lock = self._token_locks.setdefault(self._consumer_key, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited.
            cached = self._token_cache.get(self._consumer_key)
            if cached is not None and cached.is_fresh(datetime.now(UTC)):
                return cached.access_token

            cached = await self._request_token()
            self._token_cache[self._consumer_key] = cached
            return cached.access_token

    async def _request_token(self) -> CachedToken:
        logger = get_logger(__name__)

        try:
            response = await self._client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=httpx.BasicAuth(self._consumer_key, self._consumer_secret),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "M-Pesa token request failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="GATEWAY_AUTH_FAILED",
                message="Cannot obtain M-Pesa access token",
                status_code=502,
                details={},
            ) from exc

        if response.status_code != 200:
            logger.warning(
                "M-Pesa token request rejected",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="GATEWAY_AUTH_FAILED",
                message="M-Pesa rejected the access token request",
                status_code=502,
                details={"gateway_status": response.status_code},
            )

        try:
            body: dict[str, Any] = response.json()
            access_token = str(body["access_token"])
            expires_in = int(body["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ServiceError(
                error="GATEWAY_AUTH_FAILED",
                message="M-Pesa returned a malformed access token response",
                status_code=502,
                details={},
            ) from exc

        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in) - self._token_safety_margin
        logger.info("M-Pesa access token refreshed", extra={"expires_in": expires_in})
        return CachedToken(access_token=access_token, expires_at=expires_at)

    async def _post(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        """
        POST an authorized JSON request and return the gateway response body.

        Raises:
            ServiceError: GATEWAY_AUTH_FAILED (502) if no token can be obtained
            ServiceError: GATEWAY_UNAVAILABLE (502) on connection/timeout/HTTP errors
            ServiceError: GATEWAY_REJECTED (502) on a non-success gateway response
        """
        logger = get_logger(__name__)
        access_token = await self.get_access_token()

        try:
            response = await self._client.post(
                path,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            # A connect failure means the request never left this host.
            request_sent = not isinstance(exc, httpx.ConnectError | httpx.ConnectTimeout)
            logger.warning(
                "M-Pesa connection failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="GATEWAY_UNAVAILABLE",
                message="Cannot connect to M-Pesa",
                status_code=502,
                details={"operation": operation, "request_sent": request_sent},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "M-Pesa HTTP error",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="GATEWAY_UNAVAILABLE",
                message="M-Pesa request failed",
                status_code=502,
                details={"operation": operation, "request_sent": True},
            ) from exc

        try:
            result: dict[str, Any] = response.json()
        except ValueError:
            result = {}

        if response.status_code == 200:
            response_code = result.get("ResponseCode")
            if response_code is None or str(response_code) == SUCCESS_RESPONSE_CODE:
                return result

        logger.warning(
            "M-Pesa rejected request",
            extra={
                "operation": operation,
                "status_code": response.status_code,
                "response_code": result.get("ResponseCode"),
                "error_code": result.get("errorCode"),
            },
        )
        raise ServiceError(
            error="GATEWAY_REJECTED",
            message=str(
                result.get("errorMessage")
                or result.get("ResponseDescription")
                or "M-Pesa rejected the request"
            ),
            status_code=502,
            details={"operation": operation, "gateway_status": response.status_code},
        )

    async def register_urls(self) -> dict[str, Any]:
        """Register this service's confirmation and validation callback URLs."""
        return await self._post(
            "/mpesa/c2b/v1/registerurl",
            {
                "ShortCode": self._shortcode,
                "ResponseType": "Completed",
                "ConfirmationURL": self.callback_url("confirmation"),
                "ValidationURL": self.callback_url("validation"),
            },
            operation="register_urls",
        )

    async def simulate_c2b(
        self, amount: int, phone_number: str, bill_ref_number: str
    ) -> dict[str, Any]:
        """Simulate a customer paybill payment into the platform shortcode."""
        return await self._post(
            "/mpesa/c2b/v1/simulate",
            {
                "ShortCode": self._shortcode,
                "CommandID": "CustomerPayBillOnline",
                "Amount": amount,
                "Msisdn": phone_number,
                "BillRefNumber": bill_ref_number,
            },
            operation="simulate_c2b",
        )

    async def b2c_payment_request(
        self,
        amount: int,
        phone_number: str,
        remarks: str,
        occasion: str,
        originator_conversation_id: str,
    ) -> dict[str, Any]:
        """
        Request a business payment from the platform shortcode to a phone number.

        ``originator_conversation_id`` is echoed on the result and timeout
        callbacks, so a payout can be matched even when no response arrives.
        """
        return await self._post(
            "/mpesa/b2c/v1/paymentrequest",
            {
                "OriginatorConversationID": originator_conversation_id,
                "InitiatorName": self._initiator_name,
                "SecurityCredential": self._security_credential,
                "CommandID": "BusinessPayment",
                "Amount": amount,
                "PartyA": self._shortcode,
                "PartyB": phone_number,
                "Remarks": remarks,
                "QueueTimeOutURL": self.callback_url("b2c-timeout"),
                "ResultURL": self.callback_url("b2c-result"),
                "Occasion": occasion,
            },
            operation="b2c_payment_request",
        )

    async def account_balance(self) -> dict[str, Any]:
        """Start a balance inquiry. The result arrives on the balance callbacks."""
        return await self._post(
            "/mpesa/accountbalance/v1/query",
            {
                "Initiator": self._initiator_name,
                "SecurityCredential": self._security_credential,
                "CommandID": "AccountBalance",
                "PartyA": self._shortcode,
                "IdentifierType": "4",
                "Remarks": "Balance inquiry",
                "QueueTimeOutURL": self.callback_url("balance-timeout"),
                "ResultURL": self.callback_url("balance-result"),
            },
            operation="account_balance",
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

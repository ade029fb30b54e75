"""Unit tests for MpesaClient."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from campus_hub_service.clients.mpesa_client import CachedToken, MpesaClient
from campus_hub_service.core.exceptions import ServiceError

BASE_URL = "https://sandbox.safaricom.test"


def _response(status_code: int, body: dict[str, Any], method: str = "POST") -> httpx.Response:
    return httpx.Response(status_code, json=body, request=httpx.Request(method, BASE_URL))


def _token_response(token: str = "token-1", expires_in: int = 3599) -> httpx.Response:
    return _response(200, {"access_token": token, "expires_in": str(expires_in)}, method="GET")


def _accepted() -> httpx.Response:
    return _response(
        200,
        {
            "ConversationID": "AG_20261019_0001",
            "OriginatorConversationID": "12345-67890-1",
            "ResponseCode": "0",
            "ResponseDescription": "Accept the service request successfully.",
        },
    )


@pytest.fixture
def mpesa() -> MpesaClient:
    client = MpesaClient(
        base_url=BASE_URL,
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        initiator_name="testapi",
        security_credential="credential",
        callback_base_url="https://campus-hub.test/",
        timeout_seconds=5,
        token_safety_margin_seconds=60,
    )
    client._client = AsyncMock(spec=httpx.AsyncClient)
    client._client.get.return_value = _token_response()
    client._client.post.return_value = _accepted()
    return client


@pytest.mark.unit
class TestAccessToken:
    async def test_token_is_cached(self, mpesa: MpesaClient) -> None:
        assert await mpesa.get_access_token() == "token-1"
        assert await mpesa.get_access_token() == "token-1"
        assert mpesa._client.get.await_count == 1

        call = mpesa._client.get.await_args
        assert call.args == ("/oauth/v1/generate",)
        assert call.kwargs["params"] == {"grant_type": "client_credentials"}
        assert isinstance(call.kwargs["auth"], httpx.BasicAuth)

    async def test_expiry_applies_safety_margin(self, mpesa: MpesaClient) -> None:
        before = datetime.now(UTC)
        await mpesa.get_access_token()
        cached = mpesa._token_cache["consumer-key"]
        assert cached.expires_at <= before + timedelta(seconds=3599 - 60) + timedelta(seconds=5)
        assert cached.expires_at >= before + timedelta(seconds=3599 - 60)

    async def test_stale_token_is_refreshed(self, mpesa: MpesaClient) -> None:
        mpesa._token_cache["consumer-key"] = CachedToken(
            access_token="old", expires_at=datetime.now(UTC) - timedelta(seconds=1)
        )
        mpesa._client.get.return_value = _token_response("token-2")
        assert await mpesa.get_access_token() == "token-2"

    async def test_concurrent_refresh_is_single_flight(self, mpesa: MpesaClient) -> None:
        async def slow_token(*args: Any, **kwargs: Any) -> httpx.Response:
            await asyncio.sleep(0)
            return _token_response("shared")

        mpesa._client.get.side_effect = slow_token
        tokens = await asyncio.gather(*(mpesa.get_access_token() for _ in range(10)))
        assert set(tokens) == {"shared"}
        assert mpesa._client.get.await_count == 1

    async def test_connection_error_is_auth_failure(self, mpesa: MpesaClient) -> None:
        mpesa._client.get.side_effect = httpx.ConnectError("refused")
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.get_access_token()
        assert exc_info.value.error == "GATEWAY_AUTH_FAILED"
        assert exc_info.value.status_code == 502

    async def test_rejected_credentials(self, mpesa: MpesaClient) -> None:
        mpesa._client.get.return_value = _response(401, {"errorMessage": "Invalid"}, "GET")
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.get_access_token()
        assert exc_info.value.error == "GATEWAY_AUTH_FAILED"

    async def test_malformed_token_body(self, mpesa: MpesaClient) -> None:
        mpesa._client.get.return_value = _response(200, {"token": "x"}, "GET")
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.get_access_token()
        assert exc_info.value.error == "GATEWAY_AUTH_FAILED"
        assert "consumer-key" not in mpesa._token_cache


@pytest.mark.unit
class TestRequests:
    async def test_b2c_request_body(self, mpesa: MpesaClient) -> None:
        result = await mpesa.b2c_payment_request(
            amount=450,
            phone_number="254712345678",
            remarks="Payout",
            occasion="task t-1",
            originator_conversation_id="campus-hub-1",
        )
        assert result["ResponseCode"] == "0"

        call = mpesa._client.post.await_args
        assert call.args == ("/mpesa/b2c/v1/paymentrequest",)
        assert call.kwargs["headers"] == {"Authorization": "Bearer token-1"}
        body = call.kwargs["json"]
        assert body["CommandID"] == "BusinessPayment"
        assert body["OriginatorConversationID"] == "campus-hub-1"
        assert body["Amount"] == 450
        assert body["PartyA"] == "174379"
        assert body["PartyB"] == "254712345678"
        assert body["InitiatorName"] == "testapi"
        assert body["ResultURL"] == "https://campus-hub.test/api/mpesa/b2c-result"
        assert body["QueueTimeOutURL"] == "https://campus-hub.test/api/mpesa/b2c-timeout"

    async def test_c2b_simulation_body(self, mpesa: MpesaClient) -> None:
        await mpesa.simulate_c2b(amount=500, phone_number="254712345678", bill_ref_number="T1")
        call = mpesa._client.post.await_args
        assert call.args == ("/mpesa/c2b/v1/simulate",)
        assert call.kwargs["json"] == {
            "ShortCode": "174379",
            "CommandID": "CustomerPayBillOnline",
            "Amount": 500,
            "Msisdn": "254712345678",
            "BillRefNumber": "T1",
        }

    async def test_register_urls(self, mpesa: MpesaClient) -> None:
        await mpesa.register_urls()
        body = mpesa._client.post.await_args.kwargs["json"]
        assert body["ConfirmationURL"] == "https://campus-hub.test/api/mpesa/confirmation"
        assert body["ValidationURL"] == "https://campus-hub.test/api/mpesa/validation"

    async def test_token_reused_across_requests(self, mpesa: MpesaClient) -> None:
        await mpesa.register_urls()
        await mpesa.account_balance()
        assert mpesa._client.get.await_count == 1
        assert mpesa._client.post.await_count == 2

    @pytest.mark.parametrize(
        ("error", "request_sent"),
        [
            (httpx.ConnectError("refused"), False),
            (httpx.ConnectTimeout("no route"), False),
            (httpx.ReadTimeout("slow"), True),
            (httpx.RemoteProtocolError("dropped"), True),
        ],
    )
    async def test_transport_errors_are_unavailable(
        self, mpesa: MpesaClient, error: Exception, request_sent: bool
    ) -> None:
        mpesa._client.post.side_effect = error
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.account_balance()
        assert exc_info.value.error == "GATEWAY_UNAVAILABLE"
        assert exc_info.value.details == {
            "operation": "account_balance",
            "request_sent": request_sent,
        }

    async def test_http_error_status_is_rejected(self, mpesa: MpesaClient) -> None:
        mpesa._client.post.return_value = _response(
            400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        )
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.simulate_c2b(amount=0, phone_number="254712345678", bill_ref_number="T1")
        assert exc_info.value.error == "GATEWAY_REJECTED"
        assert exc_info.value.message == "Bad Request - Invalid Amount"

    async def test_nonzero_response_code_is_rejected(self, mpesa: MpesaClient) -> None:
        mpesa._client.post.return_value = _response(
            200, {"ResponseCode": "1", "ResponseDescription": "Insufficient balance"}
        )
        with pytest.raises(ServiceError) as exc_info:
            await mpesa.b2c_payment_request(
                amount=450,
                phone_number="254712345678",
                remarks="Payout",
                occasion="t-1",
                originator_conversation_id="campus-hub-2",
            )
        assert exc_info.value.error == "GATEWAY_REJECTED"
        assert exc_info.value.message == "Insufficient balance"

"""Shared test helpers: configuration files and M-Pesa callback payloads."""

from __future__ import annotations

import itertools
import uuid
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

TEST_JWT_SECRET = "test-secret-with-at-least-thirty-two-bytes"
TEST_SHORTCODE = "174379"

_phone_counter = itertools.count(10_000_000)


def make_config_yaml(tmp_path: Path, *, max_body_size: int = 1048576) -> str:
    """Render a complete service config pointing at files under ``tmp_path``."""
    return f"""\
service:
  name: "campus-hub"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 5000
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "campus-hub.db"}"
auth:
  jwt_secret: "{TEST_JWT_SECRET}"
  token_ttl_seconds: 3600
mpesa:
  base_url: "https://sandbox.example.test"
  consumer_key: "test-consumer-key"
  consumer_secret: "test-consumer-secret"
  shortcode: "{TEST_SHORTCODE}"
  initiator_name: "testapi"
  security_credential: "test-credential"
  callback_base_url: "https://hub.example.test"
  timeout_seconds: 5
  token_safety_margin_seconds: 60
notifications:
  list_limit: 50
request:
  max_body_size: {max_body_size}
"""


def write_config(tmp_path: Path, *, max_body_size: int = 1048576) -> Path:
    """Write the test config to ``tmp_path/config.yaml`` and return its path."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(make_config_yaml(tmp_path, max_body_size=max_body_size))
    return config_path


def unique_phone_number() -> str:
    """A fresh Safaricom-style number in local ``07XXXXXXXX`` form."""
    return f"07{next(_phone_counter):08d}"


def registration_payload(name: str = "Test Student") -> dict[str, Any]:
    suffix = uuid.uuid4().hex[:10]
    return {
        "name": name,
        "email": f"{name.lower().replace(' ', '.')}.{suffix}@students.example.ac.ke",
        "password": "correct-horse",
        "phone_number": unique_phone_number(),
        "university": "University of Nairobi",
        "course": "Computer Science",
    }


def gateway_ack(prefix: str = "AG") -> dict[str, Any]:
    """A successful synchronous gateway response with fresh conversation ids."""
    token = uuid.uuid4().hex[:12]
    return {
        "ConversationID": f"{prefix}_{token}",
        "OriginatorConversationID": f"orig-{token}",
        "ResponseCode": "0",
        "ResponseDescription": "Accept the service request successfully.",
    }


def confirmation_payload(
    task_id: str,
    *,
    trans_id: str = "RKTQDM7W6S",
    amount: str = "500.00",
    msisdn: str = "254712345678",
) -> dict[str, Any]:
    """C2B confirmation as delivered by the gateway."""
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20240115103000",
        "TransAmount": amount,
        "BusinessShortCode": TEST_SHORTCODE,
        "BillRefNumber": f"TASK_{task_id}",
        "InvoiceNumber": "",
        "OrgAccountBalance": "",
        "ThirdPartyTransID": "",
        "MSISDN": msisdn,
        "FirstName": "Jane",
    }


def validation_payload(bill_ref_number: str, amount: str) -> dict[str, Any]:
    return {
        "TransactionType": "Pay Bill",
        "TransID": "RKTQDM7W6T",
        "TransAmount": amount,
        "BusinessShortCode": TEST_SHORTCODE,
        "BillRefNumber": bill_ref_number,
        "MSISDN": "254712345678",
    }


def payout_result_payload(
    gateway_response: dict[str, Any],
    *,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: str = "NLJ41HAY6Q",
) -> dict[str, Any]:
    """B2C result callback matching a prior ``b2c_payment_request`` response."""
    result: dict[str, Any] = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
        "OriginatorConversationID": gateway_response["OriginatorConversationID"],
        "ConversationID": gateway_response["ConversationID"],
        "TransactionID": receipt,
    }
    if result_code == 0:
        result["ResultParameters"] = {
            "ResultParameter": [
                {"Key": "TransactionAmount", "Value": 450},
                {"Key": "TransactionReceipt", "Value": receipt},
                {"Key": "ReceiverPartyPublicName", "Value": "254712345678 - Jane Doe"},
            ]
        }
    return {"Result": result}


def payout_timeout_payload(gateway_response: dict[str, Any]) -> dict[str, Any]:
    return {
        "Result": {
            "ResultType": 1,
            "ResultCode": 1,
            "ResultDesc": "The request timed out in the queue.",
            "OriginatorConversationID": gateway_response["OriginatorConversationID"],
            "ConversationID": gateway_response["ConversationID"],
        }
    }

"""Unit tests for bearer token issuing and validation."""

from __future__ import annotations

import pytest
from freezegun import freeze_time

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.services.token_validator import TokenValidator

SECRET = "unit-test-secret-with-at-least-32-bytes"


@pytest.mark.unit
def test_round_trip() -> None:
    validator = TokenValidator(secret=SECRET, ttl_seconds=60)
    token = validator.issue_token("u-123")
    assert validator.validate_token(token) == "u-123"


@pytest.mark.unit
def test_expired_token_rejected() -> None:
    validator = TokenValidator(secret=SECRET, ttl_seconds=60)
    with freeze_time("2025-01-01 00:00:00") as frozen:
        token = validator.issue_token("u-123")
        frozen.tick(delta=61)
        with pytest.raises(ServiceError) as exc_info:
            validator.validate_token(token)
    assert exc_info.value.error == "UNAUTHORIZED"
    assert exc_info.value.status_code == 401


@pytest.mark.unit
def test_token_from_other_secret_rejected() -> None:
    issuer = TokenValidator(secret="another-secret-that-is-also-32-bytes-long", ttl_seconds=60)
    validator = TokenValidator(secret=SECRET, ttl_seconds=60)
    with pytest.raises(ServiceError) as exc_info:
        validator.validate_token(issuer.issue_token("u-123"))
    assert exc_info.value.error == "UNAUTHORIZED"


@pytest.mark.unit
def test_tampered_token_rejected() -> None:
    validator = TokenValidator(secret=SECRET, ttl_seconds=60)
    header, payload, signature = validator.issue_token("u-123").split(".")
    forged = ".".join([header, payload, signature[:-4] + "AAAA"])
    with pytest.raises(ServiceError):
        validator.validate_token(forged)


@pytest.mark.unit
@pytest.mark.parametrize("token", ["", "garbage", "a.b.c", "a.b"])
def test_malformed_tokens_rejected(token: str) -> None:
    validator = TokenValidator(secret=SECRET, ttl_seconds=60)
    with pytest.raises(ServiceError) as exc_info:
        validator.validate_token(token)
    assert exc_info.value.status_code == 401

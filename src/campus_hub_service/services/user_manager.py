"""User registration, login and profile lookup."""

from __future__ import annotations

import base64
import hmac
import os
import re
import uuid
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.logging import get_logger
from campus_hub_service.services.phone import normalize_phone_number
from campus_hub_service.services.task_store import now_iso
from campus_hub_service.services.user_store import DuplicateUserError

if TYPE_CHECKING:
    from campus_hub_service.services.token_validator import TokenValidator
    from campus_hub_service.services.user_store import UserStore

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MIN_PASSWORD_LENGTH = 6
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_LENGTH = 32
_SALT_BYTES = 16


def _scrypt(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_SCRYPT_LENGTH, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def hash_password(password: str) -> str:
    """Return ``scrypt$<salt>$<key>`` with base64 fields."""
    salt = os.urandom(_SALT_BYTES)
    key = _scrypt(salt).derive(password.encode("utf-8"))
    return "scrypt${}${}".format(
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(key).decode("ascii"),
    )


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a stored scrypt hash."""
    try:
        scheme, salt_b64, key_b64 = password_hash.split("$")
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(key_b64)
    except ValueError:
        return False
    if not hmac.compare_digest(scheme, "scrypt"):
        return False
    try:
        _scrypt(salt).verify(password.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


def _require_string(data: dict[str, Any], field_name: str, max_length: int) -> str:
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


def _optional_string(data: dict[str, Any], field_name: str, max_length: int) -> str | None:
    if data.get(field_name) is None:
        return None
    return _require_string(data, field_name, max_length)


def _public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "user_id": user["user_id"],
        "name": user["name"],
        "email": user["email"],
        "phone_number": user["phone_number"],
        "university": user["university"],
        "course": user["course"],
        "rating": user["rating"],
        "tasks_completed": user["tasks_completed"],
        "created_at": user["created_at"],
    }


class UserManager:
    """Account registration and login. Passwords are stored as scrypt hashes."""

    def __init__(self, store: UserStore, token_validator: TokenValidator) -> None:
        self._store = store
        self._token_validator = token_validator
        self._logger = get_logger(__name__)

    def register(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create an account and return ``{"token", "user"}``.

        Raises:
            ServiceError: VALIDATION_ERROR, INVALID_PHONE_NUMBER, USER_ALREADY_EXISTS
        """
        name = _require_string(data, "name", 100)
        email = _require_string(data, "email", 254).lower()
        if _EMAIL_RE.match(email) is None:
            raise ServiceError(
                "VALIDATION_ERROR", "Email address is not valid", 400, {"field": "email"}
            )

        password = data.get("password")
        if not isinstance(password, str) or len(password) < _MIN_PASSWORD_LENGTH:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Password must be at least {_MIN_PASSWORD_LENGTH} characters",
                400,
                {"field": "password"},
            )

        phone_raw = _require_string(data, "phone_number", 32)
        phone_number = normalize_phone_number(phone_raw)
        university = _optional_string(data, "university", 200)
        course = _optional_string(data, "course", 200)

        user = {
            "user_id": f"u-{uuid.uuid4()}",
            "name": name,
            "email": email,
            "password_hash": hash_password(password),
            "phone_number": phone_number,
            "university": university,
            "course": course,
            "rating": 0.0,
            "tasks_completed": 0,
            "created_at": now_iso(),
        }
        try:
            self._store.insert_user(user)
        except DuplicateUserError as exc:
            raise ServiceError(
                "USER_ALREADY_EXISTS",
                str(exc),
                409,
                {"field": exc.field},
            ) from exc

        self._logger.info("User registered", extra={"user_id": user["user_id"]})
        return {
            "token": self._token_validator.issue_token(str(user["user_id"])),
            "user": _public_user(user),
        }

    def login(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Authenticate with email and password and return ``{"token", "user"}``.

        Raises:
            ServiceError: VALIDATION_ERROR, INVALID_CREDENTIALS (401)
        """
        email = _require_string(data, "email", 254).lower()
        password = data.get("password")
        if not isinstance(password, str) or len(password) < 1:
            raise ServiceError(
                "VALIDATION_ERROR", "Password is required", 400, {"field": "password"}
            )

        user = self._store.get_user_by_email(email)
        if user is None or not verify_password(password, str(user["password_hash"])):
            raise ServiceError("INVALID_CREDENTIALS", "Invalid email or password", 401, {})

        return {
            "token": self._token_validator.issue_token(str(user["user_id"])),
            "user": _public_user(user),
        }

    def get_profile(self, user_id: str) -> dict[str, Any]:
        """
        Return the public profile of a user.

        Raises:
            ServiceError: USER_NOT_FOUND
        """
        user = self._store.get_user(user_id)
        if user is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {})
        return _public_user(user)

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        user = self._store.get_user(user_id)
        return None if user is None else _public_user(user)

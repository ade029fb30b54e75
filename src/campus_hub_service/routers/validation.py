"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from campus_hub_service.core.exceptions import ServiceError
from campus_hub_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_json_body(request: Request) -> dict[str, Any]:
    """Read and parse the request body. An empty body is an empty object."""
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer`` header."""
    if authorization is None:
        raise ServiceError("UNAUTHORIZED", "Missing Authorization header", 401, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError("UNAUTHORIZED", "Bearer token must not be empty", 401, {})

    return token


def authenticate(request: Request) -> str:
    """Validate the bearer token of a request and return the caller's user id."""
    token = extract_bearer_token(request.headers.get("authorization"))
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return state.token_validator.validate_token(token)


def parse_int_query(
    request: Request,
    name: str,
    *,
    default: int | None,
    minimum: int,
    maximum: int | None = None,
) -> int | None:
    """Parse an optional integer query parameter within bounds."""
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be an integer", 400, {}) from exc
    if value < minimum:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be >= {minimum}", 400, {})
    if maximum is not None and value > maximum:
        raise ServiceError("VALIDATION_ERROR", f"{name} must be <= {maximum}", 400, {})
    return value

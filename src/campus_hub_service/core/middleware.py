"""ASGI middleware for request validation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

from campus_hub_service.logging import get_logger
from campus_hub_service.services.payment_manager import CALLBACK_ACK

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


_JSON_VALIDATION_ENDPOINTS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("POST", re.compile(r"^/api/auth/(register|login)$")),
    ("POST", re.compile(r"^/api/tasks$")),
    ("POST", re.compile(r"^/api/tasks/[^/]+/(apply|assign)$")),
    ("POST", re.compile(r"^/api/messages$")),
    ("POST", re.compile(r"^/api/mpesa/(simulate-c2b|b2c-payment)$")),
)

# Gateway callbacks are always acknowledged, even when oversized.
_CALLBACK_ENDPOINT = re.compile(
    r"^/api/mpesa/(confirmation|validation|b2c-result|b2c-timeout|balance-result|balance-timeout)$"
)

logger = get_logger(__name__)


class RequestValidationMiddleware:
    """
    ASGI middleware that validates Content-Type and body size.

    Runs before FastAPI routes. Returns 415 for a non-JSON content type on
    JSON-bodied endpoints and 413 for oversized request bodies. Gateway
    callback endpoints skip the content-type check, and an oversized callback
    is logged and acknowledged without reaching the route.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))

        if method not in ("POST", "PUT", "PATCH"):
            await self.app(scope, receive, send)
            return

        path = cast("str", scope.get("path", ""))
        raw_headers = cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        headers: dict[bytes, bytes] = dict(raw_headers)
        content_type = headers.get(b"content-type", b"").decode().lower()

        is_callback = method == "POST" and _CALLBACK_ENDPOINT.match(path) is not None
        expects_json = any(
            candidate_method == method and pattern.match(path) is not None
            for candidate_method, pattern in _JSON_VALIDATION_ENDPOINTS
        )

        # Unknown endpoint/method combos should be handled by router as 404/405.
        if not expects_json and not is_callback:
            await self.app(scope, receive, send)
            return

        if expects_json and not content_type.startswith("application/json"):
            response = JSONResponse(
                status_code=415,
                content={
                    "error": "UNSUPPORTED_MEDIA_TYPE",
                    "message": "Content-Type must be application/json",
                    "details": {},
                },
            )
            await response(scope, receive, send)
            return

        # Read and buffer body, checking size
        body_parts: list[bytes] = []
        body_size = 0

        while True:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            body_parts.append(chunk)
            body_size += len(chunk)

            if body_size > self.max_body_size:
                if is_callback:
                    logger.warning(
                        "Oversized gateway callback dropped",
                        extra={"path": path, "max_body_size": self.max_body_size},
                    )
                    response = JSONResponse(status_code=200, content=dict(CALLBACK_ACK))
                    await response(scope, receive, send)
                    return
                response = JSONResponse(
                    status_code=413,
                    content={
                        "error": "PAYLOAD_TOO_LARGE",
                        "message": "Request body exceeds maximum allowed size",
                        "details": {},
                    },
                )
                await response(scope, receive, send)
                return

            if not message.get("more_body", False):
                break

        # Replay buffered body for downstream app
        full_body = b"".join(body_parts)
        body_sent = False

        async def buffered_receive() -> dict[str, Any]:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": full_body, "more_body": False}
            return {"type": "http.disconnect"}

        await self.app(scope, buffered_receive, send)

"""Bearer token issuing and validation."""

from __future__ import annotations

import time

from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

from campus_hub_service.core.exceptions import ServiceError

_ALGORITHM = "HS256"


def _unauthorized(message: str) -> ServiceError:
    return ServiceError("UNAUTHORIZED", message, 401, {})


class TokenValidator:
    """Issues HS256 JWTs carrying the user id in ``sub`` and validates them."""

    def __init__(self, secret: str, ttl_seconds: int) -> None:
        self._key = OctKey.import_key(secret)
        self._ttl_seconds = ttl_seconds
        self._claims_registry = jwt.JWTClaimsRegistry(
            sub={"essential": True},
            exp={"essential": True},
        )

    def issue_token(self, user_id: str) -> str:
        """Sign an access token for ``user_id``."""
        issued_at = int(time.time())
        claims = {"sub": user_id, "iat": issued_at, "exp": issued_at + self._ttl_seconds}
        return jwt.encode({"alg": _ALGORITHM}, claims, self._key)

    def validate_token(self, token: str) -> str:
        """
        Verify signature and expiry and return the user id.

        Raises:
            ServiceError: UNAUTHORIZED (401) for any malformed, forged or expired token
        """
        if not token:
            raise _unauthorized("Bearer token must not be empty")

        try:
            decoded = jwt.decode(token, self._key, algorithms=[_ALGORITHM])
            self._claims_registry.validate(decoded.claims)
        except (JoseError, ValueError) as exc:
            raise _unauthorized("Invalid or expired token") from exc

        subject = decoded.claims.get("sub")
        if not isinstance(subject, str) or len(subject) < 1:
            raise _unauthorized("Token subject is missing")
        return subject

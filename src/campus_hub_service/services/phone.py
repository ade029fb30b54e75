"""Kenyan mobile number normalization for the M-Pesa gateway."""

from __future__ import annotations

import re

from campus_hub_service.core.exceptions import ServiceError

_STRIP_PATTERN = re.compile(r"[\s\-+]")
_CANONICAL_PATTERN = re.compile(r"^254[71]\d{8}$")


def _invalid(phone_number: str) -> ServiceError:
    return ServiceError(
        "INVALID_PHONE_NUMBER",
        "Phone number must be a Safaricom (07xx) or Airtel (01xx) number",
        400,
        {"phone_number": phone_number},
    )


def normalize_phone_number(phone_number: str) -> str:
    """
    Convert a user-entered number to ``254XXXXXXXXX``.

    Accepts ``0712345678``, ``+254 712 345 678``, ``254712345678`` and
    the bare ``712345678`` form. Anything else raises INVALID_PHONE_NUMBER.
    """
    cleaned = _STRIP_PATTERN.sub("", phone_number)

    if cleaned.startswith("254"):
        normalized = cleaned
    elif cleaned.startswith("0"):
        normalized = "254" + cleaned[1:]
    elif cleaned.startswith(("7", "1")):
        normalized = "254" + cleaned
    else:
        raise _invalid(phone_number)

    if _CANONICAL_PATTERN.match(normalized) is None:
        raise _invalid(phone_number)
    return normalized


def is_valid_phone_number(phone_number: str) -> bool:
    """Return True if the number normalizes to a canonical mobile number."""
    try:
        normalize_phone_number(phone_number)
    except ServiceError:
        return False
    return True

# fieldops/core/phone.py
"""Indonesian mobile number validation and normalisation."""
from __future__ import annotations

import re

from fieldops.core.errors import ValidationError

_PHONE_RE = re.compile(r"^(\+62|62|0)[0-9]{9,13}$")
_STRIP_RE = re.compile(r"[\s\-().]")


def is_valid_phone(raw: str | None) -> bool:
    if not raw:
        return False
    return bool(_PHONE_RE.match(_STRIP_RE.sub("", raw)))


def normalize_phone(raw: str | None) -> str:
    """
    Validate and normalise to the domestic ``08…`` form.

    ``+62 812-3456-789`` -> ``08123456789``

    Raises:
        ValidationError: if the number is not an Indonesian mobile number
    """
    cleaned = _STRIP_RE.sub("", raw or "")
    if not _PHONE_RE.match(cleaned):
        raise ValidationError(
            "Invalid phone number. Use the format 08123456789 or +628123456789."
        )
    if cleaned.startswith("+62"):
        return "0" + cleaned[3:]
    if cleaned.startswith("62"):
        return "0" + cleaned[2:]
    return cleaned


def mask_phone(phone: str | None) -> str:
    """0812***789 style masking for logs and admin notices."""
    if not phone:
        return "***"
    if len(phone) <= 6:
        return "***"
    return f"{phone[:4]}***{phone[-3:]}"

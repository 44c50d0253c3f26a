from __future__ import annotations

import re
from typing import Any

from otcauth.service.errors import ValidationError

# E.164: "+", a non-zero leading digit, then 6 to 14 more digits
PHONE_NUMBER_PATTERN = re.compile(r"\+[1-9]\d{6,14}", re.ASCII)


def validate_phone_number(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return PHONE_NUMBER_PATTERN.fullmatch(value) is not None


def ensure_phone_number(value: Any) -> str:
    """Return ``value`` unchanged or raise ``ValidationError``."""
    if not validate_phone_number(value):
        raise ValidationError(
            "invalid phone number format",
            detail={"field": "phone_number", "expected": "+[1-9] followed by 6-14 digits"},
        )
    return value

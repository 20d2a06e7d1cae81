"""
Phone Number Helpers

Normalization to E.164 and masking for logs and user-facing responses.
"""

import re

_NON_DIGITS = re.compile(r"\D")

# E.164 allows at most 15 digits; anything shorter than 10 isn't dialable here
MIN_DIGITS = 10
MAX_DIGITS = 15


def normalize_phone_number(raw: str | None) -> str | None:
    """
    Normalize a user-entered number to E.164.

    Ten digits are treated as North American and get a ``+1`` prefix; any
    other length gets a bare ``+``.

    Returns:
        The E.164 number, or None if the input can't be a phone number
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) < MIN_DIGITS or len(digits) > MAX_DIGITS:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def mask_phone_number(number: str | None) -> str:
    """'+15551234567' -> '***-***-4567'."""
    digits = _NON_DIGITS.sub("", number or "")
    if len(digits) < 4:
        return "***-***-****"
    return f"***-***-{digits[-4:]}"

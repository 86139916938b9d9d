"""
CallRoute - Telephony Privacy Utilities

Phone number masking and E.164 validation.

IMPORTANT:
    Raw caller numbers must NEVER be logged in cleartext.
    All phone handling for logs and session records uses these utilities.
"""

import re
from typing import Optional


_E164_PATTERN = re.compile(r'^\+[1-9]\d{7,14}$')
_FORMATTING_CHARS = re.compile(r'[\s\-().]')


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    Mask a phone number for privacy.

    Examples:
        +14155551234 → ***34
        5551234      → ***34
        None         → unknown
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def normalize_e164(number: Optional[str]) -> Optional[str]:
    """
    Strip display formatting and return the E.164 form, or None if malformed.

    Examples:
        "+1 (415) 555-1234" → "+14155551234"
        "4155551234"        → None (no country code)
        "sip:alice@example" → None
    """
    if not number:
        return None

    candidate = _FORMATTING_CHARS.sub('', str(number).strip())

    if not _E164_PATTERN.match(candidate):
        return None

    return candidate


def is_e164(number: Optional[str]) -> bool:
    """Check whether a value is already a well-formed E.164 number."""
    return bool(number) and bool(_E164_PATTERN.match(number))

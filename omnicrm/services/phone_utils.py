"""
Phone number utilities for OmniCRM.

Provides normalization to E.164 format and the trailing-digit key used
when matching numbers recorded with different country prefixes.
"""
import re
from typing import Optional


def digits_only(raw: Optional[str]) -> str:
    """Strip everything but digits."""
    if not raw:
        return ""
    return re.sub(r'\D', '', raw)


def normalize_phone(raw: str) -> Optional[str]:
    """
    Normalize phone number to E.164 format.

    Args:
        raw: Raw phone number in any common format

    Returns:
        E.164 formatted phone (+1XXXXXXXXXX) or None if invalid

    Examples:
        >>> normalize_phone("(415) 555-0134")
        '+14155550134'
        >>> normalize_phone("+44 7700 900123")
        '+447700900123'
        >>> normalize_phone("123")
        None
    """
    digits = digits_only(raw)
    if not digits:
        return None

    if len(digits) == 10:
        # US number without country code
        return f"+1{digits}"
    elif len(digits) == 11 and digits[0] == '1':
        return f"+{digits}"
    elif len(digits) >= 11:
        # International number
        return f"+{digits}"
    else:
        return None


def phone_match_key(raw: Optional[str], trailing_digits: int = 10) -> Optional[str]:
    """
    Key for comparing two numbers regardless of country code or formatting.

    Numbers shorter than seven digits are too ambiguous to compare and
    yield None.

    Examples:
        >>> phone_match_key("+1 (415) 555-0134")
        '4155550134'
        >>> phone_match_key("415.555.0134")
        '4155550134'
    """
    digits = digits_only(raw)
    if len(digits) < 7:
        return None
    return digits[-trailing_digits:]


def is_valid_phone(phone: str) -> bool:
    """
    Check if a string is a valid E.164 phone number.
    """
    if not phone:
        return False
    # E.164: starts with +, followed by 7-15 digits
    return bool(re.match(r'^\+[1-9]\d{6,14}$', phone))

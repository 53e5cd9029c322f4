"""
Datetime utilities for OmniCRM services.

All timestamps are stored as UTC ISO-8601 strings so that lexical order in
SQLite matches chronological order.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_iso(dt: Optional[datetime]) -> Optional[str]:
    """Normalize to UTC and format for storage (fixed width, so it sorts as text)."""
    if dt is None:
        return None
    return make_aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse the timestamp shapes platforms hand us into an aware datetime.

    Accepts ISO strings (with or without "Z"), epoch seconds (including
    chat-style "1718000000.000200" strings) and datetimes.

    Examples:
        >>> parse_timestamp("2024-06-01T12:00:00Z")
        datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)
        >>> parse_timestamp(0)
        datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return make_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    text = str(value).strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    return make_aware(datetime.fromisoformat(text.replace("Z", "+00:00")))

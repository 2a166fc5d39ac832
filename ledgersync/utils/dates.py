"""Timezone-aware timestamp helpers and Xero date parsing."""

import re
from datetime import date, datetime, timezone
from typing import Any, Optional

_XERO_DATE_RE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_xero_date(value: Any) -> Optional[datetime]:
    """
    Parse a date as returned by the Xero API.

    Xero JSON carries dates either in the Microsoft JSON form
    ``/Date(1690484980033+0000)/`` (milliseconds since epoch, the offset is
    informational) or as ISO-8601 strings (``DateString`` fields).

    Args:
        value: Raw value from a Xero payload

    Returns:
        Aware UTC datetime, or None when the value is empty

    Raises:
        ValueError: If the value is present but not a recognised date
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text = str(value).strip()
    match = _XERO_DATE_RE.match(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_modified_since(value: datetime) -> str:
    """Format a watermark for the If-Modified-Since header Xero expects."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S")

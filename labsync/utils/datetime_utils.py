"""DateTime helpers shared by the store, the Google client and the reconciler."""

from datetime import datetime
from typing import Optional

import dateutil.parser
import pytz


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (that is how the store keeps them).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to naive UTC for storage."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def isoformat_utc(value: datetime) -> str:
    """ISO 8601 string with a trailing Z, e.g. 2024-01-02T10:00:00Z."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp or a bare YYYY-MM-DD date into aware UTC.

    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    try:
        parsed = dateutil.parser.isoparse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    return ensure_utc(parsed)

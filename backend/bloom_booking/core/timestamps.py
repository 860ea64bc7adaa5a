"""
Canonical time helpers.

Slot times are stored once, as integer epoch seconds. Every display value is
derived from those integers on read; nothing here converts in the other
direction except ``unix_from_datetime``, which the sync uses to compute the
canonical value from the provider's display timestamp.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytz

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_SECOND = timedelta(seconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_unix() -> int:
    return unix_from_datetime(utc_now())


def unix_from_datetime(value: datetime) -> int:
    """
    floor(epoch_millis / 1000) for an aware datetime.

    Naive datetimes are interpreted as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_SECOND


def datetime_from_unix(value: int) -> datetime:
    return EPOCH + timedelta(seconds=int(value))


def parse_iso8601(value: str) -> datetime:
    """Parse an ISO-8601 instant, accepting a trailing ``Z``."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def display_in_zone(value: int, tz_name: Optional[str]) -> datetime:
    """Render epoch seconds in the named zone (UTC when no zone is given)."""
    instant = datetime_from_unix(value)
    if not tz_name:
        return instant
    return instant.astimezone(pytz.timezone(tz_name))


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)

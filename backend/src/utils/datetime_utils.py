"""
Datetime utilities for consistent timezone handling across the application.

All instants are handled internally as timezone-aware UTC datetimes. Local
wall-clock values (a date, a time and an IANA zone name) are converted to
absolute instants at the boundary, and zones are only re-attached when
formatting for display or for an external provider.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = timezone.utc


def utc_now() -> datetime:
    """
    Get the current instant as a timezone-aware UTC datetime.

    Returns:
        Current datetime with UTC timezone
    """
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize an aware datetime to UTC.

    Naive datetimes are rejected: a wall-clock value without a zone cannot be
    placed on the timeline unambiguously.

    Args:
        dt: Timezone-aware datetime

    Returns:
        The same instant expressed in UTC, or None if input is None

    Raises:
        ValueError: If the datetime is naive
    """
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f"Naive datetime is not allowed: {dt.isoformat()}")
    return dt.astimezone(UTC)


def get_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the zone is unknown
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


def localize(day: date, wall_time: time, tz_name: str) -> datetime:
    """
    Convert a local date and wall-clock time in a zone to a UTC instant.

    Ambiguous times (DST fall-back) resolve to the first occurrence; times
    that do not exist (DST spring-forward gap) land after the gap.

    Args:
        day: Local calendar date
        wall_time: Local wall-clock time
        tz_name: IANA timezone name, e.g. "America/Chicago"

    Returns:
        Timezone-aware UTC datetime
    """
    zone = get_zone(tz_name)
    local = datetime.combine(day, wall_time).replace(tzinfo=zone)
    return local.astimezone(UTC)


def _require_datetime(dt: datetime) -> datetime:
    aware = ensure_utc(dt)
    if aware is None:
        raise ValueError("Datetime value is required")
    return aware


def to_zone(dt: datetime, tz_name: str) -> datetime:
    """Express an aware instant in the given zone for display."""
    aware = _require_datetime(dt)
    return aware.astimezone(get_zone(tz_name))


def parse_iso_datetime(value: str) -> datetime:
    """
    Parse an ISO-8601 string into an aware UTC datetime.

    Accepts a trailing "Z". Strings without an offset are rejected.

    Raises:
        ValueError: If the string is not a valid ISO-8601 instant with offset
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Datetime value is required")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"Datetime must include a UTC offset: {value}")
    return parsed.astimezone(UTC)


def to_epoch_seconds(dt: datetime) -> int:
    """Convert an aware datetime to Unix epoch seconds."""
    aware = _require_datetime(dt)
    return int(aware.timestamp())


def from_epoch_seconds(value: int | float) -> datetime:
    """Convert Unix epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=UTC)


def format_rfc3339(dt: datetime) -> str:
    """Format an aware datetime as RFC3339 in UTC, e.g. 2024-01-15T14:00:00Z."""
    aware = _require_datetime(dt)
    return aware.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time_string(value: str) -> time:
    """
    Parse a wall-clock time in HH:MM or HH:MM:SS format.

    Raises:
        ValueError: If the format is invalid
    """
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).time()
        except (TypeError, ValueError):
            continue
    raise ValueError(f"Invalid time format: {value}. Expected HH:MM")

"""UTC-everywhere time handling. Eliminates timezone bugs at the source."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {tz_name}")


def to_local(dt: datetime, tz_name: str) -> datetime:
    """
    Convert UTC datetime to local timezone for display.

    ONLY use this at display boundaries and for calendar-day bucketing.
    All internal operations should remain in UTC.

    Args:
        dt: UTC datetime
        tz_name: IANA timezone name (e.g., "Europe/Belgrade")

    Raises:
        ValueError: If datetime is naive or timezone name is invalid
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime. Datetime must be timezone-aware."
        )

    return dt.astimezone(_zone(tz_name))


def local_day_bounds(day: date, tz_name: str) -> tuple[datetime, datetime]:
    """
    UTC interval covering one calendar day in a local timezone.

    The interval is half-open: start <= t < end. DST days are 23 or 25
    hours long; both bounds are computed from local midnight so the
    interval follows the wall clock.

    Args:
        day: Local calendar day
        tz_name: IANA timezone name

    Returns:
        (start_utc, end_utc)
    """
    zone = _zone(tz_name)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)

"""Station-local time helpers.

A station day rolls over at local midnight; every per-day entity is keyed by
the local calendar date string (``YYYY-MM-DD``).
"""

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from heatline.settings import STATION_TIMEZONE


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_zone(timezone: str | None) -> ZoneInfo:
    """Return the named zone, falling back to the station default."""
    try:
        return ZoneInfo((timezone or "").strip() or STATION_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(STATION_TIMEZONE)


def day_key(moment: datetime, timezone: str | None = STATION_TIMEZONE) -> str:
    """Local calendar day (YYYY-MM-DD) of ``moment`` in ``timezone``."""
    return ensure_utc(moment).astimezone(resolve_zone(timezone)).strftime("%Y-%m-%d")


def format_local(moment: datetime | None, timezone: str | None = STATION_TIMEZONE) -> str | None:
    if moment is None:
        return None
    return ensure_utc(moment).astimezone(resolve_zone(timezone)).strftime("%Y-%m-%d %I:%M:%S %p %Z")


def local_hour(moment: datetime, timezone: str | None = STATION_TIMEZONE) -> int:
    return ensure_utc(moment).astimezone(resolve_zone(timezone)).hour


def parse_day_key(value: str) -> date:
    return date.fromisoformat(value)


def add_days(value: str, days: int) -> str:
    return (parse_day_key(value) + timedelta(days=days)).isoformat()

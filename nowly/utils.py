from datetime import date, datetime, timedelta, timezone
import logging
import zoneinfo

from . import config

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def today(tz_name: str | None = None) -> date:
    """Return the current calendar date in the named timezone.

    Falls back to UTC when the timezone is unknown so a misconfigured
    DEFAULT_TIMEZONE never breaks a read path.
    """
    name = tz_name or config.DEFAULT_TIMEZONE
    try:
        tz = zoneinfo.ZoneInfo(name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %s; using UTC for today()", name)
        tz = timezone.utc
    return datetime.now(tz).date()


def to_date_key(d: date | datetime) -> str:
    """ISO date string (YYYY-MM-DD) used when comparing scheduled dates."""
    if isinstance(d, datetime):
        d = d.date()
    return d.isoformat()


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)


def as_date(value) -> date | None:
    """Coerce a date, datetime or ISO string into a date. None stays None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"cannot convert {type(value).__name__} to date")

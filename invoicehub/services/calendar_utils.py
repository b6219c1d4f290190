"""
Calendar helpers for week attribution and invoice dates.

Every function works on the business-local calendar date. A ``YYYY-MM-DD``
string is split into its components and never handed to a UTC-based parser,
and timezone-aware datetimes are converted into the business timezone before
their date is taken, so a record near midnight stays in its own day and week.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple, Union

import pytz

from ..config import settings


DateLike = Union[date, datetime, str]


def _tz(timezone_str: Optional[str] = None):
    return pytz.timezone(timezone_str or settings.tz_default)


def parse_local_date(date_str: str) -> date:
    """
    Parse a ``YYYY-MM-DD`` string into a local calendar date.

    Args:
        date_str: Date string, optionally followed by a time part
            (``2026-02-06T00:30:00`` keeps the 6th).

    Returns:
        The calendar date written in the string

    Raises:
        ValueError: if the string is not a valid date
    """
    if not isinstance(date_str, str):
        raise ValueError(f"Expected YYYY-MM-DD string, got {type(date_str).__name__}")
    parts = date_str.strip()[:10].split("-")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid date string: {date_str!r}")
    year, month, day = (int(p) for p in parts)
    return date(year, month, day)


def local_noon(value: DateLike, timezone_str: Optional[str] = None) -> datetime:
    """Anchor a calendar date at 12:00 in the business timezone (DST safe)."""
    d = to_local_date(value, timezone_str)
    return _tz(timezone_str).localize(datetime.combine(d, time(12, 0)))


def to_local_date(value: DateLike, timezone_str: Optional[str] = None) -> date:
    """
    Return the local calendar date of *value*.

    Naive datetimes are taken as already local; aware datetimes are
    converted into the business timezone first.
    """
    if isinstance(value, str):
        return parse_local_date(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_tz(timezone_str))
        return value.date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Unsupported date value: {value!r}")


def today_local(timezone_str: Optional[str] = None) -> date:
    return datetime.now(_tz(timezone_str)).date()


def format_date_string(value: DateLike) -> str:
    d = to_local_date(value)
    return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"


def _nearest_thursday(d: date) -> date:
    # Monday=1 .. Sunday=7
    return d + timedelta(days=4 - d.isoweekday())


def get_iso_week(value: DateLike) -> int:
    """ISO-8601 week number of the local date."""
    d = to_local_date(value)
    thursday = _nearest_thursday(d)
    return (thursday.timetuple().tm_yday - 1) // 7 + 1


def get_iso_week_year(value: DateLike) -> int:
    """ISO week-year: the year owning the Thursday of the week."""
    return _nearest_thursday(to_local_date(value)).year


def is_date_in_week(date_str: str, calendar_week: int, year: int) -> bool:
    d = parse_local_date(date_str)
    return get_iso_week(d) == calendar_week and get_iso_week_year(d) == year


def iso_weeks_in_year(year: int) -> int:
    """52 or 53; 28 December always falls in the last ISO week of its year."""
    return date(year, 12, 28).isocalendar()[1]


def week_bounds(calendar_week: int, year: int) -> Tuple[date, date]:
    """Monday and Sunday of an ISO week."""
    if calendar_week < 1 or calendar_week > iso_weeks_in_year(year):
        raise ValueError(f"Invalid calendar week: {calendar_week}")
    monday = date.fromisocalendar(year, calendar_week, 1)
    return monday, monday + timedelta(days=6)


def monday_after_week(calendar_week: int, year: int) -> date:
    _, sunday = week_bounds(calendar_week, year)
    return sunday + timedelta(days=1)


def add_days(value: DateLike, days: int) -> date:
    return to_local_date(value) + timedelta(days=days)

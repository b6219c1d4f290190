"""
Work record aggregation.
Net hours per record and week attribution of records by their local date.
"""
import uuid
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.models import WorkRecord
from .calendar_utils import week_bounds, format_date_string, is_date_in_week
from .money import round_money, safe_number, ZERO


def _minutes(hhmm: Optional[str]) -> Optional[int]:
    if not hhmm:
        return None
    try:
        hours, minutes = hhmm.strip()[:5].split(":")
        return int(hours) * 60 + int(minutes)
    except (ValueError, AttributeError):
        return None


def _span(start: Optional[str], end: Optional[str]) -> int:
    s, e = _minutes(start), _minutes(end)
    if s is None or e is None:
        return 0
    if e < s:
        e += 24 * 60  # crosses midnight
    return e - s


def compute_net_hours(
    time_from: str,
    time_to: str,
    breaks: Iterable[Tuple[Optional[str], Optional[str]]] = (),
) -> Decimal:
    """
    Hours between start and end minus break intervals.

    Args:
        time_from: Start time ``HH:MM``
        time_to: End time ``HH:MM``; earlier than the start means the shift ended after midnight
        breaks: Up to two ``(start, end)`` pairs; incomplete pairs are ignored

    Returns:
        Net hours rounded to 2 places, never negative
    """
    worked = _span(time_from, time_to)
    for start, end in list(breaks)[:2]:
        worked -= _span(start, end)
    if worked <= 0:
        return round_money(ZERO)
    return round_money(Decimal(worked) / Decimal(60))


def record_net_hours(record: WorkRecord) -> Decimal:
    return compute_net_hours(
        record.time_from,
        record.time_to,
        [(record.break_start, record.break_end), (record.break2_start, record.break2_end)],
    )


def records_for_week(db: Session, user_id: uuid.UUID, calendar_week: int, year: int) -> List[WorkRecord]:
    """Non-deleted records of the worker whose local date falls in the ISO week."""
    monday, sunday = week_bounds(calendar_week, year)
    rows = (
        db.query(WorkRecord)
        .filter(
            WorkRecord.user_id == user_id,
            WorkRecord.deleted_at.is_(None),
            WorkRecord.date >= format_date_string(monday),
            WorkRecord.date <= format_date_string(sunday),
        )
        .order_by(WorkRecord.date.asc(), WorkRecord.time_from.asc())
        .all()
    )
    return [r for r in rows if is_date_in_week(r.date, calendar_week, year)]


def total_hours_for_week(db: Session, user_id: uuid.UUID, calendar_week: int, year: int) -> Decimal:
    total = ZERO
    for record in records_for_week(db, user_id, calendar_week, year):
        # Stored hours win; records saved without them are derived from their times
        total += safe_number(record.total_hours) or record_net_hours(record)
    return round_money(total)

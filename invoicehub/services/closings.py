"""
Work-period closing workflow.

Transitions: open -> submitted -> approved | returned, and returned -> open.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.models import WorkPeriodClosing, User
from .audit import record_action
from .calendar_utils import iso_weeks_in_year
from .errors import NotFoundError, PersistenceError, ValidationError


logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    "open": {"submitted"},
    "submitted": {"approved", "returned"},
    "returned": {"open"},
    "approved": set(),
}


def find_closing(db: Session, user_id: uuid.UUID, calendar_week: int, year: int) -> Optional[WorkPeriodClosing]:
    return (
        db.query(WorkPeriodClosing)
        .filter(
            WorkPeriodClosing.user_id == user_id,
            WorkPeriodClosing.calendar_week == calendar_week,
            WorkPeriodClosing.year == year,
            WorkPeriodClosing.deleted_at.is_(None),
        )
        .first()
    )


def get_closing(db: Session, closing_id: uuid.UUID) -> WorkPeriodClosing:
    closing = (
        db.query(WorkPeriodClosing)
        .filter(WorkPeriodClosing.id == closing_id, WorkPeriodClosing.deleted_at.is_(None))
        .first()
    )
    if closing is None:
        raise NotFoundError("Work period closing not found")
    return closing


def validate_week(calendar_week: int, year: int) -> None:
    if not 2000 <= int(year) <= 2100:
        raise ValidationError("year is out of range")
    weeks = iso_weeks_in_year(int(year))
    if not 1 <= int(calendar_week) <= weeks:
        raise ValidationError(f"calendar_week must be between 1 and {weeks} for {year}")


def get_or_create_closing(
    db: Session,
    user_id: uuid.UUID,
    calendar_week: int,
    year: int,
    status: str = "open",
    approver: Optional[User] = None,
    commit: bool = True,
) -> WorkPeriodClosing:
    """
    Return the closing for (worker, week, year), creating it when absent.

    A new closing can be created directly as ``approved`` (administrative
    backfill); the approver is then recorded.
    """
    validate_week(calendar_week, year)
    existing = find_closing(db, user_id, calendar_week, year)
    if existing is not None:
        return existing

    now = datetime.now(timezone.utc)
    closing = WorkPeriodClosing(
        user_id=user_id,
        calendar_week=calendar_week,
        year=year,
        status=status,
    )
    if status in ("submitted", "approved"):
        closing.submitted_at = now
    if status == "approved":
        closing.approved_at = now
        closing.approved_by = approver.id if approver else None
    db.add(closing)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        # Created concurrently; the unique index keeps a single row
        existing = find_closing(db, user_id, calendar_week, year)
        if existing is not None:
            return existing
        raise PersistenceError(f"Could not create work period closing: {e.orig}")
    if commit:
        db.commit()
        db.refresh(closing)
    logger.info(
        "closing_created",
        closing_id=str(closing.id),
        user_id=str(user_id),
        calendar_week=calendar_week,
        year=year,
        status=status,
    )
    return closing


def transition_closing(
    db: Session,
    closing: WorkPeriodClosing,
    new_status: str,
    actor: User,
    comment: Optional[str] = None,
) -> WorkPeriodClosing:
    current = closing.status or "open"
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot change closing from {current} to {new_status}")

    now = datetime.now(timezone.utc)
    if new_status == "submitted":
        closing.submitted_at = now
    elif new_status == "approved":
        closing.approved_at = now
        closing.approved_by = actor.id
        closing.return_comment = None
    elif new_status == "returned":
        closing.return_comment = (comment or "").strip() or None
    closing.status = new_status
    closing.updated_at = now

    record_action(
        db, "closing", closing.id, new_status.upper(), actor,
        changes={"status": {"before": current, "after": new_status}},
    )
    db.commit()
    db.refresh(closing)
    logger.info("closing_transition", closing_id=str(closing.id), before=current, after=new_status)
    return closing


def submit_closing(db: Session, closing: WorkPeriodClosing, actor: User) -> WorkPeriodClosing:
    return transition_closing(db, closing, "submitted", actor)


def approve_closing(db: Session, closing: WorkPeriodClosing, actor: User) -> WorkPeriodClosing:
    return transition_closing(db, closing, "approved", actor)


def return_closing(db: Session, closing: WorkPeriodClosing, actor: User, comment: Optional[str] = None) -> WorkPeriodClosing:
    return transition_closing(db, closing, "returned", actor, comment=comment)


def reopen_closing(db: Session, closing: WorkPeriodClosing, actor: User) -> WorkPeriodClosing:
    return transition_closing(db, closing, "open", actor)

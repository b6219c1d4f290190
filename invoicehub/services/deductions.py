"""
Invoice deductions: advance payments and lodging costs.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Advance, Accommodation, Invoice, User
from .audit import record_action
from .calendar_utils import format_date_string, parse_local_date, today_local
from .errors import NotFoundError, ValidationError
from .money import round_money, safe_number, ZERO
from .timesheet import records_for_week


logger = structlog.get_logger(__name__)


# ----- Advances -----

def create_advance(
    db: Session,
    actor: User,
    user_id: uuid.UUID,
    amount,
    date_str: Optional[str] = None,
    note: Optional[str] = None,
) -> Advance:
    amount_d = round_money(safe_number(amount))
    if amount_d <= 0:
        raise ValidationError("Advance amount must be greater than zero")
    if date_str:
        try:
            date_str = format_date_string(parse_local_date(date_str))
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD format")
    else:
        date_str = format_date_string(today_local())
    if db.query(User).filter(User.id == user_id).first() is None:
        raise NotFoundError("Biller not found")

    advance = Advance(
        user_id=user_id,
        amount=amount_d,
        date=date_str,
        note=(note or "").strip() or None,
        created_by=actor.id,
    )
    db.add(advance)
    db.flush()
    record_action(
        db, "advance", advance.id, "CREATE", actor,
        context={"user_id": str(user_id), "amount": str(amount_d), "date": date_str},
    )
    db.commit()
    db.refresh(advance)
    logger.info("advance_created", advance_id=str(advance.id), user_id=str(user_id), amount=str(amount_d))
    return advance


def delete_advance(db: Session, actor: User, advance_id: uuid.UUID) -> Advance:
    """Soft-delete an advance; consumed advances are kept."""
    advance = db.query(Advance).filter(Advance.id == advance_id, Advance.deleted_at.is_(None)).first()
    if advance is None:
        raise NotFoundError("Advance not found")
    if advance.used_in_invoice_id is not None:
        raise ValidationError("Advance has already been applied to an invoice and cannot be deleted")
    advance.deleted_at = datetime.now(timezone.utc)
    record_action(db, "advance", advance.id, "DELETE", actor)
    db.commit()
    return advance


def list_advances(db: Session, user_id: Optional[uuid.UUID] = None) -> List[Advance]:
    query = db.query(Advance).filter(Advance.deleted_at.is_(None))
    if user_id is not None:
        query = query.filter(Advance.user_id == user_id)
    return query.order_by(Advance.date.desc()).all()


def unused_advances(db: Session, user_id: uuid.UUID) -> List[Advance]:
    return (
        db.query(Advance)
        .filter(
            Advance.user_id == user_id,
            Advance.deleted_at.is_(None),
            Advance.used_in_invoice_id.is_(None),
        )
        .order_by(Advance.date.asc())
        .all()
    )


def load_advances_for_invoice(db: Session, user_id: uuid.UUID, advance_ids: Iterable[uuid.UUID]) -> List[Advance]:
    """Load the advances to deduct; each must belong to the biller and still be unused."""
    ids = list(dict.fromkeys(advance_ids or []))
    if not ids:
        return []
    rows = db.query(Advance).filter(Advance.id.in_(ids), Advance.deleted_at.is_(None)).all()
    found = {a.id: a for a in rows}
    missing = [str(i) for i in ids if i not in found]
    if missing:
        raise ValidationError("Advance not found", advance_ids=missing)
    for advance in rows:
        if advance.user_id != user_id:
            raise ValidationError("Advance belongs to a different biller", advance_id=str(advance.id))
        if advance.used_in_invoice_id is not None:
            raise ValidationError("Advance has already been applied to an invoice", advance_id=str(advance.id))
    return [found[i] for i in ids]


def advances_total(advances: Iterable[Advance]) -> Decimal:
    return round_money(sum((safe_number(a.amount) for a in advances), ZERO))


def consume_advances(advances: Iterable[Advance], invoice: Invoice) -> None:
    """Attach advances to the invoice; joins the caller's transaction."""
    for advance in advances:
        if advance.used_in_invoice_id is not None and advance.used_in_invoice_id != invoice.id:
            raise ValidationError("Advance has already been applied to an invoice", advance_id=str(advance.id))
        advance.used_in_invoice_id = invoice.id


# ----- Lodging -----

def lodging_deduction_for_week(db: Session, user_id: uuid.UUID, calendar_week: int, year: int) -> Decimal:
    """
    Lodging cost of the worker for an ISO week.

    Every distinct (date, accommodation) pair among the week's records that
    carry an accommodation reference counts as one night at the
    accommodation's default price.
    """
    nights = {
        (r.date, r.accommodation_id)
        for r in records_for_week(db, user_id, calendar_week, year)
        if r.accommodation_id is not None
    }
    if not nights:
        return round_money(ZERO)
    accommodation_ids = {acc_id for _, acc_id in nights}
    prices = {
        a.id: safe_number(a.default_price_per_night)
        for a in db.query(Accommodation).filter(Accommodation.id.in_(accommodation_ids)).all()
    }
    return round_money(sum((prices.get(acc_id, ZERO) for _, acc_id in nights), ZERO))

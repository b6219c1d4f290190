"""
Guard against generating a second active invoice for one work period.
"""
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from ..models.models import Invoice
from .errors import DuplicateInvoiceError


def find_active_invoice(db: Session, user_id: uuid.UUID, week_closing_id: Optional[uuid.UUID]) -> Optional[Invoice]:
    if week_closing_id is None:
        return None
    return (
        db.query(Invoice)
        .filter(
            Invoice.user_id == user_id,
            Invoice.week_closing_id == week_closing_id,
            Invoice.deleted_at.is_(None),
            Invoice.status != "void",
        )
        .first()
    )


def ensure_no_active_invoice(db: Session, user_id: uuid.UUID, week_closing_id: Optional[uuid.UUID]) -> None:
    existing = find_active_invoice(db, user_id, week_closing_id)
    if existing is not None:
        raise DuplicateInvoiceError(
            "An invoice for this biller and work period has already been generated",
            invoice_id=str(existing.id),
            invoice_number=existing.invoice_number,
        )

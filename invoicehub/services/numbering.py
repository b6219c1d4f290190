"""
Invoice number allocation.

Numbers are derived per (biller, billing class, year) from the highest
number already stored, so two concurrent allocations for the same scope can
derive the same value. The partial unique index ``uq_invoice_number_scope``
rejects the second insert and the generation service retries with a fresh
allocation.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Invoice
from .billing_class import BillingClass, get_policy, foreign_prefixes, resolve_billing_class


logger = structlog.get_logger(__name__)


def existing_numbers(db: Session, user_id: uuid.UUID, billing_class: BillingClass, year: int) -> list:
    """Active invoice numbers of the biller inside the class's prefix for *year*."""
    policy = get_policy(billing_class)
    prefix = policy.prefix_for_year(year)
    query = db.query(Invoice.invoice_number).filter(
        Invoice.user_id == user_id,
        Invoice.invoice_number.like(f"{prefix}%"),
        Invoice.deleted_at.is_(None),
        Invoice.status != "void",
    )
    for other in foreign_prefixes(policy.billing_class):
        query = query.filter(~Invoice.invoice_number.like(f"{other}%"))
    return [row[0] for row in query.order_by(Invoice.invoice_number.desc()).all()]


def latest_sequence(db: Session, user_id: uuid.UUID, billing_class: BillingClass, year: int) -> Optional[int]:
    """Highest trailing sequence among numbers of the class's exact shape, or None."""
    policy = get_policy(billing_class)
    shape = policy.shape_for_year(year)
    best = None
    for number in existing_numbers(db, user_id, policy.billing_class, year):
        match = shape.match(number or "")
        if not match:
            continue
        seq = int(match.group(1))
        if best is None or seq > best:
            best = seq
    return best


def allocate_invoice_number(
    db: Session,
    user_id: uuid.UUID,
    billing_class: "BillingClass | str",
    year: int,
) -> str:
    """
    Derive the next invoice number for the scope.

    Args:
        db: Database session
        user_id: Biller user ID
        billing_class: Billing class deciding prefix and width
        year: Numbering year

    Returns:
        Next number, e.g. ``2026001`` or ``VIK-2026001``
    """
    billing_class = resolve_billing_class(billing_class)
    policy = get_policy(billing_class)
    last = latest_sequence(db, user_id, billing_class, year)
    next_seq = 1 if last is None else last + 1
    number = policy.format_number(year, next_seq)
    logger.debug(
        "invoice_number_allocated",
        user_id=str(user_id),
        billing_class=billing_class.value,
        year=year,
        number=number,
    )
    return number

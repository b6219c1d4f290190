"""
Invoice lifecycle after generation: payment, void, lock, transaction-tax workflow and metrics.
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Invoice, User
from ..schemas.invoices import FinancialMetrics, MetricBucket
from .audit import record_action
from .calendar_utils import parse_local_date, today_local
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .money import safe_number


logger = structlog.get_logger(__name__)

TAX_VERIFIER_ROLES = {"admin", "director", "accountant"}
STORED_FINAL_STATUSES = ("paid", "void")
EFFECTIVE_STATUSES = ("pending", "due_soon", "overdue", "paid", "void")


def effective_status(invoice: Invoice, today: Optional[date] = None) -> str:
    """Display status; ``overdue`` and ``due_soon`` are derived from the due date and never stored."""
    if invoice.status in ("paid", "void"):
        return invoice.status
    today = today or today_local()
    try:
        due = parse_local_date(invoice.due_date)
    except (TypeError, ValueError):
        return invoice.status or "pending"
    days_left = (due - today).days
    if days_left < 0:
        return "overdue"
    if days_left <= settings.due_soon_days:
        return "due_soon"
    return "pending"


def get_invoice(db: Session, invoice_id: uuid.UUID) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.deleted_at.is_(None)).first()
    if invoice is None:
        raise NotFoundError("Invoice not found")
    return invoice


def list_invoices(
    db: Session,
    user_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    year: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    today: Optional[date] = None,
) -> List[Invoice]:
    """Invoices newest first; ``status`` matches the effective status, so ``overdue`` and ``due_soon`` work too."""
    if status and status not in EFFECTIVE_STATUSES:
        raise ValidationError(f"Unknown invoice status: {status}")
    query = db.query(Invoice).filter(Invoice.deleted_at.is_(None))
    if user_id is not None:
        query = query.filter(Invoice.user_id == user_id)
    if year:
        query = query.filter(Invoice.issue_date.like(f"{int(year)}-%"))
    query = query.order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
    if not status:
        return query.offset(offset).limit(limit).all()
    if status in STORED_FINAL_STATUSES:
        return query.filter(Invoice.status == status).offset(offset).limit(limit).all()
    # Derived statuses depend on today's date and are filtered after loading the open invoices
    today = today or today_local()
    open_rows = query.filter(Invoice.status.notin_(STORED_FINAL_STATUSES)).all()
    matching = [i for i in open_rows if effective_status(i, today) == status]
    return matching[offset:offset + limit]


def _audit(db: Session, invoice: Invoice, action: str, actor: User, field: str, before, after) -> None:
    record_action(
        db, "invoice", invoice.id, action, actor,
        changes={field: {"before": before, "after": after}},
        context={"invoice_number": invoice.invoice_number},
    )


def _ensure_unlocked(invoice: Invoice) -> None:
    if invoice.is_locked:
        raise ValidationError("Invoice is locked", invoice_number=invoice.invoice_number)


def _set_status(db: Session, invoice: Invoice, new_status: str, actor: User, action: str) -> Invoice:
    _ensure_unlocked(invoice)
    before = invoice.status
    now = datetime.now(timezone.utc)
    invoice.status = new_status
    invoice.updated_at = now
    if new_status == "paid":
        invoice.paid_at = now
    _audit(db, invoice, action, actor, "status", before, new_status)
    db.commit()
    db.refresh(invoice)
    logger.info("invoice_status_changed", invoice_id=str(invoice.id), before=before, after=new_status)
    return invoice


def mark_paid(db: Session, invoice: Invoice, actor: User) -> Invoice:
    if invoice.status == "void":
        raise ValidationError("A void invoice cannot be paid")
    if invoice.status == "paid":
        return invoice
    return _set_status(db, invoice, "paid", actor, "PAY")


def void_invoice(db: Session, invoice: Invoice, actor: User) -> Invoice:
    """Void an invoice; its work period can be invoiced again and its advances are released."""
    if invoice.status == "void":
        return invoice
    if invoice.status == "paid":
        raise ValidationError("A paid invoice cannot be voided")
    _ensure_unlocked(invoice)
    for advance in invoice.advances:
        advance.used_in_invoice_id = None
    return _set_status(db, invoice, "void", actor, "VOID")


def lock_invoice(db: Session, invoice: Invoice, actor: User) -> Invoice:
    if invoice.is_locked:
        return invoice
    invoice.is_locked = True
    invoice.locked_at = datetime.now(timezone.utc)
    _audit(db, invoice, "LOCK", actor, "is_locked", False, True)
    db.commit()
    db.refresh(invoice)
    return invoice


def unlock_invoice(db: Session, invoice: Invoice, actor: User) -> Invoice:
    if not invoice.is_locked:
        return invoice
    invoice.is_locked = False
    invoice.locked_at = None
    _audit(db, invoice, "UNLOCK", actor, "is_locked", True, False)
    db.commit()
    db.refresh(invoice)
    return invoice


def confirm_tax_payment(db: Session, invoice: Invoice, actor: User) -> Invoice:
    """Biller confirms the transaction tax has been paid."""
    if invoice.user_id != actor.id:
        raise PermissionDeniedError("Only the biller can confirm the tax payment")
    if invoice.tax_payment_status != "pending":
        raise ValidationError(f"Tax payment is already {invoice.tax_payment_status}")
    invoice.tax_payment_status = "confirmed"
    invoice.tax_confirmed_at = datetime.now(timezone.utc)
    invoice.tax_confirmed_by = actor.id
    _audit(db, invoice, "TAX_CONFIRM", actor, "tax_payment_status", "pending", "confirmed")
    db.commit()
    db.refresh(invoice)
    return invoice


def verify_tax_payment(db: Session, invoice: Invoice, actor: User) -> Invoice:
    if not (actor.role_names & TAX_VERIFIER_ROLES):
        raise PermissionDeniedError("Only administrators or accountants can verify tax payments")
    if invoice.tax_payment_status != "confirmed":
        raise ValidationError("Tax payment must be confirmed by the biller first")
    invoice.tax_payment_status = "verified"
    invoice.tax_verified_at = datetime.now(timezone.utc)
    invoice.tax_verified_by = actor.id
    _audit(db, invoice, "TAX_VERIFY", actor, "tax_payment_status", "confirmed", "verified")
    db.commit()
    db.refresh(invoice)
    return invoice


def _add(bucket: MetricBucket, amount: Decimal) -> None:
    bucket.count += 1
    bucket.amount += amount


def financial_metrics(invoices: Iterable[Invoice], today: Optional[date] = None) -> FinancialMetrics:
    """Aggregate counts and amounts; void invoices are excluded."""
    today = today or today_local()
    metrics = FinancialMetrics(
        total_invoiced=MetricBucket(),
        pending_payment=MetricBucket(),
        overdue=MetricBucket(),
        paid=MetricBucket(),
        accounted_total=MetricBucket(),
        accounted_paid=MetricBucket(),
    )
    for invoice in invoices:
        if invoice.status == "void" or invoice.deleted_at is not None:
            continue
        amount = safe_number(invoice.total_amount)
        _add(metrics.total_invoiced, amount)
        status = effective_status(invoice, today)
        if status == "paid":
            _add(metrics.paid, amount)
        elif status == "overdue":
            _add(metrics.overdue, amount)
        else:
            _add(metrics.pending_payment, amount)
        if invoice.is_accounted:
            _add(metrics.accounted_total, amount)
            if status == "paid":
                _add(metrics.accounted_paid, amount)
    return metrics

"""
Invoice generation.

One invocation runs strictly in this order:

    resolve biller + billing class -> duplicate check -> amounts -> dates
    -> number allocation -> insert + commit -> document rendering

The commit is the point of no return. A rendering failure after it is
reported on the result while the invoice row stays; the document can be
rendered again later from the stored record. Every failure before it leaves
no invoice row and consumes no number.
"""
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..documents.invoice_pdf import store_invoice_document
from ..models.models import Advance, BillerProfile, Invoice, Project, User, WorkPeriodClosing
from ..schemas.invoices import GenerateInvoiceRequest, GenerationResult, InvoiceData
from .audit import record_action
from .billing_class import BillingClass, get_policy, resolve_billing_class
from .calendar_utils import add_days, format_date_string, parse_local_date, today_local
from .closings import get_or_create_closing, validate_week
from .deductions import advances_total, consume_advances, load_advances_for_invoice, lodging_deduction_for_week
from .errors import (
    InvoiceGenerationError,
    NotFoundError,
    NumberConflictError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from .idempotency import ensure_no_active_invoice
from .money import InvoiceAmounts, calculate_invoice_amounts, safe_number
from .numbering import allocate_invoice_number
from .timesheet import total_hours_for_week


logger = structlog.get_logger(__name__)

PRIVILEGED_ROLES = {"admin", "director"}

Renderer = Callable[[Session, Invoice], Optional[str]]


@dataclass(frozen=True)
class InvoiceDates:
    issue_date: date
    delivery_date: date
    due_date: date


def is_privileged(user: User) -> bool:
    return bool(user.role_names & PRIVILEGED_ROLES)


def compute_invoice_dates(
    billing_class: BillingClass,
    issue_override: Optional[str] = None,
    delivery_override: Optional[str] = None,
    today: Optional[date] = None,
) -> InvoiceDates:
    """Issue date (override or today), delivery date (override or issue date) and due date by class offset."""
    try:
        issue = parse_local_date(issue_override) if issue_override else (today or today_local())
        delivery = parse_local_date(delivery_override) if delivery_override else issue
    except ValueError:
        raise ValidationError("issue_date and delivery_date must be YYYY-MM-DD format")
    try:
        due = add_days(issue, get_policy(billing_class).due_days)
    except OverflowError:
        raise ValidationError("issue_date is out of range", issue_date=format_date_string(issue))
    return InvoiceDates(issue_date=issue, delivery_date=delivery, due_date=due)


def _resolve_biller(db: Session, caller: Optional[User], biller_id: Optional[uuid.UUID]):
    if caller is None:
        raise ValidationError("User not authenticated", reason="missing_identity")
    target_id = biller_id or caller.id
    if target_id != caller.id and not is_privileged(caller):
        raise PermissionDeniedError("Only administrators can generate invoices for other billers")
    biller = caller if target_id == caller.id else db.query(User).filter(User.id == target_id).first()
    if biller is None or not biller.is_active:
        raise NotFoundError("Biller not found")
    profile = db.query(BillerProfile).filter(BillerProfile.user_id == biller.id).first()
    return biller, profile


def _resolve_closing(
    db: Session,
    biller: User,
    week_closing_id: Optional[uuid.UUID],
    require_approved: bool,
) -> Optional[WorkPeriodClosing]:
    if week_closing_id is None:
        return None
    closing = (
        db.query(WorkPeriodClosing)
        .filter(WorkPeriodClosing.id == week_closing_id, WorkPeriodClosing.deleted_at.is_(None))
        .first()
    )
    if closing is None:
        raise NotFoundError("Work period closing not found")
    if closing.user_id != biller.id:
        raise ValidationError("Work period closing belongs to a different biller")
    validate_week(closing.calendar_week, closing.year)
    if require_approved and closing.status != "approved":
        raise ValidationError("Work period closing is not approved yet", status=closing.status)
    return closing


def _resolve_project(db: Session, project_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
    if project_id is None:
        return None
    if db.query(Project.id).filter(Project.id == project_id).first() is None:
        raise NotFoundError("Project not found")
    return project_id


def _pick(value, fallback):
    return fallback if value is None else value


def calculate_for_request(
    db: Session,
    data: InvoiceData,
    biller: User,
    profile: Optional[BillerProfile],
    closing: Optional[WorkPeriodClosing],
    advances: List[Advance],
) -> InvoiceAmounts:
    """
    Amounts for an invoice request.

    Missing inputs fall back to the biller profile (rate, VAT flags) and to
    the closing's work records (hours, lodging). Selected advances replace
    the free-form advance deduction.
    """
    hours = data.total_hours
    if hours is None and closing is not None:
        hours = total_hours_for_week(db, biller.id, closing.calendar_week, closing.year)

    lodging = data.accommodation_deduction
    if lodging is None and closing is not None:
        lodging = lodging_deduction_for_week(db, biller.id, closing.calendar_week, closing.year)

    advance = advances_total(advances) if advances else data.advance_deduction

    return calculate_invoice_amounts(
        hours=hours,
        rate=_pick(data.hourly_rate, profile.hourly_rate if profile else None),
        advance_deduction=advance,
        lodging_deduction=lodging,
        is_vat_payer=bool(_pick(data.is_vat_payer, profile.is_vat_payer if profile else False)),
        is_reverse_charge=bool(_pick(data.is_reverse_charge, profile.is_reverse_charge if profile else False)),
        transaction_tax_rate=None if data.transaction_tax_rate is None else safe_number(data.transaction_tax_rate),
    )


def _insert_invoice(
    db: Session,
    caller: User,
    biller: User,
    billing_class: BillingClass,
    amounts: InvoiceAmounts,
    dates: InvoiceDates,
    is_reverse_charge: bool,
    project_id: Optional[uuid.UUID],
    closing: Optional[WorkPeriodClosing],
    advances: List[Advance],
) -> Invoice:
    """
    Allocate a number and insert the invoice in one transaction.

    A unique-index violation either means the work period got an invoice
    concurrently (reported as duplicate) or the number was taken, in which
    case a fresh number is allocated and the insert retried.
    """
    closing_id = closing.id if closing else None
    year = dates.issue_date.year
    attempts = max(1, settings.number_allocation_retries)
    for attempt in range(1, attempts + 1):
        number = allocate_invoice_number(db, biller.id, billing_class, year)
        invoice = Invoice(
            invoice_number=number,
            user_id=biller.id,
            project_id=project_id,
            week_closing_id=closing_id,
            billing_class=billing_class.value,
            total_hours=amounts.total_hours,
            hourly_rate=amounts.hourly_rate,
            subtotal=amounts.subtotal,
            vat_amount=amounts.vat_amount,
            advance_deduction=amounts.advance_deduction,
            accommodation_deduction=amounts.lodging_deduction,
            total_amount=amounts.total_amount,
            issue_date=format_date_string(dates.issue_date),
            delivery_date=format_date_string(dates.delivery_date),
            due_date=format_date_string(dates.due_date),
            status="pending",
            is_reverse_charge=is_reverse_charge,
            transaction_tax_rate=amounts.transaction_tax_rate,
            transaction_tax_amount=amounts.transaction_tax_amount,
            tax_payment_status="pending",
            is_locked=False,
        )
        db.add(invoice)
        try:
            db.flush()
            consume_advances(advances, invoice)
            record_action(
                db, "invoice", invoice.id, "CREATE", caller,
                context={
                    "invoice_number": number,
                    "billing_class": billing_class.value,
                    "week_closing_id": str(closing_id) if closing_id else None,
                    "amounts": amounts.as_dict(),
                    "advance_ids": [str(a.id) for a in advances],
                },
            )
            db.commit()
            db.refresh(invoice)
            return invoice
        except IntegrityError as e:
            db.rollback()
            ensure_no_active_invoice(db, biller.id, closing_id)
            logger.warning(
                "invoice_number_conflict",
                user_id=str(biller.id),
                invoice_number=number,
                attempt=attempt,
                error=str(e.orig),
            )
    raise NumberConflictError("Could not allocate a free invoice number, please retry")


def render_document(db: Session, invoice: Invoice, renderer: Optional[Renderer]) -> GenerationResult:
    """Run the document phase for a committed invoice; failures leave the invoice in place."""
    result = GenerationResult(success=True, invoice_id=str(invoice.id), invoice_number=invoice.invoice_number)
    if renderer is None:
        return result
    try:
        result.document_key = renderer(db, invoice)
    except Exception as e:
        logger.error(
            "invoice_document_failed",
            invoice_id=str(invoice.id),
            invoice_number=invoice.invoice_number,
            error=str(e),
        )
        result.document_error = f"Invoice {invoice.invoice_number} was saved but its document could not be generated: {e}"
    return result


def _failure(error: InvoiceGenerationError) -> GenerationResult:
    return GenerationResult(success=False, error=error.message, error_code=error.code)


def _run_generation(
    db: Session,
    caller: Optional[User],
    request: GenerateInvoiceRequest,
    renderer: Optional[Renderer],
    today: Optional[date],
    forced_class: Optional[BillingClass] = None,
    require_approved: bool = True,
) -> GenerationResult:
    log = logger.bind(
        caller_id=str(caller.id) if caller else None,
        biller_id=str(request.biller_id) if request.biller_id else None,
        week_closing_id=str(request.week_closing_id) if request.week_closing_id else None,
    )
    try:
        biller, profile = _resolve_biller(db, caller, request.biller_id)
        billing_class = forced_class or resolve_billing_class(profile.billing_class if profile else None)
        log = log.bind(biller_id=str(biller.id), billing_class=billing_class.value)

        closing = _resolve_closing(db, biller, request.week_closing_id, require_approved)
        ensure_no_active_invoice(db, biller.id, closing.id if closing else None)
        project_id = _resolve_project(db, request.project_id)
        advances = load_advances_for_invoice(db, biller.id, request.advance_ids)

        amounts = calculate_for_request(db, request.invoice_data, biller, profile, closing, advances)
        dates = compute_invoice_dates(billing_class, request.issue_date, request.delivery_date, today)
        is_reverse_charge = bool(_pick(request.invoice_data.is_reverse_charge, profile.is_reverse_charge if profile else False))

        invoice = _insert_invoice(
            db, caller, biller, billing_class, amounts, dates, is_reverse_charge, project_id, closing, advances,
        )
    except InvoiceGenerationError as e:
        db.rollback()
        log.warning("invoice_generation_rejected", error_code=e.code, error=e.message, **e.context)
        return _failure(e)
    except SQLAlchemyError as e:
        db.rollback()
        log.error("invoice_persist_failed", error=str(e))
        return _failure(PersistenceError(f"Could not save invoice: {e}"))

    log.info(
        "invoice_generated",
        invoice_id=str(invoice.id),
        invoice_number=invoice.invoice_number,
        total_amount=str(invoice.total_amount),
        due_date=invoice.due_date,
    )
    return render_document(db, invoice, renderer)


def generate_and_save_invoice(
    db: Session,
    caller: Optional[User],
    request: GenerateInvoiceRequest,
    renderer: Optional[Renderer] = store_invoice_document,
    today: Optional[date] = None,
) -> GenerationResult:
    """
    Generate, number and persist an invoice, then render its document.

    Args:
        db: Database session
        caller: Authenticated user; billers generate for themselves, admins for anyone
        request: Invoice inputs, optional project, work period closing, date overrides and advances
        renderer: Document renderer called after the commit; None skips rendering
        today: Issue date when no override is given (defaults to today in the business timezone)

    Returns:
        GenerationResult; never raises
    """
    return _run_generation(db, caller, request, renderer, today)


def generate_retainer_invoice(
    db: Session,
    caller: Optional[User],
    biller_id: uuid.UUID,
    calendar_week: int,
    year: int,
    project_id: Optional[uuid.UUID] = None,
    renderer: Optional[Renderer] = store_invoice_document,
    today: Optional[date] = None,
) -> GenerationResult:
    """
    Fixed-fee invoice for a retainer biller.

    Hours and rate come from settings. The work period closing for the week
    is created as approved when missing; if that fails nothing else happens.
    """
    try:
        if caller is None:
            raise ValidationError("User not authenticated", reason="missing_identity")
        if not is_privileged(caller):
            raise PermissionDeniedError("Only administrators can generate retainer invoices")
        biller = db.query(User).filter(User.id == biller_id).first()
        if biller is None or not biller.is_active:
            raise NotFoundError("Biller not found")
        closing = get_or_create_closing(db, biller.id, calendar_week, year, status="approved", approver=caller)
    except InvoiceGenerationError as e:
        db.rollback()
        logger.warning("retainer_generation_rejected", biller_id=str(biller_id), error_code=e.code, error=e.message)
        return _failure(e)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("retainer_closing_failed", biller_id=str(biller_id), error=str(e))
        return _failure(PersistenceError(f"Could not create work period closing: {e}"))

    request = GenerateInvoiceRequest(
        invoice_data=InvoiceData(
            calendar_week=calendar_week,
            year=year,
            total_hours=settings.retainer_hours,
            hourly_rate=settings.retainer_rate,
            advance_deduction=0,
            accommodation_deduction=0,
            is_vat_payer=False,
            is_reverse_charge=False,
        ),
        biller_id=biller.id,
        project_id=project_id,
        week_closing_id=closing.id,
    )
    return _run_generation(
        db, caller, request, renderer, today,
        forced_class=BillingClass.retainer,
        require_approved=False,
    )


def regenerate_document(db: Session, invoice_id: uuid.UUID, renderer: Renderer = store_invoice_document) -> GenerationResult:
    """Render the document of an already persisted invoice again."""
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id, Invoice.deleted_at.is_(None)).first()
    if invoice is None:
        return _failure(NotFoundError("Invoice not found"))
    return render_document(db, invoice, renderer)

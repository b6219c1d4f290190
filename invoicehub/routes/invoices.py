from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..documents.invoice_pdf import build_invoice_pdf
from ..logging import structlog
from ..models.models import User
from ..schemas.invoices import (
    FinancialMetrics,
    GenerateInvoiceRequest,
    GenerationResult,
    InvoiceResponse,
    RetainerInvoiceRequest,
)
from ..schemas.workflow import AuditEntryResponse
from ..services import invoice_status
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.errors import (
    DocumentGenerationError,
    DuplicateInvoiceError,
    InvoiceGenerationError,
    NotFoundError,
    NumberConflictError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from ..services.invoice_generation import (
    generate_and_save_invoice,
    generate_retainer_invoice,
    regenerate_document,
)
from .deps import get_renderer, http_error, parse_uuid


router = APIRouter(prefix="/invoices", tags=["invoices"])
logger = structlog.get_logger(__name__)

FINANCE_ROLES = {"admin", "director", "accountant"}

_RESULT_STATUS = {
    cls.code: cls.http_status
    for cls in (
        ValidationError,
        NotFoundError,
        PermissionDeniedError,
        DuplicateInvoiceError,
        NumberConflictError,
        PersistenceError,
        DocumentGenerationError,
    )
}


def _result_response(result: GenerationResult) -> JSONResponse:
    if result.success:
        status_code = 201
    else:
        status_code = _RESULT_STATUS.get(result.error_code, 400)
    return JSONResponse(status_code=status_code, content=result.model_dump())


def _can_view_all(user: User) -> bool:
    return bool(user.role_names & FINANCE_ROLES)


def _to_response(invoice) -> InvoiceResponse:
    out = InvoiceResponse.model_validate(invoice)
    out.effective_status = invoice_status.effective_status(invoice)
    return out


def _load_visible(db: Session, invoice_id: str, user: User):
    try:
        invoice = invoice_status.get_invoice(db, parse_uuid(invoice_id, "invoice id"))
    except InvoiceGenerationError as e:
        raise http_error(e)
    if invoice.user_id != user.id and not _can_view_all(user):
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.post("/generate", response_model=GenerationResult, status_code=201)
def generate_invoice(
    payload: GenerateInvoiceRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    renderer=Depends(get_renderer),
):
    return _result_response(generate_and_save_invoice(db, user, payload, renderer=renderer))


@router.post("/retainer", response_model=GenerationResult, status_code=201)
def generate_retainer(
    payload: RetainerInvoiceRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin", "director")),
    renderer=Depends(get_renderer),
):
    result = generate_retainer_invoice(
        db, user, payload.biller_id, payload.calendar_week, payload.year,
        project_id=payload.project_id, renderer=renderer,
    )
    return _result_response(result)


@router.get("", response_model=List[InvoiceResponse])
def list_invoices(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    year: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if _can_view_all(user):
        scope = parse_uuid(user_id, "user id") if user_id else None
    else:
        scope = user.id
    try:
        rows = invoice_status.list_invoices(db, user_id=scope, status=status, year=year, limit=min(limit, 500), offset=offset)
    except InvoiceGenerationError as e:
        raise http_error(e)
    return [_to_response(i) for i in rows]


@router.get("/metrics", response_model=FinancialMetrics)
def invoice_metrics(
    user_id: Optional[str] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if _can_view_all(user):
        scope = parse_uuid(user_id, "user id") if user_id else None
    else:
        scope = user.id
    rows = invoice_status.list_invoices(db, user_id=scope, year=year, limit=100000)
    return invoice_status.financial_metrics(rows)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _to_response(_load_visible(db, invoice_id, user))


@router.get("/{invoice_id}/pdf")
def invoice_pdf(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    invoice = _load_visible(db, invoice_id, user)
    try:
        data = build_invoice_pdf(db, invoice)
    except Exception as e:
        logger.error("invoice_document_failed", invoice_id=str(invoice.id), error=str(e))
        raise http_error(DocumentGenerationError(f"Could not render invoice {invoice.invoice_number}"))
    filename = f"invoice_{invoice.invoice_number}.pdf"
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.get("/{invoice_id}/history", response_model=List[AuditEntryResponse])
def invoice_history(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles(*FINANCE_ROLES))):
    invoice = _load_visible(db, invoice_id, user)
    entries = get_audit_logs(db, entity_type="invoice", entity_id=invoice.id)
    out = []
    for entry in entries:
        item = AuditEntryResponse.model_validate(entry, from_attributes=True)
        item.verified = verify_audit_log(entry)
        out.append(item)
    return out


@router.post("/{invoice_id}/document", response_model=GenerationResult)
def store_document(
    invoice_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    renderer=Depends(get_renderer),
):
    invoice = _load_visible(db, invoice_id, user)
    return regenerate_document(db, invoice.id, renderer=renderer)


def _transition(action, invoice_id: str, db: Session, user: User):
    invoice = _load_visible(db, invoice_id, user)
    try:
        invoice = action(db, invoice, user)
    except InvoiceGenerationError as e:
        db.rollback()
        raise http_error(e)
    return _to_response(invoice)


@router.post("/{invoice_id}/paid", response_model=InvoiceResponse)
def mark_paid(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles(*FINANCE_ROLES))):
    return _transition(invoice_status.mark_paid, invoice_id, db, user)


@router.post("/{invoice_id}/void", response_model=InvoiceResponse)
def void_invoice(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("admin", "director"))):
    return _transition(invoice_status.void_invoice, invoice_id, db, user)


@router.post("/{invoice_id}/lock", response_model=InvoiceResponse)
def lock_invoice(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles(*FINANCE_ROLES))):
    return _transition(invoice_status.lock_invoice, invoice_id, db, user)


@router.post("/{invoice_id}/unlock", response_model=InvoiceResponse)
def unlock_invoice(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("admin", "director"))):
    return _transition(invoice_status.unlock_invoice, invoice_id, db, user)


@router.post("/{invoice_id}/tax/confirm", response_model=InvoiceResponse)
def confirm_tax(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _transition(invoice_status.confirm_tax_payment, invoice_id, db, user)


@router.post("/{invoice_id}/tax/verify", response_model=InvoiceResponse)
def verify_tax(invoice_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles(*FINANCE_ROLES))):
    return _transition(invoice_status.verify_tax_payment, invoice_id, db, user)

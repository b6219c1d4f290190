from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import ensure_self_or_privileged, get_current_user, require_roles
from ..db import get_db
from ..models.models import User, WorkPeriodClosing
from ..schemas.workflow import ClosingCreate, ClosingResponse, ClosingReturn
from ..services import closings
from ..services.errors import InvoiceGenerationError
from ..services.invoice_generation import is_privileged
from .deps import http_error, parse_uuid


router = APIRouter(prefix="/closings", tags=["closings"])

APPROVER_ROLES = ("admin", "director", "manager")


@router.get("", response_model=List[ClosingResponse])
def list_closings(
    user_id: Optional[str] = None,
    year: Optional[int] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    query = db.query(WorkPeriodClosing).filter(WorkPeriodClosing.deleted_at.is_(None))
    if is_privileged(user) or "manager" in user.role_names:
        if user_id:
            query = query.filter(WorkPeriodClosing.user_id == parse_uuid(user_id, "user id"))
    else:
        query = query.filter(WorkPeriodClosing.user_id == user.id)
    if year:
        query = query.filter(WorkPeriodClosing.year == year)
    if status:
        query = query.filter(WorkPeriodClosing.status == status)
    return query.order_by(WorkPeriodClosing.year.desc(), WorkPeriodClosing.calendar_week.desc()).all()


@router.post("", response_model=ClosingResponse, status_code=201)
def create_closing(payload: ClosingCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    target = payload.user_id or user.id
    ensure_self_or_privileged(user, target)
    try:
        return closings.get_or_create_closing(db, target, payload.calendar_week, payload.year)
    except InvoiceGenerationError as e:
        raise http_error(e)


def _load(db: Session, closing_id: str) -> WorkPeriodClosing:
    try:
        return closings.get_closing(db, parse_uuid(closing_id, "closing id"))
    except InvoiceGenerationError as e:
        raise http_error(e)


def _apply(action, db: Session, closing: WorkPeriodClosing, user: User, **kwargs) -> WorkPeriodClosing:
    try:
        return action(db, closing, user, **kwargs)
    except InvoiceGenerationError as e:
        db.rollback()
        raise http_error(e)


@router.post("/{closing_id}/submit", response_model=ClosingResponse)
def submit_closing(closing_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    closing = _load(db, closing_id)
    ensure_self_or_privileged(user, closing.user_id)
    return _apply(closings.submit_closing, db, closing, user)


@router.post("/{closing_id}/approve", response_model=ClosingResponse)
def approve_closing(closing_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles(*APPROVER_ROLES))):
    return _apply(closings.approve_closing, db, _load(db, closing_id), user)


@router.post("/{closing_id}/return", response_model=ClosingResponse)
def return_closing(
    closing_id: str,
    payload: Optional[ClosingReturn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*APPROVER_ROLES)),
):
    comment = payload.comment if payload else None
    return _apply(closings.return_closing, db, _load(db, closing_id), user, comment=comment)


@router.post("/{closing_id}/reopen", response_model=ClosingResponse)
def reopen_closing(closing_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    closing = _load(db, closing_id)
    ensure_self_or_privileged(user, closing.user_id)
    return _apply(closings.reopen_closing, db, closing, user)

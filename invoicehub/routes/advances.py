from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import ensure_self_or_privileged, get_current_user, require_roles
from ..db import get_db
from ..models.models import User
from ..schemas.workflow import AdvanceCreate, AdvanceResponse
from ..services import deductions
from ..services.errors import InvoiceGenerationError
from ..services.invoice_generation import is_privileged
from .deps import http_error, parse_uuid


router = APIRouter(prefix="/advances", tags=["advances"])


@router.get("", response_model=List[AdvanceResponse])
def list_advances(user_id: Optional[str] = None, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if is_privileged(user):
        scope = parse_uuid(user_id, "user id") if user_id else None
    else:
        scope = user.id
    return deductions.list_advances(db, user_id=scope)


@router.post("", response_model=AdvanceResponse, status_code=201)
def create_advance(payload: AdvanceCreate, db: Session = Depends(get_db), user: User = Depends(require_roles("admin", "director"))):
    try:
        return deductions.create_advance(db, user, payload.user_id, payload.amount, payload.date, payload.note)
    except InvoiceGenerationError as e:
        db.rollback()
        raise http_error(e)


@router.delete("/{advance_id}")
def delete_advance(advance_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("admin", "director"))):
    try:
        deductions.delete_advance(db, user, parse_uuid(advance_id, "advance id"))
    except InvoiceGenerationError as e:
        db.rollback()
        raise http_error(e)
    return {"status": "ok"}


@router.get("/unused/{user_id}", response_model=List[AdvanceResponse])
def unused_advances(user_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    target = parse_uuid(user_id, "user id")
    ensure_self_or_privileged(user, target)
    return deductions.unused_advances(db, target)

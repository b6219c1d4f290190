from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..logging import structlog
from ..models.models import User
from ..schemas.auth import LoginRequest, TokenResponse, MeResponse
from .security import verify_password, create_access_token, get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter((User.username == req.identifier) | (User.email == req.identifier)).first()
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", identifier=req.identifier)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    access = create_access_token(str(user.id), roles=[r.name for r in user.roles])
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return TokenResponse(access_token=access)


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    profile = user.profile
    return MeResponse(
        id=str(user.id),
        username=user.username,
        email=user.email,
        roles=sorted(user.role_names),
        full_name=profile.full_name if profile else None,
        billing_class=profile.billing_class if profile else None,
    )

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class AdvanceCreate(BaseModel):
    user_id: uuid.UUID
    amount: Decimal = Field(gt=0)
    date: Optional[str] = None  # YYYY-MM-DD, defaults to today
    note: Optional[str] = None


class AdvanceResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: Decimal
    date: str
    note: Optional[str] = None
    used_in_invoice_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClosingCreate(BaseModel):
    user_id: Optional[uuid.UUID] = None  # defaults to the caller
    calendar_week: int = Field(ge=1, le=53)
    year: int = Field(ge=2000, le=2100)


class ClosingReturn(BaseModel):
    comment: Optional[str] = None


class ClosingResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    calendar_week: int
    year: int
    status: str
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[uuid.UUID] = None
    return_comment: Optional[str] = None

    class Config:
        from_attributes = True


class AuditEntryResponse(BaseModel):
    id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID] = None
    actor_role: Optional[str] = None
    timestamp_utc: datetime
    changes_json: Optional[dict] = None
    context: Optional[dict] = None
    verified: bool = False

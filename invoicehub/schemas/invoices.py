import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class InvoiceData(BaseModel):
    """Invoice inputs as collected by the caller; numbers are coerced leniently by the service."""
    supplier_name: Optional[str] = None
    project_name: Optional[str] = None
    calendar_week: Optional[int] = None
    year: Optional[int] = None
    total_hours: Any = None
    hourly_rate: Any = None
    advance_deduction: Any = None
    accommodation_deduction: Any = None
    is_vat_payer: Optional[bool] = None
    is_reverse_charge: Optional[bool] = None
    transaction_tax_rate: Any = None


class GenerateInvoiceRequest(BaseModel):
    invoice_data: InvoiceData
    biller_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    week_closing_id: Optional[uuid.UUID] = None
    issue_date: Optional[str] = Field(default=None, description="YYYY-MM-DD override for historical invoices")
    delivery_date: Optional[str] = Field(default=None, description="YYYY-MM-DD override for historical invoices")
    advance_ids: List[uuid.UUID] = Field(default_factory=list)


class RetainerInvoiceRequest(BaseModel):
    biller_id: uuid.UUID
    calendar_week: int = Field(ge=1, le=53)
    year: int = Field(ge=2000, le=2100)
    project_id: Optional[uuid.UUID] = None


class GenerationResult(BaseModel):
    success: bool
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    document_key: Optional[str] = None
    document_error: Optional[str] = None


class InvoiceResponse(BaseModel):
    id: uuid.UUID
    invoice_number: str
    user_id: uuid.UUID
    project_id: Optional[uuid.UUID] = None
    week_closing_id: Optional[uuid.UUID] = None
    billing_class: str
    total_hours: Decimal
    hourly_rate: Decimal
    subtotal: Decimal
    vat_amount: Decimal
    advance_deduction: Decimal
    accommodation_deduction: Decimal
    total_amount: Decimal
    issue_date: str
    delivery_date: str
    due_date: str
    status: str
    effective_status: Optional[str] = None
    is_reverse_charge: bool
    transaction_tax_rate: Decimal
    transaction_tax_amount: Decimal
    tax_payment_status: str
    tax_confirmed_at: Optional[datetime] = None
    tax_verified_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    is_locked: bool
    is_accounted: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MetricBucket(BaseModel):
    count: int = 0
    amount: Decimal = Decimal("0")


class FinancialMetrics(BaseModel):
    total_invoiced: MetricBucket
    pending_payment: MetricBucket
    overdue: MetricBucket
    paid: MetricBucket
    accounted_total: MetricBucket
    accounted_paid: MetricBucket

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def money_column(default=0) -> Mapped[Decimal]:
    return mapped_column(Numeric(12, 2, asdecimal=True), default=default, nullable=False)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|director|manager|accountant|worker
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    roles = relationship("Role", secondary=user_roles, back_populates="users")
    profile = relationship("BillerProfile", uselist=False, back_populates="user")

    @property
    def role_names(self) -> set:
        return {(r.name or "").lower() for r in self.roles}


class BillerProfile(Base):
    """Billing identity of a subcontractor: rate, VAT status, bank details and billing class"""
    __tablename__ = "biller_profiles"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    ico: Mapped[Optional[str]] = mapped_column(String(50))
    dic: Mapped[Optional[str]] = mapped_column(String(50))
    vat_number: Mapped[Optional[str]] = mapped_column(String(50))
    iban: Mapped[Optional[str]] = mapped_column(String(50))
    swift_bic: Mapped[Optional[str]] = mapped_column(String(20))
    contract_number: Mapped[Optional[str]] = mapped_column(String(100))
    hourly_rate: Mapped[Decimal] = money_column()
    is_vat_payer: Mapped[bool] = mapped_column(Boolean, default=False)
    is_reverse_charge: Mapped[bool] = mapped_column(Boolean, default=False)
    billing_class: Mapped[str] = mapped_column(String(20), default="standard", nullable=False)  # standard|retainer
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    user = relationship("User", back_populates="profile")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Accommodation(Base):
    """Lodging provided to workers; nights are deducted from their invoices"""
    __tablename__ = "accommodations"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    default_price_per_night: Mapped[Decimal] = money_column()
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class WorkRecord(Base):
    """One day of worked time for one worker"""
    __tablename__ = "work_records"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"), index=True)
    accommodation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("accommodations.id", ondelete="SET NULL"))
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # Local date YYYY-MM-DD
    time_from: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM local
    time_to: Mapped[str] = mapped_column(String(5), nullable=False)
    break_start: Mapped[Optional[str]] = mapped_column(String(5))
    break_end: Mapped[Optional[str]] = mapped_column(String(5))
    break2_start: Mapped[Optional[str]] = mapped_column(String(5))
    break2_end: Mapped[Optional[str]] = mapped_column(String(5))
    total_hours: Mapped[Decimal] = money_column()  # Net hours (derived)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft|submitted|approved|returned
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_work_records_user_date', 'user_id', 'date'),
    )


class WorkPeriodClosing(Base):
    """Weekly aggregation and approval unit of a worker's records"""
    __tablename__ = "work_period_closings"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    calendar_week: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)  # ISO week-year
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)  # open|submitted|approved|returned
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    return_comment: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            'uq_closing_user_week',
            'user_id', 'calendar_week', 'year',
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )


class Invoice(Base):
    """Numbered invoice of a biller; monetary fields are owned by the invoice once persisted"""
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = uuid_pk()
    invoice_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"))
    week_closing_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("work_period_closings.id", ondelete="SET NULL"), index=True)
    billing_class: Mapped[str] = mapped_column(String(20), default="standard", nullable=False)
    total_hours: Mapped[Decimal] = money_column()
    hourly_rate: Mapped[Decimal] = money_column()
    subtotal: Mapped[Decimal] = money_column()
    vat_amount: Mapped[Decimal] = money_column()
    advance_deduction: Mapped[Decimal] = money_column()
    accommodation_deduction: Mapped[Decimal] = money_column()
    total_amount: Mapped[Decimal] = money_column()
    issue_date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    delivery_date: Mapped[str] = mapped_column(String(10), nullable=False)
    due_date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending|paid|overdue|void
    is_reverse_charge: Mapped[bool] = mapped_column(Boolean, default=False)
    transaction_tax_rate: Mapped[Decimal] = mapped_column(Numeric(6, 3, asdecimal=True), default=Decimal("0.4"), nullable=False)
    transaction_tax_amount: Mapped[Decimal] = money_column()
    tax_payment_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending|confirmed|verified
    tax_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    tax_confirmed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    tax_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    tax_verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_accounted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    advances = relationship("Advance", back_populates="invoice")

    # Storage-level guards backing the application pre-checks
    __table_args__ = (
        Index(
            'uq_invoice_active_closing',
            'user_id', 'week_closing_id',
            unique=True,
            sqlite_where=text("deleted_at IS NULL AND status <> 'void' AND week_closing_id IS NOT NULL"),
            postgresql_where=text("deleted_at IS NULL AND status <> 'void' AND week_closing_id IS NOT NULL"),
        ),
        Index(
            'uq_invoice_number_scope',
            'user_id', 'invoice_number',
            unique=True,
            sqlite_where=text("deleted_at IS NULL AND status <> 'void'"),
            postgresql_where=text("deleted_at IS NULL AND status <> 'void'"),
        ),
        Index('idx_invoices_tax_status', 'tax_payment_status'),
    )


class Advance(Base):
    """Prepayment to a biller, later applied against one invoice"""
    __tablename__ = "advances"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount: Mapped[Decimal] = money_column()
    date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    note: Mapped[Optional[str]] = mapped_column(Text)
    used_in_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("invoices.id", ondelete="SET NULL"))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    invoice = relationship("Invoice", back_populates="advances")


class AuditLog(Base):
    """Append-only audit log for invoicing actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # invoice|closing|advance
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|APPROVE|RETURN|VOID|PAY|LOCK|DELETE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )

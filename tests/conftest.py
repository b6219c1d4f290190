import os
import tempfile
from datetime import date
from decimal import Decimal

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="invoicehub-storage-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from invoicehub.db import Base
from invoicehub.models.models import (
    Accommodation,
    Advance,
    BillerProfile,
    Invoice,
    Project,
    Role,
    User,
    WorkPeriodClosing,
    WorkRecord,
)
from invoicehub.auth.security import get_password_hash


PASSWORD = "Secret123!"


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def _role(db, name: str) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if role is None:
        role = Role(name=name, description=name.title())
        db.add(role)
        db.flush()
    return role


@pytest.fixture
def make_user(db):
    """Create a user with roles and, unless ``profile=False``, a biller profile."""
    def _make(username: str, roles=("worker",), profile: bool = True, **profile_fields) -> User:
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=get_password_hash(PASSWORD),
            is_active=True,
        )
        user.roles = [_role(db, r) for r in roles]
        db.add(user)
        db.flush()
        if profile:
            fields = {
                "full_name": username.replace(".", " ").title(),
                "iban": "SK31 1200 0000 1987 4263 7541",
                "hourly_rate": Decimal("18.50"),
                "is_vat_payer": False,
                "is_reverse_charge": False,
                "billing_class": "standard",
            }
            fields.update(profile_fields)
            db.add(BillerProfile(user_id=user.id, **fields))
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin.user", roles=("admin",), profile=False)


@pytest.fixture
def accountant(make_user):
    return make_user("anna.accountant", roles=("accountant",), profile=False)


@pytest.fixture
def worker(make_user):
    return make_user("peter.novak")


@pytest.fixture
def retainer_worker(make_user):
    return make_user("viktor.retainer", billing_class="retainer", hourly_rate=Decimal("20.00"))


@pytest.fixture
def make_closing(db):
    def _make(user: User, calendar_week: int = 10, year: int = 2026, status: str = "approved") -> WorkPeriodClosing:
        closing = WorkPeriodClosing(user_id=user.id, calendar_week=calendar_week, year=year, status=status)
        db.add(closing)
        db.commit()
        db.refresh(closing)
        return closing

    return _make


@pytest.fixture
def add_invoice(db):
    """Insert an invoice row directly, bypassing generation."""
    def _add(user: User, number: str, status: str = "pending", **fields) -> Invoice:
        values = {
            "issue_date": "2026-03-02",
            "delivery_date": "2026-03-02",
            "due_date": "2026-03-23",
            "total_amount": Decimal("100.00"),
            "subtotal": Decimal("100.00"),
        }
        values.update(fields)
        invoice = Invoice(invoice_number=number, user_id=user.id, status=status, **values)
        db.add(invoice)
        db.commit()
        db.refresh(invoice)
        return invoice

    return _add


@pytest.fixture
def add_record(db):
    def _add(user: User, day: str, time_from: str = "07:00", time_to: str = "15:30", **fields) -> WorkRecord:
        record = WorkRecord(user_id=user.id, date=day, time_from=time_from, time_to=time_to, **fields)
        db.add(record)
        db.commit()
        return record

    return _add


@pytest.fixture
def accommodation(db):
    acc = Accommodation(name="Worker housing", address="Zalobin 114", default_price_per_night=Decimal("15.00"))
    db.add(acc)
    db.commit()
    db.refresh(acc)
    return acc


@pytest.fixture
def project(db):
    p = Project(name="Residential block", client="TKJD")
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def add_advance(db):
    def _add(user: User, amount, day: str = "2026-03-03") -> Advance:
        advance = Advance(user_id=user.id, amount=Decimal(str(amount)), date=day)
        db.add(advance)
        db.commit()
        db.refresh(advance)
        return advance

    return _add


class RecordingRenderer:
    """Stands in for the PDF renderer; records the invoices it saw."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def __call__(self, db, invoice):
        self.calls.append((invoice.invoice_number, db.query(Invoice).filter(Invoice.id == invoice.id).count()))
        if self.fail:
            raise RuntimeError("renderer offline")
        return f"invoices/{invoice.user_id}/{invoice.invoice_number}.pdf"


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def failing_renderer():
    return RecordingRenderer(fail=True)


@pytest.fixture
def today():
    return date(2026, 3, 2)

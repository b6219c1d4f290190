"""Tests for invoicehub/services/invoice_generation.py."""

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from invoicehub.models.models import Advance, AuditLog, Invoice
from invoicehub.schemas.invoices import GenerateInvoiceRequest, InvoiceData
from invoicehub.services import invoice_generation
from invoicehub.services.billing_class import BillingClass
from invoicehub.services.invoice_generation import (
    compute_invoice_dates,
    generate_and_save_invoice,
    regenerate_document,
)


def _request(closing=None, **data):
    biller_id = data.pop("biller_id", None)
    advance_ids = data.pop("advance_ids", [])
    issue_date = data.pop("issue_date", None)
    delivery_date = data.pop("delivery_date", None)
    data.setdefault("total_hours", 40)
    return GenerateInvoiceRequest(
        invoice_data=InvoiceData(**data),
        biller_id=biller_id,
        week_closing_id=closing.id if closing else None,
        advance_ids=advance_ids,
        issue_date=issue_date,
        delivery_date=delivery_date,
    )


class TestInvoiceDates:
    def test_standard_offsets(self):
        dates = compute_invoice_dates(BillingClass.standard, today=date(2026, 3, 2))
        assert dates.issue_date == date(2026, 3, 2)
        assert dates.delivery_date == date(2026, 3, 2)
        assert dates.due_date == date(2026, 3, 23)

    def test_retainer_offsets(self):
        dates = compute_invoice_dates(BillingClass.retainer, today=date(2026, 12, 28))
        assert dates.due_date == date(2027, 1, 4)

    def test_overrides(self):
        dates = compute_invoice_dates(BillingClass.standard, "2025-12-15", "2025-12-14")
        assert dates.issue_date == date(2025, 12, 15)
        assert dates.delivery_date == date(2025, 12, 14)
        assert dates.due_date == date(2026, 1, 5)


class TestGenerate:
    def test_success_persists_then_renders(self, db, worker, make_closing, renderer, today):
        closing = make_closing(worker)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)

        assert result.success
        assert result.invoice_number == "2026001"
        assert result.document_key.endswith("2026001.pdf")
        # The renderer saw a committed row
        assert renderer.calls == [("2026001", 1)]

        invoice = db.query(Invoice).one()
        assert str(invoice.id) == result.invoice_id
        assert invoice.status == "pending"
        assert invoice.tax_payment_status == "pending"
        assert invoice.billing_class == "standard"
        assert invoice.issue_date == "2026-03-02"
        assert invoice.delivery_date == "2026-03-02"
        assert invoice.due_date == "2026-03-23"
        assert invoice.subtotal == Decimal("740.00")
        assert invoice.total_amount == Decimal("740.00")
        assert invoice.transaction_tax_amount == Decimal("2.96")
        assert invoice.week_closing_id == closing.id
        assert db.query(AuditLog).filter(AuditLog.entity_type == "invoice").count() == 1

    def test_second_generation_is_duplicate(self, db, worker, make_closing, renderer, today):
        closing = make_closing(worker)
        first = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)
        second = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)

        assert first.success
        assert not second.success
        assert second.error_code == "duplicate_invoice"
        assert db.query(Invoice).count() == 1
        assert len(renderer.calls) == 1

    def test_sequence_continues_across_weeks(self, db, worker, make_closing, renderer, today):
        week10 = make_closing(worker, calendar_week=10)
        week11 = make_closing(worker, calendar_week=11)
        a = generate_and_save_invoice(db, worker, _request(week10), renderer=renderer, today=today)
        b = generate_and_save_invoice(db, worker, _request(week11), renderer=renderer, today=today)
        assert (a.invoice_number, b.invoice_number) == ("2026001", "2026002")

    def test_missing_caller(self, db, renderer):
        result = generate_and_save_invoice(db, None, _request(), renderer=renderer)
        assert not result.success
        assert result.error_code == "validation_error"
        assert result.error == "User not authenticated"
        assert db.query(Invoice).count() == 0

    def test_worker_cannot_bill_for_someone_else(self, db, worker, retainer_worker, renderer):
        result = generate_and_save_invoice(db, worker, _request(biller_id=retainer_worker.id), renderer=renderer)
        assert result.error_code == "forbidden"

    def test_admin_bills_on_behalf_of_worker(self, db, admin, worker, make_closing, renderer, today):
        closing = make_closing(worker)
        result = generate_and_save_invoice(db, admin, _request(closing, biller_id=worker.id), renderer=renderer, today=today)
        assert result.success
        assert db.query(Invoice).one().user_id == worker.id

    def test_closing_must_be_approved(self, db, worker, make_closing, renderer):
        closing = make_closing(worker, status="submitted")
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer)
        assert result.error_code == "validation_error"
        assert db.query(Invoice).count() == 0

    def test_closing_of_another_biller_is_rejected(self, db, worker, retainer_worker, make_closing, renderer):
        closing = make_closing(retainer_worker)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer)
        assert result.error_code == "validation_error"

    def test_invalid_issue_date(self, db, worker, renderer):
        result = generate_and_save_invoice(db, worker, _request(issue_date="15.12.2025"), renderer=renderer)
        assert result.error_code == "validation_error"

    def test_issue_date_at_end_of_calendar(self, db, worker, renderer):
        result = generate_and_save_invoice(db, worker, _request(hourly_rate=1, issue_date="9999-12-30"), renderer=renderer)
        assert not result.success
        assert result.error_code == "validation_error"
        assert db.query(Invoice).count() == 0
        assert renderer.calls == []

    def test_closing_for_nonexistent_week_is_rejected(self, db, worker, make_closing, renderer, today):
        closing = make_closing(worker, calendar_week=53, year=2025)
        request = _request(closing, total_hours=None, hourly_rate=20)
        result = generate_and_save_invoice(db, worker, request, renderer=renderer, today=today)
        assert not result.success
        assert result.error_code == "validation_error"
        assert db.query(Invoice).count() == 0

    def test_historical_issue_date_numbers_in_its_year(self, db, worker, renderer):
        result = generate_and_save_invoice(db, worker, _request(issue_date="2025-12-15"), renderer=renderer)
        invoice = db.query(Invoice).one()
        assert result.invoice_number == "2025001"
        assert invoice.due_date == "2026-01-05"

    def test_profile_rate_and_vat_are_used_when_missing(self, db, make_user, renderer, today):
        payer = make_user("vat.payer", hourly_rate=Decimal("10.00"), is_vat_payer=True)
        result = generate_and_save_invoice(db, payer, _request(total_hours=10), renderer=renderer, today=today)
        invoice = db.query(Invoice).filter(Invoice.id == uuid.UUID(result.invoice_id)).one()
        assert invoice.hourly_rate == Decimal("10.00")
        assert invoice.vat_amount == Decimal("20.00")
        assert invoice.total_amount == Decimal("120.00")

    def test_retainer_profile_uses_its_own_sequence(self, db, retainer_worker, make_closing, renderer, today):
        closing = make_closing(retainer_worker)
        result = generate_and_save_invoice(db, retainer_worker, _request(closing), renderer=renderer, today=today)
        invoice = db.query(Invoice).one()
        assert result.invoice_number == "VIK-2026001"
        assert invoice.due_date == "2026-03-09"


class TestInputFallbacks:
    def test_hours_and_lodging_from_work_records(self, db, worker, make_closing, add_record, accommodation, renderer, today):
        closing = make_closing(worker, calendar_week=10)
        add_record(worker, "2026-03-02", "07:00", "15:00", accommodation_id=accommodation.id)
        add_record(worker, "2026-03-03", "07:00", "15:30", break_start="12:00", break_end="12:30", accommodation_id=accommodation.id)
        add_record(worker, "2026-03-09", "07:00", "15:00")  # next week
        result = generate_and_save_invoice(
            db, worker, _request(closing, total_hours=None, hourly_rate=20), renderer=renderer, today=today,
        )
        invoice = db.query(Invoice).one()
        assert result.success
        assert invoice.total_hours == Decimal("16.00")
        assert invoice.accommodation_deduction == Decimal("30.00")
        assert invoice.total_amount == Decimal("290.00")

    def test_advances_are_consumed_with_the_invoice(self, db, worker, make_closing, add_advance, renderer, today):
        closing = make_closing(worker)
        a1 = add_advance(worker, "100")
        a2 = add_advance(worker, "40.50")
        result = generate_and_save_invoice(
            db, worker, _request(closing, advance_ids=[a1.id, a2.id], advance_deduction=999), renderer=renderer, today=today,
        )
        invoice = db.query(Invoice).one()
        assert result.success
        assert invoice.advance_deduction == Decimal("140.50")
        assert invoice.total_amount == Decimal("599.50")
        assert {a.used_in_invoice_id for a in db.query(Advance).all()} == {invoice.id}

    def test_consumed_advance_cannot_be_reused(self, db, worker, make_closing, add_advance, renderer, today):
        week10 = make_closing(worker, calendar_week=10)
        week11 = make_closing(worker, calendar_week=11)
        advance = add_advance(worker, "100")
        generate_and_save_invoice(db, worker, _request(week10, advance_ids=[advance.id]), renderer=renderer, today=today)
        result = generate_and_save_invoice(db, worker, _request(week11, advance_ids=[advance.id]), renderer=renderer, today=today)
        assert result.error_code == "validation_error"
        assert db.query(Invoice).count() == 1


class TestFailurePaths:
    def test_render_failure_keeps_the_invoice(self, db, worker, make_closing, failing_renderer, today):
        closing = make_closing(worker)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=failing_renderer, today=today)

        assert result.success
        assert result.invoice_number == "2026001"
        assert "renderer offline" in result.document_error
        assert db.query(Invoice).count() == 1

    def test_document_can_be_regenerated(self, db, worker, make_closing, failing_renderer, renderer, today):
        closing = make_closing(worker)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=failing_renderer, today=today)
        again = regenerate_document(db, uuid.UUID(result.invoice_id), renderer=renderer)
        assert again.success
        assert again.document_error is None
        assert again.invoice_number == "2026001"

    def test_persistence_failure_leaves_no_row(self, db, worker, make_closing, add_advance, renderer, monkeypatch, today):
        closing = make_closing(worker)
        advance = add_advance(worker, "50")

        def broken_audit(*args, **kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(invoice_generation, "record_action", broken_audit)
        result = generate_and_save_invoice(db, worker, _request(closing, advance_ids=[advance.id]), renderer=renderer, today=today)

        assert not result.success
        assert result.error_code == "persistence_error"
        assert db.query(Invoice).count() == 0
        assert db.query(Advance).one().used_in_invoice_id is None
        assert renderer.calls == []

    def test_number_conflict_is_retried(self, db, worker, make_closing, add_invoice, renderer, monkeypatch, today):
        add_invoice(worker, "2026001")
        closing = make_closing(worker)
        real_allocate = invoice_generation.allocate_invoice_number
        calls = []

        def stale_then_fresh(*args):
            calls.append(args)
            return "2026001" if len(calls) == 1 else real_allocate(*args)

        monkeypatch.setattr(invoice_generation, "allocate_invoice_number", stale_then_fresh)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)

        assert result.success
        assert result.invoice_number == "2026002"
        assert len(calls) == 2

    def test_number_conflict_gives_up(self, db, worker, make_closing, add_invoice, renderer, monkeypatch, today):
        add_invoice(worker, "2026001")
        closing = make_closing(worker)
        monkeypatch.setattr(invoice_generation, "allocate_invoice_number", lambda *args: "2026001")
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)

        assert not result.success
        assert result.error_code == "number_conflict"
        assert db.query(Invoice).count() == 1

    def test_concurrent_duplicate_caught_by_unique_index(self, db, worker, make_closing, add_invoice, renderer, monkeypatch, today):
        """An invoice inserted between the guard and the insert is reported as duplicate."""
        closing = make_closing(worker)
        real_guard = invoice_generation.ensure_no_active_invoice
        calls = []

        def racing_guard(*args):
            calls.append(args)
            if len(calls) == 1:
                # Another request inserts right after the pre-check passed
                add_invoice(worker, "2026050", week_closing_id=closing.id)
                return None
            return real_guard(*args)

        monkeypatch.setattr(invoice_generation, "ensure_no_active_invoice", racing_guard)
        result = generate_and_save_invoice(db, worker, _request(closing), renderer=renderer, today=today)

        assert not result.success
        assert result.error_code == "duplicate_invoice"
        assert db.query(Invoice).count() == 1

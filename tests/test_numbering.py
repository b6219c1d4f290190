"""Tests for invoice number allocation and billing class policies."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from invoicehub.models.models import Invoice
from invoicehub.services.billing_class import BillingClass, get_policy, resolve_billing_class
from invoicehub.services.numbering import allocate_invoice_number, latest_sequence


class TestPolicies:
    def test_standard_policy(self):
        policy = get_policy(BillingClass.standard)
        assert policy.format_number(2026, 1) == "2026001"
        assert policy.due_days == 21

    def test_retainer_policy(self):
        policy = get_policy("retainer")
        assert policy.format_number(2026, 12) == "VIK-2026012"
        assert policy.due_days == 7

    @pytest.mark.parametrize("value", [None, "", "unknown", "STANDARD "])
    def test_unknown_classes_fall_back_to_standard(self, value):
        assert resolve_billing_class(value) == BillingClass.standard

    def test_shape_accepts_wider_sequences(self):
        shape = get_policy(BillingClass.standard).shape_for_year(2026)
        assert shape.match("20261000")
        assert not shape.match("202601")
        assert not shape.match("VIK-2026001")


class TestAllocation:
    def test_first_number_of_year(self, db, worker):
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026001"

    def test_next_after_highest(self, db, worker, add_invoice):
        add_invoice(worker, "2026001")
        add_invoice(worker, "2026002")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026003"

    def test_gaps_are_not_filled(self, db, worker, add_invoice):
        add_invoice(worker, "2026001")
        add_invoice(worker, "2026005")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026006"

    def test_void_and_deleted_numbers_are_ignored(self, db, worker, add_invoice):
        add_invoice(worker, "2026001")
        add_invoice(worker, "2026002", status="void")
        add_invoice(worker, "2026003", deleted_at=datetime.now(timezone.utc))
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026002"

    def test_each_year_restarts(self, db, worker, add_invoice):
        add_invoice(worker, "2025009")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026001"
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2025) == "2025010"

    def test_sequences_are_per_biller(self, db, worker, retainer_worker, add_invoice):
        add_invoice(retainer_worker, "2026004")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026001"

    def test_classes_do_not_see_each_other(self, db, worker, add_invoice):
        add_invoice(worker, "VIK-2026004")
        add_invoice(worker, "2026007")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "2026008"
        assert allocate_invoice_number(db, worker.id, BillingClass.retainer, 2026) == "VIK-2026005"

    def test_malformed_numbers_are_skipped(self, db, worker, add_invoice):
        add_invoice(worker, "2026-ABC")
        add_invoice(worker, "2026002")
        assert latest_sequence(db, worker.id, BillingClass.standard, 2026) == 2

    def test_width_overflow(self, db, worker, add_invoice):
        add_invoice(worker, "2026999")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "20261000"
        add_invoice(worker, "20261000")
        assert allocate_invoice_number(db, worker.id, BillingClass.standard, 2026) == "20261001"


class TestKnownRace:
    def test_serialized_allocations_are_distinct(self, db, worker, add_invoice):
        first = allocate_invoice_number(db, worker.id, BillingClass.standard, 2026)
        add_invoice(worker, first)
        second = allocate_invoice_number(db, worker.id, BillingClass.standard, 2026)
        assert (first, second) == ("2026001", "2026002")

    def test_interleaved_allocations_collide(self, db, worker):
        """Two reads before either insert derive the same number."""
        first = allocate_invoice_number(db, worker.id, BillingClass.standard, 2026)
        second = allocate_invoice_number(db, worker.id, BillingClass.standard, 2026)
        assert first == second

    def test_unique_index_rejects_the_second_insert(self, db, worker, add_invoice):
        add_invoice(worker, "2026001")
        db.add(Invoice(
            invoice_number="2026001",
            user_id=worker.id,
            issue_date="2026-03-02",
            delivery_date="2026-03-02",
            due_date="2026-03-23",
        ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_void_number_can_be_reissued(self, db, worker, add_invoice):
        add_invoice(worker, "2026001", status="void")
        add_invoice(worker, "2026001")
        assert db.query(Invoice).filter(Invoice.invoice_number == "2026001").count() == 2

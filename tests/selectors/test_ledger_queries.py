"""
LedgerSelector read-side tests.

Covers reconciliation of running totals (including a tampered row),
overdue detection, per-status aggregates and rectification chains.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from billing_kernel.db.tenant_scope import TenantScope
from billing_kernel.domain.dtos import ComposeRequest, LineItemSpec, RectificationRequest
from billing_kernel.exceptions import ConsistencyViolationError, NotFoundError
from billing_kernel.models.treatment import Treatment
from billing_kernel.selectors import LedgerSelector


@pytest.fixture
def fresh_selector(session, tenant_id):
    """A selector on its own session, so it never sees another session's cache."""
    TenantScope(session, tenant_id)
    return LedgerSelector(session)


def _compose(billing, treatment_id, percent="25"):
    return billing.compose_invoice(
        ComposeRequest(treatment_id=treatment_id, payment_percent=Decimal(percent))
    )


class TestReconciliation:
    def test_consistent_after_full_lifecycle(self, billing, accepted_treatment, fresh_selector):
        tid = accepted_treatment.treatment_id
        first = _compose(billing, tid)
        second = _compose(billing, tid)
        billing.apply_payment(first.invoice_id, Decimal("250.00"), "card")
        billing.apply_payment(second.invoice_id, Decimal("100.00"), "cash")
        billing.cancel_invoice(second.invoice_id)
        billing.rectify_invoice(
            first.invoice_id,
            RectificationRequest(reason="discount", corrected_total=Decimal("200.00")),
        )

        report = fresh_selector.reconcile_treatment(tid)

        assert report.is_consistent
        assert report.computed_invoiced == Decimal("200.00")
        assert report.computed_paid == Decimal("200.00")

    def test_drift_detected(self, billing, accepted_treatment, engine, fresh_selector, captured_logs):
        tid = accepted_treatment.treatment_id
        _compose(billing, tid)
        with engine.begin() as conn:
            conn.execute(
                update(Treatment.__table__)
                .where(Treatment.__table__.c.id == tid)
                .values(invoiced_amount=Decimal("999.00"))
            )

        with pytest.raises(ConsistencyViolationError) as exc_info:
            fresh_selector.reconcile_treatment(tid)

        assert exc_info.value.invariant == "running_totals"
        drift = [r for r in captured_logs() if r["message"] == "treatment_totals_drift"]
        assert drift[0]["level"] == "ERROR"
        assert drift[0]["computed_invoiced"] == "250.00"

    def test_drift_report_without_raising(self, billing, accepted_treatment, engine, fresh_selector):
        tid = accepted_treatment.treatment_id
        with engine.begin() as conn:
            conn.execute(
                update(Treatment.__table__)
                .where(Treatment.__table__.c.id == tid)
                .values(paid_amount=Decimal("1.00"))
            )

        report = fresh_selector.reconcile_treatment(tid, raise_on_mismatch=False)

        assert not report.is_consistent
        assert report.stored_paid == Decimal("1.00")
        assert report.computed_paid == Decimal("0.00")

    def test_unknown_treatment(self, fresh_selector):
        with pytest.raises(NotFoundError):
            fresh_selector.reconcile_treatment(uuid4())


class TestInvoiceQueries:
    def test_invoices_for_treatment(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        first = _compose(billing, tid)
        second = _compose(billing, tid)
        billing.cancel_invoice(first.invoice_id)

        everything = billing.selector.invoices_for_treatment(tid)
        active = billing.selector.invoices_for_treatment(tid, include_cancelled=False)

        assert [i.invoice_number for i in everything] == ["FAC-2025-00001", "FAC-2025-00002"]
        assert [i.invoice_id for i in active] == [second.invoice_id]

    def test_overdue_candidates(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        unpaid = _compose(billing, tid)
        partly = _compose(billing, tid)
        settled = _compose(billing, tid)
        cancelled = _compose(billing, tid)
        billing.apply_payment(partly.invoice_id, Decimal("100.00"), "card")
        billing.apply_payment(settled.invoice_id, Decimal("250.00"), "card")
        billing.cancel_invoice(cancelled.invoice_id)

        overdue = billing.selector.overdue_candidates(date(2025, 5, 1))

        assert [c.invoice_id for c in overdue] == [unpaid.invoice_id, partly.invoice_id]
        assert overdue[0].days_overdue == 18
        assert overdue[1].outstanding == Decimal("150.00")

    def test_chain_settled_by_reduction_not_overdue(self, billing, accepted_treatment):
        invoice = _compose(billing, accepted_treatment.treatment_id, percent="40")
        billing.apply_payment(invoice.invoice_id, Decimal("300.00"), "card")
        billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="agreed discount", corrected_total=Decimal("300.00")),
        )

        assert billing.selector.overdue_candidates(date(2026, 1, 1)) == ()

    def test_reduced_chain_outstanding(self, billing, accepted_treatment):
        invoice = _compose(billing, accepted_treatment.treatment_id, percent="40")
        billing.apply_payment(invoice.invoice_id, Decimal("100.00"), "card")
        billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="agreed discount", corrected_total=Decimal("300.00")),
        )

        (candidate,) = billing.selector.overdue_candidates(date(2026, 1, 1))
        assert candidate.invoice_id == invoice.invoice_id
        assert candidate.outstanding == Decimal("200.00")

    def test_increase_owed_on_rectifying_invoice(self, billing, accepted_treatment):
        invoice = _compose(billing, accepted_treatment.treatment_id)
        rect = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="missed x-ray", corrected_total=Decimal("300.00")),
        )

        overdue = billing.selector.overdue_candidates(date(2026, 1, 1))

        assert [(c.invoice_id, c.outstanding) for c in overdue] == [
            (invoice.invoice_id, Decimal("250.00")),
            (rect.rectifying_invoice.invoice_id, Decimal("50.00")),
        ]

    def test_nothing_overdue_before_due_date(self, billing, accepted_treatment):
        _compose(billing, accepted_treatment.treatment_id)
        assert billing.selector.overdue_candidates(date(2025, 4, 13)) == ()

    def test_overdue_as_the_clock_moves(self, billing, accepted_treatment, deterministic_clock):
        invoice = _compose(billing, accepted_treatment.treatment_id)
        assert billing.selector.overdue_candidates(deterministic_clock.today()) == ()

        deterministic_clock.advance_days(45)

        (candidate,) = billing.selector.overdue_candidates(deterministic_clock.today())
        assert candidate.invoice_id == invoice.invoice_id
        assert candidate.days_overdue == 15

    def test_totals_by_status(self, billing, accepted_treatment, client_id):
        tid = accepted_treatment.treatment_id
        paid = _compose(billing, tid)
        _compose(billing, tid)
        billing.apply_payment(paid.invoice_id, Decimal("250.00"), "card")
        billing.compose_invoice(
            ComposeRequest(client_id=client_id, items=(LineItemSpec("Cleaning", Decimal("60.00")),))
        )

        totals = billing.selector.totals_by_status()

        assert totals["paid"].invoice_count == 1
        assert totals["paid"].paid == Decimal("250.00")
        assert totals["sent"].invoice_count == 2
        assert totals["sent"].total == Decimal("310.00")
        assert "cancelled" not in totals

    def test_rectification_chain_of_plain_invoice(self, billing, accepted_treatment):
        invoice = _compose(billing, accepted_treatment.treatment_id)
        chain = billing.selector.rectification_chain(invoice.invoice_id)

        assert chain.rectifications == ()
        assert chain.effective_total == Decimal("250.00")
        assert chain.effective_paid == Decimal("0.00")

    def test_cancelled_rectification_left_out_of_effective_total(self, billing, accepted_treatment):
        invoice = _compose(billing, accepted_treatment.treatment_id)
        rect = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="discount", corrected_total=Decimal("200.00")),
        )
        billing.cancel_invoice(rect.rectifying_invoice.invoice_id)

        chain = billing.selector.rectification_chain(invoice.invoice_id)

        assert len(chain.rectifications) == 1
        assert chain.effective_total == Decimal("250.00")

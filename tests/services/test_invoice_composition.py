"""
Invoice composition through BillingService.

Tests cover:
- Insurance and fractional billing on a treatment invoice
- Invoice numbering per tenant and year
- Budget guard: a rejected invoice leaves no trace
- Phase invoices, free-item invoices and input validation
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.dtos import ComposeRequest, LineItemSpec
from billing_kernel.domain.invoice_calculator import DEFERRED_LINE_TYPE, INSURANCE_LINE_TYPE
from billing_kernel.exceptions import (
    BudgetExceededError,
    EmptyItemSetError,
    InvalidInsuranceAmountError,
    MissingClientError,
    PhaseAlreadyInvoicedError,
    TreatmentNotBillableError,
    ValidationError,
)


class TestTreatmentInvoice:
    def test_insurance_and_half_payment(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                insurance_amount=Decimal("200"),
                insurance_name="Sanitas",
                payment_percent=Decimal("50"),
            )
        )

        assert invoice.invoice_number == "FAC-2025-00001"
        assert invoice.status == "sent"
        assert invoice.gross_amount == Decimal("1000.00")
        assert invoice.subtotal == Decimal("400.00")
        assert invoice.total == Decimal("400.00")
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.treatment_totals.invoiced_amount == Decimal("400.00")

    def test_adjustment_lines_sum_to_subtotal(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                insurance_amount=Decimal("200"),
                payment_percent=Decimal("50"),
            )
        )

        assert [line.treatment_type for line in invoice.lines] == [
            None,
            INSURANCE_LINE_TYPE,
            DEFERRED_LINE_TYPE,
        ]
        assert [line.total for line in invoice.lines] == [
            Decimal("1000.00"),
            Decimal("-200.00"),
            Decimal("-400.00"),
        ]
        assert sum(line.total for line in invoice.lines) == invoice.subtotal

    def test_default_due_date(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(treatment_id=accepted_treatment.treatment_id, payment_percent=Decimal("10"))
        )
        assert invoice.issue_date == date(2025, 3, 14)
        assert invoice.due_date == date(2025, 4, 13)

    def test_numbers_are_sequential(self, billing, accepted_treatment):
        numbers = [
            billing.compose_invoice(
                ComposeRequest(
                    treatment_id=accepted_treatment.treatment_id,
                    payment_percent=Decimal("10"),
                )
            ).invoice_number
            for _ in range(3)
        ]
        assert numbers == ["FAC-2025-00001", "FAC-2025-00002", "FAC-2025-00003"]

    def test_numbering_restarts_per_year(self, billing, accepted_treatment):
        billing.compose_invoice(
            ComposeRequest(treatment_id=accepted_treatment.treatment_id, payment_percent=Decimal("10"))
        )
        next_year = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                payment_percent=Decimal("10"),
                issue_date=date(2026, 1, 2),
            )
        )
        assert next_year.invoice_number == "FAC-2026-00001"

    def test_tax_and_discount(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                items=(LineItemSpec("Whitening", Decimal("200.00")),),
                discount_amount=Decimal("100.00"),
                tax_rate=Decimal("21"),
            )
        )
        assert invoice.tax_amount == Decimal("21.00")
        assert invoice.total == Decimal("121.00")
        assert invoice.treatment_totals.invoiced_amount == Decimal("121.00")

    def test_draft_status(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                payment_percent=Decimal("10"),
                status="draft",
            )
        )
        assert invoice.status == "draft"

    @pytest.mark.parametrize("status", ["paid", "cancelled", "bogus"])
    def test_rejects_non_issuable_status(self, billing, accepted_treatment, status):
        with pytest.raises(ValidationError) as exc_info:
            billing.compose_invoice(
                ComposeRequest(treatment_id=accepted_treatment.treatment_id, status=status)
            )
        assert exc_info.value.field == "status"

    def test_fully_insured_invoice_does_not_touch_ledger(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                insurance_amount=Decimal("1000.00"),
            )
        )
        assert invoice.total == Decimal("0.00")
        assert billing.treatment_totals(accepted_treatment.treatment_id).invoiced_amount == Decimal("0.00")


class TestBudgetGuard:
    def test_invoice_beyond_budget_leaves_no_trace(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        billing.compose_invoice(ComposeRequest(treatment_id=tid, payment_percent=Decimal("80")))

        with pytest.raises(BudgetExceededError):
            billing.compose_invoice(ComposeRequest(treatment_id=tid, payment_percent=Decimal("30")))

        assert billing.treatment_totals(tid).invoiced_amount == Decimal("800.00")
        assert len(billing.selector.invoices_for_treatment(tid)) == 1
        # The rejected attempt did not consume a number
        follow_up = billing.compose_invoice(
            ComposeRequest(treatment_id=tid, payment_percent=Decimal("20"))
        )
        assert follow_up.invoice_number == "FAC-2025-00002"

    def test_authorized_overrun(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=tid,
                items=(LineItemSpec("Implant 36 with graft", Decimal("1100.00")),),
                allow_overrun=True,
                override_reason="bone graft agreed with patient",
            )
        )

        assert invoice.treatment_totals.invoiced_amount == Decimal("1100.00")
        assert "budget_overrun_authorized" in billing.audit_trace("Treatment", tid).actions

    def test_overrun_without_reason(self, billing, accepted_treatment):
        with pytest.raises(ValidationError):
            billing.compose_invoice(
                ComposeRequest(
                    treatment_id=accepted_treatment.treatment_id,
                    items=(LineItemSpec("Implant", Decimal("1100.00")),),
                    allow_overrun=True,
                )
            )

    def test_quoted_treatment_rejected(self, billing, client_id):
        quoted = billing.create_treatment(client_id, "Bridge", Decimal("500.00"))
        with pytest.raises(TreatmentNotBillableError):
            billing.compose_invoice(ComposeRequest(treatment_id=quoted.treatment_id))


class TestPhaseInvoice:
    def test_phase_invoice_marks_phase(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        phase = billing.add_phase(tid, "Surgery", Decimal("600.00"))

        invoice = billing.compose_invoice(ComposeRequest(treatment_id=tid, phase_id=phase.phase_id))

        assert invoice.total == Decimal("600.00")
        assert invoice.lines[0].description == "Implant 36 - Surgery"
        phases = {p.phase_id: p for p in billing.get_treatment(tid).phases}
        assert phases[phase.phase_id].status == "invoiced"
        assert phases[phase.phase_id].invoice_id == invoice.invoice_id

    def test_phase_billed_once(self, billing, accepted_treatment):
        tid = accepted_treatment.treatment_id
        phase = billing.add_phase(tid, "Surgery", Decimal("100.00"))
        billing.compose_invoice(ComposeRequest(treatment_id=tid, phase_id=phase.phase_id))

        with pytest.raises(PhaseAlreadyInvoicedError):
            billing.compose_invoice(ComposeRequest(treatment_id=tid, phase_id=phase.phase_id))
        assert billing.treatment_totals(tid).invoiced_amount == Decimal("100.00")

    def test_phase_of_another_treatment(self, billing, accepted_treatment, client_id):
        other = billing.create_treatment(client_id, "Crown", Decimal("300.00"))
        with pytest.raises(ValidationError) as exc_info:
            billing.compose_invoice(
                ComposeRequest(
                    treatment_id=accepted_treatment.treatment_id,
                    phase_id=other.phases[0].phase_id,
                )
            )
        assert exc_info.value.field == "phase_id"

    def test_phase_requires_treatment(self, billing, accepted_treatment):
        phase_id = accepted_treatment.phases[0].phase_id
        with pytest.raises(ValidationError):
            billing.compose_invoice(ComposeRequest(phase_id=phase_id))


class TestFreeItemInvoice:
    def test_items_without_treatment(self, billing, client_id):
        invoice = billing.compose_invoice(
            ComposeRequest(
                client_id=client_id,
                items=(
                    LineItemSpec("Cleaning", Decimal("60.00")),
                    LineItemSpec("X-ray", Decimal("25.00"), quantity=Decimal("2")),
                ),
            )
        )

        assert invoice.treatment_id is None
        assert invoice.treatment_totals is None
        assert invoice.total == Decimal("110.00")

    def test_missing_client(self, billing):
        with pytest.raises(MissingClientError):
            billing.compose_invoice(ComposeRequest(items=(LineItemSpec("Cleaning", "60"),)))

    def test_empty_items(self, billing, client_id):
        with pytest.raises(EmptyItemSetError):
            billing.compose_invoice(ComposeRequest(client_id=client_id))

    def test_insurance_beyond_gross(self, billing, client_id):
        with pytest.raises(InvalidInsuranceAmountError):
            billing.compose_invoice(
                ComposeRequest(
                    client_id=client_id,
                    items=(LineItemSpec("Cleaning", Decimal("60.00")),),
                    insurance_amount=Decimal("60.01"),
                )
            )

    def test_due_date_before_issue_date(self, billing, client_id):
        with pytest.raises(ValidationError) as exc_info:
            billing.compose_invoice(
                ComposeRequest(
                    client_id=client_id,
                    items=(LineItemSpec("Cleaning", Decimal("60.00")),),
                    issue_date=date(2025, 3, 14),
                    due_date=date(2025, 3, 1),
                )
            )
        assert exc_info.value.field == "due_date"

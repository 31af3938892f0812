"""
Rectifying invoices through BillingService.

Tests cover:
- Delta invoices for total and item corrections
- The original invoice staying untouched
- Refunds when a paid chain is reduced
- Chains of several rectifications and their effective totals
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.domain.dtos import ComposeRequest, LineItemSpec, RectificationRequest
from billing_kernel.domain.invoice_calculator import RECTIFICATION_LINE_TYPE
from billing_kernel.exceptions import (
    BudgetExceededError,
    InvalidInsuranceAmountError,
    InvoiceCancelledError,
    NotFoundError,
    OverPaymentError,
    ValidationError,
)


@pytest.fixture
def invoice(billing, accepted_treatment):
    """A 400.00 invoice (1000 gross, 200 insured, 50% billed)."""
    return billing.compose_invoice(
        ComposeRequest(
            treatment_id=accepted_treatment.treatment_id,
            insurance_amount=Decimal("200"),
            payment_percent=Decimal("50"),
        )
    )


@pytest.fixture
def paid_invoice(billing, invoice):
    billing.apply_payment(invoice.invoice_id, Decimal("400.00"), "card")
    return billing.get_invoice(invoice.invoice_id)


class TestTotalCorrection:
    def test_reduction_of_paid_invoice(self, billing, paid_invoice, accepted_treatment):
        result = billing.rectify_invoice(
            paid_invoice.invoice_id,
            RectificationRequest(reason="courtesy discount", corrected_total=Decimal("350.00")),
        )

        rectifying = result.rectifying_invoice
        assert rectifying.total == Decimal("-50.00")
        assert rectifying.is_rectification is True
        assert rectifying.rectified_invoice_id == paid_invoice.invoice_id
        assert rectifying.invoice_number == "FAC-2025-00002"
        assert result.delta == Decimal("-50.00")
        assert result.refund == Decimal("50.00")
        assert rectifying.paid_amount == Decimal("-50.00")
        assert rectifying.status == "paid"
        assert [line.treatment_type for line in rectifying.lines] == [RECTIFICATION_LINE_TYPE]

        totals = billing.treatment_totals(accepted_treatment.treatment_id)
        assert totals.invoiced_amount == Decimal("350.00")
        assert totals.paid_amount == Decimal("350.00")

    def test_original_untouched(self, billing, paid_invoice):
        billing.rectify_invoice(
            paid_invoice.invoice_id,
            RectificationRequest(reason="courtesy discount", corrected_total=Decimal("350.00")),
        )
        assert billing.get_invoice(paid_invoice.invoice_id) == paid_invoice

    def test_reduction_of_unpaid_invoice(self, billing, invoice, accepted_treatment):
        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="courtesy discount", corrected_total=Decimal("350.00")),
        )

        assert result.refund == Decimal("0")
        assert result.rectifying_invoice.status == "sent"
        assert result.rectifying_invoice.paid_amount == Decimal("0")
        assert billing.treatment_totals(accepted_treatment.treatment_id).invoiced_amount == Decimal("350.00")

    def test_partial_refund(self, billing, invoice, accepted_treatment):
        billing.apply_payment(invoice.invoice_id, Decimal("380.00"), "card")

        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="courtesy discount", corrected_total=Decimal("350.00")),
        )

        assert result.refund == Decimal("30.00")
        assert result.rectifying_invoice.status == "sent"
        totals = billing.treatment_totals(accepted_treatment.treatment_id)
        assert totals.invoiced_amount == Decimal("350.00")
        assert totals.paid_amount == Decimal("350.00")

    def test_increase_credits_ledger(self, billing, invoice, accepted_treatment):
        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="extra session", corrected_total=Decimal("450.00")),
        )

        assert result.delta == Decimal("50.00")
        assert result.rectifying_invoice.status == "sent"
        assert billing.treatment_totals(accepted_treatment.treatment_id).invoiced_amount == Decimal("450.00")

    def test_increase_beyond_budget(self, billing, accepted_treatment):
        full = billing.compose_invoice(ComposeRequest(treatment_id=accepted_treatment.treatment_id))
        with pytest.raises(BudgetExceededError):
            billing.rectify_invoice(
                full.invoice_id,
                RectificationRequest(reason="extra", corrected_total=Decimal("1000.01")),
            )
        assert len(billing.selector.invoices_for_treatment(accepted_treatment.treatment_id)) == 1


class TestItemCorrection:
    def test_changed_line_yields_delta(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                items=(
                    LineItemSpec("Implant", Decimal("600.00")),
                    LineItemSpec("Crown", Decimal("300.00")),
                ),
            )
        )

        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(
                reason="crown price",
                items=(
                    LineItemSpec("Implant", Decimal("600.00")),
                    LineItemSpec("Crown", Decimal("250.00")),
                ),
            ),
        )

        lines = result.rectifying_invoice.lines
        assert [(line.description, line.total) for line in lines] == [("Crown", Decimal("-50.00"))]
        assert result.delta == Decimal("-50.00")

    def test_fraction_reapplied_to_item_change(self, billing, invoice, accepted_treatment):
        # (800 - 200 insured) x 50% = 300 now billed, down from 400
        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(
                reason="implant price",
                items=(LineItemSpec("Implant 36", Decimal("800.00")),),
            ),
        )

        lines = result.rectifying_invoice.lines
        assert [(line.description, line.total) for line in lines] == [
            ("Implant 36", Decimal("-200.00")),
            ("Deferred balance (50% billed)", Decimal("100.00")),
        ]
        assert result.delta == Decimal("-100.00")
        totals = billing.treatment_totals(accepted_treatment.treatment_id)
        assert totals.invoiced_amount == Decimal("300.00")

    def test_chain_recomputes_deferral_each_time(self, billing, invoice):
        billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="first", items=(LineItemSpec("Implant 36", Decimal("800.00")),)),
        )
        second = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="second", items=(LineItemSpec("Implant 36", Decimal("600.00")),)),
        )

        assert second.delta == Decimal("-100.00")
        chain = billing.selector.rectification_chain(invoice.invoice_id)
        assert chain.effective_total == Decimal("200.00")

    def test_insurance_cannot_exceed_corrected_items(self, billing, invoice, accepted_treatment):
        with pytest.raises(InvalidInsuranceAmountError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(
                    reason="implant price",
                    items=(LineItemSpec("Implant 36", Decimal("150.00")),),
                ),
            )
        totals = billing.treatment_totals(accepted_treatment.treatment_id)
        assert totals.invoiced_amount == Decimal("400.00")

    def test_restating_unchanged_items(self, billing, invoice):
        with pytest.raises(ValidationError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(
                    reason="no change",
                    items=(LineItemSpec("Implant 36", Decimal("1000.00")),),
                ),
            )

    def test_item_correction_keeps_tax_rate(self, billing, accepted_treatment):
        invoice = billing.compose_invoice(
            ComposeRequest(
                treatment_id=accepted_treatment.treatment_id,
                items=(LineItemSpec("Whitening", Decimal("100.00")),),
                tax_rate=Decimal("21"),
            )
        )
        result = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="price", items=(LineItemSpec("Whitening", Decimal("200.00")),)),
        )
        assert result.rectifying_invoice.tax_rate == Decimal("21")
        assert result.delta == Decimal("121.00")


class TestChain:
    def test_second_rectification_measures_effective_total(self, billing, invoice):
        billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="first", corrected_total=Decimal("350.00")),
        )
        second = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="second", corrected_total=Decimal("300.00")),
        )

        assert second.delta == Decimal("-50.00")
        chain = billing.selector.rectification_chain(invoice.invoice_id)
        assert len(chain.rectifications) == 2
        assert chain.effective_total == Decimal("300.00")

    def test_chain_from_rectifying_invoice(self, billing, invoice):
        rect = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="first", corrected_total=Decimal("350.00")),
        )
        chain = billing.selector.rectification_chain(rect.rectifying_invoice.invoice_id)
        assert chain.original.invoice_id == invoice.invoice_id

    def test_reduced_chain_bounds_payments(self, billing, invoice):
        billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="discount", corrected_total=Decimal("350.00")),
        )

        with pytest.raises(OverPaymentError):
            billing.apply_payment(invoice.invoice_id, Decimal("400.00"), "card")
        result = billing.apply_payment(invoice.invoice_id, Decimal("350.00"), "card")
        assert result.invoice_status == "paid"

    def test_credit_note_refuses_payments(self, billing, invoice):
        rect = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="discount", corrected_total=Decimal("350.00")),
        )
        with pytest.raises(ValidationError):
            billing.apply_payment(rect.rectifying_invoice.invoice_id, Decimal("1.00"), "cash")


class TestRejected:
    def test_reason_required(self, billing, invoice):
        with pytest.raises(ValidationError) as exc_info:
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(reason="  ", corrected_total=Decimal("350.00")),
            )
        assert exc_info.value.field == "reason"

    def test_zero_delta(self, billing, invoice):
        with pytest.raises(ValidationError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(reason="nothing", corrected_total=Decimal("400.00")),
            )

    def test_items_and_total_exclusive(self, billing, invoice):
        with pytest.raises(ValidationError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(
                    reason="both",
                    items=(LineItemSpec("Implant 36", Decimal("900.00")),),
                    corrected_total=Decimal("350.00"),
                ),
            )

    def test_negative_corrected_total(self, billing, invoice):
        with pytest.raises(ValidationError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(reason="refund all", corrected_total=Decimal("-1.00")),
            )

    def test_cancelled_original(self, billing, invoice):
        billing.cancel_invoice(invoice.invoice_id)
        with pytest.raises(InvoiceCancelledError):
            billing.rectify_invoice(
                invoice.invoice_id,
                RectificationRequest(reason="late fix", corrected_total=Decimal("350.00")),
            )

    def test_rectifying_a_rectification(self, billing, invoice):
        rect = billing.rectify_invoice(
            invoice.invoice_id,
            RectificationRequest(reason="discount", corrected_total=Decimal("350.00")),
        )
        with pytest.raises(ValidationError) as exc_info:
            billing.rectify_invoice(
                rect.rectifying_invoice.invoice_id,
                RectificationRequest(reason="again", corrected_total=Decimal("0.00")),
            )
        assert exc_info.value.field == "original_invoice_id"

    def test_unknown_invoice(self, billing):
        with pytest.raises(NotFoundError):
            billing.rectify_invoice(
                uuid4(), RectificationRequest(reason="x", corrected_total=Decimal("1.00"))
            )

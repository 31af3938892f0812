"""
RectificationService -- corrective (rectifying) invoices.

Responsibility:
    Corrects an issued invoice without touching it: a new invoice with its
    own number, ``is_rectification=True`` and ``rectified_invoice_id`` set,
    carries only the delta between the invoice's current effective content
    and the corrected content.  Both documents stay in the ledger as the
    legally required audit chain.

Architecture position:
    Kernel > Services -- imperative shell around domain/invoice_calculator.

Invariants enforced:
    - The original invoice's own fields never change.
    - The ledger moves by the delta only: credit when positive, debit when
      negative.
    - Effective total of a chain = original total + totals of its
      non-cancelled rectifications; corrections are measured against it.
    - When a reduction leaves less billed than was already collected on
      the chain, the excess is refunded: the rectifying invoice carries
      ``paid_amount = -refund`` and the ledger's paid_amount drops by the
      refund before the debit, so paid_amount never exceeds invoiced_amount.

Failure modes:
    - InvoiceCancelledError when the original is cancelled.
    - ValidationError for a missing reason, a zero delta, a negative
      corrected total, or a rectification passed as the original.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.dtos import LedgerTotals, RectificationRequest
from billing_kernel.domain.invoice_calculator import (
    compute_rectification,
    compute_rectification_lines,
    compute_total_correction_line,
)
from billing_kernel.domain.money import ZERO
from billing_kernel.exceptions import InvoiceCancelledError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice, InvoiceItem, InvoiceStatus
from billing_kernel.services.auditor_service import AuditorService
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.treatment_ledger import TreatmentLedger

logger = get_logger("services.rectification")


def active_rectifications(session: Session, original: Invoice) -> list[Invoice]:
    """Non-cancelled rectifying invoices of original, oldest first."""
    return list(
        session.scalars(
            select(Invoice)
            .where(
                Invoice.rectified_invoice_id == original.id,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
            .order_by(Invoice.invoice_number)
        ).all()
    )


def chain_totals(session: Session, original: Invoice) -> tuple[Decimal, Decimal]:
    """(effective total, effective paid) of an invoice and its rectifications."""
    chain = active_rectifications(session, original)
    total = original.total + sum((inv.total for inv in chain), ZERO)
    paid = original.paid_amount + sum((inv.paid_amount for inv in chain), ZERO)
    return total, paid


class RectificationService(BaseService):
    """Issues rectifying invoices."""

    def __init__(
        self,
        scope,
        clock=None,
        *,
        ledger: TreatmentLedger | None = None,
        sequences: SequenceService | None = None,
        auditor: AuditorService | None = None,
        default_due_days: int = 30,
    ):
        super().__init__(scope, clock)
        self._sequences = sequences or SequenceService(scope, clock)
        self._auditor = auditor or AuditorService(scope, clock, self._sequences)
        self._ledger = ledger or TreatmentLedger(scope, clock, self._auditor)
        self._default_due_days = default_due_days

    def rectify(
        self,
        original_invoice_id: UUID,
        corrections: RectificationRequest,
    ) -> tuple[Invoice, Invoice, Decimal, LedgerTotals | None, LedgerTotals | None]:
        """
        Issue a rectifying invoice for original_invoice_id.

        Returns:
            (rectifying invoice, original invoice, refund, previous treatment
            totals, new treatment totals).  Totals are None for invoices
            without a treatment.
        """
        reason = (corrections.reason or "").strip()
        if not reason:
            raise ValidationError("reason", "a rectification requires a reason")
        if corrections.items is not None and corrections.corrected_total is not None:
            raise ValidationError("corrections", "give either items or corrected_total, not both")
        if corrections.items is None and corrections.corrected_total is None:
            raise ValidationError("corrections", "items or corrected_total is required")

        original = self.scope.get_for_update(Invoice, original_invoice_id)
        if original.is_rectification:
            raise ValidationError(
                "original_invoice_id",
                "rectify the original invoice, not a rectifying invoice",
                original.invoice_number,
            )
        if original.status == InvoiceStatus.CANCELLED:
            raise InvoiceCancelledError(str(original.id), original.invoice_number)

        chain = active_rectifications(self.session, original)
        effective_total, effective_paid = chain_totals(self.session, original)

        if corrections.items is not None:
            current_lines = list(original.items)
            for rectifying in chain:
                current_lines.extend(rectifying.items)
            lines = compute_rectification_lines(
                current_lines, corrections.items, payment_percent=original.payment_percent
            )
            computation = compute_rectification(lines, tax_rate=original.tax_rate)
        else:
            lines = compute_total_correction_line(
                effective_total, corrections.corrected_total, reason
            )
            computation = compute_rectification(lines)

        delta = computation.total
        if not lines or delta == ZERO:
            raise ValidationError("corrections", "the correction does not change the invoice")

        new_effective_total = effective_total + delta
        if new_effective_total < ZERO:
            raise ValidationError(
                "corrections",
                f"corrected total cannot be negative (effective total {effective_total})",
                new_effective_total,
            )
        refund = max(ZERO, effective_paid - new_effective_total)

        previous_totals = None
        new_totals = None
        if original.treatment_id is not None:
            treatment_id = original.treatment_id
            previous_totals = LedgerTotals.from_model(self._ledger.lock(treatment_id))
            if delta > ZERO:
                new_totals = self._ledger.credit(treatment_id, delta)
            else:
                if refund > ZERO:
                    self._ledger.reverse_payment(treatment_id, refund)
                new_totals = self._ledger.debit(treatment_id, -delta)

        issue_date = corrections.issue_date or self.clock.today()
        invoice_number = self._sequences.next_invoice_number(issue_date.year)

        if delta < ZERO:
            status = InvoiceStatus.PAID if refund == -delta else InvoiceStatus.SENT
        else:
            status = InvoiceStatus.SENT

        rectifying = Invoice(
            invoice_number=invoice_number,
            client_id=original.client_id,
            treatment_id=original.treatment_id,
            clinic_id=original.clinic_id,
            gross_amount=computation.gross_amount,
            insurance_amount=ZERO,
            payment_percent=computation.payment_percent,
            is_fractional=False,
            subtotal=computation.subtotal,
            tax_rate=computation.tax_rate,
            tax_amount=computation.tax_amount,
            discount_amount=ZERO,
            total=delta,
            paid_amount=-refund if refund > ZERO else ZERO,
            status=status,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=self._default_due_days),
            is_rectification=True,
            rectified_invoice_id=original.id,
            rectification_reason=reason,
            notes=corrections.notes,
            reversal_completed=False,
        )
        for line in computation.lines:
            rectifying.items.append(
                InvoiceItem(
                    sort_order=line.sort_order,
                    description=line.description,
                    treatment_type=line.treatment_type,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount_percent=line.discount_percent,
                    total=line.total,
                )
            )
        self.scope.add(rectifying)
        self.scope.flush()

        self._auditor.record_invoice_rectified(
            original.id,
            rectifying.id,
            invoice_number,
            original.treatment_id,
            delta,
            refund,
            reason,
            previous_totals,
            new_totals,
        )
        logger.info(
            "invoice_rectified",
            extra={
                "invoice_id": str(original.id),
                "rectifying_invoice_id": str(rectifying.id),
                "rectifying_invoice_number": invoice_number,
                "delta": delta,
                "refund": refund,
            },
        )
        return rectifying, original, refund, previous_totals, new_totals

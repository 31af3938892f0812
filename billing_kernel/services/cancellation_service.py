"""
CancellationService -- idempotent cancellation and ledger reversal.

Responsibility:
    Voids an issued invoice: reverses its payments and its invoiced total on
    the treatment ledger, marks it CANCELLED with the reversal bookkeeping
    set, and releases the phase it billed.  Payments stay as the audit
    trail; they are logically superseded.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Idempotent: cancelling a CANCELLED invoice returns
      ``already_cancelled=True`` with zero further effect, so caller
      retries after a timeout are safe.
    - All-or-nothing: any ledger failure aborts the unit and the invoice
      is left exactly as it was.
    - Payments are reversed before the invoiced total is debited, so the
      treatment never shows paid_amount > invoiced_amount, even between
      the two steps.  Credit notes (negative totals) are reinstated in the
      mirror order.
    - An invoice with active (non-cancelled) rectifications cannot be
      cancelled until those are cancelled.

Failure modes:
    - InvalidReversalError when the ledger cannot absorb the reversal or
      the invoice still has active rectifications.
    - NotFoundError for an unknown (or other tenant's) invoice.
"""

from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.domain.dtos import CancellationResult, LedgerTotals
from billing_kernel.domain.money import ZERO
from billing_kernel.exceptions import InvalidReversalError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice, InvoiceStatus
from billing_kernel.services.auditor_service import AuditorService
from billing_kernel.services.base import BaseService
from billing_kernel.services.treatment_ledger import TreatmentLedger

logger = get_logger("services.cancellation")


class CancellationService(BaseService):
    """Cancels invoices; safe to call repeatedly for the same invoice."""

    def __init__(
        self,
        scope,
        clock=None,
        *,
        ledger: TreatmentLedger | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(scope, clock)
        self._auditor = auditor or AuditorService(scope, clock)
        self._ledger = ledger or TreatmentLedger(scope, clock, self._auditor)

    def _active_rectifications(self, invoice: Invoice) -> int:
        return self.session.execute(
            select(func.count(Invoice.id)).where(
                Invoice.rectified_invoice_id == invoice.id,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
        ).scalar_one()

    def _reverse_on_ledger(self, invoice: Invoice) -> LedgerTotals:
        treatment_id = invoice.treatment_id
        total = invoice.total
        paid = invoice.paid_amount
        totals = None

        if total < ZERO:
            # Credit note: reinstate the charge, then the refunded amount
            totals = self._ledger.credit(
                treatment_id,
                -total,
                allow_overrun=True,
                reason=f"credit note {invoice.invoice_number} cancelled",
                check_billable=False,
            )
            if paid < ZERO:
                totals = self._ledger.record_payment(treatment_id, -paid)
        else:
            if paid > ZERO:
                totals = self._ledger.reverse_payment(treatment_id, paid)
            if total > ZERO:
                totals = self._ledger.debit(treatment_id, total)

        return totals or self._ledger.totals(treatment_id)

    def cancel(self, invoice_id: UUID, reason: str | None = None) -> CancellationResult:
        """
        Cancel an invoice and reverse its effect on the treatment ledger.

        Postconditions:
            - invoice.status == CANCELLED and reversal_completed is True.
            - Treatment invoiced/paid totals no longer include the invoice.
        """
        invoice = self.scope.get_for_update(Invoice, invoice_id)

        if invoice.status == InvoiceStatus.CANCELLED:
            totals = (
                self._ledger.totals(invoice.treatment_id)
                if invoice.treatment_id is not None
                else None
            )
            logger.info(
                "invoice_cancel_noop",
                extra={"invoice_id": str(invoice.id), "invoice_number": invoice.invoice_number},
            )
            return CancellationResult(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                already_cancelled=True,
                reversed_total=ZERO,
                reversed_paid=ZERO,
                previous_totals=totals,
                new_totals=totals,
            )

        if self._active_rectifications(invoice):
            raise InvalidReversalError(
                str(invoice.id),
                "invoice has active rectifications; cancel them first",
            )

        previous_totals = None
        new_totals = None
        if invoice.treatment_id is not None:
            previous_totals = LedgerTotals.from_model(self._ledger.lock(invoice.treatment_id))
            new_totals = self._reverse_on_ledger(invoice)

        invoice.status = InvoiceStatus.CANCELLED
        invoice.cancelled_at = self.clock.now()
        invoice.cancellation_reason = reason
        invoice.reversal_completed = True
        self.scope.flush()

        if invoice.phase_id is not None:
            self._ledger.release_phase(invoice.phase_id)

        self._auditor.record_invoice_cancelled(
            invoice.id,
            invoice.invoice_number,
            invoice.treatment_id,
            reason,
            previous_totals,
            new_totals,
        )
        logger.info(
            "invoice_cancelled",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "reversed_total": invoice.total,
                "reversed_paid": invoice.paid_amount,
            },
        )
        return CancellationResult(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            already_cancelled=False,
            reversed_total=invoice.total,
            reversed_paid=invoice.paid_amount,
            previous_totals=previous_totals,
            new_totals=new_totals,
        )

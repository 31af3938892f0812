"""
PaymentRecorder -- applies payments to invoices.

Responsibility:
    Validates a payment against the invoice's outstanding balance, records
    the immutable Payment row, updates the invoice's paid_amount and status,
    and records the payment on the treatment ledger in the same unit.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - paid_amount + amount <= total (OverPaymentError otherwise).  For an
      invoice with rectifications the chain's effective total bounds it.
    - status = PAID when paid_amount == total (or the chain is settled),
      else PARTIAL (an OVERDUE invoice stays OVERDUE until fully paid).
    - Treatment.paid_amount moves by exactly the same amount.

Failure modes:
    - InvoiceCancelledError for a cancelled invoice.
    - ValidationError for a non-positive amount, an unknown method, or an
      invoice whose total is not positive (credit-note rectifications).
"""

from uuid import UUID

from billing_kernel.domain.dtos import LedgerTotals
from billing_kernel.domain.money import ZERO, require_amount
from billing_kernel.exceptions import (
    InvoiceCancelledError,
    OverPaymentError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice, InvoiceStatus, Payment, PaymentMethod
from billing_kernel.services.auditor_service import AuditorService
from billing_kernel.services.base import BaseService
from billing_kernel.services.rectification_service import chain_totals
from billing_kernel.services.treatment_ledger import TreatmentLedger

logger = get_logger("services.payment_recorder")


def parse_method(method) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError("method", f"must be one of {allowed}", method) from exc


class PaymentRecorder(BaseService):
    """Records payments; one call is one Payment row."""

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

    def apply_payment(
        self,
        invoice_id: UUID,
        amount,
        method,
        reference: str | None = None,
        notes: str | None = None,
    ) -> tuple[Payment, Invoice, LedgerTotals | None]:
        """
        Apply a payment to an invoice.

        Returns:
            The new Payment, the updated Invoice and the treatment totals
            (None when the invoice has no treatment).
        """
        amount = require_amount("amount", amount)
        payment_method = parse_method(method)

        invoice = self.scope.get_for_update(Invoice, invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvoiceCancelledError(str(invoice.id), invoice.invoice_number)
        if invoice.total <= ZERO:
            raise ValidationError(
                "invoice_id",
                "invoices with a non-positive total do not accept payments",
                invoice.invoice_number,
            )
        if invoice.paid_amount + amount > invoice.total:
            raise OverPaymentError(str(invoice.id), invoice.total, invoice.paid_amount, amount)
        if not invoice.is_rectification:
            # A reduced chain owes its effective total, not the original's
            chain_total, chain_paid = chain_totals(self.session, invoice)
            if chain_paid + amount > chain_total:
                raise OverPaymentError(str(invoice.id), chain_total, chain_paid, amount)
        else:
            chain_total, chain_paid = invoice.total, invoice.paid_amount

        totals = None
        if invoice.treatment_id is not None:
            totals = self._ledger.record_payment(invoice.treatment_id, amount)

        payment = Payment(
            invoice_id=invoice.id,
            amount=amount,
            method=payment_method,
            reference=reference,
            notes=notes,
            paid_at=self.clock.now(),
        )
        self.scope.add(payment)

        previous_status = invoice.status
        invoice.paid_amount = invoice.paid_amount + amount
        if invoice.paid_amount == invoice.total or chain_paid + amount == chain_total:
            invoice.status = InvoiceStatus.PAID
        elif previous_status != InvoiceStatus.OVERDUE:
            invoice.status = InvoiceStatus.PARTIAL
        self.scope.flush()
        self.session.expire(invoice, ["payments"])

        self._auditor.record_payment_recorded(
            invoice.id,
            payment.id,
            amount,
            payment_method.value,
            invoice.treatment_id,
            totals,
        )
        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "amount": amount,
                "method": payment_method.value,
                "invoice_status": invoice.status.value,
                "paid_amount": invoice.paid_amount,
            },
        )
        return payment, invoice, totals

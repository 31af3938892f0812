"""
InvoiceComposer -- issues invoices against treatments or free line items.

Responsibility:
    Resolves the seed line (treatment or phase) or the caller's items,
    delegates all arithmetic to domain/invoice_calculator, credits the
    treatment ledger, allocates the invoice number and persists the
    invoice with its items.

Architecture position:
    Kernel > Services -- imperative shell around the pure calculator.

Invariants enforced:
    - The ledger credit is the first write of the unit and happens before
      the invoice is flushed; any failure (budget, conflict, validation)
      aborts the whole unit and nothing is persisted.
    - The invoice number comes from the tenant's locked counter for the
      issue year.
    - A phase is billed at most once (PhaseAlreadyInvoicedError).

Failure modes:
    - MissingClientError, EmptyItemSetError, InvalidInsuranceAmountError,
      ValidationError from input checks.
    - BudgetExceededError, TreatmentNotBillableError from the ledger.
    - NotFoundError for an unknown (or other tenant's) treatment or phase.
"""

from datetime import timedelta
from decimal import Decimal

from billing_kernel.domain.dtos import ComposeRequest, LedgerTotals, LineItemSpec
from billing_kernel.domain.invoice_calculator import compute_invoice
from billing_kernel.domain.money import ZERO
from billing_kernel.exceptions import (
    EmptyItemSetError,
    MissingClientError,
    PhaseAlreadyInvoicedError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice, InvoiceItem, InvoiceStatus
from billing_kernel.models.treatment import PhaseStatus, Treatment, TreatmentPhase
from billing_kernel.services.auditor_service import AuditorService
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.treatment_ledger import TreatmentLedger

logger = get_logger("services.invoice_composer")

_ISSUABLE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT)


class InvoiceComposer(BaseService):
    """
    Composes and persists one invoice per call.

    Usage:
        invoice, totals = composer.compose(
            ComposeRequest(treatment_id=t.id, insurance_amount=Decimal("200"),
                           payment_percent=Decimal("50"))
        )
    """

    def __init__(
        self,
        scope,
        clock=None,
        *,
        ledger: TreatmentLedger | None = None,
        sequences: SequenceService | None = None,
        auditor: AuditorService | None = None,
        default_tax_rate: Decimal = ZERO,
        default_due_days: int = 30,
    ):
        super().__init__(scope, clock)
        self._sequences = sequences or SequenceService(scope, clock)
        self._auditor = auditor or AuditorService(scope, clock, self._sequences)
        self._ledger = ledger or TreatmentLedger(scope, clock, self._auditor)
        self._default_tax_rate = default_tax_rate
        self._default_due_days = default_due_days

    def _resolve_phase(self, treatment: Treatment, phase_id) -> TreatmentPhase:
        phase = self._ledger.get_phase(phase_id)
        if phase.treatment_id != treatment.id:
            raise ValidationError("phase_id", "phase does not belong to the treatment", phase_id)
        if phase.status == PhaseStatus.INVOICED:
            raise PhaseAlreadyInvoicedError(str(phase.id), phase.invoice_id and str(phase.invoice_id))
        return phase

    def _seed_items(
        self,
        request: ComposeRequest,
        treatment: Treatment | None,
        phase: TreatmentPhase | None,
    ) -> tuple[LineItemSpec, ...]:
        if request.items:
            return tuple(request.items)
        if phase is not None:
            return (LineItemSpec(f"{treatment.name} - {phase.name}", phase.amount),)
        if treatment is not None:
            return (LineItemSpec(treatment.name, treatment.budget_amount),)
        raise EmptyItemSetError()

    def compose(self, request: ComposeRequest) -> tuple[Invoice, LedgerTotals | None]:
        """
        Issue one invoice.

        Returns:
            The flushed Invoice and the treatment totals after the credit
            (None for invoices without a treatment).
        """
        treatment = None
        phase = None
        if request.phase_id is not None and request.treatment_id is None:
            raise ValidationError("treatment_id", "required when phase_id is given")
        if request.treatment_id is not None:
            treatment = self._ledger.get(request.treatment_id)
            self._ledger.assert_billable(treatment)
            if request.phase_id is not None:
                phase = self._resolve_phase(treatment, request.phase_id)

        client_id = request.client_id or (treatment.client_id if treatment else None)
        if client_id is None:
            raise MissingClientError()

        try:
            status = InvoiceStatus(request.status)
        except ValueError as exc:
            raise ValidationError("status", "must be draft or sent", request.status) from exc
        if status not in _ISSUABLE_STATUSES:
            raise ValidationError("status", "must be draft or sent", request.status)

        tax_rate = request.tax_rate if request.tax_rate is not None else self._default_tax_rate
        computation = compute_invoice(
            self._seed_items(request, treatment, phase),
            insurance_amount=request.insurance_amount,
            insurance_name=request.insurance_name,
            payment_percent=request.payment_percent,
            discount_amount=request.discount_amount,
            tax_rate=tax_rate,
        )

        issue_date = request.issue_date or self.clock.today()
        due_date = request.due_date or issue_date + timedelta(days=self._default_due_days)
        if due_date < issue_date:
            raise ValidationError("due_date", "must not be before issue_date", due_date)

        totals = None
        override_reason = None
        if treatment is not None:
            if computation.total > ZERO:
                totals = self._ledger.credit(
                    treatment.id,
                    computation.total,
                    allow_overrun=request.allow_overrun,
                    reason=request.override_reason,
                )
                if totals.invoiced_amount > totals.budget_amount:
                    override_reason = request.override_reason
            else:
                totals = LedgerTotals.from_model(treatment)

        invoice_number = self._sequences.next_invoice_number(issue_date.year)

        invoice = Invoice(
            invoice_number=invoice_number,
            client_id=client_id,
            treatment_id=treatment.id if treatment else None,
            phase_id=phase.id if phase else None,
            clinic_id=request.clinic_id or (treatment.clinic_id if treatment else None),
            gross_amount=computation.gross_amount,
            insurance_amount=computation.insurance_amount,
            insurance_name=request.insurance_name,
            payment_percent=computation.payment_percent,
            is_fractional=computation.is_fractional,
            subtotal=computation.subtotal,
            tax_rate=computation.tax_rate,
            tax_amount=computation.tax_amount,
            discount_amount=computation.discount_amount,
            total=computation.total,
            paid_amount=ZERO,
            status=status,
            issue_date=issue_date,
            due_date=due_date,
            is_rectification=False,
            notes=request.notes,
            override_reason=override_reason,
            reversal_completed=False,
        )
        for line in computation.lines:
            invoice.items.append(
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
        self.scope.add(invoice)
        self.scope.flush()

        if phase is not None:
            self._ledger.mark_phase_invoiced(phase.id, invoice.id)

        self._auditor.record_invoice_issued(
            invoice.id, invoice.invoice_number, invoice.treatment_id, invoice.total, totals
        )
        logger.info(
            "invoice_composed",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice_number,
                "treatment_id": str(invoice.treatment_id) if invoice.treatment_id else None,
                "gross_amount": computation.gross_amount,
                "total": computation.total,
                "is_fractional": computation.is_fractional,
            },
        )
        return invoice, totals

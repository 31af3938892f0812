"""
TreatmentLedger -- running invoiced/paid totals and lifecycle of treatments.

Responsibility:
    Owns every write to Treatment.invoiced_amount and Treatment.paid_amount
    (credit, debit, record_payment, reverse_payment), the treatment status
    lifecycle and the phase lifecycle.

Architecture position:
    Kernel > Services -- imperative shell.  Called by InvoiceComposer,
    PaymentRecorder, CancellationService and RectificationService inside
    their unit of work.

Invariants enforced:
    - invoiced_amount <= budget_amount unless an overrun is explicitly
      authorized with a recorded reason.
    - 0 <= paid_amount <= invoiced_amount.
    - Each money operation is one locked read-modify-write: the treatment
      row is read with SELECT ... FOR UPDATE and the write carries the
      optimistic version check.  The change is flushed immediately so that
      it is the first write of the unit and concurrent writers serialize
      on it.

Failure modes:
    - BudgetExceededError, InvalidReversalError, OverPaymentError when a
      ledger invariant would break.
    - TreatmentNotBillableError when crediting a quoted or cancelled
      treatment.
    - InvalidStatusTransitionError on a lifecycle edge that is not allowed.
    - ValidationError on non-positive or sub-cent amounts.
"""

from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.domain.dtos import LedgerTotals
from billing_kernel.domain.money import ZERO, require_amount
from billing_kernel.exceptions import (
    BudgetExceededError,
    InvalidReversalError,
    InvalidStatusTransitionError,
    OverPaymentError,
    PhaseAlreadyInvoicedError,
    TreatmentNotBillableError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.treatment import (
    PhaseStatus,
    Treatment,
    TreatmentPhase,
    TreatmentStatus,
)
from billing_kernel.services.auditor_service import AuditorService
from billing_kernel.services.base import BaseService

logger = get_logger("services.treatment_ledger")

DEFAULT_PHASE_NAME = "Full treatment"

_ALLOWED_TRANSITIONS: dict[TreatmentStatus, frozenset[TreatmentStatus]] = {
    TreatmentStatus.QUOTED: frozenset({TreatmentStatus.ACCEPTED, TreatmentStatus.CANCELLED}),
    TreatmentStatus.ACCEPTED: frozenset(
        {TreatmentStatus.IN_PROGRESS, TreatmentStatus.COMPLETED, TreatmentStatus.CANCELLED}
    ),
    TreatmentStatus.IN_PROGRESS: frozenset(
        {TreatmentStatus.COMPLETED, TreatmentStatus.CANCELLED}
    ),
    TreatmentStatus.COMPLETED: frozenset(),
    TreatmentStatus.CANCELLED: frozenset(),
}


class TreatmentLedger(BaseService):
    """
    The treatment's budget ledger.

    Usage (inside a BillingService unit):
        totals = ledger.credit(treatment_id, Decimal("400.00"))
        totals = ledger.record_payment(treatment_id, Decimal("400.00"))
    """

    def __init__(self, scope, clock=None, auditor: AuditorService | None = None):
        super().__init__(scope, clock)
        self._auditor = auditor or AuditorService(scope, clock)

    # Reads

    def get(self, treatment_id: UUID) -> Treatment:
        return self.scope.get(Treatment, treatment_id)

    def lock(self, treatment_id: UUID) -> Treatment:
        return self.scope.get_for_update(Treatment, treatment_id)

    def totals(self, treatment_id: UUID) -> LedgerTotals:
        return LedgerTotals.from_model(self.get(treatment_id))

    def assert_billable(self, treatment: Treatment) -> None:
        if not treatment.is_billable:
            raise TreatmentNotBillableError(str(treatment.id), treatment.status.value)

    # Money operations

    def credit(
        self,
        treatment_id: UUID,
        amount,
        *,
        allow_overrun: bool = False,
        reason: str | None = None,
        check_billable: bool = True,
    ) -> LedgerTotals:
        """
        Increase invoiced_amount by amount.

        check_billable=False is used when cancelling a credit note, which
        reinstates an amount that was already invoiced once.

        Raises:
            BudgetExceededError: If the result would exceed budget_amount and
                the overrun is not authorized.
            ValidationError: If an overrun is authorized without a reason.
        """
        amount = require_amount("amount", amount)
        treatment = self.lock(treatment_id)
        if check_billable:
            self.assert_billable(treatment)

        new_invoiced = treatment.invoiced_amount + amount
        if new_invoiced > treatment.budget_amount:
            if not allow_overrun:
                logger.warning(
                    "budget_exceeded",
                    extra={
                        "treatment_id": str(treatment_id),
                        "budget_amount": treatment.budget_amount,
                        "invoiced_amount": treatment.invoiced_amount,
                        "requested": amount,
                    },
                )
                raise BudgetExceededError(
                    str(treatment_id),
                    treatment.budget_amount,
                    treatment.invoiced_amount,
                    amount,
                )
            if not reason or not reason.strip():
                raise ValidationError(
                    "override_reason",
                    "required when invoicing beyond the treatment budget",
                )
            logger.warning(
                "budget_overrun_authorized",
                extra={
                    "treatment_id": str(treatment_id),
                    "budget_amount": treatment.budget_amount,
                    "new_invoiced_amount": new_invoiced,
                    "reason": reason,
                },
            )

        treatment.invoiced_amount = new_invoiced
        self.scope.flush()
        if new_invoiced > treatment.budget_amount:
            self._auditor.record_budget_overrun_authorized(
                treatment.id, treatment.budget_amount, new_invoiced, reason
            )
        logger.info(
            "ledger_credited",
            extra={"treatment_id": str(treatment_id), "amount": amount, "invoiced_amount": new_invoiced},
        )
        return LedgerTotals.from_model(treatment)

    def debit(self, treatment_id: UUID, amount) -> LedgerTotals:
        """
        Decrease invoiced_amount by amount.

        Raises:
            InvalidReversalError: If the result would drop below zero or
                below paid_amount.
        """
        amount = require_amount("amount", amount)
        treatment = self.lock(treatment_id)

        new_invoiced = treatment.invoiced_amount - amount
        if new_invoiced < ZERO:
            raise InvalidReversalError(
                str(treatment_id),
                f"debit of {amount} would drive invoiced_amount below zero "
                f"(invoiced {treatment.invoiced_amount})",
            )
        if new_invoiced < treatment.paid_amount:
            raise InvalidReversalError(
                str(treatment_id),
                f"debit of {amount} would leave invoiced_amount {new_invoiced} "
                f"below paid_amount {treatment.paid_amount}",
            )

        treatment.invoiced_amount = new_invoiced
        self.scope.flush()
        logger.info(
            "ledger_debited",
            extra={"treatment_id": str(treatment_id), "amount": amount, "invoiced_amount": new_invoiced},
        )
        return LedgerTotals.from_model(treatment)

    def record_payment(self, treatment_id: UUID, amount) -> LedgerTotals:
        """
        Increase paid_amount by amount.

        Raises:
            OverPaymentError: If paid_amount would exceed invoiced_amount.
        """
        amount = require_amount("amount", amount)
        treatment = self.lock(treatment_id)

        new_paid = treatment.paid_amount + amount
        if new_paid > treatment.invoiced_amount:
            raise OverPaymentError(
                str(treatment_id),
                treatment.invoiced_amount,
                treatment.paid_amount,
                amount,
            )

        treatment.paid_amount = new_paid
        self.scope.flush()
        logger.info(
            "ledger_payment_recorded",
            extra={"treatment_id": str(treatment_id), "amount": amount, "paid_amount": new_paid},
        )
        return LedgerTotals.from_model(treatment)

    def reverse_payment(self, treatment_id: UUID, amount) -> LedgerTotals:
        """
        Decrease paid_amount by amount.

        Raises:
            InvalidReversalError: If paid_amount would drop below zero.
        """
        amount = require_amount("amount", amount)
        treatment = self.lock(treatment_id)

        new_paid = treatment.paid_amount - amount
        if new_paid < ZERO:
            raise InvalidReversalError(
                str(treatment_id),
                f"reversing {amount} would drive paid_amount below zero "
                f"(paid {treatment.paid_amount})",
            )

        treatment.paid_amount = new_paid
        self.scope.flush()
        logger.info(
            "ledger_payment_reversed",
            extra={"treatment_id": str(treatment_id), "amount": amount, "paid_amount": new_paid},
        )
        return LedgerTotals.from_model(treatment)

    # Treatment lifecycle

    def create_treatment(
        self,
        client_id: UUID,
        name: str,
        budget_amount,
        *,
        doctor_id: UUID | None = None,
        clinic_id: UUID | None = None,
        tooth_numbers: str | None = None,
        notes: str | None = None,
    ) -> Treatment:
        """Create a QUOTED treatment with one default phase for the whole budget."""
        if client_id is None:
            raise ValidationError("client_id", "a treatment must reference a client")
        if not name or not name.strip():
            raise ValidationError("name", "must not be empty", name)
        budget = require_amount("budget_amount", budget_amount, allow_zero=True)

        treatment = Treatment(
            client_id=client_id,
            doctor_id=doctor_id,
            clinic_id=clinic_id,
            name=name.strip(),
            tooth_numbers=tooth_numbers,
            notes=notes,
            status=TreatmentStatus.QUOTED,
            budget_amount=budget,
            invoiced_amount=ZERO,
            paid_amount=ZERO,
        )
        treatment.phases.append(
            TreatmentPhase(
                name=DEFAULT_PHASE_NAME,
                phase_order=1,
                amount=budget,
                status=PhaseStatus.PENDING,
            )
        )
        self.scope.add(treatment)
        self.scope.flush()

        self._auditor.record_treatment_created(treatment.id, budget, client_id)
        logger.info(
            "treatment_created",
            extra={"treatment_id": str(treatment.id), "budget_amount": budget},
        )
        return treatment

    def _transition(self, treatment_id: UUID, to_status: TreatmentStatus) -> Treatment:
        treatment = self.lock(treatment_id)
        from_status = treatment.status
        if to_status not in _ALLOWED_TRANSITIONS[from_status]:
            raise InvalidStatusTransitionError(
                "Treatment", str(treatment_id), from_status.value, to_status.value
            )

        treatment.status = to_status
        if to_status == TreatmentStatus.ACCEPTED:
            treatment.budget_accepted_at = self.clock.now()
        elif to_status == TreatmentStatus.COMPLETED:
            treatment.completed_at = self.clock.now()
        self.scope.flush()

        self._auditor.record_treatment_status_changed(
            treatment.id, from_status.value, to_status.value
        )
        logger.info(
            "treatment_status_changed",
            extra={
                "treatment_id": str(treatment_id),
                "from_status": from_status.value,
                "to_status": to_status.value,
            },
        )
        return treatment

    def accept(self, treatment_id: UUID) -> Treatment:
        """QUOTED -> ACCEPTED; freezes budget_amount."""
        return self._transition(treatment_id, TreatmentStatus.ACCEPTED)

    def start(self, treatment_id: UUID) -> Treatment:
        return self._transition(treatment_id, TreatmentStatus.IN_PROGRESS)

    def complete(self, treatment_id: UUID) -> Treatment:
        return self._transition(treatment_id, TreatmentStatus.COMPLETED)

    def cancel_treatment(self, treatment_id: UUID) -> Treatment:
        return self._transition(treatment_id, TreatmentStatus.CANCELLED)

    def requote(self, treatment_id: UUID, budget_amount) -> Treatment:
        """Change the budget of a treatment that has not been accepted yet."""
        budget = require_amount("budget_amount", budget_amount, allow_zero=True)
        treatment = self.lock(treatment_id)
        if treatment.status != TreatmentStatus.QUOTED:
            # budget_amount is frozen from acceptance on
            raise InvalidStatusTransitionError(
                "Treatment", str(treatment_id), treatment.status.value, "requoted"
            )

        previous = treatment.budget_amount
        treatment.budget_amount = budget
        # The default phase follows the budget while it is the only phase
        if len(treatment.phases) == 1 and treatment.phases[0].name == DEFAULT_PHASE_NAME:
            treatment.phases[0].amount = budget
        self.scope.flush()

        self._auditor.record_treatment_requoted(treatment.id, previous, budget)
        return treatment

    def delete_treatment(self, treatment_id: UUID) -> None:
        """Delete a QUOTED treatment that nothing has been invoiced against."""
        treatment = self.lock(treatment_id)
        if treatment.status != TreatmentStatus.QUOTED:
            raise InvalidStatusTransitionError(
                "Treatment", str(treatment_id), treatment.status.value, "deleted"
            )
        invoice_count = self.session.execute(
            select(func.count(Invoice.id)).where(Invoice.treatment_id == treatment_id)
        ).scalar_one()
        if treatment.invoiced_amount != ZERO or invoice_count:
            raise ValidationError(
                "treatment_id", "treatments with invoices cannot be deleted", treatment_id
            )

        self.session.delete(treatment)
        self.scope.flush()
        self._auditor.record_treatment_deleted(treatment_id)
        logger.info("treatment_deleted", extra={"treatment_id": str(treatment_id)})

    # Phases

    def get_phase(self, phase_id: UUID) -> TreatmentPhase:
        return self.scope.get(TreatmentPhase, phase_id)

    def add_phase(
        self,
        treatment_id: UUID,
        name: str,
        amount,
        description: str | None = None,
    ) -> TreatmentPhase:
        if not name or not name.strip():
            raise ValidationError("name", "must not be empty", name)
        value = require_amount("amount", amount, allow_zero=True)
        treatment = self.get(treatment_id)
        if treatment.status == TreatmentStatus.CANCELLED:
            raise TreatmentNotBillableError(str(treatment_id), treatment.status.value)

        max_order = self.session.execute(
            select(func.max(TreatmentPhase.phase_order)).where(
                TreatmentPhase.treatment_id == treatment_id
            )
        ).scalar_one()
        phase = TreatmentPhase(
            treatment_id=treatment_id,
            name=name.strip(),
            description=description,
            amount=value,
            phase_order=(max_order or 0) + 1,
            status=PhaseStatus.PENDING,
        )
        self.scope.add(phase)
        self.scope.flush()
        self.session.expire(treatment, ["phases"])

        self._auditor.record_phase_added(treatment_id, phase.id, value)
        return phase

    def set_phase_status(self, phase_id: UUID, status: PhaseStatus) -> TreatmentPhase:
        """Move a phase between PENDING, IN_PROGRESS and COMPLETED."""
        try:
            status = PhaseStatus(status)
        except ValueError as exc:
            raise ValidationError("status", "unknown phase status", status) from exc
        phase = self.get_phase(phase_id)
        if phase.status == PhaseStatus.INVOICED or status == PhaseStatus.INVOICED:
            raise InvalidStatusTransitionError(
                "TreatmentPhase", str(phase_id), phase.status.value, status.value
            )

        phase.status = status
        phase.completed_at = self.clock.now() if status == PhaseStatus.COMPLETED else None
        self.scope.flush()
        return phase

    def mark_phase_invoiced(self, phase_id: UUID, invoice_id: UUID) -> TreatmentPhase:
        phase = self.scope.get_for_update(TreatmentPhase, phase_id)
        if phase.status == PhaseStatus.INVOICED:
            raise PhaseAlreadyInvoicedError(str(phase_id), phase.invoice_id and str(phase.invoice_id))

        phase.status = PhaseStatus.INVOICED
        phase.invoice_id = invoice_id
        if phase.completed_at is None:
            phase.completed_at = self.clock.now()
        self.scope.flush()
        return phase

    def release_phase(self, phase_id: UUID) -> TreatmentPhase:
        """Unlink a phase from its cancelled invoice; it returns to COMPLETED."""
        phase = self.scope.get_for_update(TreatmentPhase, phase_id)
        phase.status = PhaseStatus.COMPLETED
        phase.invoice_id = None
        self.scope.flush()
        return phase

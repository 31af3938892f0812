"""
BillingService -- the transaction boundary of the billing kernel.

Responsibility:
    Composes the kernel services (TreatmentLedger, InvoiceComposer,
    PaymentRecorder, CancellationService, RectificationService) over one
    TenantScope and owns the transaction: every public method commits on
    success and rolls back on any failure.  Callers receive frozen DTOs,
    never ORM entities.

Architecture position:
    Kernel > Services -- outermost kernel layer.  Callers (API handlers,
    scripts, tests) hold one BillingService per session and tenant.

Invariants enforced:
    - All-or-nothing: a failed operation leaves no trace in the database.
    - Lock timeouts, deadlocks, stale optimistic versions and unique-key
      races surface as ConflictError.  Nothing is retried automatically.
    - on_event is called only after a successful commit, once per audit
      event of the unit.

Usage::

    billing = BillingService(session, tenant_id, actor_id, settings=settings)
    treatment = billing.create_treatment(client_id, "Implant 36", Decimal("1000.00"))
    billing.accept_treatment(treatment.treatment_id)
    invoice = billing.compose_invoice(
        ComposeRequest(treatment_id=treatment.treatment_id,
                       insurance_amount=Decimal("200"), payment_percent=Decimal("50"))
    )
"""

from __future__ import annotations

from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_kernel.config import LedgerSettings
from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.db.tenant_scope import TenantScope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import (
    CancellationResult,
    ComposeRequest,
    InvoiceResult,
    LedgerEvent,
    LedgerTotals,
    PaymentResult,
    PhaseResult,
    RectificationRequest,
    RectificationResult,
    TreatmentResult,
)
from billing_kernel.exceptions import ConflictError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.treatment import PhaseStatus
from billing_kernel.selectors.ledger_selector import LedgerSelector
from billing_kernel.services.auditor_service import AuditorService, AuditTrace
from billing_kernel.services.cancellation_service import CancellationService
from billing_kernel.services.invoice_composer import InvoiceComposer
from billing_kernel.services.payment_recorder import PaymentRecorder
from billing_kernel.services.rectification_service import RectificationService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.treatment_ledger import TreatmentLedger

logger = get_logger("services.billing")

ResultT = TypeVar("ResultT")

_LOCK_FAILURE_MARKERS = ("lock", "deadlock", "serializ", "busy")


def _is_lock_failure(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_FAILURE_MARKERS)


class BillingService:
    """
    Facade over the billing ledger for one tenant.

    Contract:
        Each public mutating method either commits and returns a DTO, or
        rolls back and raises.  No method leaves the session with pending
        changes.

    Transaction boundary:
        Kernel services flush but never commit; this class commits.
    """

    def __init__(
        self,
        session: Session,
        tenant_id: UUID,
        actor_id: UUID,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
        on_event: Callable[[LedgerEvent], None] | None = None,
    ):
        register_immutability_listeners()
        self._session = session
        self._settings = settings or LedgerSettings()
        self._clock = clock or SystemClock()
        self._on_event = on_event
        self._scope = TenantScope(session, tenant_id, actor_id)

        self._sequences = SequenceService(
            self._scope,
            self._clock,
            invoice_prefix=self._settings.invoice_prefix,
            digits=self._settings.invoice_sequence_digits,
        )
        self._auditor = AuditorService(self._scope, self._clock, self._sequences)
        self._ledger = TreatmentLedger(self._scope, self._clock, self._auditor)
        self._composer = InvoiceComposer(
            self._scope,
            self._clock,
            ledger=self._ledger,
            sequences=self._sequences,
            auditor=self._auditor,
            default_tax_rate=self._settings.default_tax_rate,
            default_due_days=self._settings.default_due_days,
        )
        self._payments = PaymentRecorder(
            self._scope, self._clock, ledger=self._ledger, auditor=self._auditor
        )
        self._cancellations = CancellationService(
            self._scope, self._clock, ledger=self._ledger, auditor=self._auditor
        )
        self._rectifications = RectificationService(
            self._scope,
            self._clock,
            ledger=self._ledger,
            sequences=self._sequences,
            auditor=self._auditor,
            default_due_days=self._settings.default_due_days,
        )
        self.selector = LedgerSelector(session)

    @property
    def tenant_id(self) -> UUID:
        return self._scope.tenant_id

    @property
    def actor_id(self) -> UUID:
        return self._scope.actor_id

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _rollback(self) -> None:
        self._session.rollback()
        self._auditor.emitted.clear()

    def _run(self, operation: str, fn: Callable[[], ResultT], **context) -> ResultT:
        with LogContext.bind(
            operation=operation,
            tenant_id=self.tenant_id,
            actor_id=self.actor_id,
            **context,
        ):
            try:
                result = fn()
                self._session.commit()
            except StaleDataError as exc:
                self._rollback()
                logger.warning("billing_conflict", extra={"operation": operation, "cause": "stale_version"})
                raise ConflictError(operation, "row was modified concurrently") from exc
            except IntegrityError as exc:
                self._rollback()
                logger.warning("billing_conflict", extra={"operation": operation, "cause": "integrity"})
                raise ConflictError(operation, f"unique or foreign key race: {exc.orig}") from exc
            except OperationalError as exc:
                self._rollback()
                if _is_lock_failure(exc):
                    logger.warning("billing_conflict", extra={"operation": operation, "cause": "lock"})
                    raise ConflictError(operation, f"lock not acquired: {exc.orig}") from exc
                raise
            except Exception:
                self._rollback()
                raise

            self._publish()
            return result

    def _publish(self) -> None:
        events = list(self._auditor.emitted)
        self._auditor.emitted.clear()
        if self._on_event is None:
            return
        for event in events:
            try:
                self._on_event(event)
            except Exception:
                # The unit is committed; a failing subscriber cannot undo it
                logger.exception(
                    "ledger_event_callback_failed",
                    extra={"action": event.action, "entity_id": str(event.entity_id)},
                )

    def _treatment_result(self, treatment_id: UUID) -> TreatmentResult:
        return TreatmentResult.from_model(self._ledger.get(treatment_id))

    # =========================================================================
    # Treatments
    # =========================================================================

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
    ) -> TreatmentResult:
        def op() -> TreatmentResult:
            treatment = self._ledger.create_treatment(
                client_id,
                name,
                budget_amount,
                doctor_id=doctor_id,
                clinic_id=clinic_id,
                tooth_numbers=tooth_numbers,
                notes=notes,
            )
            return TreatmentResult.from_model(treatment)

        return self._run("create_treatment", op)

    def accept_treatment(self, treatment_id: UUID) -> TreatmentResult:
        return self._run(
            "accept_treatment",
            lambda: TreatmentResult.from_model(self._ledger.accept(treatment_id)),
            treatment_id=treatment_id,
        )

    def start_treatment(self, treatment_id: UUID) -> TreatmentResult:
        return self._run(
            "start_treatment",
            lambda: TreatmentResult.from_model(self._ledger.start(treatment_id)),
            treatment_id=treatment_id,
        )

    def complete_treatment(self, treatment_id: UUID) -> TreatmentResult:
        return self._run(
            "complete_treatment",
            lambda: TreatmentResult.from_model(self._ledger.complete(treatment_id)),
            treatment_id=treatment_id,
        )

    def cancel_treatment(self, treatment_id: UUID) -> TreatmentResult:
        return self._run(
            "cancel_treatment",
            lambda: TreatmentResult.from_model(self._ledger.cancel_treatment(treatment_id)),
            treatment_id=treatment_id,
        )

    def requote_treatment(self, treatment_id: UUID, budget_amount) -> TreatmentResult:
        return self._run(
            "requote_treatment",
            lambda: TreatmentResult.from_model(self._ledger.requote(treatment_id, budget_amount)),
            treatment_id=treatment_id,
        )

    def delete_treatment(self, treatment_id: UUID) -> None:
        self._run(
            "delete_treatment",
            lambda: self._ledger.delete_treatment(treatment_id),
            treatment_id=treatment_id,
        )

    def add_phase(
        self,
        treatment_id: UUID,
        name: str,
        amount,
        description: str | None = None,
    ) -> PhaseResult:
        return self._run(
            "add_phase",
            lambda: PhaseResult.from_model(
                self._ledger.add_phase(treatment_id, name, amount, description)
            ),
            treatment_id=treatment_id,
        )

    def set_phase_status(self, phase_id: UUID, status: PhaseStatus | str) -> PhaseResult:
        return self._run(
            "set_phase_status",
            lambda: PhaseResult.from_model(self._ledger.set_phase_status(phase_id, status)),
        )

    # =========================================================================
    # Invoices
    # =========================================================================

    def compose_invoice(self, request: ComposeRequest) -> InvoiceResult:
        def op() -> InvoiceResult:
            invoice, totals = self._composer.compose(request)
            return InvoiceResult.from_model(invoice, totals)

        return self._run("compose_invoice", op, treatment_id=request.treatment_id)

    def apply_payment(
        self,
        invoice_id: UUID,
        amount,
        method,
        reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        def op() -> PaymentResult:
            payment, invoice, totals = self._payments.apply_payment(
                invoice_id, amount, method, reference, notes
            )
            return PaymentResult(
                payment_id=payment.id,
                invoice_id=invoice.id,
                amount=payment.amount,
                method=payment.method.value,
                invoice_status=invoice.status.value,
                invoice_paid_amount=invoice.paid_amount,
                treatment_totals=totals,
            )

        return self._run("apply_payment", op, invoice_id=invoice_id)

    def cancel_invoice(self, invoice_id: UUID, reason: str | None = None) -> CancellationResult:
        return self._run(
            "cancel_invoice",
            lambda: self._cancellations.cancel(invoice_id, reason),
            invoice_id=invoice_id,
        )

    def rectify_invoice(
        self,
        original_invoice_id: UUID,
        corrections: RectificationRequest,
    ) -> RectificationResult:
        def op() -> RectificationResult:
            rectifying, original, refund, previous, new = self._rectifications.rectify(
                original_invoice_id, corrections
            )
            return RectificationResult(
                rectifying_invoice=InvoiceResult.from_model(rectifying, new),
                original_invoice_id=original.id,
                delta=rectifying.total,
                refund=refund,
                previous_totals=previous,
                new_totals=new,
            )

        return self._run("rectify_invoice", op, invoice_id=original_invoice_id)

    # =========================================================================
    # Reads (committed like writes so the read snapshot is released)
    # =========================================================================

    def get_treatment(self, treatment_id: UUID) -> TreatmentResult:
        return self._run("get_treatment", lambda: self._treatment_result(treatment_id))

    def treatment_totals(self, treatment_id: UUID) -> LedgerTotals:
        return self._run("treatment_totals", lambda: self.selector.treatment_totals(treatment_id))

    def get_invoice(self, invoice_id: UUID) -> InvoiceResult:
        return self._run("get_invoice", lambda: self.selector.get_invoice(invoice_id))

    def audit_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        return self._run("audit_trace", lambda: self._auditor.get_trace(entity_type, entity_id))

    def validate_audit_chain(self) -> bool:
        return self._run("validate_audit_chain", self._auditor.validate_chain)

    def close(self) -> None:
        """Detach the tenant from the session."""
        self._scope.release()

"""
DTOs -- Pure domain data transfer objects for the billing ledger.

Responsibility:
    Immutable request and result structures that cross the BillingService
    boundary: ComposeRequest / RectificationRequest (input), LedgerTotals,
    InvoiceResult, PaymentResult, CancellationResult, RectificationResult
    (output), and LedgerEvent (post-commit notification).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked from the
    service layer only.

Invariants enforced:
    - Callers never receive ORM entities; every result is a frozen DTO
      that stays valid after the session closes.
    - Monetary fields are Decimal, never float.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from billing_kernel.models.invoice import Invoice as InvoiceModel
    from billing_kernel.models.treatment import Treatment as TreatmentModel
    from billing_kernel.models.treatment import TreatmentPhase as PhaseModel


@dataclass(frozen=True)
class LineItemSpec:
    """
    One requested invoice line.

    unit_price may be negative only on rectification delta lines, which the
    rectification engine builds itself.
    """

    description: str
    unit_price: Decimal | int | str
    quantity: Decimal | int | str = Decimal("1")
    discount_percent: Decimal | int | str = Decimal("0")
    treatment_type: str | None = None


@dataclass(frozen=True)
class ComposeRequest:
    """
    Input to InvoiceComposer.compose().

    Either treatment_id (seed line from the treatment or phase) or explicit
    items must be given.  client_id defaults to the treatment's client.
    """

    treatment_id: UUID | None = None
    phase_id: UUID | None = None
    items: tuple[LineItemSpec, ...] = ()
    client_id: UUID | None = None
    clinic_id: UUID | None = None
    insurance_amount: Decimal | int | str = Decimal("0")
    insurance_name: str | None = None
    payment_percent: Decimal | int | str = Decimal("100")
    tax_rate: Decimal | int | str | None = None
    discount_amount: Decimal | int | str = Decimal("0")
    status: str = "sent"
    issue_date: date | None = None
    due_date: date | None = None
    notes: str | None = None
    allow_overrun: bool = False
    override_reason: str | None = None


@dataclass(frozen=True)
class RectificationRequest:
    """
    Input to RectificationService.rectify().

    items is the full corrected line set; corrected_total is a shortcut that
    corrects the effective total with a single delta line.  Exactly one of
    the two must be given.
    """

    reason: str
    items: tuple[LineItemSpec, ...] | None = None
    corrected_total: Decimal | int | str | None = None
    issue_date: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LedgerTotals:
    """Snapshot of a treatment's running totals."""

    treatment_id: UUID
    budget_amount: Decimal
    invoiced_amount: Decimal
    paid_amount: Decimal

    @property
    def remaining_budget(self) -> Decimal:
        return self.budget_amount - self.invoiced_amount

    @property
    def outstanding(self) -> Decimal:
        return self.invoiced_amount - self.paid_amount

    def to_payload(self) -> dict[str, str]:
        return {
            "budget_amount": str(self.budget_amount),
            "invoiced_amount": str(self.invoiced_amount),
            "paid_amount": str(self.paid_amount),
        }

    @classmethod
    def from_model(cls, model: TreatmentModel) -> LedgerTotals:
        return cls(
            treatment_id=model.id,
            budget_amount=model.budget_amount,
            invoiced_amount=model.invoiced_amount,
            paid_amount=model.paid_amount,
        )


@dataclass(frozen=True)
class PhaseResult:
    phase_id: UUID
    treatment_id: UUID
    name: str
    phase_order: int
    amount: Decimal
    status: str
    invoice_id: UUID | None = None

    @classmethod
    def from_model(cls, model: PhaseModel) -> PhaseResult:
        return cls(
            phase_id=model.id,
            treatment_id=model.treatment_id,
            name=model.name,
            phase_order=model.phase_order,
            amount=model.amount,
            status=model.status.value,
            invoice_id=model.invoice_id,
        )


@dataclass(frozen=True)
class TreatmentResult:
    """A treatment with its running totals and phases."""

    treatment_id: UUID
    client_id: UUID
    name: str
    status: str
    totals: LedgerTotals
    budget_accepted_at: datetime | None = None
    completed_at: datetime | None = None
    phases: tuple[PhaseResult, ...] = ()

    @classmethod
    def from_model(cls, model: TreatmentModel) -> TreatmentResult:
        return cls(
            treatment_id=model.id,
            client_id=model.client_id,
            name=model.name,
            status=model.status.value,
            totals=LedgerTotals.from_model(model),
            budget_accepted_at=model.budget_accepted_at,
            completed_at=model.completed_at,
            phases=tuple(PhaseResult.from_model(p) for p in model.phases),
        )


@dataclass(frozen=True)
class InvoiceLineRecord:
    sort_order: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    total: Decimal
    treatment_type: str | None = None


@dataclass(frozen=True)
class InvoiceResult:
    """An invoice as persisted, with the treatment totals after the unit."""

    invoice_id: UUID
    invoice_number: str
    status: str
    client_id: UUID
    treatment_id: UUID | None
    gross_amount: Decimal
    insurance_amount: Decimal
    payment_percent: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    paid_amount: Decimal
    issue_date: date
    due_date: date
    is_rectification: bool = False
    rectified_invoice_id: UUID | None = None
    lines: tuple[InvoiceLineRecord, ...] = ()
    treatment_totals: LedgerTotals | None = None

    @classmethod
    def from_model(
        cls,
        model: InvoiceModel,
        treatment_totals: LedgerTotals | None = None,
    ) -> InvoiceResult:
        return cls(
            invoice_id=model.id,
            invoice_number=model.invoice_number,
            status=model.status.value,
            client_id=model.client_id,
            treatment_id=model.treatment_id,
            gross_amount=model.gross_amount,
            insurance_amount=model.insurance_amount,
            payment_percent=model.payment_percent,
            subtotal=model.subtotal,
            discount_amount=model.discount_amount,
            tax_rate=model.tax_rate,
            tax_amount=model.tax_amount,
            total=model.total,
            paid_amount=model.paid_amount,
            issue_date=model.issue_date,
            due_date=model.due_date,
            is_rectification=model.is_rectification,
            rectified_invoice_id=model.rectified_invoice_id,
            lines=tuple(
                InvoiceLineRecord(
                    sort_order=item.sort_order,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_percent=item.discount_percent,
                    total=item.total,
                    treatment_type=item.treatment_type,
                )
                for item in model.items
            ),
            treatment_totals=treatment_totals,
        )


@dataclass(frozen=True)
class PaymentResult:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    method: str
    invoice_status: str
    invoice_paid_amount: Decimal
    treatment_totals: LedgerTotals | None = None


@dataclass(frozen=True)
class CancellationResult:
    """
    Outcome of a cancellation.

    already_cancelled=True means the call was a no-op retry; previous_totals
    and new_totals are then identical.
    """

    invoice_id: UUID
    invoice_number: str
    already_cancelled: bool
    reversed_total: Decimal
    reversed_paid: Decimal
    previous_totals: LedgerTotals | None = None
    new_totals: LedgerTotals | None = None


@dataclass(frozen=True)
class RectificationResult:
    rectifying_invoice: InvoiceResult
    original_invoice_id: UUID
    delta: Decimal
    refund: Decimal
    previous_totals: LedgerTotals | None = None
    new_totals: LedgerTotals | None = None


@dataclass(frozen=True)
class LedgerEvent:
    """Notification handed to BillingService.on_event after commit."""

    action: str
    tenant_id: UUID
    entity_type: str
    entity_id: UUID
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

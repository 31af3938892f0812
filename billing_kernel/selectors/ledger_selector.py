"""
Module: billing_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries: treatment totals, reconciliation of
    the stored running totals against the invoices, overdue detection,
    per-status aggregates and rectification chains.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Treatment.invoiced_amount == sum of totals of its non-cancelled
      invoices, and Treatment.paid_amount == sum of their paid_amount.
      reconcile_treatment() recomputes both and reports any drift.
    - An invoice is overdue when due_date < today, paid_amount < total and
      its status is neither paid nor cancelled.  Nothing here writes the
      OVERDUE status; that belongs to the caller.  An original with
      rectifications is judged on its chain, as PaymentRecorder bounds it.

Failure modes:
    - NotFoundError for an unknown (or other tenant's) treatment or invoice.
    - ConsistencyViolationError (logged at ERROR) from reconcile_treatment()
      when the stored totals drift from the invoices.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.domain.dtos import InvoiceResult, LedgerTotals
from billing_kernel.domain.money import ZERO, round2
from billing_kernel.exceptions import ConsistencyViolationError, NotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice, InvoiceStatus, Payment
from billing_kernel.models.treatment import Treatment
from billing_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.ledger")

_SETTLED_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


def _money(value) -> Decimal:
    if value is None:
        return ZERO
    return round2(Decimal(str(value)))


@dataclass(frozen=True)
class ReconciliationReport:
    """Stored vs recomputed totals of one treatment."""

    treatment_id: UUID
    stored_invoiced: Decimal
    stored_paid: Decimal
    computed_invoiced: Decimal
    computed_paid: Decimal

    @property
    def is_consistent(self) -> bool:
        return (
            self.stored_invoiced == self.computed_invoiced
            and self.stored_paid == self.computed_paid
        )


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    method: str
    reference: str | None
    paid_at: datetime


@dataclass(frozen=True)
class OverdueCandidate:
    invoice_id: UUID
    invoice_number: str
    client_id: UUID
    due_date: date
    outstanding: Decimal
    days_overdue: int


@dataclass(frozen=True)
class StatusTotals:
    """Aggregate of one invoice status for the reporting consumer."""

    status: str
    invoice_count: int
    total: Decimal
    paid: Decimal


@dataclass(frozen=True)
class RectificationChain:
    """An original invoice with its rectifying invoices, oldest first."""

    original: InvoiceResult
    rectifications: tuple[InvoiceResult, ...]

    @property
    def effective_total(self) -> Decimal:
        return self.original.total + sum(
            (r.total for r in self.rectifications if r.status != InvoiceStatus.CANCELLED.value),
            ZERO,
        )

    @property
    def effective_paid(self) -> Decimal:
        return self.original.paid_amount + sum(
            (r.paid_amount for r in self.rectifications if r.status != InvoiceStatus.CANCELLED.value),
            ZERO,
        )


class LedgerSelector(BaseSelector):
    """Read-only queries over treatments, invoices and payments."""

    def _treatment(self, treatment_id: UUID) -> Treatment:
        treatment = self.session.execute(
            select(Treatment).where(Treatment.id == treatment_id)
        ).scalar_one_or_none()
        if treatment is None:
            raise NotFoundError("Treatment", treatment_id)
        return treatment

    def _invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id)
        ).scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def treatment_totals(self, treatment_id: UUID) -> LedgerTotals:
        return LedgerTotals.from_model(self._treatment(treatment_id))

    def reconcile_treatment(self, treatment_id: UUID, *, raise_on_mismatch: bool = True) -> ReconciliationReport:
        """
        Recompute a treatment's running totals from its non-cancelled invoices.

        Raises:
            ConsistencyViolationError: If the stored totals drift and
                raise_on_mismatch is set.
        """
        treatment = self._treatment(treatment_id)
        computed_invoiced, computed_paid = self.session.execute(
            select(
                func.coalesce(func.sum(Invoice.total), 0),
                func.coalesce(func.sum(Invoice.paid_amount), 0),
            ).where(
                Invoice.treatment_id == treatment_id,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
        ).one()

        report = ReconciliationReport(
            treatment_id=treatment_id,
            stored_invoiced=treatment.invoiced_amount,
            stored_paid=treatment.paid_amount,
            computed_invoiced=_money(computed_invoiced),
            computed_paid=_money(computed_paid),
        )
        if not report.is_consistent:
            detail = (
                f"stored invoiced={report.stored_invoiced} paid={report.stored_paid}, "
                f"computed invoiced={report.computed_invoiced} paid={report.computed_paid}"
            )
            logger.error(
                "treatment_totals_drift",
                extra={
                    "treatment_id": str(treatment_id),
                    "stored_invoiced": report.stored_invoiced,
                    "stored_paid": report.stored_paid,
                    "computed_invoiced": report.computed_invoiced,
                    "computed_paid": report.computed_paid,
                },
            )
            if raise_on_mismatch:
                raise ConsistencyViolationError(
                    "Treatment", treatment_id, "running_totals", detail
                )
        return report

    def invoices_for_treatment(
        self,
        treatment_id: UUID,
        *,
        include_cancelled: bool = True,
    ) -> tuple[InvoiceResult, ...]:
        stmt = (
            select(Invoice)
            .where(Invoice.treatment_id == treatment_id)
            .order_by(Invoice.invoice_number)
        )
        if not include_cancelled:
            stmt = stmt.where(Invoice.status != InvoiceStatus.CANCELLED)
        return tuple(InvoiceResult.from_model(inv) for inv in self.session.scalars(stmt).all())

    def get_invoice(self, invoice_id: UUID) -> InvoiceResult:
        return InvoiceResult.from_model(self._invoice(invoice_id))

    def payments_for_invoice(self, invoice_id: UUID) -> tuple[PaymentRecord, ...]:
        self._invoice(invoice_id)
        payments = self.session.scalars(
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .order_by(Payment.paid_at, Payment.created_at)
        ).all()
        return tuple(
            PaymentRecord(
                payment_id=p.id,
                invoice_id=p.invoice_id,
                amount=p.amount,
                method=p.method.value,
                reference=p.reference,
                paid_at=p.paid_at,
            )
            for p in payments
        )

    def _chain_adjustments(self, original_ids: list[UUID]) -> dict[UUID, tuple[Decimal, Decimal]]:
        """(total, paid) of the non-cancelled rectifications of each original."""
        if not original_ids:
            return {}
        rows = self.session.execute(
            select(
                Invoice.rectified_invoice_id,
                func.coalesce(func.sum(Invoice.total), 0),
                func.coalesce(func.sum(Invoice.paid_amount), 0),
            )
            .where(
                Invoice.rectified_invoice_id.in_(original_ids),
                Invoice.status != InvoiceStatus.CANCELLED,
            )
            .group_by(Invoice.rectified_invoice_id)
        ).all()
        return {original_id: (_money(total), _money(paid)) for original_id, total, paid in rows}

    def overdue_candidates(self, today: date) -> tuple[OverdueCandidate, ...]:
        """
        Invoices past due and not settled, oldest due date first.

        An original with rectifications owes no more than its chain's
        effective total less what the chain collected, the same bound
        payments are held to; a chain settled by a reduction is not overdue.
        """
        invoices = self.session.scalars(
            select(Invoice)
            .where(
                Invoice.due_date < today,
                Invoice.paid_amount < Invoice.total,
                Invoice.status.not_in(_SETTLED_STATUSES),
            )
            .order_by(Invoice.due_date, Invoice.invoice_number)
        ).all()
        chains = self._chain_adjustments([inv.id for inv in invoices if not inv.is_rectification])

        candidates = []
        for inv in invoices:
            outstanding = inv.total - inv.paid_amount
            if inv.id in chains:
                rect_total, rect_paid = chains[inv.id]
                chain_outstanding = (inv.total + rect_total) - (inv.paid_amount + rect_paid)
                outstanding = min(outstanding, chain_outstanding)
            if outstanding <= ZERO:
                continue
            candidates.append(
                OverdueCandidate(
                    invoice_id=inv.id,
                    invoice_number=inv.invoice_number,
                    client_id=inv.client_id,
                    due_date=inv.due_date,
                    outstanding=outstanding,
                    days_overdue=(today - inv.due_date).days,
                )
            )
        return tuple(candidates)

    def totals_by_status(self) -> dict[str, StatusTotals]:
        rows = self.session.execute(
            select(
                Invoice.status,
                func.count(Invoice.id),
                func.coalesce(func.sum(Invoice.total), 0),
                func.coalesce(func.sum(Invoice.paid_amount), 0),
            ).group_by(Invoice.status)
        ).all()
        return {
            status.value: StatusTotals(
                status=status.value,
                invoice_count=count,
                total=_money(total),
                paid=_money(paid),
            )
            for status, count, total, paid in rows
        }

    def rectification_chain(self, invoice_id: UUID) -> RectificationChain:
        """The chain an invoice belongs to; a rectifying invoice resolves to its original."""
        invoice = self._invoice(invoice_id)
        if invoice.is_rectification and invoice.rectified_invoice_id is not None:
            invoice = self._invoice(invoice.rectified_invoice_id)
        rectifications = self.session.scalars(
            select(Invoice)
            .where(Invoice.rectified_invoice_id == invoice.id)
            .order_by(Invoice.invoice_number)
        ).all()
        return RectificationChain(
            original=InvoiceResult.from_model(invoice),
            rectifications=tuple(InvoiceResult.from_model(r) for r in rectifications),
        )

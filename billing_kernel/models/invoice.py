"""
Module: billing_kernel.models.invoice
Responsibility: ORM persistence for invoices, invoice items and payments --
    the billing documents that draw a treatment's budget down.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - total = subtotal - discount_amount + tax_amount, to the cent (computed
      by domain/invoice_calculator.py before flush).
    - sum(items.total) == subtotal.
    - invoice_number is unique per tenant and never changes once issued
      (UNIQUE(tenant_id, invoice_number) + db/immutability.py).
    - CANCELLED is terminal: only the reversal bookkeeping columns may change
      afterwards (db/immutability.py).
    - Payments are immutable once created; invoices are never deleted.
    - version is an optimistic lock counter (StaleDataError -> ConflictError).

Audit relevance:
    A rectifying invoice references the invoice it corrects through
    rectified_invoice_id; both stay in the ledger as the audit chain.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TenantScopedMixin, TrackedBase, UUIDString
from billing_kernel.db.types import MONEY, PERCENT, QUANTITY


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states.

    DRAFT/SENT at creation; PARTIAL/PAID via payments; OVERDUE set by an
    external scheduler; CANCELLED is terminal.
    """

    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    BIZUM = "bizum"
    FINANCING = "financing"
    OTHER = "other"


class Invoice(TenantScopedMixin, TrackedBase):
    """
    A billing document issued to a client, optionally against a treatment.

    gross_amount is the full value of the billed items before insurance
    coverage and fractional billing; subtotal is what this invoice actually
    charges.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
        CheckConstraint("discount_amount >= 0", name="ck_invoices_discount_non_negative"),
        CheckConstraint("insurance_amount >= 0", name="ck_invoices_insurance_non_negative"),
        CheckConstraint(
            "payment_percent > 0 AND payment_percent <= 100",
            name="ck_invoices_payment_percent_range",
        ),
        Index("idx_invoices_treatment", "treatment_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
        Index("idx_invoices_rectified", "rectified_invoice_id"),
    )

    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)

    client_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    treatment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("treatments.id"), nullable=True
    )
    phase_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("treatment_phases.id"), nullable=True
    )
    clinic_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    gross_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    insurance_amount: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00")
    )
    insurance_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_percent: Mapped[Decimal] = mapped_column(
        PERCENT, nullable=False, default=Decimal("100")
    )
    is_fractional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(PERCENT, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00")
    )
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))

    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(
            InvoiceStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="invoice_status",
        ),
        default=InvoiceStatus.DRAFT,
        nullable=False,
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    is_rectification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rectified_invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True
    )
    rectification_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set only when the invoice was allowed to push the treatment past budget
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reversal_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.sort_order",
        lazy="selectin",
    )
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="invoice",
        order_by="Payment.paid_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Invoice {self.invoice_number} {self.status.value} "
            f"total={self.total} paid={self.paid_amount}>"
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == InvoiceStatus.CANCELLED

    @property
    def outstanding(self) -> Decimal:
        """Amount still owed on this document."""
        return self.total - self.paid_amount


class InvoiceItem(TenantScopedMixin, TrackedBase):
    """
    One line of an invoice.

    total = round2(quantity * unit_price * (1 - discount_percent / 100)).
    unit_price is negative only on adjustment and rectification delta lines.
    """

    __tablename__ = "invoice_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_items_quantity_positive"),
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_invoice_items_discount_range",
        ),
        Index("idx_invoice_items_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    treatment_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(
        PERCENT, nullable=False, default=Decimal("0")
    )
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem {self.sort_order} {self.description!r} total={self.total}>"


class Payment(TenantScopedMixin, TrackedBase):
    """A payment applied against one invoice.  Immutable once created."""

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("idx_payments_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="payment_method",
        ),
        nullable=False,
    )
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="payments")

    def __repr__(self) -> str:
        return f"<Payment {self.amount} {self.method.value} on {self.invoice_id}>"

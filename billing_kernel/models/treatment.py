"""
Module: billing_kernel.models.treatment
Responsibility: ORM persistence for treatments and their phases -- the
    budget side of the ledger.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - invoiced_amount <= budget_amount unless an overrun was authorized
      (checked by TreatmentLedger.credit, reason recorded on the invoice).
    - paid_amount <= invoiced_amount (checked by TreatmentLedger).
    - All three totals are non-negative (CHECK constraints).
    - version is an optimistic lock counter: a flush against a stale row
      raises StaleDataError, translated to ConflictError by BillingService.
    - A phase in status INVOICED carries the invoice_id that billed it.

Failure modes:
    - IntegrityError on a negative ledger total or a duplicate phase_order.
    - StaleDataError when two sessions update the same treatment.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
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
from billing_kernel.db.types import MONEY


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class TreatmentStatus(str, Enum):
    """Treatment lifecycle.

    QUOTED -> ACCEPTED -> IN_PROGRESS -> COMPLETED; any non-completed state
    may move to CANCELLED.
    """

    QUOTED = "quoted"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PhaseStatus(str, Enum):
    """Treatment phase lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INVOICED = "invoiced"


class Treatment(TenantScopedMixin, TrackedBase):
    """
    A priced plan of clinical work for one patient.

    budget_amount is fixed once the treatment is ACCEPTED.  invoiced_amount
    and paid_amount are the running ledger totals, maintained exclusively by
    TreatmentLedger.
    """

    __tablename__ = "treatments"

    __table_args__ = (
        CheckConstraint("budget_amount >= 0", name="ck_treatments_budget_non_negative"),
        CheckConstraint("invoiced_amount >= 0", name="ck_treatments_invoiced_non_negative"),
        CheckConstraint("paid_amount >= 0", name="ck_treatments_paid_non_negative"),
        Index("idx_treatments_tenant_client", "tenant_id", "client_id"),
        Index("idx_treatments_status", "status"),
    )

    client_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    doctor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    clinic_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tooth_numbers: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[TreatmentStatus] = mapped_column(
        SAEnum(
            TreatmentStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="treatment_status",
        ),
        default=TreatmentStatus.QUOTED,
        nullable=False,
    )

    budget_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    invoiced_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    paid_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))

    budget_accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    phases: Mapped[list["TreatmentPhase"]] = relationship(
        back_populates="treatment",
        cascade="all, delete-orphan",
        order_by="TreatmentPhase.phase_order",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Treatment {self.id} {self.status.value} "
            f"budget={self.budget_amount} invoiced={self.invoiced_amount} "
            f"paid={self.paid_amount}>"
        )

    @property
    def remaining_budget(self) -> Decimal:
        """Budget not yet invoiced (negative after an authorized overrun)."""
        return self.budget_amount - self.invoiced_amount

    @property
    def outstanding(self) -> Decimal:
        """Invoiced but not yet collected."""
        return self.invoiced_amount - self.paid_amount

    @property
    def is_billable(self) -> bool:
        return self.status in (
            TreatmentStatus.ACCEPTED,
            TreatmentStatus.IN_PROGRESS,
            TreatmentStatus.COMPLETED,
        )


class TreatmentPhase(TenantScopedMixin, TrackedBase):
    """
    Optional subdivision of a treatment, billable on its own invoice.

    Once INVOICED, the phase stays linked to its invoice until that invoice
    is cancelled.
    """

    __tablename__ = "treatment_phases"

    __table_args__ = (
        UniqueConstraint("treatment_id", "phase_order", name="uq_treatment_phases_order"),
        CheckConstraint("amount >= 0", name="ck_treatment_phases_amount_non_negative"),
        Index("idx_treatment_phases_treatment", "treatment_id"),
    )

    treatment_id: Mapped[UUID] = mapped_column(
        ForeignKey("treatments.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    phase_order: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    status: Mapped[PhaseStatus] = mapped_column(
        SAEnum(
            PhaseStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="phase_status",
        ),
        default=PhaseStatus.PENDING,
        nullable=False,
    )

    # Plain column: invoices.phase_id already points the other way
    invoice_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    treatment: Mapped["Treatment"] = relationship(back_populates="phases")

    def __repr__(self) -> str:
        return f"<TreatmentPhase {self.phase_order} {self.name} {self.status.value}>"

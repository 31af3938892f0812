"""
Module: billing_kernel.models.audit_event
Responsibility: ORM persistence for the ledger's tamper-evident audit chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (db/immutability.py).
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.validate_chain.
    - seq is strictly increasing per tenant, allocated by SequenceService.

Audit relevance:
    AuditEvent is the observable output of the ledger.  Every issued,
    paid, cancelled or rectified invoice and every treatment lifecycle
    change produces one.  Cancellation and rectification payloads carry
    previous_totals and new_totals of the affected treatment.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, TenantScopedMixin, UUIDString


class LedgerAuditAction(str, Enum):
    """Auditable ledger actions.

    Adding a member requires a matching ``record_*`` method on
    AuditorService.
    """

    # Treatment lifecycle
    TREATMENT_CREATED = "treatment_created"
    TREATMENT_STATUS_CHANGED = "treatment_status_changed"
    TREATMENT_REQUOTED = "treatment_requoted"
    TREATMENT_DELETED = "treatment_deleted"
    PHASE_ADDED = "phase_added"

    # Invoice lifecycle
    INVOICE_ISSUED = "invoice_issued"
    PAYMENT_RECORDED = "payment_recorded"
    INVOICE_CANCELLED = "invoice_cancelled"
    INVOICE_RECTIFIED = "invoice_rectified"

    # Violations
    BUDGET_OVERRUN_AUTHORIZED = "budget_overrun_authorized"


class AuditEvent(TenantScopedMixin, Base):
    """
    Audit event with hash chain for tamper evidence.

    Each tenant has its own chain: seq and prev_hash are per tenant.
    prev_hash is None only for the tenant's genesis event.
    """

    __tablename__ = "ledger_audit_events"

    __table_args__ = (
        UniqueConstraint("tenant_id", "seq", name="uq_ledger_audit_tenant_seq"),
        Index("idx_ledger_audit_entity", "entity_type", "entity_id"),
        Index("idx_ledger_audit_action", "action"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # "Treatment", "Invoice", "Payment"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

"""SQLAlchemy ORM models for the billing ledger."""

from billing_kernel.models.audit_event import AuditEvent, LedgerAuditAction
from billing_kernel.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
    PaymentMethod,
)
from billing_kernel.models.sequence_counter import SequenceCounter
from billing_kernel.models.treatment import (
    PhaseStatus,
    Treatment,
    TreatmentPhase,
    TreatmentStatus,
)

__all__ = [
    "AuditEvent",
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "LedgerAuditAction",
    "Payment",
    "PaymentMethod",
    "PhaseStatus",
    "SequenceCounter",
    "Treatment",
    "TreatmentPhase",
    "TreatmentStatus",
]

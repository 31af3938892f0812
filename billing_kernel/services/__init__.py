"""Services for the billing kernel (write side)."""

from billing_kernel.services.auditor_service import AuditorService, AuditTrace
from billing_kernel.services.billing_service import BillingService
from billing_kernel.services.cancellation_service import CancellationService
from billing_kernel.services.invoice_composer import InvoiceComposer
from billing_kernel.services.payment_recorder import PaymentRecorder
from billing_kernel.services.rectification_service import RectificationService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.treatment_ledger import TreatmentLedger

__all__ = [
    "AuditTrace",
    "AuditorService",
    "BillingService",
    "CancellationService",
    "InvoiceComposer",
    "PaymentRecorder",
    "RectificationService",
    "SequenceService",
    "TreatmentLedger",
]

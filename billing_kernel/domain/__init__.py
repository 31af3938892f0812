"""
Pure domain layer.

Monetary arithmetic, the invoice calculator, DTOs and the clock.  Nothing
here touches the ORM or the database.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.dtos import (
    CancellationResult,
    ComposeRequest,
    InvoiceLineRecord,
    InvoiceResult,
    LedgerEvent,
    LedgerTotals,
    LineItemSpec,
    PaymentResult,
    PhaseResult,
    RectificationRequest,
    RectificationResult,
    TreatmentResult,
)
from billing_kernel.domain.money import apply_percent, round2, sum_line_items

__all__ = [
    "CancellationResult",
    "Clock",
    "ComposeRequest",
    "DeterministicClock",
    "InvoiceLineRecord",
    "InvoiceResult",
    "LedgerEvent",
    "LedgerTotals",
    "LineItemSpec",
    "PaymentResult",
    "PhaseResult",
    "RectificationRequest",
    "RectificationResult",
    "SystemClock",
    "TreatmentResult",
    "apply_percent",
    "round2",
    "sum_line_items",
]

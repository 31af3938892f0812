"""Read-only selectors over the billing ledger."""

from billing_kernel.selectors.base import BaseSelector
from billing_kernel.selectors.ledger_selector import (
    LedgerSelector,
    OverdueCandidate,
    PaymentRecord,
    ReconciliationReport,
    RectificationChain,
    StatusTotals,
)

__all__ = [
    "BaseSelector",
    "LedgerSelector",
    "OverdueCandidate",
    "PaymentRecord",
    "ReconciliationReport",
    "RectificationChain",
    "StatusTotals",
]

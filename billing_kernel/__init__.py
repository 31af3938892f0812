"""
Billing Kernel - treatment-to-invoice billing ledger

A tenant-scoped ledger for clinic treatments with:
- Budget-bounded invoicing with insurance and fractional adjustments
- Atomic payment recording
- Idempotent cancellation and delta rectification
- Full auditability via hash chain
"""

__version__ = "0.1.0"

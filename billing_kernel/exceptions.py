"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every ledger error is caught by type, never by message.  Request handlers
map the ``code`` class attribute to an API response and read structured
attributes (amounts, identifiers, field names) instead of parsing strings.

Example - WRONG way to handle errors:
    try:
        billing.compose_invoice(request)
    except Exception as e:
        if "budget" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way:
    try:
        billing.compose_invoice(request)
    except BudgetExceededError as e:
        api_response(code=e.code, budget=e.budget_amount, requested=e.requested)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- MissingClientError
    |   +-- EmptyItemSetError
    |   +-- InvalidInsuranceAmountError
    |
    +-- NotFoundError
    |
    +-- LedgerError
    |   +-- BudgetExceededError
    |   +-- InvalidReversalError
    |   +-- TreatmentNotBillableError
    |   +-- InvalidStatusTransitionError
    |   +-- PhaseAlreadyInvoicedError
    |
    +-- InvoiceError
    |   +-- OverPaymentError
    |   +-- InvoiceCancelledError
    |
    +-- ConflictError
    |
    +-- IntegrityFailure
        +-- ConsistencyViolationError
        +-- TenantIsolationError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|-----------------------------------------
Validation   | VALIDATION_ERROR            | Malformed input (field + constraint)
             | MISSING_CLIENT              | Invoice without a client reference
             | EMPTY_ITEM_SET              | Invoice with no line items
             | INVALID_INSURANCE_AMOUNT    | Insurance coverage above the subtotal
-------------|-----------------------------|-----------------------------------------
Lookup       | NOT_FOUND                   | Missing (or other tenant's) row
-------------|-----------------------------|-----------------------------------------
Ledger       | BUDGET_EXCEEDED             | Credit would pass budget_amount
             | INVALID_REVERSAL            | Debit/reversal below zero or paid
             | TREATMENT_NOT_BILLABLE      | Quoted or cancelled treatment
             | INVALID_STATUS_TRANSITION   | Lifecycle edge not allowed
             | PHASE_ALREADY_INVOICED      | Phase is linked to another invoice
-------------|-----------------------------|-----------------------------------------
Invoice      | OVER_PAYMENT                | Payment above outstanding balance
             | INVOICE_CANCELLED           | Mutation of a cancelled invoice
-------------|-----------------------------|-----------------------------------------
Concurrency  | CONFLICT                    | Lock timeout, deadlock, stale version
-------------|-----------------------------|-----------------------------------------
Integrity    | CONSISTENCY_VIOLATION       | Invariant failed mid-transaction
             | TENANT_ISOLATION_VIOLATION  | Row of another tenant reached a flush
             | IMMUTABILITY_VIOLATION      | Modifying an immutable record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ConflictError is the only retryable error.  The ledger never retries
   internally; cancellation is idempotent so caller retries are safe.

2. IntegrityFailure subclasses indicate a bug or a race that escaped
   locking.  They are logged at ERROR level where raised and must be
   investigated, never auto-repaired.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation exceptions


class ValidationError(BillingKernelError):
    """Input failed a field constraint."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, constraint: str, value: object = None):
        self.field = field
        self.constraint = constraint
        self.value = None if value is None else str(value)
        super().__init__(f"Invalid {field}: {constraint} (got {self.value})")


class MissingClientError(ValidationError):
    """Neither the request nor the treatment supplies a client."""

    code: str = "MISSING_CLIENT"

    def __init__(self):
        super().__init__("client_id", "an invoice must reference a client")


class EmptyItemSetError(ValidationError):
    """Invoice has no line items."""

    code: str = "EMPTY_ITEM_SET"

    def __init__(self):
        super().__init__("items", "at least one line item is required")


class InvalidInsuranceAmountError(ValidationError):
    """Insurance coverage is negative or larger than the subtotal."""

    code: str = "INVALID_INSURANCE_AMOUNT"

    def __init__(self, insurance_amount: Decimal, subtotal: Decimal):
        self.insurance_amount = insurance_amount
        self.subtotal = subtotal
        super().__init__(
            "insurance_amount",
            f"must be between 0 and the subtotal {subtotal}",
            insurance_amount,
        )


# Lookup exceptions


class NotFoundError(BillingKernelError):
    """
    Entity does not exist within the current tenant.

    Rows that belong to another tenant raise this same error so that
    callers cannot probe for foreign identifiers.
    """

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


# Ledger exceptions


class LedgerError(BillingKernelError):
    """Base exception for treatment ledger errors."""

    code: str = "LEDGER_ERROR"


class BudgetExceededError(LedgerError):
    """Credit would push invoiced_amount above budget_amount."""

    code: str = "BUDGET_EXCEEDED"

    def __init__(
        self,
        treatment_id: str,
        budget_amount: Decimal,
        invoiced_amount: Decimal,
        requested: Decimal,
    ):
        self.treatment_id = str(treatment_id)
        self.budget_amount = budget_amount
        self.invoiced_amount = invoiced_amount
        self.requested = requested
        super().__init__(
            f"Treatment {treatment_id} budget exceeded: "
            f"invoiced {invoiced_amount} + {requested} > budget {budget_amount}"
        )


class InvalidReversalError(LedgerError):
    """Reversal would drive a ledger total below its allowed floor."""

    code: str = "INVALID_REVERSAL"

    def __init__(self, entity_id: str, reason: str):
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"Invalid reversal on {entity_id}: {reason}")


class TreatmentNotBillableError(LedgerError):
    """Treatment status does not allow invoicing."""

    code: str = "TREATMENT_NOT_BILLABLE"

    def __init__(self, treatment_id: str, status: str):
        self.treatment_id = str(treatment_id)
        self.status = status
        super().__init__(
            f"Treatment {treatment_id} cannot be invoiced in status '{status}'"
        )


class InvalidStatusTransitionError(LedgerError):
    """Requested lifecycle transition is not on the allowed graph."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity_type} {entity_id} cannot move from '{from_status}' to '{to_status}'"
        )


class PhaseAlreadyInvoicedError(LedgerError):
    """Phase is already linked to an invoice."""

    code: str = "PHASE_ALREADY_INVOICED"

    def __init__(self, phase_id: str, invoice_id: str | None):
        self.phase_id = str(phase_id)
        self.invoice_id = str(invoice_id) if invoice_id else None
        super().__init__(f"Phase {phase_id} already invoiced by {invoice_id}")


# Invoice exceptions


class InvoiceError(BillingKernelError):
    """Base exception for invoice errors."""

    code: str = "INVOICE_ERROR"


class OverPaymentError(InvoiceError):
    """Payment would exceed the amount owed."""

    code: str = "OVER_PAYMENT"

    def __init__(self, entity_id: str, owed: Decimal, already_paid: Decimal, amount: Decimal):
        self.entity_id = str(entity_id)
        self.owed = owed
        self.already_paid = already_paid
        self.amount = amount
        super().__init__(
            f"Payment of {amount} on {entity_id} exceeds balance: "
            f"paid {already_paid} of {owed}"
        )


class InvoiceCancelledError(InvoiceError):
    """Invoice is cancelled; no further monetary change is allowed."""

    code: str = "INVOICE_CANCELLED"

    def __init__(self, invoice_id: str, invoice_number: str | None = None):
        self.invoice_id = str(invoice_id)
        self.invoice_number = invoice_number
        super().__init__(f"Invoice {invoice_number or invoice_id} is cancelled")


# Concurrency exceptions


class ConflictError(BillingKernelError):
    """
    Concurrent modification or lock contention.

    Raised for lock-wait timeouts, deadlocks, stale optimistic versions, and
    unique-key races.  Safe for the caller to retry.
    """

    code: str = "CONFLICT"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Conflict during {operation}: {detail}")


# Integrity exceptions


class IntegrityFailure(BillingKernelError):
    """Base exception for invariant failures that indicate a defect."""

    code: str = "INTEGRITY_FAILURE"


class ConsistencyViolationError(IntegrityFailure):
    """A ledger invariant did not hold inside a transaction."""

    code: str = "CONSISTENCY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, invariant: str, detail: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.invariant = invariant
        self.detail = detail
        super().__init__(
            f"Consistency violation on {entity_type} {entity_id} ({invariant}): {detail}"
        )


class TenantIsolationError(IntegrityFailure):
    """A row of another tenant reached a tenant-scoped session."""

    code: str = "TENANT_ISOLATION_VIOLATION"

    def __init__(self, entity_type: str, expected_tenant: str, actual_tenant: str):
        self.entity_type = entity_type
        self.expected_tenant = str(expected_tenant)
        self.actual_tenant = str(actual_tenant)
        super().__init__(
            f"{entity_type} row of tenant {actual_tenant} "
            f"in session scoped to {expected_tenant}"
        )


class ImmutabilityViolationError(IntegrityFailure):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )

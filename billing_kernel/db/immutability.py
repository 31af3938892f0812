"""
ORM-Level Immutability Enforcement for billing documents.

===============================================================================
WHY THIS EXISTS
===============================================================================

Issued invoices are legal documents.  Once issued they are corrected by a
rectifying invoice or voided by cancellation, both of which leave a visible
trail.  Nothing edits history in place.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below inspect attribute history and raise
ImmutabilityViolationError, which aborts the flush (and BillingService then
rolls the whole unit back):

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity        | When Immutable                     | What may still change
--------------|------------------------------------|---------------------------
Invoice       | After status = CANCELLED           | reversal_completed, audit metadata
Invoice       | invoice_number, once assigned      | --
Invoice       | DELETE, always                     | --
InvoiceItem   | When parent invoice is not DRAFT   | --
Payment       | ALWAYS (from creation)             | --
AuditEvent    | ALWAYS (from creation)             | --

updated_at, updated_by_id and version are audit metadata, not financial
data; they may change on any row.

===============================================================================
USAGE
===============================================================================

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup; idempotent

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from billing_kernel.db.base import AUDIT_METADATA_FIELDS
from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Reversal bookkeeping that cancellation may finish after the status flip
CANCELLED_INVOICE_MUTABLE_FIELDS = AUDIT_METADATA_FIELDS | {"reversal_completed"}


def _changed_columns(target) -> list[str]:
    """Column attributes with pending changes (relationships ignored)."""
    insp = inspect(target)
    return [
        attr.key
        for attr in insp.mapper.column_attrs
        if insp.attrs[attr.key].history.has_changes()
    ]


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_invoice_immutability(mapper, connection, target):
    """
    Guard issued invoice numbers and cancelled invoices.

    The transition INTO cancelled is the cancellation itself and is allowed;
    any later change beyond CANCELLED_INVOICE_MUTABLE_FIELDS is blocked.
    """
    from sqlalchemy.orm.attributes import get_history

    from billing_kernel.models.invoice import InvoiceStatus

    number_history = get_history(target, "invoice_number")
    if number_history.deleted and number_history.deleted[0] is not None:
        _block(
            "Invoice",
            target,
            "UPDATE",
            "invoice_number cannot change once issued",
            field="invoice_number",
        )

    status_history = get_history(target, "status")
    was_cancelled = False
    if status_history.deleted:
        was_cancelled = status_history.deleted[0] == InvoiceStatus.CANCELLED
    elif not status_history.added:
        was_cancelled = target.status == InvoiceStatus.CANCELLED

    if not was_cancelled:
        return

    for key in _changed_columns(target):
        if key in CANCELLED_INVOICE_MUTABLE_FIELDS:
            continue
        _block(
            "Invoice",
            target,
            "UPDATE",
            f"Cannot modify field '{key}' on cancelled invoice",
            field=key,
        )


def _check_invoice_delete(mapper, connection, target):
    _block("Invoice", target, "DELETE", "Invoices are never deleted; cancel instead")


def _check_invoice_item_immutability(mapper, connection, target):
    """Items are frozen once their invoice left DRAFT."""
    from billing_kernel.models.invoice import InvoiceStatus

    if not _changed_columns(target):
        return
    invoice = target.invoice
    if invoice is not None and invoice.status != InvoiceStatus.DRAFT:
        _block(
            "InvoiceItem",
            target,
            "UPDATE",
            "Invoice items cannot be modified after the invoice is issued",
        )


def _check_invoice_item_delete(mapper, connection, target):
    from billing_kernel.models.invoice import InvoiceStatus

    invoice = target.invoice
    if invoice is not None and invoice.status != InvoiceStatus.DRAFT:
        _block(
            "InvoiceItem",
            target,
            "DELETE",
            "Invoice items cannot be deleted after the invoice is issued",
        )


def _check_payment_immutability(mapper, connection, target):
    if _changed_columns(target):
        _block("Payment", target, "UPDATE", "Payments are immutable once recorded")


def _check_payment_delete(mapper, connection, target):
    _block("Payment", target, "DELETE", "Payments cannot be deleted")


def _check_audit_event_immutability(mapper, connection, target):
    if _changed_columns(target):
        _block("AuditEvent", target, "UPDATE", "Audit events are immutable")


def _check_audit_event_delete(mapper, connection, target):
    _block("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _listeners():
    from billing_kernel.models.audit_event import AuditEvent
    from billing_kernel.models.invoice import Invoice, InvoiceItem, Payment

    return [
        (Invoice, "before_update", _check_invoice_immutability),
        (Invoice, "before_delete", _check_invoice_delete),
        (InvoiceItem, "before_update", _check_invoice_item_immutability),
        (InvoiceItem, "before_delete", _check_invoice_item_delete),
        (Payment, "before_update", _check_payment_immutability),
        (Payment, "before_delete", _check_payment_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; BillingService calls it on construction.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must write forbidden rows directly.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)

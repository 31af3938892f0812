"""
SequenceService -- monotonic, per-tenant number allocation via locked rows.

Responsibility:
    Provides strictly increasing values per (tenant, sequence name) for
    invoice numbers and the audit chain.  Uses a counter table with
    row-level locking (``SELECT ... FOR UPDATE``) so concurrent callers
    never receive the same value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by InvoiceComposer, RectificationService and AuditorService.

Invariants enforced:
    - The locked counter row is the sole source of truth; aggregate
      max()+1 over invoices is never used.
    - Transactional: an increment becomes visible only when the caller's
      transaction commits, and a rollback returns the value, so invoice
      numbers are never reused or skipped by failed units.
    - Invoice numbers are ``<prefix>-<yyyy>-<seq>``, one sequence per year.

Failure modes:
    - IntegrityError when two transactions create the same counter row at
      once (first use of a sequence).  The unit rolls back and
      BillingService reports ConflictError; a retry sees the row.
"""

from sqlalchemy import select

from billing_kernel.logging_config import get_logger
from billing_kernel.models.sequence_counter import SequenceCounter
from billing_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Service for generating transactional sequence numbers.

    Usage:
        seq = sequences.next_value(SequenceService.AUDIT_EVENT)
        number = sequences.next_invoice_number(2025)   # "FAC-2025-00001"
    """

    AUDIT_EVENT = "audit_event"
    INVOICE_PREFIX = "invoice"

    def __init__(self, scope, clock=None, *, invoice_prefix: str = "FAC", digits: int = 5):
        super().__init__(scope, clock)
        self._invoice_prefix = invoice_prefix
        self._digits = digits

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self.session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter row (creating it on first use), increment it and
        return the new value.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously committed for this tenant and name.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self.scope.add(counter)

        counter.current_value += 1
        self.scope.flush()

        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self.session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    @classmethod
    def invoice_sequence_name(cls, year: int) -> str:
        return f"{cls.INVOICE_PREFIX}:{year}"

    def format_invoice_number(self, year: int, value: int) -> str:
        return f"{self._invoice_prefix}-{year:04d}-{value:0{self._digits}d}"

    def next_invoice_number(self, year: int) -> str:
        """Allocate the next invoice number of the given issue year."""
        value = self.next_value(self.invoice_sequence_name(year))
        number = self.format_invoice_number(year, value)
        logger.info(
            "invoice_number_allocated",
            extra={"invoice_number": number, "year": year},
        )
        return number

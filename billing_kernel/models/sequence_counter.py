"""
Module: billing_kernel.models.sequence_counter
Responsibility: Locked counter rows backing invoice numbering and the
    audit chain sequence.
Architecture position: Kernel > Models.

Invariants enforced:
    - One row per (tenant_id, name).  The row is the sole source of truth
      for the next value; aggregate max()+1 is never used.
"""

from sqlalchemy import BigInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, TenantScopedMixin


class SequenceCounter(TenantScopedMixin, Base):
    """Named per-tenant counter, e.g. ``invoice:2025`` or ``audit_event``."""

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_sequence_counters_tenant_name"),
    )

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"

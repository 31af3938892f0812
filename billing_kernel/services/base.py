"""
BaseService -- abstract base for all ledger services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel.  All concrete services receive a
    TenantScope and persist through ``flush()`` -- never ``commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or rollback themselves.  BillingService
      (or a test harness) owns commit/rollback, so compose, pay, cancel and
      rectify are each one atomic unit.
    - Tenant isolation: services reach the database only through the
      scope, which filters reads and guards flushes.
"""

from abc import ABC

from sqlalchemy.orm import Session

from billing_kernel.db.tenant_scope import TenantScope
from billing_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-only reporting queries -- those belong
          in ``billing_kernel/selectors/``.
    """

    def __init__(self, scope: TenantScope, clock: Clock | None = None):
        self.scope = scope
        self.clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self.scope.session

    @property
    def tenant_id(self):
        return self.scope.tenant_id

    @property
    def actor_id(self):
        return self.scope.actor_id

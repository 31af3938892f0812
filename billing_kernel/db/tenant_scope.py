"""
Module: billing_kernel.db.tenant_scope
Responsibility: The single enforcement point for tenant isolation.  Every
    service reaches the database through a TenantScope; every ORM SELECT in
    a scoped session is filtered to the scope's tenant and every flushed row
    is checked against it.
Architecture position: Kernel > DB.  Imported by services/ and selectors/.

Invariants enforced:
    - Reads: with_loader_criteria(TenantScopedMixin, tenant_id == scope) is
      attached to every ORM SELECT (relationship loads included).
    - Writes: new rows are stamped with the scope tenant; a pending, dirty
      or deleted row of another tenant aborts the flush.
    - A row of another tenant is indistinguishable from a missing row
      (NotFoundError) to callers of get()/get_for_update().

Failure modes:
    - TenantIsolationError (logged at ERROR) on a cross-tenant flush.
    - NotFoundError on lookups outside the tenant.

Sessions that never had a TenantScope attached (schema setup, migrations)
are not filtered.
"""

from typing import TypeVar
from uuid import UUID

from sqlalchemy import event, select
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from billing_kernel.db.base import TenantScopedMixin
from billing_kernel.exceptions import NotFoundError, TenantIsolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.tenant_scope")

ModelT = TypeVar("ModelT")

_TENANT_KEY = "tenant_id"
_ACTOR_KEY = "actor_id"


def _apply_tenant_criteria(orm_execute_state: ORMExecuteState) -> None:
    tenant_id = orm_execute_state.session.info.get(_TENANT_KEY)
    if tenant_id is None:
        return
    if not (
        orm_execute_state.is_select
        or orm_execute_state.is_update
        or orm_execute_state.is_delete
    ):
        return
    if orm_execute_state.is_column_load:
        return
    orm_execute_state.statement = orm_execute_state.statement.options(
        with_loader_criteria(
            TenantScopedMixin,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


def _reject_foreign_row(obj, tenant_id: UUID, operation: str) -> None:
    entity_type = type(obj).__name__
    logger.error(
        "tenant_isolation_violation",
        extra={
            "entity_type": entity_type,
            "entity_id": str(getattr(obj, "id", None)),
            "expected_tenant": str(tenant_id),
            "actual_tenant": str(obj.tenant_id),
            "operation": operation,
        },
    )
    raise TenantIsolationError(entity_type, tenant_id, obj.tenant_id)


def _guard_flush(session: Session, flush_context, instances) -> None:
    tenant_id = session.info.get(_TENANT_KEY)
    if tenant_id is None:
        return
    actor_id = session.info.get(_ACTOR_KEY)

    for obj in list(session.new):
        if not isinstance(obj, TenantScopedMixin):
            continue
        if obj.tenant_id is None:
            obj.tenant_id = tenant_id
        elif obj.tenant_id != tenant_id:
            _reject_foreign_row(obj, tenant_id, "INSERT")
        if actor_id is not None and hasattr(obj, "created_by_id") and obj.created_by_id is None:
            obj.created_by_id = actor_id

    for obj in list(session.dirty):
        if not isinstance(obj, TenantScopedMixin):
            continue
        if obj.tenant_id != tenant_id:
            _reject_foreign_row(obj, tenant_id, "UPDATE")
        if (
            actor_id is not None
            and hasattr(obj, "updated_by_id")
            and session.is_modified(obj, include_collections=False)
        ):
            obj.updated_by_id = actor_id

    for obj in list(session.deleted):
        if isinstance(obj, TenantScopedMixin) and obj.tenant_id != tenant_id:
            _reject_foreign_row(obj, tenant_id, "DELETE")


def install_tenant_guards() -> None:
    """Register the session-level tenant listeners (idempotent)."""
    if not event.contains(Session, "do_orm_execute", _apply_tenant_criteria):
        event.listen(Session, "do_orm_execute", _apply_tenant_criteria)
    if not event.contains(Session, "before_flush", _guard_flush):
        event.listen(Session, "before_flush", _guard_flush)


class TenantScope:
    """
    A session bound to one tenant (and optionally one acting user).

    Contract:
        Services receive a TenantScope, never a bare session.  The scope
        does not commit; BillingService owns the transaction boundary.
    """

    def __init__(self, session: Session, tenant_id: UUID, actor_id: UUID | None = None):
        existing = session.info.get(_TENANT_KEY)
        if existing is not None and existing != tenant_id:
            raise TenantIsolationError("Session", existing, tenant_id)

        install_tenant_guards()
        session.info[_TENANT_KEY] = tenant_id
        if actor_id is not None:
            session.info[_ACTOR_KEY] = actor_id

        self.session = session
        self.tenant_id = tenant_id
        self.actor_id = actor_id

    def get(self, model: type[ModelT], entity_id: UUID) -> ModelT:
        """Load a row of this tenant or raise NotFoundError."""
        row = self.session.execute(
            select(model).where(model.id == entity_id)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(model.__name__, entity_id)
        return row

    def get_for_update(self, model: type[ModelT], entity_id: UUID) -> ModelT:
        """
        Load and row-lock a row of this tenant, refreshing any cached copy.

        On PostgreSQL this blocks until concurrent writers commit (bounded by
        lock_timeout).  On SQLite the lock is a no-op and the optimistic
        version column catches the stale write at flush.
        """
        row = self.session.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(model.__name__, entity_id)
        return row

    def add(self, obj) -> None:
        self.session.add(obj)

    def flush(self) -> None:
        self.session.flush()

    def scalars(self, statement):
        return self.session.scalars(statement)

    def release(self) -> None:
        """Detach the tenant from the session (end of request)."""
        self.session.info.pop(_TENANT_KEY, None)
        self.session.info.pop(_ACTOR_KEY, None)

"""Database layer - engine, base classes, types, tenant scope and guards."""

from billing_kernel.db.base import UUID, Base, TenantScopedMixin, TrackedBase, UUIDString
from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    session_scope,
)
from billing_kernel.db.tenant_scope import TenantScope

__all__ = [
    "Base",
    "TenantScope",
    "TenantScopedMixin",
    "TrackedBase",
    "UUID",
    "UUIDString",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "session_scope",
]

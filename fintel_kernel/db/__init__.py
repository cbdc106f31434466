"""Database layer - engine, base classes and types."""

from fintel_kernel.db.base import UUID, Base, TenantScopedBase, TrackedBase, UUIDString
from fintel_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "TenantScopedBase",
    "UUIDString",
    "UUID",
]

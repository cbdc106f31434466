"""
Module: fintel_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map for consistent column
    types, the TrackedBase mixin for audit columns and TenantScopedBase for the
    tenant discriminator every ledger table carries.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel.  MUST NOT import from models/, services/, selectors/ or outer layers.

Invariants enforced:
    - UUID primary keys on every model.
    - Decimal maps to Numeric(38, 9); NEVER use float for monetary amounts.
    - Every ledger row carries a non-null, indexed ``tenant_id``.

Failure modes:
    - IntegrityError on duplicate primary keys or missing tenant/actor ids.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - Decimal maps to Numeric(38, 9).
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with audit timestamp and actor tracking.

    Guarantees:
        - created_at is set to server NOW() on INSERT.
        - updated_at auto-updates on every UPDATE.
        - created_by_id is required -- every record has a creator.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )


class TenantScopedBase(TrackedBase):
    """
    Abstract base for ledger tables owned by a tenant.

    Contract:
        Selectors and services MUST filter every query on ``tenant_id``;
        a row of another tenant is indistinguishable from a missing row.
    """

    __abstract__ = True

    tenant_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
        index=True,
    )


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a loaded timestamp to an aware UTC datetime.

    SQLite drops the timezone on DateTime(timezone=True) columns; values
    are always written in UTC, so a naive value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UUID = PyUUID

"""
Bank ORM models (``fintel_kernel.models.bank``).

Responsibility
--------------
Persistence for bank accounts and the transactions ingested from their
external feeds.  Reconciliation state (``is_matched``, ``matched_invoice_id``,
``match_confidence``, ``match_method``) lives on the transaction row.

Invariants enforced
-------------------
* ``(bank_account_id, external_id)`` is UNIQUE -- the dedupe key that makes
  ingestion insert-or-skip.
* ``is_matched`` is true exactly when ``matched_invoice_id`` is set
  (``ck_bank_transactions_match_consistency``).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fintel_kernel.db.base import TenantScopedBase, UUIDString, as_utc
from fintel_kernel.domain.dtos import BankAccount, BankTransaction, MatchMethod


# ---------------------------------------------------------------------------
# BankAccountModel
# ---------------------------------------------------------------------------

class BankAccountModel(TenantScopedBase):
    """
    ORM model for ``BankAccount``.

    Table: ``bank_accounts``
    """

    __tablename__ = "bank_accounts"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    transactions: Mapped[list[BankTransactionModel]] = relationship(
        back_populates="bank_account",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "account_number", name="uq_bank_accounts_tenant_number",
        ),
    )

    def to_dto(self) -> BankAccount:
        return BankAccount(
            account_id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            account_number=self.account_number,
            currency=self.currency,
            last_synced_at=as_utc(self.last_synced_at),
        )

    @classmethod
    def from_dto(cls, dto: BankAccount, created_by_id: UUID) -> BankAccountModel:
        return cls(
            id=dto.account_id,
            tenant_id=dto.tenant_id,
            name=dto.name,
            account_number=dto.account_number,
            currency=dto.currency,
            last_synced_at=dto.last_synced_at,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<BankAccountModel(id={self.id!r}, account_number={self.account_number!r})>"
        )


# ---------------------------------------------------------------------------
# BankTransactionModel
# ---------------------------------------------------------------------------

class BankTransactionModel(TenantScopedBase):
    """
    ORM model for ``BankTransaction``.

    Table: ``bank_transactions``
    """

    __tablename__ = "bank_transactions"

    bank_account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bank_accounts.id"), nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    booked_on: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    counterparty_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    counterparty_account: Mapped[str | None] = mapped_column(String(50), nullable=True)
    variable_symbol: Mapped[str | None] = mapped_column(String(50), nullable=True)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    matched_invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=True,
    )
    match_confidence: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 4), nullable=True,
    )
    match_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    bank_account: Mapped[BankAccountModel] = relationship(back_populates="transactions")

    __table_args__ = (
        UniqueConstraint(
            "bank_account_id", "external_id",
            name="uq_bank_transactions_account_external_id",
        ),
        CheckConstraint(
            "(is_matched AND matched_invoice_id IS NOT NULL) OR "
            "(NOT is_matched AND matched_invoice_id IS NULL)",
            name="ck_bank_transactions_match_consistency",
        ),
        Index("idx_bank_transactions_tenant_matched", "tenant_id", "is_matched"),
        Index("idx_bank_transactions_invoice", "matched_invoice_id"),
    )

    def to_dto(self) -> BankTransaction:
        return BankTransaction(
            transaction_id=self.id,
            tenant_id=self.tenant_id,
            bank_account_id=self.bank_account_id,
            external_id=self.external_id,
            booked_on=self.booked_on,
            amount=self.amount,
            currency=self.currency,
            counterparty_name=self.counterparty_name,
            counterparty_account=self.counterparty_account,
            variable_symbol=self.variable_symbol,
            message=self.message,
            is_matched=self.is_matched,
            matched_invoice_id=self.matched_invoice_id,
            match_confidence=self.match_confidence,
            match_method=MatchMethod(self.match_method) if self.match_method else None,
        )

    def __repr__(self) -> str:
        return (
            f"<BankTransactionModel(id={self.id!r}, external_id={self.external_id!r}, "
            f"amount={self.amount}, is_matched={self.is_matched})>"
        )

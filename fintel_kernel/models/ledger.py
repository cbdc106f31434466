"""
Ledger ORM models (``fintel_kernel.models.ledger``).

Responsibility
--------------
SQLAlchemy persistence for the billing ledger the engines read: customers,
invoices and the payments applied to them.  Each model maps to a frozen DTO
from ``fintel_kernel.domain.dtos`` via ``to_dto()`` / ``from_dto()``.

Architecture position
---------------------
**Kernel > Models**.  Imports from ``fintel_kernel.db.base`` and
``fintel_kernel.domain`` only.

Invariants enforced
-------------------
* Invoice numbers are unique per tenant (``uq_invoices_tenant_number``).
* ``Invoice.version`` increments on every paid-amount change; writers
  compare-and-set on it.
* Payments are append-only: a reversal is a new row pointing at the
  payment it reverses.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fintel_kernel.db.base import TenantScopedBase, UUIDString, as_utc
from fintel_kernel.domain.dtos import Customer, Invoice, InvoiceStatus, Payment


# ---------------------------------------------------------------------------
# CustomerModel
# ---------------------------------------------------------------------------

class CustomerModel(TenantScopedBase):
    """
    ORM model for ``Customer`` -- owned by the CRUD layer, read-only here.

    Table: ``customers``
    """

    __tablename__ = "customers"

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    vat_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    aliases: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    invoices: Mapped[list[InvoiceModel]] = relationship(back_populates="customer")

    __table_args__ = (
        Index("idx_customers_tenant_tax_id", "tenant_id", "tax_id"),
        Index("idx_customers_tenant_email", "tenant_id", "email"),
    )

    def to_dto(self) -> Customer:
        return Customer(
            customer_id=self.id,
            tenant_id=self.tenant_id,
            display_name=self.display_name,
            email=self.email,
            phone=self.phone,
            tax_id=self.tax_id,
            vat_id=self.vat_id,
            aliases=tuple(self.aliases or ()),
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: Customer, created_by_id: UUID) -> CustomerModel:
        return cls(
            id=dto.customer_id,
            tenant_id=dto.tenant_id,
            display_name=dto.display_name,
            email=dto.email,
            phone=dto.phone,
            tax_id=dto.tax_id,
            vat_id=dto.vat_id,
            aliases=list(dto.aliases),
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<CustomerModel(id={self.id!r}, display_name={self.display_name!r})>"


# ---------------------------------------------------------------------------
# InvoiceModel
# ---------------------------------------------------------------------------

class InvoiceModel(TenantScopedBase):
    """
    ORM model for ``Invoice``.

    Table: ``invoices``
    """

    __tablename__ = "invoices"

    customer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("customers.id"), nullable=False,
    )
    number: Mapped[str] = mapped_column(String(50), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    customer: Mapped[CustomerModel] = relationship(back_populates="invoices")
    payments: Mapped[list[PaymentModel]] = relationship(
        back_populates="invoice",
        order_by="PaymentModel.paid_at",
        foreign_keys="PaymentModel.invoice_id",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_invoices_tenant_number"),
        Index("idx_invoices_tenant_customer", "tenant_id", "customer_id"),
        Index("idx_invoices_tenant_status", "tenant_id", "status"),
        Index("idx_invoices_tenant_issue_date", "tenant_id", "issue_date"),
    )

    def to_dto(self, include_payments: bool = True) -> Invoice:
        return Invoice(
            invoice_id=self.id,
            tenant_id=self.tenant_id,
            customer_id=self.customer_id,
            number=self.number,
            issue_date=self.issue_date,
            due_date=self.due_date,
            total_amount=self.total_amount,
            paid_amount=self.paid_amount,
            currency=self.currency,
            status=InvoiceStatus(self.status),
            version=self.version,
            payments=(
                tuple(p.to_dto() for p in self.payments) if include_payments else ()
            ),
        )

    @classmethod
    def from_dto(cls, dto: Invoice, created_by_id: UUID) -> InvoiceModel:
        return cls(
            id=dto.invoice_id,
            tenant_id=dto.tenant_id,
            customer_id=dto.customer_id,
            number=dto.number,
            issue_date=dto.issue_date,
            due_date=dto.due_date,
            total_amount=dto.total_amount,
            paid_amount=dto.paid_amount,
            currency=dto.currency,
            status=dto.status.value,
            version=dto.version,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel(id={self.id!r}, number={self.number!r}, "
            f"status={self.status!r}, paid={self.paid_amount}/{self.total_amount})>"
        )


# ---------------------------------------------------------------------------
# PaymentModel
# ---------------------------------------------------------------------------

class PaymentModel(TenantScopedBase):
    """
    ORM model for ``Payment`` -- append-only.

    Table: ``payments``
    """

    __tablename__ = "payments"

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_at: Mapped[datetime] = mapped_column(nullable=False)
    bank_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("bank_transactions.id"), nullable=True,
    )
    reverses_payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("payments.id"), nullable=True,
    )

    invoice: Mapped[InvoiceModel] = relationship(
        back_populates="payments", foreign_keys=[invoice_id],
    )

    __table_args__ = (
        Index("idx_payments_invoice", "invoice_id"),
        Index("idx_payments_bank_transaction", "bank_transaction_id"),
    )

    def to_dto(self) -> Payment:
        return Payment(
            payment_id=self.id,
            invoice_id=self.invoice_id,
            amount=self.amount,
            paid_at=as_utc(self.paid_at),
            bank_transaction_id=self.bank_transaction_id,
            reverses_payment_id=self.reverses_payment_id,
        )

    @classmethod
    def from_dto(cls, dto: Payment, tenant_id: UUID, created_by_id: UUID) -> PaymentModel:
        return cls(
            id=dto.payment_id,
            tenant_id=tenant_id,
            invoice_id=dto.invoice_id,
            amount=dto.amount,
            paid_at=dto.paid_at,
            bank_transaction_id=dto.bank_transaction_id,
            reverses_payment_id=dto.reverses_payment_id,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<PaymentModel(id={self.id!r}, invoice_id={self.invoice_id!r}, "
            f"amount={self.amount})>"
        )

"""
Module: fintel_kernel.selectors.ledger_selector
Responsibility: Tenant-scoped read access to the billing ledger -- customers,
    invoices with their payments, bank accounts and bank transactions.  This is
    the repository the intelligence services read through.
Architecture position: Kernel > Selectors.  Imports models/ and domain DTOs.

Invariants enforced:
    - Every query filters on ``scope.tenant_id``; an entity owned by another
      tenant is returned as None, exactly like a missing one.
    - Invoices are returned with their payments (selectinload, no N+1).
    - Multi-row results have a deterministic order.

Failure modes:
    - Returns None or an empty list when nothing matches.
"""

from collections.abc import Iterable
from datetime import date
from uuid import UUID

from sqlalchemy import exists, func, select
from sqlalchemy.orm import aliased, selectinload

from fintel_kernel.domain.dtos import (
    OPEN_INVOICE_STATUSES,
    BankAccount,
    BankTransaction,
    Customer,
    Invoice,
    InvoiceStatus,
    Payment,
    TenantScope,
)
from fintel_kernel.models.bank import BankAccountModel, BankTransactionModel
from fintel_kernel.models.ledger import CustomerModel, InvoiceModel, PaymentModel
from fintel_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector):
    """
    Read-only, tenant-scoped ledger queries.

    Guarantees:
        - Read-only: No mutations are performed.
        - Tenant isolation on every method.
    """

    # -- Customers ----------------------------------------------------------

    def get_customer(self, scope: TenantScope, customer_id: UUID) -> Customer | None:
        model = self.session.execute(
            select(CustomerModel).where(
                CustomerModel.tenant_id == scope.tenant_id,
                CustomerModel.id == customer_id,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_customers(
        self, scope: TenantScope, active_only: bool = False,
    ) -> list[Customer]:
        stmt = select(CustomerModel).where(CustomerModel.tenant_id == scope.tenant_id)
        if active_only:
            stmt = stmt.where(CustomerModel.is_active.is_(True))
        stmt = stmt.order_by(CustomerModel.display_name, CustomerModel.id)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def find_customers_by_tax_id(self, scope: TenantScope, tax_id: str) -> list[Customer]:
        """Customers whose normalized IČO equals ``tax_id``."""
        stmt = (
            select(CustomerModel)
            .where(
                CustomerModel.tenant_id == scope.tenant_id,
                CustomerModel.tax_id == tax_id,
            )
            .order_by(CustomerModel.display_name, CustomerModel.id)
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def find_customers_by_vat_id(self, scope: TenantScope, vat_id: str) -> list[Customer]:
        """Customers whose DIČ equals ``vat_id`` (case-insensitive)."""
        stmt = (
            select(CustomerModel)
            .where(
                CustomerModel.tenant_id == scope.tenant_id,
                func.upper(CustomerModel.vat_id) == vat_id.upper(),
            )
            .order_by(CustomerModel.display_name, CustomerModel.id)
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    # -- Invoices -----------------------------------------------------------

    def get_invoice(self, scope: TenantScope, invoice_id: UUID) -> Invoice | None:
        model = self.session.execute(
            select(InvoiceModel)
            .options(selectinload(InvoiceModel.payments))
            .where(
                InvoiceModel.tenant_id == scope.tenant_id,
                InvoiceModel.id == invoice_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_invoices(
        self,
        scope: TenantScope,
        customer_id: UUID | None = None,
        statuses: Iterable[InvoiceStatus] | None = None,
        currency: str | None = None,
        issued_from: date | None = None,
        issued_to: date | None = None,
    ) -> list[Invoice]:
        """Invoices of the tenant, oldest issue date first."""
        stmt = (
            select(InvoiceModel)
            .options(selectinload(InvoiceModel.payments))
            .where(InvoiceModel.tenant_id == scope.tenant_id)
        )
        if customer_id is not None:
            stmt = stmt.where(InvoiceModel.customer_id == customer_id)
        if statuses is not None:
            stmt = stmt.where(InvoiceModel.status.in_([s.value for s in statuses]))
        if currency is not None:
            stmt = stmt.where(InvoiceModel.currency == currency)
        if issued_from is not None:
            stmt = stmt.where(InvoiceModel.issue_date >= issued_from)
        if issued_to is not None:
            stmt = stmt.where(InvoiceModel.issue_date <= issued_to)
        stmt = stmt.order_by(InvoiceModel.issue_date, InvoiceModel.number)
        stmt = stmt.execution_options(populate_existing=True)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def list_open_invoices(
        self, scope: TenantScope, currency: str | None = None,
    ) -> list[Invoice]:
        """Sent or overdue invoices with an outstanding balance."""
        return [
            inv for inv in self.list_invoices(
                scope, statuses=OPEN_INVOICE_STATUSES, currency=currency,
            )
            if inv.outstanding_amount > 0
        ]

    # -- Bank ---------------------------------------------------------------

    def get_bank_account(self, scope: TenantScope, account_id: UUID) -> BankAccount | None:
        model = self.session.execute(
            select(BankAccountModel).where(
                BankAccountModel.tenant_id == scope.tenant_id,
                BankAccountModel.id == account_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def get_transaction(
        self, scope: TenantScope, transaction_id: UUID,
    ) -> BankTransaction | None:
        model = self.session.execute(
            select(BankTransactionModel)
            .where(
                BankTransactionModel.tenant_id == scope.tenant_id,
                BankTransactionModel.id == transaction_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_transactions(
        self,
        scope: TenantScope,
        account_id: UUID,
        matched: bool | None = None,
        external_ids: Iterable[str] | None = None,
    ) -> list[BankTransaction]:
        stmt = select(BankTransactionModel).where(
            BankTransactionModel.tenant_id == scope.tenant_id,
            BankTransactionModel.bank_account_id == account_id,
        )
        if matched is not None:
            stmt = stmt.where(BankTransactionModel.is_matched.is_(matched))
        if external_ids is not None:
            stmt = stmt.where(BankTransactionModel.external_id.in_(list(external_ids)))
        stmt = stmt.order_by(BankTransactionModel.booked_on, BankTransactionModel.external_id)
        stmt = stmt.execution_options(populate_existing=True)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def count_transactions(self, scope: TenantScope, account_id: UUID) -> int:
        return self.session.execute(
            select(func.count(BankTransactionModel.id)).where(
                BankTransactionModel.tenant_id == scope.tenant_id,
                BankTransactionModel.bank_account_id == account_id,
            )
        ).scalar_one()

    def find_unreversed_payment(
        self, scope: TenantScope, transaction_id: UUID,
    ) -> Payment | None:
        """The payment a matched transaction created, unless already reversed."""
        reversal = aliased(PaymentModel)
        model = self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.tenant_id == scope.tenant_id,
                PaymentModel.bank_transaction_id == transaction_id,
                PaymentModel.reverses_payment_id.is_(None),
                ~exists().where(reversal.reverses_payment_id == PaymentModel.id),
            )
            .order_by(PaymentModel.paid_at.desc(), PaymentModel.created_at.desc())
        ).scalars().first()
        return model.to_dto() if model is not None else None

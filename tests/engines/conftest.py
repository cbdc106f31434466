"""
DTO factories for the pure engine tests.  No database is involved: engines
only ever see frozen DTOs.
"""

from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from fintel_kernel.domain.dtos import (
    BankTransaction,
    Customer,
    Invoice,
    InvoiceStatus,
    Payment,
    derive_invoice_status,
)

AS_OF = date(2026, 1, 15)
TENANT_ID = uuid4()


class InvoiceFactory:
    def __init__(self):
        self._count = 0

    def _number(self, year: int) -> str:
        self._count += 1
        return f"FV-{year}-{self._count:04d}"

    def paid(
        self,
        customer_id: UUID,
        due: date,
        days_late: int = 0,
        total: str = "1000.00",
        issue: date | None = None,
        currency: str = "CZK",
    ) -> Invoice:
        """An invoice settled by one payment ``days_late`` after its due date."""
        invoice_id = uuid4()
        amount = Decimal(total)
        payment = Payment(
            payment_id=uuid4(),
            invoice_id=invoice_id,
            amount=amount,
            paid_at=datetime.combine(due + timedelta(days=days_late), time.min, tzinfo=UTC),
        )
        return Invoice(
            invoice_id=invoice_id,
            tenant_id=TENANT_ID,
            customer_id=customer_id,
            number=self._number(due.year),
            issue_date=issue or due - timedelta(days=14),
            due_date=due,
            total_amount=amount,
            paid_amount=amount,
            currency=currency,
            status=InvoiceStatus.PAID,
            payments=(payment,),
        )

    def open(
        self,
        customer_id: UUID,
        due: date,
        total: str = "1000.00",
        paid: str = "0",
        issue: date | None = None,
        currency: str = "CZK",
        number: str | None = None,
        as_of: date = AS_OF,
    ) -> Invoice:
        """An unpaid (or partially paid) invoice; overdue when ``due`` < ``as_of``."""
        total_amount = Decimal(total)
        paid_amount = Decimal(paid)
        return Invoice(
            invoice_id=uuid4(),
            tenant_id=TENANT_ID,
            customer_id=customer_id,
            number=number or self._number(due.year),
            issue_date=issue or due - timedelta(days=14),
            due_date=due,
            total_amount=total_amount,
            paid_amount=paid_amount,
            currency=currency,
            status=derive_invoice_status(
                InvoiceStatus.SENT, total_amount, paid_amount, due, as_of,
            ),
        )


@pytest.fixture
def invoices() -> InvoiceFactory:
    return InvoiceFactory()


@pytest.fixture
def make_customer():
    def _make(display_name: str, **kwargs) -> Customer:
        return Customer(
            customer_id=uuid4(), tenant_id=TENANT_ID, display_name=display_name, **kwargs,
        )

    return _make


@pytest.fixture
def make_transaction():
    def _make(
        amount: str,
        variable_symbol: str | None = None,
        counterparty_name: str | None = None,
        currency: str = "CZK",
        booked_on: date = AS_OF,
    ) -> BankTransaction:
        return BankTransaction(
            transaction_id=uuid4(),
            tenant_id=TENANT_ID,
            bank_account_id=uuid4(),
            external_id=f"ext-{uuid4().hex[:8]}",
            booked_on=booked_on,
            amount=Decimal(amount),
            currency=currency,
            variable_symbol=variable_symbol,
            counterparty_name=counterparty_name,
        )

    return _make

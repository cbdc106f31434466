"""
Ledger DTOs -- immutable snapshots of the billing ledger.

Responsibility:
    Frozen dataclasses that carry customers, invoices, payments and bank
    transactions between the ORM layer (``fintel_kernel.models``) and the
    pure engines (``fintel_engines``).  Engines never see ORM instances.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Imported by models, selectors,
    engines and services.

Invariants enforced:
    - ``Invoice``: ``0 <= paid_amount <= total_amount``; status is ``paid``
      iff ``paid_amount == total_amount`` (checked in ``__post_init__`` for
      every non-draft, non-cancelled invoice).
    - ``BankTransaction``: ``is_matched == (matched_invoice_id is not None)``.
    - All monetary amounts are ``Decimal`` -- never ``float``.

Failure modes:
    - ``ValueError`` from ``__post_init__`` on invariant violation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


@dataclass(frozen=True)
class TenantScope:
    """Caller context: every ledger read and write is filtered by ``tenant_id``."""

    tenant_id: UUID
    actor_id: UUID


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


OPEN_INVOICE_STATUSES = frozenset({InvoiceStatus.SENT, InvoiceStatus.OVERDUE})
ISSUED_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.SENT, InvoiceStatus.OVERDUE, InvoiceStatus.PAID}
)


class MatchMethod(str, Enum):
    """How a bank transaction was matched to an invoice."""

    EXACT_SYMBOL = "exact_symbol"
    AMOUNT_NAME_FUZZY = "amount_name_fuzzy"
    MANUAL = "manual"


@dataclass(frozen=True)
class Customer:
    """A customer of the tenant.  Read-only to this engine."""

    customer_id: UUID
    tenant_id: UUID
    display_name: str
    email: str | None = None
    phone: str | None = None
    tax_id: str | None = None
    vat_id: str | None = None
    aliases: tuple[str, ...] = ()
    is_active: bool = True

    @property
    def names(self) -> tuple[str, ...]:
        """Display name followed by every alias."""
        return (self.display_name, *self.aliases)


@dataclass(frozen=True)
class Payment:
    """
    An immutable payment applied to an invoice.

    A reversal is a payment with a negative amount and ``reverses_payment_id``
    set; the invoice's paid amount is always the sum of its payments.
    """

    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    paid_at: datetime
    bank_transaction_id: UUID | None = None
    reverses_payment_id: UUID | None = None

    @property
    def paid_on(self) -> date:
        return self.paid_at.date()


@dataclass(frozen=True)
class Invoice:
    """An issued (or draft) invoice with its payment history."""

    invoice_id: UUID
    tenant_id: UUID
    customer_id: UUID
    number: str
    issue_date: date
    due_date: date
    total_amount: Decimal
    paid_amount: Decimal
    currency: str
    status: InvoiceStatus
    version: int = 0
    payments: tuple[Payment, ...] = field(default=())

    def __post_init__(self):
        if self.paid_amount < 0:
            raise ValueError(f"Invoice {self.number}: paid_amount cannot be negative")
        if self.paid_amount > self.total_amount:
            raise ValueError(
                f"Invoice {self.number}: paid_amount {self.paid_amount} "
                f"exceeds total_amount {self.total_amount}"
            )
        if self.status not in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            settled = self.paid_amount == self.total_amount
            if settled != (self.status == InvoiceStatus.PAID):
                raise ValueError(
                    f"Invoice {self.number}: status {self.status.value} is inconsistent "
                    f"with paid {self.paid_amount} of {self.total_amount}"
                )

    @property
    def outstanding_amount(self) -> Decimal:
        return self.total_amount - self.paid_amount

    @property
    def is_open(self) -> bool:
        """Issued and not yet fully paid."""
        return self.status in OPEN_INVOICE_STATUSES

    def is_overdue(self, as_of: date) -> bool:
        """Open with the due date already passed."""
        return self.is_open and self.due_date < as_of

    def settled_on(self) -> date | None:
        """Date of the payment that brought the invoice to ``paid``."""
        if self.status != InvoiceStatus.PAID:
            return None
        effective = [p for p in self.payments if p.amount > 0]
        if not effective:
            return None
        return max(p.paid_on for p in effective)

    def with_paid_amount(self, paid_amount: Decimal, as_of: date) -> Invoice:
        """Copy with a new paid amount and the status it implies."""
        return replace(
            self,
            paid_amount=paid_amount,
            status=derive_invoice_status(
                self.status, self.total_amount, paid_amount, self.due_date, as_of,
            ),
        )


def derive_invoice_status(
    current: InvoiceStatus,
    total_amount: Decimal,
    paid_amount: Decimal,
    due_date: date,
    as_of: date,
) -> InvoiceStatus:
    """
    Status implied by a paid amount.

    ``paid`` exactly when fully paid; otherwise ``overdue`` once the due date
    has passed, else ``sent``.  Draft and cancelled invoices keep their status.
    """
    if current in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
        return current
    if paid_amount == total_amount:
        return InvoiceStatus.PAID
    if due_date < as_of:
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.SENT


@dataclass(frozen=True)
class BankAccount:
    account_id: UUID
    tenant_id: UUID
    name: str
    account_number: str
    currency: str
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class BankTransaction:
    """
    A bank transaction ingested from an external bank feed.

    ``external_id`` is the source system's key and is unique per bank account.
    """

    transaction_id: UUID
    tenant_id: UUID
    bank_account_id: UUID
    external_id: str
    booked_on: date
    amount: Decimal
    currency: str
    counterparty_name: str | None = None
    counterparty_account: str | None = None
    variable_symbol: str | None = None
    message: str | None = None
    is_matched: bool = False
    matched_invoice_id: UUID | None = None
    match_confidence: Decimal | None = None
    match_method: MatchMethod | None = None

    def __post_init__(self):
        if self.is_matched != (self.matched_invoice_id is not None):
            raise ValueError(
                f"Bank transaction {self.external_id}: is_matched must equal "
                "matched_invoice_id is not None"
            )

    @property
    def is_credit(self) -> bool:
        """Incoming money (the only kind that can pay an invoice)."""
        return self.amount > 0

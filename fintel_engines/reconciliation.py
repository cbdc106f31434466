"""
Module: fintel_engines.reconciliation
Responsibility:
    Pure decision logic of bank reconciliation: which open invoice (if any)
    an incoming bank transaction pays, and what applying a payment does to
    an invoice.  Also defines the ``SyncResult`` reported by a bank sync.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The reconciliation
    service loads transactions, invoices and customers, asks this module
    for a decision and persists it.

Invariants enforced:
    - A transaction is auto-matched only to a single unambiguous invoice;
      several equally good candidates leave it unmatched for review.
    - Applied payment never exceeds the invoice's outstanding balance, so
      ``paid_amount <= total_amount`` always holds after a match.
    - An amount above outstanding + tolerance is never applied.

Failure modes:
    - AmountMismatchError: amount above outstanding + tolerance, a debit,
      or a currency different from the invoice's.
    - InvoiceNotOpenError: invoice not in sent/overdue status.

Auto-match order:
    1. Variable symbol -> invoice number (exact, digits only, or numeric
       suffix with leading zeros ignored).  Confidence 1.0.
    2. Counterparty name -> best customer (raw name similarity at least
       ``counterparty_min_similarity``), then that customer's open invoice
       whose outstanding amount equals the transaction amount within
       ``amount_tolerance``.  Confidence = similarity x amount exactness.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

from fintel_config.schema import ReconciliationConfig
from fintel_kernel.domain.dtos import (
    BankTransaction,
    Customer,
    Invoice,
    InvoiceStatus,
    MatchMethod,
    derive_invoice_status,
)
from fintel_kernel.exceptions import AmountMismatchError, InvoiceNotOpenError
from fintel_kernel.logging_config import get_logger
from fintel_engines.customer_matcher import CustomerMatcher
from fintel_engines.tracer import traced_engine

logger = get_logger("engines.reconciliation")

_CONFIDENCE_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class TransactionError:
    """A fetched transaction that could not be ingested or matched."""

    external_id: str
    error: str


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one ``sync_account`` run, partial when the adapter failed."""

    account_id: UUID
    date_from: date
    date_to: date
    timestamp: datetime
    fetched: int = 0
    imported: int = 0
    skipped: int = 0
    matched: int = 0
    matched_transaction_ids: tuple[UUID, ...] = ()
    needs_review: tuple[UUID, ...] = ()
    errors: tuple[TransactionError, ...] = ()
    adapter_error: str | None = None

    @property
    def is_partial(self) -> bool:
        return self.adapter_error is not None


class AutoMatchOutcome(str, Enum):
    MATCHED = "matched"
    NEEDS_REVIEW = "needs_review"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class AutoMatchDecision:
    transaction_id: UUID
    outcome: AutoMatchOutcome
    reason: str
    invoice_id: UUID | None = None
    method: MatchMethod | None = None
    confidence: Decimal | None = None
    candidate_invoice_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class PaymentApplication:
    """Effect of applying a transaction to an invoice."""

    invoice_id: UUID
    transaction_id: UUID
    applied_amount: Decimal
    previous_paid_amount: Decimal
    new_paid_amount: Decimal
    new_status: InvoiceStatus

    @property
    def settles_invoice(self) -> bool:
        return self.new_status == InvoiceStatus.PAID


def _digits(value: str) -> str:
    return re.sub(r"[^0-9]", "", value)


def match_variable_symbol(symbol: str | None, invoice_number: str) -> bool:
    """
    True when a payment reference identifies ``invoice_number``.

    Accepted forms: the number itself (case-insensitive, whitespace
    ignored), all of its digits, or its trailing digit group with leading
    zeros ignored (``42`` identifies ``FV-2024-0042``).
    """
    if not symbol:
        return False
    sym = re.sub(r"\s", "", symbol).upper()
    number = re.sub(r"\s", "", invoice_number).upper()
    if not sym or not number:
        return False
    if sym == number:
        return True
    if not sym.isdigit():
        return False
    digits = _digits(number)
    if digits and sym == digits:
        return True
    suffix = re.search(r"(\d+)$", number)
    if suffix is None:
        return False
    stripped_suffix = suffix.group(1).lstrip("0")
    return bool(stripped_suffix) and sym.lstrip("0") == stripped_suffix


def plan_payment(
    transaction: BankTransaction,
    invoice: Invoice,
    tolerance: Decimal,
    as_of: date,
) -> PaymentApplication:
    """
    Validate and compute the effect of paying ``invoice`` with ``transaction``.

    Within ``tolerance`` above the outstanding balance the invoice is
    settled exactly; a smaller amount is a partial payment.
    """
    if not invoice.is_open:
        raise InvoiceNotOpenError(invoice.invoice_id, invoice.status.value)

    outstanding = invoice.outstanding_amount

    def mismatch(reason: str) -> AmountMismatchError:
        return AmountMismatchError(
            transaction.transaction_id,
            invoice.invoice_id,
            transaction.amount,
            outstanding,
            tolerance,
            reason,
        )

    if not transaction.is_credit:
        raise mismatch("only incoming (credit) transactions can pay an invoice")
    if transaction.currency != invoice.currency:
        raise mismatch(
            f"transaction currency {transaction.currency} differs from "
            f"invoice currency {invoice.currency}"
        )
    if transaction.amount > outstanding + tolerance:
        raise mismatch("amount exceeds the outstanding balance")

    applied = min(transaction.amount, outstanding)
    new_paid = invoice.paid_amount + applied
    return PaymentApplication(
        invoice_id=invoice.invoice_id,
        transaction_id=transaction.transaction_id,
        applied_amount=applied,
        previous_paid_amount=invoice.paid_amount,
        new_paid_amount=new_paid,
        new_status=derive_invoice_status(
            invoice.status, invoice.total_amount, new_paid, invoice.due_date, as_of,
        ),
    )


class ReconciliationMatcher:
    """
    Auto-match decisions for incoming bank transactions.

    Contract:
        ``open_invoices`` and ``customers`` are the tenant's current state;
        callers refresh ``open_invoices`` after each applied match.
    Guarantees:
        - MATCHED decisions always name exactly one invoice.
        - The decision for a given input is deterministic.
    Non-goals:
        - Splitting one transaction across several invoices.
    """

    def __init__(
        self,
        config: ReconciliationConfig | None = None,
        customer_matcher: CustomerMatcher | None = None,
    ):
        self.config = config or ReconciliationConfig.with_defaults()
        self.customer_matcher = customer_matcher or CustomerMatcher()

    def _exactness(self, difference: Decimal) -> Decimal:
        tolerance = self.config.amount_tolerance
        if tolerance <= 0:
            return Decimal("1")
        return Decimal("1") - Decimal("0.5") * difference / tolerance

    def _by_symbol(
        self,
        transaction: BankTransaction,
        eligible: Sequence[Invoice],
    ) -> AutoMatchDecision | None:
        candidates = [
            inv for inv in eligible
            if match_variable_symbol(transaction.variable_symbol, inv.number)
        ]
        if not candidates:
            return None
        ids = tuple(inv.invoice_id for inv in candidates)
        if len(candidates) > 1:
            return AutoMatchDecision(
                transaction.transaction_id,
                AutoMatchOutcome.NEEDS_REVIEW,
                f"variable symbol {transaction.variable_symbol} fits {len(candidates)} invoices",
                candidate_invoice_ids=ids,
            )
        invoice = candidates[0]
        if transaction.amount > invoice.outstanding_amount + self.config.amount_tolerance:
            return AutoMatchDecision(
                transaction.transaction_id,
                AutoMatchOutcome.NEEDS_REVIEW,
                f"amount {transaction.amount} exceeds outstanding "
                f"{invoice.outstanding_amount} of invoice {invoice.number}",
                candidate_invoice_ids=ids,
            )
        return AutoMatchDecision(
            transaction.transaction_id,
            AutoMatchOutcome.MATCHED,
            f"variable symbol matches invoice {invoice.number}",
            invoice_id=invoice.invoice_id,
            method=MatchMethod.EXACT_SYMBOL,
            confidence=Decimal("1.0000"),
            candidate_invoice_ids=ids,
        )

    def _by_counterparty(
        self,
        transaction: BankTransaction,
        eligible: Sequence[Invoice],
        customers: Sequence[Customer],
    ) -> AutoMatchDecision:
        cfg = self.config
        no_match = AutoMatchDecision(
            transaction.transaction_id,
            AutoMatchOutcome.NO_MATCH,
            "no invoice identified",
        )

        scored = self.customer_matcher.match_counterparty(
            transaction.counterparty_name, customers, cfg.counterparty_min_similarity,
        )
        if not scored:
            return no_match
        best_similarity = scored[0][1]
        best_customers = [c for c, s in scored if s == best_similarity]
        if len(best_customers) > 1:
            return AutoMatchDecision(
                transaction.transaction_id,
                AutoMatchOutcome.NEEDS_REVIEW,
                f"counterparty {transaction.counterparty_name!r} resembles "
                f"{len(best_customers)} customers equally",
            )
        customer = best_customers[0]

        fitting = [
            (abs(inv.outstanding_amount - transaction.amount), inv)
            for inv in eligible
            if inv.customer_id == customer.customer_id
            and abs(inv.outstanding_amount - transaction.amount) <= cfg.amount_tolerance
        ]
        if not fitting:
            return no_match
        smallest = min(diff for diff, _ in fitting)
        best = [inv for diff, inv in fitting if diff == smallest]
        ids = tuple(inv.invoice_id for inv in best)
        if len(best) > 1:
            return AutoMatchDecision(
                transaction.transaction_id,
                AutoMatchOutcome.NEEDS_REVIEW,
                f"{len(best)} invoices of {customer.display_name} fit amount {transaction.amount}",
                candidate_invoice_ids=ids,
            )

        invoice = best[0]
        confidence = (
            Decimal(repr(best_similarity)) * self._exactness(smallest)
        ).quantize(_CONFIDENCE_QUANTUM, rounding=ROUND_HALF_UP)
        return AutoMatchDecision(
            transaction.transaction_id,
            AutoMatchOutcome.MATCHED,
            f"counterparty matches {customer.display_name}, amount fits invoice {invoice.number}",
            invoice_id=invoice.invoice_id,
            method=MatchMethod.AMOUNT_NAME_FUZZY,
            confidence=confidence,
            candidate_invoice_ids=ids,
        )

    @traced_engine(
        "reconciliation.auto_match", "1.0",
        fingerprint_fields=("transaction", "open_invoices"),
    )
    def auto_match(
        self,
        transaction: BankTransaction,
        open_invoices: Sequence[Invoice],
        customers: Sequence[Customer],
    ) -> AutoMatchDecision:
        """Decide which invoice, if any, ``transaction`` pays."""
        if transaction.is_matched:
            return AutoMatchDecision(
                transaction.transaction_id, AutoMatchOutcome.NO_MATCH, "already matched",
            )
        if not transaction.is_credit:
            return AutoMatchDecision(
                transaction.transaction_id, AutoMatchOutcome.NO_MATCH, "not a credit",
            )

        eligible = [
            inv for inv in open_invoices
            if inv.is_open
            and inv.currency == transaction.currency
            and inv.outstanding_amount > 0
        ]

        decision = self._by_symbol(transaction, eligible)
        if decision is None:
            decision = self._by_counterparty(transaction, eligible, customers)

        logger.debug(
            "auto_match_decided",
            extra={
                "transaction_id": str(transaction.transaction_id),
                "outcome": decision.outcome.value,
                "method": decision.method.value if decision.method else None,
                "invoice_id": str(decision.invoice_id) if decision.invoice_id else None,
                "reason": decision.reason,
            },
        )
        return decision

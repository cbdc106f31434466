"""
Typed exception hierarchy for the financial intelligence engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the engine (an HTTP layer, a cron job, a CLI) must decide what to
do with a failure without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Every exception has a CATEGORY telling the caller whether to fix the
     input, retry later, or stop because there is nothing to do
  4. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        service.match_transaction(scope, transaction_id, invoice_id)
    except AmountMismatchError as e:
        return {"error": e.code, "outstanding": str(e.outstanding_amount)}
    except ConflictError:
        schedule_retry()

Thin or missing history is NOT an error anywhere in this package: it is
reported as a low-confidence result.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FinancialIntelligenceError (base)
    |
    +-- ValidationError                     fix_input
    |
    +-- NotFoundError                       nothing_to_do
    |   +-- CustomerNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- BankAccountNotFoundError
    |
    +-- ConflictError                       retry_later
    |   +-- TransactionAlreadyMatchedError
    |   +-- TransactionNotMatchedError
    |   +-- InvoiceNotOpenError
    |   +-- ConcurrentModificationError
    |
    +-- AmountMismatchError                 fix_input
    |
    +-- ExternalAdapterError                retry_later

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Missing/malformed request parameter
----------------|-----------------------------|-----------------------------------------
Not found       | CUSTOMER_NOT_FOUND          | Unknown or out-of-tenant customer
                | INVOICE_NOT_FOUND           | Unknown or out-of-tenant invoice
                | TRANSACTION_NOT_FOUND       | Unknown or out-of-tenant transaction
                | BANK_ACCOUNT_NOT_FOUND      | Unknown or out-of-tenant bank account
----------------|-----------------------------|-----------------------------------------
Conflict        | TRANSACTION_ALREADY_MATCHED | Matching a matched transaction
                | TRANSACTION_NOT_MATCHED     | Unmatching an unmatched transaction
                | INVOICE_NOT_OPEN            | Invoice is draft, paid or cancelled
                | CONCURRENT_MODIFICATION     | Compare-and-set lost a race
----------------|-----------------------------|-----------------------------------------
Amount          | AMOUNT_MISMATCH             | Transaction amount incompatible with
                |                             | the invoice balance
----------------|-----------------------------|-----------------------------------------
Adapter         | EXTERNAL_ADAPTER_ERROR      | Bank fetch failed (partial result kept)

===============================================================================
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fintel_engines.reconciliation import SyncResult


class ErrorCategory(str, Enum):
    """What the caller should do about an error."""

    FIX_INPUT = "fix_input"
    RETRY_LATER = "retry_later"
    NOTHING_TO_DO = "nothing_to_do"


class FinancialIntelligenceError(Exception):
    """
    Base exception for all engine errors.

    All subclasses carry a `code` class attribute for machine-readable
    identification and a `category` for caller handling.
    """

    code: str = "FINANCIAL_INTELLIGENCE_ERROR"
    category: ErrorCategory = ErrorCategory.FIX_INPUT

    def details(self) -> dict[str, Any]:
        """Structured attributes of this error, for API payloads."""
        return {
            k: v for k, v in vars(self).items()
            if not k.startswith("_") and k != "args"
        }


# Validation


class ValidationError(FinancialIntelligenceError):
    """A request parameter is missing, malformed or not allowed."""

    code: str = "VALIDATION_ERROR"
    category: ErrorCategory = ErrorCategory.FIX_INPUT

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        self.reason = message
        if field:
            super().__init__(f"Invalid {field}: {message}")
        else:
            super().__init__(message)


# Not found


class NotFoundError(FinancialIntelligenceError):
    """Referenced entity does not exist or is outside the caller's tenant."""

    code: str = "NOT_FOUND"
    category: ErrorCategory = ErrorCategory.NOTHING_TO_DO
    entity_type: str = "entity"

    def __init__(self, entity_id: Any):
        self.entity_id = str(entity_id)
        super().__init__(f"{self.entity_type.capitalize()} not found: {entity_id}")


class CustomerNotFoundError(NotFoundError):
    code: str = "CUSTOMER_NOT_FOUND"
    entity_type: str = "customer"


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"
    entity_type: str = "invoice"


class TransactionNotFoundError(NotFoundError):
    code: str = "TRANSACTION_NOT_FOUND"
    entity_type: str = "bank transaction"


class BankAccountNotFoundError(NotFoundError):
    code: str = "BANK_ACCOUNT_NOT_FOUND"
    entity_type: str = "bank account"


# Conflicts


class ConflictError(FinancialIntelligenceError):
    """The entity is not in a state that allows the requested transition."""

    code: str = "CONFLICT"
    category: ErrorCategory = ErrorCategory.RETRY_LATER


class TransactionAlreadyMatchedError(ConflictError):
    """Transaction is already matched; it must be unmatched first."""

    code: str = "TRANSACTION_ALREADY_MATCHED"

    def __init__(self, transaction_id: Any, matched_invoice_id: Any = None):
        self.transaction_id = str(transaction_id)
        self.matched_invoice_id = (
            str(matched_invoice_id) if matched_invoice_id is not None else None
        )
        super().__init__(
            f"Bank transaction {transaction_id} is already matched"
            + (f" to invoice {matched_invoice_id}" if matched_invoice_id else "")
        )


class TransactionNotMatchedError(ConflictError):
    """Unmatch requested for a transaction that is not matched."""

    code: str = "TRANSACTION_NOT_MATCHED"

    def __init__(self, transaction_id: Any):
        self.transaction_id = str(transaction_id)
        super().__init__(f"Bank transaction {transaction_id} is not matched")


class InvoiceNotOpenError(ConflictError):
    """Invoice cannot receive payments in its current status."""

    code: str = "INVOICE_NOT_OPEN"

    def __init__(self, invoice_id: Any, status: str):
        self.invoice_id = str(invoice_id)
        self.status = status
        super().__init__(f"Invoice {invoice_id} is not open for payment (status={status})")


class ConcurrentModificationError(ConflictError):
    """A compare-and-set update found the row changed by another transaction."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            "entity was changed by another transaction"
        )


# Amounts


class AmountMismatchError(FinancialIntelligenceError):
    """Transaction amount is incompatible with the invoice balance."""

    code: str = "AMOUNT_MISMATCH"
    category: ErrorCategory = ErrorCategory.FIX_INPUT

    def __init__(
        self,
        transaction_id: Any,
        invoice_id: Any,
        transaction_amount: Decimal,
        outstanding_amount: Decimal,
        tolerance: Decimal,
        reason: str,
    ):
        self.transaction_id = str(transaction_id)
        self.invoice_id = str(invoice_id)
        self.transaction_amount = transaction_amount
        self.outstanding_amount = outstanding_amount
        self.tolerance = tolerance
        self.reason = reason
        super().__init__(
            f"Amount mismatch matching transaction {transaction_id} to invoice "
            f"{invoice_id}: {reason} (transaction={transaction_amount}, "
            f"outstanding={outstanding_amount}, tolerance={tolerance})"
        )


# External collaborators


class ExternalAdapterError(FinancialIntelligenceError):
    """
    The bank adapter failed while fetching transactions.

    Transactions ingested before the failure are kept; ``partial_result``
    describes them.
    """

    code: str = "EXTERNAL_ADAPTER_ERROR"
    category: ErrorCategory = ErrorCategory.RETRY_LATER

    def __init__(
        self,
        account_id: Any,
        message: str,
        partial_result: SyncResult | None = None,
    ):
        self.account_id = str(account_id)
        self.adapter_message = message
        self.partial_result = partial_result
        super().__init__(f"Bank adapter failed for account {account_id}: {message}")

"""ORM models for the tenant-scoped billing ledger."""

from fintel_kernel.models.bank import BankAccountModel, BankTransactionModel
from fintel_kernel.models.ledger import CustomerModel, InvoiceModel, PaymentModel

__all__ = [
    "CustomerModel",
    "InvoiceModel",
    "PaymentModel",
    "BankAccountModel",
    "BankTransactionModel",
]

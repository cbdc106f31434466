"""Pure domain types for the financial intelligence kernel."""

from fintel_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from fintel_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from fintel_kernel.domain.dtos import (
    BankAccount,
    BankTransaction,
    Customer,
    Invoice,
    InvoiceStatus,
    MatchMethod,
    Payment,
    TenantScope,
    derive_invoice_status,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "CurrencyInfo",
    "CurrencyRegistry",
    "TenantScope",
    "Customer",
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "BankAccount",
    "BankTransaction",
    "MatchMethod",
    "derive_invoice_status",
]

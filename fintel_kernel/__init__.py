"""
Financial Intelligence Kernel

Infrastructure shared by the intelligence engines and services:
- Typed exceptions with caller-facing categories
- Structured JSON logging
- Tenant-scoped ledger persistence (customers, invoices, payments,
  bank accounts and bank transactions)
- Read-only ledger selectors
"""

__version__ = "0.1.0"

"""Read-only selectors over the tenant-scoped ledger."""

from fintel_kernel.selectors.base import BaseSelector
from fintel_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["BaseSelector", "LedgerSelector"]

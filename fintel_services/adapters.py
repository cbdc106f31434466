"""
Bank feed adapter protocol, fetched-transaction DTO and two file/in-memory
adapters.

Contract:
    BankFeedAdapter.fetch_transactions() yields one FetchedTransaction per
    bank movement booked in the inclusive date range (streaming).  It may
    raise at any point; transactions already yielded stay ingested.
    An adapter that skips malformed source rows lists them in
    ``rejected_rows``; the sync reports each one as a per-row error.

Architecture: fintel_services/adapters.  File I/O only, no DB access.  The
adapter owns its own timeouts and retries.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from fintel_kernel.domain.dtos import BankAccount
from fintel_kernel.logging_config import get_logger

logger = get_logger("services.adapters")


@dataclass(frozen=True)
class FetchedTransaction:
    """One movement as reported by the bank; ``external_id`` is the bank's key."""

    external_id: str
    booked_on: date
    amount: Decimal
    currency: str
    counterparty_name: str | None = None
    counterparty_account: str | None = None
    variable_symbol: str | None = None
    message: str | None = None


@runtime_checkable
class BankFeedAdapter(Protocol):
    """Protocol for pulling transactions of one bank account from an external feed."""

    def fetch_transactions(
        self,
        account: BankAccount,
        date_from: date,
        date_to: date,
    ) -> Iterable[FetchedTransaction]:
        """Yield transactions booked between date_from and date_to (inclusive)."""
        ...


class StaticBankFeedAdapter:
    """Serve a fixed list of transactions, filtered by booking date."""

    def __init__(self, transactions: Iterable[FetchedTransaction] = ()):
        self.transactions = list(transactions)

    def fetch_transactions(
        self, account: BankAccount, date_from: date, date_to: date,
    ) -> Iterator[FetchedTransaction]:
        for tx in self.transactions:
            if date_from <= tx.booked_on <= date_to:
                yield tx


@dataclass(frozen=True)
class RejectedRow:
    """A statement row that could not be read as a transaction."""

    source_row: int
    external_id: str | None
    reason: str

    @property
    def label(self) -> str:
        return self.external_id or f"row {self.source_row}"


def _optional_str(row: dict[str, Any], key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _row_to_transaction(row: dict[str, Any], default_currency: str) -> FetchedTransaction:
    """Convert a lower-cased statement row; raises ValueError on a malformed row."""
    external_id = _optional_str(row, "id") or _optional_str(row, "external_id")
    if external_id is None:
        raise ValueError("statement row has no id")
    booked = _optional_str(row, "booked_on") or _optional_str(row, "date")
    if booked is None:
        raise ValueError(f"statement row {external_id} has no booking date")
    try:
        amount = Decimal(str(row.get("amount")))
    except InvalidOperation as exc:
        raise ValueError(f"statement row {external_id} has an invalid amount") from exc
    try:
        booked_on = date.fromisoformat(booked)
    except ValueError as exc:
        raise ValueError(f"statement row {external_id} has an invalid booking date") from exc
    return FetchedTransaction(
        external_id=external_id,
        booked_on=booked_on,
        amount=amount,
        currency=(_optional_str(row, "currency") or default_currency).upper(),
        counterparty_name=_optional_str(row, "counterparty_name"),
        counterparty_account=_optional_str(row, "counterparty_account"),
        variable_symbol=_optional_str(row, "variable_symbol") or _optional_str(row, "vs"),
        message=_optional_str(row, "message"),
    )


class JsonStatementAdapter:
    """
    Read a bank statement export: a JSON array of movements, or JSON Lines.

    Keys are matched case-insensitively.  Recognized keys: ``id`` (or
    ``external_id``), ``booked_on`` (or ``date``, ISO format), ``amount``,
    ``currency``, ``counterparty_name``, ``counterparty_account``,
    ``variable_symbol`` (or ``vs``), ``message``.
    """

    def __init__(self, source_path: Path, fmt: str = "array", encoding: str = "utf-8"):
        if fmt not in ("array", "jsonl"):
            raise ValueError(f"Unsupported statement format: {fmt!r}")
        self.source_path = Path(source_path)
        self.fmt = fmt
        self.encoding = encoding
        self.rejected_rows: list[RejectedRow] = []

    def _rows(self) -> Iterator[dict[str, Any]]:
        with self.source_path.open("r", encoding=self.encoding) as f:
            if self.fmt == "jsonl":
                items: Iterable[Any] = (json.loads(line) for line in f if line.strip())
            else:
                items = json.load(f)
                if not isinstance(items, list):
                    raise ValueError(f"{self.source_path}: expected a JSON array")
            for item in items:
                if isinstance(item, dict):
                    yield {str(k).strip().lower(): v for k, v in item.items()}

    def fetch_transactions(
        self, account: BankAccount, date_from: date, date_to: date,
    ) -> Iterator[FetchedTransaction]:
        self.rejected_rows = []
        for number, row in enumerate(self._rows(), start=1):
            try:
                tx = _row_to_transaction(row, account.currency)
            except ValueError as exc:
                rejected = RejectedRow(
                    number, _optional_str(row, "id") or _optional_str(row, "external_id"), str(exc),
                )
                self.rejected_rows.append(rejected)
                logger.warning(
                    "statement_row_rejected",
                    extra={"source_row": number, "external_id": rejected.external_id, "reason": rejected.reason},
                )
                continue
            if date_from <= tx.booked_on <= date_to:
                yield tx

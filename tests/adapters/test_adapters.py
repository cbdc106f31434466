"""
Tests for the bank feed adapters.
"""

import json
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fintel_kernel.domain.dtos import BankAccount
from fintel_services.adapters import (
    BankFeedAdapter,
    FetchedTransaction,
    JsonStatementAdapter,
    StaticBankFeedAdapter,
)

JANUARY = (date(2026, 1, 1), date(2026, 1, 31))


@pytest.fixture
def account():
    return BankAccount(
        account_id=uuid4(),
        tenant_id=uuid4(),
        name="Provozní účet",
        account_number="2900123456/2010",
        currency="CZK",
    )


ROWS = [
    {
        "ID": "tx-1",
        "Booked_On": "2026-01-10",
        "Amount": "1000.00",
        "Currency": "czk",
        "Counterparty_Name": "Alfa Software s.r.o.",
        "VS": "20260042",
        "message": "  ",
    },
    {"external_id": "tx-2", "date": "2026-01-20", "amount": -250.5},
    {"id": "tx-3", "booked_on": "2026-02-02", "amount": "10"},
]


class TestJsonStatementAdapter:
    def test_array(self, tmp_path, account):
        path = tmp_path / "statement.json"
        path.write_text(json.dumps(ROWS), encoding="utf-8")

        fetched = list(JsonStatementAdapter(path).fetch_transactions(account, *JANUARY))

        assert [tx.external_id for tx in fetched] == ["tx-1", "tx-2"]
        first = fetched[0]
        assert first.booked_on == date(2026, 1, 10)
        assert first.amount == Decimal("1000.00")
        assert first.currency == "CZK"
        assert first.counterparty_name == "Alfa Software s.r.o."
        assert first.variable_symbol == "20260042"
        assert first.message is None

    def test_jsonl_and_default_currency(self, tmp_path, account):
        path = tmp_path / "statement.jsonl"
        path.write_text("\n".join(json.dumps(r) for r in ROWS) + "\n\n", encoding="utf-8")

        fetched = list(JsonStatementAdapter(path, fmt="jsonl").fetch_transactions(account, *JANUARY))

        assert fetched[1] == FetchedTransaction(
            external_id="tx-2",
            booked_on=date(2026, 1, 20),
            amount=Decimal("-250.5"),
            currency="CZK",
        )

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(ValueError, match="csv"):
            JsonStatementAdapter(tmp_path / "statement.csv", fmt="csv")

    def test_top_level_must_be_array(self, tmp_path, account):
        path = tmp_path / "statement.json"
        path.write_text(json.dumps({"id": "tx-1"}), encoding="utf-8")

        with pytest.raises(ValueError, match="array"):
            list(JsonStatementAdapter(path).fetch_transactions(account, *JANUARY))

    @pytest.mark.parametrize("row, fragment", [
        ({"booked_on": "2026-01-10", "amount": "1"}, "no id"),
        ({"id": "tx-9", "amount": "1"}, "booking date"),
        ({"id": "tx-9", "booked_on": "2026-01-10", "amount": "abc"}, "invalid amount"),
        ({"id": "tx-9", "booked_on": "2026-01-10"}, "invalid amount"),
        ({"id": "tx-9", "booked_on": "2026-13-45", "amount": "1"}, "invalid booking date"),
    ])
    def test_malformed_row_is_skipped_and_reported(self, tmp_path, account, row, fragment):
        path = tmp_path / "statement.json"
        path.write_text(json.dumps([ROWS[0], row, ROWS[1]]), encoding="utf-8")
        adapter = JsonStatementAdapter(path)

        fetched = list(adapter.fetch_transactions(account, *JANUARY))

        assert [tx.external_id for tx in fetched] == ["tx-1", "tx-2"]
        assert len(adapter.rejected_rows) == 1
        rejected = adapter.rejected_rows[0]
        assert rejected.source_row == 2
        assert fragment in rejected.reason
        assert rejected.label == (row.get("id") or "row 2")

    def test_rejected_rows_reset_on_each_fetch(self, tmp_path, account):
        path = tmp_path / "statement.json"
        path.write_text(json.dumps([{"id": "tx-9", "amount": "1"}]), encoding="utf-8")
        adapter = JsonStatementAdapter(path)

        list(adapter.fetch_transactions(account, *JANUARY))
        list(adapter.fetch_transactions(account, *JANUARY))

        assert [r.external_id for r in adapter.rejected_rows] == ["tx-9"]

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(JsonStatementAdapter(tmp_path / "x.json"), BankFeedAdapter)
        assert isinstance(StaticBankFeedAdapter(), BankFeedAdapter)


class TestStaticBankFeedAdapter:
    def test_filters_by_inclusive_range(self, account):
        transactions = [
            FetchedTransaction(f"tx-{day}", date(2026, 1, day), Decimal("1"), "CZK")
            for day in (1, 15, 31)
        ]
        adapter = StaticBankFeedAdapter(transactions)

        fetched = list(adapter.fetch_transactions(account, date(2026, 1, 1), date(2026, 1, 15)))

        assert [tx.external_id for tx in fetched] == ["tx-1", "tx-15"]

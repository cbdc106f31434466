"""
Property-based tests for the engine invariants.

Properties checked:
- More overdue invoices never raise the on-time probability
- Probabilities stay in [0, 1] for any payment history
- Applying a payment never pushes paid_amount above total_amount
- Forecast predictions and lower bounds are never negative
- An invoice number always identifies its own invoice
"""

from datetime import UTC, date, datetime, time, timedelta
from decimal import ROUND_DOWN, Decimal
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from fintel_config.schema import ForecastConfig
from fintel_engines.payment_predictor import PaymentPredictor
from fintel_engines.reconciliation import match_variable_symbol, plan_payment
from fintel_engines.revenue_forecaster import (
    MonthlyHistory,
    MonthlyRevenue,
    RevenueForecaster,
    add_months,
)
from fintel_kernel.domain.dtos import (
    BankTransaction,
    Invoice,
    InvoiceStatus,
    Payment,
    derive_invoice_status,
)
from fintel_kernel.exceptions import AmountMismatchError

AS_OF = date(2026, 1, 15)
TENANT_ID = uuid4()
TOLERANCE = Decimal("0.01")

amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=2,
    allow_nan=False, allow_infinity=False,
)


def _settled(customer_id, due: date, days_late: int) -> Invoice:
    invoice_id = uuid4()
    return Invoice(
        invoice_id=invoice_id,
        tenant_id=TENANT_ID,
        customer_id=customer_id,
        number=f"FV-{uuid4().hex[:8]}",
        issue_date=due - timedelta(days=14),
        due_date=due,
        total_amount=Decimal("1000.00"),
        paid_amount=Decimal("1000.00"),
        currency="CZK",
        status=InvoiceStatus.PAID,
        payments=(Payment(
            payment_id=uuid4(),
            invoice_id=invoice_id,
            amount=Decimal("1000.00"),
            paid_at=datetime.combine(due + timedelta(days=days_late), time.min, tzinfo=UTC),
        ),),
    )


def _open(customer_id, total: Decimal, paid: Decimal, number: str = "FV-2026-0001") -> Invoice:
    due = date(2026, 1, 31)
    return Invoice(
        invoice_id=uuid4(),
        tenant_id=TENANT_ID,
        customer_id=customer_id,
        number=number,
        issue_date=date(2026, 1, 10),
        due_date=due,
        total_amount=total,
        paid_amount=paid,
        currency="CZK",
        status=derive_invoice_status(InvoiceStatus.SENT, total, paid, due, AS_OF),
    )


class TestPredictorProperties:
    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    @given(delays=st.lists(st.integers(min_value=-20, max_value=90), max_size=15))
    def test_overdue_count_is_monotone(self, delays):
        predictor = PaymentPredictor()
        customer_id = uuid4()
        history = [
            _settled(customer_id, date(2024, 1, 5) + timedelta(days=30 * i), d)
            for i, d in enumerate(delays)
        ]
        invoice = _open(customer_id, Decimal("1000.00"), Decimal("0"))
        stats = predictor.customer_stats(
            customer_id, history + [invoice], predictor.population_stats(history), AS_OF,
        )

        probabilities = [
            predictor.predict(invoice, stats, other_overdue_count=k).probability_on_time
            for k in range(6)
        ]

        assert all(0.0 <= p <= 1.0 for p in probabilities)
        assert all(a >= b for a, b in zip(probabilities, probabilities[1:]))


class TestPaymentProperties:
    @given(total=amounts, paid_share=st.integers(min_value=0, max_value=99), amount=amounts)
    def test_paid_never_exceeds_total(self, total, paid_share, amount):
        paid = (total * paid_share / 100).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        invoice = _open(uuid4(), total, paid)
        tx = BankTransaction(
            transaction_id=uuid4(),
            tenant_id=TENANT_ID,
            bank_account_id=uuid4(),
            external_id="prop",
            booked_on=AS_OF,
            amount=amount,
            currency="CZK",
        )

        try:
            plan = plan_payment(tx, invoice, TOLERANCE, AS_OF)
        except AmountMismatchError:
            assert amount > invoice.outstanding_amount + TOLERANCE
        else:
            assert plan.new_paid_amount <= invoice.total_amount
            assert plan.applied_amount > 0
            assert (plan.new_status == InvoiceStatus.PAID) == (
                plan.new_paid_amount == invoice.total_amount
            )

    @given(prefix=st.sampled_from(["FV", "INV", "2026"]), sequence=st.integers(min_value=1, max_value=99999))
    def test_number_identifies_itself(self, prefix, sequence):
        number = f"{prefix}-2026-{sequence:05d}"

        assert match_variable_symbol(number, number)
        assert match_variable_symbol(str(sequence), number)


class TestForecastProperties:
    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    @given(
        revenue=st.lists(
            st.decimals(min_value=Decimal("0"), max_value=Decimal("5000000"), places=2,
                        allow_nan=False, allow_infinity=False),
            max_size=36,
        ),
        months=st.integers(min_value=1, max_value=36),
    )
    def test_bounds_are_ordered_and_non_negative(self, revenue, months):
        last = add_months((AS_OF.year, AS_OF.month), -1)
        points = tuple(
            MonthlyRevenue(*add_months(last, i - len(revenue) + 1), amount)
            for i, amount in enumerate(revenue)
        )
        history = MonthlyHistory(currency="CZK", as_of=AS_OF, months=points)

        periods = RevenueForecaster(ForecastConfig.with_defaults()).forecast(history, months)

        assert len(periods) == months
        for p in periods:
            assert Decimal("0") <= p.lower_bound <= p.predicted_revenue <= p.upper_bound
            assert 0.0 <= p.confidence <= 1.0

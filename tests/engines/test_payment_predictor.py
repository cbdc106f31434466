"""
Tests for PaymentPredictor.

Covers:
- Customer statistics (days-to-pay, on-time ratio, trend, confidence)
- Population fallback for customers without history
- Prediction probability, expected date and factors
- Customer risk assessment and ranking
"""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from fintel_config.schema import PredictorConfig
from fintel_engines.payment_predictor import (
    CustomerRisk,
    FactorImpact,
    FactorType,
    PaymentPredictor,
    PaymentTrend,
    PopulationStats,
    Recommendation,
    StatsConfidence,
)
from fintel_kernel.domain.dtos import InvoiceStatus

AS_OF = date(2026, 1, 15)


@pytest.fixture
def predictor() -> PaymentPredictor:
    return PaymentPredictor(PredictorConfig.with_defaults())


def _monthly_dues(count: int, start: date = date(2025, 1, 5)) -> list[date]:
    return [date(start.year + (start.month - 1 + i) // 12, (start.month - 1 + i) % 12 + 1, 5)
            for i in range(count)]


class TestPopulationStats:
    def test_empty_history_is_neutral(self, predictor):
        population = predictor.population_stats([])

        assert population == PopulationStats.empty()
        assert population.on_time_ratio == 0.5
        assert population.resolved_count == 0

    def test_counts_only_resolved_invoices(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, date(2025, 6, 5), days_late=-2),
            invoices.paid(customer_id, date(2025, 7, 5), days_late=10),
            invoices.open(customer_id, date(2026, 2, 5)),
        ]

        population = predictor.population_stats(history)

        assert population.resolved_count == 2
        assert population.mean_days_to_pay == pytest.approx(4.0)
        assert population.on_time_ratio == pytest.approx(0.5)


class TestCustomerStats:
    def test_no_history_falls_back_to_population_with_low_confidence(self, predictor):
        population = PopulationStats(
            resolved_count=20, mean_days_to_pay=3.0, stddev_days_to_pay=1.0, on_time_ratio=0.7,
        )

        stats = predictor.customer_stats(uuid4(), [], population, AS_OF)

        assert stats.confidence == StatsConfidence.LOW
        assert stats.used_population_fallback is True
        assert stats.resolved_count == 0
        assert stats.mean_days_to_pay == 3.0
        assert stats.on_time_ratio == 0.7
        assert stats.trend == PaymentTrend.UNKNOWN
        assert stats.average_invoice_amount is None

    def test_confidence_grows_with_resolved_history(self, predictor, invoices):
        customer_id = uuid4()
        five = [invoices.paid(customer_id, due) for due in _monthly_dues(5)]
        twelve = [invoices.paid(customer_id, due) for due in _monthly_dues(12)]
        population = predictor.population_stats(twelve)

        assert predictor.customer_stats(
            customer_id, five, population, AS_OF,
        ).confidence == StatsConfidence.MEDIUM
        assert predictor.customer_stats(
            customer_id, twelve, population, AS_OF,
        ).confidence == StatsConfidence.HIGH

    def test_aggregates_amounts_and_overdue(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, date(2025, 9, 5), days_late=5, total="2000.00"),
            invoices.paid(customer_id, date(2025, 10, 5), days_late=-1, total="1000.00"),
            invoices.open(customer_id, date(2025, 12, 20), total="3000.00", paid="1000.00"),
            invoices.open(customer_id, date(2026, 2, 1), total="500.00"),
        ]

        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        assert stats.invoice_count == 4
        assert stats.resolved_count == 2
        assert stats.paid_on_time == 1
        assert stats.paid_late == 1
        assert stats.open_count == 2
        assert stats.overdue_count == 1
        assert stats.total_invoiced == Decimal("6500.00")
        assert stats.outstanding_amount == Decimal("2500.00")
        assert stats.overdue_amount == Decimal("2000.00")
        assert stats.longest_delay_days == 5
        assert stats.days_since_last_payment == (AS_OF - date(2025, 10, 4)).days

    def test_draft_and_cancelled_invoices_are_ignored(self, predictor, invoices):
        customer_id = uuid4()
        draft = replace(invoices.open(customer_id, date(2026, 3, 1)), status=InvoiceStatus.DRAFT)
        cancelled = replace(
            invoices.open(customer_id, date(2026, 3, 1)), status=InvoiceStatus.CANCELLED,
        )

        stats = predictor.customer_stats(
            customer_id, [draft, cancelled], PopulationStats.empty(), AS_OF,
        )

        assert stats.invoice_count == 0
        assert stats.total_invoiced == Decimal("0")

    def test_worsening_trend(self, predictor, invoices):
        customer_id = uuid4()
        delays = [0, 0, 1, 9, 12, 15]
        history = [
            invoices.paid(customer_id, due, days_late=d)
            for due, d in zip(_monthly_dues(6), delays)
        ]

        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        assert stats.trend == PaymentTrend.WORSENING
        assert stats.trend_delta_days == pytest.approx(13.5)

    def test_stable_trend(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due, days_late=1) for due in _monthly_dues(6)]

        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        assert stats.trend == PaymentTrend.STABLE


class TestPredict:
    def test_zero_history_prediction_is_low_confidence(self, predictor, invoices):
        customer_id = uuid4()
        invoice = invoices.open(customer_id, date(2026, 2, 1))
        stats = predictor.customer_stats(
            customer_id, [invoice], PopulationStats.empty(), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, other_overdue_count=0)

        assert prediction.confidence == StatsConfidence.LOW
        assert 0.0 <= prediction.probability_on_time <= 1.0
        assert prediction.expected_payment_date == invoice.due_date
        assert prediction.stats.used_population_fallback is True

    def test_reliable_early_payer(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, due, days_late=-2) for due in _monthly_dues(10)
        ]
        invoice = invoices.open(customer_id, date(2026, 2, 5), issue=date(2026, 1, 10))
        stats = predictor.customer_stats(
            customer_id, history + [invoice], predictor.population_stats(history), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, other_overdue_count=0)

        assert prediction.confidence == StatsConfidence.HIGH
        assert prediction.probability_on_time > 0.9
        assert prediction.predicted_offset_days == -2
        assert prediction.expected_payment_date == date(2026, 2, 3)
        assert prediction.risk_score < 25
        assert prediction.recommendation == Recommendation.EXTEND_DUE

    def test_chronic_late_payer(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, due, days_late=30) for due in _monthly_dues(5)
        ]
        invoice = invoices.open(customer_id, date(2026, 2, 5), issue=date(2026, 1, 10))
        stats = predictor.customer_stats(
            customer_id, history + [invoice], predictor.population_stats(history), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, other_overdue_count=0)

        assert prediction.probability_on_time < 0.1
        assert prediction.predicted_offset_days == 30
        assert prediction.expected_payment_date == date(2026, 3, 7)
        assert prediction.risk_score >= 75
        assert prediction.recommendation == Recommendation.SHORTEN_DUE

    def test_offset_is_clamped(self, invoices):
        predictor = PaymentPredictor(PredictorConfig(offset_max_days=20))
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, due, days_late=45) for due in _monthly_dues(4)
        ]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        assert predictor.predict(invoice, stats, 0).predicted_offset_days == 20

    def test_factors_are_explained_and_sorted(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, due, days_late=4) for due in _monthly_dues(4)
        ]
        invoice = invoices.open(customer_id, date(2026, 2, 28), issue=date(2026, 1, 28))
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        factors = predictor.predict(invoice, stats, other_overdue_count=2).contributing_factors

        types = {f.type for f in factors}
        assert types == set(FactorType)
        weights = [abs(f.weight) for f in factors]
        assert weights == sorted(weights, reverse=True)
        issue = next(f for f in factors if f.type == FactorType.ISSUE_DAY)
        assert issue.weight == pytest.approx(-0.2)
        overdue = next(f for f in factors if f.type == FactorType.OVERDUE_INVOICES)
        assert overdue.weight < 0
        assert all(f.description for f in factors)

    def test_overdue_invoices_lower_probability(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due) for due in _monthly_dues(4)]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        clean = predictor.predict(invoice, stats, 0).probability_on_time
        burdened = predictor.predict(invoice, stats, 3).probability_on_time

        assert burdened < clean

    def test_large_late_invoice_requires_advance(self, predictor, invoices):
        customer_id = uuid4()
        history = [
            invoices.paid(customer_id, due, days_late=40) for due in _monthly_dues(4)
        ]
        invoice = invoices.open(customer_id, date(2026, 2, 5), total="90000.00")
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, other_overdue_count=1)

        assert prediction.recommendation == Recommendation.REQUIRE_ADVANCE


def _factor(prediction, factor_type):
    return next(f for f in prediction.contributing_factors if f.type == factor_type)


class TestBalanceAndTenureFactors:
    def test_cleared_balance_is_positive(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due) for due in _monthly_dues(4)]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, 0)

        outstanding = _factor(prediction, FactorType.OUTSTANDING_AMOUNT)
        assert outstanding.weight == pytest.approx(0.2)
        assert outstanding.impact == FactorImpact.POSITIVE
        age = _factor(prediction, FactorType.CUSTOMER_AGE)
        assert age.weight == 0.0
        assert age.impact == FactorImpact.NEUTRAL

    def test_large_outstanding_share_is_negative(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due) for due in _monthly_dues(2)]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        larger = invoices.open(customer_id, date(2026, 2, 10), total="3000.00")
        all_invoices = history + [invoice, larger]
        stats = predictor.customer_stats(
            customer_id, all_invoices, predictor.population_stats(all_invoices), AS_OF,
        )

        outstanding = _factor(predictor.predict(invoice, stats, 0), FactorType.OUTSTANDING_AMOUNT)

        assert stats.outstanding_amount == Decimal("4000.00")
        assert outstanding.weight == pytest.approx(-0.5 * 4000 / 6000)
        assert outstanding.impact == FactorImpact.NEGATIVE

    def test_small_share_and_long_tenure(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due) for due in _monthly_dues(10)]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(
            customer_id, history + [invoice], predictor.population_stats(history), AS_OF,
        )

        prediction = predictor.predict(invoice, stats, 0)

        assert _factor(prediction, FactorType.OUTSTANDING_AMOUNT).weight == 0.0
        age = _factor(prediction, FactorType.CUSTOMER_AGE)
        assert age.weight == pytest.approx(0.3)
        assert age.impact == FactorImpact.POSITIVE

    def test_new_customer_is_neutral(self, predictor, invoices):
        customer_id = uuid4()
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(customer_id, [], PopulationStats.empty(), AS_OF)

        age = _factor(predictor.predict(invoice, stats, 0), FactorType.CUSTOMER_AGE)

        assert age.weight == 0.0
        assert age.description == "New customer"

    def test_outstanding_balance_lowers_probability(self, predictor, invoices):
        customer_id = uuid4()
        history = [invoices.paid(customer_id, due) for due in _monthly_dues(4)]
        invoice = invoices.open(customer_id, date(2026, 2, 5))
        stats = predictor.customer_stats(
            customer_id, history, predictor.population_stats(history), AS_OF,
        )

        clear = predictor.predict(invoice, stats, 0).probability_on_time
        owing = predictor.predict(
            invoice, replace(stats, outstanding_amount=stats.total_invoiced), 0,
        ).probability_on_time

        assert owing < clear


class TestCustomerRisk:
    def test_overdue_customer_is_risky(self, predictor, invoices, make_customer):
        good = make_customer("Spolehlivá s.r.o.")
        bad = make_customer("Dlužník a.s.")
        good_history = [invoices.paid(good.customer_id, due) for due in _monthly_dues(6)]
        bad_history = [
            invoices.paid(bad.customer_id, due, days_late=25) for due in _monthly_dues(3)
        ] + [
            invoices.open(bad.customer_id, date(2025, 11, 30), total="5000.00"),
            invoices.open(bad.customer_id, date(2025, 12, 15), total="5000.00"),
        ]
        population = predictor.population_stats(good_history + bad_history)

        assessments = [
            predictor.assess_customer(
                c, predictor.customer_stats(c.customer_id, h, population, AS_OF),
            )
            for c, h in ((good, good_history), (bad, bad_history))
        ]
        risky = predictor.rank_risky(assessments)

        assert [r.customer_id for r in risky] == [bad.customer_id]
        assert risky[0].overdue_ratio == pytest.approx(1.0)
        assert risky[0].risk_score == 100
        assert risky[0].overdue_amount == Decimal("10000.00")
        assert len(risky[0].reasons) == 2

    def test_rank_orders_by_score_then_name(self, predictor):
        def risk(name, score):
            return CustomerRisk(
                customer_id=uuid4(), display_name=name, probability_on_time=0.3,
                overdue_ratio=0.0, outstanding_amount=Decimal("0"),
                overdue_amount=Decimal("0"), risk_score=score, is_risky=True,
                reasons=("x",),
            )

        ranked = predictor.rank_risky([risk("Beta", 60), risk("Alfa", 60), risk("Gama", 80)])

        assert [r.display_name for r in ranked] == ["Gama", "Alfa", "Beta"]


def test_expected_date_moves_with_due_date(predictor, invoices):
    customer_id = uuid4()
    history = [invoices.paid(customer_id, due, days_late=3) for due in _monthly_dues(4)]
    stats = predictor.customer_stats(
        customer_id, history, predictor.population_stats(history), AS_OF,
    )
    early = invoices.open(customer_id, date(2026, 2, 1))
    later = invoices.open(customer_id, date(2026, 2, 1) + timedelta(days=10))

    assert (
        predictor.predict(later, stats, 0).expected_payment_date
        - predictor.predict(early, stats, 0).expected_payment_date
    ) == timedelta(days=10)

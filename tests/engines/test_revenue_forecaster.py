"""
Tests for RevenueForecaster and build_monthly_history.

Covers:
- Monthly history (contiguous months, currency exclusion, cap)
- Forecast basis selection, bands and confidence
- Seasonality indices and confidence
- Growth metrics with undefined ratios
- Annual turnover against the VAT registration limit
- Cash-flow projection
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fintel_config.schema import ForecastConfig
from fintel_engines.revenue_forecaster import (
    ExpectedPayment,
    ForecastBasis,
    RecurringOutflow,
    RevenueForecaster,
    SeasonalityConfidence,
    TrendLabel,
    build_monthly_history,
)
from fintel_kernel.domain.dtos import InvoiceStatus
from fintel_kernel.exceptions import ValidationError

AS_OF = date(2026, 1, 15)


@pytest.fixture
def config() -> ForecastConfig:
    return ForecastConfig.with_defaults()


@pytest.fixture
def forecaster(config) -> RevenueForecaster:
    return RevenueForecaster(config)


@pytest.fixture
def monthly_revenue(invoices, config):
    """Build a history from ``{(year, month): amount}`` with one paid invoice per month."""
    customer_id = uuid4()

    def _build(amounts: dict[tuple[int, int], str], as_of: date = AS_OF, extra=()):
        history_invoices = [
            invoices.paid(
                customer_id,
                date(y, m, 20),
                total=amount,
                issue=date(y, m, 10),
            )
            for (y, m), amount in amounts.items()
        ]
        return build_monthly_history(history_invoices + list(extra), as_of, config)

    return _build


def _months(start: tuple[int, int], count: int) -> list[tuple[int, int]]:
    y, m = start
    out = []
    for _ in range(count):
        out.append((y, m))
        y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    return out


class TestMonthlyHistory:
    def test_gaps_are_zero_months(self, monthly_revenue):
        history = monthly_revenue({(2025, 3): "500.00", (2025, 6): "700.00"})

        labels = [p.label for p in history.months]
        assert labels[0] == "2025-03"
        assert labels[-1] == "2025-12"
        assert len(labels) == 10
        assert history.months[1].revenue == Decimal("0")

    def test_current_month_is_kept_out_of_history(self, monthly_revenue):
        history = monthly_revenue({(2025, 12): "100.00", (2026, 1): "900.00"})

        assert [p.label for p in history.months] == ["2025-12"]
        assert history.actual((2026, 1)) == Decimal("900.00")

    def test_foreign_currency_and_drafts_are_excluded(self, monthly_revenue, invoices):
        customer_id = uuid4()
        eur = invoices.paid(customer_id, date(2025, 11, 20), issue=date(2025, 11, 10), currency="EUR")
        draft = replace(
            invoices.open(customer_id, date(2025, 11, 30), issue=date(2025, 11, 10)),
            status=InvoiceStatus.DRAFT,
        )

        history = monthly_revenue({(2025, 11): "1000.00"}, extra=(eur, draft))

        assert history.excluded_currency_count == 1
        assert history.actual((2025, 11)) == Decimal("1000.00")

    def test_history_is_capped(self, monthly_revenue):
        amounts = {ym: "100.00" for ym in _months((2021, 1), 60)}
        history = monthly_revenue(amounts)

        assert history.length == 36
        assert history.months[0].label == "2023-01"


class TestForecast:
    def test_flat_year_gives_linear_fallback_with_narrow_bounds(self, forecaster, monthly_revenue):
        history = monthly_revenue({ym: "10000.00" for ym in _months((2025, 1), 12)})

        periods = forecaster.forecast(history, 3)

        assert [p.label for p in periods] == ["2026-01", "2026-02", "2026-03"]
        for p in periods:
            assert p.basis == ForecastBasis.LINEAR_FALLBACK
            assert p.predicted_revenue == Decimal("10000.00")
            assert p.lower_bound <= p.predicted_revenue <= p.upper_bound
            assert (p.upper_bound - p.lower_bound) / p.predicted_revenue <= Decimal("0.25")
            assert p.trend == TrendLabel.STABLE
            assert p.change_percent == 0.0
        assert periods[0].lower_bound == Decimal("9300.00")
        assert periods[0].upper_bound == Decimal("10700.00")

    def test_confidence_decreases_and_bands_widen(self, forecaster, monthly_revenue):
        history = monthly_revenue({ym: "10000.00" for ym in _months((2025, 1), 12)})

        periods = forecaster.forecast(history, 6)

        confidences = [p.confidence for p in periods]
        widths = [p.upper_bound - p.lower_bound for p in periods]
        assert confidences == sorted(confidences, reverse=True)
        assert widths == sorted(widths)

    def test_two_years_use_trend_and_seasonality(self, forecaster, monthly_revenue):
        amounts = {
            (y, m): "20000.00" if m == 12 else "10000.00"
            for (y, m) in _months((2024, 1), 24)
        }
        history = monthly_revenue(amounts)

        periods = forecaster.forecast(history, 12)

        assert all(p.basis == ForecastBasis.TREND_SEASONAL for p in periods)
        december = next(p for p in periods if p.month == 12)
        june = next(p for p in periods if p.month == 6)
        assert december.predicted_revenue > june.predicted_revenue

    def test_declining_history_never_forecasts_negative(self, forecaster, monthly_revenue):
        amounts = {
            ym: str(12000 - 1000 * i) for i, ym in enumerate(_months((2025, 1), 12))
        }
        history = monthly_revenue(amounts)

        periods = forecaster.forecast(history, 12)

        assert periods[0].trend == TrendLabel.DECLINING
        assert all(p.predicted_revenue >= 0 for p in periods)
        assert all(p.lower_bound >= 0 for p in periods)
        assert periods[-1].predicted_revenue == Decimal("0.00")

    def test_tiny_history_is_flat_with_minimal_confidence(self, forecaster, config, monthly_revenue):
        history = monthly_revenue({(2025, 12): "5000.00"})

        periods = forecaster.forecast(history, 2)

        assert [p.predicted_revenue for p in periods] == [Decimal("5000.00")] * 2
        assert all(p.confidence == config.flat_confidence for p in periods)

    def test_no_history_forecasts_zero(self, forecaster, monthly_revenue):
        periods = forecaster.forecast(monthly_revenue({}), 3)

        assert [p.predicted_revenue for p in periods] == [Decimal("0.00")] * 3

    @pytest.mark.parametrize("months", [0, -1, 37])
    def test_horizon_out_of_range(self, forecaster, monthly_revenue, months):
        with pytest.raises(ValidationError) as exc_info:
            forecaster.forecast(monthly_revenue({}), months)

        assert exc_info.value.field == "months"


class TestSeasonality:
    def test_trendless_year_indices_average_one(self, forecaster, monthly_revenue):
        pattern = [8, 9, 10, 11, 12, 13, 12, 11, 10, 9, 8, 7]
        amounts = {
            ym: f"{v * 1000}.00" for ym, v in zip(_months((2025, 1), 12), pattern)
        }

        analysis = forecaster.seasonality(monthly_revenue(amounts))

        assert analysis.confidence == SeasonalityConfidence.LOW
        assert analysis.blocks == 1
        assert sum(analysis.indices.values()) / 12 == pytest.approx(1.0)
        assert analysis.peak_months[0] == 6
        assert analysis.low_months[0] == 12

    def test_two_blocks_are_high_confidence(self, forecaster, monthly_revenue):
        amounts = {ym: "1000.00" for ym in _months((2024, 1), 24)}

        analysis = forecaster.seasonality(monthly_revenue(amounts))

        assert analysis.confidence == SeasonalityConfidence.HIGH
        assert all(v == pytest.approx(1.0) for v in analysis.indices.values())

    def test_short_history_has_no_seasonality(self, forecaster, monthly_revenue):
        amounts = {ym: "1000.00" for ym in _months((2025, 5), 8)}

        analysis = forecaster.seasonality(monthly_revenue(amounts))

        assert analysis.confidence == SeasonalityConfidence.NONE
        assert set(analysis.indices.values()) == {1.0}
        assert analysis.peak_months == ()


class TestGrowthMetrics:
    def test_thirteen_months(self, forecaster, monthly_revenue):
        amounts = {(2024, 12): "8000.00"}
        amounts.update({ym: "10000.00" for ym in _months((2025, 1), 11)})
        amounts[(2025, 12)] = "12000.00"

        growth = forecaster.growth_metrics(monthly_revenue(amounts))

        assert growth.months_of_history == 13
        assert growth.period_over_period_growth == pytest.approx(0.2)
        assert growth.year_over_year_growth == pytest.approx(0.5)
        assert growth.rolling_average == Decimal("10666.67")
        assert growth.trailing_twelve_growth is None
        assert growth.cagr == pytest.approx(0.5)
        assert growth.trend_coefficient > 0

    def test_zero_denominators_are_none(self, forecaster, monthly_revenue):
        amounts = {(2025, 11): "0.00", (2025, 12): "500.00"}
        history = monthly_revenue(amounts)

        growth = forecaster.growth_metrics(history)

        assert growth.period_over_period_growth is None
        assert growth.cagr is None
        assert growth.rolling_average is None

    def test_empty_history(self, forecaster, monthly_revenue):
        growth = forecaster.growth_metrics(monthly_revenue({}))

        assert growth.months_of_history == 0
        assert growth.period_over_period_growth is None
        assert growth.mean_month_over_month_growth is None
        assert growth.trend_coefficient is None


class TestAnnualTurnover:
    def test_past_year_is_all_actual(self, forecaster, monthly_revenue):
        history = monthly_revenue({ym: "200000.00" for ym in _months((2025, 1), 12)})

        turnover = forecaster.annual_turnover(history, 2025)

        assert all(m.is_actual for m in turnover.monthly)
        assert turnover.predicted_year_end == Decimal("2400000.00")
        assert turnover.current_turnover == Decimal("2400000.00")
        assert turnover.will_exceed_limit is True
        assert turnover.exceed_month == 11

    def test_current_year_is_projected(self, forecaster, monthly_revenue):
        history = monthly_revenue({ym: "100000.00" for ym in _months((2025, 1), 12)})

        turnover = forecaster.annual_turnover(history, 2026)

        assert not any(m.is_actual for m in turnover.monthly)
        assert turnover.current_turnover == Decimal("0")
        assert turnover.predicted_year_end == Decimal("1200000.00")
        assert turnover.will_exceed_limit is False
        assert turnover.exceed_month is None
        assert turnover.monthly[-1].cumulative == turnover.predicted_year_end

    def test_current_month_takes_larger_of_actual_and_projection(self, forecaster, monthly_revenue):
        amounts = {ym: "100000.00" for ym in _months((2025, 1), 12)}
        amounts[(2026, 1)] = "150000.00"

        turnover = forecaster.annual_turnover(monthly_revenue(amounts), 2026)

        assert turnover.monthly[0].amount == Decimal("150000.00")
        assert turnover.current_turnover == Decimal("150000.00")

    def test_year_too_far_ahead(self, forecaster, monthly_revenue):
        with pytest.raises(ValidationError) as exc_info:
            forecaster.annual_turnover(monthly_revenue({}), 2030)

        assert exc_info.value.field == "year"


class TestCashFlow:
    def _expected(self, amount, expected_on, currency="CZK"):
        return ExpectedPayment(
            invoice_id=uuid4(),
            invoice_number=f"FV-{uuid4().hex[:6]}",
            customer_id=uuid4(),
            amount=Decimal(amount),
            currency=currency,
            due_date=expected_on,
            expected_payment_date=expected_on,
            probability=0.8,
        )

    def test_balances_roll_forward(self, forecaster, monthly_revenue):
        history = monthly_revenue({ym: "10000.00" for ym in _months((2025, 1), 12)})
        expected = [
            self._expected("5000.00", date(2025, 12, 20)),
            self._expected("3000.00", date(2026, 2, 10)),
            self._expected("9999.00", date(2026, 2, 10), currency="EUR"),
            self._expected("7000.00", date(2026, 8, 1)),
        ]
        rent = RecurringOutflow("rent", Decimal("4000.00"))

        periods = forecaster.cash_flow(history, 3, Decimal("1000.00"), expected, [rent])

        assert [p.expected_collections for p in periods] == [
            Decimal("5000.00"), Decimal("3000.00"), Decimal("0"),
        ]
        assert [p.closing_balance for p in periods] == [
            Decimal("12000.00"), Decimal("21000.00"), Decimal("27000.00"),
        ]
        assert periods[1].opening_balance == periods[0].closing_balance
        assert all(p.outflows == Decimal("4000.00") for p in periods)
        assert len(periods[1].expected_payments) == 1

    def test_quarterly_outflow(self, forecaster, monthly_revenue):
        history = monthly_revenue({})
        insurance = RecurringOutflow(
            "insurance", Decimal("900.00"), every_n_months=3, start=date(2025, 11, 1),
        )

        periods = forecaster.cash_flow(history, 4, Decimal("0"), [], [insurance])

        assert [p.outflows for p in periods] == [
            Decimal("0"), Decimal("900.00"), Decimal("0"), Decimal("0"),
        ]

    def test_invalid_outflow(self):
        with pytest.raises(ValueError):
            RecurringOutflow("bad", Decimal("-1"))
        with pytest.raises(ValueError):
            RecurringOutflow("bad", Decimal("1"), every_n_months=0)

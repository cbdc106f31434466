"""
Module: fintel_engines.revenue_forecaster
Responsibility:
    Monthly revenue history, revenue forecasts with widening confidence
    bands, seasonality and growth analysis, annual turnover projection
    against the VAT registration limit, and the cash-flow projection that
    combines expected collections with forecast revenue.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Receives invoice DTOs and the ``as_of`` date; never reads the clock.

Invariants enforced:
    - History is contiguous: months without invoices are zero, not missing.
    - Forecast predictions and lower bounds are never negative.
    - Band half-widths never shrink as the horizon grows.
    - Output amounts are Decimal rounded to the reporting currency's minor
      unit; the regression itself runs on floats.
    - Ratios with a zero denominator (or too little history) are None.

Failure modes:
    - ValidationError: forecast horizon outside 1..max_forecast_months, or
      a turnover year further ahead than the horizon allows.

Models by history length (n months):
    n >= seasonal_min_months   trend_seasonal: seasonal index from 12-month
                               blocks counted back from the last completed
                               month, linear trend on deseasonalized values.
    min_trend_months <= n      linear_fallback: linear trend on raw values;
                               band widened below short_history_months.
    n < min_trend_months       linear_fallback, flat continuation of the
                               last value with minimal confidence.
"""

from __future__ import annotations

import math
import statistics
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from fintel_config.schema import ForecastConfig
from fintel_kernel.domain.currency import CurrencyRegistry
from fintel_kernel.domain.dtos import ISSUED_INVOICE_STATUSES, Invoice
from fintel_kernel.exceptions import ValidationError
from fintel_kernel.logging_config import get_logger
from fintel_engines.tracer import traced_engine

logger = get_logger("engines.revenue_forecaster")

YearMonth = tuple[int, int]


def month_index(ym: YearMonth) -> int:
    return ym[0] * 12 + ym[1] - 1


def from_month_index(index: int) -> YearMonth:
    return index // 12, index % 12 + 1


def add_months(ym: YearMonth, months: int) -> YearMonth:
    return from_month_index(month_index(ym) + months)


def month_of(d: date) -> YearMonth:
    return d.year, d.month


def month_label(ym: YearMonth) -> str:
    return f"{ym[0]:04d}-{ym[1]:02d}"


class ForecastBasis(str, Enum):
    TREND_SEASONAL = "trend_seasonal"
    LINEAR_FALLBACK = "linear_fallback"


class TrendLabel(str, Enum):
    GROWING = "growing"
    STABLE = "stable"
    DECLINING = "declining"


class SeasonalityConfidence(str, Enum):
    HIGH = "high"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class MonthlyRevenue:
    year: int
    month: int
    revenue: Decimal

    @property
    def label(self) -> str:
        return month_label((self.year, self.month))


@dataclass(frozen=True)
class MonthlyHistory:
    """
    Revenue per issue month in the reporting currency.

    ``months`` is the contiguous, capped series up to the last completed
    month.  ``actuals`` holds every month seen, including the current one
    and months beyond the cap.
    """

    currency: str
    as_of: date
    months: tuple[MonthlyRevenue, ...]
    actuals: dict[YearMonth, Decimal] = field(default_factory=dict)
    excluded_currency_count: int = 0

    @property
    def length(self) -> int:
        return len(self.months)

    def actual(self, ym: YearMonth) -> Decimal:
        return self.actuals.get(ym, Decimal("0"))


@dataclass(frozen=True)
class ForecastPeriod:
    label: str
    year: int
    month: int
    predicted_revenue: Decimal
    lower_bound: Decimal
    upper_bound: Decimal
    confidence: float
    basis: ForecastBasis
    trend: TrendLabel
    change_percent: float | None


@dataclass(frozen=True)
class SeasonalityAnalysis:
    indices: dict[int, float]
    confidence: SeasonalityConfidence
    blocks: int
    peak_months: tuple[int, ...]
    low_months: tuple[int, ...]


@dataclass(frozen=True)
class GrowthMetrics:
    months_of_history: int
    period_over_period_growth: float | None
    rolling_average: Decimal | None
    rolling_window: int
    year_over_year_growth: float | None
    trailing_twelve_growth: float | None
    mean_month_over_month_growth: float | None
    cagr: float | None
    trend_coefficient: float | None


@dataclass(frozen=True)
class MonthlyTurnover:
    month: int
    amount: Decimal
    cumulative: Decimal
    is_actual: bool


@dataclass(frozen=True)
class TurnoverPrediction:
    year: int
    current_turnover: Decimal
    predicted_year_end: Decimal
    monthly: tuple[MonthlyTurnover, ...]
    limit: Decimal
    will_exceed_limit: bool
    exceed_month: int | None


@dataclass(frozen=True)
class ExpectedPayment:
    """An open invoice's outstanding balance and when it is expected to arrive."""

    invoice_id: UUID
    invoice_number: str
    customer_id: UUID
    amount: Decimal
    currency: str
    due_date: date
    expected_payment_date: date
    probability: float


@dataclass(frozen=True)
class RecurringOutflow:
    """A fixed expense repeating every ``every_n_months`` from ``start``."""

    description: str
    amount: Decimal
    every_n_months: int = 1
    start: date | None = None
    end: date | None = None

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Outflow {self.description!r}: amount cannot be negative")
        if self.every_n_months < 1:
            raise ValueError(f"Outflow {self.description!r}: every_n_months must be at least 1")
        if self.start and self.end and self.end < self.start:
            raise ValueError(f"Outflow {self.description!r}: end precedes start")

    def occurs_in(self, ym: YearMonth) -> bool:
        if self.start is None:
            return True
        start = month_of(self.start)
        if month_index(ym) < month_index(start):
            return False
        if self.end is not None and month_index(ym) > month_index(month_of(self.end)):
            return False
        return (month_index(ym) - month_index(start)) % self.every_n_months == 0


@dataclass(frozen=True)
class CashFlowPeriod:
    label: str
    year: int
    month: int
    opening_balance: Decimal
    expected_collections: Decimal
    new_business: Decimal
    outflows: Decimal
    net_cash_flow: Decimal
    closing_balance: Decimal
    expected_payments: tuple[ExpectedPayment, ...]


def build_monthly_history(
    invoices: Sequence[Invoice],
    as_of: date,
    config: ForecastConfig,
) -> MonthlyHistory:
    """
    Sum ``paid_amount`` of issued invoices by issue month.

    Draft and cancelled invoices are ignored; invoices in another currency
    than the reporting currency are excluded and counted.
    """
    currency = config.reporting_currency
    actuals: dict[YearMonth, Decimal] = defaultdict(lambda: Decimal("0"))
    excluded = 0
    for inv in invoices:
        if inv.status not in ISSUED_INVOICE_STATUSES:
            continue
        if inv.currency != currency:
            excluded += 1
            continue
        actuals[month_of(inv.issue_date)] += inv.paid_amount

    if excluded:
        logger.info(
            "revenue_history_currency_excluded",
            extra={"reporting_currency": currency, "excluded_invoices": excluded},
        )

    last_completed = add_months(month_of(as_of), -1)
    past = [ym for ym in actuals if month_index(ym) <= month_index(last_completed)]
    months: tuple[MonthlyRevenue, ...] = ()
    if past:
        first = min(past, key=month_index)
        start = max(
            month_index(first),
            month_index(last_completed) - config.max_history_months + 1,
        )
        months = tuple(
            MonthlyRevenue(*from_month_index(i), actuals.get(from_month_index(i), Decimal("0")))
            for i in range(start, month_index(last_completed) + 1)
        )

    return MonthlyHistory(
        currency=currency,
        as_of=as_of,
        months=months,
        actuals=dict(actuals),
        excluded_currency_count=excluded,
    )


def _fit_line(values: Sequence[float]) -> tuple[float, float]:
    """Least-squares ``(slope, intercept)`` over x = 0..n-1."""
    n = len(values)
    if n == 0:
        return 0.0, 0.0
    if n == 1:
        return 0.0, values[0]
    mean_x = (n - 1) / 2
    mean_y = statistics.fmean(values)
    sxx = sum((x - mean_x) ** 2 for x in range(n))
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(values))
    slope = sxy / sxx
    return slope, mean_y - slope * mean_x


def _residual_sigma(values: Sequence[float], fitted: Sequence[float]) -> float:
    n = len(values)
    if n <= 2:
        return 0.0
    sse = sum((v - f) ** 2 for v, f in zip(values, fitted))
    return math.sqrt(sse / (n - 2))


def _growth(current: float, previous: float) -> float | None:
    if previous <= 0:
        return None
    return (current - previous) / previous


class RevenueForecaster:
    """
    Revenue forecasting over a prepared ``MonthlyHistory``.

    Contract:
        ``history.as_of`` is "today"; forecast period 1 is the month that
        contains it.
    Guarantees:
        - ``forecast(history, m)`` returns exactly ``m`` periods.
        - Forecasts of an identical history are identical.
    Non-goals:
        - Weekday patterns; the history is monthly.
    """

    def __init__(self, config: ForecastConfig | None = None):
        self.config = config or ForecastConfig.with_defaults()

    def _money(self, value: float | Decimal) -> Decimal:
        amount = value if isinstance(value, Decimal) else Decimal(repr(float(value)))
        return CurrencyRegistry.quantize(amount, self.config.reporting_currency)

    def _check_horizon(self, months: int, field_name: str = "months") -> None:
        if not isinstance(months, int) or isinstance(months, bool):
            raise ValidationError("must be an integer", field=field_name)
        if not 1 <= months <= self.config.max_forecast_months:
            raise ValidationError(
                f"must be between 1 and {self.config.max_forecast_months}, got {months}",
                field=field_name,
            )

    # -- Seasonality ----------------------------------------------------------

    def _seasonal_indices(self, history: MonthlyHistory) -> tuple[dict[int, float], int]:
        """Per calendar month average of value / block mean over full 12-month blocks."""
        points = history.months
        blocks = len(points) // 12
        per_month: dict[int, list[float]] = defaultdict(list)
        for b in range(blocks):
            end = len(points) - 12 * b
            block = points[end - 12:end]
            block_mean = statistics.fmean(float(p.revenue) for p in block)
            if block_mean <= 0:
                continue
            for p in block:
                per_month[p.month].append(float(p.revenue) / block_mean)
        indices = {
            m: statistics.fmean(per_month[m]) if per_month[m] else 1.0
            for m in range(1, 13)
        }
        return indices, blocks

    @traced_engine(
        "revenue_forecaster.seasonality", "1.0",
        fingerprint_fields=("history",),
    )
    def seasonality(self, history: MonthlyHistory) -> SeasonalityAnalysis:
        indices, blocks = self._seasonal_indices(history)
        if blocks == 0:
            return SeasonalityAnalysis(
                indices={m: 1.0 for m in range(1, 13)},
                confidence=SeasonalityConfidence.NONE,
                blocks=0,
                peak_months=(),
                low_months=(),
            )
        ranked = sorted(indices.items(), key=lambda kv: (-kv[1], kv[0]))
        return SeasonalityAnalysis(
            indices=indices,
            confidence=SeasonalityConfidence.HIGH if blocks >= 2 else SeasonalityConfidence.LOW,
            blocks=blocks,
            peak_months=tuple(m for m, _ in ranked[:3]),
            low_months=tuple(m for m, _ in sorted(indices.items(), key=lambda kv: (kv[1], kv[0]))[:3]),
        )

    # -- Growth ---------------------------------------------------------------

    @traced_engine(
        "revenue_forecaster.growth", "1.0",
        fingerprint_fields=("history",),
    )
    def growth_metrics(self, history: MonthlyHistory) -> GrowthMetrics:
        cfg = self.config
        values = [float(p.revenue) for p in history.months]
        n = len(values)

        pop = _growth(values[-1], values[-2]) if n >= 2 else None
        rolling = (
            self._money(sum((p.revenue for p in history.months[-cfg.rolling_window:]), Decimal("0"))
                        / cfg.rolling_window)
            if n >= cfg.rolling_window else None
        )
        yoy = _growth(values[-1], values[-13]) if n >= 13 else None
        ttm = _growth(sum(values[-12:]), sum(values[-24:-12])) if n >= 24 else None

        mom = [g for g in (_growth(values[i], values[i - 1]) for i in range(1, n)) if g is not None]
        mean_mom = statistics.fmean(mom) if mom else None

        cagr = None
        if n >= 2 and values[0] > 0 and values[-1] >= 0:
            years = (n - 1) / 12
            cagr = (values[-1] / values[0]) ** (1 / years) - 1

        trend = _fit_line(values)[0] if n >= 2 else None

        return GrowthMetrics(
            months_of_history=n,
            period_over_period_growth=pop,
            rolling_average=rolling,
            rolling_window=cfg.rolling_window,
            year_over_year_growth=yoy,
            trailing_twelve_growth=ttm,
            mean_month_over_month_growth=mean_mom,
            cagr=cagr,
            trend_coefficient=trend,
        )

    # -- Forecast -------------------------------------------------------------

    def _trend_label(self, slope: float, level: float) -> TrendLabel:
        if level <= 0:
            return TrendLabel.STABLE
        relative = slope / level
        if relative > self.config.trend_threshold:
            return TrendLabel.GROWING
        if relative < -self.config.trend_threshold:
            return TrendLabel.DECLINING
        return TrendLabel.STABLE

    @traced_engine(
        "revenue_forecaster.forecast", "1.0",
        fingerprint_fields=("history", "months"),
    )
    def forecast(self, history: MonthlyHistory, months: int) -> list[ForecastPeriod]:
        """Forecast ``months`` periods starting at the month containing ``as_of``."""
        cfg = self.config
        self._check_horizon(months)

        values = [float(p.revenue) for p in history.months]
        n = len(values)
        current = month_of(history.as_of)
        indices = {m: 1.0 for m in range(1, 13)}

        if n >= cfg.seasonal_min_months:
            basis = ForecastBasis.TREND_SEASONAL
            indices, _ = self._seasonal_indices(history)
            deseasonalized = [
                v / indices[p.month] if indices[p.month] > 0 else v
                for v, p in zip(values, history.months)
            ]
            slope, intercept = _fit_line(deseasonalized)
            fitted = [
                (intercept + slope * t) * indices[p.month]
                for t, p in enumerate(history.months)
            ]
            sigma = _residual_sigma(values, fitted)
            level = statistics.fmean(deseasonalized)
            band_multiplier = 1.0
            penalty = 0.0
            flat = False
        elif n >= cfg.min_trend_months:
            basis = ForecastBasis.LINEAR_FALLBACK
            slope, intercept = _fit_line(values)
            sigma = _residual_sigma(values, [intercept + slope * t for t in range(n)])
            level = statistics.fmean(values)
            short = n < cfg.short_history_months
            band_multiplier = cfg.short_history_band_multiplier if short else 1.0
            penalty = (
                cfg.short_history_confidence_penalty if short else cfg.linear_confidence_penalty
            )
            flat = False
        else:
            basis = ForecastBasis.LINEAR_FALLBACK
            slope, intercept = 0.0, (values[-1] if values else 0.0)
            sigma = 0.0
            level = intercept
            band_multiplier = 1.0
            penalty = 0.0
            flat = True

        trend = self._trend_label(slope, level)
        periods: list[ForecastPeriod] = []
        previous_half = 0.0

        for h in range(1, months + 1):
            ym = add_months(current, h - 1)
            t = n - 1 + h
            if flat:
                predicted = max(intercept, 0.0)
                half = predicted * cfg.flat_band
                confidence = cfg.flat_confidence
            else:
                predicted = max((intercept + slope * t) * indices[ym[1]], 0.0)
                half = (
                    predicted * (cfg.band_base + cfg.band_step * h)
                    + cfg.interval_z * sigma * math.sqrt(h)
                ) * band_multiplier
                confidence = max(
                    cfg.confidence_floor, cfg.confidence_start - cfg.confidence_step * h,
                ) - penalty
            half = max(half, previous_half)
            previous_half = half

            last_year = add_months(ym, -12)
            base = float(history.actual(last_year))
            change = (
                round((predicted - base) / base * 100, 1)
                if base > 0 and month_index(last_year) < month_index(current)
                else None
            )

            periods.append(ForecastPeriod(
                label=month_label(ym),
                year=ym[0],
                month=ym[1],
                predicted_revenue=self._money(predicted),
                lower_bound=self._money(max(predicted - half, 0.0)),
                upper_bound=self._money(predicted + half),
                confidence=round(max(confidence, 0.0), 4),
                basis=basis,
                trend=trend,
                change_percent=change,
            ))

        logger.info(
            "revenue_forecast_computed",
            extra={
                "history_months": n,
                "periods": months,
                "basis": basis.value,
                "trend": trend.value,
            },
        )
        return periods

    # -- Turnover -------------------------------------------------------------

    @traced_engine(
        "revenue_forecaster.turnover", "1.0",
        fingerprint_fields=("history", "year"),
    )
    def annual_turnover(self, history: MonthlyHistory, year: int) -> TurnoverPrediction:
        """
        Actual revenue of completed months plus projection for the rest.

        The current month counts the larger of its actual revenue so far
        and its projection.
        """
        cfg = self.config
        current = month_of(history.as_of)
        months_needed = month_index((year, 12)) - month_index(current) + 1
        if months_needed > cfg.max_forecast_months:
            raise ValidationError(
                f"{year} is more than {cfg.max_forecast_months} months ahead", field="year",
            )

        projected: dict[YearMonth, Decimal] = {}
        if months_needed > 0:
            projected = {
                (p.year, p.month): p.predicted_revenue
                for p in self.forecast(history, months_needed)
            }

        monthly: list[MonthlyTurnover] = []
        cumulative = Decimal("0")
        current_turnover = Decimal("0")
        for month in range(1, 13):
            ym = (year, month)
            actual = history.actual(ym)
            if month_index(ym) < month_index(current):
                amount, is_actual = actual, True
            elif ym == current:
                amount, is_actual = max(actual, projected.get(ym, Decimal("0"))), False
            else:
                amount, is_actual = projected.get(ym, Decimal("0")), False
            if month_index(ym) <= month_index(current):
                current_turnover += actual
            cumulative += amount
            monthly.append(MonthlyTurnover(month, amount, cumulative, is_actual))

        exceed_month = next(
            (m.month for m in monthly if m.cumulative > cfg.turnover_limit), None,
        )
        return TurnoverPrediction(
            year=year,
            current_turnover=current_turnover,
            predicted_year_end=cumulative,
            monthly=tuple(monthly),
            limit=cfg.turnover_limit,
            will_exceed_limit=cumulative > cfg.turnover_limit,
            exceed_month=exceed_month,
        )

    # -- Cash flow ------------------------------------------------------------

    @traced_engine(
        "revenue_forecaster.cash_flow", "1.0",
        fingerprint_fields=("history", "months", "current_balance", "expected_payments", "outflows"),
    )
    def cash_flow(
        self,
        history: MonthlyHistory,
        months: int,
        current_balance: Decimal,
        expected_payments: Sequence[ExpectedPayment],
        outflows: Sequence[RecurringOutflow] = (),
    ) -> list[CashFlowPeriod]:
        """
        Opening balance + collections + new business - outflows, per month.

        Collections are full outstanding balances bucketed by expected
        payment date; dates before the current month land in it.  Payments
        expected after the horizon or in another currency are left out.
        """
        forecast = self.forecast(history, months)
        current = month_of(history.as_of)

        buckets: dict[YearMonth, list[ExpectedPayment]] = defaultdict(list)
        for payment in expected_payments:
            if payment.currency != self.config.reporting_currency:
                continue
            ym = month_of(payment.expected_payment_date)
            if month_index(ym) < month_index(current):
                ym = current
            buckets[ym].append(payment)

        balance = current_balance
        periods: list[CashFlowPeriod] = []
        for period in forecast:
            ym = (period.year, period.month)
            payments = tuple(sorted(
                buckets.get(ym, ()),
                key=lambda p: (p.expected_payment_date, p.invoice_number),
            ))
            collections = sum((p.amount for p in payments), Decimal("0"))
            outgoing = sum((o.amount for o in outflows if o.occurs_in(ym)), Decimal("0"))
            net = collections + period.predicted_revenue - outgoing
            closing = balance + net
            periods.append(CashFlowPeriod(
                label=period.label,
                year=period.year,
                month=period.month,
                opening_balance=balance,
                expected_collections=collections,
                new_business=period.predicted_revenue,
                outflows=outgoing,
                net_cash_flow=net,
                closing_balance=closing,
                expected_payments=payments,
            ))
            balance = closing

        logger.info(
            "cash_flow_forecast_computed",
            extra={
                "periods": months,
                "expected_payments": len(expected_payments),
                "outflows": len(outflows),
            },
        )
        return periods

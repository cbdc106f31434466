"""
Module: fintel_engines.payment_predictor
Responsibility:
    Derive per-customer payment-behaviour statistics from invoice history
    and predict, for a single invoice, the probability of on-time payment
    and the expected payment date.  Also scores customers for the risky
    customer report.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fintel_kernel.domain, fintel_config and the tracer.

Invariants enforced:
    - Purity: no clock access (``as_of`` is a parameter), no I/O.
    - Explainability: every prediction lists its contributing factors with
      the signed log-odds weight each one added.
    - Monotonicity: the overdue-invoice factor weight is
      ``-overdue_weight * log1p(count)``, so more overdue invoices never
      raise the probability.
    - Thin history is data, not an error: fewer than
      ``min_resolved_invoices`` resolved invoices yields confidence LOW and
      population statistics in place of the customer's own.

Failure modes:
    - None for legitimate inputs; an empty history is a valid input.

Usage:
    predictor = PaymentPredictor(PredictorConfig.with_defaults())
    population = predictor.population_stats(all_invoices)
    stats = predictor.customer_stats(customer_id, invoices, population, as_of)
    prediction = predictor.predict(invoice, stats, other_overdue_count=0)
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from fintel_config.schema import PredictorConfig
from fintel_kernel.domain.dtos import ISSUED_INVOICE_STATUSES, Customer, Invoice
from fintel_kernel.logging_config import get_logger
from fintel_engines.tracer import traced_engine

logger = get_logger("engines.payment_predictor")

_PROBABILITY_CLAMP = 0.02
_NEUTRAL_WEIGHT = 0.01
_TREND_CLAMP_DAYS = 30.0


class StatsConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PaymentTrend(str, Enum):
    """Direction of days-to-pay between the earliest and most recent third of history."""

    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"
    UNKNOWN = "unknown"


class FactorType(str, Enum):
    PAYMENT_HISTORY = "payment_history"
    AVERAGE_DELAY = "average_delay"
    OVERDUE_INVOICES = "overdue_invoices"
    INVOICE_AMOUNT = "invoice_amount"
    ISSUE_DAY = "issue_day"
    RECENT_BEHAVIOR = "recent_behavior"
    OUTSTANDING_AMOUNT = "outstanding_amount"
    CUSTOMER_AGE = "customer_age"


class FactorImpact(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Recommendation(str, Enum):
    STANDARD = "standard"
    EXTEND_DUE = "extend_due"
    MONITOR = "monitor"
    SHORTEN_DUE = "shorten_due"
    REQUIRE_ADVANCE = "require_advance"


@dataclass(frozen=True)
class PopulationStats:
    """Tenant-wide payment behaviour, the fallback for customers without history."""

    resolved_count: int
    mean_days_to_pay: float
    stddev_days_to_pay: float
    on_time_ratio: float

    @classmethod
    def empty(cls) -> PopulationStats:
        return cls(
            resolved_count=0,
            mean_days_to_pay=0.0,
            stddev_days_to_pay=0.0,
            on_time_ratio=0.5,
        )


@dataclass(frozen=True)
class CustomerPaymentStats:
    """Aggregated payment behaviour of one customer."""

    customer_id: UUID
    invoice_count: int
    resolved_count: int
    mean_days_to_pay: float
    stddev_days_to_pay: float
    on_time_ratio: float
    prior_on_time_ratio: float
    trend: PaymentTrend
    trend_delta_days: float | None
    confidence: StatsConfidence
    used_population_fallback: bool
    paid_on_time: int
    paid_late: int
    open_count: int
    overdue_count: int
    total_invoiced: Decimal
    outstanding_amount: Decimal
    overdue_amount: Decimal
    average_invoice_amount: Decimal | None
    longest_delay_days: int
    days_since_last_payment: int | None


@dataclass(frozen=True)
class PredictionFactor:
    type: FactorType
    weight: float
    impact: FactorImpact
    description: str


@dataclass(frozen=True)
class PredictionResult:
    customer_id: UUID
    invoice_id: UUID | None
    probability_on_time: float
    expected_payment_date: date | None
    predicted_offset_days: int
    confidence: StatsConfidence
    contributing_factors: tuple[PredictionFactor, ...]
    risk_score: int
    recommendation: Recommendation
    stats: CustomerPaymentStats


@dataclass(frozen=True)
class CustomerRisk:
    customer_id: UUID
    display_name: str
    probability_on_time: float
    overdue_ratio: float
    outstanding_amount: Decimal
    overdue_amount: Decimal
    risk_score: int
    is_risky: bool
    reasons: tuple[str, ...]


def _days_to_pay(invoice: Invoice) -> int | None:
    settled = invoice.settled_on()
    if settled is None:
        return None
    return (settled - invoice.due_date).days


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def _logit(p: float) -> float:
    p = min(max(p, _PROBABILITY_CLAMP), 1.0 - _PROBABILITY_CLAMP)
    return math.log(p / (1.0 - p))


def _impact(weight: float) -> FactorImpact:
    if weight > _NEUTRAL_WEIGHT:
        return FactorImpact.POSITIVE
    if weight < -_NEUTRAL_WEIGHT:
        return FactorImpact.NEGATIVE
    return FactorImpact.NEUTRAL


class PaymentPredictor:
    """
    Pure payment-behaviour statistics and prediction.

    Contract:
        All ledger data and the ``as_of`` date are passed in.
    Guarantees:
        - ``predict`` always returns a probability in [0, 1].
        - ``predicted_offset_days`` lies within the configured clamp.
    """

    def __init__(self, config: PredictorConfig | None = None):
        self.config = config or PredictorConfig.with_defaults()

    # -- Statistics ---------------------------------------------------------

    def population_stats(self, invoices: Sequence[Invoice]) -> PopulationStats:
        """Payment behaviour over every resolved invoice of the tenant."""
        days = [d for d in (_days_to_pay(inv) for inv in invoices) if d is not None]
        if not days:
            return PopulationStats.empty()
        return PopulationStats(
            resolved_count=len(days),
            mean_days_to_pay=statistics.fmean(days),
            stddev_days_to_pay=statistics.pstdev(days),
            on_time_ratio=sum(1 for d in days if d <= 0) / len(days),
        )

    @traced_engine(
        "payment_predictor.stats", "1.0",
        fingerprint_fields=("customer_id", "invoices", "as_of"),
    )
    def customer_stats(
        self,
        customer_id: UUID,
        invoices: Sequence[Invoice],
        population: PopulationStats,
        as_of: date,
    ) -> CustomerPaymentStats:
        """
        Aggregate the customer's issued invoices.

        Draft and cancelled invoices are ignored.  Days-to-pay is the date of
        the settling payment minus the due date (negative = early).
        """
        cfg = self.config
        issued = [inv for inv in invoices if inv.status in ISSUED_INVOICE_STATUSES]

        resolved = sorted(
            ((inv, d) for inv in issued if (d := _days_to_pay(inv)) is not None),
            key=lambda pair: (pair[0].due_date, pair[0].number),
        )
        days = [d for _, d in resolved]
        paid_on_time = sum(1 for d in days if d <= 0)
        paid_late = len(days) - paid_on_time

        open_invoices = [inv for inv in issued if inv.is_open]
        overdue = [inv for inv in open_invoices if inv.is_overdue(as_of)]
        total_invoiced = sum((inv.total_amount for inv in issued), Decimal("0"))
        outstanding = sum((inv.outstanding_amount for inv in open_invoices), Decimal("0"))
        overdue_amount = sum((inv.outstanding_amount for inv in overdue), Decimal("0"))

        payment_dates = [
            p.paid_on for inv in issued for p in inv.payments if p.amount > 0
        ]
        days_since_last_payment = (
            (as_of - max(payment_dates)).days if payment_dates else None
        )

        trend, trend_delta = self._trend(days)

        if len(days) < cfg.min_resolved_invoices:
            confidence = StatsConfidence.LOW
            fallback = True
            mean_days = population.mean_days_to_pay
            stddev_days = population.stddev_days_to_pay
            on_time_ratio = population.on_time_ratio
        else:
            confidence = (
                StatsConfidence.HIGH
                if len(days) >= cfg.high_confidence_invoices
                else StatsConfidence.MEDIUM
            )
            fallback = False
            mean_days = statistics.fmean(days)
            stddev_days = statistics.pstdev(days)
            on_time_ratio = paid_on_time / len(days)

        stats = CustomerPaymentStats(
            customer_id=customer_id,
            invoice_count=len(issued),
            resolved_count=len(days),
            mean_days_to_pay=mean_days,
            stddev_days_to_pay=stddev_days,
            on_time_ratio=on_time_ratio,
            prior_on_time_ratio=population.on_time_ratio,
            trend=trend,
            trend_delta_days=trend_delta,
            confidence=confidence,
            used_population_fallback=fallback,
            paid_on_time=paid_on_time,
            paid_late=paid_late,
            open_count=len(open_invoices),
            overdue_count=len(overdue),
            total_invoiced=total_invoiced,
            outstanding_amount=outstanding,
            overdue_amount=overdue_amount,
            average_invoice_amount=(
                total_invoiced / len(issued) if issued else None
            ),
            longest_delay_days=max((d for d in days if d > 0), default=0),
            days_since_last_payment=days_since_last_payment,
        )

        logger.debug(
            "customer_stats_computed",
            extra={
                "customer_id": str(customer_id),
                "resolved_count": stats.resolved_count,
                "confidence": stats.confidence.value,
                "used_population_fallback": fallback,
            },
        )
        return stats

    def _trend(self, days: Sequence[int]) -> tuple[PaymentTrend, float | None]:
        if len(days) < 3:
            return PaymentTrend.UNKNOWN, None
        third = len(days) // 3
        delta = statistics.fmean(days[-third:]) - statistics.fmean(days[:third])
        if abs(delta) <= self.config.trend_stable_days:
            return PaymentTrend.STABLE, delta
        if delta > 0:
            return PaymentTrend.WORSENING, delta
        return PaymentTrend.IMPROVING, delta

    # -- Prediction ---------------------------------------------------------

    def _factors(
        self,
        stats: CustomerPaymentStats,
        other_overdue_count: int,
        amount_ratio: float | None,
        issue_day: int | None,
    ) -> list[PredictionFactor]:
        cfg = self.config
        factors: list[PredictionFactor] = []

        # On-time ratio shrunk toward the tenant rate by k pseudo-invoices
        k = cfg.history_prior_strength
        if stats.resolved_count + k > 0:
            smoothed = (stats.paid_on_time + k * stats.prior_on_time_ratio) / (
                stats.resolved_count + k
            )
        else:
            smoothed = stats.prior_on_time_ratio
        history_weight = _logit(smoothed)
        if stats.resolved_count == 0:
            history_desc = (
                f"No payment history; tenant on-time rate {stats.prior_on_time_ratio:.0%}"
            )
        else:
            history_desc = (
                f"{stats.paid_on_time} of {stats.resolved_count} invoices paid on time"
            )
        factors.append(PredictionFactor(
            FactorType.PAYMENT_HISTORY, history_weight, _impact(history_weight), history_desc,
        ))

        capped_delay = max(-cfg.delay_cap_days, min(cfg.delay_cap_days, stats.mean_days_to_pay))
        delay_weight = -cfg.delay_weight_per_day * capped_delay
        factors.append(PredictionFactor(
            FactorType.AVERAGE_DELAY, delay_weight, _impact(delay_weight),
            f"Pays on average {stats.mean_days_to_pay:+.1f} days relative to due date"
            + (" (tenant average)" if stats.used_population_fallback else ""),
        ))

        overdue_weight = -cfg.overdue_weight * math.log1p(max(other_overdue_count, 0))
        factors.append(PredictionFactor(
            FactorType.OVERDUE_INVOICES, overdue_weight, _impact(overdue_weight),
            f"{other_overdue_count} other overdue invoice(s)",
        ))

        if amount_ratio is not None and amount_ratio > 0:
            raw = -cfg.amount_weight * math.log(amount_ratio)
            amount_weight = max(-2 * cfg.amount_weight, min(0.5 * cfg.amount_weight, raw))
            amount_desc = f"Amount is {amount_ratio:.1f}x the customer's average invoice"
        else:
            amount_weight = 0.0
            amount_desc = "No average invoice to compare against"
        factors.append(PredictionFactor(
            FactorType.INVOICE_AMOUNT, amount_weight, _impact(amount_weight), amount_desc,
        ))

        if issue_day is not None:
            late = issue_day >= cfg.late_issue_day
            issue_weight = -cfg.late_issue_weight if late else 0.0
            factors.append(PredictionFactor(
                FactorType.ISSUE_DAY, issue_weight, _impact(issue_weight),
                f"Issued on day {issue_day} of the month"
                + (" (end-of-month issue)" if late else ""),
            ))

        if stats.outstanding_amount <= 0:
            outstanding_weight = cfg.outstanding_clear_weight
            outstanding_desc = "No outstanding balance"
        else:
            share = float(stats.outstanding_amount / max(stats.total_invoiced, Decimal("1")))
            if share <= cfg.outstanding_low_ratio:
                outstanding_weight = 0.0
            else:
                outstanding_weight = -cfg.outstanding_weight * min(share, 1.0)
            outstanding_desc = f"{share:.0%} of everything invoiced is outstanding"
        factors.append(PredictionFactor(
            FactorType.OUTSTANDING_AMOUNT, outstanding_weight, _impact(outstanding_weight),
            outstanding_desc,
        ))

        if stats.invoice_count >= cfg.established_invoices:
            age_weight = cfg.established_weight
            age_desc = f"Established customer with {stats.invoice_count} invoices"
        elif stats.invoice_count == 0:
            age_weight = 0.0
            age_desc = "New customer"
        else:
            age_weight = 0.0
            age_desc = f"Customer with {stats.invoice_count} invoice(s)"
        factors.append(PredictionFactor(
            FactorType.CUSTOMER_AGE, age_weight, _impact(age_weight), age_desc,
        ))

        if stats.trend_delta_days is not None:
            capped =max(-_TREND_CLAMP_DAYS, min(_TREND_CLAMP_DAYS, stats.trend_delta_days))
            trend_weight = -cfg.trend_weight_per_day * capped
            trend_desc = (
                f"Recent payments {stats.trend.value} "
                f"({stats.trend_delta_days:+.1f} days vs earliest invoices)"
            )
        else:
            trend_weight = 0.0
            trend_desc = "Not enough history for a trend"
        factors.append(PredictionFactor(
            FactorType.RECENT_BEHAVIOR, trend_weight, _impact(trend_weight), trend_desc,
        ))

        factors.sort(key=lambda f: (-abs(f.weight), f.type.value))
        return factors

    def _recommend(
        self,
        risk_score: int,
        stats: CustomerPaymentStats,
        amount: Decimal,
        other_overdue_count: int,
    ) -> Recommendation:
        cfg = self.config
        if risk_score >= cfg.risk_high:
            if other_overdue_count > 0 or amount > cfg.large_invoice_amount:
                return Recommendation.REQUIRE_ADVANCE
            return Recommendation.SHORTEN_DUE
        if risk_score >= cfg.risk_medium:
            if stats.outstanding_amount > 0:
                return Recommendation.MONITOR
            return Recommendation.SHORTEN_DUE
        if risk_score < cfg.risk_low and stats.resolved_count >= 5 and stats.paid_late == 0:
            return Recommendation.EXTEND_DUE
        return Recommendation.STANDARD

    def expected_offset_days(self, stats: CustomerPaymentStats) -> int:
        """Mean days-to-pay, rounded and clamped to the configured range."""
        cfg = self.config
        return max(cfg.offset_min_days, min(cfg.offset_max_days, round(stats.mean_days_to_pay)))

    @traced_engine(
        "payment_predictor.predict", "1.0",
        fingerprint_fields=("invoice", "stats", "other_overdue_count"),
    )
    def predict(
        self,
        invoice: Invoice,
        stats: CustomerPaymentStats,
        other_overdue_count: int,
    ) -> PredictionResult:
        """
        Predict on-time probability and expected payment date for ``invoice``.

        Args:
            invoice: The invoice to predict.
            stats: Statistics of the invoice's customer.
            other_overdue_count: Overdue invoices of the customer, excluding
                ``invoice`` itself.
        """
        amount_ratio = None
        if stats.average_invoice_amount is not None and stats.average_invoice_amount > 0:
            amount_ratio = float(invoice.total_amount / stats.average_invoice_amount)

        factors = self._factors(
            stats, other_overdue_count, amount_ratio, invoice.issue_date.day,
        )
        probability = _sigmoid(sum(f.weight for f in factors))
        offset = self.expected_offset_days(stats)
        risk_score = round(100 * (1 - probability))

        prediction = PredictionResult(
            customer_id=invoice.customer_id,
            invoice_id=invoice.invoice_id,
            probability_on_time=probability,
            expected_payment_date=invoice.due_date + timedelta(days=offset),
            predicted_offset_days=offset,
            confidence=stats.confidence,
            contributing_factors=tuple(factors),
            risk_score=risk_score,
            recommendation=self._recommend(
                risk_score, stats, invoice.total_amount, other_overdue_count,
            ),
            stats=stats,
        )

        logger.info(
            "payment_predicted",
            extra={
                "invoice_id": str(invoice.invoice_id),
                "customer_id": str(invoice.customer_id),
                "probability_on_time": round(probability, 4),
                "offset_days": offset,
                "confidence": stats.confidence.value,
            },
        )
        return prediction

    # -- Risk ---------------------------------------------------------------

    def assess_customer(self, customer: Customer, stats: CustomerPaymentStats) -> CustomerRisk:
        """
        Customer-level risk: on-time probability of a typical invoice and
        the share of the outstanding balance that is overdue.
        """
        cfg = self.config
        other_overdue = stats.overdue_count
        factors = self._factors(stats, other_overdue, amount_ratio=1.0, issue_day=None)
        probability = _sigmoid(sum(f.weight for f in factors))

        if stats.outstanding_amount > 0:
            overdue_ratio = float(stats.overdue_amount / stats.outstanding_amount)
        else:
            overdue_ratio = 0.0

        reasons: list[str] = []
        if probability < cfg.risk_probability_threshold:
            reasons.append(
                f"On-time probability {probability:.0%} below "
                f"{cfg.risk_probability_threshold:.0%}"
            )
        if overdue_ratio > cfg.overdue_ratio_threshold:
            reasons.append(
                f"{overdue_ratio:.0%} of outstanding balance is overdue"
            )

        return CustomerRisk(
            customer_id=customer.customer_id,
            display_name=customer.display_name,
            probability_on_time=probability,
            overdue_ratio=overdue_ratio,
            outstanding_amount=stats.outstanding_amount,
            overdue_amount=stats.overdue_amount,
            risk_score=round(100 * max(1 - probability, overdue_ratio)),
            is_risky=bool(reasons),
            reasons=tuple(reasons),
        )

    @staticmethod
    def rank_risky(assessments: Sequence[CustomerRisk]) -> list[CustomerRisk]:
        """Risky customers, highest risk first (ties by name)."""
        return sorted(
            (a for a in assessments if a.is_risky),
            key=lambda a: (-a.risk_score, a.display_name, str(a.customer_id)),
        )

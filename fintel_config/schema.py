"""
fintel_config.schema
====================

Responsibility:
    Configuration schema for the intelligence engines.  Every tunable
    threshold -- amount tolerance, name-similarity cut-offs, factor weights,
    forecast band widths, the turnover limit -- lives here with a default,
    instead of as a constant buried in an engine.

Architecture:
    Config layer.  Consumed by ``fintel_engines`` (engines receive their
    config section in the constructor) and ``fintel_services``.  Imports
    only the kernel logger.

Invariants enforced:
    - Probabilities, similarities and confidences lie in [0, 1].
    - Monetary thresholds are ``Decimal`` -- never ``float``.
    - Day and month counts are positive and ordered where they bound a range.

Failure modes:
    - Invalid configuration values -> ``ValueError`` from ``__post_init__``.
    - Unknown keys in ``from_dict`` -> ``ValueError``.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Self

from fintel_kernel.logging_config import get_logger

logger = get_logger("config.schema")


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")


def _coerce(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Reject unknown keys and turn YAML numbers into Decimal where declared."""
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    coerced: dict[str, Any] = {}
    for key, value in data.items():
        if known[key].type is Decimal and value is not None:
            value = Decimal(str(value))
        coerced[key] = value
    return coerced


@dataclass
class PredictorConfig:
    """
    PaymentPredictor settings.

    Factor weights are on the log-odds scale: a weight of -0.8 per overdue
    invoice multiplies the odds of on-time payment by about 0.45.
    """

    min_resolved_invoices: int = 3
    high_confidence_invoices: int = 10

    # Expected-date offset clamp, in days relative to the due date
    offset_min_days: int = -30
    offset_max_days: int = 180

    # Trend: recent third vs earliest third, mean days-to-pay difference
    trend_stable_days: float = 2.0

    # Log-odds factor weights
    history_prior_strength: float = 2.0
    delay_weight_per_day: float = 0.03
    delay_cap_days: int = 60
    overdue_weight: float = 0.8
    amount_weight: float = 0.35
    late_issue_day: int = 25
    late_issue_weight: float = 0.2
    trend_weight_per_day: float = 0.02
    # Outstanding balance as a share of everything invoiced
    outstanding_low_ratio: float = 0.10
    outstanding_clear_weight: float = 0.2
    outstanding_weight: float = 0.5
    # Customer age, in invoices
    established_invoices: int = 10
    established_weight: float = 0.3

    # Risk classification
    risk_low: int = 25
    risk_medium: int = 50
    risk_high: int = 75
    risk_probability_threshold: float = 0.6
    overdue_ratio_threshold: float = 0.5
    large_invoice_amount: Decimal = Decimal("50000")
    default_payment_terms_days: int = 14

    def __post_init__(self):
        if self.min_resolved_invoices < 1:
            raise ValueError("min_resolved_invoices must be at least 1")
        if self.high_confidence_invoices < self.min_resolved_invoices:
            raise ValueError("high_confidence_invoices cannot be below min_resolved_invoices")
        if self.offset_min_days > self.offset_max_days:
            raise ValueError("offset_min_days cannot exceed offset_max_days")
        if not 0 <= self.risk_low <= self.risk_medium <= self.risk_high <= 100:
            raise ValueError("risk thresholds must satisfy 0 <= low <= medium <= high <= 100")
        if self.overdue_weight < 0:
            raise ValueError("overdue_weight cannot be negative")
        if self.history_prior_strength < 0:
            raise ValueError("history_prior_strength cannot be negative")
        if not 1 <= self.late_issue_day <= 31:
            raise ValueError("late_issue_day must be a day of month")
        _check_unit_interval("outstanding_low_ratio", self.outstanding_low_ratio)
        if self.outstanding_weight < 0:
            raise ValueError("outstanding_weight cannot be negative")
        if self.established_invoices < 1:
            raise ValueError("established_invoices must be at least 1")
        _check_unit_interval("risk_probability_threshold", self.risk_probability_threshold)
        _check_unit_interval("overdue_ratio_threshold", self.overdue_ratio_threshold)
        if self.large_invoice_amount < 0:
            raise ValueError("large_invoice_amount cannot be negative")
        if self.default_payment_terms_days < 0:
            raise ValueError("default_payment_terms_days cannot be negative")

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        return cls(**_coerce(cls, data))


@dataclass
class ForecastConfig:
    """RevenueForecaster settings."""

    reporting_currency: str = "CZK"
    max_history_months: int = 36

    # History length thresholds
    seasonal_min_months: int = 24
    short_history_months: int = 12
    min_trend_months: int = 3

    # Confidence band: predicted * (band_base + band_step * h) + z * sigma * sqrt(h)
    band_base: float = 0.05
    band_step: float = 0.02
    interval_z: float = 1.96
    short_history_band_multiplier: float = 2.0
    flat_band: float = 0.5

    # Per-period confidence: max(floor, start - step * h) minus a basis penalty
    confidence_start: float = 0.95
    confidence_step: float = 0.07
    confidence_floor: float = 0.5
    linear_confidence_penalty: float = 0.1
    short_history_confidence_penalty: float = 0.35
    flat_confidence: float = 0.1

    trend_threshold: float = 0.02
    rolling_window: int = 3
    max_forecast_months: int = 36
    turnover_limit: Decimal = Decimal("2000000")

    cache_ttl_seconds: int = 300
    cache_max_entries: int = 256

    def __post_init__(self):
        if self.max_history_months < self.seasonal_min_months:
            raise ValueError("max_history_months must cover seasonal_min_months")
        if not 0 < self.min_trend_months <= self.short_history_months <= self.seasonal_min_months:
            raise ValueError(
                "history thresholds must satisfy 0 < min_trend_months <= "
                "short_history_months <= seasonal_min_months"
            )
        if self.seasonal_min_months < 12:
            raise ValueError("seasonal_min_months must be at least 12")
        if self.band_base < 0 or self.band_step < 0 or self.interval_z < 0:
            raise ValueError("band parameters cannot be negative")
        if self.short_history_band_multiplier < 1:
            raise ValueError("short_history_band_multiplier must be at least 1")
        for name in (
            "confidence_start", "confidence_floor", "flat_confidence",
            "linear_confidence_penalty", "short_history_confidence_penalty",
        ):
            _check_unit_interval(name, getattr(self, name))
        if self.rolling_window < 1:
            raise ValueError("rolling_window must be at least 1")
        if self.max_forecast_months < 12:
            raise ValueError("max_forecast_months must be at least 12")
        if self.turnover_limit < 0:
            raise ValueError("turnover_limit cannot be negative")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds cannot be negative")
        if self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be at least 1")

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        return cls(**_coerce(cls, data))


@dataclass
class MatcherConfig:
    """CustomerMatcher settings."""

    email_confidence: float = 0.9
    phone_confidence: float = 0.8
    name_confidence_scale: float = 0.7
    name_min_similarity: float = 0.7
    unlabeled_name_factor: float = 0.8

    default_min_confidence: float = 0.5
    email_min_confidence: float = 0.4
    document_min_confidence: float = 0.6

    suggest_min_query_length: int = 2
    suggest_min_similarity: float = 0.5
    default_suggest_limit: int = 5

    def __post_init__(self):
        for f in fields(self):
            if f.type is float:
                _check_unit_interval(f.name, getattr(self, f.name))
        if self.suggest_min_query_length < 1:
            raise ValueError("suggest_min_query_length must be at least 1")
        if self.default_suggest_limit < 1:
            raise ValueError("default_suggest_limit must be at least 1")

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        return cls(**_coerce(cls, data))


@dataclass
class ReconciliationConfig:
    """
    BankReconciliationEngine settings.

    ``amount_tolerance`` bounds both auto-match amount equality and the
    overpayment a manual match accepts.
    """

    amount_tolerance: Decimal = Decimal("0.01")
    counterparty_min_similarity: float = 0.8
    default_lookback_days: int = 30
    max_sync_range_days: int = 366

    def __post_init__(self):
        if self.amount_tolerance < 0:
            raise ValueError("amount_tolerance cannot be negative")
        _check_unit_interval("counterparty_min_similarity", self.counterparty_min_similarity)
        if self.default_lookback_days < 1:
            raise ValueError("default_lookback_days must be at least 1")
        if self.max_sync_range_days < self.default_lookback_days:
            raise ValueError("max_sync_range_days cannot be below default_lookback_days")

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        return cls(**_coerce(cls, data))


@dataclass
class EngineConfig:
    """All engine settings, one section per component."""

    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    def __post_init__(self):
        logger.info(
            "engine_config_initialized",
            extra={
                "amount_tolerance": str(self.reconciliation.amount_tolerance),
                "counterparty_min_similarity": self.reconciliation.counterparty_min_similarity,
                "name_min_similarity": self.matcher.name_min_similarity,
                "reporting_currency": self.forecast.reporting_currency,
                "turnover_limit": str(self.forecast.turnover_limit),
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the documented defaults."""
        logger.info("engine_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary with optional per-component sections."""
        logger.info(
            "engine_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        sections = {
            "predictor": PredictorConfig,
            "forecast": ForecastConfig,
            "matcher": MatcherConfig,
            "reconciliation": ReconciliationConfig,
        }
        unknown = sorted(set(data) - set(sections))
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(unknown)}")
        return cls(**{
            name: section_cls.from_dict(data.get(name) or {})
            for name, section_cls in sections.items()
        })

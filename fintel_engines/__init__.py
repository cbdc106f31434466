"""
Module: fintel_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    intelligence engines.  This is the import surface for fintel_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fintel_kernel (domain, exceptions, logging) and
    fintel_config.  MUST NOT import fintel_services.

Invariants enforced:
    - Purity: engines never read the clock; ``as_of`` dates are passed in.
    - Determinism: identical inputs always produce identical outputs.
    - Money stays Decimal at every engine boundary.

Audit relevance:
    Engine invocations are traced via ``@traced_engine``
    (see ``fintel_engines.tracer``), emitting FINTEL_ENGINE_TRACE records.

Usage:
    from fintel_engines.payment_predictor import PaymentPredictor
    from fintel_engines.revenue_forecaster import RevenueForecaster
    from fintel_engines.customer_matcher import CustomerMatcher
    from fintel_engines.reconciliation import ReconciliationMatcher
"""

from fintel_engines.customer_matcher import (
    CustomerMatch,
    CustomerMatcher,
    CustomerSuggestion,
    ExtractedData,
    MatchMode,
    extract_data_from_text,
    is_valid_ico,
    name_similarity,
)
from fintel_engines.payment_predictor import (
    CustomerPaymentStats,
    CustomerRisk,
    PaymentPredictor,
    PredictionResult,
)
from fintel_engines.reconciliation import (
    AutoMatchDecision,
    ReconciliationMatcher,
    SyncResult,
    match_variable_symbol,
    plan_payment,
)
from fintel_engines.revenue_forecaster import (
    ForecastPeriod,
    MonthlyHistory,
    RecurringOutflow,
    RevenueForecaster,
    build_monthly_history,
)
from fintel_engines.tracer import traced_engine

__all__ = [
    "CustomerMatch",
    "CustomerMatcher",
    "CustomerSuggestion",
    "ExtractedData",
    "MatchMode",
    "extract_data_from_text",
    "is_valid_ico",
    "name_similarity",
    "CustomerPaymentStats",
    "CustomerRisk",
    "PaymentPredictor",
    "PredictionResult",
    "AutoMatchDecision",
    "ReconciliationMatcher",
    "SyncResult",
    "match_variable_symbol",
    "plan_payment",
    "ForecastPeriod",
    "MonthlyHistory",
    "RecurringOutflow",
    "RevenueForecaster",
    "build_monthly_history",
    "traced_engine",
]

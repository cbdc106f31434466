"""
Module: fintel_services
Responsibility:
    Imperative shell of the financial intelligence engine.  Each service
    reads the tenant's ledger through the kernel selectors, hands DTOs to a
    pure engine and, for reconciliation, persists the outcome.

Architecture position:
    Services -- outermost layer.  May import fintel_kernel, fintel_config
    and fintel_engines.  Nothing imports fintel_services.

Usage:
    from fintel_services import IntelligenceOperations
    ops = IntelligenceOperations(session, clock=clock, adapter=adapter)
    ops.execute(scope, "forecast", {"type": "revenue", "months": 3})
"""

from fintel_services.adapters import (
    BankFeedAdapter,
    FetchedTransaction,
    JsonStatementAdapter,
    StaticBankFeedAdapter,
)
from fintel_services.bank_reconciliation_service import BankReconciliationService
from fintel_services.customer_matching_service import CustomerMatchingService
from fintel_services.forecast_service import ForecastCache, ForecastService
from fintel_services.operations import IntelligenceOperations, error_payload
from fintel_services.payment_prediction_service import PaymentPredictionService

__all__ = [
    "BankFeedAdapter",
    "FetchedTransaction",
    "JsonStatementAdapter",
    "StaticBankFeedAdapter",
    "BankReconciliationService",
    "CustomerMatchingService",
    "ForecastCache",
    "ForecastService",
    "IntelligenceOperations",
    "error_payload",
    "PaymentPredictionService",
]

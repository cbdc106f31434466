"""
fintel_services.operations -- Request/response surface of the engine.

Responsibility:
    Explicit request dataclasses (validated ``from_dict``), response
    dataclasses (``to_dict``) and the ``IntelligenceOperations`` facade that
    routes each operation to its service.  An HTTP handler, a CLI or a job
    runner talks to the engine through this module only.

Architecture position:
    Services -- outermost layer of the package.  Imports the services, the
    engine result types and the kernel exceptions.

Invariants enforced:
    - Unknown keys, wrong types and missing required fields are rejected
      with ValidationError naming the field; nothing is coerced silently.
    - Money crosses the boundary as a decimal string, never a float.
    - Every engine error renders through ``error_payload`` as
      ``{"error": {"code", "category", "message", "details"}}``.

Operations:
    forecast              type in revenue|cashflow|seasonality|growth|turnover|all
    match_customer        text, type in generic|email|document
    lookup_customer       identifier XOR query
    predict_payment       invoice_id XOR customer_id XOR list_risky
    sync_bank_account     account_id, date_from?, date_to?
    match_transaction     transaction_id, invoice_id
    unmatch_transaction   transaction_id
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Self
from uuid import UUID

from sqlalchemy.orm import Session

from fintel_config.schema import EngineConfig
from fintel_engines.customer_matcher import CustomerMatch, CustomerSuggestion
from fintel_engines.payment_predictor import (
    CustomerPaymentStats,
    CustomerRisk,
    PredictionResult,
)
from fintel_engines.reconciliation import PaymentApplication, SyncResult
from fintel_engines.revenue_forecaster import (
    CashFlowPeriod,
    ForecastPeriod,
    GrowthMetrics,
    SeasonalityAnalysis,
    TurnoverPrediction,
)
from fintel_kernel.domain.clock import Clock, SystemClock
from fintel_kernel.domain.dtos import Customer, TenantScope
from fintel_kernel.exceptions import FinancialIntelligenceError, ValidationError
from fintel_kernel.logging_config import LogContext, get_logger
from fintel_services.adapters import BankFeedAdapter
from fintel_services.bank_reconciliation_service import BankReconciliationService
from fintel_services.customer_matching_service import CustomerMatchingService
from fintel_services.forecast_service import ForecastCache, ForecastService
from fintel_services.payment_prediction_service import PaymentPredictionService

logger = get_logger("services.operations")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def to_jsonable(value: Any) -> Any:
    """Render engine results as JSON-safe primitives (money as strings)."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(to_jsonable(k)): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return str(value)


def error_payload(exc: FinancialIntelligenceError) -> dict[str, Any]:
    return {
        "error": {
            "code": exc.code,
            "category": exc.category.value,
            "message": str(exc),
            "details": to_jsonable(exc.details()),
        }
    }


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def _check_keys(data: Any, allowed: set[str], required: tuple[str, ...] = ()) -> Mapping:
    if not isinstance(data, Mapping):
        raise ValidationError("request must be an object", field="request")
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValidationError(f"unknown field(s): {', '.join(unknown)}", field=unknown[0])
    for key in required:
        if data.get(key) is None:
            raise ValidationError("is required", field=key)
    return data


def _int(data: Mapping, key: str, default: int | None = None) -> int | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("must be an integer", field=key)
    return value


def _float(data: Mapping, key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("must be a number", field=key)
    return float(value)


def _bool(data: Mapping, key: str, default: bool = False) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError("must be a boolean", field=key)
    return value


def _str(data: Mapping, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("must be a string", field=key)
    return value


def _choice(data: Mapping, key: str, choices: tuple[str, ...], default: str) -> str:
    value = _str(data, key)
    if value is None:
        return default
    if value not in choices:
        raise ValidationError(f"must be one of {', '.join(choices)}", field=key)
    return value


def _uuid(data: Mapping, key: str) -> UUID | None:
    value = data.get(key)
    if value is None or isinstance(value, UUID):
        return value
    if not isinstance(value, str):
        raise ValidationError("must be a UUID string", field=key)
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError("must be a UUID string", field=key) from None


def _date(data: Mapping, key: str) -> date | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, datetime):
        raise ValidationError("must be a date, not a timestamp", field=key)
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError("must be an ISO date string", field=key)
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError("must be an ISO date string", field=key) from None


def _decimal(data: Mapping, key: str, default: Decimal | None = None) -> Decimal | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError("must be a decimal string or integer", field=key)
    if not isinstance(value, (Decimal, int, str)):
        raise ValidationError("must be a decimal string or integer", field=key)
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise ValidationError("must be a decimal string or integer", field=key) from None
    if not amount.is_finite():
        raise ValidationError("must be finite", field=key)
    return amount


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

FORECAST_TYPES = ("revenue", "cashflow", "seasonality", "growth", "turnover", "all")
MATCH_TYPES = ("generic", "email", "document")


@dataclass(frozen=True)
class ForecastRequest:
    type: str = "all"
    months: int = 6
    year: int | None = None
    current_balance: Decimal = Decimal("0")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"type", "months", "year", "current_balance"})
        months = _int(data, "months", 6)
        if months < 1:
            raise ValidationError("must be at least 1", field="months")
        return cls(
            type=_choice(data, "type", FORECAST_TYPES, "all"),
            months=months,
            year=_int(data, "year"),
            current_balance=_decimal(data, "current_balance", Decimal("0")),
        )


@dataclass(frozen=True)
class MatchCustomerRequest:
    text: str
    type: str = "generic"
    sender_email: str | None = None
    min_confidence: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"text", "type", "sender_email", "min_confidence"})
        match_type = _choice(data, "type", MATCH_TYPES, "generic")
        sender_email = _str(data, "sender_email")
        if sender_email is not None and match_type != "email":
            raise ValidationError("only allowed for type email", field="sender_email")
        text = _str(data, "text")
        if not (text and text.strip()) and not (sender_email and sender_email.strip()):
            raise ValidationError("is required", field="text")
        min_confidence = _float(data, "min_confidence")
        if min_confidence is not None and not 0.0 <= min_confidence <= 1.0:
            raise ValidationError("must be between 0 and 1", field="min_confidence")
        return cls(
            text=text or "",
            type=match_type,
            sender_email=sender_email,
            min_confidence=min_confidence,
        )


@dataclass(frozen=True)
class LookupCustomerRequest:
    """Exactly one of ``identifier`` (exact lookup) or ``query`` (autocomplete)."""

    identifier: str | None = None
    query: str | None = None
    limit: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"identifier", "query", "limit"})
        identifier = _str(data, "identifier")
        query = _str(data, "query")
        if (identifier is None) == (query is None):
            raise ValidationError("exactly one of identifier or query is required", field="identifier")
        limit = _int(data, "limit")
        if limit is not None and limit < 1:
            raise ValidationError("must be at least 1", field="limit")
        if limit is not None and identifier is not None:
            raise ValidationError("only allowed with query", field="limit")
        return cls(identifier=identifier, query=query, limit=limit)


@dataclass(frozen=True)
class PredictPaymentRequest:
    """Exactly one of ``invoice_id``, ``customer_id`` or ``list_risky``."""

    invoice_id: UUID | None = None
    customer_id: UUID | None = None
    list_risky: bool = False
    min_risk: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"invoice_id", "customer_id", "list_risky", "min_risk"})
        invoice_id = _uuid(data, "invoice_id")
        customer_id = _uuid(data, "customer_id")
        list_risky = _bool(data, "list_risky")
        chosen = sum((invoice_id is not None, customer_id is not None, list_risky))
        if chosen != 1:
            raise ValidationError(
                "exactly one of invoice_id, customer_id or list_risky is required",
                field="invoice_id",
            )
        min_risk = _int(data, "min_risk")
        if min_risk is not None:
            if not list_risky:
                raise ValidationError("only allowed with list_risky", field="min_risk")
            if not 0 <= min_risk <= 100:
                raise ValidationError("must be between 0 and 100", field="min_risk")
        return cls(invoice_id, customer_id, list_risky, min_risk)


@dataclass(frozen=True)
class SyncBankAccountRequest:
    account_id: UUID
    date_from: date | None = None
    date_to: date | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"account_id", "date_from", "date_to"}, ("account_id",))
        return cls(
            account_id=_uuid(data, "account_id"),
            date_from=_date(data, "date_from"),
            date_to=_date(data, "date_to"),
        )


@dataclass(frozen=True)
class MatchTransactionRequest:
    transaction_id: UUID
    invoice_id: UUID

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(
            data, {"transaction_id", "invoice_id"}, ("transaction_id", "invoice_id"),
        )
        return cls(_uuid(data, "transaction_id"), _uuid(data, "invoice_id"))


@dataclass(frozen=True)
class UnmatchTransactionRequest:
    transaction_id: UUID

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        data = _check_keys(data, {"transaction_id"}, ("transaction_id",))
        return cls(_uuid(data, "transaction_id"))


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForecastResponse:
    type: str
    revenue: tuple[ForecastPeriod, ...] | None = None
    cash_flow: tuple[CashFlowPeriod, ...] | None = None
    seasonality: SeasonalityAnalysis | None = None
    growth: GrowthMetrics | None = None
    turnover: TurnoverPrediction | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for name in ("revenue", "cash_flow", "seasonality", "growth", "turnover"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = to_jsonable(value)
        return payload


@dataclass(frozen=True)
class MatchCustomerResponse:
    matches: list[CustomerMatch] = field(default_factory=list)

    @property
    def best_match(self) -> CustomerMatch | None:
        return self.matches[0] if self.matches else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matches": to_jsonable(self.matches),
            "best_match": to_jsonable(self.best_match),
        }


@dataclass(frozen=True)
class LookupCustomerResponse:
    customer: Customer | None = None
    suggestions: list[CustomerSuggestion] | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.suggestions is not None:
            return {"suggestions": to_jsonable(self.suggestions)}
        return {"customer": to_jsonable(self.customer)}


@dataclass(frozen=True)
class PredictPaymentResponse:
    prediction: PredictionResult | None = None
    stats: CustomerPaymentStats | None = None
    risky_customers: list[CustomerRisk] | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.prediction is not None:
            return {"prediction": to_jsonable(self.prediction)}
        if self.stats is not None:
            return {"stats": to_jsonable(self.stats)}
        return {"risky_customers": to_jsonable(self.risky_customers or [])}


@dataclass(frozen=True)
class SyncBankAccountResponse:
    result: SyncResult

    def to_dict(self) -> dict[str, Any]:
        r = self.result
        return {
            "account_id": str(r.account_id),
            "transactions_fetched": r.fetched,
            "transactions_imported": r.imported,
            "transactions_skipped": r.skipped,
            "transactions_matched": r.matched,
            "matched_transaction_ids": to_jsonable(r.matched_transaction_ids),
            "needs_review": to_jsonable(r.needs_review),
            "errors": to_jsonable(r.errors),
            "date_from": r.date_from.isoformat(),
            "date_to": r.date_to.isoformat(),
            "timestamp": r.timestamp.isoformat(),
            "partial": r.is_partial,
        }


@dataclass(frozen=True)
class MatchResponse:
    application: PaymentApplication

    def to_dict(self) -> dict[str, Any]:
        a = self.application
        return {
            "success": True,
            "invoice_id": str(a.invoice_id),
            "applied_amount": str(a.applied_amount),
            "paid_amount": str(a.new_paid_amount),
            "invoice_status": a.new_status.value,
        }


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class IntelligenceOperations:
    """
    One entry point per operation, plus ``execute`` for dict-in/dict-out
    callers.

    Contract:
        Typed methods accept a request dataclass and return a response
        dataclass; they raise FinancialIntelligenceError subclasses.
        ``execute`` accepts a plain dict and returns a plain dict, rendering
        engine errors through ``error_payload``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: EngineConfig | None = None,
        adapter: BankFeedAdapter | None = None,
        cache: ForecastCache | None = None,
    ):
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig.with_defaults()
        self.forecasts = ForecastService(
            session, self.clock, self.config.forecast, self.config.predictor, cache,
        )
        self.predictions = PaymentPredictionService(session, self.clock, self.config.predictor)
        self.customers = CustomerMatchingService(session, self.config.matcher)
        self.reconciliation = BankReconciliationService(
            session, adapter, self.clock, self.config.reconciliation, self.config.matcher,
        )
        self._handlers = {
            "forecast": (ForecastRequest, self.forecast),
            "match_customer": (MatchCustomerRequest, self.match_customer),
            "lookup_customer": (LookupCustomerRequest, self.lookup_customer),
            "predict_payment": (PredictPaymentRequest, self.predict_payment),
            "sync_bank_account": (SyncBankAccountRequest, self.sync_bank_account),
            "match_transaction": (MatchTransactionRequest, self.match_transaction),
            "unmatch_transaction": (UnmatchTransactionRequest, self.unmatch_transaction),
        }

    @property
    def operations(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def forecast(self, scope: TenantScope, request: ForecastRequest) -> ForecastResponse:
        wanted = request.type
        every = wanted == "all"
        return ForecastResponse(
            type=wanted,
            revenue=(
                self.forecasts.forecast_revenue(scope, request.months)
                if every or wanted == "revenue" else None
            ),
            cash_flow=(
                self.forecasts.forecast_cash_flow(scope, request.months, request.current_balance)
                if every or wanted == "cashflow" else None
            ),
            seasonality=(
                self.forecasts.get_seasonality_analysis(scope)
                if every or wanted == "seasonality" else None
            ),
            growth=(
                self.forecasts.get_growth_metrics(scope)
                if every or wanted == "growth" else None
            ),
            turnover=(
                self.forecasts.predict_annual_turnover(scope, request.year)
                if every or wanted == "turnover" else None
            ),
        )

    def match_customer(
        self, scope: TenantScope, request: MatchCustomerRequest,
    ) -> MatchCustomerResponse:
        if request.type == "email":
            matches = self.customers.match_customer_from_email(
                scope, request.text, request.sender_email, request.min_confidence,
            )
        elif request.type == "document":
            matches = self.customers.match_customer_from_document(
                scope, request.text, request.min_confidence,
            )
        else:
            matches = self.customers.match_customer_from_text(
                scope, request.text, request.min_confidence,
            )
        return MatchCustomerResponse(matches)

    def lookup_customer(
        self, scope: TenantScope, request: LookupCustomerRequest,
    ) -> LookupCustomerResponse:
        if request.identifier is not None:
            return LookupCustomerResponse(
                customer=self.customers.find_customer_by_identifier(scope, request.identifier),
            )
        return LookupCustomerResponse(
            suggestions=self.customers.suggest_customers(scope, request.query, request.limit),
        )

    def predict_payment(
        self, scope: TenantScope, request: PredictPaymentRequest,
    ) -> PredictPaymentResponse:
        if request.invoice_id is not None:
            return PredictPaymentResponse(
                prediction=self.predictions.predict_payment(scope, request.invoice_id),
            )
        if request.customer_id is not None:
            return PredictPaymentResponse(
                stats=self.predictions.get_customer_payment_stats(scope, request.customer_id),
            )
        risky = self.predictions.identify_risky_customers(scope)
        if request.min_risk is not None:
            risky = [r for r in risky if r.risk_score >= request.min_risk]
        return PredictPaymentResponse(risky_customers=risky)

    def sync_bank_account(
        self, scope: TenantScope, request: SyncBankAccountRequest,
    ) -> SyncBankAccountResponse:
        return SyncBankAccountResponse(
            self.reconciliation.sync_account(
                scope, request.account_id, request.date_from, request.date_to,
            )
        )

    def match_transaction(
        self, scope: TenantScope, request: MatchTransactionRequest,
    ) -> MatchResponse:
        return MatchResponse(
            self.reconciliation.match_transaction(
                scope, request.transaction_id, request.invoice_id,
            )
        )

    def unmatch_transaction(
        self, scope: TenantScope, request: UnmatchTransactionRequest,
    ) -> MatchResponse:
        return MatchResponse(
            self.reconciliation.unmatch_transaction(scope, request.transaction_id)
        )

    def execute(
        self, scope: TenantScope, operation: str, payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Validate ``payload``, run ``operation`` and return a JSON-safe dict."""
        with LogContext.bind(tenant_id=scope.tenant_id, actor_id=scope.actor_id, operation=operation):
            try:
                if operation not in self._handlers:
                    raise ValidationError(f"unknown operation {operation!r}", field="operation")
                request_cls, handler = self._handlers[operation]
                response = handler(scope, request_cls.from_dict(payload or {}))
                return response.to_dict()
            except FinancialIntelligenceError as exc:
                logger.warning(
                    "operation_rejected",
                    extra={"error_code": exc.code, "error_category": exc.category.value},
                )
                return error_payload(exc)

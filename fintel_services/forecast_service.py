"""
fintel_services.forecast_service -- Revenue, cash-flow and turnover forecasts.

Responsibility:
    Builds the monthly revenue history of a tenant from the ledger and runs
    the pure RevenueForecaster over it.  The cash-flow forecast combines it
    with expected collections from the PaymentPredictionService.  Results
    may be cached per (tenant, operation, arguments) for a short TTL.

Architecture position:
    Services -- read-only orchestration over LedgerSelector (kernel I/O),
    RevenueForecaster (pure engine) and PaymentPredictionService.

Invariants enforced:
    - Tenant isolation: history is read through ``TenantScope``; cache
      keys include the tenant id.
    - "Today" comes from the injected clock; cache entries expire on the
      same clock.
    - Only invoices in the reporting currency count.

Failure modes:
    - ValidationError: horizon outside 1..max_forecast_months, year too
      far ahead, malformed outflows.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from fintel_config.schema import ForecastConfig, PredictorConfig
from fintel_engines.revenue_forecaster import (
    CashFlowPeriod,
    ForecastPeriod,
    GrowthMetrics,
    MonthlyHistory,
    RecurringOutflow,
    RevenueForecaster,
    SeasonalityAnalysis,
    TurnoverPrediction,
    build_monthly_history,
)
from fintel_kernel.domain.clock import Clock
from fintel_kernel.domain.dtos import ISSUED_INVOICE_STATUSES, TenantScope
from fintel_kernel.exceptions import ValidationError
from fintel_kernel.logging_config import LogContext, get_logger
from fintel_kernel.selectors.ledger_selector import LedgerSelector
from fintel_kernel.services.base import BaseService
from fintel_services.payment_prediction_service import PaymentPredictionService

logger = get_logger("services.forecast")

T = TypeVar("T")


@dataclass(frozen=True)
class _CacheEntry:
    value: Any
    expires_at: datetime


class ForecastCache:
    """
    In-process TTL cache of forecast results.

    Keys are (tenant_id, operation, arguments).  A ``ttl_seconds`` of 0
    disables caching.  Expired entries are purged on every write and the
    least recently used entry is evicted past ``max_entries``.  List
    results are stored as tuples so callers cannot mutate a cached value.
    Safe to share between threads.
    """

    def __init__(self, clock: Clock, ttl_seconds: int, max_entries: int = 256):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._entries: OrderedDict[Hashable, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, clock: Clock, config: ForecastConfig) -> ForecastCache:
        return cls(clock, config.cache_ttl_seconds, config.cache_max_entries)

    def get_or_compute(self, key: Hashable, compute: Callable[[], T]) -> T:
        if not self.ttl:
            return compute()
        now = self.clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                self._entries.move_to_end(key)
                logger.debug("forecast_cache_hit", extra={"operation": key[1]})
                return entry.value
        value = compute()
        if isinstance(value, list):
            value = tuple(value)
        with self._lock:
            self._purge_expired(now)
            self._entries[key] = _CacheEntry(value, now + self.ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("forecast_cache_evicted", extra={"operation": evicted[1]})
        return value

    def _purge_expired(self, now: datetime) -> None:
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]

    def invalidate(self, tenant_id: UUID | None = None) -> None:
        """Drop every entry, or only those of one tenant."""
        with self._lock:
            if tenant_id is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == tenant_id]:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class ForecastService(BaseService):
    """
    Revenue forecasting operations.

    Usage:
        service = ForecastService(session, clock=clock)
        periods = service.forecast_revenue(scope, months=6)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ForecastConfig | None = None,
        predictor_config: PredictorConfig | None = None,
        cache: ForecastCache | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, auto_commit)
        self.config = config or ForecastConfig.with_defaults()
        self.selector = LedgerSelector(session)
        self.forecaster = RevenueForecaster(self.config)
        self.predictions = PaymentPredictionService(
            session, self.clock, predictor_config, auto_commit=False,
        )
        self.cache = cache

    def _run(self, scope: TenantScope, operation: str, args: tuple, compute: Callable[[], T]) -> T:
        with LogContext.bind(
            tenant_id=scope.tenant_id, actor_id=scope.actor_id, operation=operation,
        ):
            try:
                if self.cache is not None:
                    result = self.cache.get_or_compute((scope.tenant_id, operation, args), compute)
                else:
                    result = compute()
                self._finish()
                return result
            except Exception:
                self._abort()
                raise

    def _history(self, scope: TenantScope) -> MonthlyHistory:
        invoices = self.selector.list_invoices(scope, statuses=ISSUED_INVOICE_STATUSES)
        history = build_monthly_history(invoices, self.clock.today(), self.config)
        logger.debug(
            "revenue_history_loaded",
            extra={
                "invoices": len(invoices),
                "history_months": history.length,
                "excluded_currency_count": history.excluded_currency_count,
            },
        )
        return history

    # -- Operations ----------------------------------------------------------

    def forecast_revenue(
        self, scope: TenantScope, months: int = 6,
    ) -> tuple[ForecastPeriod, ...]:
        return self._run(
            scope, "forecast_revenue", (months,),
            lambda: tuple(self.forecaster.forecast(self._history(scope), months)),
        )

    def forecast_cash_flow(
        self,
        scope: TenantScope,
        months: int = 3,
        current_balance: Decimal = Decimal("0"),
        recurring_outflows: Sequence[RecurringOutflow] = (),
    ) -> tuple[CashFlowPeriod, ...]:
        if not isinstance(current_balance, Decimal):
            raise ValidationError("must be a Decimal", field="current_balance")
        outflows = tuple(recurring_outflows)

        def compute():
            expected = self.predictions.expected_payments(scope)
            return tuple(self.forecaster.cash_flow(
                self._history(scope), months, current_balance, expected, outflows,
            ))

        return self._run(scope, "forecast_cash_flow", (months, current_balance, outflows), compute)

    def get_seasonality_analysis(self, scope: TenantScope) -> SeasonalityAnalysis:
        return self._run(
            scope, "get_seasonality_analysis", (),
            lambda: self.forecaster.seasonality(self._history(scope)),
        )

    def get_growth_metrics(self, scope: TenantScope) -> GrowthMetrics:
        return self._run(
            scope, "get_growth_metrics", (),
            lambda: self.forecaster.growth_metrics(self._history(scope)),
        )

    def predict_annual_turnover(self, scope: TenantScope, year: int | None = None) -> TurnoverPrediction:
        if year is None:
            year = self.clock.today().year
        if not isinstance(year, int) or isinstance(year, bool):
            raise ValidationError("must be an integer", field="year")
        return self._run(
            scope, "predict_annual_turnover", (year,),
            lambda: self.forecaster.annual_turnover(self._history(scope), year),
        )

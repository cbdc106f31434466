"""
fintel_services.payment_prediction_service -- Payment behaviour and risk.

Responsibility:
    Loads a tenant's invoices through the LedgerSelector and feeds them to
    the pure PaymentPredictor: customer statistics, per-invoice payment
    predictions, the risky-customer report and the expected-payment list
    the cash-flow forecast consumes.

Architecture position:
    Services -- read-only orchestration over LedgerSelector (kernel I/O)
    and PaymentPredictor (pure engine).

Invariants enforced:
    - Tenant isolation: every lookup goes through ``TenantScope``; an
      invoice or customer of another tenant raises NotFound.
    - Population statistics are computed over the whole tenant, never
      across tenants.
    - Read-only: nothing is written; the read transaction is ended before
      returning.

Failure modes:
    - CustomerNotFoundError, InvoiceNotFoundError.
    - Thin or missing history is returned as LOW confidence, never raised.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from fintel_config.schema import PredictorConfig
from fintel_engines.payment_predictor import (
    CustomerPaymentStats,
    CustomerRisk,
    PaymentPredictor,
    PopulationStats,
    PredictionResult,
)
from fintel_engines.revenue_forecaster import ExpectedPayment
from fintel_kernel.domain.clock import Clock
from fintel_kernel.domain.dtos import ISSUED_INVOICE_STATUSES, Invoice, TenantScope
from fintel_kernel.exceptions import CustomerNotFoundError, InvoiceNotFoundError
from fintel_kernel.logging_config import LogContext, get_logger
from fintel_kernel.selectors.ledger_selector import LedgerSelector
from fintel_kernel.services.base import BaseService

logger = get_logger("services.payment_prediction")


class PaymentPredictionService(BaseService):
    """
    Customer payment statistics, predictions and risk.

    Usage:
        service = PaymentPredictionService(session, clock=clock)
        prediction = service.predict_payment(scope, invoice_id)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PredictorConfig | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, auto_commit)
        self.config = config or PredictorConfig.with_defaults()
        self.selector = LedgerSelector(session)
        self.predictor = PaymentPredictor(self.config)

    def _read(self, fn):
        try:
            result = fn()
            self._finish()
            return result
        except Exception:
            self._abort()
            raise

    def _population(self, invoices: list[Invoice]) -> PopulationStats:
        return self.predictor.population_stats(invoices)

    def _stats_for(
        self,
        customer_id: UUID,
        tenant_invoices: list[Invoice],
        population: PopulationStats,
        as_of: date,
    ) -> CustomerPaymentStats:
        own = [inv for inv in tenant_invoices if inv.customer_id == customer_id]
        return self.predictor.customer_stats(customer_id, own, population, as_of)

    # -- Operations ----------------------------------------------------------

    def get_customer_payment_stats(
        self, scope: TenantScope, customer_id: UUID,
    ) -> CustomerPaymentStats:
        def run():
            if self.selector.get_customer(scope, customer_id) is None:
                raise CustomerNotFoundError(customer_id)
            invoices = self.selector.list_invoices(scope)
            return self._stats_for(
                customer_id, invoices, self._population(invoices), self.clock.today(),
            )

        with LogContext.bind(
            tenant_id=scope.tenant_id, actor_id=scope.actor_id,
            operation="get_customer_payment_stats",
        ):
            return self._read(run)

    def predict_payment(self, scope: TenantScope, invoice_id: UUID) -> PredictionResult:
        """Probability of on-time payment and expected payment date of one invoice."""

        def run():
            invoice = self.selector.get_invoice(scope, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            as_of = self.clock.today()
            invoices = self.selector.list_invoices(scope)
            stats = self._stats_for(
                invoice.customer_id, invoices, self._population(invoices), as_of,
            )
            other_overdue = sum(
                1 for inv in invoices
                if inv.customer_id == invoice.customer_id
                and inv.invoice_id != invoice.invoice_id
                and inv.is_overdue(as_of)
            )
            return self.predictor.predict(invoice, stats, other_overdue)

        with LogContext.bind(
            tenant_id=scope.tenant_id, actor_id=scope.actor_id, operation="predict_payment",
        ):
            return self._read(run)

    def identify_risky_customers(self, scope: TenantScope) -> list[CustomerRisk]:
        """Active customers with at least one issued invoice that look risky."""

        def run():
            as_of = self.clock.today()
            invoices = self.selector.list_invoices(scope, statuses=ISSUED_INVOICE_STATUSES)
            population = self._population(invoices)
            by_customer: dict[UUID, list[Invoice]] = defaultdict(list)
            for inv in invoices:
                by_customer[inv.customer_id].append(inv)

            assessments = []
            for customer in self.selector.list_customers(scope, active_only=True):
                own = by_customer.get(customer.customer_id)
                if not own:
                    continue
                stats = self.predictor.customer_stats(
                    customer.customer_id, own, population, as_of,
                )
                assessments.append(self.predictor.assess_customer(customer, stats))

            risky = self.predictor.rank_risky(assessments)
            logger.info(
                "risky_customers_identified",
                extra={"customers_scanned": len(assessments), "risky_count": len(risky)},
            )
            return risky

        with LogContext.bind(
            tenant_id=scope.tenant_id, actor_id=scope.actor_id,
            operation="identify_risky_customers",
        ):
            return self._read(run)

    def expected_payments(self, scope: TenantScope) -> list[ExpectedPayment]:
        """
        Outstanding balance of every open invoice with its predicted payment
        date, for the cash-flow projection.
        """

        def run():
            as_of = self.clock.today()
            invoices = self.selector.list_invoices(scope)
            population = self._population(invoices)
            stats_cache: dict[UUID, CustomerPaymentStats] = {}

            expected = []
            for inv in invoices:
                if not inv.is_open or inv.outstanding_amount <= 0:
                    continue
                if inv.customer_id not in stats_cache:
                    stats_cache[inv.customer_id] = self._stats_for(
                        inv.customer_id, invoices, population, as_of,
                    )
                stats = stats_cache[inv.customer_id]
                other_overdue = max(stats.overdue_count - (1 if inv.is_overdue(as_of) else 0), 0)
                prediction = self.predictor.predict(inv, stats, other_overdue)
                expected.append(ExpectedPayment(
                    invoice_id=inv.invoice_id,
                    invoice_number=inv.number,
                    customer_id=inv.customer_id,
                    amount=inv.outstanding_amount,
                    currency=inv.currency,
                    due_date=inv.due_date,
                    expected_payment_date=(
                        prediction.expected_payment_date
                        or inv.due_date + timedelta(days=self.config.default_payment_terms_days)
                    ),
                    probability=prediction.probability_on_time,
                ))
            return expected

        return self._read(run)

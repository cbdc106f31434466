"""
fintel_services.bank_reconciliation_service -- Bank feed sync and matching.

Responsibility:
    Pulls transactions of a bank account from the injected BankFeedAdapter,
    ingests them insert-or-skip, auto-matches incoming payments to open
    invoices, and applies or reverses manual matches.  Every paid-amount
    change is recorded as an append-only payment row.

Architecture position:
    Services -- imperative shell.  Decisions come from the pure
    ``fintel_engines.reconciliation`` module; this service owns I/O and the
    transaction boundary.

Invariants enforced:
    - Ingestion is idempotent: ``(bank_account_id, external_id)`` is unique
      and a duplicate insert is rolled back to its SAVEPOINT and skipped.
    - A transaction is matched at most once: the match update is a
      compare-and-set on ``is_matched = false``.
    - Invoice paid amounts change only through a compare-and-set on
      ``version``; the payment row, the invoice and the transaction change
      in the same unit of work.
    - ``paid_amount`` never exceeds ``total_amount``.

Failure modes:
    - BankAccountNotFoundError / TransactionNotFoundError /
      InvoiceNotFoundError: unknown or foreign-tenant references.
    - ValidationError: malformed sync range.
    - TransactionAlreadyMatchedError, TransactionNotMatchedError,
      InvoiceNotOpenError, ConcurrentModificationError: conflicts.
    - AmountMismatchError: amount above outstanding + tolerance, currency
      mismatch, or a debit.
    - ExternalAdapterError: the feed failed mid-fetch.  Everything fetched
      before the failure is committed and matched; the error carries the
      partial SyncResult.

Audit relevance:
    Structured log events: bank_sync_started, bank_transaction_ingested,
    bank_transaction_skipped, bank_transaction_failed, bank_feed_failed,
    payment_applied, payment_reversed, bank_sync_completed.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime, timedelta
from datetime import time as dt_time
from decimal import Decimal
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fintel_config.schema import MatcherConfig, ReconciliationConfig
from fintel_engines.customer_matcher import CustomerMatcher
from fintel_engines.reconciliation import (
    AutoMatchOutcome,
    PaymentApplication,
    ReconciliationMatcher,
    SyncResult,
    TransactionError,
    plan_payment,
)
from fintel_kernel.domain.clock import Clock
from fintel_kernel.domain.dtos import (
    BankAccount,
    BankTransaction,
    Invoice,
    MatchMethod,
    TenantScope,
    derive_invoice_status,
)
from fintel_kernel.exceptions import (
    BankAccountNotFoundError,
    ConcurrentModificationError,
    ExternalAdapterError,
    FinancialIntelligenceError,
    InvoiceNotFoundError,
    TransactionAlreadyMatchedError,
    TransactionNotFoundError,
    TransactionNotMatchedError,
    ValidationError,
)
from fintel_kernel.logging_config import LogContext, get_logger
from fintel_kernel.models.bank import BankAccountModel, BankTransactionModel
from fintel_kernel.models.ledger import InvoiceModel, PaymentModel
from fintel_kernel.selectors.ledger_selector import LedgerSelector
from fintel_kernel.services.base import BaseService
from fintel_services.adapters import BankFeedAdapter, FetchedTransaction

logger = get_logger("services.bank_reconciliation")

_MANUAL_CONFIDENCE = Decimal("1.0000")


class BankReconciliationService(BaseService):
    """
    Bank sync, auto-matching and manual match/unmatch.

    Contract:
        ``adapter`` is only needed for ``sync_account``.  All methods take
        a ``TenantScope``; entities of another tenant are not found.
    Guarantees:
        - ``sync_account`` run twice over the same feed data inserts nothing
          the second time.
        - ``match_transaction`` followed by ``unmatch_transaction`` restores
          the invoice's paid amount exactly.
    Non-goals:
        - Splitting one transaction across several invoices.
        - Scheduling syncs; callers decide when to sync.

    Usage:
        service = BankReconciliationService(session, adapter, clock=clock)
        result = service.sync_account(scope, account_id)
        service.match_transaction(scope, transaction_id, invoice_id)
    """

    def __init__(
        self,
        session: Session,
        adapter: BankFeedAdapter | None = None,
        clock: Clock | None = None,
        config: ReconciliationConfig | None = None,
        matcher_config: MatcherConfig | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, clock, auto_commit)
        self.adapter = adapter
        self.config = config or ReconciliationConfig.with_defaults()
        self.selector = LedgerSelector(session)
        self.matcher = ReconciliationMatcher(self.config, CustomerMatcher(matcher_config))

    @contextmanager
    def _unit_of_work(self, scope: TenantScope, operation: str, **fields) -> Iterator[None]:
        with LogContext.bind(
            tenant_id=scope.tenant_id,
            actor_id=scope.actor_id,
            operation=operation,
            account_id=fields.pop("account_id", None),
        ):
            t0 = time.monotonic()
            logger.info(f"{operation}_started", extra=fields)
            try:
                yield
                self._finish()
            except Exception as exc:
                self._abort()
                logger.warning(
                    f"{operation}_failed",
                    extra={
                        **fields,
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                raise
            logger.info(
                f"{operation}_completed",
                extra={**fields, "duration_ms": round((time.monotonic() - t0) * 1000, 2)},
            )

    # -- Sync ----------------------------------------------------------------

    def _resolve_range(
        self,
        account: BankAccount,
        date_from: date | None,
        date_to: date | None,
    ) -> tuple[date, date]:
        today = self.clock.today()
        if date_to is None:
            date_to = today
        if date_from is None:
            if account.last_synced_at is not None:
                date_from = min(account.last_synced_at.date(), date_to)
            else:
                date_from = date_to - timedelta(days=self.config.default_lookback_days)

        if date_to > today:
            raise ValidationError(f"{date_to} is in the future", field="date_to")
        if date_from > date_to:
            raise ValidationError(
                f"{date_from} is after date_to {date_to}", field="date_from",
            )
        if (date_to - date_from).days > self.config.max_sync_range_days:
            raise ValidationError(
                f"range exceeds {self.config.max_sync_range_days} days", field="date_from",
            )
        return date_from, date_to

    def _ingest(
        self,
        scope: TenantScope,
        account: BankAccount,
        fetched: FetchedTransaction,
    ) -> BankTransaction | None:
        """Insert one fetched transaction in its own SAVEPOINT; None when already ingested."""
        if not isinstance(fetched.amount, Decimal):
            raise ValueError(f"amount must be Decimal, got {type(fetched.amount).__name__}")
        if not fetched.external_id:
            raise ValueError("external_id is empty")

        model = BankTransactionModel(
            tenant_id=scope.tenant_id,
            bank_account_id=account.account_id,
            external_id=fetched.external_id,
            booked_on=fetched.booked_on,
            amount=fetched.amount,
            currency=fetched.currency.upper(),
            counterparty_name=fetched.counterparty_name,
            counterparty_account=fetched.counterparty_account,
            variable_symbol=fetched.variable_symbol,
            message=fetched.message,
            is_matched=False,
            created_by_id=scope.actor_id,
        )
        try:
            with self.session.begin_nested():
                self.session.add(model)
                self.session.flush()
        except IntegrityError:
            existing = self.selector.list_transactions(
                scope, account.account_id, external_ids=[fetched.external_id],
            )
            if not existing:
                raise
            logger.info(
                "bank_transaction_skipped",
                extra={"external_id": fetched.external_id, "reason": "duplicate"},
            )
            return None
        logger.debug(
            "bank_transaction_ingested",
            extra={"external_id": fetched.external_id, "amount": str(fetched.amount)},
        )
        return model.to_dto()

    def _fetch(
        self, account: BankAccount, date_from: date, date_to: date,
    ) -> Iterator[FetchedTransaction | Exception]:
        """
        Stream the adapter's transactions.  An adapter failure is yielded
        as the last item instead of raised, so ingestion can stop cleanly.
        """
        try:
            for fetched in self.adapter.fetch_transactions(account, date_from, date_to):
                yield fetched
        except Exception as exc:
            yield exc

    def _auto_match(
        self,
        scope: TenantScope,
        imported: list[BankTransaction],
    ) -> tuple[list[UUID], list[UUID], list[TransactionError]]:
        matched: list[UUID] = []
        needs_review: list[UUID] = []
        errors: list[TransactionError] = []
        credits = [tx for tx in imported if tx.is_credit]
        if not credits:
            return matched, needs_review, errors

        open_invoices = {inv.invoice_id: inv for inv in self.selector.list_open_invoices(scope)}
        customers = self.selector.list_customers(scope, active_only=True)

        for tx in credits:
            decision = self.matcher.auto_match(tx, list(open_invoices.values()), customers)
            if decision.outcome == AutoMatchOutcome.NEEDS_REVIEW:
                needs_review.append(tx.transaction_id)
                logger.info(
                    "bank_transaction_needs_review",
                    extra={"transaction_id": str(tx.transaction_id), "reason": decision.reason},
                )
                continue
            if decision.outcome != AutoMatchOutcome.MATCHED:
                continue

            invoice = open_invoices[decision.invoice_id]
            try:
                with self.session.begin_nested():
                    self._apply_match(scope, tx, invoice, decision.method, decision.confidence)
            except (FinancialIntelligenceError, SQLAlchemyError) as exc:
                errors.append(TransactionError(tx.external_id, str(exc)))
                logger.warning(
                    "bank_transaction_match_failed",
                    extra={
                        "transaction_id": str(tx.transaction_id),
                        "error_code": getattr(exc, "code", None),
                        "error_type": type(exc).__name__,
                    },
                )
                continue
            matched.append(tx.transaction_id)

            refreshed = self.selector.get_invoice(scope, invoice.invoice_id)
            if refreshed is not None and refreshed.is_open and refreshed.outstanding_amount > 0:
                open_invoices[invoice.invoice_id] = refreshed
            else:
                del open_invoices[invoice.invoice_id]

        return matched, needs_review, errors

    def sync_account(
        self,
        scope: TenantScope,
        account_id: UUID,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SyncResult:
        """
        Fetch, ingest and auto-match the account's transactions in a date range.

        ``date_from`` defaults to the last sync date (or
        ``default_lookback_days`` ago), ``date_to`` to today.  Raises
        ExternalAdapterError carrying the partial result when the feed
        fails; what was fetched before the failure is kept.
        """
        if self.adapter is None:
            raise ValidationError("no bank feed adapter configured", field="adapter")

        with self._unit_of_work(scope, "bank_sync", account_id=account_id):
            account = self.selector.get_bank_account(scope, account_id)
            if account is None:
                raise BankAccountNotFoundError(account_id)
            date_from, date_to = self._resolve_range(account, date_from, date_to)

            fetched_count = 0
            skipped = 0
            imported: list[BankTransaction] = []
            errors: list[TransactionError] = []
            adapter_error: str | None = None

            for item in self._fetch(account, date_from, date_to):
                if isinstance(item, Exception):
                    adapter_error = str(item) or type(item).__name__
                    logger.error(
                        "bank_feed_failed",
                        extra={"fetched_before_failure": fetched_count, "error_type": type(item).__name__},
                        exc_info=item,
                    )
                    break
                fetched_count += 1
                try:
                    tx = self._ingest(scope, account, item)
                except Exception as exc:
                    errors.append(TransactionError(item.external_id, str(exc)))
                    logger.warning(
                        "bank_transaction_failed",
                        extra={"external_id": item.external_id, "error_type": type(exc).__name__},
                        exc_info=True,
                    )
                    continue
                if tx is None:
                    skipped += 1
                else:
                    imported.append(tx)

            for rejected in getattr(self.adapter, "rejected_rows", ()):
                errors.append(TransactionError(rejected.label, rejected.reason))

            matched, needs_review, match_errors = self._auto_match(scope, imported)

            now = self.clock.now()
            if adapter_error is None:
                self.session.execute(
                    update(BankAccountModel)
                    .where(
                        BankAccountModel.id == account.account_id,
                        BankAccountModel.tenant_id == scope.tenant_id,
                    )
                    .values(last_synced_at=now, updated_by_id=scope.actor_id)
                    .execution_options(synchronize_session=False)
                )

            result = SyncResult(
                account_id=account.account_id,
                date_from=date_from,
                date_to=date_to,
                timestamp=now,
                fetched=fetched_count,
                imported=len(imported),
                skipped=skipped,
                matched=len(matched),
                matched_transaction_ids=tuple(matched),
                needs_review=tuple(needs_review),
                errors=tuple(errors + match_errors),
                adapter_error=adapter_error,
            )
            logger.info(
                "bank_sync_summary",
                extra={
                    "date_from": date_from.isoformat(),
                    "date_to": date_to.isoformat(),
                    "fetched": result.fetched,
                    "imported": result.imported,
                    "skipped": result.skipped,
                    "matched": result.matched,
                    "needs_review": len(result.needs_review),
                    "errors": len(result.errors),
                    "partial": result.is_partial,
                },
            )

        if result.adapter_error is not None:
            raise ExternalAdapterError(account_id, result.adapter_error, partial_result=result)
        return result

    # -- Match / unmatch -----------------------------------------------------

    def _apply_match(
        self,
        scope: TenantScope,
        transaction: BankTransaction,
        invoice: Invoice,
        method: MatchMethod,
        confidence: Decimal,
    ) -> PaymentApplication:
        application = plan_payment(
            transaction, invoice, self.config.amount_tolerance, self.clock.today(),
        )

        claimed = self.session.execute(
            update(BankTransactionModel)
            .where(
                BankTransactionModel.id == transaction.transaction_id,
                BankTransactionModel.tenant_id == scope.tenant_id,
                BankTransactionModel.is_matched.is_(False),
            )
            .values(
                is_matched=True,
                matched_invoice_id=invoice.invoice_id,
                match_confidence=confidence,
                match_method=method.value,
                updated_by_id=scope.actor_id,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            raise TransactionAlreadyMatchedError(transaction.transaction_id)

        self._update_invoice(scope, invoice, application)
        self.session.add(PaymentModel(
            tenant_id=scope.tenant_id,
            invoice_id=invoice.invoice_id,
            amount=application.applied_amount,
            paid_at=datetime.combine(transaction.booked_on, dt_time.min, tzinfo=UTC),
            bank_transaction_id=transaction.transaction_id,
            created_by_id=scope.actor_id,
        ))
        self.session.flush()

        logger.info(
            "payment_applied",
            extra={
                "transaction_id": str(transaction.transaction_id),
                "invoice_id": str(invoice.invoice_id),
                "invoice_number": invoice.number,
                "method": method.value,
                "confidence": str(confidence),
                "applied_amount": str(application.applied_amount),
                "new_status": application.new_status.value,
            },
        )
        return application

    def _update_invoice(
        self, scope: TenantScope, invoice: Invoice, application: PaymentApplication,
    ) -> None:
        updated = self.session.execute(
            update(InvoiceModel)
            .where(
                InvoiceModel.id == invoice.invoice_id,
                InvoiceModel.tenant_id == scope.tenant_id,
                InvoiceModel.version == invoice.version,
            )
            .values(
                paid_amount=application.new_paid_amount,
                status=application.new_status.value,
                version=InvoiceModel.version + 1,
                updated_by_id=scope.actor_id,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if updated != 1:
            raise ConcurrentModificationError("invoice", invoice.invoice_id)

    def match_transaction(
        self,
        scope: TenantScope,
        transaction_id: UUID,
        invoice_id: UUID,
    ) -> PaymentApplication:
        """
        Manually match an unmatched credit transaction to an open invoice.

        Within ``amount_tolerance`` above the outstanding balance the
        invoice is settled exactly; a smaller amount is a partial payment.
        """
        with self._unit_of_work(
            scope, "match_transaction",
            transaction_id=str(transaction_id), invoice_id=str(invoice_id),
        ):
            transaction = self.selector.get_transaction(scope, transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)
            if transaction.is_matched:
                raise TransactionAlreadyMatchedError(
                    transaction_id, transaction.matched_invoice_id,
                )
            invoice = self.selector.get_invoice(scope, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            application = self._apply_match(
                scope, transaction, invoice, MatchMethod.MANUAL, _MANUAL_CONFIDENCE,
            )
        return application

    def unmatch_transaction(
        self, scope: TenantScope, transaction_id: UUID,
    ) -> PaymentApplication:
        """
        Undo a match: clear the match fields, append a reversing payment and
        recompute the invoice status from its reduced paid amount.

        The returned application carries the (negative) reversed amount.
        """
        with self._unit_of_work(
            scope, "unmatch_transaction", transaction_id=str(transaction_id),
        ):
            transaction = self.selector.get_transaction(scope, transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)
            if not transaction.is_matched:
                raise TransactionNotMatchedError(transaction_id)

            invoice = self.selector.get_invoice(scope, transaction.matched_invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(transaction.matched_invoice_id)
            payment = self.selector.find_unreversed_payment(scope, transaction_id)
            if payment is None or payment.invoice_id != invoice.invoice_id:
                raise ConcurrentModificationError("bank_transaction", transaction_id)

            new_paid = invoice.paid_amount - payment.amount
            if new_paid < 0:
                raise ConcurrentModificationError("invoice", invoice.invoice_id)
            application = PaymentApplication(
                invoice_id=invoice.invoice_id,
                transaction_id=transaction_id,
                applied_amount=-payment.amount,
                previous_paid_amount=invoice.paid_amount,
                new_paid_amount=new_paid,
                new_status=derive_invoice_status(
                    invoice.status, invoice.total_amount, new_paid,
                    invoice.due_date, self.clock.today(),
                ),
            )

            released = self.session.execute(
                update(BankTransactionModel)
                .where(
                    BankTransactionModel.id == transaction_id,
                    BankTransactionModel.tenant_id == scope.tenant_id,
                    BankTransactionModel.is_matched.is_(True),
                    BankTransactionModel.matched_invoice_id == invoice.invoice_id,
                )
                .values(
                    is_matched=False,
                    matched_invoice_id=None,
                    match_confidence=None,
                    match_method=None,
                    updated_by_id=scope.actor_id,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if released != 1:
                raise TransactionNotMatchedError(transaction_id)

            self._update_invoice(scope, invoice, application)
            self.session.add(PaymentModel(
                tenant_id=scope.tenant_id,
                invoice_id=invoice.invoice_id,
                amount=-payment.amount,
                paid_at=self.clock.now(),
                bank_transaction_id=transaction_id,
                reverses_payment_id=payment.payment_id,
                created_by_id=scope.actor_id,
            ))
            self.session.flush()

            logger.info(
                "payment_reversed",
                extra={
                    "transaction_id": str(transaction_id),
                    "invoice_id": str(invoice.invoice_id),
                    "reversed_amount": str(payment.amount),
                    "new_status": application.new_status.value,
                },
            )
        return application

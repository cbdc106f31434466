"""
fintel_services.customer_matching_service -- Who is this text about?

Responsibility:
    Resolves free text (an e-mail, a scanned document, a bank note) or an
    identifier to customers of the tenant, and powers customer
    autocomplete.  Reads the customer registry through the LedgerSelector
    and delegates all scoring to the pure CustomerMatcher.

Architecture position:
    Services -- read-only orchestration over LedgerSelector and
    CustomerMatcher.

Invariants enforced:
    - Tenant isolation: only customers of ``scope.tenant_id`` are candidates.
    - Identifier lookups are exact; fuzzy matching never applies to them.
    - Autocomplete offers active customers only.

Failure modes:
    - ValidationError: empty text, ``min_confidence`` outside [0, 1].
    - No match is an empty list (or None), never an error.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from fintel_config.schema import MatcherConfig
from fintel_engines.customer_matcher import (
    CustomerMatch,
    CustomerMatcher,
    CustomerSuggestion,
    parse_identifier,
)
from fintel_kernel.domain.dtos import Customer, TenantScope
from fintel_kernel.exceptions import ValidationError
from fintel_kernel.logging_config import LogContext, get_logger
from fintel_kernel.selectors.ledger_selector import LedgerSelector
from fintel_kernel.services.base import BaseService

logger = get_logger("services.customer_matching")


def _check_text(text: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("must be a non-empty string", field="text")


def _check_min_confidence(min_confidence: float | None) -> None:
    if min_confidence is None:
        return
    if isinstance(min_confidence, bool) or not isinstance(min_confidence, (int, float)):
        raise ValidationError("must be a number", field="min_confidence")
    if not 0.0 <= min_confidence <= 1.0:
        raise ValidationError("must be between 0 and 1", field="min_confidence")


class CustomerMatchingService(BaseService):
    """
    Customer identification from text and identifiers.

    Usage:
        service = CustomerMatchingService(session)
        matches = service.match_customer_from_email(scope, body, sender_email=sender)
        best = matches[0] if matches else None
    """

    def __init__(
        self,
        session: Session,
        config: MatcherConfig | None = None,
        auto_commit: bool = True,
    ):
        super().__init__(session, auto_commit=auto_commit)
        self.config = config or MatcherConfig.with_defaults()
        self.selector = LedgerSelector(session)
        self.matcher = CustomerMatcher(self.config)

    def _read(self, scope: TenantScope, operation: str, fn):
        with LogContext.bind(
            tenant_id=scope.tenant_id, actor_id=scope.actor_id, operation=operation,
        ):
            try:
                result = fn()
                self._finish()
                return result
            except Exception:
                self._abort()
                raise

    def _log_matches(self, operation: str, matches: list[CustomerMatch]) -> None:
        logger.info(
            "customer_match_completed",
            extra={
                "match_operation": operation,
                "match_count": len(matches),
                "best_customer_id": str(matches[0].customer_id) if matches else None,
                "best_confidence": matches[0].confidence if matches else None,
            },
        )

    # -- Operations ----------------------------------------------------------

    def match_customer_from_text(
        self,
        scope: TenantScope,
        text: str,
        min_confidence: float | None = None,
    ) -> list[CustomerMatch]:
        _check_text(text)
        _check_min_confidence(min_confidence)

        def run():
            customers = self.selector.list_customers(scope)
            matches = self.matcher.match_text(customers, text, min_confidence)
            self._log_matches("text", matches)
            return matches

        return self._read(scope, "match_customer_from_text", run)

    def match_customer_from_email(
        self,
        scope: TenantScope,
        text: str,
        sender_email: str | None = None,
        min_confidence: float | None = None,
    ) -> list[CustomerMatch]:
        """A registered sender address wins outright; otherwise the body is scored."""
        if not (sender_email and sender_email.strip()):
            _check_text(text)
        _check_min_confidence(min_confidence)

        def run():
            customers = self.selector.list_customers(scope)
            matches = self.matcher.match_email(customers, text or "", sender_email, min_confidence)
            self._log_matches("email", matches)
            return matches

        return self._read(scope, "match_customer_from_email", run)

    def match_customer_from_document(
        self,
        scope: TenantScope,
        text: str,
        min_confidence: float | None = None,
    ) -> list[CustomerMatch]:
        _check_text(text)
        _check_min_confidence(min_confidence)

        def run():
            customers = self.selector.list_customers(scope)
            matches = self.matcher.match_document(customers, text, min_confidence)
            self._log_matches("document", matches)
            return matches

        return self._read(scope, "match_customer_from_document", run)

    def find_customer_by_identifier(
        self, scope: TenantScope, identifier: str,
    ) -> Customer | None:
        """
        Exact lookup by DIČ or IČO.

        A ``CZ``-prefixed identifier is looked up as a DIČ first and then,
        prefix removed, as an IČO.  Returns None when nothing matches or the
        identifier has neither shape.
        """
        if not isinstance(identifier, str) or not identifier.strip():
            raise ValidationError("must be a non-empty string", field="identifier")
        lookup = parse_identifier(identifier)

        def run():
            found: list[Customer] = []
            if lookup.vat_id:
                found = self.selector.find_customers_by_vat_id(scope, lookup.vat_id)
            if not found and lookup.tax_id:
                found = self.selector.find_customers_by_tax_id(scope, lookup.tax_id)
            if len(found) > 1:
                logger.warning(
                    "customer_identifier_ambiguous",
                    extra={"customer_count": len(found)},
                )
            customer = found[0] if found else None
            logger.info(
                "customer_identifier_lookup",
                extra={
                    "found": customer is not None,
                    "customer_id": str(customer.customer_id) if customer else None,
                },
            )
            return customer

        return self._read(scope, "find_customer_by_identifier", run)

    def suggest_customers(
        self,
        scope: TenantScope,
        query: str,
        limit: int | None = None,
    ) -> list[CustomerSuggestion]:
        if not isinstance(query, str):
            raise ValidationError("must be a string", field="query")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise ValidationError("must be a positive integer", field="limit")

        def run():
            customers = self.selector.list_customers(scope, active_only=True)
            return self.matcher.suggest(customers, query, limit)

        return self._read(scope, "suggest_customers", run)

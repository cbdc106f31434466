"""
Module: fintel_engines.customer_matcher
Responsibility:
    Resolve free text, e-mail bodies and document fragments to known
    customers.  Extracts identifiers (e-mail, phone, IČO, DIČ, company
    names) with deterministic regular expressions and scores every customer
    of the registry against them.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The customer registry is
    passed in; loading it is the service's job.

Invariants enforced:
    - Extraction is deterministic: the same text always yields the same
      candidates in the same order.
    - An exact tax-ID match (IČO, the IČO inside a DIČ, or the DIČ itself)
      scores exactly 1.0 and no other field is consulted for that customer.
    - A customer's confidence is the maximum of its field scores, never a sum.
    - Only IČO values passing the mod-11 checksum are extracted.

Failure modes:
    - None; text without any recognizable identifier yields no matches.

Scoring (field -> score):
    tax_id / vat_id exact   1.0
    email exact             email_confidence (0.9)
    phone exact             phone_confidence (0.8)
    name fuzzy              name_confidence_scale * similarity (0.7 * s),
                            only when s >= name_min_similarity
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum
from uuid import UUID

from fintel_config.schema import MatcherConfig
from fintel_kernel.domain.dtos import Customer
from fintel_kernel.logging_config import get_logger
from fintel_engines.tracer import traced_engine

logger = get_logger("engines.customer_matcher")

_UPPER = "A-ZÁČĎÉĚÍŇÓŘŠŤÚŮÝŽ"
_LEGAL_FORM = r"(?:spol\.\s?s\s?r\.\s?o\.|s\.\s?r\.\s?o\.|a\.\s?s\.|v\.\s?o\.\s?s\.|k\.\s?s\.)"
_PHONE_BODY = r"(?:\+420[\s-]?)?\d{3}[\s-]?\d{3}[\s-]?\d{3}"

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_LABELED_EMAIL_RE = re.compile(
    r"\be-?mail\s*[:\-]?\s*([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})",
    re.IGNORECASE,
)
_PHONE_RE = re.compile(rf"(?<![\w+]){_PHONE_BODY}(?!\d)")
_LABELED_PHONE_RE = re.compile(
    rf"\b(?:tel|telefon|phone|mobil)\.?\s*[:\-]?\s*({_PHONE_BODY})(?!\d)",
    re.IGNORECASE,
)
_ICO_RE = re.compile(r"\b(\d{8})\b")
_LABELED_ICO_RE = re.compile(r"\b(?:IČO?|ICO?)\s*[:\-]?\s*(\d{8})\b", re.IGNORECASE)
_DIC_RE = re.compile(r"\b(CZ\d{8,10})\b", re.IGNORECASE)
_LABELED_DIC_RE = re.compile(
    r"\b(?:DIČ|DIC|VAT)\s*[:\-]?\s*(CZ\d{8,10})\b", re.IGNORECASE,
)
_LABELED_NAME_RE = re.compile(
    r"\b(?:firma|společnost|odběratel|zákazník|klient|client|customer|company)"
    r"\s*[:\-]\s*([^\n,;]{3,50})",
    re.IGNORECASE,
)
_NEXT_LABEL_RE = re.compile(
    r"\b(?:firma|společnost|odběratel|zákazník|klient|client|customer|company|"
    r"dodavatel|supplier|IČO?|ICO?|DIČ|DIC|tel|telefon|e-?mail)\.?\s*:",
    re.IGNORECASE,
)
_LABEL_VALUE_END_RE = re.compile(r"[ \t]{2,}|\t|[(\[]")
_LEGAL_FORM_RE = re.compile(_LEGAL_FORM)
_LEGAL_FORM_NAME_RE = re.compile(
    rf"((?:[{_UPPER}0-9][\w&\-]*[ \t]+){{0,4}}[{_UPPER}][\w&\-]*)[ \t]*,?[ \t]*{_LEGAL_FORM}"
)
_CAPITALIZED_RE = re.compile(
    rf"\b[{_UPPER}][\w&\-]+(?:[ \t]+[{_UPPER}][\w&\-]+)+"
)

_LEGAL_FORM_STRIP_RE = re.compile(
    r"(?:^|(?<=\s))(?:spol\.?\s?s\s?r\.?\s?o\.?|s\.?\s?r\.?\s?o\.?|a\.\s?s\.|"
    r"v\.\s?o\.\s?s\.|k\.\s?s\.|ltd\.?|inc\.?|gmbh|llc|corp\.?)(?=\s|,|$)",
    re.IGNORECASE,
)

_ICO_WEIGHTS = (8, 7, 6, 5, 4, 3, 2)

_CONTAINED_NAME_SIMILARITY = 0.95


# =============================================================================
# Normalization
# =============================================================================


def normalize_ico(value: str | None) -> str | None:
    """Digits-only IČO left-padded to 8 digits; None when not an IČO shape."""
    if not value:
        return None
    compact = re.sub(r"\s", "", value)
    if not re.fullmatch(r"[0-9]{1,8}", compact):
        return None
    return compact.zfill(8)


def normalize_vat_id(value: str | None) -> str | None:
    """Upper-case DIČ without whitespace; None when not ``CZ`` + 8-10 digits."""
    if not value:
        return None
    compact = re.sub(r"\s", "", value).upper()
    if not re.fullmatch(r"CZ[0-9]{8,10}", compact):
        return None
    return compact


def normalize_phone(value: str | None) -> str | None:
    """Czech 9-digit national number; None for anything else."""
    if not value:
        return None
    digits = re.sub(r"[^0-9]", "", value)
    if len(digits) == 14 and digits.startswith("00420"):
        digits = digits[5:]
    elif len(digits) == 12 and digits.startswith("420"):
        digits = digits[3:]
    return digits if len(digits) == 9 else None


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower() or None


def is_valid_ico(value: str | None) -> bool:
    """IČO checksum: weights 8..2 over the first seven digits, mod 11."""
    ico = normalize_ico(value)
    if ico is None:
        return False
    remainder = sum(int(d) * w for d, w in zip(ico[:7], _ICO_WEIGHTS)) % 11
    if remainder == 0:
        check = 1
    elif remainder == 1:
        check = 0
    else:
        check = 11 - remainder
    return int(ico[7]) == check


def normalize_name(value: str | None) -> str:
    """Lower-case name with legal forms and punctuation removed."""
    if not value:
        return ""
    text = _LEGAL_FORM_STRIP_RE.sub(" ", value.lower())
    text = re.sub(r"[^\w\s&]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def name_similarity(a: str | None, b: str | None) -> float:
    """
    Similarity of two company names in [0, 1].

    Max of the SequenceMatcher ratio and the token Jaccard overlap of the
    normalized names.
    """
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    ratio = SequenceMatcher(None, na, nb).ratio()
    ta, tb = set(na.split()), set(nb.split())
    overlap = len(ta & tb) / len(ta | tb)
    return max(ratio, overlap)


# =============================================================================
# Extraction
# =============================================================================


class ExtractedKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    TAX_ID = "tax_id"
    VAT_ID = "vat_id"
    NAME = "name"


@dataclass(frozen=True)
class ExtractedValue:
    kind: ExtractedKind
    value: str
    labeled: bool = False


@dataclass(frozen=True)
class ExtractedData:
    """Every identifier candidate found in a text, in order of appearance."""

    values: tuple[ExtractedValue, ...] = ()

    def of_kind(self, kind: ExtractedKind, prefer_labeled: bool = False) -> list[ExtractedValue]:
        found = [v for v in self.values if v.kind == kind]
        if prefer_labeled:
            labeled = [v for v in found if v.labeled]
            if labeled:
                return labeled
        return found

    @property
    def emails(self) -> list[str]:
        return [v.value for v in self.of_kind(ExtractedKind.EMAIL)]

    @property
    def phones(self) -> list[str]:
        return [v.value for v in self.of_kind(ExtractedKind.PHONE)]

    @property
    def tax_ids(self) -> list[str]:
        return [v.value for v in self.of_kind(ExtractedKind.TAX_ID)]

    @property
    def vat_ids(self) -> list[str]:
        return [v.value for v in self.of_kind(ExtractedKind.VAT_ID)]

    @property
    def names(self) -> list[str]:
        return [v.value for v in self.of_kind(ExtractedKind.NAME)]

    @property
    def is_empty(self) -> bool:
        return not self.values


class _Collector:
    """Ordered, de-duplicated candidate list; a labeled sighting wins."""

    def __init__(self):
        self._values: dict[tuple[ExtractedKind, str], bool] = {}

    def add(self, kind: ExtractedKind, value: str | None, labeled: bool) -> None:
        if not value:
            return
        key = (kind, value)
        self._values[key] = self._values.get(key, False) or labeled

    def build(self) -> ExtractedData:
        return ExtractedData(tuple(
            ExtractedValue(kind, value, labeled)
            for (kind, value), labeled in self._values.items()
        ))


def _labeled_name(raw: str) -> str | None:
    """Cut a labeled value at a gap, a bracket, the next label or after its legal form."""
    value = _LABEL_VALUE_END_RE.split(raw, maxsplit=1)[0]
    next_label = _NEXT_LABEL_RE.search(value)
    if next_label:
        value = value[:next_label.start()]
    legal_form = _LEGAL_FORM_RE.search(value)
    if legal_form:
        value = value[:legal_form.end()]
    value = value.strip(" \t-:")
    return value if len(value) >= 3 else None


def extract_data_from_text(text: str) -> ExtractedData:
    """Extract e-mails, phones, IČO, DIČ and company names from ``text``."""
    collected = _Collector()
    if not text:
        return collected.build()

    for m in _LABELED_EMAIL_RE.finditer(text):
        collected.add(ExtractedKind.EMAIL, normalize_email(m.group(1)), True)
    for m in _EMAIL_RE.finditer(text):
        collected.add(ExtractedKind.EMAIL, normalize_email(m.group(0)), False)

    for m in _LABELED_PHONE_RE.finditer(text):
        collected.add(ExtractedKind.PHONE, normalize_phone(m.group(1)), True)
    for m in _PHONE_RE.finditer(text):
        collected.add(ExtractedKind.PHONE, normalize_phone(m.group(0)), False)

    for m in _LABELED_ICO_RE.finditer(text):
        if is_valid_ico(m.group(1)):
            collected.add(ExtractedKind.TAX_ID, m.group(1), True)
    for m in _ICO_RE.finditer(text):
        if is_valid_ico(m.group(1)):
            collected.add(ExtractedKind.TAX_ID, m.group(1), False)

    for m in _LABELED_DIC_RE.finditer(text):
        collected.add(ExtractedKind.VAT_ID, normalize_vat_id(m.group(1)), True)
    for m in _DIC_RE.finditer(text):
        collected.add(ExtractedKind.VAT_ID, normalize_vat_id(m.group(1)), False)

    for m in _LABELED_NAME_RE.finditer(text):
        collected.add(ExtractedKind.NAME, _labeled_name(m.group(1)), True)
    for m in _LEGAL_FORM_NAME_RE.finditer(text):
        name = m.group(0).strip()
        if len(name) >= 5:
            collected.add(ExtractedKind.NAME, name, False)
    for m in _CAPITALIZED_RE.finditer(text):
        collected.add(ExtractedKind.NAME, m.group(0).strip(), False)

    return collected.build()


# =============================================================================
# Matching
# =============================================================================


class MatchMode(str, Enum):
    GENERIC = "generic"
    EMAIL = "email"
    DOCUMENT = "document"


class MatchField(str, Enum):
    TAX_ID = "tax_id"
    VAT_ID = "vat_id"
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"


@dataclass(frozen=True)
class MatchedField:
    field: MatchField
    extracted_value: str
    registry_value: str
    field_score: float


@dataclass(frozen=True)
class CustomerMatch:
    customer_id: UUID
    display_name: str
    confidence: float
    matched_fields: tuple[MatchedField, ...]


@dataclass(frozen=True)
class CustomerSuggestion:
    customer_id: UUID
    display_name: str
    score: float
    matched_on: str


@dataclass(frozen=True)
class IdentifierLookup:
    """Normalized forms under which an identifier may be looked up, in order."""

    vat_id: str | None
    tax_id: str | None


def parse_identifier(identifier: str) -> IdentifierLookup:
    """
    A ``CZ``-prefixed value is tried as a DIČ first, then (prefix removed)
    as an IČO.  Anything else can only be an IČO.
    """
    compact = re.sub(r"\s", "", identifier or "").upper()
    vat_id = normalize_vat_id(compact) if compact.startswith("CZ") else None
    bare = compact[2:] if compact.startswith("CZ") else compact
    tax_id = bare if re.fullmatch(r"[0-9]{8}", bare) else None
    return IdentifierLookup(vat_id=vat_id, tax_id=tax_id)


def _sort_matches(matches: Iterable[CustomerMatch]) -> list[CustomerMatch]:
    return sorted(
        matches,
        key=lambda m: (-m.confidence, m.display_name.lower(), str(m.customer_id)),
    )


class CustomerMatcher:
    """
    Scores customers against identifiers extracted from text.

    Contract:
        Callers pass the tenant's customer registry; the matcher never
        looks anything up itself.
    Guarantees:
        - Results are sorted by confidence descending, then display name.
        - Every returned match carries the fields that produced it.
    Non-goals:
        - Address matching.
    """

    def __init__(self, config: MatcherConfig | None = None):
        self.config = config or MatcherConfig.with_defaults()

    def extract_data_from_text(self, text: str) -> ExtractedData:
        return extract_data_from_text(text)

    def _tax_fields(self, customer: Customer, data: ExtractedData, prefer_labeled: bool):
        fields: list[MatchedField] = []
        registry_ico = normalize_ico(customer.tax_id)
        registry_dic = normalize_vat_id(customer.vat_id)

        for candidate in data.of_kind(ExtractedKind.TAX_ID, prefer_labeled):
            if registry_ico and candidate.value == registry_ico:
                fields.append(MatchedField(MatchField.TAX_ID, candidate.value, customer.tax_id, 1.0))
                break

        for candidate in data.of_kind(ExtractedKind.VAT_ID, prefer_labeled):
            if registry_dic and candidate.value == registry_dic:
                fields.append(MatchedField(MatchField.VAT_ID, candidate.value, customer.vat_id, 1.0))
                break
            embedded = candidate.value[2:]
            if registry_ico and len(embedded) == 8 and embedded == registry_ico:
                fields.append(MatchedField(MatchField.TAX_ID, candidate.value, customer.tax_id, 1.0))
                break
        return fields

    def _name_score(
        self,
        customer: Customer,
        data: ExtractedData,
        normalized_text: str,
        mode: MatchMode,
    ) -> MatchedField | None:
        cfg = self.config
        # Unlabeled names are discounted in documents, never dropped
        prefer_labeled = mode == MatchMode.DOCUMENT
        candidates = data.of_kind(ExtractedKind.NAME)

        best: tuple[float, str, str] | None = None
        for registry_name in customer.names:
            for candidate in candidates:
                similarity = name_similarity(registry_name, candidate.value)
                if similarity < cfg.name_min_similarity:
                    continue
                if prefer_labeled and not candidate.labeled:
                    similarity *= cfg.unlabeled_name_factor
                if best is None or similarity > best[0]:
                    best = (similarity, candidate.value, registry_name)

            # The customer's name spelled out verbatim anywhere in the text
            normalized = normalize_name(registry_name)
            if len(normalized) >= 3 and re.search(
                rf"(?<!\w){re.escape(normalized)}(?!\w)", normalized_text
            ):
                similarity = _CONTAINED_NAME_SIMILARITY
                if prefer_labeled:
                    similarity *= cfg.unlabeled_name_factor
                if best is None or similarity > best[0]:
                    best = (similarity, registry_name, registry_name)

        if best is None:
            return None
        similarity, extracted, registry_name = best
        return MatchedField(
            MatchField.NAME,
            extracted,
            registry_name,
            cfg.name_confidence_scale * similarity,
        )

    def _score_customer(
        self,
        customer: Customer,
        data: ExtractedData,
        normalized_text: str,
        mode: MatchMode,
    ) -> CustomerMatch | None:
        cfg = self.config
        prefer_labeled = mode == MatchMode.DOCUMENT

        tax_fields = self._tax_fields(customer, data, prefer_labeled)
        if tax_fields:
            return CustomerMatch(customer.customer_id, customer.display_name, 1.0, tuple(tax_fields))

        fields: list[MatchedField] = []
        registry_email = normalize_email(customer.email)
        for candidate in data.of_kind(ExtractedKind.EMAIL, prefer_labeled):
            if registry_email and candidate.value == registry_email:
                fields.append(MatchedField(
                    MatchField.EMAIL, candidate.value, customer.email, cfg.email_confidence,
                ))
                break

        registry_phone = normalize_phone(customer.phone)
        for candidate in data.of_kind(ExtractedKind.PHONE, prefer_labeled):
            if registry_phone and candidate.value == registry_phone:
                fields.append(MatchedField(
                    MatchField.PHONE, candidate.value, customer.phone, cfg.phone_confidence,
                ))
                break

        name_field = self._name_score(customer, data, normalized_text, mode)
        if name_field is not None:
            fields.append(name_field)

        if not fields:
            return None
        fields.sort(key=lambda f: -f.field_score)
        return CustomerMatch(
            customer.customer_id,
            customer.display_name,
            fields[0].field_score,
            tuple(fields),
        )

    @traced_engine(
        "customer_matcher.text", "1.0",
        fingerprint_fields=("text", "min_confidence", "mode"),
    )
    def match_text(
        self,
        customers: Sequence[Customer],
        text: str,
        min_confidence: float | None = None,
        mode: MatchMode = MatchMode.GENERIC,
    ) -> list[CustomerMatch]:
        """Every customer scoring at least ``min_confidence`` against ``text``."""
        if min_confidence is None:
            min_confidence = self.config.default_min_confidence
        data = extract_data_from_text(text)
        normalized_text = normalize_name(text)

        matches = []
        for customer in customers:
            match = self._score_customer(customer, data, normalized_text, mode)
            if match is not None and match.confidence >= min_confidence:
                matches.append(match)

        result = _sort_matches(matches)
        logger.debug(
            "customer_text_matched",
            extra={
                "mode": mode.value,
                "candidates_extracted": len(data.values),
                "customers_scanned": len(customers),
                "match_count": len(result),
            },
        )
        return result

    def match_email(
        self,
        customers: Sequence[Customer],
        text: str,
        sender_email: str | None = None,
        min_confidence: float | None = None,
    ) -> list[CustomerMatch]:
        """
        A sender address registered to a customer resolves to that customer
        at 1.0 without looking at the body.
        """
        sender = normalize_email(sender_email)
        if sender:
            exact = [
                CustomerMatch(
                    c.customer_id,
                    c.display_name,
                    1.0,
                    (MatchedField(MatchField.EMAIL, sender, c.email, 1.0),),
                )
                for c in customers
                if normalize_email(c.email) == sender
            ]
            if exact:
                return _sort_matches(exact)
            text = f"{text}\n{sender}"

        if min_confidence is None:
            min_confidence = self.config.email_min_confidence
        return self.match_text(customers, text, min_confidence, MatchMode.EMAIL)

    def match_document(
        self,
        customers: Sequence[Customer],
        text: str,
        min_confidence: float | None = None,
    ) -> list[CustomerMatch]:
        if min_confidence is None:
            min_confidence = self.config.document_min_confidence
        return self.match_text(customers, text, min_confidence, MatchMode.DOCUMENT)

    def match_counterparty(
        self,
        name: str | None,
        customers: Sequence[Customer],
        min_similarity: float,
    ) -> list[tuple[Customer, float]]:
        """
        Customers whose display name or an alias resembles a bank
        counterparty name, with the raw similarity, best first.
        """
        if not name or not normalize_name(name):
            return []
        scored = []
        for customer in customers:
            similarity = max(name_similarity(n, name) for n in customer.names)
            if similarity >= min_similarity:
                scored.append((customer, similarity))
        scored.sort(key=lambda pair: (-pair[1], pair[0].display_name.lower()))
        return scored

    def suggest(
        self,
        customers: Sequence[Customer],
        query: str,
        limit: int | None = None,
    ) -> list[CustomerSuggestion]:
        """
        Autocomplete over names, aliases, e-mail and tax IDs.

        Quality ladder: name prefix 1.0, word prefix 0.9, identifier or
        e-mail prefix 0.85, substring 0.7, fuzzy name 0.6 x similarity.
        """
        cfg = self.config
        q = (query or "").strip().lower()
        if len(q) < cfg.suggest_min_query_length:
            return []
        limit = limit or cfg.default_suggest_limit
        compact = re.sub(r"\s", "", q)

        suggestions = []
        for customer in customers:
            best = (0.0, "")
            for registry_name in customer.names:
                lowered = registry_name.lower()
                if lowered.startswith(q):
                    score = 1.0
                elif any(word.startswith(q) for word in lowered.split()):
                    score = 0.9
                elif q in lowered:
                    score = 0.7
                else:
                    similarity = name_similarity(registry_name, query)
                    score = 0.6 * similarity if similarity >= cfg.suggest_min_similarity else 0.0
                if score > best[0]:
                    best = (score, "name")

            identifiers = (
                ("email", normalize_email(customer.email)),
                ("tax_id", normalize_ico(customer.tax_id)),
                ("vat_id", (normalize_vat_id(customer.vat_id) or "").lower() or None),
            )
            for label, value in identifiers:
                if not value:
                    continue
                if value.startswith(compact):
                    score = 0.85
                elif compact in value:
                    score = 0.7
                else:
                    continue
                if score > best[0]:
                    best = (score, label)

            if best[0] > 0:
                suggestions.append(CustomerSuggestion(
                    customer.customer_id, customer.display_name, best[0], best[1],
                ))

        suggestions.sort(key=lambda s: (-s.score, s.display_name.lower(), str(s.customer_id)))
        return suggestions[:limit]

"""
Tests for CustomerMatcher: identifier extraction, scoring, e-mail and
document modes, autocomplete and identifier parsing.
"""

import pytest

from fintel_config.schema import MatcherConfig
from fintel_engines.customer_matcher import (
    CustomerMatcher,
    ExtractedKind,
    MatchField,
    extract_data_from_text,
    is_valid_ico,
    name_similarity,
    normalize_phone,
    parse_identifier,
)

VALID_ICO = "25596641"
OTHER_VALID_ICO = "27082440"


@pytest.fixture
def matcher() -> CustomerMatcher:
    return CustomerMatcher()


@pytest.fixture
def alfa(make_customer):
    return make_customer(
        "Alfa Software s.r.o.",
        email="Info@Alfa.cz",
        phone="777123456",
        tax_id=VALID_ICO,
    )


@pytest.fixture
def beta(make_customer):
    return make_customer("Beta Stavby s.r.o.", tax_id=OTHER_VALID_ICO)


class TestIcoChecksum:
    @pytest.mark.parametrize("value", [VALID_ICO, OTHER_VALID_ICO])
    def test_valid(self, value):
        assert is_valid_ico(value)

    @pytest.mark.parametrize("value", ["25596642", "1234", "", None, "abcdefgh"])
    def test_invalid(self, value):
        assert not is_valid_ico(value)


class TestExtraction:
    def test_labeled_identifiers(self):
        data = extract_data_from_text(
            f"IČO: {VALID_ICO}, DIČ: CZ{VALID_ICO}\ne-mail: Ucetni@Alfa.cz\ntel. 777 123 456"
        )

        assert data.tax_ids == [VALID_ICO]
        assert data.vat_ids == [f"CZ{VALID_ICO}"]
        assert data.emails == ["ucetni@alfa.cz"]
        assert data.phones == ["777123456"]
        assert all(v.labeled for v in data.values if v.kind != ExtractedKind.NAME)

    def test_labeled_name_stops_at_legal_form_and_next_label(self):
        data = extract_data_from_text(
            "Odběratel: Alfa Software s.r.o. Dodavatel: Beta Stavby s.r.o."
        )

        labeled = [v.value for v in data.values if v.kind == ExtractedKind.NAME and v.labeled]
        assert labeled == ["Alfa Software s.r.o."]

    def test_labeled_name_stops_at_bracket(self):
        data = extract_data_from_text("Firma: Alfa Software (pobočka Brno)")

        labeled = [v.value for v in data.values if v.kind == ExtractedKind.NAME and v.labeled]
        assert labeled == ["Alfa Software"]

    def test_ico_failing_checksum_is_ignored(self):
        data = extract_data_from_text("IČO 25596642")

        assert data.tax_ids == []

    def test_extraction_is_deterministic(self):
        text = "Alfa Software s.r.o., info@alfa.cz, +420 777 123 456"

        assert extract_data_from_text(text) == extract_data_from_text(text)

    def test_empty_text(self):
        assert extract_data_from_text("").is_empty

    def test_international_phone_prefix(self):
        assert normalize_phone("00420 777 123 456") == "777123456"
        assert normalize_phone("+420777123456") == "777123456"
        assert normalize_phone("12345") is None


class TestMatchText:
    def test_exact_ico_scores_one(self, matcher, alfa, beta):
        matches = matcher.match_text([alfa, beta], f"Faktura pro IČO: {VALID_ICO}, děkujeme")

        assert len(matches) == 1
        assert matches[0].customer_id == alfa.customer_id
        assert matches[0].confidence == 1.0
        assert matches[0].matched_fields[0].field == MatchField.TAX_ID

    def test_ico_inside_dic_matches_tax_id(self, matcher, beta):
        matches = matcher.match_text([beta], f"platba od CZ{OTHER_VALID_ICO}")

        assert matches[0].confidence == 1.0
        assert matches[0].matched_fields[0].field == MatchField.TAX_ID

    def test_email(self, matcher, alfa, beta):
        matches = matcher.match_text([alfa, beta], "ozvěte se na info@alfa.cz")

        assert [m.customer_id for m in matches] == [alfa.customer_id]
        assert matches[0].confidence == pytest.approx(0.9)
        assert matches[0].matched_fields[0].field == MatchField.EMAIL

    def test_phone(self, matcher, alfa):
        matches = matcher.match_text([alfa], "volejte +420 777 123 456")

        assert matches[0].confidence == pytest.approx(0.8)
        assert matches[0].matched_fields[0].field == MatchField.PHONE

    def test_company_name(self, matcher, alfa, beta):
        matches = matcher.match_text([alfa, beta], "Objednávka od Alfa Software")

        assert [m.customer_id for m in matches] == [alfa.customer_id]
        assert matches[0].confidence == pytest.approx(0.7)

    def test_confidence_is_max_not_sum(self, matcher, alfa):
        matches = matcher.match_text([alfa], "Alfa Software, info@alfa.cz, tel 777 123 456")

        assert matches[0].confidence == pytest.approx(0.9)
        fields = {f.field for f in matches[0].matched_fields}
        assert fields == {MatchField.EMAIL, MatchField.PHONE, MatchField.NAME}

    def test_alias_matches(self, matcher, make_customer):
        customer = make_customer("Jan Novák", aliases=("Truhlářství Novák",))

        matches = matcher.match_text([customer], "Zakázka pro Truhlářství Novák")

        assert matches[0].matched_fields[0].registry_value == "Truhlářství Novák"

    def test_min_confidence_filters(self, matcher, alfa):
        assert matcher.match_text([alfa], "Objednávka od Alfa Software", min_confidence=0.8) == []

    def test_nothing_recognizable(self, matcher, alfa, beta):
        assert matcher.match_text([alfa, beta], "dobrý den, posílám fakturu") == []

    def test_results_sorted_by_confidence(self, matcher, alfa, beta):
        matches = matcher.match_text(
            [alfa, beta], f"Beta Stavby a zároveň IČO {VALID_ICO}",
        )

        assert [m.customer_id for m in matches] == [alfa.customer_id, beta.customer_id]
        assert matches[0].confidence > matches[1].confidence


class TestMatchEmail:
    def test_registered_sender_short_circuits(self, matcher, alfa, beta):
        matches = matcher.match_email([alfa, beta], f"IČO {OTHER_VALID_ICO}", sender_email="INFO@alfa.cz")

        assert [m.customer_id for m in matches] == [alfa.customer_id]
        assert matches[0].confidence == 1.0

    def test_unknown_sender_falls_back_to_body(self, matcher, alfa, beta):
        matches = matcher.match_email([alfa, beta], f"IČO {OTHER_VALID_ICO}", sender_email="x@y.cz")

        assert [m.customer_id for m in matches] == [beta.customer_id]


class TestMatchDocument:
    TEXT = "Dodavatel: Beta Stavby s.r.o.\nOdběratel: Alfa Software s.r.o.\n"

    def test_generic_mode_finds_both_parties(self, matcher, alfa, beta):
        matches = matcher.match_text([alfa, beta], self.TEXT)

        assert {m.customer_id for m in matches} == {alfa.customer_id, beta.customer_id}

    def test_document_mode_prefers_labeled_customer(self, matcher, alfa, beta):
        matches = matcher.match_document([alfa, beta], self.TEXT)

        assert [m.customer_id for m in matches] == [alfa.customer_id]
        assert matches[0].confidence == pytest.approx(0.7)

    @pytest.mark.parametrize("text", [
        "Odběratel: Alfa Software s.r.o. Praha 1",
        "Firma: Alfa Software s.r.o. (pobočka Brno)",
    ])
    def test_labeled_name_followed_by_more_text(self, matcher, alfa, text):
        matches = matcher.match_document([alfa], text)

        assert [m.customer_id for m in matches] == [alfa.customer_id]
        assert matches[0].confidence == pytest.approx(0.7)

    def test_unlabeled_exact_name_is_discounted_not_dropped(self, make_customer):
        customer = make_customer("Alfa Software s.r.o.")
        matcher = CustomerMatcher(MatcherConfig(document_min_confidence=0.5))

        matches = matcher.match_document([customer], "Faktura 2026001\nAlfa Software s.r.o.\n")

        assert [m.customer_id for m in matches] == [customer.customer_id]
        assert matches[0].confidence == pytest.approx(0.7 * 0.8)


class TestSuggest:
    @pytest.fixture
    def customers(self, make_customer):
        return [
            make_customer("Alfa Software", tax_id=VALID_ICO),
            make_customer("Beta Alfa Trade"),
            make_customer("Gamma"),
        ]

    def test_prefix_ranks_above_word_prefix(self, matcher, customers):
        suggestions = matcher.suggest(customers, "alf")

        assert [s.display_name for s in suggestions] == ["Alfa Software", "Beta Alfa Trade"]
        assert [s.score for s in suggestions] == [1.0, 0.9]

    def test_tax_id_prefix(self, matcher, customers):
        suggestions = matcher.suggest(customers, "2559")

        assert suggestions[0].display_name == "Alfa Software"
        assert suggestions[0].matched_on == "tax_id"

    def test_short_query(self, matcher, customers):
        assert matcher.suggest(customers, "a") == []

    def test_limit(self, matcher, customers):
        assert len(matcher.suggest(customers, "alf", limit=1)) == 1


class TestIdentifiers:
    def test_dic_is_tried_before_ico(self):
        lookup = parse_identifier(f"cz {VALID_ICO}")

        assert lookup.vat_id == f"CZ{VALID_ICO}"
        assert lookup.tax_id == VALID_ICO

    def test_bare_ico(self):
        lookup = parse_identifier(VALID_ICO)

        assert lookup.vat_id is None
        assert lookup.tax_id == VALID_ICO

    def test_ten_digit_dic_has_no_ico(self):
        lookup = parse_identifier("CZ1234567890")

        assert lookup.vat_id == "CZ1234567890"
        assert lookup.tax_id is None

    def test_garbage(self):
        lookup = parse_identifier("not an id")

        assert lookup.vat_id is None and lookup.tax_id is None

    def test_name_similarity_ignores_legal_form(self):
        assert name_similarity("Alfa Software s.r.o.", "ALFA SOFTWARE") == 1.0

"""Currency -- ISO 4217 subset and precision-derived rounding for invoice amounts."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount (0.01 for CZK)."""
        if self.decimal_places == 0:
            return Decimal("1")
        return Decimal("0." + "0" * (self.decimal_places - 1) + "1")

    @property
    def quantize_string(self) -> str:
        """String for Decimal.quantize() to round to this currency's precision."""
        if self.decimal_places == 0:
            return "1"
        return "0." + "0" * self.decimal_places


class CurrencyRegistry:
    """Currencies the billing ledger issues invoices in."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "CZK": CurrencyInfo("CZK", 2, "Czech Koruna"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
        "PLN": CurrencyInfo("PLN", 2, "Polish Zloty"),
        "HUF": CurrencyInfo("HUF", 2, "Hungarian Forint"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen"),
    }

    DEFAULT_DECIMAL_PLACES: ClassVar[int] = 2

    @classmethod
    def is_valid(cls, code: str) -> bool:
        if not code or not isinstance(code, str):
            return False
        return code.upper() in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        if not code or not isinstance(code, str):
            return None
        return cls._CURRENCIES.get(code.upper())

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        info = cls.get_info(code)
        return info.decimal_places if info else cls.DEFAULT_DECIMAL_PLACES

    @classmethod
    def minor_unit(cls, code: str) -> Decimal:
        places = cls.get_decimal_places(code)
        return Decimal(1).scaleb(-places)

    @classmethod
    def quantize(cls, amount: Decimal, code: str) -> Decimal:
        """Round ``amount`` half-up to the currency's minor unit."""
        return amount.quantize(cls.minor_unit(code), rounding=ROUND_HALF_UP)

    @classmethod
    def validate(cls, code: str) -> str:
        """Validate and normalize a currency code."""
        if not code or not isinstance(code, str):
            raise ValueError(f"Invalid currency code: {code!r}")
        normalized = code.strip().upper()
        if normalized not in cls._CURRENCIES:
            raise ValueError(f"Unsupported currency code: {code!r}")
        return normalized

    @classmethod
    def all_codes(cls) -> frozenset[str]:
        return frozenset(cls._CURRENCIES.keys())

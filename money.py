"""
money.py
========
Currency value type shared by every pricing computation.

A ``Money`` is an immutable ``(amount, currency)`` pair. Amounts are held as
``Decimal`` and are always rounded to the smallest currency unit (two decimal
places, half-up) on construction, so every arithmetic result is already
rounded.

Errors:
-------
- ``CurrencyMismatchError``: binary operation between two currencies.
- ``InvalidAmountError``:    amount is not a finite number.
- ``DivisionByZeroError``:   ``divide(0)``.

All three derive from ``MoneyError`` and are raised, never swallowed: they
indicate a programming or data error rather than a business condition.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from config import settings

CENTS = Decimal("0.01")

# Currencies displayed without minor units
ZERO_DECIMAL_CURRENCIES = {"CLP", "JPY", "KRW"}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "CLP": "$",
    "MXN": "$",
    "ARS": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}


# ─────────────── Errors ───────────────

class MoneyError(Exception):
    """Base class for currency arithmetic errors."""


class InvalidAmountError(MoneyError):
    def __init__(self, value: Any):
        super().__init__(f"Amount must be a valid number, got {value!r}")
        self.value = value


class CurrencyMismatchError(MoneyError):
    def __init__(self, left: str, right: str):
        super().__init__(f"Cannot perform operations on different currencies: {left} and {right}")
        self.left = left
        self.right = right


class DivisionByZeroError(MoneyError):
    def __init__(self):
        super().__init__("Cannot divide by zero")


# ─────────────── Helpers ───────────────

def to_decimal(value: Any) -> Decimal:
    """Coerce ``value`` to a finite ``Decimal`` or raise ``InvalidAmountError``."""
    if isinstance(value, bool):
        raise InvalidAmountError(value)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # repr() keeps the shortest round-tripping form: 0.1 -> Decimal("0.1")
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmountError(value) from None
    else:
        raise InvalidAmountError(value)

    if not result.is_finite():
        raise InvalidAmountError(value)
    return result


def round_amount(value: Any) -> Decimal:
    try:
        rounded = to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # Too many digits for the decimal context
        raise InvalidAmountError(value) from None
    # Avoid "-0.00"
    return rounded if rounded != 0 else abs(rounded)


# ─────────────── Money ───────────────

class Money(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal = Decimal("0.00")
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY)

    def __init__(self, amount: Any = 0, currency: Optional[str] = None, **data: Any) -> None:
        super().__init__(amount=amount, currency=settings.DEFAULT_CURRENCY if currency is None else currency, **data)

    @field_validator("amount", mode="before")
    @classmethod
    def round_to_cents(cls, v: Any) -> Decimal:
        return round_amount(v)

    @field_validator("currency")
    @classmethod
    def currency_code(cls, v: str) -> str:
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("Currency must be a 3-letter ISO code")
        return code

    @field_serializer("amount", when_used="json")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)

    # ── Factories ──

    @classmethod
    def zero(cls, currency: Optional[str] = None) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_cents(cls, cents: int, currency: Optional[str] = None) -> "Money":
        return cls(Decimal(cents) / 100, currency)

    @classmethod
    def total(cls, values: Iterable["Money"], currency: Optional[str] = None) -> "Money":
        """Sum ``values``; an empty iterable yields zero in ``currency``."""
        result = cls.zero(currency)
        for value in values:
            result = result.add(value)
        return result

    @staticmethod
    def max(a: "Money", b: "Money") -> "Money":
        return a if a.is_greater_than(b) else b

    @staticmethod
    def min(a: "Money", b: "Money") -> "Money":
        return a if a.is_less_than(b) else b

    # ── Arithmetic ──

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def add(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def multiply(self, factor: Any) -> "Money":
        return Money(self.amount * to_decimal(factor), self.currency)

    def divide(self, divisor: Any) -> "Money":
        d = to_decimal(divisor)
        if d == 0:
            raise DivisionByZeroError()
        return Money(self.amount / d, self.currency)

    __add__ = add
    __sub__ = subtract
    __mul__ = multiply
    __rmul__ = multiply
    __truediv__ = divide

    # ── Comparison ──

    def is_greater_than(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def is_less_than(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def is_equal(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount == other.amount

    def __lt__(self, other: "Money") -> bool:
        return self.is_less_than(other)

    def __gt__(self, other: "Money") -> bool:
        return self.is_greater_than(other)

    def __le__(self, other: "Money") -> bool:
        return not self.is_greater_than(other)

    def __ge__(self, other: "Money") -> bool:
        return not self.is_less_than(other)

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def is_positive(self) -> bool:
        return self.amount > 0

    # ── Conversion ──

    def to_cents(self) -> int:
        return int(self.amount * 100)

    def format(self) -> str:
        """Locale-free display string, e.g. ``$1,234.50`` or ``$12.990`` for CLP."""
        sign = "-" if self.is_negative() else ""
        magnitude = abs(self.amount)
        if self.currency in ZERO_DECIMAL_CURRENCIES:
            body = f"{magnitude.quantize(Decimal(1), rounding=ROUND_HALF_UP):,}"
            if self.currency == "CLP":
                body = body.replace(",", ".")
        else:
            body = f"{magnitude:,.2f}"

        symbol = CURRENCY_SYMBOLS.get(self.currency)
        if symbol is None:
            return f"{sign}{body} {self.currency}"
        return f"{sign}{symbol}{body}"

    def __str__(self) -> str:
        return f"{self.currency} {self.amount:.2f}"

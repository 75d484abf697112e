"""
Money Module

Fixed-point currency values held as integer minor units (cents) with an
explicit ISO 4217 currency. NEVER uses float for monetary values; rounding
happens once, half-up, at the point a percentage is taken.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass
from typing import Union
from enum import Enum

from .errors import CurrencyMismatchError, NegativeResultError, ValidationError


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    KES = ("KES", 2)  # Kenyan Shilling, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def scale(self) -> int:
        """Minor units per major unit"""
        return 10 ** self.precision


AmountLike = Union[str, int, Decimal]

# Largest magnitude, in minor units, that Money.of accepts
MAX_MINOR_UNITS = 10 ** 18 - 1
# Decimal inputs are bounded to this many digits either side of the point
MAX_DIGITS = 30


def _to_decimal(value: AmountLike, what: str) -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{what} cannot be a float; use str or Decimal")
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Cannot convert '{value}' to {what.lower()}")
    if not result.is_finite():
        raise ValidationError(f"{what} must be finite, got {value}")
    if result and (result.adjusted() > MAX_DIGITS or result.as_tuple().exponent < -MAX_DIGITS):
        raise ValidationError(f"{what} {value} is out of range")
    return result


def _divide_half_up(numerator: int, denominator: int) -> int:
    """Exact integer division, halves rounded away from zero (ROUND_HALF_UP)"""
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return -quotient if numerator < 0 else quotient


@dataclass(frozen=True)
class Money:
    """
    Immutable money value: an integer count of minor units plus a currency.
    All components exchange amounts exclusively through this type.
    """
    minor_units: int
    currency: Currency

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise ValidationError(
                f"Money minor units must be an integer, got {type(self.minor_units).__name__}"
            )

    @classmethod
    def of(cls, amount: AmountLike, currency: Currency) -> 'Money':
        """
        Build Money from a major-unit amount ("1500.50", 1500, Decimal)

        Sub-minor-unit precision is rounded half-up to the currency precision.
        """
        value = _to_decimal(amount, "Money amount")
        numerator, denominator = value.as_integer_ratio()
        minor = _divide_half_up(numerator * currency.scale, denominator)
        if abs(minor) > MAX_MINOR_UNITS:
            raise ValidationError(f"Money amount {amount} is out of range")
        return cls(minor, currency)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(0, currency)

    @property
    def amount(self) -> Decimal:
        """Major-unit Decimal view, for display and serialization only"""
        return Decimal(self.minor_units).scaleb(-self.currency.precision)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise ValidationError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}"
            )

    def add(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.minor_units + other.minor_units, self.currency)

    def subtract(self, other: 'Money', allow_negative: bool = True) -> 'Money':
        """
        Subtract other from this amount

        Raises:
            NegativeResultError: If allow_negative is False and the result is below zero
        """
        self._check_currency(other, "subtract")
        result = self.minor_units - other.minor_units
        if result < 0 and not allow_negative:
            raise NegativeResultError(
                f"{self.to_string()} - {other.to_string()} would be negative"
            )
        return Money(result, self.currency)

    def percentage_of(self, rate: AmountLike) -> 'Money':
        """
        Take rate percent of this amount, rounded half-up to the minor unit

        Args:
            rate: Percentage as str/int/Decimal, e.g. "15" for 15%
        """
        numerator, denominator = _to_decimal(rate, "Rate").as_integer_ratio()
        return Money(
            _divide_half_up(self.minor_units * numerator, denominator * 100),
            self.currency
        )

    def compare(self, other: 'Money') -> int:
        """Three-way comparison: -1, 0 or 1"""
        self._check_currency(other, "compare")
        return (self.minor_units > other.minor_units) - (self.minor_units < other.minor_units)

    def __add__(self, other: 'Money') -> 'Money':
        return self.add(other)

    def __sub__(self, other: 'Money') -> 'Money':
        return self.subtract(other)

    def __neg__(self) -> 'Money':
        return Money(-self.minor_units, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.minor_units), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        return self.compare(other) < 0

    def __le__(self, other: 'Money') -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: 'Money') -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: 'Money') -> bool:
        return self.compare(other) >= 0

    def is_zero(self) -> bool:
        """True for exactly zero minor units"""
        return self.minor_units == 0

    def is_positive(self) -> bool:
        return self.minor_units > 0

    def is_negative(self) -> bool:
        return self.minor_units < 0

    def to_string(self) -> str:
        """Display form, e.g. "KES 100,000.00"."""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        else:
            return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {"minor_units": self.minor_units, "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(int(data["minor_units"]), Currency[data["currency"]])


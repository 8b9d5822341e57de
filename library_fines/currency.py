"""
Money Module

Two-decimal monetary amounts for fines and payments. NEVER uses float for
monetary values; every amount is a Decimal rounded half-up to the minor unit.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

MINOR_UNIT = Decimal('0.01')


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation rounded to two decimal places.
    Negative values are allowed for deltas; stored balances stay >= 0.
    """
    amount: Decimal

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls) -> 'Money':
        return cls(Decimal('0'))

    @classmethod
    def of(cls, value: Union['Money', Decimal, str, int]) -> 'Money':
        """Coerce a Decimal, string or integer into Money"""
        if isinstance(value, Money):
            return value
        if isinstance(value, float):
            raise TypeError("Money cannot be built from float; pass a string or Decimal")
        if isinstance(value, str):
            return cls(decimal_from_string(value))
        return cls(Decimal(value))

    def __add__(self, other: 'Money') -> 'Money':
        return Money(self.amount + other.amount)

    def __sub__(self, other: 'Money') -> 'Money':
        return Money(self.amount - other.amount)

    def __mul__(self, multiplier) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier)

    def __neg__(self) -> 'Money':
        return Money(-self.amount)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount))

    def __lt__(self, other: 'Money') -> bool:
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self, symbol: str = "$") -> str:
        """Format for display, e.g. $1,250.50"""
        return f"{symbol}{self.amount:,.2f}"

    def __str__(self) -> str:
        return str(self.amount)


def max_money(first: Money, second: Money) -> Money:
    return first if first >= second else second


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "2.00", "$1,250.50"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Drop the dollar sign, whitespace and thousands separators; nothing else
    clean_value = re.sub(r'[\s$,]', '', value)

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Not a finite amount: '{value}'")
    return result

"""Rounding rules every figure goes through.

Currency amounts round half-up to the currency's minor unit and hours
round half-up to three decimals, matching the figures guardians see on
statements.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union


# Currency precision rules for settlement/display
CURRENCY_DECIMALS = {
    'USD': 2, 'EUR': 2, 'GBP': 2, 'EGP': 2,
    'CAD': 2, 'AUD': 2, 'SAR': 2, 'AED': 2,
    'JPY': 0, 'KRW': 0,
}

HOURS_QUANTUM = Decimal('0.001')
ZERO = Decimal('0')

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Normalize a number to Decimal, going through str for floats."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_currency(value: Number, currency: str = 'USD') -> Decimal:
    """Round half-up to the currency's minor unit."""
    decimals = CURRENCY_DECIMALS.get(currency, 2)
    return to_decimal(value).quantize(Decimal(10) ** -decimals, rounding=ROUND_HALF_UP)


def round_hours(value: Number) -> Decimal:
    """Round half-up to 3 decimal places."""
    return to_decimal(value).quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)


def minutes_to_hours(minutes: Number) -> Decimal:
    return round_hours(to_decimal(minutes) / 60)

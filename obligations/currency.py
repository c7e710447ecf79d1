"""
Currency and Amount Module

ISO 4217 currency codes and Decimal helpers for obligation amounts.
NEVER uses float for monetary values: every amount entering the engine is
converted with to_amount() and quantized to the currency precision.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

# High precision for intermediate arithmetic; results are quantized
getcontext().prec = 28

ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    INR = ("INR", 2)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


AmountLike = Union[Decimal, int, str]


def quantize(value: Decimal, places: int = 2) -> Decimal:
    """Round a Decimal to a fixed number of places, halves away from zero"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def to_amount(value: AmountLike, places: int = 2) -> Decimal:
    """
    Convert an int, str or Decimal into a quantized Decimal amount

    Args:
        value: Amount to convert; floats are rejected to avoid binary rounding
        places: Number of decimal places to keep

    Returns:
        Quantized Decimal

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Amounts must be Decimal, int or str, got {type(value).__name__}")

    if isinstance(value, str):
        value = decimal_from_string(value)

    try:
        return quantize(Decimal(value), places)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Cannot convert {value!r} to an amount")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_amount(amount: Decimal, currency: Currency = Currency.USD) -> str:
    """Format for display"""
    if currency.precision == 0:
        return f"{currency.code} {amount:,.0f}"
    return f"{currency.code} {amount:,.{currency.precision}f}"

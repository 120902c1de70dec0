"""
Money Rounding Module

Single money-rounding policy for the gold loan core. Every derived amount
(interest, totals, installments, rebates, balances) is rounded half-up to the
smallest currency unit through this module. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal("0")

Number = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 currency codes with the precision loans are billed in"""
    INR = ("INR", 0)  # Indian Rupee, billed in whole rupees
    USD = ("USD", 2)
    EUR = ("EUR", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code '{code}'")


def to_decimal(value: Number) -> Decimal:
    """
    Safely convert a value to Decimal

    Args:
        value: Decimal, int or numeric string (currency symbols and
            thousands separators are stripped)

    Returns:
        Decimal value

    Raises:
        ValueError: If the value cannot be converted or is a float
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Refusing to convert {type(value).__name__} to Decimal: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a Decimal, int or non-empty string")

    clean_value = re.sub(r"[^\d.\-+]", "", value.strip().replace(",", ""))
    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def round_money(value: Number, currency: Currency = Currency.INR) -> Decimal:
    """Round to the currency's smallest unit using round-half-up"""
    return to_decimal(value).quantize(
        Decimal("0.1") ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division"""
    return int((Decimal(numerator) / Decimal(denominator)).to_integral_value(rounding=ROUND_CEILING))


def format_money(value: Number, currency: Currency = Currency.INR) -> str:
    """Format for display"""
    amount = round_money(value, currency)
    if currency.precision == 0:
        return f"{currency.code} {amount:,.0f}"
    return f"{currency.code} {amount:,.{currency.precision}f}"

"""
LEDGER CORE - DECIMAL PRECISION & WEIGHT UTILITIES

This module provides:
1. Weight precision lock (3-decimal places, grams)
2. Cash precision lock (2-decimal places)
3. Safe Decimal summation
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
from bson import Decimal128
import logging

logger = logging.getLogger(__name__)

# Precision configuration
WEIGHT_PLACES = 3
WEIGHT_QUANTIZE = Decimal('0.001')
AMOUNT_PLACES = 2
AMOUNT_QUANTIZE = Decimal('0.01')

Numeric = Union[float, int, str, Decimal, Decimal128, None]


class LedgerPrecisionError(Exception):
    """Raised when a value cannot be interpreted as a ledger quantity"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any stored numeric value to Decimal.
    Missing values (None) count as zero.
    Does NOT round - preserves full precision for intermediate sums.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, bool):
        raise LedgerPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip() or '0')
        except InvalidOperation:
            raise LedgerPrecisionError(f"Invalid numeric value: {value!r}")
    raise LedgerPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_weight(value: Numeric) -> Decimal:
    """Round a weight/gold quantity to 3 decimal places."""
    return to_decimal(value).quantize(WEIGHT_QUANTIZE, rounding=ROUND_HALF_UP)


def round_amount(value: Numeric) -> Decimal:
    """Round a cash amount to 2 decimal places."""
    return to_decimal(value).quantize(AMOUNT_QUANTIZE, rounding=ROUND_HALF_UP)


def weight_to_float(value: Numeric) -> float:
    """
    Convert a weight back to float for MongoDB storage.
    Rounds to 3 decimal places first.
    """
    return float(round_weight(value))


def amount_to_float(value: Numeric) -> float:
    """
    Convert a cash amount back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_amount(value))


def to_int(value: Numeric) -> int:
    """Piece counts are whole numbers; missing counts are zero."""
    return int(to_decimal(value).to_integral_value(rounding=ROUND_HALF_UP))


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result

"""Decimal parsing utilities for quantities and amounts coming from the POS."""
from decimal import Decimal, InvalidOperation
from typing import Union

Number = Union[int, float, str, Decimal]

QTY_QUANT = Decimal('0.001')
MONEY_QUANT = Decimal('0.01')


def to_decimal(value: Number) -> Decimal:
    """
    Convert a POS numeric value to Decimal without float noise.

    Floats go through str() so 0.1 becomes Decimal('0.1').
    NaN and Infinity are returned as-is; callers decide whether they are valid.

    Raises:
        ValueError: if the value is None, empty or not numeric.
    """
    if value is None:
        raise ValueError('Numeric value is required')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f'Invalid numeric value: {value!r}')
    cleaned = str(value).strip()
    if not cleaned:
        raise ValueError('Numeric value is required')
    try:
        return Decimal(cleaned)
    except (InvalidOperation, ValueError):
        raise ValueError(f'Invalid numeric value: {value!r}')


def is_positive_finite(value) -> bool:
    """True for finite numbers strictly greater than zero."""
    try:
        number = to_decimal(value)
    except ValueError:
        return False
    return number.is_finite() and number > 0


def quantize_qty(value: Decimal) -> Decimal:
    """Round a stock quantity to the kardex precision (3 decimals)."""
    return value.quantize(QTY_QUANT)


def quantize_money(value: Decimal) -> Decimal:
    """Round an amount to cents."""
    return value.quantize(MONEY_QUANT)

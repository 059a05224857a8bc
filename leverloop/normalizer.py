"""
normalizer.py - Native <-> canonical value conversion

Two assets with different decimal precisions and independent prices can only
be compared once both are expressed as canonical values: base-currency
amounts quantized to CANONICAL_DECIMALS places.

Every conversion truncates toward zero. A borrow, a withdrawal or a minimum
swap output sized from these functions is therefore never larger than the
exact figure.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, localcontext

from .core import CANONICAL_DECIMALS, ZERO, to_decimal


CANONICAL_QUANTUM = Decimal(10) ** -CANONICAL_DECIMALS


def _check_price(price: Decimal) -> Decimal:
    price = to_decimal(price)
    if not price.is_finite() or price <= ZERO:
        raise ValueError(f"price must be positive and finite, got {price}")
    return price


def _check_decimals(decimals: int) -> int:
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError(f"decimals must be a non-negative int, got {decimals!r}")
    return decimals


def quantize_native(amount: Decimal, decimals: int, rounding: str = ROUND_DOWN) -> Decimal:
    """Quantize an amount to an asset's native precision."""
    decimals = _check_decimals(decimals)
    return to_decimal(amount).quantize(Decimal(10) ** -decimals, rounding=rounding)


def quantize_value(value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
    """Quantize a value to canonical precision."""
    return to_decimal(value).quantize(CANONICAL_QUANTUM, rounding=rounding)


def to_canonical(amount: Decimal, price: Decimal, decimals: int) -> Decimal:
    """
    Value of a native amount in canonical units.

    Args:
        amount: Native amount (already at most `decimals` places)
        price: Base-currency price of one whole unit
        decimals: Native precision of the asset

    Returns:
        amount * price, truncated to CANONICAL_DECIMALS places
    """
    price = _check_price(price)
    amount = quantize_native(amount, decimals)
    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        return quantize_value(amount * price)


def from_canonical(value: Decimal, price: Decimal, decimals: int) -> Decimal:
    """
    Native amount of an asset worth `value` canonical units.

    The division itself runs under ROUND_DOWN so the 50-digit intermediate can
    never round up across a native quantum boundary.
    """
    price = _check_price(price)
    decimals = _check_decimals(decimals)
    value = to_decimal(value)
    if value <= ZERO:
        return quantize_native(ZERO, decimals)
    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        return quantize_native(value / price, decimals)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Integer wire representation (amount * 10**decimals), truncated."""
    decimals = _check_decimals(decimals)
    return int(quantize_native(amount, decimals).scaleb(decimals))


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Inverse of to_base_units."""
    decimals = _check_decimals(decimals)
    return Decimal(int(raw)).scaleb(-decimals)

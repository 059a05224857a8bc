"""
sizer.py - Safe borrow increment sizing

Pure functions, no ledger access. All inputs are canonical values except the
debt asset's price and decimals, which are only used to express the result
in native debt units.

compute_borrow_increment() is a single linear step: it projects the health
factor against the *current* collateral value only, ignoring the collateral
the borrowed amount will buy. The projection is therefore conservative. It can
stop short of the constrained optimum (the loop simply iterates again) but it
never borrows past the caller's minimum health factor.

For validating targets up front, leverage_ceiling() gives the closed-form
steady state that repeated increments converge to.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, localcontext

from .core import ZERO, ONE, INFINITE_HEALTH, to_decimal
from .normalizer import to_canonical, from_canonical, quantize_native, quantize_value


def _check_fraction(name: str, value: Decimal) -> Decimal:
    value = to_decimal(value)
    if not ZERO <= value < ONE:
        raise ValueError(f"{name} must be in [0, 1), got {value}")
    return value


def health_factor(collateral_value: Decimal, debt_value: Decimal,
                  liquidation_threshold: Decimal) -> Decimal:
    """(collateral_value * liquidation_threshold) / debt_value; Infinity without debt."""
    debt_value = to_decimal(debt_value)
    if debt_value <= ZERO:
        return INFINITE_HEALTH
    return to_decimal(collateral_value) * to_decimal(liquidation_threshold) / debt_value


def max_safe_debt_value(collateral_value: Decimal, liquidation_threshold: Decimal,
                        min_health_factor: Decimal) -> Decimal:
    """Largest debt value with health factor >= min_health_factor, truncated."""
    min_health_factor = to_decimal(min_health_factor)
    if min_health_factor <= ZERO:
        raise ValueError(f"min_health_factor must be positive, got {min_health_factor}")
    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        return quantize_value(
            to_decimal(collateral_value) * to_decimal(liquidation_threshold) / min_health_factor
        )


def projected_health_factor(collateral_value: Decimal, debt_value: Decimal,
                            borrow_increment: Decimal, liquidation_threshold: Decimal,
                            debt_price: Decimal, debt_decimals: int) -> Decimal:
    """Health factor after borrowing `borrow_increment` native debt units."""
    projected_debt = to_decimal(debt_value) + to_canonical(borrow_increment, debt_price, debt_decimals)
    return health_factor(collateral_value, projected_debt, liquidation_threshold)


def compute_borrow_increment(
    current_collateral_value: Decimal,
    current_debt_value: Decimal,
    ltv: Decimal,
    liquidation_threshold: Decimal,
    min_health_factor: Decimal,
    debt_price: Decimal,
    debt_decimals: int,
) -> Decimal:
    """
    Next safe borrow increment in native debt units.

    Steps:
        1. max_borrow_value = collateral_value * ltv
        2. no headroom at the ltv limit -> 0
        3. candidate = (max_borrow_value - debt_value) in native units
        4. project the health factor of debt_value + candidate
        5. below min_health_factor -> clamp to the debt headroom at exactly
           min_health_factor, floored at zero

    Returns:
        Native amount >= 0, truncated toward zero. Zero means stop.

    Raises:
        ValueError: On negative values, fractions outside [0, 1) or a
            non-positive minimum health factor
    """
    collateral_value = to_decimal(current_collateral_value)
    debt_value = to_decimal(current_debt_value)
    if collateral_value < ZERO or debt_value < ZERO:
        raise ValueError("collateral and debt values must be non-negative")
    ltv = _check_fraction("ltv", ltv)
    liquidation_threshold = _check_fraction("liquidation_threshold", liquidation_threshold)
    min_health_factor = to_decimal(min_health_factor)
    if min_health_factor <= ZERO:
        raise ValueError(f"min_health_factor must be positive, got {min_health_factor}")

    zero = quantize_native(ZERO, debt_decimals)

    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        max_borrow_value = quantize_value(collateral_value * ltv)
    if max_borrow_value <= debt_value:
        return zero

    increment = from_canonical(max_borrow_value - debt_value, debt_price, debt_decimals)

    projected = projected_health_factor(
        collateral_value, debt_value, increment, liquidation_threshold, debt_price, debt_decimals
    )
    if projected < min_health_factor:
        headroom = max_safe_debt_value(collateral_value, liquidation_threshold, min_health_factor) - debt_value
        if headroom <= ZERO:
            return zero
        increment = min(increment, from_canonical(headroom, debt_price, debt_decimals))

    return max(increment, zero)


def leverage_ceiling(ltv: Decimal, liquidation_threshold: Decimal,
                     min_health_factor: Decimal) -> Decimal:
    """
    Supremum of collateral/equity reachable by repeated safe increments.

    The binding debt fraction is f = min(ltv, liquidation_threshold / min_hf);
    the loop converges to debt = f * collateral, i.e. leverage 1 / (1 - f).
    With ltv = 0.75 and no binding health factor this is 4x.
    """
    ltv = _check_fraction("ltv", ltv)
    liquidation_threshold = to_decimal(liquidation_threshold)
    min_health_factor = to_decimal(min_health_factor)
    if min_health_factor <= ZERO:
        raise ValueError(f"min_health_factor must be positive, got {min_health_factor}")
    fraction = min(ltv, liquidation_threshold / min_health_factor)
    if fraction >= ONE:
        return INFINITE_HEALTH
    return ONE / (ONE - fraction)


def target_collateral_value(margin_value: Decimal, target_leverage: Decimal) -> Decimal:
    """Collateral value that realizes `target_leverage` on `margin_value` of equity."""
    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        return quantize_value(to_decimal(margin_value) * to_decimal(target_leverage))

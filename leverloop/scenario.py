"""
scenario.py - Leverage sweeps over preview_loop

Runs preview_loop across a grid of target leverages and collects the results
as numpy arrays, for choosing a leverage / health-factor pair before
committing. Unreachable targets are reported as NaN rows rather than
aborting the sweep.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Iterable

import numpy as np

from .core import LoopError, to_decimal
from .engine import LoopEngine
from .normalizer import to_canonical


def leverage_grid(start: float, stop: float, num: int) -> list:
    """Evenly spaced target leverages as Decimals (rounded to 4 places)."""
    if num < 1:
        raise ValueError(f"num must be >= 1, got {num}")
    return [Decimal(f"{x:.4f}") for x in np.linspace(start, stop, num)]


def leverage_sweep(
    engine: LoopEngine,
    collateral_asset: str,
    debt_asset: str,
    initial_margin: Decimal,
    leverages: Iterable[Decimal],
    min_health_factor: Decimal,
    slippage_tolerance: Decimal,
) -> Dict[str, np.ndarray]:
    """
    Preview a loop for each target leverage.

    Returns:
        Dict of equally long float arrays:
        - 'target_leverage'
        - 'iterations'
        - 'collateral_amount', 'debt_amount' (native units)
        - 'health_factor'
        - 'realized_leverage' (collateral value / equity at oracle prices)
    """
    leverages = [to_decimal(x) for x in leverages]
    n = len(leverages)
    columns = {
        name: np.full(n, np.nan)
        for name in ('iterations', 'collateral_amount', 'debt_amount',
                     'health_factor', 'realized_leverage')
    }
    columns['target_leverage'] = np.array([float(x) for x in leverages])

    collateral_price = engine.prices.get_price(collateral_asset)
    debt_price = engine.prices.get_price(debt_asset)
    c_decimals = engine.decimals(collateral_asset)
    d_decimals = engine.decimals(debt_asset)

    for i, leverage in enumerate(leverages):
        try:
            preview = engine.preview_loop(collateral_asset, debt_asset, initial_margin, leverage,
                                          min_health_factor, slippage_tolerance)
        except LoopError:
            continue
        collateral_value = to_canonical(preview.collateral_amount, collateral_price, c_decimals)
        debt_value = to_canonical(preview.debt_amount, debt_price, d_decimals)
        columns['iterations'][i] = preview.iterations
        columns['collateral_amount'][i] = float(preview.collateral_amount)
        columns['debt_amount'][i] = float(preview.debt_amount)
        columns['health_factor'][i] = float(preview.health_factor)
        columns['realized_leverage'][i] = float(collateral_value / (collateral_value - debt_value))

    return columns

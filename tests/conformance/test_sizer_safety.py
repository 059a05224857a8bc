"""
Sizer Safety Conformance Tests

INVARIANT: A borrow increment never pushes the account past either limit.

    ∀ collateral C, debt D, ltv, LT, minHF, price, decimals:
        inc = compute_borrow_increment(...)
        inc > 0  ⇒  D + value(inc) ≤ C · ltv
                 ∧  HF(C, D + value(inc)) ≥ minHF
        D ≥ C · ltv  ⇒  inc = 0

Repeating increments (with no slippage) therefore converges to, but never
exceeds, leverage_ceiling(ltv, LT, minHF).
"""

from decimal import Decimal
from hypothesis import given, settings, assume
from hypothesis import strategies as st

from leverloop import (
    compute_borrow_increment, projected_health_factor, leverage_ceiling,
    to_canonical, quantize_value,
)


fractions = st.decimals(min_value=Decimal("0"), max_value=Decimal("0.9"), places=4)
gaps = st.decimals(min_value=Decimal("0"), max_value=Decimal("0.09"), places=4)
health_factors = st.decimals(min_value=Decimal("1"), max_value=Decimal("3"), places=3)
collateral_values = st.decimals(min_value=Decimal("0"), max_value=Decimal("1000000000"), places=6)
debt_fractions = st.decimals(min_value=Decimal("0"), max_value=Decimal("1.2"), places=4)
debt_prices = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("5000"), places=4)
debt_decimals = st.sampled_from([0, 2, 6, 8, 18])


class TestIncrementProperties:
    """Property-based checks of a single increment."""

    @given(collateral_values, debt_fractions, fractions, gaps, health_factors, debt_prices, debt_decimals)
    @settings(max_examples=300)
    def test_increment_respects_both_limits(self, collateral, debt_fraction, ltv, gap, min_hf,
                                            price, decimals):
        """
        PROPERTY: A positive increment stays within ltv and above min health factor.
        """
        lt = ltv + gap
        debt = quantize_value(collateral * ltv * debt_fraction)
        increment = compute_borrow_increment(collateral, debt, ltv, lt, min_hf, price, decimals)

        assert increment >= 0
        assert increment.as_tuple().exponent >= -decimals
        if increment > 0:
            borrowed = to_canonical(increment, price, decimals)
            assert debt + borrowed <= collateral * ltv
            projected = projected_health_factor(collateral, debt, increment, lt, price, decimals)
            assert projected >= min_hf

    @given(collateral_values, fractions, gaps, health_factors, debt_prices)
    @settings(max_examples=100)
    def test_no_increment_at_ltv_limit(self, collateral, ltv, gap, min_hf, price):
        """
        PROPERTY: An account at or past its ltv limit is never lent more.
        """
        debt = quantize_value(collateral * ltv) + Decimal("0.000001")
        assert compute_borrow_increment(collateral, debt, ltv, ltv + gap, min_hf, price, 6) == 0


class TestConvergenceProperties:

    @given(fractions, gaps, health_factors)
    @settings(max_examples=100)
    def test_repeated_increments_stay_below_ceiling(self, ltv, gap, min_hf):
        """
        PROPERTY: Looping without slippage never exceeds the leverage ceiling.
        """
        assume(ltv > 0)
        lt = ltv + gap
        ceiling = leverage_ceiling(ltv, lt, min_hf)
        margin = Decimal("10000")
        collateral, debt = margin, Decimal("0")

        for _ in range(40):
            increment = compute_borrow_increment(collateral, debt, ltv, lt, min_hf, Decimal("1"), 6)
            if increment == 0:
                break
            collateral += increment
            debt += increment

        leverage = collateral / (collateral - debt)
        assert leverage < ceiling

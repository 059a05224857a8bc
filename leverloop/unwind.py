"""
unwind.py - Position teardown

UnwindEngine mirrors the loop: it sells collateral for the debt asset,
repays, then withdraws what the caller asked for.

Repay phase (skipped when the resolved repay target is zero):
    1. resolve the target against live debt
    2. budget = quote_in(target) * (1 + slippage), capped at live collateral
    3. spend the budget in chunks, each no larger than the collateral the
       market lets the account withdraw while staying solvent:
           withdraw -> swap (min out = quote * (1 - slippage)) -> repay
       Chunks count against max_iterations. Near health factor 1 each chunk
       frees only a little collateral, so a full close of such a position can
       need more chunks than the default cap and raise IterationCapReached.
    4. push unspent debt asset to the recipient

Withdraw phase: resolve the target against collateral remaining after the
repay phase and withdraw straight to the recipient.

Targets are resolved at call time, never against cached amounts, so two
back-to-back "ALL" unwinds cannot double-spend stale state.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_UP
from typing import TYPE_CHECKING, Optional, Tuple

from .core import (
    UnwindResult, Phase, AmountTarget, Amount, ALL, resolve_target,
    LoopError, ValidationError, NoConversionPath,
    HealthFactorViolation, IterationCapReached,
    ZERO, ONE, controls, finite_decimal,
)
from .normalizer import from_canonical, quantize_native

if TYPE_CHECKING:
    from .engine import LoopEngine


# Keep withdrawals strictly inside the market's solvency check despite rounding.
WITHDRAW_BUFFER = Decimal("0.9999")


class UnwindEngine:
    """Closes or deleverages positions opened by a LoopEngine."""

    def __init__(self, engine: 'LoopEngine'):
        self.engine = engine

    def _validate(self, caller: str, beneficiary: str, collateral_asset: str, debt_asset: str,
                  repay: AmountTarget, withdraw: AmountTarget,
                  slippage_tolerance: Decimal) -> None:
        cfg = self.engine.config
        if not controls(caller, beneficiary):
            raise ValidationError(f"{caller} does not control {beneficiary}")
        if collateral_asset == debt_asset:
            raise ValidationError("collateral and debt assets must differ", asset=collateral_asset)
        for name, target in (("repay", repay), ("withdraw", withdraw)):
            if target is not ALL and not isinstance(target, Amount):
                raise ValidationError(f"{name} target must be Amount(...) or ALL, got {target!r}")
        if not ZERO <= slippage_tolerance <= cfg.max_slippage:
            raise ValidationError(
                f"slippage tolerance {slippage_tolerance} outside [0, {cfg.max_slippage}]"
            )
        self.engine.asset_config(collateral_asset)
        self.engine.asset_config(debt_asset)

    def withdrawable(self, collateral_asset: str, beneficiary: str) -> Decimal:
        """Collateral the beneficiary can withdraw now without dropping below health factor 1."""
        engine = self.engine
        market = engine.market
        balance = engine.call_phase(Phase.WITHDRAW, collateral_asset,
                                    market.collateral_balance, collateral_asset, beneficiary)
        health = engine.call_phase(Phase.WITHDRAW, collateral_asset, market.account_health, beneficiary)
        config = engine.asset_config(collateral_asset)
        if health.debt_value <= ZERO or config.liquidation_threshold <= ZERO:
            return balance
        excess = health.collateral_value * health.liquidation_threshold - health.debt_value
        if excess <= ZERO:
            return quantize_native(ZERO, config.decimals)
        value = excess / config.liquidation_threshold * WITHDRAW_BUFFER
        price = engine.prices.get_price(collateral_asset)
        return min(balance, from_canonical(value, price, config.decimals))

    def _repay_phase(self, c: str, d: str, beneficiary: str, repay: AmountTarget,
                     slippage_tolerance: Decimal) -> Tuple[Decimal, Decimal, Decimal, int]:
        """Returns (repaid, collateral_sold, debt_asset_bought, chunks)."""
        engine = self.engine
        market, exchange = engine.market, engine.exchange
        repaid = sold = bought = ZERO
        chunks = 0

        live_debt = engine.call_phase(Phase.REPAY, d, market.debt_balance, d, beneficiary)
        target = resolve_target(repay, live_debt)
        if target <= ZERO:
            return repaid, sold, bought, chunks
        if not exchange.has_pair(c, d):
            raise NoConversionPath(f"no pool for {c}/{d}", Phase.REPAY, d)

        c_decimals = engine.decimals(c)
        inflate = ONE + slippage_tolerance

        def collateral_needed(debt_amount: Decimal) -> Decimal:
            quote = engine.call_phase(Phase.SWAP, c, exchange.quote_in, c, d, debt_amount)
            return quantize_native(quote * inflate, c_decimals, ROUND_UP)

        live_collateral = engine.call_phase(Phase.WITHDRAW, c, market.collateral_balance, c, beneficiary)
        budget = min(collateral_needed(target), live_collateral)
        remaining = target

        while remaining > ZERO and budget > ZERO:
            chunk = min(budget, collateral_needed(remaining), self.withdrawable(c, beneficiary))
            if chunk <= ZERO:
                raise HealthFactorViolation(
                    f"{beneficiary} has no withdrawable {c} to repay {remaining} {d}", Phase.WITHDRAW, c
                )
            if engine.call_phase(Phase.SWAP, c, exchange.quote_out, c, d, chunk) <= ZERO:
                break
            if chunks >= engine.config.max_iterations:
                raise IterationCapReached(
                    f"{remaining} {d} still owed after {chunks} chunks", Phase.REPAY, d
                )
            taken = engine.call_phase(Phase.WITHDRAW, c, market.withdraw, c, chunk, beneficiary, engine.wallet)
            _, received = engine.swap_exact_in(c, d, taken, slippage_tolerance)
            paid = engine.call_phase(Phase.REPAY, d, market.repay, d, min(received, remaining), beneficiary)
            chunks += 1
            budget -= taken
            remaining -= paid
            sold += taken
            bought += received
            repaid += paid
            engine._log(f"unwind {beneficiary} chunk {chunks}: sold {taken} {c}, repaid {paid} {d}")

        return repaid, sold, bought, chunks

    def unwind_loop(
        self,
        caller: str,
        collateral_asset: str,
        debt_asset: str,
        repay: AmountTarget,
        withdraw: AmountTarget,
        slippage_tolerance: Decimal,
        beneficiary: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> UnwindResult:
        """
        Repay then withdraw for `beneficiary` (default: the caller).

        Args:
            caller: Must control the beneficiary
            repay: Amount(x) of debt to clear, or ALL
            withdraw: Amount(x) of collateral to return, or ALL
            slippage_tolerance: Budget inflation and per-swap minimum output
            recipient: Receives withdrawn collateral and unspent debt asset
                (default: the beneficiary)

        Raises:
            ValidationError, MarketStateError: Before any effect
            HealthFactorViolation, SlippageExceeded, ExternalCallFailed: After a full rollback
            IterationCapReached: After a full rollback, when repaying needs more than
                max_iterations chunks (likely close to health factor 1; raise the cap
                with update_config or repay in several calls)
        """
        engine = self.engine
        beneficiary = beneficiary or caller
        recipient = recipient or beneficiary
        c, d = collateral_asset, debt_asset
        slippage_tolerance = finite_decimal("slippage tolerance", slippage_tolerance)

        with engine.exclusive(beneficiary):
            self._validate(caller, beneficiary, c, d, repay, withdraw, slippage_tolerance)
            engine._log(f"unwind {beneficiary}: repay {repay!r} {d}, withdraw {withdraw!r} {c}")
            try:
                with engine.ledger.atomic():
                    engine.ledger.ensure_wallet(recipient)
                    repaid, sold, bought, chunks = self._repay_phase(c, d, beneficiary, repay, slippage_tolerance)

                    leftover = bought - repaid
                    if leftover > ZERO:
                        engine.call_phase(Phase.TRANSFER, d, engine.ledger.transfer,
                                          engine.wallet, recipient, d, leftover)

                    market = engine.market
                    remaining_collateral = engine.call_phase(
                        Phase.WITHDRAW, c, market.collateral_balance, c, beneficiary
                    )
                    amount = resolve_target(withdraw, remaining_collateral)
                    withdrawn = ZERO
                    if amount > ZERO:
                        withdrawn = engine.call_phase(Phase.WITHDRAW, c, market.withdraw,
                                                      c, amount, beneficiary, recipient)

                    remaining_collateral = engine.call_phase(Phase.HEALTH_CHECK, c,
                                                             market.collateral_balance, c, beneficiary)
                    remaining_debt = engine.call_phase(Phase.HEALTH_CHECK, d,
                                                       market.debt_balance, d, beneficiary)
                    health = engine.call_phase(Phase.HEALTH_CHECK, c, market.account_health, beneficiary)
            except LoopError as e:
                engine._log(f"unwind {beneficiary} aborted: {e}")
                raise

        engine._log(
            f"unwind {beneficiary}: repaid {repaid} {d} in {chunks} chunks, withdrew {withdrawn} {c}"
        )
        return UnwindResult(
            beneficiary=beneficiary,
            recipient=recipient,
            repaid=repaid,
            collateral_sold=sold,
            debt_asset_bought=bought,
            leftover_debt_asset=max(leftover, ZERO),
            withdrawn=withdrawn,
            chunks=chunks,
            remaining_collateral=remaining_collateral,
            remaining_debt=remaining_debt,
            health_factor=health.health_factor,
        )

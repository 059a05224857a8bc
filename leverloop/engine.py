"""
engine.py - Leverage loop driver

LoopEngine opens leveraged positions: it pulls margin in asset A from the
caller, supplies it for a beneficiary, then repeats borrow B -> swap B->A ->
supply A until the target collateral value is reached, the next safe
increment is dust, or the iteration cap is hit.

Every invocation runs inside Ledger.atomic(). Any failure, including a health
factor below the caller's minimum after any iteration, rolls back every
borrow, swap and deposit made so far and propagates a LoopError naming the
failing phase and asset.

preview_loop() runs the very same _wind() path inside Ledger.sandbox(), so
estimates and committed results cannot drift apart.

Usage:
    engine = LoopEngine(ledger, OnBehalfLendingAdapter(market, "leverloop"), amm, prices)
    result = engine.execute_loop(
        caller="alice", collateral_asset="WETH", debt_asset="USDC",
        beneficiary="alice", initial_margin=Decimal("10"),
        target_leverage=Decimal("2"), min_health_factor=Decimal("1.1"),
        slippage_tolerance=Decimal("0.01"),
    )
"""

from __future__ import annotations
from contextlib import contextmanager
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Iterator, Optional, Tuple
import threading

from .core import (
    LoopCache, LoopState, LoopResult, PreviewResult, UnwindResult, AssetConfig,
    LoopStatus, Phase, AmountTarget, ALL,
    LoopError, ValidationError, EnginePaused, ReentrantInvocation,
    NoConversionPath, AssetNotConfigured, HealthFactorViolation,
    SlippageExceeded, IterationCapReached, ExternalCallFailed,
    ZERO, ONE, subaccount, finite_decimal,
)
from .config import EngineConfig, DEFAULT_CONFIG
from .ledger import Ledger
from .markets.base import LendingMarket, Exchange, AssetNotListed
from .normalizer import to_canonical, from_canonical, quantize_native
from .pricing_source import PriceSource
from .sizer import compute_borrow_increment, leverage_ceiling, target_collateral_value
from .unwind import UnwindEngine


class LoopEngine:
    """
    Orchestrates leverage loops against one lending market and one exchange.

    The engine's own wallet is the market adapter's operator: borrowed and
    swapped tokens pass through it within a single call and never rest there.
    """

    def __init__(
        self,
        ledger: Ledger,
        market: LendingMarket,
        exchange: Exchange,
        prices: PriceSource,
        config: Optional[EngineConfig] = None,
        verbose: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.market = market
        self.exchange = exchange
        self.prices = prices
        self.wallet = ledger.ensure_wallet(market.operator)
        self.config = config or DEFAULT_CONFIG
        self.verbose = ledger.verbose if verbose is None else verbose
        self.unwinder = UnwindEngine(self)
        self._in_flight: Optional[str] = None
        self._guard = threading.Lock()

    # ========================================================================
    # CONFIGURATION
    # ========================================================================

    def pause(self) -> None:
        """Reject new loops. Unwinds and previews keep working."""
        self.config = self.config.with_updates(paused=True)
        self._log("engine paused")

    def unpause(self) -> None:
        self.config = self.config.with_updates(paused=False)
        self._log("engine unpaused")

    def update_config(self, **changes: Any) -> EngineConfig:
        """Replace configuration fields; the new config is validated as a whole."""
        self.config = self.config.with_updates(**changes)
        self._log(f"config updated: {changes}")
        return self.config

    # ========================================================================
    # SHARED PLUMBING (also used by UnwindEngine)
    # ========================================================================

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[leverloop] {message}")

    @contextmanager
    def exclusive(self, beneficiary: str) -> Iterator[None]:
        """
        Admit one loop, unwind or preview at a time, whatever the beneficiary.

        A rollback restores the whole ledger, so an invocation nested inside
        a live one would be undone with it even after reporting success.
        Callers are expected to drive the engine from one thread.
        """
        with self._guard:
            if self._in_flight == beneficiary:
                raise ReentrantInvocation(f"an operation for {beneficiary} is already in flight")
            if self._in_flight is not None:
                raise ReentrantInvocation(
                    f"an operation for {self._in_flight} is in flight; {beneficiary} must wait"
                )
            self._in_flight = beneficiary
        try:
            yield
        finally:
            with self._guard:
                self._in_flight = None

    def call_phase(self, phase: Phase, asset: Optional[str], fn: Callable, *args: Any) -> Any:
        """Call a collaborator, wrapping any non-LoopError failure as ExternalCallFailed."""
        try:
            return fn(*args)
        except LoopError:
            raise
        except Exception as e:
            name = getattr(fn, '__name__', repr(fn))
            raise ExternalCallFailed(f"{name} failed: {type(e).__name__}: {e}", phase, asset) from e

    def asset_config(self, asset: str) -> AssetConfig:
        try:
            return self.market.asset_config(asset)
        except AssetNotListed as e:
            raise AssetNotConfigured(str(e), Phase.PRECHECK, asset) from e

    def decimals(self, asset: str) -> int:
        return self.ledger.get_unit(asset).decimal_places

    def swap_exact_in(self, asset_in: str, asset_out: str, amount_in: Decimal,
                      slippage_tolerance: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Swap from the engine wallet into the engine wallet.

        The quote is read fresh, so earlier swaps in the same invocation show
        up as price impact. The output is measured on the ledger rather than
        taken from the exchange's return value.

        Returns:
            (min_amount_out, amount_received)
        """
        quote = self.call_phase(Phase.SWAP, asset_in, self.exchange.quote_out,
                                asset_in, asset_out, amount_in)
        min_out = quantize_native(quote * (ONE - slippage_tolerance), self.decimals(asset_out), ROUND_DOWN)
        before = self.ledger.balance_of(self.wallet, asset_out)
        self.call_phase(Phase.SWAP, asset_in, self.exchange.swap,
                        asset_in, asset_out, amount_in, min_out, self.wallet, self.wallet)
        received = self.ledger.balance_of(self.wallet, asset_out) - before
        if received <= ZERO or received < min_out:
            raise SlippageExceeded(
                f"swap of {amount_in} {asset_in} returned {received} {asset_out}, minimum {min_out}",
                Phase.SWAP, asset_in,
            )
        return min_out, received

    # ========================================================================
    # PRECHECK
    # ========================================================================

    def validate_open(
        self,
        collateral_asset: str,
        debt_asset: str,
        initial_margin: Decimal,
        target_leverage: Decimal,
        min_health_factor: Decimal,
        slippage_tolerance: Decimal,
        allow_paused: bool = False,
    ) -> Tuple[LoopCache, Decimal]:
        """
        Check every precondition and read market inputs once.

        Reads only; nothing is mutated. Returns the LoopCache and the margin
        quantized to the collateral asset's precision.
        """
        cfg = self.config
        if cfg.paused and not allow_paused:
            raise EnginePaused("new loops are paused")
        if not collateral_asset or not debt_asset:
            raise ValidationError("assets must be named")
        if collateral_asset == debt_asset:
            raise ValidationError("collateral and debt assets must differ", asset=collateral_asset)

        initial_margin = finite_decimal("initial margin", initial_margin, collateral_asset)
        target_leverage = finite_decimal("target leverage", target_leverage)
        min_health_factor = finite_decimal("min health factor", min_health_factor)
        slippage_tolerance = finite_decimal("slippage tolerance", slippage_tolerance)

        if initial_margin <= ZERO:
            raise ValidationError(f"initial margin must be positive, got {initial_margin}",
                                  asset=collateral_asset)
        if not cfg.min_leverage <= target_leverage <= cfg.max_leverage:
            raise ValidationError(
                f"target leverage {target_leverage} outside [{cfg.min_leverage}, {cfg.max_leverage}]"
            )
        if min_health_factor < cfg.min_health_factor_floor:
            raise ValidationError(
                f"min health factor {min_health_factor} below floor {cfg.min_health_factor_floor}"
            )
        if not ZERO <= slippage_tolerance <= cfg.max_slippage:
            raise ValidationError(
                f"slippage tolerance {slippage_tolerance} outside [0, {cfg.max_slippage}]"
            )
        if not self.exchange.has_pair(debt_asset, collateral_asset):
            raise NoConversionPath(f"no pool for {debt_asset}/{collateral_asset}", asset=debt_asset)

        collateral = self.asset_config(collateral_asset)
        debt = self.asset_config(debt_asset)
        if not collateral.collateral_enabled:
            raise AssetNotConfigured(f"{collateral_asset} is not usable as collateral",
                                     asset=collateral_asset)
        if not debt.borrow_enabled:
            raise AssetNotConfigured(f"{debt_asset} is not borrowable", asset=debt_asset)

        margin = quantize_native(initial_margin, collateral.decimals)
        if margin <= ZERO:
            raise ValidationError(f"initial margin {initial_margin} rounds to zero",
                                  asset=collateral_asset)

        if target_leverage > ONE:
            ceiling = leverage_ceiling(collateral.ltv, collateral.liquidation_threshold, min_health_factor)
            if target_leverage >= ceiling:
                raise ValidationError(
                    f"target leverage {target_leverage} is not reachable: ltv {collateral.ltv} and "
                    f"min health factor {min_health_factor} cap leverage below {ceiling:.4f}",
                    asset=collateral_asset,
                )

        collateral_price = self.prices.get_price(collateral_asset)
        debt_price = self.prices.get_price(debt_asset)
        margin_value = to_canonical(margin, collateral_price, collateral.decimals)

        cache = LoopCache(
            collateral_asset=collateral_asset,
            debt_asset=debt_asset,
            collateral_decimals=collateral.decimals,
            debt_decimals=debt.decimals,
            collateral_price=collateral_price,
            debt_price=debt_price,
            ltv=collateral.ltv,
            liquidation_threshold=collateral.liquidation_threshold,
            target_collateral_value=target_collateral_value(margin_value, target_leverage),
            slippage_tolerance=slippage_tolerance,
            min_health_factor=min_health_factor,
            dust_value=cfg.dust_value,
        )
        return cache, margin

    # ========================================================================
    # ITERATION
    # ========================================================================

    def _wind(self, cache: LoopCache, beneficiary: str, margin: Decimal) -> LoopResult:
        """
        Supply the margin held by the engine wallet and iterate.

        Must run inside an atomic block: it raises mid-way on any failure.
        """
        c, d = cache.collateral_asset, cache.debt_asset
        self.call_phase(Phase.DEPOSIT, c, self.market.supply, c, margin, beneficiary)
        state = LoopState(collateral_amount=margin)
        health = None

        while True:
            collateral_value = to_canonical(state.collateral_amount, cache.collateral_price,
                                            cache.collateral_decimals)
            shortfall = cache.target_collateral_value - collateral_value
            if shortfall <= ZERO or shortfall < cache.dust_value:
                status = LoopStatus.TARGET_REACHED
                break
            if state.iterations >= self.config.max_iterations:
                status = LoopStatus.CAPPED
                break

            debt_value = to_canonical(state.debt_amount, cache.debt_price, cache.debt_decimals)
            increment = compute_borrow_increment(
                collateral_value, debt_value, cache.ltv, cache.liquidation_threshold,
                cache.min_health_factor, cache.debt_price, cache.debt_decimals,
            )
            increment = min(increment, from_canonical(shortfall, cache.debt_price, cache.debt_decimals))
            liquidity = self.call_phase(Phase.BORROW, d, self.market.available_liquidity, d)
            increment = min(increment, liquidity)
            if increment <= ZERO or to_canonical(increment, cache.debt_price, cache.debt_decimals) < cache.dust_value:
                status = LoopStatus.NO_HEADROOM
                break

            self.call_phase(Phase.BORROW, d, self.market.borrow, d, increment, beneficiary)
            min_out, received = self.swap_exact_in(d, c, increment, cache.slippage_tolerance)
            self.call_phase(Phase.DEPOSIT, c, self.market.supply, c, received, beneficiary)

            health = self.call_phase(Phase.HEALTH_CHECK, c, self.market.account_health, beneficiary)
            state.record(increment, min_out, received, health.health_factor)
            self._log(
                f"iteration {state.iterations}: borrowed {increment} {d}, "
                f"bought {received} {c}, health factor {health.health_factor:.4f}"
            )
            if health.health_factor < cache.min_health_factor:
                raise HealthFactorViolation(
                    f"health factor {health.health_factor} below minimum {cache.min_health_factor} "
                    f"after iteration {state.iterations}",
                    Phase.HEALTH_CHECK, c,
                )

        if status is LoopStatus.CAPPED and self.config.fail_on_iteration_cap:
            raise IterationCapReached(
                f"target not reached within {self.config.max_iterations} iterations", Phase.ITERATE, c
            )
        if health is None:
            health = self.call_phase(Phase.HEALTH_CHECK, c, self.market.account_health, beneficiary)

        return LoopResult(
            beneficiary=beneficiary,
            collateral_asset=c,
            debt_asset=d,
            status=status,
            iterations=state.iterations,
            collateral_amount=state.collateral_amount,
            debt_amount=state.debt_amount,
            collateral_value=to_canonical(state.collateral_amount, cache.collateral_price,
                                          cache.collateral_decimals),
            debt_value=to_canonical(state.debt_amount, cache.debt_price, cache.debt_decimals),
            health_factor=health.health_factor,
            history=tuple(state.history),
        )

    # ========================================================================
    # EXPOSED SURFACE
    # ========================================================================

    def execute_loop(
        self,
        caller: str,
        collateral_asset: str,
        debt_asset: str,
        beneficiary: str,
        initial_margin: Decimal,
        target_leverage: Decimal,
        min_health_factor: Decimal,
        slippage_tolerance: Decimal,
    ) -> LoopResult:
        """
        Open (or extend) a leveraged position for `beneficiary`.

        The margin is pulled from `caller` against its allowance to the engine
        wallet. `beneficiary` may differ from `caller`.

        Raises:
            ValidationError, EnginePaused, MarketStateError: Before any effect
            HealthFactorViolation, SlippageExceeded, ExternalCallFailed,
            IterationCapReached: After a full rollback
            ReentrantInvocation: If any operation is already in flight on this engine
        """
        with self.exclusive(beneficiary):
            cache, margin = self.validate_open(
                collateral_asset, debt_asset, initial_margin,
                target_leverage, min_health_factor, slippage_tolerance,
            )
            self._log(
                f"loop {beneficiary}: {margin} {collateral_asset} margin, "
                f"target {target_leverage}x, borrowing {debt_asset}"
            )
            try:
                with self.ledger.atomic():
                    self.call_phase(Phase.TRANSFER, collateral_asset, self.ledger.transfer_from,
                                    self.wallet, caller, self.wallet, collateral_asset, margin)
                    result = self._wind(cache, beneficiary, margin)
            except LoopError as e:
                self._log(f"loop {beneficiary} aborted: {e}")
                raise
        self._log(
            f"loop {beneficiary}: {result.status.value} after {result.iterations} iterations, "
            f"leverage {result.leverage:.4f}x, health factor {result.health_factor:.4f}"
        )
        return result

    def preview_loop(
        self,
        collateral_asset: str,
        debt_asset: str,
        initial_margin: Decimal,
        target_leverage: Decimal,
        min_health_factor: Decimal,
        slippage_tolerance: Decimal,
        beneficiary: Optional[str] = None,
    ) -> PreviewResult:
        """
        Estimate execute_loop against current market state without committing.

        The margin is minted into the engine wallet inside a sandbox, so no
        caller funds or allowance are needed. `beneficiary` defaults to an
        empty engine sub-account.
        """
        beneficiary = beneficiary or subaccount(self.wallet, "preview")
        cache, margin = self.validate_open(
            collateral_asset, debt_asset, initial_margin,
            target_leverage, min_health_factor, slippage_tolerance,
            allow_paused=True,
        )
        with self.exclusive(beneficiary):
            with self.ledger.sandbox():
                self.ledger.issue(self.wallet, collateral_asset, margin, "leverloop:preview")
                result = self._wind(cache, beneficiary, margin)
        return PreviewResult(
            status=result.status,
            iterations=result.iterations,
            collateral_amount=result.collateral_amount,
            debt_amount=result.debt_amount,
            health_factor=result.health_factor,
        )

    def unwind_loop(
        self,
        caller: str,
        collateral_asset: str,
        debt_asset: str,
        repay: AmountTarget = ALL,
        withdraw: AmountTarget = ALL,
        slippage_tolerance: Decimal = Decimal("0.01"),
        beneficiary: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> UnwindResult:
        """Deleverage or close a position; see UnwindEngine.unwind_loop."""
        return self.unwinder.unwind_loop(
            caller, collateral_asset, debt_asset, repay, withdraw,
            slippage_tolerance, beneficiary, recipient,
        )

    def __repr__(self):
        return f"LoopEngine(wallet={self.wallet}, market={self.market!r}, exchange={self.exchange!r})"

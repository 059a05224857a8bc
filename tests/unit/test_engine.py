"""
test_engine.py - Unit tests for engine.py

Tests:
- The reference 2x loop and its per-iteration history
- Degenerate loops (1x, zero iterations)
- Precheck validation, which must leave the ledger untouched
- Failures after effects, which must roll everything back
- Re-entry, pause and preview
"""

import pytest
from decimal import Decimal

from leverloop import (
    LoopEngine, LoopStatus, Phase, token, EngineConfig, INFINITE_HEALTH,
    ValidationError, EnginePaused, ReentrantInvocation, NoConversionPath,
    AssetNotConfigured, PriceUnavailable, HealthFactorViolation,
    SlippageExceeded, IterationCapReached, ExternalCallFailed, InsufficientAllowance,
)

from tests.market_env import build_env, nonzero_balances, open_2x, assert_untouched
from tests.fake_markets import FailingMarket, LowHealthMarket, ShortchangingExchange, ReentrantExchange


def loop_args(**overrides):
    args = dict(
        caller="alice", collateral_asset="WETH", debt_asset="USDC", beneficiary="alice",
        initial_margin=Decimal("10"), target_leverage=Decimal("2"),
        min_health_factor=Decimal("1.1"), slippage_tolerance=Decimal("0.01"),
    )
    args.update(overrides)
    return args


def rebuild(env, market=None, exchange=None):
    """Engine sharing env's ledger and oracle but with swapped collaborators."""
    return LoopEngine(env.ledger, market or env.adapter, exchange or env.amm, env.prices,
                      config=env.engine.config)


class TestReferenceLoop:
    """10 WETH at 2000, ltv 0.8, liquidation threshold 0.825, 2x, min HF 1.1."""

    def test_reaches_target(self, env):
        result = open_2x(env)
        assert result.status is LoopStatus.TARGET_REACHED
        assert result.iterations == 3
        assert Decimal("19.99") < result.collateral_amount <= Decimal("20")
        assert Decimal("20070") < result.debt_amount < Decimal("20090")
        assert Decimal("1.64") < result.health_factor < Decimal("1.65")
        assert Decimal("1.99") < result.leverage < Decimal("2.02")

    def test_first_borrow_is_clamped_to_min_health_factor(self, env):
        # ltv allows 16000 but 20000 * 0.825 / 1.1 caps the debt at 15000
        first = open_2x(env).history[0]
        assert first.iteration == 1
        assert first.borrowed == Decimal("15000")
        assert first.swapped_out >= first.min_amount_out

    def test_second_borrow_is_clamped_to_shortfall(self, env):
        history = open_2x(env).history
        collateral_after_first = Decimal("10") + history[0].swapped_out
        shortfall = Decimal("40000") - collateral_after_first * Decimal("2000")
        assert abs(history[1].borrowed - shortfall) <= Decimal("0.000001")

    def test_position_lives_in_market(self, env):
        result = open_2x(env)
        assert env.pool.collateral_balance("WETH", "alice") == result.collateral_amount
        assert env.pool.debt_balance("USDC", "alice") == result.debt_amount
        assert env.balance("alice", "WETH") == Decimal("90")
        debt_ratio = result.debt_value / result.collateral_value
        assert Decimal("0.49") < debt_ratio < Decimal("0.51")

    def test_engine_wallet_holds_nothing(self, env):
        open_2x(env)
        assert nonzero_balances(env.ledger).get(env.engine.wallet, {}) == {}

    def test_health_factor_never_below_minimum(self, env):
        for record in open_2x(env).history:
            assert record.health_factor >= Decimal("1.1")

    def test_beneficiary_may_differ_from_caller(self, env):
        env.pool.set_operator("bob", env.engine.wallet)
        result = open_2x(env, beneficiary="bob")
        assert env.pool.collateral_balance("WETH", "bob") == result.collateral_amount
        assert env.pool.collateral_balance("WETH", "alice") == 0

    def test_sub_account_adapter(self, sub_env):
        result = open_2x(sub_env)
        assert result.status is LoopStatus.TARGET_REACHED
        assert sub_env.pool.collateral_balance("WETH", "leverloop:alice") == result.collateral_amount
        assert sub_env.pool.collateral_balance("WETH", "alice") == 0
        assert sub_env.adapter.debt_balance("USDC", "alice") == result.debt_amount


class TestDegenerateLoops:

    def test_unit_leverage_supplies_margin_only(self, env):
        result = env.engine.execute_loop(**loop_args(target_leverage=Decimal("1")))
        assert result.status is LoopStatus.TARGET_REACHED
        assert result.iterations == 0
        assert result.debt_amount == 0
        assert result.health_factor == INFINITE_HEALTH
        assert env.pool.collateral_balance("WETH", "alice") == Decimal("10")

    def test_dust_shortfall_stops_immediately(self):
        env = build_env(config=EngineConfig(dust_value=Decimal("1000")))
        # 10 WETH at 1.01x leaves a 200 shortfall, below the dust threshold
        result = env.engine.execute_loop(**loop_args(target_leverage=Decimal("1.01")))
        assert result.iterations == 0
        assert result.status is LoopStatus.TARGET_REACHED

    def test_no_liquidity_means_no_headroom(self):
        env = build_env(liquidity_usdc="0.5")
        result = env.engine.execute_loop(**loop_args())
        assert result.status is LoopStatus.NO_HEADROOM
        assert result.iterations == 0


class TestIterationCap:
    """ltv 0.75 and liquidation threshold 0.8 at min HF 1.05 converge to 4x."""

    @pytest.fixture
    def capped_env(self):
        return build_env(ltv="0.75", liquidation_threshold="0.8")

    @pytest.mark.parametrize("leverage", ["10", "4"])
    def test_unreachable_target_rejected(self, capped_env, leverage):
        error = assert_untouched(
            capped_env,
            lambda: capped_env.engine.execute_loop(**loop_args(
                target_leverage=Decimal(leverage), min_health_factor=Decimal("1.05"))),
            ValidationError,
        )
        assert "not reachable" in str(error)

    def test_near_ceiling_target_is_capped(self, capped_env):
        result = capped_env.engine.execute_loop(**loop_args(
            target_leverage=Decimal("3.9"), min_health_factor=Decimal("1.05")))
        assert result.status is LoopStatus.CAPPED
        assert result.iterations == 10
        assert Decimal("3.5") < result.leverage < Decimal("3.9")
        assert result.health_factor >= Decimal("1.05")

    def test_cap_can_be_fatal(self, capped_env):
        capped_env.engine.update_config(fail_on_iteration_cap=True)
        error = assert_untouched(
            capped_env,
            lambda: capped_env.engine.execute_loop(**loop_args(
                target_leverage=Decimal("3.9"), min_health_factor=Decimal("1.05"))),
            IterationCapReached,
        )
        assert error.phase is Phase.ITERATE


class TestValidation:

    @pytest.mark.parametrize("overrides, error", [
        (dict(debt_asset="WETH"), ValidationError),
        (dict(initial_margin=Decimal("0")), ValidationError),
        (dict(initial_margin=Decimal("-1")), ValidationError),
        (dict(target_leverage=Decimal("11")), ValidationError),
        (dict(target_leverage=Decimal("0.5")), ValidationError),
        (dict(min_health_factor=Decimal("1.0")), ValidationError),
        (dict(slippage_tolerance=Decimal("0.06")), ValidationError),
        (dict(slippage_tolerance=Decimal("-0.01")), ValidationError),
        (dict(target_leverage=Decimal("NaN")), ValidationError),
        (dict(target_leverage="two"), ValidationError),
        (dict(min_health_factor=Decimal("Infinity")), ValidationError),
        (dict(slippage_tolerance=Decimal("NaN")), ValidationError),
        (dict(initial_margin="ten"), ValidationError),
    ])
    def test_invalid_parameters(self, env, overrides, error):
        assert_untouched(env, lambda: env.engine.execute_loop(**loop_args(**overrides)), error)

    def test_margin_rounding_to_zero(self, env):
        env.ledger.register_unit(token("GUSD", "Gemini Dollar", 2))
        env.pool.list_asset("GUSD", Decimal("0.8"), Decimal("0.85"))
        env.amm.add_pool("GUSD", Decimal("1000000"), "USDC", Decimal("1000000"))
        env.prices.update_price("GUSD", Decimal("1"))
        assert_untouched(
            env,
            lambda: env.engine.execute_loop(**loop_args(
                collateral_asset="GUSD", initial_margin=Decimal("0.001"))),
            ValidationError,
        )

    def test_no_conversion_path(self, env):
        env.ledger.register_unit(token("DAI", "Dai", 18))
        env.pool.list_asset("DAI", Decimal("0.8"), Decimal("0.85"))
        env.prices.update_price("DAI", Decimal("1"))
        error = assert_untouched(
            env, lambda: env.engine.execute_loop(**loop_args(debt_asset="DAI")), NoConversionPath
        )
        assert error.asset == "DAI"

    def test_unlisted_asset(self, env):
        env.ledger.register_unit(token("DAI", "Dai", 18))
        env.amm.add_pool("WETH", Decimal("100"), "DAI", Decimal("200000"))
        env.prices.update_price("DAI", Decimal("1"))
        error = assert_untouched(
            env, lambda: env.engine.execute_loop(**loop_args(debt_asset="DAI")), AssetNotConfigured
        )
        assert error.phase is Phase.PRECHECK

    def test_borrowing_disabled(self, env):
        env.ledger.register_unit(token("DAI", "Dai", 18))
        env.pool.list_asset("DAI", Decimal("0.8"), Decimal("0.85"), borrow_enabled=False)
        env.amm.add_pool("WETH", Decimal("100"), "DAI", Decimal("200000"))
        env.prices.update_price("DAI", Decimal("1"))
        assert_untouched(
            env, lambda: env.engine.execute_loop(**loop_args(debt_asset="DAI")), AssetNotConfigured
        )

    def test_missing_price(self, env):
        env.ledger.register_unit(token("DAI", "Dai", 18))
        env.pool.list_asset("DAI", Decimal("0.8"), Decimal("0.85"))
        env.amm.add_pool("WETH", Decimal("100"), "DAI", Decimal("200000"))
        error = assert_untouched(
            env, lambda: env.engine.execute_loop(**loop_args(debt_asset="DAI")), PriceUnavailable
        )
        assert error.asset == "DAI"

    def test_missing_allowance_rolls_back(self, env):
        env.ledger.approve("alice", env.engine.wallet, "WETH", Decimal("5"))
        error = assert_untouched(env, lambda: open_2x(env), ExternalCallFailed)
        assert error.phase is Phase.TRANSFER
        assert isinstance(error.__cause__, InsufficientAllowance)


class TestRollback:

    def test_borrow_failure(self, env):
        engine = rebuild(env, market=FailingMarket(env.adapter, "borrow"))
        error = assert_untouched(env, lambda: engine.execute_loop(**loop_args()), ExternalCallFailed)
        assert error.phase is Phase.BORROW
        assert error.asset == "USDC"
        assert isinstance(error.__cause__, RuntimeError)
        assert "[borrow/USDC]" in str(error)

    def test_deposit_failure(self, env):
        engine = rebuild(env, market=FailingMarket(env.adapter, "supply"))
        error = assert_untouched(env, lambda: engine.execute_loop(**loop_args()), ExternalCallFailed)
        assert error.phase is Phase.DEPOSIT
        assert error.asset == "WETH"

    def test_shortchanged_swap(self, env):
        engine = rebuild(env, exchange=ShortchangingExchange(env.amm, env.ledger))
        error = assert_untouched(env, lambda: engine.execute_loop(**loop_args()), SlippageExceeded)
        assert error.phase is Phase.SWAP
        assert error.asset == "USDC"

    def test_health_factor_violation(self, env):
        engine = rebuild(env, market=LowHealthMarket(env.adapter, Decimal("1.05")))
        error = assert_untouched(env, lambda: engine.execute_loop(**loop_args()), HealthFactorViolation)
        assert error.phase is Phase.HEALTH_CHECK
        assert "after iteration 1" in str(error)

    def test_engine_usable_after_failure(self, env):
        engine = rebuild(env, market=FailingMarket(env.adapter, "borrow"))
        with pytest.raises(ExternalCallFailed):
            engine.execute_loop(**loop_args())
        assert open_2x(env).status is LoopStatus.TARGET_REACHED


class TestReentrancy:

    def test_in_flight_beneficiary_rejected(self, env):
        with env.engine.exclusive("alice"):
            assert_untouched(env, lambda: open_2x(env), ReentrantInvocation)
        assert open_2x(env).iterations == 3

    def test_other_beneficiary_waits(self, env):
        with env.engine.exclusive("bob"):
            error = assert_untouched(env, lambda: open_2x(env), ReentrantInvocation)
        assert "bob" in str(error)
        assert open_2x(env).status is LoopStatus.TARGET_REACHED

    def test_nested_loop_for_other_beneficiary_rejected(self, env):
        env.fund("bob", "WETH", "10")
        exchange = ReentrantExchange(env.amm)
        engine = rebuild(env, market=LowHealthMarket(env.adapter, Decimal("1.05")), exchange=exchange)
        exchange.callback = lambda: engine.execute_loop(
            **loop_args(caller="bob", beneficiary="bob"))

        assert_untouched(env, lambda: engine.execute_loop(**loop_args()), HealthFactorViolation)

        assert len(exchange.errors) == 1
        assert isinstance(exchange.errors[0], ReentrantInvocation)
        assert env.balance("bob", "WETH") == Decimal("10")
        assert env.pool.collateral_balance("WETH", "bob") == 0

    def test_callback_from_exchange_rejected(self, env):
        exchange = ReentrantExchange(env.amm)
        engine = rebuild(env, exchange=exchange)
        exchange.callback = lambda: engine.execute_loop(**loop_args(initial_margin=Decimal("1")))
        result = engine.execute_loop(**loop_args())
        assert len(exchange.errors) == 1
        assert isinstance(exchange.errors[0], ReentrantInvocation)
        assert result.status is LoopStatus.TARGET_REACHED
        assert env.balance("alice", "WETH") == Decimal("90")

    def test_unwind_during_loop_rejected(self, env):
        exchange = ReentrantExchange(env.amm)
        engine = rebuild(env, exchange=exchange)
        exchange.callback = lambda: engine.unwind_loop("alice", "WETH", "USDC")
        engine.execute_loop(**loop_args())
        assert isinstance(exchange.errors[0], ReentrantInvocation)


class TestPause:

    def test_pause_blocks_new_loops(self, env):
        env.engine.pause()
        assert_untouched(env, lambda: open_2x(env), EnginePaused)
        env.engine.unpause()
        assert open_2x(env).iterations == 3

    def test_preview_and_unwind_allowed_while_paused(self, env):
        open_2x(env)
        env.engine.pause()
        preview = env.engine.preview_loop("WETH", "USDC", Decimal("10"), Decimal("2"),
                                          Decimal("1.1"), Decimal("0.01"))
        assert preview.status is LoopStatus.TARGET_REACHED
        result = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.remaining_debt == 0

    def test_update_config(self, env):
        config = env.engine.update_config(max_slippage=Decimal("0.005"))
        assert config.max_slippage == Decimal("0.005")
        with pytest.raises(ValidationError):
            open_2x(env)


class TestPreview:

    def test_preview_matches_execution(self, env):
        preview = env.engine.preview_loop("WETH", "USDC", Decimal("10"), Decimal("2"),
                                          Decimal("1.1"), Decimal("0.01"))
        result = open_2x(env)
        assert preview.status is result.status
        assert preview.iterations == result.iterations
        assert preview.collateral_amount == result.collateral_amount
        assert preview.debt_amount == result.debt_amount
        assert preview.health_factor == result.health_factor

    def test_preview_changes_nothing(self, env):
        before = nonzero_balances(env.ledger)
        log_length = len(env.ledger.transaction_log)
        wallets = set(env.ledger.list_wallets())
        env.engine.preview_loop("WETH", "USDC", Decimal("10"), Decimal("2"),
                                Decimal("1.1"), Decimal("0.01"))
        assert nonzero_balances(env.ledger) == before
        assert len(env.ledger.transaction_log) == log_length
        assert set(env.ledger.list_wallets()) == wallets

    def test_preview_needs_no_funds(self, env):
        preview = env.engine.preview_loop("WETH", "USDC", Decimal("1000"), Decimal("1.5"),
                                          Decimal("1.2"), Decimal("0.02"))
        assert preview.collateral_amount > Decimal("1000")

    def test_preview_validates(self, env):
        with pytest.raises(ValidationError):
            env.engine.preview_loop("WETH", "USDC", Decimal("10"), Decimal("20"),
                                    Decimal("1.1"), Decimal("0.01"))

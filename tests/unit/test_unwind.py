"""
test_unwind.py - Unit tests for unwind.py
"""

import pytest
from decimal import Decimal

from leverloop import (
    Amount, ALL, Phase, INFINITE_HEALTH, LoopStatus,
    ValidationError, HealthFactorViolation, IterationCapReached, ExternalCallFailed,
)
from leverloop.markets import UnhealthyWithdrawal

from tests.market_env import nonzero_balances, open_2x, assert_untouched


def alice_value(env):
    return env.balance("alice", "WETH") * Decimal("2000") + env.balance("alice", "USDC")


class TestFullClose:

    def test_closes_everything(self, env):
        open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.remaining_debt == 0
        assert result.remaining_collateral == 0
        assert result.health_factor == INFINITE_HEALTH
        assert env.balance("alice", "WETH") == Decimal("90") + result.withdrawn
        assert env.balance("alice", "USDC") == result.leftover_debt_asset

    def test_sells_in_several_chunks(self, env):
        # at health factor ~1.64 only ~7.8 WETH can leave the market at once
        open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.chunks >= 2
        assert result.repaid == result.debt_asset_bought - result.leftover_debt_asset

    def test_round_trip_costs_only_fees_and_impact(self, env):
        open_2x(env)
        env.engine.unwind_loop("alice", "WETH", "USDC")
        assert Decimal("199700") < alice_value(env) < Decimal("200000")

    def test_engine_wallet_empty(self, env):
        open_2x(env)
        env.engine.unwind_loop("alice", "WETH", "USDC")
        assert nonzero_balances(env.ledger).get(env.engine.wallet, {}) == {}

    def test_second_close_is_a_no_op(self, env):
        open_2x(env)
        env.engine.unwind_loop("alice", "WETH", "USDC")
        again = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert again.repaid == 0
        assert again.withdrawn == 0
        assert again.chunks == 0

    def test_proceeds_to_other_recipient(self, env):
        open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC", recipient="carol")
        assert env.balance("carol", "WETH") == result.withdrawn
        assert env.balance("alice", "WETH") == Decimal("90")
        assert result.leftover_debt_asset > 0
        assert env.balance("carol", "USDC") == result.leftover_debt_asset
        assert env.balance("alice", "USDC") == 0
        assert result.remaining_debt == 0

    def test_sub_account_adapter(self, sub_env):
        open_2x(sub_env)
        result = sub_env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.remaining_debt == 0
        assert sub_env.pool.collateral_balance("WETH", "leverloop:alice") == 0
        assert sub_env.balance("alice", "WETH") > Decimal("99.5")


class TestZeroDebt:

    def test_unit_leverage_position_skips_repay(self, env):
        env.engine.execute_loop("alice", "WETH", "USDC", "alice", Decimal("10"), Decimal("1"),
                                Decimal("1.1"), Decimal("0.01"))
        log_length = len(env.ledger.transaction_log)
        result = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.repaid == 0
        assert result.collateral_sold == 0
        assert result.chunks == 0
        assert result.withdrawn == Decimal("10")
        assert env.balance("alice", "WETH") == Decimal("100")
        # withdraw only, no swap
        assert len(env.ledger.transaction_log) == log_length + 1

    def test_empty_account(self, env):
        result = env.engine.unwind_loop("bob", "WETH", "USDC")
        assert result.repaid == 0
        assert result.withdrawn == 0
        assert result.health_factor == INFINITE_HEALTH


class TestPartialUnwind:

    def test_partial_repay(self, env):
        loop = open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC",
                                        repay=Amount(Decimal("5000")), withdraw=Amount(Decimal("0")))
        assert result.repaid == Decimal("5000")
        assert result.chunks == 1
        assert result.withdrawn == 0
        assert result.remaining_debt == loop.debt_amount - Decimal("5000")
        assert result.health_factor > loop.health_factor
        assert env.balance("alice", "USDC") == result.leftover_debt_asset > 0

    def test_repay_target_capped_at_live_debt(self, env):
        loop = open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC",
                                        repay=Amount(Decimal("1000000")), withdraw=Amount(Decimal("0")))
        assert result.repaid == loop.debt_amount
        assert result.remaining_debt == 0

    def test_withdraw_only(self, env):
        loop = open_2x(env)
        result = env.engine.unwind_loop("alice", "WETH", "USDC",
                                        repay=Amount(Decimal("0")), withdraw=Amount(Decimal("1")))
        assert result.repaid == 0
        assert result.withdrawn == Decimal("1")
        assert result.remaining_debt == loop.debt_amount

    def test_withdraw_all_with_debt_rolls_back(self, env):
        open_2x(env)
        error = assert_untouched(
            env,
            lambda: env.engine.unwind_loop("alice", "WETH", "USDC", repay=Amount(Decimal("0"))),
            ExternalCallFailed,
        )
        assert error.phase is Phase.WITHDRAW
        assert isinstance(error.__cause__, UnhealthyWithdrawal)


class TestUnwindFailures:

    def test_caller_must_control_beneficiary(self, env):
        open_2x(env)
        assert_untouched(
            env, lambda: env.engine.unwind_loop("bob", "WETH", "USDC", beneficiary="alice"),
            ValidationError,
        )

    def test_controller_may_unwind_sub_account(self, env):
        env.pool.set_operator("alice", env.engine.wallet)
        open_2x(env, beneficiary="alice:vault")
        result = env.engine.unwind_loop("alice", "WETH", "USDC", beneficiary="alice:vault",
                                        recipient="alice")
        assert result.remaining_debt == 0
        assert env.balance("alice", "WETH") > Decimal("99.5")

    @pytest.mark.parametrize("kwargs", [
        dict(repay=Decimal("5")),
        dict(withdraw=5),
        dict(slippage_tolerance=Decimal("0.2")),
        dict(slippage_tolerance=Decimal("NaN")),
        dict(slippage_tolerance="tight"),
        dict(debt_asset="WETH"),
    ])
    def test_invalid_arguments(self, env, kwargs):
        open_2x(env)
        args = dict(caller="alice", collateral_asset="WETH", debt_asset="USDC")
        args.update(kwargs)
        assert_untouched(env, lambda: env.engine.unwind_loop(**args), ValidationError)

    def test_chunk_cap_rolls_back(self, env):
        open_2x(env)
        env.engine.update_config(max_iterations=1)
        error = assert_untouched(
            env, lambda: env.engine.unwind_loop("alice", "WETH", "USDC"), IterationCapReached
        )
        assert error.phase is Phase.REPAY
        assert error.asset == "USDC"

    def test_underwater_position_cannot_sell_collateral(self, env):
        open_2x(env)
        # 24000 * 0.825 / ~20080 < 1
        env.move_price("WETH", "1200")
        error = assert_untouched(
            env, lambda: env.engine.unwind_loop("alice", "WETH", "USDC"), HealthFactorViolation
        )
        assert error.phase is Phase.WITHDRAW

    def test_near_liquidation_close_can_exceed_default_cap(self, env):
        open_2x(env)
        # 24900 * 0.825 / ~20080 is about 1.02, so each chunk frees only a sliver
        env.move_price("WETH", "1245")
        assert_untouched(
            env, lambda: env.engine.unwind_loop("alice", "WETH", "USDC"), IterationCapReached
        )

        env.engine.update_config(max_iterations=40)
        result = env.engine.unwind_loop("alice", "WETH", "USDC")
        assert result.chunks > 10
        assert result.remaining_debt == 0

    def test_reopen_after_close(self, env):
        open_2x(env)
        env.engine.unwind_loop("alice", "WETH", "USDC")
        env.ledger.approve("alice", env.engine.wallet, "WETH", Decimal("10"))
        assert open_2x(env).status is LoopStatus.TARGET_REACHED

"""
test_order_lifecycle.py - Functional tests for order-managed positions

Drives several owners' positions through entry triggers, exit triggers and
cancellation across a sequence of price moves, checking at each step that
positions stay isolated from one another and that value is conserved.
"""

import pytest
from decimal import Decimal

from leverloop import PositionStatus, TriggerDirection

from tests.market_env import nonzero_balances


@pytest.fixture
def bob(env):
    env.ledger.issue("bob", "WETH", Decimal("50"))
    env.ledger.approve("bob", "orders", "WETH", Decimal("50"))
    return "bob"


def order(manager, owner, margin, leverage, trigger, direction):
    return manager.create_order(
        owner, "WETH", "USDC", Decimal(margin), Decimal(leverage), Decimal("1.2"),
        Decimal("0.02"), Decimal(trigger), direction,
    )


class TestMultiOwnerLifecycle:

    def test_full_cycle(self, env, manager, bob):
        p1 = order(manager, "alice", "10", "2", "1950", TriggerDirection.BELOW)
        p2 = order(manager, bob, "20", "1.5", "2100", TriggerDirection.ABOVE)
        p3 = order(manager, "alice", "5", "2", "2000", TriggerDirection.BELOW)
        assert env.balance("orders", "WETH") == Decimal("35")

        manager.cancel_order("alice", p3.position_id)
        assert env.balance("orders", "WETH") == Decimal("30")

        report = manager.execute_orders()
        assert report.skipped == [p1.position_id, p2.position_id]

        env.move_price("WETH", "1950")
        report = manager.execute_orders()
        assert report.executed == [p1.position_id]
        assert p2.status is PositionStatus.PENDING

        manager.set_stop_loss("alice", p1.position_id, Decimal("1700"))
        manager.set_take_profit("alice", p1.position_id, Decimal("2300"))
        manager.set_take_profit(bob, p2.position_id, Decimal("2400"))

        env.move_price("WETH", "2150")
        assert manager.execute_orders().executed == [p2.position_id]
        assert manager.execute_unwinds().skipped == [p1.position_id, p2.position_id]
        assert env.balance("orders", "WETH") == 0

        env.move_price("WETH", "2400")
        report = manager.execute_unwinds()
        assert report.executed == [p1.position_id, p2.position_id]
        assert p1.close_reason == "take_profit"
        assert p2.close_reason == "take_profit"

        # each owner receives only their own proceeds
        assert env.balance("alice", "WETH") == Decimal("90") + p1.proceeds_collateral
        assert env.balance("bob", "WETH") == Decimal("30") + p2.proceeds_collateral
        assert env.balance("alice", "USDC") == p1.proceeds_debt_asset
        assert env.balance("bob", "USDC") == p2.proceeds_debt_asset

        # bought at 1950 and sold at 2400 with 2x exposure
        assert p1.proceeds_collateral * Decimal("2400") + p1.proceeds_debt_asset > Decimal("10") * Decimal("2400")

        for position in (p1, p2):
            assert env.pool.collateral_balance("WETH", position.account) == 0
            assert env.pool.debt_balance("USDC", position.account) == 0
        assert nonzero_balances(env.ledger).get("orders", {}) == {}
        assert env.ledger.verify_double_entry()['valid']

    def test_stop_loss_only_touches_its_position(self, env, manager, bob):
        p1 = order(manager, "alice", "10", "2", "2000", TriggerDirection.BELOW)
        p2 = order(manager, bob, "10", "2", "2000", TriggerDirection.BELOW)
        manager.execute_orders()
        manager.set_stop_loss("alice", p1.position_id, Decimal("1900"))

        env.move_price("WETH", "1850")
        report = manager.execute_unwinds()
        assert report.executed == [p1.position_id]
        assert report.skipped == [p2.position_id]
        assert p2.status is PositionStatus.ACTIVE
        assert env.pool.debt_balance("USDC", p2.account) == p2.debt_amount


class TestBatchIsolation:

    def test_failing_entry_does_not_block_siblings(self, env, manager, bob):
        good = order(manager, "alice", "10", "2", "2000", TriggerDirection.BELOW)
        poisoned = order(manager, bob, "10", "2", "2000", TriggerDirection.BELOW)
        other = order(manager, "alice", "5", "1.5", "2000", TriggerDirection.BELOW)
        poisoned.target_leverage = Decimal("50")

        report = manager.execute_orders()
        assert report.executed == [good.position_id, other.position_id]
        assert report.failed == [poisoned.position_id]
        assert "ValidationError" in report.outcomes[1].detail

        assert poisoned.status is PositionStatus.PENDING
        assert env.balance("orders", "WETH") == Decimal("10")
        assert env.pool.collateral_balance("WETH", poisoned.account) == 0

        poisoned.target_leverage = Decimal("2")
        assert manager.execute_orders().executed == [poisoned.position_id]

    def test_failing_exit_does_not_block_siblings(self, env, manager, bob):
        p1 = order(manager, "alice", "10", "2", "2000", TriggerDirection.BELOW)
        p2 = order(manager, bob, "10", "2", "2000", TriggerDirection.BELOW)
        manager.execute_orders()
        manager.set_take_profit("alice", p1.position_id, Decimal("2100"))
        manager.set_take_profit(bob, p2.position_id, Decimal("2100"))
        p1.max_slippage = Decimal("0.5")

        env.move_price("WETH", "2100")
        report = manager.execute_unwinds()
        assert report.failed == [p1.position_id]
        assert report.executed == [p2.position_id]
        assert p1.status is PositionStatus.ACTIVE
        assert env.pool.debt_balance("USDC", p1.account) == p1.debt_amount

"""
Example: Opening, previewing and closing a leveraged WETH position.

This example wires an in-memory lending pool, a constant-product exchange and
a LoopEngine onto one ledger, then walks a 2x loop through its lifecycle:
preview, execute, a price move, and a full unwind. A second part runs the
same position through the order layer with a take-profit trigger.

Run:
    python examples/leverage_loop_demo.py
    python examples/leverage_loop_demo.py --config engine.yaml
"""

from datetime import datetime
from decimal import Decimal
import sys

from leverloop import (
    Ledger, token, StaticPriceSource, InMemoryLendingMarket, OnBehalfLendingAdapter,
    ConstantProductExchange, LoopEngine, OrderManager, TriggerDirection,
    LoopError, ALL, load_config, leverage_grid, leverage_sweep,
)


def build_market(config=None):
    ledger = Ledger("demo", initial_time=datetime(2025, 3, 3, 9, 0), verbose=False)
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_unit(token("USDC", "USD Coin", 6))
    prices = StaticPriceSource({"WETH": Decimal("2000"), "USDC": Decimal("1")})

    pool = InMemoryLendingMarket(ledger, prices)
    pool.list_asset("WETH", Decimal("0.8"), Decimal("0.825"))
    pool.list_asset("USDC", Decimal("0.8"), Decimal("0.85"))
    ledger.issue("lp", "USDC", Decimal("10000000"))
    pool.supply("USDC", Decimal("10000000"), "lp", "lp")

    amm = ConstantProductExchange(ledger)
    amm.add_pool("WETH", Decimal("10000"), "USDC", Decimal("20000000"))

    engine = LoopEngine(ledger, OnBehalfLendingAdapter(pool, "leverloop"), amm, prices,
                        config=config, verbose=True)
    ledger.issue("alice", "WETH", Decimal("100"))
    pool.set_operator("alice", engine.wallet)
    return ledger, prices, pool, amm, engine


def move_price(prices, amm, price):
    prices.update_price("WETH", price)
    amm.set_pool_price("WETH", "USDC", price)


def show_position(pool, account):
    health = pool.account_health(account)
    print(f"  collateral: {pool.collateral_balance('WETH', account):.6f} WETH "
          f"(${health.collateral_value:,.2f})")
    print(f"  debt:       {pool.debt_balance('USDC', account):,.2f} USDC")
    print(f"  health:     {health.health_factor:.4f}")


def main():
    config = None
    if "--config" in sys.argv:
        config = load_config(sys.argv[sys.argv.index("--config") + 1])

    print("=" * 80)
    print("LEVERAGE LOOP - Preview, Execute, Unwind")
    print("=" * 80)
    print()

    ledger, prices, pool, amm, engine = build_market(config)

    print("Step 1: Sweep target leverages")
    print("-" * 80)
    sweep = leverage_sweep(engine, "WETH", "USDC", Decimal("10"), leverage_grid(1, 4, 7),
                           Decimal("1.1"), Decimal("0.01"))
    for target, iterations, hf in zip(sweep['target_leverage'], sweep['iterations'],
                                      sweep['health_factor']):
        print(f"  {target:4.2f}x  iterations {iterations:4.0f}  health factor {hf:8.4f}")
    print()

    print("Step 2: Preview a 2x loop on 10 WETH")
    print("-" * 80)
    preview = engine.preview_loop("WETH", "USDC", Decimal("10"), Decimal("2"),
                                  Decimal("1.1"), Decimal("0.01"))
    print(f"  {preview.status.value} after {preview.iterations} iterations, "
          f"health factor {preview.health_factor:.4f}")
    print()

    print("Step 3: Execute it")
    print("-" * 80)
    ledger.approve("alice", engine.wallet, "WETH", Decimal("10"))
    result = engine.execute_loop("alice", "WETH", "USDC", "alice", Decimal("10"),
                                 Decimal("2"), Decimal("1.1"), Decimal("0.01"))
    for record in result.history:
        print(f"  #{record.iteration}: borrowed {record.borrowed:,.2f} USDC, "
              f"bought {record.swapped_out:.6f} WETH, health {record.health_factor:.4f}")
    show_position(pool, "alice")
    print()

    print("Step 4: An unreachable target is rejected before anything moves")
    print("-" * 80)
    try:
        engine.execute_loop("alice", "WETH", "USDC", "alice", Decimal("10"),
                            Decimal("5"), Decimal("1.1"), Decimal("0.01"))
    except LoopError as e:
        print(f"  rejected: {e}")
    print()

    print("Step 5: WETH rallies to 2200, close everything")
    print("-" * 80)
    move_price(prices, amm, Decimal("2200"))
    unwind = engine.unwind_loop("alice", "WETH", "USDC", ALL, ALL, Decimal("0.01"))
    print(f"  repaid {unwind.repaid:,.2f} USDC in {unwind.chunks} chunks")
    print(f"  alice holds {ledger.get_balance('alice', 'WETH'):.6f} WETH "
          f"and {ledger.balance_of('alice', 'USDC'):,.2f} USDC")
    print()

    print("Step 6: The same trade through the order layer")
    print("-" * 80)
    manager = OrderManager(engine)
    pool.set_operator(manager.custody, engine.wallet)
    ledger.approve("alice", manager.custody, "WETH", Decimal("10"))
    position = manager.create_order("alice", "WETH", "USDC", Decimal("10"), Decimal("2"),
                                    Decimal("1.1"), Decimal("0.01"), Decimal("2100"),
                                    TriggerDirection.BELOW)
    manager.set_take_profit("alice", position.position_id, Decimal("2300"))
    print(f"  {position.position_id} escrowed, entry at or below 2100")
    print(f"  at 2200: {manager.execute_orders().outcomes[0].outcome}")
    move_price(prices, amm, Decimal("2100"))
    ledger.advance_time(datetime(2025, 3, 4, 15, 30))
    print(f"  at 2100: {manager.execute_orders().outcomes[0].outcome}")
    ledger.advance_time(datetime(2025, 3, 7, 11, 0))
    move_price(prices, amm, Decimal("2300"))
    print(f"  at 2300: take profit {manager.execute_unwinds().outcomes[0].outcome}")
    print(f"  proceeds: {position.proceeds_collateral:.6f} WETH "
          f"+ {position.proceeds_debt_asset:,.2f} USDC")
    print(f"  created {position.created_at:%Y-%m-%d %H:%M}, opened {position.opened_at:%Y-%m-%d %H:%M}, "
          f"closed {position.closed_at:%Y-%m-%d %H:%M}")
    print()

    check = ledger.verify_double_entry()
    print(f"Double entry holds: {check['valid']}")


if __name__ == "__main__":
    main()

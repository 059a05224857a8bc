"""
conftest.py - Shared pytest fixtures for leverloop tests

Provides:
- A bare ledger with WETH (18 decimals) and USDC (6 decimals)
- A full market environment: oracle, lending pool, AMM, engine
- A funded "alice" who approved the engine
- An order manager with its custody wallet authorized on the pool
"""

import pytest

from leverloop import Ledger, token

from tests.market_env import build_env, build_manager


@pytest.fixture
def ledger():
    """Ledger with WETH and USDC registered and nothing issued."""
    ledger = Ledger("test", verbose=False)
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_unit(token("USDC", "USD Coin", 6))
    return ledger


@pytest.fixture
def env():
    """ltv 0.8, liquidation threshold 0.825, WETH at 2000, 10,000 WETH pool."""
    return build_env()


@pytest.fixture
def deep_env():
    """Same market with a pool a hundred times deeper (negligible price impact)."""
    return build_env(pool_weth="1000000", pool_usdc="2000000000")


@pytest.fixture
def sub_env():
    """Market reached through the caller-addressed sub-account adapter."""
    return build_env(adapter="sub_account")


@pytest.fixture
def manager(env):
    return build_manager(env)

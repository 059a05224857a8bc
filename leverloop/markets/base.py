"""
base.py - Collaborator contracts consumed by the loop engine

The engine never talks to a concrete market. It depends on two protocols:

- LendingMarket: supply/borrow/withdraw/repay on behalf of a beneficiary,
  plus health, liquidity and per-asset configuration queries. Token flows
  go to and from the adapter's `operator` wallet.
- Exchange: quotes, swaps and pair existence.

Market-side failures raise MarketError subclasses. They are LedgerErrors,
since every market in this package is a set of wallets on the shared ledger.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Protocol, runtime_checkable

from ..core import LedgerError, AccountHealth, AssetConfig


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MarketError(LedgerError):
    """Base exception for lending market and exchange failures."""
    pass


class Unauthorized(MarketError):
    """Sender may not act for the account."""
    pass


class AssetNotListed(MarketError):
    pass


class InsufficientLiquidity(MarketError):
    """The market does not hold enough of the asset to lend or return."""
    pass


class BorrowCapExceeded(MarketError):
    """Borrow would exceed the account's loan-to-value limit or the asset is not borrowable."""
    pass


class UnhealthyWithdrawal(MarketError):
    """Withdrawal would leave the account with health factor below 1."""
    pass


class ExchangeError(MarketError):
    pass


class PoolNotFound(ExchangeError):
    pass


class InsufficientOutput(ExchangeError):
    """Swap output is below the caller's minimum."""
    pass


class InsufficientReserves(ExchangeError):
    """Requested output is not available in the pool."""
    pass


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LendingMarket(Protocol):
    """
    Attribution-agnostic lending capability.

    `beneficiary` is the identity the engine acts for; how it maps to the
    market's own account key is the adapter's business.
    """
    operator: str

    def supply(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        ...

    def borrow(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        ...

    def withdraw(self, asset: str, amount: Decimal, beneficiary: str, recipient: str) -> Decimal:
        """Returns the amount actually withdrawn."""
        ...

    def repay(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        """Returns the amount actually repaid."""
        ...

    def account_health(self, beneficiary: str) -> AccountHealth:
        ...

    def available_liquidity(self, asset: str) -> Decimal:
        ...

    def asset_config(self, asset: str) -> AssetConfig:
        ...

    def collateral_balance(self, asset: str, beneficiary: str) -> Decimal:
        ...

    def debt_balance(self, asset: str, beneficiary: str) -> Decimal:
        ...


@runtime_checkable
class Exchange(Protocol):
    """Spot conversion between two assets."""

    def has_pair(self, asset_a: str, asset_b: str) -> bool:
        ...

    def quote_out(self, asset_in: str, asset_out: str, amount_in: Decimal) -> Decimal:
        """Output for an exact input."""
        ...

    def quote_in(self, asset_in: str, asset_out: str, amount_out: Decimal) -> Decimal:
        """Input required for an exact output."""
        ...

    def swap(self, asset_in: str, asset_out: str, amount_in: Decimal,
             min_amount_out: Decimal, sender: str, recipient: str) -> Decimal:
        ...

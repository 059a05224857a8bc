"""
markets - Lending market and exchange collaborators

Protocols the engine consumes, plus in-memory implementations backed by the
shared ledger.
"""

from .base import (
    LendingMarket,
    Exchange,
    MarketError,
    Unauthorized,
    AssetNotListed,
    InsufficientLiquidity,
    BorrowCapExceeded,
    UnhealthyWithdrawal,
    ExchangeError,
    PoolNotFound,
    InsufficientOutput,
    InsufficientReserves,
)
from .lending import (
    InMemoryLendingMarket,
    OnBehalfLendingAdapter,
    SubAccountLendingAdapter,
)
from .exchange import ConstantProductExchange

__all__ = [
    'LendingMarket',
    'Exchange',
    'MarketError',
    'Unauthorized',
    'AssetNotListed',
    'InsufficientLiquidity',
    'BorrowCapExceeded',
    'UnhealthyWithdrawal',
    'ExchangeError',
    'PoolNotFound',
    'InsufficientOutput',
    'InsufficientReserves',
    'InMemoryLendingMarket',
    'OnBehalfLendingAdapter',
    'SubAccountLendingAdapter',
    'ConstantProductExchange',
]

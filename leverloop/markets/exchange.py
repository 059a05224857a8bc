"""
exchange.py - Constant-product exchange on the shared ledger

Each pool is a wallet "<name>:<A>/<B>" holding both reserves, so swaps are
ordinary ledger transactions and roll back with the rest of an invocation.

Pricing follows x * y = k with a proportional input fee:

    out = reserve_out * in_after_fee / (reserve_in + in_after_fee)
    in  = reserve_in * out / ((reserve_out - out) * (1 - fee))

quote_out() truncates, quote_in() rounds up; either way the pool never
gives away more than the invariant allows.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_UP, localcontext
from typing import Dict, FrozenSet, Optional, Tuple

from ..core import (
    Move, TransactionOrigin, OriginType, SYSTEM_WALLET, ZERO, ONE,
    build_transaction, to_decimal,
)
from ..ledger import Ledger
from ..normalizer import quantize_native
from .base import PoolNotFound, InsufficientOutput, InsufficientReserves


class ConstantProductExchange:
    """
    Uniswap-v2 style pools keyed by unordered asset pair.

    Example:
        amm = ConstantProductExchange(ledger, fee=Decimal("0.003"))
        amm.add_pool("WETH", Decimal("1000"), "USDC", Decimal("2000000"))
        out = amm.swap("USDC", "WETH", Decimal("2000"), Decimal("0.99"), "alice", "alice")
    """

    def __init__(self, ledger: Ledger, fee: Decimal = Decimal("0.003"), name: str = "amm"):
        fee = to_decimal(fee)
        if not ZERO <= fee < ONE:
            raise ValueError(f"fee must be in [0, 1), got {fee}")
        self.ledger = ledger
        self.fee = fee
        self.name = name
        self.pools: Dict[FrozenSet[str], str] = {}

    # ------------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------------

    def _key(self, asset_a: str, asset_b: str) -> FrozenSet[str]:
        return frozenset((asset_a, asset_b))

    def pool_wallet(self, asset_a: str, asset_b: str) -> str:
        wallet = self.pools.get(self._key(asset_a, asset_b))
        if wallet is None or asset_a == asset_b:
            raise PoolNotFound(f"{self.name}: no pool for {asset_a}/{asset_b}")
        return wallet

    def has_pair(self, asset_a: str, asset_b: str) -> bool:
        return asset_a != asset_b and self._key(asset_a, asset_b) in self.pools

    def reserves(self, asset_in: str, asset_out: str) -> Tuple[Decimal, Decimal]:
        wallet = self.pool_wallet(asset_in, asset_out)
        return (self.ledger.balance_of(wallet, asset_in), self.ledger.balance_of(wallet, asset_out))

    def add_pool(self, asset_a: str, amount_a: Decimal, asset_b: str, amount_b: Decimal,
                 provider: Optional[str] = None) -> str:
        """
        Create a pool seeded with both reserves.

        Reserves are pulled from `provider`, or issued from the system wallet
        when no provider is given.
        """
        if asset_a == asset_b:
            raise ValueError("pool assets must differ")
        if self._key(asset_a, asset_b) in self.pools:
            raise ValueError(f"{self.name}: pool {asset_a}/{asset_b} already exists")
        first, second = sorted((asset_a, asset_b))
        wallet = self.ledger.ensure_wallet(f"{self.name}:{first}/{second}")
        self.pools[self._key(asset_a, asset_b)] = wallet
        source = provider or SYSTEM_WALLET
        moves = [
            Move(self.ledger.get_unit(asset).round(to_decimal(amount)), asset, source, wallet,
                 f"{self.name}:seed")
            for asset, amount in ((asset_a, amount_a), (asset_b, amount_b))
        ]
        self.ledger.execute_or_raise(build_transaction(
            self.ledger, moves, TransactionOrigin(OriginType.EXCHANGE, self.name, "SEED")
        ))
        return wallet

    def spot_price(self, asset: str, quote_asset: str) -> Decimal:
        """Marginal price of one `asset` in `quote_asset`, fee excluded."""
        reserve_asset, reserve_quote = self.reserves(asset, quote_asset)
        return reserve_quote / reserve_asset

    def set_pool_price(self, asset: str, quote_asset: str, price: Decimal) -> None:
        """
        Move a pool to a new spot price keeping k constant.

        Reserves are rebalanced by issuing to or burning into the system
        wallet, which stands in for arbitrageurs.
        """
        price = to_decimal(price)
        if price <= ZERO:
            raise ValueError(f"price must be positive, got {price}")
        wallet = self.pool_wallet(asset, quote_asset)
        reserve_asset, reserve_quote = self.reserves(asset, quote_asset)
        k = reserve_asset * reserve_quote
        targets = {
            asset: self.ledger.get_unit(asset).round((k / price).sqrt()),
            quote_asset: self.ledger.get_unit(quote_asset).round((k * price).sqrt()),
        }
        moves = []
        for symbol, current in ((asset, reserve_asset), (quote_asset, reserve_quote)):
            delta = targets[symbol] - current
            if delta > ZERO:
                moves.append(Move(delta, symbol, SYSTEM_WALLET, wallet, f"{self.name}:rebalance"))
            elif delta < ZERO:
                moves.append(Move(-delta, symbol, wallet, SYSTEM_WALLET, f"{self.name}:rebalance"))
        self.ledger.execute_or_raise(build_transaction(
            self.ledger, moves, TransactionOrigin(OriginType.EXCHANGE, self.name, "REBALANCE")
        ))

    # ------------------------------------------------------------------------
    # Quotes and swaps
    # ------------------------------------------------------------------------

    def _decimals(self, asset: str) -> int:
        return self.ledger.get_unit(asset).decimal_places

    def quote_out(self, asset_in: str, asset_out: str, amount_in: Decimal) -> Decimal:
        amount_in = to_decimal(amount_in)
        reserve_in, reserve_out = self.reserves(asset_in, asset_out)
        if amount_in <= ZERO:
            return quantize_native(ZERO, self._decimals(asset_out))
        with localcontext() as ctx:
            ctx.rounding = ROUND_DOWN
            in_after_fee = amount_in * (ONE - self.fee)
            out = reserve_out * in_after_fee / (reserve_in + in_after_fee)
            return quantize_native(out, self._decimals(asset_out), ROUND_DOWN)

    def quote_in(self, asset_in: str, asset_out: str, amount_out: Decimal) -> Decimal:
        amount_out = to_decimal(amount_out)
        reserve_in, reserve_out = self.reserves(asset_in, asset_out)
        if amount_out <= ZERO:
            return quantize_native(ZERO, self._decimals(asset_in))
        if amount_out >= reserve_out:
            raise InsufficientReserves(
                f"{self.name}: {amount_out} {asset_out} requested, pool holds {reserve_out}"
            )
        with localcontext() as ctx:
            ctx.rounding = ROUND_UP
            amount_in = reserve_in * amount_out / ((reserve_out - amount_out) * (ONE - self.fee))
            return quantize_native(amount_in, self._decimals(asset_in), ROUND_UP)

    def swap(self, asset_in: str, asset_out: str, amount_in: Decimal,
             min_amount_out: Decimal, sender: str, recipient: str) -> Decimal:
        """
        Swap an exact input for at least `min_amount_out`.

        Raises:
            InsufficientOutput: If the output would be zero or below the minimum
        """
        wallet = self.pool_wallet(asset_in, asset_out)
        amount_in = self.ledger.get_unit(asset_in).round(to_decimal(amount_in))
        out = self.quote_out(asset_in, asset_out, amount_in)
        if out <= ZERO or out < to_decimal(min_amount_out):
            raise InsufficientOutput(
                f"{self.name}: {amount_in} {asset_in} buys {out} {asset_out}, minimum {min_amount_out}"
            )
        self.ledger.ensure_wallet(recipient)
        self.ledger.execute_or_raise(build_transaction(self.ledger, [
            Move(amount_in, asset_in, sender, wallet, f"{self.name}:swap"),
            Move(out, asset_out, wallet, recipient, f"{self.name}:swap"),
        ], TransactionOrigin(OriginType.EXCHANGE, self.name, "SWAP")))
        return out

    def __repr__(self):
        return f"ConstantProductExchange({self.name}, fee={self.fee}, {len(self.pools)} pools)"

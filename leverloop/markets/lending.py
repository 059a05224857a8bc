"""
lending.py - In-memory pooled lending market and its two adapters

InMemoryLendingMarket keeps all state on the ledger:
    - reserves are balances of the market wallet
    - supplied collateral is a non-transferable supply receipt "<name>.a<SYM>"
    - debt is a non-transferable debt receipt "<name>.d<SYM>"

so a ledger rollback undoes market state together with everything else.

Two adapters expose the same LendingMarket capability over different
attribution models:
    - OnBehalfLendingAdapter: positions are recorded under the beneficiary;
      the beneficiary approves the operator once (credit delegation).
    - SubAccountLendingAdapter: the market only trusts the authenticated
      caller, so positions live in the operator's sub-account
      "<operator>:<beneficiary>".
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Optional, Set, Tuple

from ..core import (
    AccountHealth, AssetConfig, Move, TransactionOrigin, OriginType,
    UNIT_TYPE_SUPPLY_RECEIPT, UNIT_TYPE_DEBT_RECEIPT,
    SYSTEM_WALLET, ZERO, INFINITE_HEALTH,
    build_transaction, controls, receipt, subaccount, to_decimal,
)
from ..ledger import Ledger
from ..normalizer import to_canonical
from ..pricing_source import PriceSource
from ..sizer import health_factor
from .base import (
    Unauthorized, AssetNotListed, InsufficientLiquidity,
    BorrowCapExceeded, UnhealthyWithdrawal,
)


class InMemoryLendingMarket:
    """
    Pooled lending market priced by an oracle.

    Every mutating method takes an explicit `sender` (the wallet calling the
    market) and `account` (the position key). Borrow and withdraw require
    the sender to control the account or to be an approved operator of its
    controller; supply and repay accept any sender.
    """

    def __init__(self, ledger: Ledger, prices: PriceSource, name: str = "pool"):
        self.ledger = ledger
        self.prices = prices
        self.name = name
        self.wallet = ledger.ensure_wallet(name)
        self.assets: Dict[str, AssetConfig] = {}
        # (owner, operator) pairs; owner's sub-accounts are covered too
        self.operators: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------------
    # Listing and authorization
    # ------------------------------------------------------------------------

    def supply_unit(self, asset: str) -> str:
        return f"{self.name}.a{asset}"

    def debt_unit(self, asset: str) -> str:
        return f"{self.name}.d{asset}"

    def list_asset(self, asset: str, ltv: Decimal, liquidation_threshold: Decimal,
                   collateral_enabled: bool = True, borrow_enabled: bool = True) -> AssetConfig:
        """List a registered token and register its supply and debt receipts."""
        if asset in self.assets:
            raise ValueError(f"{asset} already listed on {self.name}")
        underlying = self.ledger.get_unit(asset)
        config = AssetConfig(
            symbol=asset,
            decimals=underlying.decimal_places,
            ltv=ltv,
            liquidation_threshold=liquidation_threshold,
            collateral_enabled=collateral_enabled,
            borrow_enabled=borrow_enabled,
        )
        self.ledger.register_unit(receipt(
            self.supply_unit(asset), f"{self.name} supplied {asset}",
            UNIT_TYPE_SUPPLY_RECEIPT, underlying, self.name,
        ))
        self.ledger.register_unit(receipt(
            self.debt_unit(asset), f"{self.name} borrowed {asset}",
            UNIT_TYPE_DEBT_RECEIPT, underlying, self.name,
        ))
        self.assets[asset] = config
        return config

    def set_operator(self, owner: str, operator: str, approved: bool = True) -> None:
        """Let `operator` borrow and withdraw for `owner` and its sub-accounts."""
        if approved:
            self.operators.add((owner, operator))
        else:
            self.operators.discard((owner, operator))

    def is_authorized(self, sender: str, account: str) -> bool:
        if controls(sender, account):
            return True
        return any(op == sender and controls(owner, account) for owner, op in self.operators)

    def _require_authorized(self, sender: str, account: str) -> None:
        if not self.is_authorized(sender, account):
            raise Unauthorized(f"{sender} may not act for {account} on {self.name}")

    # ------------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------------

    def asset_config(self, asset: str) -> AssetConfig:
        config = self.assets.get(asset)
        if config is None:
            raise AssetNotListed(f"{asset} is not listed on {self.name}")
        return config

    def available_liquidity(self, asset: str) -> Decimal:
        self.asset_config(asset)
        return self.ledger.balance_of(self.wallet, asset)

    def collateral_balance(self, asset: str, account: str) -> Decimal:
        self.asset_config(asset)
        return self.ledger.balance_of(account, self.supply_unit(asset))

    def debt_balance(self, asset: str, account: str) -> Decimal:
        self.asset_config(asset)
        return self.ledger.balance_of(account, self.debt_unit(asset))

    def account_health(self, account: str,
                       adjustments: Optional[Dict[Tuple[str, str], Decimal]] = None) -> AccountHealth:
        """
        Health snapshot of an account at oracle prices.

        `adjustments` maps ("supply" | "debt", asset) to a native delta applied
        before valuation, which is how borrow and withdraw check the state
        they would produce.
        """
        adjustments = adjustments or {}
        collateral_value = ZERO
        weighted_lt = ZERO
        weighted_ltv = ZERO
        debt_value = ZERO
        for asset in sorted(self.assets):
            config = self.assets[asset]
            supplied = self.collateral_balance(asset, account) + adjustments.get(("supply", asset), ZERO)
            owed = self.debt_balance(asset, account) + adjustments.get(("debt", asset), ZERO)
            if supplied <= ZERO and owed <= ZERO:
                continue
            price = self.prices.get_price(asset)
            if supplied > ZERO and config.collateral_enabled:
                value = to_canonical(supplied, price, config.decimals)
                collateral_value += value
                weighted_lt += value * config.liquidation_threshold
                weighted_ltv += value * config.ltv
            if owed > ZERO:
                debt_value += to_canonical(owed, price, config.decimals)

        if collateral_value > ZERO:
            liquidation_threshold = weighted_lt / collateral_value
            ltv = weighted_ltv / collateral_value
        else:
            liquidation_threshold = ZERO
            ltv = ZERO
        if debt_value > ZERO:
            hf = health_factor(collateral_value, debt_value, liquidation_threshold) if collateral_value > ZERO else ZERO
        else:
            hf = INFINITE_HEALTH
        return AccountHealth(
            collateral_value=collateral_value,
            debt_value=debt_value,
            available_borrow_value=max(weighted_ltv - debt_value, ZERO),
            liquidation_threshold=liquidation_threshold,
            ltv=ltv,
            health_factor=hf,
        )

    # ------------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------------

    def _origin(self, event: str) -> TransactionOrigin:
        return TransactionOrigin(OriginType.MARKET, self.name, event)

    def _amount(self, asset: str, amount: Decimal) -> Decimal:
        amount = self.ledger.get_unit(asset).round(to_decimal(amount))
        if amount <= ZERO:
            raise ValueError(f"{self.name}: amount must be positive, got {amount}")
        return amount

    def supply(self, asset: str, amount: Decimal, sender: str, account: str) -> Decimal:
        """Move `amount` from sender into reserves and credit `account` with collateral."""
        self.asset_config(asset)
        amount = self._amount(asset, amount)
        self.ledger.ensure_wallet(account)
        self.ledger.execute_or_raise(build_transaction(self.ledger, [
            Move(amount, asset, sender, self.wallet, f"{self.name}:supply"),
            Move(amount, self.supply_unit(asset), SYSTEM_WALLET, account, f"{self.name}:supply"),
        ], self._origin("SUPPLY")))
        return amount

    def borrow(self, asset: str, amount: Decimal, sender: str, account: str,
               recipient: Optional[str] = None) -> Decimal:
        """Lend `amount` to recipient (default: sender) and charge it to `account`."""
        config = self.asset_config(asset)
        amount = self._amount(asset, amount)
        self._require_authorized(sender, account)
        if not config.borrow_enabled:
            raise BorrowCapExceeded(f"{asset} is not borrowable on {self.name}")
        liquidity = self.available_liquidity(asset)
        if amount > liquidity:
            raise InsufficientLiquidity(f"{self.name}: borrow {amount} {asset} > liquidity {liquidity}")
        health = self.account_health(account)
        value = to_canonical(amount, self.prices.get_price(asset), config.decimals)
        if value > health.available_borrow_value:
            raise BorrowCapExceeded(
                f"{account}: borrow value {value} > available {health.available_borrow_value}"
            )
        recipient = self.ledger.ensure_wallet(recipient or sender)
        self.ledger.ensure_wallet(account)
        self.ledger.execute_or_raise(build_transaction(self.ledger, [
            Move(amount, asset, self.wallet, recipient, f"{self.name}:borrow"),
            Move(amount, self.debt_unit(asset), SYSTEM_WALLET, account, f"{self.name}:borrow"),
        ], self._origin("BORROW")))
        return amount

    def withdraw(self, asset: str, amount: Decimal, sender: str, account: str,
                 recipient: str) -> Decimal:
        """
        Return up to `amount` of supplied collateral to `recipient`.

        Returns:
            The amount actually withdrawn (capped at the account's supply)

        Raises:
            UnhealthyWithdrawal: If the account's health factor would fall below 1
        """
        self.asset_config(asset)
        self._require_authorized(sender, account)
        actual = min(self._amount(asset, amount), self.collateral_balance(asset, account))
        if actual <= ZERO:
            return ZERO
        liquidity = self.available_liquidity(asset)
        if actual > liquidity:
            raise InsufficientLiquidity(f"{self.name}: withdraw {actual} {asset} > liquidity {liquidity}")
        after = self.account_health(account, {("supply", asset): -actual})
        if after.health_factor < Decimal("1"):
            raise UnhealthyWithdrawal(
                f"{account}: withdrawing {actual} {asset} leaves health factor {after.health_factor}"
            )
        self.ledger.ensure_wallet(recipient)
        self.ledger.execute_or_raise(build_transaction(self.ledger, [
            Move(actual, self.supply_unit(asset), account, SYSTEM_WALLET, f"{self.name}:withdraw"),
            Move(actual, asset, self.wallet, recipient, f"{self.name}:withdraw"),
        ], self._origin("WITHDRAW")))
        return actual

    def repay(self, asset: str, amount: Decimal, sender: str, account: str) -> Decimal:
        """Repay up to `amount` of `account`'s debt from sender; returns the amount repaid."""
        self.asset_config(asset)
        actual = min(self._amount(asset, amount), self.debt_balance(asset, account))
        if actual <= ZERO:
            return ZERO
        self.ledger.execute_or_raise(build_transaction(self.ledger, [
            Move(actual, asset, sender, self.wallet, f"{self.name}:repay"),
            Move(actual, self.debt_unit(asset), account, SYSTEM_WALLET, f"{self.name}:repay"),
        ], self._origin("REPAY")))
        return actual

    def __repr__(self):
        return f"InMemoryLendingMarket({self.name}, {len(self.assets)} assets)"


class _LendingAdapter:
    """Shared plumbing: token flows always go through `operator`."""

    def __init__(self, market: InMemoryLendingMarket, operator: str):
        self.market = market
        self.operator = market.ledger.ensure_wallet(operator)

    def account_of(self, beneficiary: str) -> str:
        raise NotImplementedError

    def supply(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        return self.market.supply(asset, amount, self.operator, self.account_of(beneficiary))

    def borrow(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        return self.market.borrow(asset, amount, self.operator, self.account_of(beneficiary))

    def withdraw(self, asset: str, amount: Decimal, beneficiary: str, recipient: str) -> Decimal:
        return self.market.withdraw(asset, amount, self.operator, self.account_of(beneficiary), recipient)

    def repay(self, asset: str, amount: Decimal, beneficiary: str) -> Decimal:
        return self.market.repay(asset, amount, self.operator, self.account_of(beneficiary))

    def account_health(self, beneficiary: str) -> AccountHealth:
        return self.market.account_health(self.account_of(beneficiary))

    def available_liquidity(self, asset: str) -> Decimal:
        return self.market.available_liquidity(asset)

    def asset_config(self, asset: str) -> AssetConfig:
        return self.market.asset_config(asset)

    def collateral_balance(self, asset: str, beneficiary: str) -> Decimal:
        return self.market.collateral_balance(asset, self.account_of(beneficiary))

    def debt_balance(self, asset: str, beneficiary: str) -> Decimal:
        return self.market.debt_balance(asset, self.account_of(beneficiary))


class OnBehalfLendingAdapter(_LendingAdapter):
    """
    Beneficiary-addressed market access.

    The market records the position under the beneficiary itself, which must
    have approved the operator with market.set_operator(beneficiary, operator).
    """

    def account_of(self, beneficiary: str) -> str:
        return beneficiary

    def __repr__(self):
        return f"OnBehalfLendingAdapter({self.market.name}, operator={self.operator})"


class SubAccountLendingAdapter(_LendingAdapter):
    """
    Caller-addressed market access.

    The market only acts for the authenticated sender, so each beneficiary is
    given a sub-account of the operator. No approval is needed.
    """

    def account_of(self, beneficiary: str) -> str:
        return subaccount(self.operator, beneficiary)

    def __repr__(self):
        return f"SubAccountLendingAdapter({self.market.name}, operator={self.operator})"

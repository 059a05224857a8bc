"""
orders.py - Price-triggered order layer over the loop engine

OrderManager holds margin in escrow until an entry trigger fires, then opens
the position through LoopEngine with its own custodial identity as the
beneficiary. Each position gets its own external key, a sub-account of the
custody wallet ("orders:pos-000001"), so the manager can later unwind it
without a fresh authorization from the owner. The ownership table maps that
key back to the owner, who receives every proceed.

Position lifecycle:
    PENDING --entry fires--> ACTIVE --TP/SL fires or manual close--> CLOSED
    PENDING --cancel--> CANCELLED (escrow refunded)

execute_orders() and execute_unwinds() are permissionless batch entry
points. Each element runs in its own atomic block; a failing element is
reported and skipped, never affecting its siblings.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .core import (
    Position, Order, PositionStatus, OrderKind, TriggerDirection, ALL,
    LoopError, LedgerError, OrderError, OrderNotFound, InvalidOrderState, NotPositionOwner,
    subaccount, to_decimal,
)
from .engine import LoopEngine
from .pricing_source import PriceSource


OUTCOME_EXECUTED = "executed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    """What happened to one position in a batch call."""
    position_id: str
    outcome: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class BatchReport:
    outcomes: Tuple[BatchOutcome, ...]

    def _with(self, outcome: str) -> List[str]:
        return [o.position_id for o in self.outcomes if o.outcome == outcome]

    @property
    def executed(self) -> List[str]:
        return self._with(OUTCOME_EXECUTED)

    @property
    def skipped(self) -> List[str]:
        return self._with(OUTCOME_SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._with(OUTCOME_FAILED)


class OrderManager:
    """
    Escrow, triggers and custodial positions on top of a LoopEngine.

    Owners approve the custody wallet for their margin before create_order();
    the custody wallet in turn is the caller the engine sees.
    """

    def __init__(
        self,
        engine: LoopEngine,
        price_source: Optional[PriceSource] = None,
        custody_wallet: str = "orders",
        verbose: Optional[bool] = None,
    ):
        self.engine = engine
        self.ledger = engine.ledger
        self.prices = price_source or engine.prices
        self.custody = self.ledger.ensure_wallet(custody_wallet)
        self.verbose = engine.verbose if verbose is None else verbose
        self.positions: Dict[str, Position] = {}
        self.orders: Dict[str, Order] = {}
        # external position key -> logical owner
        self.owners: Dict[str, str] = {}
        self._next_id = 1

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[orders] {message}")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_position(self, position_id: str) -> Position:
        position = self.positions.get(position_id)
        if position is None:
            raise OrderNotFound(f"position {position_id} not found")
        return position

    def get_orders(self, position_id: str) -> List[Order]:
        """Live and historical orders of a position, entry first."""
        self.get_position(position_id)
        return [order for order in self.orders.values() if order.position_id == position_id]

    def get_order(self, position_id: str, kind: OrderKind) -> Optional[Order]:
        return self.orders.get(self._order_id(position_id, kind))

    def positions_of(self, owner: str) -> List[Position]:
        return [p for p in self.positions.values() if p.owner == owner]

    def owner_of(self, account: str) -> str:
        """Logical owner behind an external position key."""
        owner = self.owners.get(account)
        if owner is None:
            raise OrderNotFound(f"no position is held under {account}")
        return owner

    def spot_price(self, position: Position) -> Decimal:
        """Collateral asset priced in the debt asset."""
        return (self.prices.get_price(position.collateral_asset)
                / self.prices.get_price(position.debt_asset))

    # ========================================================================
    # ORDER ENTRY
    # ========================================================================

    def _order_id(self, position_id: str, kind: OrderKind) -> str:
        return f"{position_id}-{kind.value}"

    def _owned(self, owner: str, position_id: str) -> Position:
        position = self.get_position(position_id)
        if position.owner != owner:
            raise NotPositionOwner(f"{owner} does not own {position_id}")
        return position

    def create_order(
        self,
        owner: str,
        collateral_asset: str,
        debt_asset: str,
        margin: Decimal,
        target_leverage: Decimal,
        min_health_factor: Decimal,
        max_slippage: Decimal,
        trigger_price: Decimal,
        direction: TriggerDirection = TriggerDirection.BELOW,
    ) -> Position:
        """
        Escrow `margin` and register an entry trigger.

        Parameters are validated against the engine up front, so an order
        that could never open is rejected here rather than at trigger time.

        Raises:
            ValidationError, EnginePaused, MarketStateError: Invalid parameters
            InsufficientAllowance, InsufficientFunds: Escrow could not be pulled
        """
        _, escrow = self.engine.validate_open(
            collateral_asset, debt_asset, margin, target_leverage, min_health_factor, max_slippage
        )
        entry_price = to_decimal(trigger_price)
        position_id = f"pos-{self._next_id:06d}"
        account = subaccount(self.custody, position_id)

        entry = Order(self._order_id(position_id, OrderKind.ENTRY), position_id,
                      OrderKind.ENTRY, entry_price, direction)
        self.ledger.transfer_from(self.custody, owner, self.custody, collateral_asset, escrow,
                                  f"orders:escrow:{position_id}")

        self._next_id += 1
        position = Position(
            position_id=position_id,
            owner=owner,
            account=account,
            collateral_asset=collateral_asset,
            debt_asset=debt_asset,
            margin=escrow,
            target_leverage=to_decimal(target_leverage),
            min_health_factor=to_decimal(min_health_factor),
            max_slippage=to_decimal(max_slippage),
            created_at=self.ledger.current_time,
        )
        self.positions[position_id] = position
        self.orders[entry.order_id] = entry
        self.owners[account] = owner
        self._log(f"{position_id}: {owner} escrowed {escrow} {collateral_asset}, "
                  f"entry {direction.value} {entry_price}")
        return position

    def _set_exit(self, owner: str, position_id: str, kind: OrderKind,
                  trigger_price: Decimal, direction: TriggerDirection) -> Order:
        position = self._owned(owner, position_id)
        if position.status not in (PositionStatus.PENDING, PositionStatus.ACTIVE):
            raise InvalidOrderState(f"{position_id} is {position.status.value}")
        order = Order(self._order_id(position_id, kind), position_id, kind,
                      to_decimal(trigger_price), direction)
        self.orders[order.order_id] = order
        self._log(f"{position_id}: {kind.value} {direction.value} {order.trigger_price}")
        return order

    def set_take_profit(self, owner: str, position_id: str, trigger_price: Decimal) -> Order:
        """Create or replace the single take-profit trigger (fires at or above)."""
        return self._set_exit(owner, position_id, OrderKind.TAKE_PROFIT,
                              trigger_price, TriggerDirection.ABOVE)

    def set_stop_loss(self, owner: str, position_id: str, trigger_price: Decimal) -> Order:
        """Create or replace the single stop-loss trigger (fires at or below)."""
        return self._set_exit(owner, position_id, OrderKind.STOP_LOSS,
                              trigger_price, TriggerDirection.BELOW)

    def _clear_exits(self, position_id: str, fired: Optional[OrderKind] = None) -> None:
        for kind in (OrderKind.TAKE_PROFIT, OrderKind.STOP_LOSS):
            order = self.get_order(position_id, kind)
            if order is None or not order.is_live:
                continue
            if kind is fired:
                self.orders[order.order_id] = replace(order, executed=True)
            else:
                self.orders[order.order_id] = replace(order, cancelled=True)

    def cancel_order(self, owner: str, position_id: str) -> Position:
        """Cancel a PENDING position and refund its escrow."""
        position = self._owned(owner, position_id)
        if position.status is not PositionStatus.PENDING:
            raise InvalidOrderState(f"only pending positions can be cancelled, {position_id} is "
                                    f"{position.status.value}")
        self.ledger.transfer(self.custody, owner, position.collateral_asset, position.margin,
                             f"orders:refund:{position_id}")
        entry = self.get_order(position_id, OrderKind.ENTRY)
        self.orders[entry.order_id] = replace(entry, cancelled=True)
        self._clear_exits(position_id)
        position.status = PositionStatus.CANCELLED
        position.closed_at = self.ledger.current_time
        self._log(f"{position_id}: cancelled, refunded {position.margin} {position.collateral_asset}")
        return position

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _open(self, position: Position) -> None:
        self.ledger.approve(self.custody, self.engine.wallet, position.collateral_asset, position.margin)
        result = self.engine.execute_loop(
            caller=self.custody,
            collateral_asset=position.collateral_asset,
            debt_asset=position.debt_asset,
            beneficiary=position.account,
            initial_margin=position.margin,
            target_leverage=position.target_leverage,
            min_health_factor=position.min_health_factor,
            slippage_tolerance=position.max_slippage,
        )
        entry = self.get_order(position.position_id, OrderKind.ENTRY)
        self.orders[entry.order_id] = replace(entry, executed=True)
        position.collateral_amount = result.collateral_amount
        position.debt_amount = result.debt_amount
        position.loop_count = result.iterations
        position.status = PositionStatus.ACTIVE
        position.opened_at = self.ledger.current_time

    def _close(self, position: Position, reason: str, fired: Optional[OrderKind] = None) -> None:
        result = self.engine.unwind_loop(
            caller=self.custody,
            collateral_asset=position.collateral_asset,
            debt_asset=position.debt_asset,
            repay=ALL,
            withdraw=ALL,
            slippage_tolerance=position.max_slippage,
            beneficiary=position.account,
            recipient=position.owner,
        )
        self._clear_exits(position.position_id, fired)
        position.collateral_amount = result.remaining_collateral
        position.debt_amount = result.remaining_debt
        position.proceeds_collateral = result.withdrawn
        position.proceeds_debt_asset = result.leftover_debt_asset
        position.status = PositionStatus.CLOSED
        position.closed_at = self.ledger.current_time
        position.close_reason = reason

    def _select(self, position_ids: Optional[Iterable[str]], status: PositionStatus) -> List[str]:
        if position_ids is None:
            return [pid for pid, p in self.positions.items() if p.status is status]
        return list(position_ids)

    def _run_batch(self, position_ids: List[str], step) -> BatchReport:
        outcomes = []
        for position_id in position_ids:
            try:
                with self.ledger.atomic():
                    outcome, detail = step(position_id)
            except (LoopError, LedgerError, OrderError) as e:
                outcome, detail = OUTCOME_FAILED, f"{type(e).__name__}: {e}"
            outcomes.append(BatchOutcome(position_id, outcome, detail))
            self._log(f"{position_id}: {outcome} {detail}".rstrip())
        return BatchReport(tuple(outcomes))

    def _entry_step(self, position_id: str) -> Tuple[str, str]:
        position = self.get_position(position_id)
        if position.status is not PositionStatus.PENDING:
            return OUTCOME_SKIPPED, f"status {position.status.value}"
        price = self.spot_price(position)
        entry = self.get_order(position_id, OrderKind.ENTRY)
        if not entry.fires_at(price):
            return OUTCOME_SKIPPED, f"price {price} has not crossed {entry.trigger_price}"
        self._open(position)
        return OUTCOME_EXECUTED, f"opened at {price} in {position.loop_count} iterations"

    def _exit_step(self, position_id: str) -> Tuple[str, str]:
        position = self.get_position(position_id)
        if position.status is not PositionStatus.ACTIVE:
            return OUTCOME_SKIPPED, f"status {position.status.value}"
        price = self.spot_price(position)
        for kind in (OrderKind.STOP_LOSS, OrderKind.TAKE_PROFIT):
            order = self.get_order(position_id, kind)
            if order is not None and order.fires_at(price):
                self._close(position, kind.value, kind)
                return OUTCOME_EXECUTED, f"{kind.value} at {price}"
        return OUTCOME_SKIPPED, f"no trigger at {price}"

    def execute_orders(self, position_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """Open every listed (default: every pending) position whose entry trigger holds."""
        return self._run_batch(self._select(position_ids, PositionStatus.PENDING), self._entry_step)

    def execute_unwinds(self, position_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """Fully close every listed (default: every active) position with a fired TP or SL."""
        return self._run_batch(self._select(position_ids, PositionStatus.ACTIVE), self._exit_step)

    def close_position(self, owner: str, position_id: str) -> Position:
        """Manually close an ACTIVE position; proceeds go to the owner."""
        position = self._owned(owner, position_id)
        if position.status is not PositionStatus.ACTIVE:
            raise InvalidOrderState(f"only active positions can be closed, {position_id} is "
                                    f"{position.status.value}")
        self._close(position, "manual")
        self._log(f"{position_id}: closed by owner")
        return position

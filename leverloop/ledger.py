"""
ledger.py - Stateful Double-Entry Ledger Host

The Ledger class is the central state manager for every token balance the
engine touches: user wallets, the engine wallet, lending-market reserves and
receipts, and exchange pool reserves. It is the only module that mutates
balances, which is what lets the engine roll back a whole leverage loop.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Provides atomic() and sandbox() blocks spanning many transactions
    - Implements the transfer primitive: transfer, approve, transfer_from
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult,
    Positions, UnitState,
    build_transaction,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET, ZERO,
    # Exceptions
    LedgerError, InsufficientFunds, BalanceConstraintViolation,
    TransferRuleViolation, InsufficientAllowance,
    UnitNotRegistered, WalletNotRegistered,
)


# (owner, spender, unit) -> remaining allowance
AllowanceMap = Dict[Tuple[str, str, str], Decimal]


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Everything needed to restore the ledger to an earlier point."""
    balances: Dict[str, Dict[str, Decimal]]
    positions_by_unit: Dict[str, Dict[str, Decimal]]
    units: Dict[str, Unit]
    registered_wallets: Set[str]
    allowances: AllowanceMap
    log_length: int
    next_sequence: int


class Ledger:
    """
    Double-entry ledger with full validation and audit trail.

    Design Principles:
        - Always validates: every transaction is checked against registration,
          transfer rules and balance constraints before any move is applied.
        - Always logs: every applied transaction is recorded in the log.
        - Rolls back: atomic() restores balances, units, wallets, allowances
          and the log when its block raises.

    Thread Safety:
        Not thread-safe. Callers serialize access.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("WETH", "Wrapped Ether", 18))
        ledger.register_wallet("alice")
        ledger.issue("alice", "WETH", Decimal("10"))
        ledger.transfer("alice", "bob", "WETH", Decimal("1"))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print one line per applied or rejected transaction
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self.allowances: AllowanceMap = {}
        self.last_error: Optional[LedgerError] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._next_sequence: int = 0
        # Inverted index mapping unit -> {wallet -> quantity} for O(1) position lookups
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def balance_of(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Like get_balance(), but an unknown wallet simply holds nothing."""
        if wallet_id not in self.registered_wallets:
            return Decimal("0")
        return self.get_balance(wallet_id, unit_symbol)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Get a deep copy of a unit's internal state."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        unit_obj = self.units[unit_symbol]
        return copy.deepcopy(unit_obj.state) if unit_obj.state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Total supply of a unit across all wallets, SYSTEM_WALLET included.

        Wallets are sorted before summation for deterministic accumulation.
        Issuance debits SYSTEM_WALLET, so this is zero for every unit when
        double entry holds.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def circulating_supply(self, unit_symbol: str) -> Decimal:
        """Supply held outside SYSTEM_WALLET."""
        return self.total_supply(unit_symbol) - self.balances[SYSTEM_WALLET].get(unit_symbol, Decimal("0"))

    def verify_double_entry(self, tolerance: Decimal = Decimal("1e-18")) -> Dict[str, Any]:
        """
        Verify that every unit's balances sum to zero across all wallets.

        Returns:
            Dict with keys:
            - 'valid': bool - True if conservation holds for every unit
            - 'supplies': Dict[str, Decimal] - total per unit (should be 0)
            - 'discrepancies': List[Dict] - units whose total is non-zero
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in self.units:
            total = self.total_supply(unit_symbol)
            supplies[unit_symbol] = total
            if abs(total) > tolerance:
                discrepancies.append({'unit': unit_symbol, 'actual': total})
        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register a wallet if it is not registered yet."""
        if wallet_id not in self.registered_wallets:
            self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}"""
        return f"exec:{self.name}:{sequence:012d}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. On rejection the
        reason is kept in `last_error` and nothing is applied.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        error = self._validate_pending(pending)
        if error is not None:
            self.last_error = error
            if self.verbose:
                print(f"✗ REJECTED: {error}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1
        tx = Transaction(
            moves=pending.moves,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            sequence_number=sequence,
        )
        self._execute_moves(tx.moves)
        self.transaction_log.append(tx)
        self.last_error = None

        if self.verbose:
            print(f"✓ APPLIED: {tx}")
        return ExecuteResult.APPLIED

    def execute_or_raise(self, pending: PendingTransaction) -> None:
        """Execute and raise the rejection reason instead of returning REJECTED."""
        if self.execute(pending) == ExecuteResult.REJECTED:
            raise self.last_error

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerError]:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Timestamp (transaction must not be from the future)
        2. Unit and wallet registration
        3. Transfer rule enforcement
        4. Balance constraints on the net change per (wallet, unit)

        Returns:
            None if valid, otherwise the LedgerError describing the failure
        """
        if pending.timestamp > self._current_time:
            return LedgerError("future timestamp")

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return UnitNotRegistered(f"unit not registered: {move.unit_symbol}")
            if not self.is_registered(move.source):
                return WalletNotRegistered(f"wallet not registered: {move.source}")
            if not self.is_registered(move.dest):
                return WalletNotRegistered(f"wallet not registered: {move.dest}")

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return e

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it is the issuer of every unit
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)
            if proposed < unit.min_balance:
                return InsufficientFunds(
                    f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
                )
            if proposed > unit.max_balance:
                return BalanceConstraintViolation(
                    f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"
                )

        return None

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep unit -> {wallet -> quantity} in sync; dust positions are dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to wallet balances with unit rounding and index updates."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # TRANSFER PRIMITIVE
    # ========================================================================

    def _quantize(self, unit_symbol: str, quantity: Decimal) -> Decimal:
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        return self.get_unit(unit_symbol).round(quantity)

    def issue(self, wallet_id: str, unit_symbol: str, quantity: Decimal,
              contract_id: str = "issue") -> Decimal:
        """Mint `quantity` from SYSTEM_WALLET into a wallet. Returns the quantized amount."""
        amount = self._quantize(unit_symbol, quantity)
        if amount <= ZERO:
            return ZERO
        self.ensure_wallet(wallet_id)
        self.execute_or_raise(build_transaction(
            self,
            [Move(amount, unit_symbol, SYSTEM_WALLET, wallet_id, contract_id)],
            TransactionOrigin(OriginType.SYSTEM, self.name, "ISSUE"),
        ))
        return amount

    def transfer(self, source: str, dest: str, unit_symbol: str, quantity: Decimal,
                 contract_id: str = "transfer",
                 origin: Optional[TransactionOrigin] = None) -> Decimal:
        """
        Push `quantity` of a unit from source to dest.

        Returns:
            The quantized amount moved (zero moves nothing)

        Raises:
            LedgerError subclass describing why the move was rejected
        """
        amount = self._quantize(unit_symbol, quantity)
        if amount <= ZERO:
            return ZERO
        self.execute_or_raise(build_transaction(
            self,
            [Move(amount, unit_symbol, source, dest, contract_id)],
            origin or TransactionOrigin(OriginType.USER_ACTION, source, "TRANSFER"),
        ))
        return amount

    def approve(self, owner: str, spender: str, unit_symbol: str, quantity: Decimal) -> None:
        """Set the amount `spender` may pull from `owner` (overwrites, does not add)."""
        if owner not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {owner} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        if quantity < ZERO:
            raise ValueError(f"Allowance must be non-negative, got {quantity}")
        self.allowances[(owner, spender, unit_symbol)] = quantity

    def allowance(self, owner: str, spender: str, unit_symbol: str) -> Decimal:
        return self.allowances.get((owner, spender, unit_symbol), Decimal("0"))

    def transfer_from(self, spender: str, owner: str, dest: str, unit_symbol: str,
                      quantity: Decimal, contract_id: str = "transfer_from") -> Decimal:
        """
        Pull `quantity` from `owner` to `dest` against spender's allowance.

        Raises:
            InsufficientAllowance: If the approved amount is too small
            InsufficientFunds: If owner's balance is too small
        """
        amount = self._quantize(unit_symbol, quantity)
        if amount <= ZERO:
            return ZERO
        approved = self.allowance(owner, spender, unit_symbol)
        if spender != owner and approved < amount:
            raise InsufficientAllowance(
                f"{spender} may pull {approved} {unit_symbol} from {owner}, requested {amount}"
            )
        self.transfer(owner, dest, unit_symbol, amount, contract_id,
                      TransactionOrigin(OriginType.USER_ACTION, spender, "TRANSFER_FROM"))
        if spender != owner:
            self.allowances[(owner, spender, unit_symbol)] = approved - amount
        return amount

    # ========================================================================
    # ATOMIC BLOCKS
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        """Capture balances, units, wallets, allowances and log position."""
        return LedgerSnapshot(
            balances={w: dict(b) for w, b in self.balances.items()},
            positions_by_unit={u: dict(p) for u, p in self._positions_by_unit.items()},
            units=dict(self.units),
            registered_wallets=set(self.registered_wallets),
            allowances=dict(self.allowances),
            log_length=len(self.transaction_log),
            next_sequence=self._next_sequence,
        )

    def restore(self, snapshot: LedgerSnapshot) -> None:
        """Return the ledger to a snapshot, discarding everything applied since."""
        self.balances = {
            w: defaultdict(lambda: Decimal("0"), b) for w, b in snapshot.balances.items()
        }
        self._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in snapshot.positions_by_unit.items():
            self._positions_by_unit[unit_symbol] = dict(positions)
        self.units = dict(snapshot.units)
        self.registered_wallets = set(snapshot.registered_wallets)
        self.allowances = dict(snapshot.allowances)
        del self.transaction_log[snapshot.log_length:]
        self._next_sequence = snapshot.next_sequence

    @contextmanager
    def atomic(self) -> Iterator[LedgerSnapshot]:
        """
        Run a block as one all-or-nothing unit.

        If the block raises, every transaction applied inside it is rolled
        back and the exception propagates. Blocks nest: an inner failure that
        the outer block handles only discards the inner work.
        """
        snap = self.snapshot()
        try:
            yield snap
        except BaseException:
            self.restore(snap)
            if self.verbose:
                print(f"↺ ROLLED BACK to sequence {snap.next_sequence}")
            raise

    @contextmanager
    def sandbox(self) -> Iterator[LedgerSnapshot]:
        """Run a block whose effects are always discarded (dry run)."""
        snap = self.snapshot()
        try:
            yield snap
        finally:
            self.restore(snap)

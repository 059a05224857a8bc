"""
Core types and pure helpers for the leverage loop engine.

This module provides the foundational data structures shared by every layer:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Loop data model: LoopCache, LoopState, Position, Order and result records
4. Exceptions: LedgerError (bookkeeping) and LoopError (engine) hierarchies
5. Amount targets: the Amount(x) | ALL tagged variant
6. Unit factories: tokens and non-transferable market receipts

All values are Decimals evaluated under one module-level context. Amounts are
native (quantized to the asset's decimal places); values are canonical
(base-currency, quantized to CANONICAL_DECIMALS places).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, Union, runtime_checkable
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All arithmetic runs under one deterministic Decimal context.
#
# PRECONDITION: No other code should modify the global Decimal context.
# Local rounding overrides go through decimal.localcontext().
#
#   - prec=50: wide enough that 1e30 supplies times 1e12 prices stay exact
#   - rounding=ROUND_HALF_EVEN for intermediate products
#
_LOOP_DECIMAL_CONTEXT = getcontext()
_LOOP_DECIMAL_CONTEXT.prec = 50
_LOOP_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption (receipt minting, pool seeding).
# The system wallet is exempt from balance validation.
SYSTEM_WALLET = "system"

# Accounts named "<controller>:<suffix>" are controlled by <controller>.
SUBACCOUNT_SEPARATOR = ":"

UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_SUPPLY_RECEIPT = "SUPPLY_RECEIPT"
UNIT_TYPE_DEBT_RECEIPT = "DEBT_RECEIPT"

# Canonical value precision (18 places, the usual fixed-point "wad").
CANONICAL_DECIMALS = 18

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-30")

ZERO = Decimal("0")
ONE = Decimal("1")
INFINITE_HEALTH = Decimal("Infinity")

# Engine-wide safety limits (EngineConfig defaults).
MAX_LOOP_ITERATIONS = 10
MIN_TARGET_LEVERAGE = Decimal("1")
MAX_TARGET_LEVERAGE = Decimal("10")
HEALTH_FACTOR_FLOOR = Decimal("1.05")
DEFAULT_MAX_SLIPPAGE = Decimal("0.05")
DEFAULT_DUST_VALUE = Decimal("1")

DECIMAL_ROUNDING = {
    UNIT_TYPE_TOKEN: ROUND_DOWN,
    UNIT_TYPE_SUPPLY_RECEIPT: ROUND_DOWN,
    UNIT_TYPE_DEBT_RECEIPT: ROUND_UP,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Internal state for a unit (receipt metadata, issuer, ...).
UnitState = Dict[str, Any]


def to_decimal(value: Any) -> Decimal:
    """Coerce ints, floats and strings to Decimal via str() so floats keep their repr."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def controls(controller: str, account: str) -> bool:
    """
    Return True if `controller` may act for `account`.

    A wallet controls itself and every sub-account named
    "<controller>:<suffix>".
    """
    return account == controller or account.startswith(controller + SUBACCOUNT_SEPARATOR)


def subaccount(controller: str, suffix: str) -> str:
    """Name the sub-account `suffix` controlled by `controller`."""
    return f"{controller}{SUBACCOUNT_SEPARATOR}{suffix}"


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Functions accepting a LedgerView parameter declare their read-only intent.
    The Ledger class implements this protocol but also provides mutation
    methods.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    REJECTED: Transaction failed validation (balances, rules, registration).
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"   # Transfers initiated by a wallet holder
    MARKET = "market"             # Lending market supply/borrow/withdraw/repay
    EXCHANGE = "exchange"         # Swaps and pool maintenance
    ENGINE = "engine"             # Leverage engine margin pulls and payouts
    SYSTEM = "system"             # Issuance and initial setup


class Phase(str, Enum):
    """Phase of an engine operation, reported by every LoopError."""
    PRECHECK = "precheck"
    TRANSFER = "transfer"
    BORROW = "borrow"
    SWAP = "swap"
    DEPOSIT = "deposit"
    HEALTH_CHECK = "health-check"
    ITERATE = "iterate"
    WITHDRAW = "withdraw"
    REPAY = "repay"


class LoopStatus(str, Enum):
    """Terminal condition of a leverage loop."""
    TARGET_REACHED = "target_reached"   # collateral value met the target
    NO_HEADROOM = "no_headroom"         # next increment fell below the dust threshold
    CAPPED = "capped"                   # iteration cap hit before the target


class PositionStatus(str, Enum):
    """Lifecycle of an order-managed position."""
    PENDING = "pending"       # margin escrowed, waiting for the entry trigger
    ACTIVE = "active"         # leverage loop executed
    CLOSED = "closed"         # unwound by TP/SL or manual close
    CANCELLED = "cancelled"   # cancelled while pending, escrow refunded


class OrderKind(str, Enum):
    ENTRY = "entry"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


class TriggerDirection(str, Enum):
    """ABOVE fires when price >= trigger, BELOW when price <= trigger."""
    ABOVE = "above"
    BELOW = "below"

    def holds(self, price: Decimal, trigger_price: Decimal) -> bool:
        if self is TriggerDirection.ABOVE:
            return price >= trigger_price
        return price <= trigger_price


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would cause a wallet balance to fall below the unit's minimum."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would cause a wallet balance to exceed the unit's maximum."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class InsufficientAllowance(LedgerError):
    """Raised when a spender pulls more than the owner approved."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    pass


class LoopError(Exception):
    """
    Base exception for engine operations.

    Every abort reports the phase that failed and, where known, the asset
    involved, since partial progress is rolled back but still costs work.
    """

    default_phase = Phase.PRECHECK

    def __init__(self, message: str, phase: Optional[Phase] = None, asset: Optional[str] = None):
        self.phase = phase or self.default_phase
        self.asset = asset
        super().__init__(message)

    def __str__(self) -> str:
        where = f"{self.phase.value}"
        if self.asset:
            where += f"/{self.asset}"
        return f"[{where}] {self.args[0]}"


class ValidationError(LoopError):
    """Input rejected before any external effect."""
    pass


def finite_decimal(name: str, value: Any, asset: Optional[str] = None) -> Decimal:
    """Coerce a caller parameter, raising ValidationError for NaN, infinities and non-numbers."""
    try:
        number = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{name} must be a number, got {value!r}", asset=asset) from e
    if not number.is_finite():
        raise ValidationError(f"{name} must be finite, got {number}", asset=asset)
    return number


class EnginePaused(LoopError):
    """New loops are disabled by configuration."""
    pass


class ReentrantInvocation(LoopError):
    """Another operation is already in flight on the engine."""
    pass


class MarketStateError(LoopError):
    """Market state makes the operation impossible; detected before mutation."""
    pass


class NoConversionPath(MarketStateError):
    pass


class AssetNotConfigured(MarketStateError):
    pass


class PriceUnavailable(MarketStateError):
    pass


class HealthFactorViolation(LoopError):
    default_phase = Phase.HEALTH_CHECK


class SlippageExceeded(LoopError):
    default_phase = Phase.SWAP


class IterationCapReached(LoopError):
    default_phase = Phase.ITERATE


class ExternalCallFailed(LoopError):
    """A collaborator call raised; the original exception is chained as __cause__."""
    pass


class OrderError(Exception):
    """Base exception for order-layer bookkeeping."""
    pass


class OrderNotFound(OrderError):
    pass


class InvalidOrderState(OrderError):
    pass


class NotPositionOwner(OrderError):
    pass


# ============================================================================
# AMOUNT TARGETS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Amount:
    """An explicit repay/withdraw target in native units."""
    value: Decimal

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', to_decimal(self.value))
        if self.value.is_nan() or self.value.is_infinite():
            raise ValueError(f"Amount must be finite, got {self.value}")
        if self.value < ZERO:
            raise ValueError(f"Amount must be non-negative, got {self.value}")

    def __repr__(self) -> str:
        return f"Amount({self.value})"


class _All:
    """Sentinel target meaning everything currently owed or held."""

    _instance: Optional['_All'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL"

    def __reduce__(self):
        return (_All, ())


ALL = _All()

AmountTarget = Union[Amount, _All]


def resolve_target(target: AmountTarget, live: Decimal) -> Decimal:
    """
    Resolve a target against a live balance read at call time.

    ALL resolves to the live balance; Amount(x) to min(x, live).
    """
    if target is ALL:
        return live
    if not isinstance(target, Amount):
        raise TypeError(f"Target must be Amount(...) or ALL, got {target!r}")
    return min(target.value, live)


# ============================================================================
# LEDGER DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (market name, engine wallet, ...)
        event_type: Specific event within the source (e.g., "BORROW", "SWAP")
    """
    origin_type: OriginType
    source_id: str
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and positive).
        unit_symbol: The symbol of the unit being transferred (e.g., "WETH").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A set of moves to apply atomically - represents INTENT.

    Built by markets, the exchange and the engine, then submitted to
    Ledger.execute(), which applies all moves or none.
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime

    def is_empty(self) -> bool:
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: Moves to include in the transaction
        origin: Transaction origin (defaults to a USER_ACTION origin)
    """
    if origin is None:
        origin = TransactionOrigin(OriginType.USER_ACTION, "user")
    return PendingTransaction(
        moves=tuple(moves),
        origin=origin,
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        exec_id: Unique execution identifier (ledger + sequence)
        ledger_name: Name of the ledger that executed this
        sequence_number: Monotonic sequence within the ledger
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    sequence_number: int

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")

    def __repr__(self) -> str:
        moves = ", ".join(repr(m) for m in self.moves)
        return f"Transaction({self.exec_id}, {self.origin}, [{moves}])"


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit (asset type) in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "WETH", "pool.dUSDC").
        name: Human-readable name for the unit.
        unit_type: TOKEN, SUPPLY_RECEIPT or DEBT_RECEIPT.
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Native precision of the asset.
        transfer_rule: Optional function to validate moves involving this unit.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """Return the unit's state as a new dict each time."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Quantize a value to this unit's precision (unchanged if decimal_places is None)."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def receipt_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Market receipts can only be minted or burned, never passed between holders.

    Every move must have SYSTEM_WALLET on one side.
    """
    if move.source != SYSTEM_WALLET and move.dest != SYSTEM_WALLET:
        raise TransferRuleViolation(
            f"Receipt {move.unit_symbol} is non-transferable: {move.source} → {move.dest}"
        )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimal_places: int = 18) -> Unit:
    """
    Create a fungible token unit.

    Args:
        symbol: Token symbol (e.g., "WETH", "USDC").
        name: Full name of the token.
        decimal_places: Native precision (18 for WETH, 6 for USDC).
    """
    if decimal_places < 0:
        raise ValueError(f"decimal_places must be non-negative, got {decimal_places}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimal_places,
        min_balance=ZERO,
    )


def receipt(symbol: str, name: str, unit_type: str, underlying: Unit, issuer: str) -> Unit:
    """Create a non-transferable supply or debt receipt tracking `underlying`."""
    if unit_type not in (UNIT_TYPE_SUPPLY_RECEIPT, UNIT_TYPE_DEBT_RECEIPT):
        raise ValueError(f"Not a receipt unit type: {unit_type}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        decimal_places=underlying.decimal_places,
        min_balance=ZERO,
        transfer_rule=receipt_transfer_rule,
        _frozen_state=_freeze_state({'underlying': underlying.symbol, 'issuer': issuer}),
    )


# ============================================================================
# MARKET SNAPSHOTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class AssetConfig:
    """Per-asset risk configuration reported by a lending market."""
    symbol: str
    decimals: int
    ltv: Decimal
    liquidation_threshold: Decimal
    collateral_enabled: bool = True
    borrow_enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.ltv, Decimal):
            object.__setattr__(self, 'ltv', to_decimal(self.ltv))
        if not isinstance(self.liquidation_threshold, Decimal):
            object.__setattr__(self, 'liquidation_threshold', to_decimal(self.liquidation_threshold))
        if not ZERO <= self.ltv < ONE:
            raise ValueError(f"ltv must be in [0, 1), got {self.ltv}")
        if not self.ltv <= self.liquidation_threshold < ONE:
            raise ValueError(
                f"liquidation_threshold must be in [ltv, 1), got {self.liquidation_threshold}"
            )


@dataclass(frozen=True, slots=True)
class AccountHealth:
    """
    Authoritative account snapshot from a lending market.

    Values are canonical. health_factor is Infinity when the account has no debt.
    """
    collateral_value: Decimal
    debt_value: Decimal
    available_borrow_value: Decimal
    liquidation_threshold: Decimal
    ltv: Decimal
    health_factor: Decimal


# ============================================================================
# LOOP DATA MODEL
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoopCache:
    """
    Market inputs read once per invocation and never refreshed within it.

    Exchange quotes are deliberately absent: they are read fresh per swap.
    """
    collateral_asset: str
    debt_asset: str
    collateral_decimals: int
    debt_decimals: int
    collateral_price: Decimal
    debt_price: Decimal
    ltv: Decimal
    liquidation_threshold: Decimal
    target_collateral_value: Decimal
    slippage_tolerance: Decimal
    min_health_factor: Decimal
    dust_value: Decimal


@dataclass(frozen=True, slots=True)
class IterationRecord:
    """One committed borrow → swap → deposit step."""
    iteration: int
    borrowed: Decimal
    min_amount_out: Decimal
    swapped_out: Decimal
    health_factor: Decimal


@dataclass
class LoopState:
    """Per-invocation position totals, mutated once per iteration."""
    collateral_amount: Decimal
    debt_amount: Decimal = ZERO
    iterations: int = 0
    history: List[IterationRecord] = field(default_factory=list)

    def record(self, borrowed: Decimal, min_amount_out: Decimal, swapped_out: Decimal,
               health_factor: Decimal) -> None:
        self.collateral_amount += swapped_out
        self.debt_amount += borrowed
        self.iterations += 1
        self.history.append(IterationRecord(
            iteration=self.iterations,
            borrowed=borrowed,
            min_amount_out=min_amount_out,
            swapped_out=swapped_out,
            health_factor=health_factor,
        ))


@dataclass(frozen=True, slots=True)
class LoopResult:
    """Outcome of a committed execute_loop call."""
    beneficiary: str
    collateral_asset: str
    debt_asset: str
    status: LoopStatus
    iterations: int
    collateral_amount: Decimal
    debt_amount: Decimal
    collateral_value: Decimal
    debt_value: Decimal
    health_factor: Decimal
    history: Tuple[IterationRecord, ...] = ()

    @property
    def leverage(self) -> Decimal:
        """Collateral value over equity (collateral value minus debt value)."""
        equity = self.collateral_value - self.debt_value
        if equity <= ZERO:
            return INFINITE_HEALTH
        return self.collateral_value / equity


@dataclass(frozen=True, slots=True)
class PreviewResult:
    """Estimate produced by preview_loop; nothing was committed."""
    status: LoopStatus
    iterations: int
    collateral_amount: Decimal
    debt_amount: Decimal
    health_factor: Decimal


@dataclass(frozen=True, slots=True)
class UnwindResult:
    """Outcome of unwind_loop, all amounts native."""
    beneficiary: str
    recipient: str
    repaid: Decimal
    collateral_sold: Decimal
    debt_asset_bought: Decimal
    leftover_debt_asset: Decimal
    withdrawn: Decimal
    chunks: int
    remaining_collateral: Decimal
    remaining_debt: Decimal
    health_factor: Decimal


# ============================================================================
# ORDER DATA MODEL
# ============================================================================

@dataclass
class Position:
    """
    An order-managed leveraged position.

    `account` is the external key the lending market records the position
    under; `owner` is the logical owner who receives proceeds.
    """
    position_id: str
    owner: str
    account: str
    collateral_asset: str
    debt_asset: str
    margin: Decimal
    target_leverage: Decimal
    min_health_factor: Decimal
    max_slippage: Decimal
    collateral_amount: Decimal = ZERO
    debt_amount: Decimal = ZERO
    loop_count: int = 0
    status: PositionStatus = PositionStatus.PENDING
    created_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    proceeds_collateral: Decimal = ZERO
    proceeds_debt_asset: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class Order:
    """A price trigger attached to a position."""
    order_id: str
    position_id: str
    kind: OrderKind
    trigger_price: Decimal
    direction: TriggerDirection
    executed: bool = False
    cancelled: bool = False

    def __post_init__(self):
        if not isinstance(self.trigger_price, Decimal):
            object.__setattr__(self, 'trigger_price', to_decimal(self.trigger_price))
        if self.trigger_price <= ZERO:
            raise ValueError(f"trigger_price must be positive, got {self.trigger_price}")

    @property
    def is_live(self) -> bool:
        return not self.executed and not self.cancelled

    def fires_at(self, price: Decimal) -> bool:
        return self.is_live and self.direction.holds(price, self.trigger_price)

"""
leverloop - Leveraged position loops over a lending market and an exchange

Deposit margin in asset A, borrow B against it, swap B back into A and
redeposit, up to a target leverage and never below a minimum health factor.
A mirror-image unwind closes the position, and an order layer opens and
closes positions on price triggers.

Usage:
    from decimal import Decimal
    from leverloop import (
        Ledger, token, StaticPriceSource, InMemoryLendingMarket,
        OnBehalfLendingAdapter, ConstantProductExchange, LoopEngine, ALL,
    )

    ledger = Ledger("main", verbose=False)
    ledger.register_unit(token("WETH", "Wrapped Ether", 18))
    ledger.register_unit(token("USDC", "USD Coin", 6))
    prices = StaticPriceSource({"WETH": Decimal("2000"), "USDC": Decimal("1")})

    pool = InMemoryLendingMarket(ledger, prices)
    pool.list_asset("WETH", Decimal("0.8"), Decimal("0.825"))
    pool.list_asset("USDC", Decimal("0.8"), Decimal("0.85"))
    amm = ConstantProductExchange(ledger)
    amm.add_pool("WETH", Decimal("10000"), "USDC", Decimal("20000000"))

    engine = LoopEngine(ledger, OnBehalfLendingAdapter(pool, "leverloop"), amm, prices)
    pool.set_operator("alice", engine.wallet)
    ledger.approve("alice", engine.wallet, "WETH", Decimal("10"))
    result = engine.execute_loop("alice", "WETH", "USDC", "alice", Decimal("10"),
                                 Decimal("2"), Decimal("1.1"), Decimal("0.01"))
    engine.unwind_loop("alice", "WETH", "USDC", ALL, ALL, Decimal("0.01"))
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    ExecuteResult,
    token,
    receipt,
    receipt_transfer_rule,
    controls,
    subaccount,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_SUPPLY_RECEIPT,
    UNIT_TYPE_DEBT_RECEIPT,
    CANONICAL_DECIMALS,
    MAX_LOOP_ITERATIONS,
    HEALTH_FACTOR_FLOOR,
    INFINITE_HEALTH,
    # Enums
    Phase,
    LoopStatus,
    PositionStatus,
    OrderKind,
    TriggerDirection,
    # Amount targets
    Amount,
    ALL,
    AmountTarget,
    resolve_target,
    # Data model
    AssetConfig,
    AccountHealth,
    LoopCache,
    LoopState,
    IterationRecord,
    LoopResult,
    PreviewResult,
    UnwindResult,
    Position,
    Order,
    # Ledger exceptions
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    InsufficientAllowance,
    UnitNotRegistered,
    WalletNotRegistered,
    # Engine exceptions
    LoopError,
    ValidationError,
    EnginePaused,
    ReentrantInvocation,
    MarketStateError,
    NoConversionPath,
    AssetNotConfigured,
    PriceUnavailable,
    HealthFactorViolation,
    SlippageExceeded,
    IterationCapReached,
    ExternalCallFailed,
    # Order exceptions
    OrderError,
    OrderNotFound,
    InvalidOrderState,
    NotPositionOwner,
)

# Ledger
from .ledger import Ledger, LedgerSnapshot

# Numerics
from .normalizer import (
    to_canonical,
    from_canonical,
    to_base_units,
    from_base_units,
    quantize_native,
    quantize_value,
)
from .sizer import (
    compute_borrow_increment,
    projected_health_factor,
    health_factor,
    max_safe_debt_value,
    leverage_ceiling,
    target_collateral_value,
)

# Collaborators
from .pricing_source import PriceSource, StaticPriceSource
from .markets import (
    LendingMarket,
    Exchange,
    MarketError,
    InMemoryLendingMarket,
    OnBehalfLendingAdapter,
    SubAccountLendingAdapter,
    ConstantProductExchange,
)

# Engine
from .config import EngineConfig, DEFAULT_CONFIG, load_config, config_from_mapping
from .engine import LoopEngine
from .unwind import UnwindEngine
from .orders import (
    OrderManager,
    BatchReport,
    BatchOutcome,
    OUTCOME_EXECUTED,
    OUTCOME_SKIPPED,
    OUTCOME_FAILED,
)
from .scenario import leverage_sweep, leverage_grid


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin',
    'OriginType', 'build_transaction', 'Unit', 'ExecuteResult',
    'token', 'receipt', 'receipt_transfer_rule', 'controls', 'subaccount',
    'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'UNIT_TYPE_SUPPLY_RECEIPT', 'UNIT_TYPE_DEBT_RECEIPT',
    'CANONICAL_DECIMALS', 'MAX_LOOP_ITERATIONS', 'HEALTH_FACTOR_FLOOR', 'INFINITE_HEALTH',
    'Phase', 'LoopStatus', 'PositionStatus', 'OrderKind', 'TriggerDirection',
    'Amount', 'ALL', 'AmountTarget', 'resolve_target',
    'AssetConfig', 'AccountHealth', 'LoopCache', 'LoopState', 'IterationRecord',
    'LoopResult', 'PreviewResult', 'UnwindResult', 'Position', 'Order',
    # Exceptions
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation', 'TransferRuleViolation',
    'InsufficientAllowance', 'UnitNotRegistered', 'WalletNotRegistered',
    'LoopError', 'ValidationError', 'EnginePaused', 'ReentrantInvocation',
    'MarketStateError', 'NoConversionPath', 'AssetNotConfigured', 'PriceUnavailable',
    'HealthFactorViolation', 'SlippageExceeded', 'IterationCapReached', 'ExternalCallFailed',
    'OrderError', 'OrderNotFound', 'InvalidOrderState', 'NotPositionOwner',
    # Ledger
    'Ledger', 'LedgerSnapshot',
    # Numerics
    'to_canonical', 'from_canonical', 'to_base_units', 'from_base_units',
    'quantize_native', 'quantize_value',
    'compute_borrow_increment', 'projected_health_factor', 'health_factor',
    'max_safe_debt_value', 'leverage_ceiling', 'target_collateral_value',
    # Collaborators
    'PriceSource', 'StaticPriceSource',
    'LendingMarket', 'Exchange', 'MarketError', 'InMemoryLendingMarket',
    'OnBehalfLendingAdapter', 'SubAccountLendingAdapter', 'ConstantProductExchange',
    # Engine
    'EngineConfig', 'DEFAULT_CONFIG', 'load_config', 'config_from_mapping',
    'LoopEngine', 'UnwindEngine',
    'OrderManager', 'BatchReport', 'BatchOutcome',
    'OUTCOME_EXECUTED', 'OUTCOME_SKIPPED', 'OUTCOME_FAILED',
    'leverage_sweep', 'leverage_grid',
]

__version__ = '1.0.0'

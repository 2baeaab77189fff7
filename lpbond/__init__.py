"""
lpbond - Liquidity Bonding Engine

Lock a pairable token together with the protocol reward token into
constant-product liquidity, and get the position back, less fees, once the
bond matures.

Usage:
    from datetime import datetime
    from lpbond import (
        Ledger, token, ConstantProductVenue, BondingEngine, PairConfig,
    )

    ledger = Ledger("main", initial_time=datetime(2025, 1, 1), test_mode=True)
    ledger.register_unit(token("RWD", "Reward Token"))
    ledger.register_unit(token("PAIR", "Pairable Token"))
    for wallet in ("admin", "alice", "treasury"):
        ledger.register_wallet(wallet)

    venue = ConstantProductVenue(ledger)
    engine = BondingEngine(ledger, "RWD", venue, treasury="treasury", owner="admin")

    # Seed the pool the bonds will pair into
    ledger.set_balance("admin", "RWD", 1_050_000)
    ledger.set_balance("admin", "PAIR", 1_000_000)
    for symbol in ("RWD", "PAIR"):
        ledger.approve("admin", venue.wallet, symbol, 1_000_000)
    venue.add_liquidity("RWD", "PAIR", 1_000_000, 1_000_000, 0, 0,
                        "admin", "admin", ledger.timestamp + 600)

    # Pair terms: 2.5% entry fee, one-day lock
    ledger.approve("admin", engine.wallet, "RWD", 50_000)
    engine.upsert_pair("admin", "PAIR", PairConfig(
        "Pairable", max_stake=1_000, min_bond=10,
        entry_fee_rate=25_000, locking_period=86_400,
    ), reward_top_up=50_000)

    # Bond
    ledger.set_balance("alice", "PAIR", 100)
    ledger.approve("alice", engine.wallet, "PAIR", 100)
    reward, net = engine.quote_required_reward("PAIR", 100)
    engine.create_bond("alice", "PAIR", 100, reward, reward, ledger.timestamp + 600)

    # Release after the lock
    ledger.advance_time(datetime(2025, 1, 2))
    engine.release_bond("alice", "PAIR")
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
    UnitStateChange,
    ExecuteResult,
    token,
    to_timestamp,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_LIQUIDITY,
    UINT256_MAX,
    # Exceptions
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    BondingError,
    InvalidConfig,
    PairNotConfigured,
    InvalidAmount,
    InsufficientApproval,
    InsufficientReserves,
    NotYetMatured,
    NothingToRelease,
    TransferFailed,
    LiquidityProvisionFailed,
    ArithmeticOverflow,
    Unauthorized,
    AlreadyMigrated,
    Paused,
    ReentrantCall,
)

# Ledger
from .ledger import Ledger

# Fee math
from .fees import (
    FEE_SCALE,
    split,
    checked_add,
    checked_mul,
    saturating_sub,
    mul_div,
    is_valid_fee_rate,
)

# Pair registry
from .registry import (
    PairConfig,
    PairRegistry,
    validate_pair_config,
    quote_required_reward,
)

# Bonds
from .bonds import (
    BondRecord,
    BondBook,
    MigrationEntry,
    EMPTY_BOND,
)

# AMM gateway
from .amm import (
    AmmGateway,
    ConstantProductVenue,
    Pool,
    MINIMUM_LIQUIDITY,
    get_amount_out,
    optimal_amounts,
    liquidity_to_mint,
)

# Events
from .events import (
    EngineEvent,
    ConfigurationChanged,
    BondCreated,
    BondReleased,
    TreasuryChanged,
    RewardTokenChanged,
    GatewayChanged,
    PausedChanged,
    OwnershipTransferred,
    BondsMigrated,
)

# Engine
from .engine import BondingEngine, RELEASE_DEADLINE_GRACE

# Projections
from .analytics import (
    impermanent_loss,
    project_release,
    release_value,
)

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin',
    'OriginType', 'build_transaction', 'Unit', 'UnitStateChange', 'ExecuteResult',
    'token', 'to_timestamp', 'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'UNIT_TYPE_LIQUIDITY',
    'UINT256_MAX',
    # Exceptions
    'LedgerError', 'UnitNotRegistered', 'WalletNotRegistered',
    'BondingError', 'InvalidConfig', 'PairNotConfigured', 'InvalidAmount',
    'InsufficientApproval', 'InsufficientReserves', 'NotYetMatured', 'NothingToRelease',
    'TransferFailed', 'LiquidityProvisionFailed', 'ArithmeticOverflow', 'Unauthorized',
    'AlreadyMigrated', 'Paused', 'ReentrantCall',
    # Ledger
    'Ledger',
    # Fees
    'FEE_SCALE', 'split', 'checked_add', 'checked_mul', 'saturating_sub', 'mul_div',
    'is_valid_fee_rate',
    # Registry
    'PairConfig', 'PairRegistry', 'validate_pair_config', 'quote_required_reward',
    # Bonds
    'BondRecord', 'BondBook', 'MigrationEntry', 'EMPTY_BOND',
    # AMM
    'AmmGateway', 'ConstantProductVenue', 'Pool', 'MINIMUM_LIQUIDITY',
    'get_amount_out', 'optimal_amounts', 'liquidity_to_mint',
    # Events
    'EngineEvent', 'ConfigurationChanged', 'BondCreated', 'BondReleased',
    'TreasuryChanged', 'RewardTokenChanged', 'GatewayChanged', 'PausedChanged',
    'OwnershipTransferred', 'BondsMigrated',
    # Engine
    'BondingEngine', 'RELEASE_DEADLINE_GRACE',
    # Analytics
    'impermanent_loss', 'project_release', 'release_value',
]

__version__ = '1.0.0'

"""
helpers.py - Test helpers for bonding scenarios

Plain functions shared by the fixtures in conftest.py and by tests that
build their own ledgers (hypothesis tests cannot use function fixtures).
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from lpbond import (
    Ledger, Move, build_transaction, token,
    ConstantProductVenue, BondingEngine, PairConfig,
)


T0 = datetime(2025, 1, 1)

POOL_SEED = 1_000_000
REWARD_TOP_UP = 100_000
ALICE_PAIR = 10_000

DEFAULT_PAIR = PairConfig(
    display_name="Pairable Token",
    max_stake=1_000,
    min_bond=10,
    entry_fee_rate=25_000,
    exit_fee_rate=0,
    locking_period=86_400,
)


def make_ledger(name: str = "test") -> Ledger:
    """Ledger with RWD, PAIR and OTHER tokens and the usual wallets."""
    ledger = Ledger(name, T0, verbose=False, test_mode=True)
    ledger.register_unit(token("RWD", "Reward Token"))
    ledger.register_unit(token("PAIR", "Pairable Token"))
    ledger.register_unit(token("OTHER", "Other Token"))
    for wallet in ("owner", "alice", "bob", "treasury", "predecessor"):
        ledger.register_wallet(wallet)
    return ledger


def deadline(ledger: Ledger, seconds: int = 600) -> int:
    """A deadline seconds after the ledger's current time."""
    return ledger.timestamp + seconds


def advance(ledger: Ledger, seconds: int) -> None:
    """Move the ledger clock forward by seconds."""
    ledger.advance_time(ledger.current_time + timedelta(seconds=seconds))


def fund(ledger: Ledger, wallet: str, unit: str, amount: int, spender: Optional[str] = None) -> None:
    """Set a wallet's balance and optionally approve a spender for all of it."""
    ledger.set_balance(wallet, unit, amount)
    if spender is not None:
        ledger.approve(wallet, spender, unit, amount)


def transfer(ledger: Ledger, source: str, dest: str, unit: str, amount: int) -> None:
    """Plain wallet-to-wallet transfer through the ledger."""
    ledger.execute(build_transaction(ledger, [Move(amount, unit, source, dest, "test_transfer")]))


def seed_pool(ledger: Ledger, venue: ConstantProductVenue, token_symbol: str = "PAIR",
              reward_amount: int = POOL_SEED, token_amount: int = POOL_SEED,
              provider: str = "owner") -> int:
    """Fund provider and add the first liquidity to the RWD/token pool."""
    ledger.set_balance(provider, "RWD", ledger.get_balance(provider, "RWD") + reward_amount)
    ledger.set_balance(provider, token_symbol, ledger.get_balance(provider, token_symbol) + token_amount)
    ledger.approve(provider, venue.wallet, "RWD", reward_amount)
    ledger.approve(provider, venue.wallet, token_symbol, token_amount)
    _, _, liquidity = venue.add_liquidity(
        "RWD", token_symbol, reward_amount, token_amount, 0, 0,
        provider, provider, deadline(ledger),
    )
    return liquidity


def top_up_and_configure(engine: BondingEngine, token_symbol: str = "PAIR",
                         config: PairConfig = DEFAULT_PAIR,
                         reward_top_up: int = REWARD_TOP_UP) -> PairConfig:
    """Fund the owner with reward tokens and upsert a pair with a top-up."""
    ledger = engine.ledger
    if reward_top_up:
        ledger.set_balance("owner", "RWD", ledger.get_balance("owner", "RWD") + reward_top_up)
        ledger.approve("owner", engine.wallet, "RWD", reward_top_up)
    return engine.upsert_pair("owner", token_symbol, config, reward_top_up=reward_top_up)


def build_engine(config: PairConfig = DEFAULT_PAIR, alice_pair: int = ALICE_PAIR) -> BondingEngine:
    """Fresh ledger, seeded venue and configured engine, alice funded and approved."""
    ledger = make_ledger()
    venue = ConstantProductVenue(ledger)
    seed_pool(ledger, venue)
    engine = BondingEngine(ledger, "RWD", venue, treasury="treasury", owner="owner")
    top_up_and_configure(engine, config=config)
    fund(ledger, "alice", "PAIR", alice_pair, spender=engine.wallet)
    return engine


def bond(engine: BondingEngine, principal: int, account: str = "alice", token_symbol: str = "PAIR"):
    """Bond principal at the quoted reward, accepting nothing less."""
    reward, _ = engine.quote_required_reward(token_symbol, principal)
    return engine.create_bond(account, token_symbol, principal, reward, reward,
                              deadline(engine.ledger))


def snapshot(ledger: Ledger, wallets: Optional[Iterable[str]] = None) -> Dict[Tuple[str, str], int]:
    """Every (wallet, unit) balance, for before/after comparisons."""
    wallets = sorted(wallets or ledger.registered_wallets)
    return {
        (w, u): ledger.get_balance(w, u)
        for w in wallets
        for u in ledger.list_units()
    }

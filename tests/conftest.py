"""
conftest.py - Shared pytest fixtures for bonding tests

Provides common fixtures used across unit, functional and conformance tests:
- Token ledgers (empty, with tokens registered)
- A seeded constant-product venue
- Bonding engines (bare, and with a configured pair and reward top-up)
"""

import pytest

from lpbond import Ledger, ConstantProductVenue, BondingEngine

from tests.helpers import (
    T0, ALICE_PAIR,
    make_ledger, seed_pool, top_up_and_configure, fund,
)


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False, test_mode=True)


@pytest.fixture
def ledger():
    """Ledger with RWD/PAIR/OTHER and the usual wallets, nothing funded."""
    return make_ledger()


# =============================================================================
# VENUE FIXTURES
# =============================================================================

@pytest.fixture
def venue(ledger):
    """Constant-product venue on the shared ledger, no pools yet."""
    return ConstantProductVenue(ledger)


@pytest.fixture
def seeded_venue(ledger, venue):
    """Venue with a 1:1 RWD/PAIR pool of POOL_SEED each, provided by owner."""
    seed_pool(ledger, venue)
    return venue


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def bare_engine(ledger, seeded_venue):
    """Engine over the seeded venue with no pairs configured."""
    return BondingEngine(ledger, "RWD", seeded_venue, treasury="treasury", owner="owner")


@pytest.fixture
def engine(bare_engine):
    """
    Engine with PAIR configured (2.5% entry, no exit fee, one-day lock,
    cap 1000, floor 10), REWARD_TOP_UP reward tokens in custody and alice
    holding ALICE_PAIR with the engine approved for all of it.
    """
    top_up_and_configure(bare_engine)
    fund(bare_engine.ledger, "alice", "PAIR", ALICE_PAIR, spender=bare_engine.wallet)
    return bare_engine

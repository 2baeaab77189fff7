"""
test_engine_release.py - Unit tests for BondingEngine.release_bond

Tests:
- Maturity boundary (one second early, exactly at release_date)
- Payouts with and without an exit fee
- Record reset and aggregate updates
- Second release, unknown bonds
- Venue failures revert every transfer
"""

import pytest
from dataclasses import replace

from lpbond import (
    BondReleased, EMPTY_BOND, RELEASE_DEADLINE_GRACE,
    NotYetMatured, NothingToRelease, TransferFailed,
)

from tests.helpers import (
    ALICE_PAIR, REWARD_TOP_UP, DEFAULT_PAIR,
    advance, bond, snapshot,
)


LP = "LP-PAIR-RWD"


class TestMaturity:

    def test_one_second_early(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_399)
        with pytest.raises(NotYetMatured):
            engine.release_bond("alice", "PAIR")
        assert engine.get_account_bond("PAIR", "alice").is_active

    def test_exactly_at_release_date(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        event = engine.release_bond("alice", "PAIR")
        assert isinstance(event, BondReleased)

    def test_zero_locking_period_releases_immediately(self, engine):
        engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, locking_period=0))
        bond(engine, 100)
        engine.release_bond("alice", "PAIR")
        assert engine.get_account_bond("PAIR", "alice") is EMPTY_BOND


class TestReleaseWithoutExitFee:

    def test_event(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        event = engine.release_bond("alice", "PAIR")
        assert event.account == "alice"
        assert event.token == "PAIR"
        assert event.reward_released == 98
        assert event.principal_released == 98
        assert event.liquidity_burned == 98
        assert event.reward_fee == 0
        assert event.principal_fee == 0
        assert engine.events[-1] == event

    def test_caller_gets_everything(self, engine):
        ledger = engine.ledger
        bond(engine, 100)
        advance(ledger, 86_400)
        engine.release_bond("alice", "PAIR")
        assert ledger.get_balance("alice", "PAIR") == ALICE_PAIR - 2
        assert ledger.get_balance("alice", "RWD") == 98
        assert ledger.get_balance("treasury", "PAIR") == 2
        assert ledger.get_balance("treasury", "RWD") == 0
        assert ledger.get_balance(engine.wallet, LP) == 0
        assert ledger.get_balance(engine.wallet, "PAIR") == 0
        assert ledger.get_balance(engine.wallet, "RWD") == REWARD_TOP_UP - 98
        assert ledger.verify_double_entry()['valid']

    def test_record_cleared(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        engine.release_bond("alice", "PAIR")
        assert engine.get_account_bond("PAIR", "alice") is EMPTY_BOND
        assert len(engine.bonds) == 0

    def test_aggregates(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        engine.release_bond("alice", "PAIR")
        info = engine.get_pool_info("PAIR")
        assert info.total_liquidity == 0
        assert info.total_locked == 98
        assert info.total_paired_reward == 98
        assert engine.total_reward_paired == 98

    def test_venue_allowance_reset(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        engine.release_bond("alice", "PAIR")
        assert engine.ledger.allowance(engine.wallet, engine.gateway.wallet, LP) == 0

    def test_accumulated_bond_released_in_one_go(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 3_600)
        bond(engine, 100)
        advance(engine.ledger, 86_399)
        with pytest.raises(NotYetMatured):
            engine.release_bond("alice", "PAIR")
        advance(engine.ledger, 1)
        event = engine.release_bond("alice", "PAIR")
        assert event.liquidity_burned == 196
        assert (event.reward_released, event.principal_released) == (196, 196)


class TestReleaseWithExitFee:

    @pytest.fixture
    def fee_engine(self, engine):
        engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, entry_fee_rate=0, exit_fee_rate=100_000))
        return engine

    def test_split_on_both_tokens(self, fee_engine):
        ledger = fee_engine.ledger
        bond(fee_engine, 100)
        advance(ledger, 86_400)
        event = fee_engine.release_bond("alice", "PAIR")
        assert (event.reward_released, event.principal_released) == (100, 100)
        assert (event.reward_fee, event.principal_fee) == (10, 10)
        assert ledger.get_balance("alice", "RWD") == 90
        assert ledger.get_balance("alice", "PAIR") == ALICE_PAIR - 100 + 90
        assert ledger.get_balance("treasury", "RWD") == 10
        assert ledger.get_balance("treasury", "PAIR") == 10

    def test_snapshot_used_not_current_rate(self, fee_engine):
        ledger = fee_engine.ledger
        bond(fee_engine, 100)
        fee_engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, entry_fee_rate=0, exit_fee_rate=0))
        advance(ledger, 86_400)
        event = fee_engine.release_bond("alice", "PAIR")
        assert event.reward_fee == 10
        assert ledger.get_balance("treasury", "RWD") == 10

    def test_fee_rounds_to_zero(self, fee_engine):
        """10% of 9 is 0.9; nothing goes to the treasury."""
        fee_engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, entry_fee_rate=0, exit_fee_rate=100_000, min_bond=0))
        fee_engine.create_bond("alice", "PAIR", 9, 9, 9, fee_engine.now + 600)
        advance(fee_engine.ledger, 86_400)
        event = fee_engine.release_bond("alice", "PAIR")
        assert (event.reward_fee, event.principal_fee) == (0, 0)
        assert fee_engine.ledger.get_balance("treasury", "RWD") == 0


class TestReleaseFailures:

    def test_nothing_to_release(self, engine):
        before = snapshot(engine.ledger)
        with pytest.raises(NothingToRelease):
            engine.release_bond("alice", "PAIR")
        assert snapshot(engine.ledger) == before

    def test_unknown_token(self, engine):
        with pytest.raises(NothingToRelease):
            engine.release_bond("alice", "OTHER")

    def test_second_release(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        engine.release_bond("alice", "PAIR")
        log_length = len(engine.ledger.transaction_log)
        with pytest.raises(NothingToRelease):
            engine.release_bond("alice", "PAIR")
        assert len(engine.ledger.transaction_log) == log_length

    def test_other_account_cannot_release(self, engine):
        bond(engine, 100)
        advance(engine.ledger, 86_400)
        with pytest.raises(NothingToRelease):
            engine.release_bond("bob", "PAIR")

    def test_venue_failure_reverts(self, engine):
        """Custody lost its liquidity tokens: the burn is rejected and nothing moves."""
        ledger = engine.ledger
        bond(engine, 100)
        advance(ledger, 86_400)
        ledger.set_balance(engine.wallet, LP, 0)
        before = snapshot(ledger)
        with pytest.raises(TransferFailed):
            engine.release_bond("alice", "PAIR")
        assert snapshot(ledger) == before
        assert engine.get_account_bond("PAIR", "alice").liquidity_amount == 98
        assert engine.get_pool_info("PAIR").total_liquidity == 98
        assert ledger.allowance(engine.wallet, engine.gateway.wallet, LP) == 0

    def test_release_deadline_grace(self):
        assert RELEASE_DEADLINE_GRACE == 1_200

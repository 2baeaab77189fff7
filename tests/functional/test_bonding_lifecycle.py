"""
test_bonding_lifecycle.py - End-to-end bonding scenarios

Tests complete bond lifecycles through the engine, venue and ledger:
- Bond, wait, release with the ledger balanced at every step
- Growing a bond and the lock restarting
- Several accounts sharing a pair
- Release after the pool price moves
- The lifetime cap outliving releases
- Importing a predecessor's bonds and releasing them
- Pausing during a lock
"""

import pytest
from dataclasses import replace

from lpbond import (
    BondCreated, BondReleased, BondsMigrated, BondRecord, MigrationEntry,
    EMPTY_BOND, InvalidAmount, NotYetMatured, Paused, project_release,
)

from tests.helpers import (
    ALICE_PAIR, REWARD_TOP_UP, DEFAULT_PAIR,
    advance, bond, deadline, fund, snapshot, transfer,
)


LP = "LP-PAIR-RWD"


def supplies(ledger):
    return {unit: ledger.total_supply(unit) for unit in ("RWD", "PAIR", LP)}


class TestSingleBondLifecycle:

    def test_bond_then_release(self, engine):
        ledger = engine.ledger
        start = supplies(ledger)

        reward, net = engine.quote_required_reward("PAIR", 100)
        assert (reward, net) == (98, 98)
        created = engine.create_bond("alice", "PAIR", 100, 98, 98, deadline(ledger))
        assert isinstance(created, BondCreated)
        assert created.entry_fee == 2
        assert ledger.get_balance(engine.wallet, LP) == 98
        assert ledger.verify_double_entry()['valid']

        advance(ledger, 86_400)
        released = engine.release_bond("alice", "PAIR")
        assert isinstance(released, BondReleased)
        assert (released.reward_released, released.principal_released) == (98, 98)

        # Alice swapped 2 PAIR of fee for nothing; the custody reward went to her
        assert ledger.get_balance("alice", "PAIR") == ALICE_PAIR - 2
        assert ledger.get_balance("alice", "RWD") == 98
        assert ledger.get_balance(engine.wallet, "RWD") == REWARD_TOP_UP - 98
        assert ledger.get_balance("treasury", "PAIR") == 2

        end = supplies(ledger)
        assert end["RWD"] == start["RWD"]
        assert end["PAIR"] == start["PAIR"]
        assert end[LP] == start[LP]
        assert ledger.verify_double_entry()['valid']
        assert [type(e) for e in engine.events[-2:]] == [BondCreated, BondReleased]

    def test_growing_bond_restarts_lock(self, engine):
        ledger = engine.ledger
        first = bond(engine, 100)
        advance(ledger, 80_000)
        second = bond(engine, 100)
        assert second.release_date == first.release_date + 80_000

        record = engine.get_account_bond("PAIR", "alice")
        assert record.liquidity_amount == 196
        assert record.reward_amount == 196
        assert record.principal_amount == 196

        advance(ledger, 10_000)
        # The first bond alone would have matured by now
        assert ledger.timestamp > first.release_date
        assert not record.is_mature(ledger.timestamp)

        advance(ledger, 76_400)
        released = engine.release_bond("alice", "PAIR")
        assert released.liquidity_burned == 196
        assert engine.get_pool_info("PAIR").total_locked == 196
        assert engine.get_pool_info("PAIR").total_liquidity == 0


class TestSharedPair:

    @pytest.fixture
    def two_bonds(self, engine):
        fund(engine.ledger, "bob", "PAIR", 1_000, spender=engine.wallet)
        bond(engine, 100, "alice")
        advance(engine.ledger, 3_600)
        bond(engine, 200, "bob")
        return engine

    def test_records_are_separate(self, two_bonds):
        engine = two_bonds
        assert engine.get_account_bond("PAIR", "alice").liquidity_amount == 98
        assert engine.get_account_bond("PAIR", "bob").liquidity_amount == 195
        info = engine.get_pool_info("PAIR")
        assert info.total_locked == 98 + 195
        assert info.total_liquidity == 98 + 195
        assert engine.ledger.get_balance("treasury", "PAIR") == 2 + 5

    def test_alice_releases_while_bob_stays_locked(self, two_bonds):
        engine = two_bonds
        advance(engine.ledger, 86_400 - 3_600)
        engine.release_bond("alice", "PAIR")
        with pytest.raises(NotYetMatured):
            engine.release_bond("bob", "PAIR")
        assert engine.get_account_bond("PAIR", "bob").liquidity_amount == 195
        assert engine.get_pool_info("PAIR").total_liquidity == 195
        assert engine.ledger.get_balance(engine.wallet, LP) == 195

    def test_both_release(self, two_bonds):
        engine = two_bonds
        ledger = engine.ledger
        advance(ledger, 86_400)
        engine.release_bond("bob", "PAIR")
        engine.release_bond("alice", "PAIR")
        assert len(engine.bonds) == 0
        assert ledger.get_balance(engine.wallet, LP) == 0
        assert ledger.get_balance("bob", "RWD") == 195
        assert ledger.get_balance("alice", "RWD") == 98
        assert ledger.verify_double_entry()['valid']


class TestPriceMove:

    def test_release_after_pool_is_sold_into(self, engine):
        """Someone dumps PAIR on the pool; the bond comes back with less reward and more PAIR."""
        ledger = engine.ledger
        venue = engine.gateway
        bond(engine, 100)
        rwd_before, pair_before = venue.get_reserves("RWD", "PAIR")

        fund(ledger, "bob", "PAIR", 1_000_000, spender=venue.wallet)
        venue.swap_exact_tokens_for_tokens(1_000_000, 0, ["PAIR", "RWD"], "bob", "bob", deadline(ledger))
        rwd_after, pair_after = venue.get_reserves("RWD", "PAIR")
        ratio = (rwd_after / pair_after) / (rwd_before / pair_before)

        advance(ledger, 86_400)
        released = engine.release_bond("alice", "PAIR")
        assert released.reward_released < 98
        assert released.principal_released > 98

        expected_reward, expected_principal = project_release(98, 98, ratio)
        assert released.reward_released == pytest.approx(expected_reward, abs=2)
        assert released.principal_released == pytest.approx(expected_principal, abs=2)
        assert ledger.verify_double_entry()['valid']


class TestLifetimeCap:

    def test_cap_survives_release(self, engine):
        ledger = engine.ledger
        bond(engine, 990)
        assert engine.get_pool_info("PAIR").total_locked == 966
        advance(ledger, 86_400)
        engine.release_bond("alice", "PAIR")

        before = snapshot(ledger)
        with pytest.raises(InvalidAmount):
            bond(engine, 50)
        assert snapshot(ledger) == before

    def test_raising_the_cap_reopens_the_pair(self, engine):
        ledger = engine.ledger
        bond(engine, 990)
        advance(ledger, 86_400)
        engine.release_bond("alice", "PAIR")

        engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, max_stake=2_000))
        created = bond(engine, 50)
        assert created.principal_staked == 49
        info = engine.get_pool_info("PAIR")
        assert info.total_locked == 966 + 49
        assert info.max_stake == 2_000


class TestMigrationLifecycle:

    def test_imported_and_native_bonds_release_together(self, engine):
        ledger = engine.ledger
        engine.upsert_pair("owner", "PAIR", replace(DEFAULT_PAIR, exit_fee_rate=50_000))
        transfer(ledger, "owner", "predecessor", LP, 500)
        ledger.approve("predecessor", engine.wallet, LP, 500)

        imported = BondRecord(
            release_date=ledger.timestamp + 3_600,
            exit_fee_snapshot=50_000,
            reward_amount=500,
            principal_amount=500,
            liquidity_amount=500,
        )
        event = engine.migrate_bonds("owner", "predecessor", [MigrationEntry("bob", "PAIR", imported)])
        assert isinstance(event, BondsMigrated)
        bond(engine, 100, "alice")

        info = engine.get_pool_info("PAIR")
        assert info.total_locked == 500 + 98
        assert info.total_liquidity == 500 + 98

        advance(ledger, 3_600)
        released = engine.release_bond("bob", "PAIR")
        assert (released.reward_released, released.principal_released) == (475, 475)
        assert (released.reward_fee, released.principal_fee) == (25, 25)
        assert engine.get_account_bond("PAIR", "bob") is EMPTY_BOND
        assert engine.get_account_bond("PAIR", "alice").is_active

        advance(ledger, 86_400)
        released = engine.release_bond("alice", "PAIR")
        assert released.reward_fee == 98 * 50_000 // 1_000_000
        assert ledger.get_balance(engine.wallet, LP) == 0
        assert ledger.verify_double_entry()['valid']


class TestPauseDuringLock:

    def test_release_waits_for_unpause(self, engine):
        ledger = engine.ledger
        bond(engine, 100)
        engine.pause("owner")
        advance(ledger, 86_400)
        with pytest.raises(Paused):
            engine.release_bond("alice", "PAIR")
        engine.unpause("owner")
        engine.release_bond("alice", "PAIR")
        assert engine.get_account_bond("PAIR", "alice") is EMPTY_BOND


class TestVerboseOutput:

    def test_events_printed(self, engine, capsys):
        engine.verbose = True
        bond(engine, 100)
        out = capsys.readouterr().out
        assert "[BOND]" in out
        assert "BondCreated" in out

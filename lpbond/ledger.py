"""
ledger.py - Stateful Token Ledger

The Ledger is the token transfer boundary of the bonding system: it holds
every wallet's integer token balances and ERC20-style allowances, and it is
the only module that moves tokens.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access
    - Executes transactions atomically (all moves succeed or all fail)
    - Enforces balance limits and allowance spending
    - Reverts every transaction of a failed multi-step operation (atomic())
    - Tracks logical time
    - Always validates and always logs - no exceptions
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Set, Optional, Tuple, Any
import copy

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    # Constants
    SYSTEM_WALLET,
    # Exceptions
    LedgerError, UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state, to_timestamp,
)


# Allowance key: (owner, spender, unit_symbol)
AllowanceKey = Tuple[str, str, str]


class Ledger:
    """
    Token ledger with allowances, full validation and an audit trail.

    Design Principles:
        - Always validates: every transaction is checked against registration,
          balance limits, allowances, unit state and timestamps.
        - Always logs: every applied transaction is recorded in the
          transaction log, which is also what atomic() unwinds.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own Ledger instance.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("PAIR", "Pairable Token"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        ledger.execute(build_transaction(ledger, [
            Move(1_000, "PAIR", SYSTEM_WALLET, "alice", "mint")
        ]))
        ledger.approve("alice", "bob", "PAIR", 500)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print registrations and transaction results (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.allowances: Dict[AllowanceKey, int] = {}
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index mapping unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, int]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def timestamp(self) -> int:
        """Current logical time as epoch seconds."""
        return to_timestamp(self._current_time)

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
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
        return self.balances[wallet_id].get(unit_symbol, 0)

    def allowance(self, owner: str, spender: str, unit_symbol: str) -> int:
        """Remaining amount of unit_symbol that spender may move out of owner."""
        return self.allowances.get((owner, spender, unit_symbol), 0)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """All non-zero positions for a unit, including the system wallet's."""
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

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return {u: q for u, q in self.balances[wallet_id].items() if q}

    def total_supply(self, unit_symbol: str) -> int:
        """
        Circulating supply of a unit: the sum over every wallet except the
        system wallet, whose (negative) balance mirrors issuance.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            self.balances[w].get(unit_symbol, 0)
            for w in sorted(self.registered_wallets)
            if w != SYSTEM_WALLET
        )

    def verify_double_entry(self) -> Dict[str, Any]:
        """
        Verify that every unit's balances net to zero across all wallets.

        Issuance is a move out of the system wallet, so the system balance
        always mirrors the circulating supply.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all units net to zero
            - 'supplies': Dict[str, int] - Circulating supply of each unit
            - 'discrepancies': List[Dict] - unit and net imbalance
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in sorted(self.units):
            supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = supply
            net = supply + self.balances[SYSTEM_WALLET].get(unit_symbol, 0)
            if net != 0:
                discrepancies.append({'unit': unit_symbol, 'net': net})
        return {
            'valid': not discrepancies,
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
            ValueError: If wallet is empty or already registered
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("wallet_id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(int)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (token) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Set a wallet's balance directly. Only available in test mode.

        The system wallet absorbs the difference so double entry still holds.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, int) or quantity < 0:
            raise ValueError(f"quantity must be a non-negative int, got {quantity!r}")
        delta = quantity - self.balances[wallet_id][unit_symbol]
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)
        if wallet_id != SYSTEM_WALLET:
            system_balance = self.balances[SYSTEM_WALLET][unit_symbol] - delta
            self.balances[SYSTEM_WALLET][unit_symbol] = system_balance
            self._update_position_index(SYSTEM_WALLET, unit_symbol, system_balance)

    def approve(self, owner: str, spender: str, unit_symbol: str, amount: int) -> None:
        """
        Set how much of unit_symbol spender may move out of owner.

        Raises:
            WalletNotRegistered: If owner or spender is not registered
            UnitNotRegistered: If unit is not registered
            ValueError: If amount is negative
        """
        for wallet in (owner, spender):
            if wallet not in self.registered_wallets:
                raise WalletNotRegistered(f"Wallet {wallet} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValueError(f"allowance must be a non-negative int, got {amount!r}")
        key = (owner, spender, unit_symbol)
        if amount:
            self.allowances[key] = amount
        else:
            self.allowances.pop(key, None)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{epoch_seconds}"""
        return f"exec:{self.name}:{sequence:012d}:{self.timestamp}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. Execution is
        idempotent: a pending transaction with the same intent_id is not
        applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        # Units are registered for validation and unregistered again on rejection
        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.units[unit.symbol] = unit
                newly_registered_units.append(unit.symbol)

        valid, reason = self._validate_pending(pending)
        if not valid:
            for sym in newly_registered_units:
                del self.units[sym]
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(f"{tx!r}\n  ✓ APPLIED")
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp (transaction must not be from the future)
        2. Unit and wallet registration
        3. Allowances for moves made on another wallet's behalf
        4. Unit state (old_state must match the current state)
        5. Balance limits

        Returns:
            (success, reason); reason is empty on success
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        spends: Dict[AllowanceKey, int] = {}
        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"
            if move.spends_allowance:
                key = (move.source, move.spender, move.unit_symbol)
                spends[key] = spends.get(key, 0) + move.quantity

        for key, amount in spends.items():
            if amount > self.allowances.get(key, 0):
                owner, spender, unit_sym = key
                return False, (
                    f"allowance {owner}->{spender} {unit_sym}: "
                    f"{amount} > {self.allowances.get(key, 0)}"
                )

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return False, f"stale state for {sc.unit}"

        net: Dict[Tuple[str, str], int] = {}
        for move in pending.moves:
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = net.get(key_src, 0) - move.quantity
            net[key_dst] = net.get(key_dst, 0) + move.quantity

        # SYSTEM_WALLET is exempt from balance validation
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = self.balances[wallet][unit_sym] + delta
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """Keep the unit -> {wallet -> quantity} index free of zero positions."""
        if quantity:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _apply_move(self, move: Move, sign: int) -> None:
        """Apply a move (sign=1) or its exact reversal (sign=-1)."""
        qty = move.quantity * sign
        new_src = self.balances[move.source][move.unit_symbol] - qty
        self.balances[move.source][move.unit_symbol] = new_src
        self._update_position_index(move.source, move.unit_symbol, new_src)
        new_dst = self.balances[move.dest][move.unit_symbol] + qty
        self.balances[move.dest][move.unit_symbol] = new_dst
        self._update_position_index(move.dest, move.unit_symbol, new_dst)
        if move.spends_allowance:
            key = (move.source, move.spender, move.unit_symbol)
            remaining = self.allowances.get(key, 0) - qty
            if remaining:
                self.allowances[key] = remaining
            else:
                self.allowances.pop(key, None)

    def _execute_moves(self, moves) -> None:
        for move in moves:
            self._apply_move(move, 1)

    # ========================================================================
    # REVERT
    # ========================================================================

    def _unwind(self, tx: Transaction) -> None:
        """
        Reverse one logged transaction in place.

        Moves are reversed (restoring spent allowances), unit state is reset
        to old_state, and units created by the transaction are removed.
        """
        for move in reversed(tx.moves):
            self._apply_move(move, -1)

        for sc in tx.state_changes:
            if sc.unit in self.units:
                restored = copy.deepcopy(sc.old_state if isinstance(sc.old_state, dict) else {})
                self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(restored))

        for unit in tx.units_to_create:
            self.units.pop(unit.symbol, None)
            for wallet in self.registered_wallets:
                self.balances[wallet].pop(unit.symbol, None)
            self._positions_by_unit.pop(unit.symbol, None)

        self.seen_intent_ids.discard(tx.intent_id)

    def revert_to(self, log_length: int) -> List[Transaction]:
        """
        Undo every transaction logged after the first log_length entries.

        Returns:
            The reverted transactions, most recent first
        """
        if log_length < 0 or log_length > len(self.transaction_log):
            raise ValueError(f"Invalid revert point {log_length}")
        reverted = []
        while len(self.transaction_log) > log_length:
            tx = self.transaction_log.pop()
            self._unwind(tx)
            reverted.append(tx)
        self._next_sequence = len(self.transaction_log)
        return reverted

    @contextmanager
    def atomic(self) -> Iterator[Ledger]:
        """
        Group several executions into one all-or-nothing operation.

        If the block raises, every transaction it applied is unwound and
        allowances set inside it are restored before the exception propagates.

        Example:
            with ledger.atomic():
                ledger.execute(pull)
                venue.add_liquidity(...)
        """
        mark = len(self.transaction_log)
        allowances = dict(self.allowances)
        try:
            yield self
        except Exception:
            reverted = self.revert_to(mark)
            self.allowances = allowances
            if self.verbose and reverted:
                print(f"↺ REVERTED {len(reverted)} transaction(s)")
            raise

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        Modifications to the clone never affect the original and vice versa.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.units = dict(self.units)
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.allowances = dict(self.allowances)
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence
        cloned.balances = {
            wallet: defaultdict(int, bals) for wallet, bals in self.balances.items()
        }
        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)
        return cloned

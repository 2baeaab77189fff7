"""
bonds.py - Bond Ledger

One BondRecord per (pairable token, account). A record is created or grown
by create_bond and zeroed by release_bond; nothing else mutates it.

Merge rule for repeated bonding before release:
    amounts          -> summed
    release_date     -> replaced by now + locking_period of the latest call
    exit_fee_snapshot-> replaced by the exit fee in force at the latest call
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

from .fees import checked_add


@dataclass(frozen=True, slots=True)
class BondRecord:
    """
    An account's locked liquidity position for one pairable token.

    Attributes:
        release_date: Epoch seconds after which release is permitted (0 = none).
        exit_fee_snapshot: Exit fee rate captured when the bond was last grown.
        reward_amount: Reward tokens paired into the position.
        principal_amount: Pairable tokens paired into the position.
        liquidity_amount: Liquidity tokens held for the position.
    """
    release_date: int = 0
    exit_fee_snapshot: int = 0
    reward_amount: int = 0
    principal_amount: int = 0
    liquidity_amount: int = 0

    def __post_init__(self):
        for name in ('release_date', 'exit_fee_snapshot', 'reward_amount',
                     'principal_amount', 'liquidity_amount'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an int, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        if self.liquidity_amount == 0 and (
            self.release_date or self.exit_fee_snapshot
            or self.reward_amount or self.principal_amount
        ):
            raise ValueError("a bond without liquidity must be empty")

    @property
    def is_active(self) -> bool:
        return self.liquidity_amount > 0

    def is_mature(self, now: int) -> bool:
        return self.is_active and now >= self.release_date

    def accumulate(
        self,
        release_date: int,
        exit_fee_snapshot: int,
        reward_amount: int,
        principal_amount: int,
        liquidity_amount: int,
    ) -> BondRecord:
        """Apply the merge rule and return the grown record."""
        return BondRecord(
            release_date=release_date,
            exit_fee_snapshot=exit_fee_snapshot,
            reward_amount=checked_add(self.reward_amount, reward_amount),
            principal_amount=checked_add(self.principal_amount, principal_amount),
            liquidity_amount=checked_add(self.liquidity_amount, liquidity_amount),
        )


EMPTY_BOND = BondRecord()


@dataclass(frozen=True, slots=True)
class MigrationEntry:
    """A predecessor deployment's bond to import for an account."""
    account: str
    token: str
    record: BondRecord

    def __post_init__(self):
        if not self.account or not self.account.strip():
            raise ValueError("MigrationEntry account cannot be empty")
        if not self.token or not self.token.strip():
            raise ValueError("MigrationEntry token cannot be empty")


class BondBook:
    """
    Key-value store of BondRecord by (token, account).

    Only active records are stored; looking up anything else returns EMPTY_BOND.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str], BondRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, token: str, account: str) -> BondRecord:
        return self._records.get((token, account), EMPTY_BOND)

    def put(self, token: str, account: str, record: BondRecord) -> None:
        if record.is_active:
            self._records[(token, account)] = record
        else:
            self._records.pop((token, account), None)

    def clear(self, token: str, account: str) -> None:
        self._records.pop((token, account), None)

    def accounts(self, token: str) -> List[str]:
        """Accounts holding an active bond for token, sorted."""
        return sorted(account for (t, account) in self._records if t == token)

    def items(self) -> Iterator[Tuple[str, str, BondRecord]]:
        """(token, account, record) for every active bond, in sorted order."""
        for (t, account) in sorted(self._records):
            yield t, account, self._records[(t, account)]

    def total_liquidity(self, token: str) -> int:
        return sum(r.liquidity_amount for (t, _), r in self._records.items() if t == token)

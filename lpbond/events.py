"""
events.py - Engine Events

Immutable records the bonding engine appends to its event log after an
operation has fully succeeded. Reverted operations emit nothing.
"""
from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, Tuple


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """Base event; timestamp is the ledger clock in epoch seconds."""
    timestamp: int

    @property
    def name(self) -> str:
        return type(self).__name__

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def __str__(self) -> str:
        body = ", ".join(f"{k}={v}" for k, v in self.as_dict().items() if k != 'timestamp')
        return f"{self.name}({body})"


@dataclass(frozen=True, slots=True)
class ConfigurationChanged(EngineEvent):
    token: str
    display_name: str
    max_stake: int
    min_bond: int
    entry_fee_rate: int
    exit_fee_rate: int
    locking_period: int
    reward_top_up: int


@dataclass(frozen=True, slots=True)
class BondCreated(EngineEvent):
    account: str
    token: str
    reward_staked: int
    principal_staked: int
    liquidity_minted: int
    entry_fee: int
    release_date: int


@dataclass(frozen=True, slots=True)
class BondReleased(EngineEvent):
    account: str
    token: str
    reward_released: int
    principal_released: int
    liquidity_burned: int
    reward_fee: int
    principal_fee: int


@dataclass(frozen=True, slots=True)
class TreasuryChanged(EngineEvent):
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class RewardTokenChanged(EngineEvent):
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class GatewayChanged(EngineEvent):
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class PausedChanged(EngineEvent):
    paused: bool
    by: str


@dataclass(frozen=True, slots=True)
class OwnershipTransferred(EngineEvent):
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class BondsMigrated(EngineEvent):
    source_wallet: str
    bond_count: int
    liquidity_by_token: Tuple[Tuple[str, int], ...]

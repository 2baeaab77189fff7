"""
registry.py - Pair Registry

Administrator-maintained configuration per pairable token: caps, fees,
locking period and the running aggregates the engine updates on every bond.

PairConfig is immutable. The registry replaces entries wholesale, so a bond
that already captured its terms is never affected by a later edit.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Any

from .core import InvalidConfig, PairNotConfigured, InsufficientReserves, InvalidAmount
from .fees import FEE_SCALE, is_valid_fee_rate, checked_add, saturating_sub, mul_div, split


# =============================================================================
# PAIR CONFIG
# =============================================================================

@dataclass(frozen=True, slots=True)
class PairConfig:
    """
    Bonding terms and running totals for one pairable token.

    Attributes:
        display_name: Free-text label.
        max_stake: Inclusive cap on total principal locked, in token base units.
        min_bond: Inclusive floor on the principal of a single bond.
        entry_fee_rate: Fee taken from principal at bond time (FEE_SCALE scale).
        exit_fee_rate: Fee taken from released proceeds (FEE_SCALE scale),
            snapshotted into each bond when it is created.
        locking_period: Seconds a new bond stays locked.
        total_locked: Net principal locked over the pair's lifetime.
        total_paired_reward: Reward tokens paired over the pair's lifetime.
        total_liquidity: Liquidity currently held for this pair's bonds.
    """
    display_name: str
    max_stake: int
    min_bond: int = 0
    entry_fee_rate: int = 0
    exit_fee_rate: int = 0
    locking_period: int = 0
    total_locked: int = 0
    total_paired_reward: int = 0
    total_liquidity: int = 0

    @property
    def parameters(self) -> Dict[str, Any]:
        """The administrator-set fields, without the aggregates."""
        return {
            'display_name': self.display_name,
            'max_stake': self.max_stake,
            'min_bond': self.min_bond,
            'entry_fee_rate': self.entry_fee_rate,
            'exit_fee_rate': self.exit_fee_rate,
            'locking_period': self.locking_period,
        }

    @property
    def remaining_capacity(self) -> int:
        return saturating_sub(self.max_stake, self.total_locked)

    def with_bond(self, net_principal: int, reward_used: int, liquidity_minted: int) -> PairConfig:
        """Aggregates after a bond of the given amounts is added."""
        total_locked = checked_add(self.total_locked, net_principal)
        if total_locked > self.max_stake:
            raise InvalidAmount(
                f"{self.display_name}: locked {total_locked} would exceed max stake {self.max_stake}"
            )
        return replace(
            self,
            total_locked=total_locked,
            total_paired_reward=checked_add(self.total_paired_reward, reward_used),
            total_liquidity=checked_add(self.total_liquidity, liquidity_minted),
        )

    def with_release(self, liquidity_burned: int) -> PairConfig:
        """Aggregates after a bond's liquidity is released."""
        return replace(self, total_liquidity=saturating_sub(self.total_liquidity, liquidity_burned))


def validate_pair_config(token: str, config: PairConfig) -> None:
    """
    Check administrator input for a pair.

    Raises:
        InvalidConfig: On an empty token, a non-positive cap, a floor above
            the cap, a negative locking period or a fee rate out of range
    """
    if not token or not str(token).strip():
        raise InvalidConfig("token cannot be empty")
    for name in ('max_stake', 'min_bond', 'locking_period'):
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise InvalidConfig(f"{token}: {name} must be an int, got {value!r}")
    if config.max_stake <= 0:
        raise InvalidConfig(f"{token}: max_stake must be positive, got {config.max_stake}")
    if config.min_bond < 0 or config.min_bond > config.max_stake:
        raise InvalidConfig(
            f"{token}: min_bond must be in [0, max_stake], got {config.min_bond}"
        )
    if config.locking_period < 0:
        raise InvalidConfig(f"{token}: locking_period must be non-negative")
    for name in ('entry_fee_rate', 'exit_fee_rate'):
        if not is_valid_fee_rate(getattr(config, name)):
            raise InvalidConfig(
                f"{token}: {name} must be in [0, {FEE_SCALE}], got {getattr(config, name)!r}"
            )


# =============================================================================
# QUOTES
# =============================================================================

def quote_required_reward(
    config: PairConfig,
    principal_in: int,
    reward_reserve: int,
    token_reserve: int,
) -> Tuple[int, int]:
    """
    Reward tokens needed to pair with principal_in at the pool's spot ratio.

    net_principal = principal_in after the entry fee,
    reward_required = floor(net_principal * reward_reserve / token_reserve).

    Returns:
        (reward_required, net_principal)

    Raises:
        InsufficientReserves: If the pool holds no reserves
    """
    _, net_principal = split(principal_in, config.entry_fee_rate)
    if reward_reserve <= 0 or token_reserve <= 0:
        raise InsufficientReserves(f"{config.display_name}: pool has no reserves to quote against")
    return mul_div(net_principal, reward_reserve, token_reserve), net_principal


# =============================================================================
# REGISTRY
# =============================================================================

class PairRegistry:
    """Key-value store of PairConfig by pairable token symbol."""

    def __init__(self):
        self._pairs: Dict[str, PairConfig] = {}

    def __contains__(self, token: str) -> bool:
        return token in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def tokens(self) -> List[str]:
        return sorted(self._pairs)

    def find(self, token: str) -> Optional[PairConfig]:
        return self._pairs.get(token)

    def get(self, token: str) -> PairConfig:
        """
        Raises:
            PairNotConfigured: If the token has no configuration
        """
        config = self._pairs.get(token)
        if config is None:
            raise PairNotConfigured(f"No pair configured for {token}")
        return config

    def prepare_upsert(self, token: str, config: PairConfig) -> PairConfig:
        """
        Validate config and return the entry that upsert would store.

        On update the existing aggregates are preserved; on first creation
        they start at zero whatever the caller passed.
        """
        validate_pair_config(token, config)
        existing = self._pairs.get(token)
        if existing is None:
            return replace(config, total_locked=0, total_paired_reward=0, total_liquidity=0)
        if existing.total_locked > config.max_stake:
            raise InvalidConfig(
                f"{token}: max_stake {config.max_stake} is below the {existing.total_locked} already locked"
            )
        return replace(
            config,
            total_locked=existing.total_locked,
            total_paired_reward=existing.total_paired_reward,
            total_liquidity=existing.total_liquidity,
        )

    def upsert(self, token: str, config: PairConfig) -> PairConfig:
        """Create or replace a token's configuration."""
        stored = self.prepare_upsert(token, config)
        self._pairs[token] = stored
        return stored

    def commit(self, token: str, config: PairConfig) -> None:
        """Store an entry whose aggregates the engine has already updated."""
        if token not in self._pairs:
            raise PairNotConfigured(f"No pair configured for {token}")
        self._pairs[token] = config

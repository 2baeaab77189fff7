"""
engine.py - Bonding Engine

Orchestrates the two public operations, create_bond and release_bond, plus
the owner's configuration calls and the one-time migration.

Execution order of every state-changing call:
1. Validate against the registry, the bond book and the token ledger
   (nothing has moved yet, so a failure leaves no trace)
2. Move tokens and call the venue inside one ledger.atomic() block
3. Commit registry / bond book / totals, then emit the event

Engine state is written only in step 3, after the untrusted venue call has
returned, and every guarded call holds the reentrancy flag throughout.
"""
from __future__ import annotations
from functools import wraps
from typing import Dict, Iterable, List, Optional, Tuple

from .amm import AmmGateway
from .bonds import BondBook, BondRecord, MigrationEntry, EMPTY_BOND
from .core import (
    Move, TransactionOrigin, OriginType, ExecuteResult,
    build_transaction,
    InvalidConfig, InvalidAmount, InsufficientApproval, InsufficientReserves,
    NotYetMatured, NothingToRelease, TransferFailed, Unauthorized,
    AlreadyMigrated, Paused, ReentrantCall,
)
from .events import (
    EngineEvent, ConfigurationChanged, BondCreated, BondReleased,
    TreasuryChanged, RewardTokenChanged, GatewayChanged, PausedChanged,
    OwnershipTransferred, BondsMigrated,
)
from .fees import checked_add, is_valid_fee_rate, split
from .ledger import Ledger
from .registry import PairConfig, PairRegistry, quote_required_reward


# Seconds the venue is given to settle a release.
RELEASE_DEADLINE_GRACE = 1200


def _is_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def nonreentrant(method):
    """Reject a guarded call while another guarded call on the same engine is running."""
    @wraps(method)
    def guarded(self, *args, **kwargs):
        if self._entered:
            raise ReentrantCall(f"{method.__name__}: another engine call is in progress")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False
    return guarded


class BondingEngine:
    """
    Locks a pairable token and the reward token into venue liquidity, and
    returns the position, less fees, once the bond matures.

    The engine owns a custody wallet on the token ledger that holds reward
    tokens awaiting pairing and the liquidity tokens of every active bond.

    Example:
        engine = BondingEngine(ledger, "RWD", venue, treasury="treasury", owner="admin")
        ledger.approve("admin", engine.wallet, "RWD", 50_000)
        engine.upsert_pair("admin", "PAIR", PairConfig("Pair", max_stake=1_000,
                           min_bond=10, entry_fee_rate=25_000,
                           locking_period=86_400), reward_top_up=50_000)

        ledger.approve("alice", engine.wallet, "PAIR", 100)
        reward, _ = engine.quote_required_reward("PAIR", 100)
        engine.create_bond("alice", "PAIR", 100, reward, reward, deadline)
        ...
        engine.release_bond("alice", "PAIR")
    """

    def __init__(
        self,
        ledger: Ledger,
        reward_token: str,
        gateway: AmmGateway,
        treasury: str,
        owner: str,
        name: str = "bonding",
    ):
        """
        Create an engine and register its custody wallet.

        Args:
            ledger: Token ledger holding every balance
            reward_token: Symbol of the reward token
            gateway: Liquidity venue
            treasury: Wallet receiving entry and exit fees
            owner: Account allowed to call administrative operations
            name: Engine identifier, also used for the custody wallet

        Raises:
            InvalidConfig: If the reward token, treasury or owner is not registered
        """
        if reward_token not in ledger.units:
            raise InvalidConfig(f"Reward token {reward_token} not registered")
        for wallet in (treasury, owner):
            if not wallet or not ledger.is_registered(wallet):
                raise InvalidConfig(f"Wallet {wallet!r} not registered")
        if gateway is None:
            raise InvalidConfig("gateway cannot be None")

        self.ledger = ledger
        self.name = name
        self.wallet = f"{name}:custody"
        if not ledger.is_registered(self.wallet):
            ledger.register_wallet(self.wallet)

        self.reward_token = reward_token
        self.gateway = gateway
        self.treasury = treasury
        self.owner = owner

        self.pairs = PairRegistry()
        self.bonds = BondBook()
        self.events: List[EngineEvent] = []

        self.total_reward_paired = 0
        self.total_reward_allocated = 0
        self.reward_allocated: Dict[str, int] = {}

        self.verbose = ledger.verbose
        self._paused = False
        self._migrated = False
        self._entered = False
        self._nonce = 0

    def __repr__(self) -> str:
        return f"BondingEngine({self.name}, {len(self.pairs)} pairs, {len(self.bonds)} active bonds)"

    # ========================================================================
    # INTERNALS
    # ========================================================================

    @property
    def now(self) -> int:
        return self.ledger.timestamp

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def migrated(self) -> bool:
        return self._migrated

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise Unauthorized(f"{caller} is not the owner of {self.name}")

    def _require_not_paused(self) -> None:
        if self._paused:
            raise Paused(f"{self.name} is paused")

    def _emit(self, event: EngineEvent) -> None:
        self.events.append(event)
        if self.verbose:
            print(f"[BOND] {event}")

    def _transfer(self, moves: List[Move], event_type: str, token: Optional[str] = None) -> None:
        """Execute moves as one ledger transaction or raise TransferFailed."""
        if not moves:
            return
        self._nonce += 1
        origin = TransactionOrigin(
            OriginType.CONTRACT, f"{self.name}:{self._nonce}",
            unit_symbol=token, event_type=event_type,
        )
        result = self.ledger.execute(build_transaction(self.ledger, moves, origin=origin))
        if result != ExecuteResult.APPLIED:
            raise TransferFailed(f"{event_type} transfer was {result.value}")

    def _pull(self, unit: str, source: str, amount: int, event_type: str) -> None:
        """Move amount from source into custody, spending source's allowance."""
        self._transfer(
            [Move(amount, unit, source, self.wallet, f"{self.name}:{event_type.lower()}", spender=self.wallet)],
            event_type, unit,
        )

    def _payout_moves(self, unit: str, payouts: Iterable[Tuple[str, int]], event_type: str) -> List[Move]:
        cid = f"{self.name}:{event_type.lower()}"
        return [Move(amount, unit, self.wallet, dest, cid) for dest, amount in payouts if amount > 0]

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_pool_info(self, token: str) -> PairConfig:
        """
        Raises:
            PairNotConfigured: If the token has no configuration
        """
        return self.pairs.get(token)

    def get_account_bond(self, token: str, account: str) -> BondRecord:
        return self.bonds.get(token, account)

    def list_pairs(self) -> List[str]:
        return self.pairs.tokens()

    def reward_balance(self) -> int:
        """Reward tokens in custody, available for pairing."""
        return self.ledger.get_balance(self.wallet, self.reward_token)

    def get_reward_allocation(self, token: str) -> int:
        """Reward tokens topped up for a pair over its lifetime."""
        return self.reward_allocated.get(token, 0)

    def quote_required_reward(self, token: str, principal_in: int) -> Tuple[int, int]:
        """
        Reward tokens needed to pair principal_in at the pool's spot ratio.

        Returns:
            (reward_required, net_principal)

        Raises:
            PairNotConfigured: If the token has no configuration
            InvalidAmount: If principal_in is not a non-negative int
            InsufficientReserves: If the pool holds no reserves
        """
        config = self.pairs.get(token)
        if not _is_amount(principal_in) or principal_in < 0:
            raise InvalidAmount(f"principal must be a non-negative int, got {principal_in!r}")
        reward_reserve, token_reserve = self.gateway.get_reserves(self.reward_token, token)
        return quote_required_reward(config, principal_in, reward_reserve, token_reserve)

    def get_create_bond_preview(
        self, account: str, token: str, principal_in: int, reward_in: int,
    ) -> Tuple[int, int]:
        """
        Terms a create_bond call with these arguments would get.

        Runs the same checks as create_bond and raises the same errors.

        Returns:
            (locking_period, entry_fee)
        """
        config = self._check_create(account, token, principal_in, reward_in)
        entry_fee, _ = split(principal_in, config.entry_fee_rate)
        return config.locking_period, entry_fee

    # ========================================================================
    # CREATE
    # ========================================================================

    def _check_create(self, account: str, token: str, principal_in: int, reward_desired: int) -> PairConfig:
        config = self.pairs.get(token)
        if not _is_amount(principal_in) or principal_in <= 0:
            raise InvalidAmount(f"principal must be positive, got {principal_in!r}")
        if config.total_locked + principal_in > config.max_stake:
            raise InvalidAmount(
                f"{token}: {config.total_locked} locked + {principal_in} exceeds max stake {config.max_stake}"
            )
        if principal_in < config.min_bond:
            raise InvalidAmount(f"{token}: {principal_in} is below the minimum bond {config.min_bond}")
        allowed = self.ledger.allowance(account, self.wallet, token)
        if allowed < principal_in:
            raise InsufficientApproval(f"{account} approved {allowed} {token}, needs {principal_in}")
        if not _is_amount(reward_desired) or reward_desired <= 0:
            raise InvalidAmount(f"reward must be positive, got {reward_desired!r}")
        available = self.reward_balance()
        if available < reward_desired:
            raise InsufficientReserves(
                f"{self.name} holds {available} {self.reward_token}, needs {reward_desired}"
            )
        return config

    @nonreentrant
    def create_bond(
        self,
        caller: str,
        token: str,
        principal_in: int,
        reward_desired: int,
        min_reward_accepted: int,
        deadline: int,
    ) -> BondCreated:
        """
        Lock principal_in of token plus matching reward tokens into venue liquidity.

        The entry fee is cut from principal_in and sent to the treasury; the
        rest is paired with up to reward_desired reward tokens. Repeated calls
        before release grow the caller's single bond and restart its lock.

        Args:
            caller: Account bonding (must have approved the engine wallet)
            token: Pairable token
            principal_in: Gross principal pulled from caller
            reward_desired: Most reward tokens to pair
            min_reward_accepted: Fewest reward tokens the venue may pair
            deadline: Epoch seconds after which the venue must refuse

        Returns:
            The BondCreated event

        Raises:
            Paused, PairNotConfigured, InvalidAmount, InsufficientApproval,
            InsufficientReserves: before anything moves
            TransferFailed, LiquidityProvisionFailed: everything is reverted
        """
        self._require_not_paused()
        config = self._check_create(caller, token, principal_in, reward_desired)
        entry_fee, net_principal = split(principal_in, config.entry_fee_rate)
        now = self.now

        with self.ledger.atomic():
            self._pull(token, caller, principal_in, "BOND")

            self.ledger.approve(self.wallet, self.gateway.wallet, self.reward_token, reward_desired)
            self.ledger.approve(self.wallet, self.gateway.wallet, token, net_principal)
            reward_used, token_used, liquidity = self.gateway.add_liquidity(
                self.reward_token, token,
                reward_desired, net_principal,
                min_reward_accepted, net_principal,
                self.wallet, self.wallet, deadline,
            )
            self.ledger.approve(self.wallet, self.gateway.wallet, self.reward_token, 0)
            self.ledger.approve(self.wallet, self.gateway.wallet, token, 0)

            record = self.bonds.get(token, caller).accumulate(
                release_date=now + config.locking_period,
                exit_fee_snapshot=config.exit_fee_rate,
                reward_amount=reward_used,
                principal_amount=token_used,
                liquidity_amount=liquidity,
            )
            updated = config.with_bond(net_principal, reward_used, liquidity)
            total_reward_paired = checked_add(self.total_reward_paired, reward_used)

            if entry_fee > 0:
                self._transfer(
                    self._payout_moves(token, [(self.treasury, entry_fee)], "ENTRY_FEE"),
                    "ENTRY_FEE", token,
                )

        self.bonds.put(token, caller, record)
        self.pairs.commit(token, updated)
        self.total_reward_paired = total_reward_paired

        event = BondCreated(
            timestamp=now,
            account=caller,
            token=token,
            reward_staked=reward_used,
            principal_staked=token_used,
            liquidity_minted=liquidity,
            entry_fee=entry_fee,
            release_date=record.release_date,
        )
        self._emit(event)
        return event

    # ========================================================================
    # RELEASE
    # ========================================================================

    @nonreentrant
    def release_bond(self, caller: str, token: str) -> BondReleased:
        """
        Unwind the caller's matured bond and pay out the proceeds.

        The exit fee snapshotted at bond time is taken from what the venue
        returns, on both tokens, and sent to the treasury.

        Returns:
            The BondReleased event (gross amounts and fee portions)

        Raises:
            Paused, NothingToRelease, NotYetMatured: before anything moves
            TransferFailed, LiquidityProvisionFailed: everything is reverted
        """
        self._require_not_paused()
        record = self.bonds.get(token, caller)
        if not record.is_active:
            raise NothingToRelease(f"{caller} has no active {token} bond")
        now = self.now
        if now < record.release_date:
            raise NotYetMatured(
                f"{caller}'s {token} bond is locked until {record.release_date}, now {now}"
            )
        config = self.pairs.get(token)
        liquidity_unit = self.gateway.liquidity_unit(self.reward_token, token)

        with self.ledger.atomic():
            self.ledger.approve(self.wallet, self.gateway.wallet, liquidity_unit, record.liquidity_amount)
            reward_out, token_out = self.gateway.remove_liquidity(
                self.reward_token, token, record.liquidity_amount,
                0, 0,
                self.wallet, self.wallet, now + RELEASE_DEADLINE_GRACE,
            )
            self.ledger.approve(self.wallet, self.gateway.wallet, liquidity_unit, 0)

            if record.exit_fee_snapshot == 0:
                reward_fee, reward_net = 0, reward_out
                token_fee, token_net = 0, token_out
            else:
                reward_fee, reward_net = split(reward_out, record.exit_fee_snapshot)
                token_fee, token_net = split(token_out, record.exit_fee_snapshot)

            self._transfer(
                self._payout_moves(self.reward_token, [(caller, reward_net), (self.treasury, reward_fee)], "RELEASE")
                + self._payout_moves(token, [(caller, token_net), (self.treasury, token_fee)], "RELEASE"),
                "RELEASE", token,
            )

        self.pairs.commit(token, config.with_release(record.liquidity_amount))
        self.bonds.clear(token, caller)

        event = BondReleased(
            timestamp=now,
            account=caller,
            token=token,
            reward_released=reward_out,
            principal_released=token_out,
            liquidity_burned=record.liquidity_amount,
            reward_fee=reward_fee,
            principal_fee=token_fee,
        )
        self._emit(event)
        return event

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    @nonreentrant
    def upsert_pair(
        self, caller: str, token: str, config: PairConfig, reward_top_up: int = 0,
    ) -> PairConfig:
        """
        Create or replace a pair's terms, optionally topping up reward custody.

        Aggregates survive an update and start at zero on creation. The top-up
        is pulled from caller (who must have approved the engine wallet)
        before the configuration is stored.

        Returns:
            The stored PairConfig

        Raises:
            Unauthorized, InvalidConfig, TransferFailed
        """
        self._require_owner(caller)
        if not token or token not in self.ledger.units:
            raise InvalidConfig(f"Token {token!r} not registered")
        if token == self.reward_token:
            raise InvalidConfig("the reward token cannot be paired with itself")
        if not isinstance(reward_top_up, int) or reward_top_up < 0:
            raise InvalidConfig(f"reward_top_up must be a non-negative int, got {reward_top_up!r}")
        stored = self.pairs.prepare_upsert(token, config)

        if reward_top_up > 0:
            with self.ledger.atomic():
                self._pull(self.reward_token, caller, reward_top_up, "REWARD_TOP_UP")
            self.total_reward_allocated = checked_add(self.total_reward_allocated, reward_top_up)
            self.reward_allocated[token] = checked_add(self.reward_allocated.get(token, 0), reward_top_up)

        self.pairs.upsert(token, stored)
        self._emit(ConfigurationChanged(
            timestamp=self.now, token=token, reward_top_up=reward_top_up, **stored.parameters,
        ))
        return self.pairs.get(token)

    @nonreentrant
    def set_treasury(self, caller: str, new_treasury: str) -> None:
        self._require_owner(caller)
        if not new_treasury or not self.ledger.is_registered(new_treasury):
            raise InvalidConfig(f"Treasury {new_treasury!r} not registered")
        if new_treasury == self.treasury:
            raise InvalidConfig(f"{new_treasury} is already the treasury")
        old, self.treasury = self.treasury, new_treasury
        self._emit(TreasuryChanged(timestamp=self.now, old=old, new=new_treasury))

    @nonreentrant
    def set_reward_token(self, caller: str, reward_token: str) -> None:
        """
        Point the engine at a different reward token.

        Refused while any bond is active: their liquidity sits in pools of
        the current reward token.
        """
        self._require_owner(caller)
        if not reward_token or reward_token not in self.ledger.units:
            raise InvalidConfig(f"Reward token {reward_token!r} not registered")
        if reward_token in self.pairs:
            raise InvalidConfig(f"{reward_token} is configured as a pairable token")
        if len(self.bonds):
            raise InvalidConfig("cannot change the reward token while bonds are active")
        old, self.reward_token = self.reward_token, reward_token
        self._emit(RewardTokenChanged(timestamp=self.now, old=old, new=reward_token))

    @nonreentrant
    def set_gateway(self, caller: str, gateway: AmmGateway) -> None:
        self._require_owner(caller)
        if gateway is None:
            raise InvalidConfig("gateway cannot be None")
        if len(self.bonds):
            raise InvalidConfig("cannot change the gateway while bonds are active")
        old, self.gateway = self.gateway, gateway
        self._emit(GatewayChanged(timestamp=self.now, old=old.name, new=gateway.name))

    @nonreentrant
    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self._require_owner(caller)
        if not new_owner or not self.ledger.is_registered(new_owner):
            raise InvalidConfig(f"Owner {new_owner!r} not registered")
        old, self.owner = self.owner, new_owner
        self._emit(OwnershipTransferred(timestamp=self.now, old=old, new=new_owner))

    @nonreentrant
    def pause(self, caller: str) -> None:
        """Stop create_bond and release_bond. Queries stay available."""
        self._require_owner(caller)
        if self._paused:
            raise InvalidConfig(f"{self.name} is already paused")
        self._paused = True
        self._emit(PausedChanged(timestamp=self.now, paused=True, by=caller))

    @nonreentrant
    def unpause(self, caller: str) -> None:
        self._require_owner(caller)
        if not self._paused:
            raise InvalidConfig(f"{self.name} is not paused")
        self._paused = False
        self._emit(PausedChanged(timestamp=self.now, paused=False, by=caller))

    @nonreentrant
    def migrate_bonds(
        self, caller: str, source_wallet: str, entries: Iterable[MigrationEntry],
    ) -> BondsMigrated:
        """
        Import a predecessor deployment's bonds. Usable once.

        The liquidity tokens backing every imported bond are pulled from
        source_wallet (which must have approved the engine wallet); the venue
        is not called. Each (account, token) must be new to this engine.

        Raises:
            Unauthorized, AlreadyMigrated, PairNotConfigured, InvalidConfig,
            InvalidAmount, TransferFailed
        """
        self._require_owner(caller)
        if self._migrated:
            raise AlreadyMigrated(f"{self.name} has already imported its predecessor's bonds")
        if not self.ledger.is_registered(source_wallet):
            raise InvalidConfig(f"Wallet {source_wallet!r} not registered")

        entries = list(entries)
        seen = set()
        configs: Dict[str, PairConfig] = {}
        for entry in entries:
            key = (entry.token, entry.account)
            if key in seen:
                raise InvalidConfig(f"duplicate migration entry for {entry.account}/{entry.token}")
            seen.add(key)
            if not entry.record.is_active:
                raise InvalidConfig(f"{entry.account}/{entry.token}: imported bond has no liquidity")
            if entry.record.release_date == 0:
                raise InvalidConfig(f"{entry.account}/{entry.token}: imported bond has no release date")
            if not is_valid_fee_rate(entry.record.exit_fee_snapshot):
                raise InvalidConfig(
                    f"{entry.account}/{entry.token}: exit fee snapshot {entry.record.exit_fee_snapshot} out of range"
                )
            if self.bonds.get(entry.token, entry.account) is not EMPTY_BOND:
                raise InvalidConfig(f"{entry.account} already holds a {entry.token} bond")
            config = configs.get(entry.token) or self.pairs.get(entry.token)
            configs[entry.token] = config.with_bond(
                entry.record.principal_amount,
                entry.record.reward_amount,
                entry.record.liquidity_amount,
            )

        total_reward_paired = self.total_reward_paired
        moves = []
        liquidity_by_token: Dict[str, int] = {}
        for entry in entries:
            unit = self.gateway.liquidity_unit(self.reward_token, entry.token)
            moves.append(Move(
                entry.record.liquidity_amount, unit, source_wallet, self.wallet,
                f"{self.name}:migrate", spender=self.wallet,
            ))
            liquidity_by_token[entry.token] = liquidity_by_token.get(entry.token, 0) + entry.record.liquidity_amount
            total_reward_paired = checked_add(total_reward_paired, entry.record.reward_amount)

        with self.ledger.atomic():
            self._transfer(moves, "MIGRATE")

        for entry in entries:
            self.bonds.put(entry.token, entry.account, entry.record)
        for token, config in configs.items():
            self.pairs.commit(token, config)
        self.total_reward_paired = total_reward_paired
        self._migrated = True

        event = BondsMigrated(
            timestamp=self.now,
            source_wallet=source_wallet,
            bond_count=len(entries),
            liquidity_by_token=tuple(sorted(liquidity_by_token.items())),
        )
        self._emit(event)
        return event

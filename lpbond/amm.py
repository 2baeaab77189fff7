"""
amm.py - AMM Gateway

The bonding engine talks to its liquidity venue only through the AmmGateway
protocol: quote, read reserves, add liquidity, remove liquidity. The venue
pulls tokens from the sender with allowance-spending moves, so it never
holds funds on anyone's behalf beyond the pool reserves.

ConstantProductVenue is a Uniswap-V2-style implementation over the token
ledger:
    - one pool wallet and one LIQUIDITY unit per token pair
    - first deposit mints isqrt(a * b) - MINIMUM_LIQUIDITY, the minimum is locked
    - later deposits are matched to the reserve ratio and mint proportionally
    - burns pay out liquidity / supply of each reserve
    - swaps charge 0.3% and keep reserve_in * reserve_out from decreasing
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable
import math

from .core import (
    Move, Unit, UnitStateChange,
    TransactionOrigin, OriginType, ExecuteResult,
    build_transaction, to_timestamp, _freeze_state,
    SYSTEM_WALLET, UNIT_TYPE_LIQUIDITY,
    LiquidityProvisionFailed, InsufficientReserves, TransferFailed,
)
from .fees import checked_mul, mul_div
from .ledger import Ledger


MINIMUM_LIQUIDITY = 1000

# Swap fee as (numerator, denominator) kept by the pool: 0.3%
SWAP_FEE_NUMERATOR = 997
SWAP_FEE_DENOMINATOR = 1000


# =============================================================================
# GATEWAY PROTOCOL
# =============================================================================

@runtime_checkable
class AmmGateway(Protocol):
    """
    Boundary between the bonding engine and an external liquidity venue.

    wallet is the spender the engine must approve before add/remove calls.
    Every method either completes or raises without moving tokens.
    """
    name: str
    wallet: str

    def quote(self, amount_in: int, path: Sequence[str]) -> List[int]:
        """Spot-ratio amounts along path, starting with amount_in."""
        ...

    def get_reserves(self, token_a: str, token_b: str) -> Tuple[int, int]:
        """Pool reserves ordered as (token_a, token_b); (0, 0) without a pool."""
        ...

    def liquidity_unit(self, token_a: str, token_b: str) -> str:
        """Symbol of the pair's liquidity token."""
        ...

    def add_liquidity(
        self, token_a: str, token_b: str,
        amount_a_desired: int, amount_b_desired: int,
        amount_a_min: int, amount_b_min: int,
        sender: str, recipient: str, deadline: int,
    ) -> Tuple[int, int, int]:
        """Returns (used_a, used_b, liquidity_minted)."""
        ...

    def remove_liquidity(
        self, token_a: str, token_b: str, liquidity: int,
        amount_a_min: int, amount_b_min: int,
        sender: str, recipient: str, deadline: int,
    ) -> Tuple[int, int]:
        """Returns (out_a, out_b)."""
        ...


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def quote(amount_a: int, reserve_a: int, reserve_b: int) -> int:
    """Amount of b worth amount_a at the spot ratio, rounded down."""
    if amount_a <= 0:
        raise ValueError(f"amount must be positive, got {amount_a}")
    if reserve_a <= 0 or reserve_b <= 0:
        raise ValueError("insufficient liquidity")
    return mul_div(amount_a, reserve_b, reserve_a)


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Output of an exact-in swap after the 0.3% fee, rounded down."""
    if amount_in <= 0:
        raise ValueError(f"amount_in must be positive, got {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ValueError("insufficient liquidity")
    amount_in_with_fee = checked_mul(amount_in, SWAP_FEE_NUMERATOR)
    numerator = checked_mul(amount_in_with_fee, reserve_out)
    denominator = reserve_in * SWAP_FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def optimal_amounts(
    amount_a_desired: int, amount_b_desired: int,
    amount_a_min: int, amount_b_min: int,
    reserve_a: int, reserve_b: int,
) -> Tuple[int, int]:
    """
    Deposit amounts matched to the reserve ratio.

    An empty pool takes the desired amounts as they are. Otherwise the side
    that would overshoot the ratio is cut back, and the cut-back side must
    still meet its minimum.

    Raises:
        LiquidityProvisionFailed: If a matched amount falls below its minimum
    """
    if reserve_a == 0 and reserve_b == 0:
        return amount_a_desired, amount_b_desired
    amount_b_optimal = quote(amount_a_desired, reserve_a, reserve_b)
    if amount_b_optimal <= amount_b_desired:
        if amount_b_optimal < amount_b_min:
            raise LiquidityProvisionFailed(
                f"INSUFFICIENT_B_AMOUNT: {amount_b_optimal} < {amount_b_min}"
            )
        return amount_a_desired, amount_b_optimal
    amount_a_optimal = quote(amount_b_desired, reserve_b, reserve_a)
    if amount_a_optimal < amount_a_min:
        raise LiquidityProvisionFailed(
            f"INSUFFICIENT_A_AMOUNT: {amount_a_optimal} < {amount_a_min}"
        )
    return amount_a_optimal, amount_b_desired


def liquidity_to_mint(
    amount_a: int, amount_b: int,
    reserve_a: int, reserve_b: int,
    total_supply: int,
) -> int:
    """
    Liquidity minted for a deposit, before MINIMUM_LIQUIDITY is locked.

    First deposit: isqrt(a * b). Later: min(a * supply / ra, b * supply / rb).
    """
    if total_supply == 0:
        return math.isqrt(checked_mul(amount_a, amount_b))
    return min(
        mul_div(amount_a, total_supply, reserve_a),
        mul_div(amount_b, total_supply, reserve_b),
    )


# =============================================================================
# UNIT CREATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class Pool:
    """A registered pair: its canonical token order, liquidity unit and reserve wallet."""
    token0: str
    token1: str
    symbol: str
    wallet: str


def create_liquidity_unit(symbol: str, token0: str, token1: str, pool_wallet: str) -> Unit:
    """Create the liquidity token for a pair. total_supply starts at zero."""
    return Unit(
        symbol=symbol,
        name=f"{token0}/{token1} liquidity",
        unit_type=UNIT_TYPE_LIQUIDITY,
        _frozen_state=_freeze_state({
            'token0': token0,
            'token1': token1,
            'pool_wallet': pool_wallet,
            'total_supply': 0,
        })
    )


# =============================================================================
# VENUE
# =============================================================================

class ConstantProductVenue:
    """
    Uniswap-V2-style venue on a token ledger.

    Every state-changing call is a single ledger transaction: either all
    token movements and the supply update apply, or none do.
    """

    def __init__(self, ledger: Ledger, name: str = "venue"):
        self.ledger = ledger
        self.name = name
        self.wallet = f"{name}:router"
        self.lock_wallet = f"{name}:locked"
        for wallet in (self.wallet, self.lock_wallet):
            if not ledger.is_registered(wallet):
                ledger.register_wallet(wallet)
        self._pools: Dict[Tuple[str, str], Pool] = {}
        self._nonce = 0

    def __repr__(self) -> str:
        return f"ConstantProductVenue({self.name}, {len(self._pools)} pools)"

    # ------------------------------------------------------------------
    # pools
    # ------------------------------------------------------------------

    @staticmethod
    def _sort(token_a: str, token_b: str) -> Tuple[str, str]:
        if token_a == token_b:
            raise LiquidityProvisionFailed(f"IDENTICAL_ADDRESSES: {token_a}")
        return (token_a, token_b) if token_a < token_b else (token_b, token_a)

    def find_pool(self, token_a: str, token_b: str) -> Optional[Pool]:
        return self._pools.get(self._sort(token_a, token_b))

    def create_pair(self, token_a: str, token_b: str) -> Pool:
        """Register the liquidity unit and reserve wallet for a pair (idempotent)."""
        key = self._sort(token_a, token_b)
        if key in self._pools:
            return self._pools[key]
        for symbol in key:
            self.ledger.get_unit(symbol)
        token0, token1 = key
        pool = Pool(
            token0=token0,
            token1=token1,
            symbol=f"LP-{token0}-{token1}",
            wallet=f"{self.name}:pool:{token0}-{token1}",
        )
        if not self.ledger.is_registered(pool.wallet):
            self.ledger.register_wallet(pool.wallet)
        self.ledger.register_unit(create_liquidity_unit(pool.symbol, token0, token1, pool.wallet))
        self._pools[key] = pool
        return pool

    def liquidity_unit(self, token_a: str, token_b: str) -> str:
        pool = self.find_pool(token_a, token_b)
        if pool is None:
            raise LiquidityProvisionFailed(f"No pool for {token_a}/{token_b}")
        return pool.symbol

    def total_liquidity(self, token_a: str, token_b: str) -> int:
        pool = self.find_pool(token_a, token_b)
        if pool is None:
            return 0
        return self.ledger.get_unit_state(pool.symbol)['total_supply']

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_reserves(self, token_a: str, token_b: str) -> Tuple[int, int]:
        pool = self.find_pool(token_a, token_b)
        if pool is None:
            return 0, 0
        return (
            self.ledger.get_balance(pool.wallet, token_a),
            self.ledger.get_balance(pool.wallet, token_b),
        )

    def quote(self, amount_in: int, path: Sequence[str]) -> List[int]:
        """
        Spot-ratio amounts along path (no swap fee).

        Raises:
            InsufficientReserves: If any hop has an empty pool
        """
        if len(path) < 2:
            raise ValueError("path needs at least two tokens")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            reserve_in, reserve_out = self.get_reserves(token_in, token_out)
            if reserve_in <= 0 or reserve_out <= 0:
                raise InsufficientReserves(f"No reserves for {token_in}/{token_out}")
            amounts.append(quote(amounts[-1], reserve_in, reserve_out))
        return amounts

    def get_amounts_out(self, amount_in: int, path: Sequence[str]) -> List[int]:
        """Swap outputs along path, including the 0.3% fee at each hop."""
        if len(path) < 2:
            raise ValueError("path needs at least two tokens")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            reserve_in, reserve_out = self.get_reserves(token_in, token_out)
            if reserve_in <= 0 or reserve_out <= 0:
                raise InsufficientReserves(f"No reserves for {token_in}/{token_out}")
            amounts.append(get_amount_out(amounts[-1], reserve_in, reserve_out))
        return amounts

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def _check_deadline(self, deadline: int) -> None:
        now = to_timestamp(self.ledger.current_time)
        if now > deadline:
            raise LiquidityProvisionFailed(f"EXPIRED: deadline {deadline} < now {now}")

    def _origin(self, event_type: str, symbol: str) -> TransactionOrigin:
        self._nonce += 1
        return TransactionOrigin(
            OriginType.VENUE, f"{self.name}:{self._nonce}",
            unit_symbol=symbol, event_type=event_type,
        )

    def _execute(self, moves: List[Move], changes: List[UnitStateChange], origin: TransactionOrigin) -> None:
        result = self.ledger.execute(build_transaction(self.ledger, moves, changes, origin))
        if result != ExecuteResult.APPLIED:
            raise TransferFailed(f"{origin.event_type} on {origin.unit_symbol} was {result.value}")

    def add_liquidity(
        self, token_a: str, token_b: str,
        amount_a_desired: int, amount_b_desired: int,
        amount_a_min: int, amount_b_min: int,
        sender: str, recipient: str, deadline: int,
    ) -> Tuple[int, int, int]:
        """
        Deposit a matched amount of both tokens and mint liquidity to recipient.

        The pool pulls the tokens out of sender using sender's allowance to
        this venue's wallet. A pool is created on first use.

        Returns:
            (used_a, used_b, liquidity_minted)

        Raises:
            LiquidityProvisionFailed: Expired deadline, amounts below their
                minimums, or nothing to mint
            TransferFailed: If the ledger rejects the deposit (balance or allowance)
        """
        self._check_deadline(deadline)
        if amount_a_desired <= 0 or amount_b_desired <= 0:
            raise LiquidityProvisionFailed("INSUFFICIENT_INPUT_AMOUNT")
        pool = self.create_pair(token_a, token_b)
        reserve_a, reserve_b = self.get_reserves(token_a, token_b)
        used_a, used_b = optimal_amounts(
            amount_a_desired, amount_b_desired, amount_a_min, amount_b_min,
            reserve_a, reserve_b,
        )

        state = self.ledger.get_unit_state(pool.symbol)
        supply = state['total_supply']
        minted = liquidity_to_mint(used_a, used_b, reserve_a, reserve_b, supply)
        locked = MINIMUM_LIQUIDITY if supply == 0 else 0
        liquidity = minted - locked
        if liquidity <= 0:
            raise LiquidityProvisionFailed("INSUFFICIENT_LIQUIDITY_MINTED")

        cid = f"add:{pool.symbol}"
        moves = [
            Move(used_a, token_a, sender, pool.wallet, cid, spender=self.wallet),
            Move(used_b, token_b, sender, pool.wallet, cid, spender=self.wallet),
            Move(liquidity, pool.symbol, SYSTEM_WALLET, recipient, cid),
        ]
        if locked:
            moves.append(Move(locked, pool.symbol, SYSTEM_WALLET, self.lock_wallet, cid))
        new_state = {**state, 'total_supply': supply + minted}
        self._execute(
            moves,
            [UnitStateChange(pool.symbol, state, new_state)],
            self._origin("ADD_LIQUIDITY", pool.symbol),
        )
        return used_a, used_b, liquidity

    def remove_liquidity(
        self, token_a: str, token_b: str, liquidity: int,
        amount_a_min: int, amount_b_min: int,
        sender: str, recipient: str, deadline: int,
    ) -> Tuple[int, int]:
        """
        Burn sender's liquidity and pay its share of both reserves to recipient.

        Returns:
            (out_a, out_b)

        Raises:
            LiquidityProvisionFailed: Expired deadline, unknown pool, nothing to
                burn, or an output below its minimum
            TransferFailed: If the ledger rejects the burn (balance or allowance)
        """
        self._check_deadline(deadline)
        pool = self.find_pool(token_a, token_b)
        if pool is None:
            raise LiquidityProvisionFailed(f"No pool for {token_a}/{token_b}")
        if liquidity <= 0:
            raise LiquidityProvisionFailed("INSUFFICIENT_LIQUIDITY")

        state = self.ledger.get_unit_state(pool.symbol)
        supply = state['total_supply']
        if liquidity > supply:
            raise LiquidityProvisionFailed(f"INSUFFICIENT_LIQUIDITY: {liquidity} > supply {supply}")
        reserve_a, reserve_b = self.get_reserves(token_a, token_b)
        out_a = mul_div(liquidity, reserve_a, supply)
        out_b = mul_div(liquidity, reserve_b, supply)
        if out_a <= 0 or out_b <= 0:
            raise LiquidityProvisionFailed("INSUFFICIENT_LIQUIDITY_BURNED")
        if out_a < amount_a_min:
            raise LiquidityProvisionFailed(f"INSUFFICIENT_A_AMOUNT: {out_a} < {amount_a_min}")
        if out_b < amount_b_min:
            raise LiquidityProvisionFailed(f"INSUFFICIENT_B_AMOUNT: {out_b} < {amount_b_min}")

        cid = f"remove:{pool.symbol}"
        moves = [
            Move(liquidity, pool.symbol, sender, SYSTEM_WALLET, cid, spender=self.wallet),
            Move(out_a, token_a, pool.wallet, recipient, cid),
            Move(out_b, token_b, pool.wallet, recipient, cid),
        ]
        new_state = {**state, 'total_supply': supply - liquidity}
        self._execute(
            moves,
            [UnitStateChange(pool.symbol, state, new_state)],
            self._origin("REMOVE_LIQUIDITY", pool.symbol),
        )
        return out_a, out_b

    def swap_exact_tokens_for_tokens(
        self, amount_in: int, amount_out_min: int, path: Sequence[str],
        sender: str, recipient: str, deadline: int,
    ) -> List[int]:
        """
        Swap an exact input along path; every hop is settled in one transaction.

        Raises:
            LiquidityProvisionFailed: Expired deadline or output below amount_out_min
            TransferFailed: If the ledger rejects the swap
        """
        self._check_deadline(deadline)
        amounts = self.get_amounts_out(amount_in, path)
        if amounts[-1] < amount_out_min:
            raise LiquidityProvisionFailed(
                f"INSUFFICIENT_OUTPUT_AMOUNT: {amounts[-1]} < {amount_out_min}"
            )
        moves = []
        hops = list(zip(path, path[1:]))
        for i, (token_in, token_out) in enumerate(hops):
            pool = self.find_pool(token_in, token_out)
            cid = f"swap:{pool.symbol}"
            if i == 0:
                moves.append(Move(amounts[0], token_in, sender, pool.wallet, cid, spender=self.wallet))
            dest = recipient if i == len(hops) - 1 else self.find_pool(*hops[i + 1]).wallet
            moves.append(Move(amounts[i + 1], token_out, pool.wallet, dest, cid))
        self._execute(moves, [], self._origin("SWAP", path[0]))
        return amounts

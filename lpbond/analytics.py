"""
analytics.py - Release Projections

Vectorised estimates of what a bond returns if the pool price moves while it
is locked. The price ratio is (reward per pairable token at release) /
(reward per pairable token at bond time). Scalars and numpy arrays are both
accepted; arrays broadcast.

These are float projections for reporting only. Settlement always goes
through the integer math in fees.py and amm.py.
"""

import numpy as np
from typing import Tuple, Union

from .fees import FEE_SCALE


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]


def _scalar_or_array(x: np.ndarray) -> Numeric:
    return float(x) if np.ndim(x) == 0 else x


def impermanent_loss(price_ratio: Numeric) -> Numeric:
    """
    Value of a constant-product position relative to holding the deposit.

    IL = 2 * sqrt(r) / (1 + r) - 1, and -1 (total loss) for r <= 0.
    """
    r = np.asarray(price_ratio, dtype=float)
    safe = np.where(r > 0, r, 1.0)
    il = 2.0 * np.sqrt(safe) / (1.0 + safe) - 1.0
    return _scalar_or_array(np.where(r > 0, il, -1.0))


def project_release(
    reward_amount: Numeric,
    principal_amount: Numeric,
    price_ratio: Numeric,
    exit_fee_rate: int = 0,
) -> Tuple[Numeric, Numeric]:
    """
    Estimated (reward_net, principal_net) paid to the account at release.

    The bond's share of the pool keeps its constant product: with deposit
    (R, P) and price ratio r the share becomes (R * sqrt(r), P / sqrt(r)).
    Pool swap fees earned during the lock are ignored. The exit fee is
    applied to both sides as on settlement.

    Args:
        reward_amount: Reward tokens paired into the bond
        principal_amount: Pairable tokens paired into the bond
        price_ratio: Price at release / price at bond time
        exit_fee_rate: Exit fee on the FEE_SCALE scale

    Returns:
        (reward_net, principal_net)
    """
    if not 0 <= exit_fee_rate <= FEE_SCALE:
        raise ValueError(f"exit_fee_rate must be in [0, {FEE_SCALE}], got {exit_fee_rate}")
    r = np.asarray(price_ratio, dtype=float)
    if np.any(r <= 0):
        raise ValueError("price_ratio must be positive")
    root = np.sqrt(r)
    keep = 1.0 - exit_fee_rate / FEE_SCALE
    reward_out = np.asarray(reward_amount, dtype=float) * root * keep
    principal_out = np.asarray(principal_amount, dtype=float) / root * keep
    return _scalar_or_array(reward_out), _scalar_or_array(principal_out)


def release_value(
    reward_amount: Numeric,
    principal_amount: Numeric,
    price_ratio: Numeric,
    exit_fee_rate: int = 0,
) -> Numeric:
    """Projected release value in reward tokens, priced at the new ratio."""
    reward_net, principal_net = project_release(
        reward_amount, principal_amount, price_ratio, exit_fee_rate
    )
    initial_price = np.asarray(reward_amount, dtype=float) / np.asarray(principal_amount, dtype=float)
    new_price = initial_price * np.asarray(price_ratio, dtype=float)
    return _scalar_or_array(np.asarray(reward_net) + np.asarray(principal_net) * new_price)

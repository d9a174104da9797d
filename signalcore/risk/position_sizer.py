"""Position sizing — pure math, no I/O.

Kelly-Criterion sizing bounded by a hard risk cap, then adjusted for the
volatility tier and ATR magnitude.

Formula::

    b          = avg_win / avg_loss
    kelly      = clamp((b × p − q) / b, 0, 0.25)
    base       = min(balance × kelly, balance × max_risk_pct / 100)
    adjusted   = base × tier_multiplier × clamp(2.0 / atr_pct, 0.5, 1.5)
    risk_pct   = min(adjusted / balance × 100, tier_max_risk_pct, 5.0)
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from signalcore.errors import InvalidInputError

logger = logging.getLogger("signalcore.risk")

KELLY_CAP = 0.25
HARD_RISK_CAP_PCT = 5.0
DEFAULT_MAX_RISK_PCT = 2.0

VOLATILITY_SIZE_MULTIPLIERS: dict[str, float] = {
    "LOW": 1.2,
    "MEDIUM": 1.0,
    "HIGH": 0.7,
}


@dataclass(frozen=True)
class PositionSizing:
    """Recommended position for one signal.

    ``recommended_size`` and ``risk_amount`` are in account currency;
    ``units`` is set only when a stop distance was supplied.
    """

    kelly_fraction: float
    recommended_size: float
    risk_amount: float
    risk_percentage_of_account: float
    base_position_size: float = 0.0
    volatility_multiplier: float = 1.0
    atr_multiplier: float = 1.0
    units: Optional[float] = None
    insufficient_statistics: bool = False
    reason: str = ""


def calculate_kelly_fraction(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """Kelly fraction ``(b·p − q) / b`` clamped to ``[0, 0.25]``.

    Raises ``InvalidInputError`` unless ``0 < win_rate < 1`` and both
    averages are positive.
    """
    if not 0.0 < win_rate < 1.0:
        raise InvalidInputError(f"win_rate must be in (0, 1), got {win_rate}")
    if avg_loss <= 0 or avg_win <= 0:
        raise InvalidInputError(
            f"avg_win and avg_loss must be positive, got {avg_win} / {avg_loss}"
        )
    b = avg_win / avg_loss
    p = win_rate
    q = 1.0 - p
    return max(0.0, min(KELLY_CAP, (b * p - q) / b))


def atr_size_multiplier(atr_percentage: float) -> float:
    """Dampener ``clamp(2.0 / atr_pct, 0.5, 1.5)``."""
    return max(0.5, min(1.5, 2.0 / atr_percentage))


def _insufficient(reason: str) -> PositionSizing:
    logger.warning("Position sizing skipped: %s", reason)
    return PositionSizing(
        kelly_fraction=0.0,
        recommended_size=0.0,
        risk_amount=0.0,
        risk_percentage_of_account=0.0,
        insufficient_statistics=True,
        reason=reason,
    )


def size_position(
    win_rate: float,
    avg_win: float,
    avg_loss: float,
    account_balance: float,
    volatility_tier: str,
    atr_percentage: float,
    max_risk_pct: float = DEFAULT_MAX_RISK_PCT,
    stop_distance: Optional[float] = None,
    tier_max_risk_pct: Optional[float] = None,
) -> PositionSizing:
    """Calculate a Kelly-based position size.

    Args:
        win_rate: Historical probability of a winning trade, in (0, 1).
        avg_win: Average winning trade (positive).
        avg_loss: Average losing trade magnitude (positive).
        account_balance: Current account balance (positive).
        volatility_tier: ``"LOW"``, ``"MEDIUM"`` or ``"HIGH"``.
        atr_percentage: ATR as a percentage of price (positive).
        max_risk_pct: Hard per-trade risk cap in percent (e.g. 2.0).
        stop_distance: Optional price distance to the stop; when given,
            ``units = risk_amount / stop_distance``.
        tier_max_risk_pct: Optional ceiling in percent for the volatility
            tier, applied after the tier and ATR multipliers.

    Returns:
        ``PositionSizing``.  Unusable win/loss statistics produce a
        zero-size result with ``insufficient_statistics=True``.

    Raises:
        InvalidInputError: non-positive balance or ATR%, unknown tier,
            max_risk_pct or tier_max_risk_pct outside (0, 5], or non-positive
            stop distance.
    """
    if not (math.isfinite(account_balance) and account_balance > 0):
        raise InvalidInputError(f"account_balance must be positive, got {account_balance}")
    if not (math.isfinite(atr_percentage) and atr_percentage > 0):
        raise InvalidInputError(f"atr_percentage must be positive, got {atr_percentage}")
    if not 0 < max_risk_pct <= HARD_RISK_CAP_PCT:
        raise InvalidInputError(
            f"max_risk_pct must be in (0, {HARD_RISK_CAP_PCT}], got {max_risk_pct}"
        )
    if tier_max_risk_pct is not None and not 0 < tier_max_risk_pct <= HARD_RISK_CAP_PCT:
        raise InvalidInputError(
            f"tier_max_risk_pct must be in (0, {HARD_RISK_CAP_PCT}], got {tier_max_risk_pct}"
        )
    if stop_distance is not None and not stop_distance > 0:
        raise InvalidInputError(f"stop_distance must be positive, got {stop_distance}")
    try:
        vol_mult = VOLATILITY_SIZE_MULTIPLIERS[volatility_tier]
    except KeyError:
        raise InvalidInputError(f"Unknown volatility tier '{volatility_tier}'") from None

    stats = (win_rate, avg_win, avg_loss)
    if not all(math.isfinite(v) for v in stats):
        return _insufficient(f"non-finite statistics {stats}")
    if not 0.0 < win_rate < 1.0:
        return _insufficient(f"win rate {win_rate} outside (0, 1)")
    if avg_loss <= 0 or avg_win <= 0:
        return _insufficient(f"average win/loss {avg_win}/{avg_loss} not positive")

    kelly = calculate_kelly_fraction(win_rate, avg_win, avg_loss)

    kelly_size = account_balance * kelly
    cap_size = account_balance * (max_risk_pct / 100.0)
    base = min(kelly_size, cap_size)

    atr_mult = atr_size_multiplier(atr_percentage)
    adjusted = base * vol_mult * atr_mult

    cap_pct = HARD_RISK_CAP_PCT
    if tier_max_risk_pct is not None:
        cap_pct = min(cap_pct, tier_max_risk_pct)
    hard_cap = account_balance * (cap_pct / 100.0)
    if adjusted > hard_cap:
        logger.info(
            "Adjusted size %.2f exceeds %.1f%% cap for %s tier; capping at %.2f",
            adjusted, cap_pct, volatility_tier, hard_cap,
        )
        adjusted = hard_cap

    risk_pct = adjusted / account_balance * 100.0
    units = adjusted / stop_distance if stop_distance is not None else None

    return PositionSizing(
        kelly_fraction=kelly,
        recommended_size=adjusted,
        risk_amount=adjusted,
        risk_percentage_of_account=risk_pct,
        base_position_size=base,
        volatility_multiplier=vol_mult,
        atr_multiplier=atr_mult,
        units=units,
    )

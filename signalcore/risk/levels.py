"""Stop-loss and take-profit calculation — pure math, no I/O.

Volatility-adaptive approach:
    Each volatility tier has a base (stop multiplier, take-profit
    multiplier, max risk fraction) triple.  A timeframe adjustment that
    grows with bar duration scales both multipliers, so

        SL = entry ∓ ATR × stop_mult × tf_adj
        TP = entry ± ATR × tp_mult × tf_adj

    with the sign chosen by direction.

Levels whose risk/reward falls below the minimum are still returned,
flagged as not actionable with the reason attached.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional

from signalcore.errors import ComputationInvariantViolation, InvalidInputError
from signalcore.indicators.models import TIMEFRAME_DURATIONS_MS
from signalcore.indicators.volatility import VOLATILITY_TIERS, atr_percentage

logger = logging.getLogger("signalcore.risk")

DEFAULT_MIN_RISK_REWARD = 1.5
ATR_PCT_REASONABLE_RANGE = (0.1, 10.0)


@dataclass(frozen=True)
class TierParameters:
    """Base multipliers and risk cap for one volatility tier."""

    stop_multiplier: float
    take_profit_multiplier: float
    max_risk_fraction: float

    def __post_init__(self) -> None:
        if self.stop_multiplier <= 0 or self.take_profit_multiplier <= 0:
            raise InvalidInputError(
                f"Tier multipliers must be positive, got {self.stop_multiplier}"
                f"/{self.take_profit_multiplier}"
            )
        if not 0 < self.max_risk_fraction <= 0.05:
            raise InvalidInputError(
                f"max_risk_fraction must be in (0, 0.05], got {self.max_risk_fraction}"
            )


DEFAULT_TIER_PARAMETERS: dict[str, TierParameters] = {
    "LOW": TierParameters(stop_multiplier=1.5, take_profit_multiplier=2.0, max_risk_fraction=0.02),
    "MEDIUM": TierParameters(stop_multiplier=2.0, take_profit_multiplier=2.5, max_risk_fraction=0.015),
    "HIGH": TierParameters(stop_multiplier=2.5, take_profit_multiplier=3.0, max_risk_fraction=0.01),
}

DEFAULT_TIMEFRAME_ADJUSTMENTS: dict[str, float] = {
    "1m": 0.6,
    "5m": 0.7,
    "15m": 0.8,
    "30m": 0.9,
    "1h": 1.0,
    "4h": 1.1,
    "1d": 1.2,
    "3d": 1.3,
    "1w": 1.4,
    "1M": 1.5,
}


@dataclass(frozen=True)
class RiskParameters:
    """Calibration tables for :func:`compute_levels`."""

    tier_parameters: Mapping[str, TierParameters] = field(
        default_factory=lambda: dict(DEFAULT_TIER_PARAMETERS)
    )
    timeframe_adjustments: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TIMEFRAME_ADJUSTMENTS)
    )
    min_risk_reward: float = DEFAULT_MIN_RISK_REWARD

    def __post_init__(self) -> None:
        for name in ("tier_parameters", "timeframe_adjustments"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        missing = set(VOLATILITY_TIERS) - set(self.tier_parameters)
        if missing:
            raise InvalidInputError(f"Missing tier parameters for {sorted(missing)}")
        unknown = set(self.timeframe_adjustments) - set(TIMEFRAME_DURATIONS_MS)
        if unknown:
            raise InvalidInputError(f"Unknown timeframe(s) in adjustments: {sorted(unknown)}")
        if any(v <= 0 for v in self.timeframe_adjustments.values()):
            raise InvalidInputError("Timeframe adjustments must be positive")
        ordered = [
            self.timeframe_adjustments[tf]
            for tf in TIMEFRAME_DURATIONS_MS
            if tf in self.timeframe_adjustments
        ]
        if any(b < a for a, b in zip(ordered, ordered[1:])):
            raise InvalidInputError(
                "Timeframe adjustments must not decrease with timeframe duration"
            )

    def timeframe_adjustment(self, timeframe: str) -> float:
        try:
            return self.timeframe_adjustments[timeframe]
        except KeyError:
            raise InvalidInputError(
                f"No timeframe adjustment for '{timeframe}'"
            ) from None

    def tier(self, volatility_tier: str) -> TierParameters:
        try:
            return self.tier_parameters[volatility_tier]
        except KeyError:
            raise InvalidInputError(
                f"Unknown volatility tier '{volatility_tier}'"
            ) from None


@dataclass(frozen=True)
class LevelValidation:
    """Actionability checks for a computed level set."""

    stop_loss_valid: bool
    take_profit_valid: bool
    risk_reward_acceptable: bool
    atr_reasonable: bool
    levels_logical: bool
    reasons: tuple[str, ...] = ()

    @property
    def actionable(self) -> bool:
        return (
            self.stop_loss_valid
            and self.take_profit_valid
            and self.risk_reward_acceptable
            and self.atr_reasonable
            and self.levels_logical
        )


@dataclass(frozen=True)
class RiskLevels:
    """Computed stop-loss and take-profit for a directional signal."""

    entry_price: float
    direction: str
    stop_loss: float
    take_profit: float
    stop_distance: float
    take_profit_distance: float
    risk_reward_ratio: float
    volatility_tier: str
    atr_percentage: float
    max_risk_fraction: float
    validation: Optional[LevelValidation] = None

    @property
    def actionable(self) -> bool:
        return self.validation is not None and self.validation.actionable


def calculate_risk_reward(
    entry_price: float,
    stop_loss: float,
    take_profit: float,
    direction: str,
) -> float:
    """Reward / risk from signed distances consistent with *direction*.

    A non-positive risk or negative reward means a level sits on the wrong
    side of entry, which is raised as ``ComputationInvariantViolation``.
    """
    if direction == "LONG":
        risk = entry_price - stop_loss
        reward = take_profit - entry_price
    elif direction == "SHORT":
        risk = stop_loss - entry_price
        reward = entry_price - take_profit
    else:
        raise InvalidInputError(f"direction must be 'LONG' or 'SHORT', got '{direction}'")

    if not (risk > 0 and reward >= 0):
        logger.error(
            "Levels on wrong side of entry: entry=%r sl=%r tp=%r dir=%s",
            entry_price, stop_loss, take_profit, direction,
        )
        raise ComputationInvariantViolation(
            f"Undefined or negative risk/reward: risk={risk}, reward={reward}"
        )
    return reward / risk


def validate_levels(
    levels: RiskLevels,
    min_risk_reward: float = DEFAULT_MIN_RISK_REWARD,
) -> LevelValidation:
    """Check a level set for actionability, collecting every failure reason."""
    reasons: list[str] = []

    sl_valid = levels.stop_loss > 0
    if not sl_valid:
        reasons.append(f"stop loss {levels.stop_loss:.8g} is not a positive price")
    tp_valid = levels.take_profit > 0
    if not tp_valid:
        reasons.append(f"take profit {levels.take_profit:.8g} is not a positive price")

    rr_ok = levels.risk_reward_ratio >= min_risk_reward
    if not rr_ok:
        reasons.append(
            f"risk/reward {levels.risk_reward_ratio:.2f} below minimum {min_risk_reward:.2f}"
        )

    low, high = ATR_PCT_REASONABLE_RANGE
    atr_ok = low <= levels.atr_percentage <= high
    if not atr_ok:
        reasons.append(
            f"ATR {levels.atr_percentage:.2f}% outside [{low}, {high}]%"
        )

    if levels.direction == "LONG":
        logical = levels.stop_loss < levels.entry_price < levels.take_profit
    else:
        logical = levels.take_profit < levels.entry_price < levels.stop_loss
    if not logical:
        reasons.append("levels are not on the correct sides of entry")

    return LevelValidation(
        stop_loss_valid=sl_valid,
        take_profit_valid=tp_valid,
        risk_reward_acceptable=rr_ok,
        atr_reasonable=atr_ok,
        levels_logical=logical,
        reasons=tuple(reasons),
    )


def compute_levels(
    entry_price: float,
    atr: float,
    direction: str,
    volatility_tier: str,
    timeframe: str,
    params: Optional[RiskParameters] = None,
) -> RiskLevels:
    """Calculate volatility-adaptive stop-loss and take-profit levels.

    Args:
        entry_price: Signal entry price.
        atr: Current ATR value (same units as price).
        direction: ``"LONG"`` or ``"SHORT"``.
        volatility_tier: ``"LOW"``, ``"MEDIUM"`` or ``"HIGH"``.
        timeframe: Bar timeframe, e.g. ``"1h"``.
        params: Calibration tables (defaults when omitted).

    Returns:
        ``RiskLevels`` with a ``LevelValidation`` attached.  Levels that
        fail validation are logged and returned, never dropped.

    Raises:
        InvalidInputError: NEUTRAL/unknown direction, non-positive or
            non-finite entry/ATR, unknown tier or timeframe.
        ComputationInvariantViolation: a level ends up on the wrong side.
    """
    params = params or RiskParameters()
    if direction not in ("LONG", "SHORT"):
        raise InvalidInputError(f"direction must be 'LONG' or 'SHORT', got '{direction}'")
    if not (math.isfinite(entry_price) and entry_price > 0):
        raise InvalidInputError(f"entry_price must be positive, got {entry_price}")
    if not (math.isfinite(atr) and atr > 0):
        raise InvalidInputError(f"atr must be positive, got {atr}")

    tier = params.tier(volatility_tier)
    tf_adj = params.timeframe_adjustment(timeframe)

    stop_dist = atr * tier.stop_multiplier * tf_adj
    tp_dist = atr * tier.take_profit_multiplier * tf_adj

    if direction == "LONG":
        stop_loss = entry_price - stop_dist
        take_profit = entry_price + tp_dist
    else:
        stop_loss = entry_price + stop_dist
        take_profit = entry_price - tp_dist

    rr = calculate_risk_reward(entry_price, stop_loss, take_profit, direction)

    levels = RiskLevels(
        entry_price=entry_price,
        direction=direction,
        stop_loss=stop_loss,
        take_profit=take_profit,
        stop_distance=stop_dist,
        take_profit_distance=tp_dist,
        risk_reward_ratio=rr,
        volatility_tier=volatility_tier,
        atr_percentage=atr_percentage(atr, entry_price),
        max_risk_fraction=tier.max_risk_fraction,
    )
    validation = validate_levels(levels, params.min_risk_reward)
    if not validation.actionable:
        logger.warning(
            "Levels not actionable (%s %s @ %.8g): %s",
            direction, timeframe, entry_price, "; ".join(validation.reasons),
        )
    return replace(levels, validation=validation)

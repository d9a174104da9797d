"""Volatility tier classification from ATR as a percentage of price."""

import logging
import math
from typing import Literal

from signalcore.errors import ComputationInvariantViolation

logger = logging.getLogger("signalcore.indicators")

VolatilityTier = Literal["LOW", "MEDIUM", "HIGH"]

VOLATILITY_TIERS: tuple[str, ...] = ("LOW", "MEDIUM", "HIGH")

LOW_TIER_MAX_PCT = 1.5
MEDIUM_TIER_MAX_PCT = 3.0


def atr_percentage(atr: float, current_price: float) -> float:
    """Return ``100 × atr / current_price``.

    Non-finite input or a non-positive price is a fatal error: upstream
    validation should have made it impossible.
    """
    if not (math.isfinite(atr) and math.isfinite(current_price)) or current_price <= 0:
        logger.error("Cannot derive ATR%% from atr=%r price=%r", atr, current_price)
        raise ComputationInvariantViolation(
            f"ATR percentage undefined for atr={atr}, price={current_price}"
        )
    return 100.0 * atr / current_price


def classify_volatility(atr: float, current_price: float) -> VolatilityTier:
    """Classify volatility: ``<1.5%`` LOW, ``1.5–3.0%`` MEDIUM, ``>3.0%`` HIGH."""
    pct = atr_percentage(atr, current_price)
    if pct < LOW_TIER_MAX_PCT:
        return "LOW"
    if pct <= MEDIUM_TIER_MAX_PCT:
        return "MEDIUM"
    return "HIGH"

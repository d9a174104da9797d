"""Confluence scoring — pure functions, no I/O.

Each category (trend, momentum, volume) casts a vote in [-1, 1].  The
weighted mean of the votes is the confluence; its sign decides direction
and its magnitude decides confidence.  Pattern findings do not vote:
they scale confidence up when they agree with the direction and down
when they disagree, so correlated evidence is not counted twice.

Confidence depends only on the numeric inputs.  The symbol and
timeframe labels are carried through, never hashed or seeded from.
"""

import logging
import math
from typing import Optional, Sequence

from signalcore.errors import InvalidInputError
from signalcore.indicators.models import IndicatorSet, VolumeConfirmation
from signalcore.signals.models import (
    PATTERN_DIRECTION_SIGNS,
    PATTERN_STRENGTH_VALUES,
    CategoryVotes,
    Direction,
    PatternFinding,
    Signal,
)
from signalcore.signals.weights import ScoringWeights

logger = logging.getLogger("signalcore.signals")


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# ── Category votes ───────────────────────────────────────────────────────


def trend_vote(ind: IndicatorSet) -> float:
    """Trend vote from MACD (scaled by ATR) and the close's Bollinger position."""
    scale = ind.atr if ind.atr > 0 else abs(ind.close) * 1e-6
    macd_line = math.tanh(ind.macd.line / scale)
    macd_hist = math.tanh(ind.macd.histogram / scale)

    half_width = ind.bollinger.upper - ind.bollinger.middle
    band_position = _clamp((ind.close - ind.bollinger.middle) / half_width)

    return _clamp((macd_line + macd_hist + band_position) / 3.0)


def momentum_vote(ind: IndicatorSet) -> float:
    """Momentum vote from RSI and Stochastic centred at 50, plus the %K−%D spread."""
    rsi = (ind.rsi - 50.0) / 50.0
    stoch = (ind.stochastic.k - 50.0) / 50.0
    spread = _clamp((ind.stochastic.k - ind.stochastic.d) / 20.0)
    return _clamp(0.45 * rsi + 0.35 * stoch + 0.20 * spread)


def pattern_bias(findings: Sequence[PatternFinding]) -> float:
    """Strength-weighted mean direction of *findings*, in [-1, 1]."""
    if not findings:
        return 0.0
    total = 0.0
    for f in findings:
        try:
            strength = PATTERN_STRENGTH_VALUES[f.strength]
            sign = PATTERN_DIRECTION_SIGNS[f.direction]
        except KeyError:
            raise InvalidInputError(f"Malformed pattern finding: {f}") from None
        total += strength * sign
    return _clamp(total / len(findings))


def pattern_multiplier(
    findings: Sequence[PatternFinding],
    confluence: float,
    direction: Direction,
    influence: float,
) -> float:
    """Confidence multiplier: >1 when patterns confirm, <1 when they contradict."""
    if direction == "NEUTRAL" or not findings:
        return 1.0
    agreement = pattern_bias(findings) * math.copysign(1.0, confluence)
    return 1.0 + influence * agreement


# ── Scorer ───────────────────────────────────────────────────────────────


def score_signal(
    symbol: str,
    timeframe: str,
    indicators: IndicatorSet,
    patterns: Optional[Sequence[PatternFinding]] = None,
    volume: Optional[VolumeConfirmation] = None,
    weights: Optional[ScoringWeights] = None,
) -> Signal:
    """Combine indicator, volume and pattern evidence into a ``Signal``.

    Confluence = Σ(vote × weight) / Σ(weight) over the trend, momentum and
    volume categories, with category weights looked up per timeframe.
    ``|confluence| < neutral_threshold`` → NEUTRAL.  Confidence is
    ``50 + 50 × |confluence|`` scaled by the pattern multiplier and
    clamped to [0, 100].

    Raises ``InvalidInputError`` for a timeframe without weights.
    """
    weights = weights or ScoringWeights()
    findings = tuple(patterns or ())
    cat = weights.for_timeframe(timeframe)

    votes = CategoryVotes(
        trend=trend_vote(indicators),
        momentum=momentum_vote(indicators),
        volume=volume.vote if volume is not None else 0.0,
    )

    confluence = (
        votes.trend * cat.trend
        + votes.momentum * cat.momentum
        + votes.volume * cat.volume
    ) / cat.total

    direction: Direction
    if abs(confluence) < weights.neutral_threshold:
        direction = "NEUTRAL"
    elif confluence > 0:
        direction = "LONG"
    else:
        direction = "SHORT"

    multiplier = pattern_multiplier(
        findings, confluence, direction, weights.pattern_influence
    )
    confidence = max(0.0, min(100.0, (50.0 + 50.0 * abs(confluence)) * multiplier))

    logger.debug(
        "%s %s: votes=%s confluence=%.4f → %s (%.1f%%, patterns ×%.3f)",
        symbol, timeframe, votes, confluence, direction, confidence, multiplier,
    )

    return Signal(
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        confidence=confidence,
        entry_price=indicators.close,
        indicator_snapshot=indicators,
        pattern_contribution=multiplier,
        confluence=confluence,
        category_votes=votes,
        weights_version=weights.version,
        created_at=indicators.timestamp,
        patterns=findings,
    )

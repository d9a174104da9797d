"""Signal data models — typed representations for scorer inputs and outputs."""

from dataclasses import dataclass, field
from typing import Literal

from signalcore.indicators.models import IndicatorSet

Direction = Literal["LONG", "SHORT", "NEUTRAL"]
PatternStrength = Literal["WEAK", "MODERATE", "STRONG"]
PatternDirection = Literal["bullish", "bearish", "neutral"]

PATTERN_STRENGTH_VALUES: dict[str, float] = {
    "WEAK": 1.0 / 3.0,
    "MODERATE": 2.0 / 3.0,
    "STRONG": 1.0,
}

PATTERN_DIRECTION_SIGNS: dict[str, int] = {
    "bullish": 1,
    "bearish": -1,
    "neutral": 0,
}


@dataclass(frozen=True)
class PatternFinding:
    """One finding reported by the external pattern detector."""

    type: str
    category: str
    strength: PatternStrength
    direction: PatternDirection


@dataclass(frozen=True)
class CategoryVotes:
    """Normalised per-category votes, each in [-1, 1] (bearish → bullish)."""

    trend: float
    momentum: float
    volume: float


@dataclass(frozen=True)
class Signal:
    """A directional signal for one evaluation cycle.

    Never mutated: a newer evaluation produces a new ``Signal``.
    ``created_at`` is the timestamp of the bar the signal was computed on.
    """

    symbol: str
    timeframe: str
    direction: Direction
    confidence: float
    entry_price: float
    indicator_snapshot: IndicatorSet
    pattern_contribution: float  # confidence multiplier applied by patterns
    confluence: float
    category_votes: CategoryVotes
    weights_version: int
    created_at: int
    patterns: tuple[PatternFinding, ...] = field(default_factory=tuple)

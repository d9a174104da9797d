"""Scoring weights — versioned, immutable configuration for the confluence scorer.

Weights change only by publishing a new ``ScoringWeights`` version; the
scorer never reads global mutable state.  ``AdaptiveWeightManager`` is the
single writer per symbol for outcome-driven adjustments.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterable, Mapping

from signalcore.errors import InvalidInputError
from signalcore.indicators.models import TIMEFRAME_DURATIONS_MS

logger = logging.getLogger("signalcore.signals")

CATEGORIES: tuple[str, ...] = ("trend", "momentum", "volume")


@dataclass(frozen=True)
class CategoryWeights:
    """Relative weight of each voting category for one timeframe."""

    trend: float
    momentum: float
    volume: float

    def __post_init__(self) -> None:
        for name in CATEGORIES:
            value = getattr(self, name)
            if value < 0:
                raise InvalidInputError(f"{name} weight must be non-negative, got {value}")
        if self.total <= 0:
            raise InvalidInputError("At least one category weight must be positive")

    @property
    def total(self) -> float:
        return self.trend + self.momentum + self.volume

    def normalised(self) -> CategoryWeights:
        total = self.total
        return CategoryWeights(
            trend=self.trend / total,
            momentum=self.momentum / total,
            volume=self.volume / total,
        )


# Shorter timeframes lean on momentum, longer ones on trend.
DEFAULT_CATEGORY_WEIGHTS: dict[str, CategoryWeights] = {
    "1m": CategoryWeights(trend=0.25, momentum=0.50, volume=0.25),
    "5m": CategoryWeights(trend=0.30, momentum=0.45, volume=0.25),
    "15m": CategoryWeights(trend=0.35, momentum=0.40, volume=0.25),
    "30m": CategoryWeights(trend=0.40, momentum=0.35, volume=0.25),
    "1h": CategoryWeights(trend=0.45, momentum=0.35, volume=0.20),
    "4h": CategoryWeights(trend=0.50, momentum=0.30, volume=0.20),
    "1d": CategoryWeights(trend=0.55, momentum=0.25, volume=0.20),
    "3d": CategoryWeights(trend=0.60, momentum=0.22, volume=0.18),
    "1w": CategoryWeights(trend=0.62, momentum=0.20, volume=0.18),
    "1M": CategoryWeights(trend=0.65, momentum=0.18, volume=0.17),
}


@dataclass(frozen=True)
class ScoringWeights:
    """Versioned weight table consumed by :func:`score_signal`."""

    version: int = 1
    category_weights: Mapping[str, CategoryWeights] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_WEIGHTS)
    )
    neutral_threshold: float = 0.1
    pattern_influence: float = 0.2

    def __post_init__(self) -> None:
        table = MappingProxyType(dict(self.category_weights))
        object.__setattr__(self, "category_weights", table)
        unknown = set(self.category_weights) - set(TIMEFRAME_DURATIONS_MS)
        if unknown:
            raise InvalidInputError(f"Unknown timeframe(s) in weights: {sorted(unknown)}")
        if not 0.0 <= self.neutral_threshold < 1.0:
            raise InvalidInputError(
                f"neutral_threshold must be in [0, 1), got {self.neutral_threshold}"
            )
        if not 0.0 <= self.pattern_influence <= 1.0:
            raise InvalidInputError(
                f"pattern_influence must be in [0, 1], got {self.pattern_influence}"
            )

    def for_timeframe(self, timeframe: str) -> CategoryWeights:
        """Return the category weights for *timeframe*.

        Raises ``InvalidInputError`` when the timeframe has no entry.
        """
        try:
            return self.category_weights[timeframe]
        except KeyError:
            raise InvalidInputError(
                f"No category weights for timeframe '{timeframe}'"
            ) from None

    def with_timeframe(self, timeframe: str, weights: CategoryWeights) -> ScoringWeights:
        """Return the next version with *timeframe* re-weighted."""
        table = dict(self.category_weights)
        table[timeframe] = weights
        return replace(self, version=self.version + 1, category_weights=table)


# ── Outcome-driven adaptation ────────────────────────────────────────────


@dataclass(frozen=True)
class SignalOutcome:
    """Result of a closed trade and which categories voted for it."""

    success: bool
    category_votes: dict[str, float]


class AdaptiveWeightManager:
    """Per-symbol weight versions adjusted from trade outcomes.

    Args:
        base: Starting weights for every symbol.
        learning_rate: Each weight is scaled by
            ``1 + 2 × learning_rate × (success_rate − 0.5)``.
        min_weight / max_weight: Bounds for a single category weight.
        min_outcomes: Outcomes needed before any adjustment happens.
        lookback: Only the most recent *lookback* outcomes are considered.
        vote_threshold: A category "contributed" when ``|vote|`` exceeds this.
    """

    def __init__(
        self,
        base: ScoringWeights | None = None,
        learning_rate: float = 0.05,
        min_weight: float = 0.05,
        max_weight: float = 0.8,
        min_outcomes: int = 20,
        lookback: int = 100,
        vote_threshold: float = 0.1,
    ) -> None:
        self._base = base or ScoringWeights()
        self._learning_rate = learning_rate
        self._min_weight = min_weight
        self._max_weight = max_weight
        self._min_outcomes = min_outcomes
        self._lookback = lookback
        self._vote_threshold = vote_threshold
        self._weights: dict[str, ScoringWeights] = {}
        self._history: dict[tuple[str, str], list[SignalOutcome]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(symbol, threading.Lock())

    def current(self, symbol: str) -> ScoringWeights:
        """Immutable snapshot of the weights in force for *symbol*."""
        return self._weights.get(symbol, self._base)

    def record_outcomes(
        self,
        symbol: str,
        timeframe: str,
        outcomes: Iterable[SignalOutcome],
    ) -> ScoringWeights:
        """Record *outcomes* and publish a new weights version when warranted.

        Returns the weights in force after the update.
        """
        with self._lock_for(symbol):
            key = (symbol, timeframe)
            history = self._history.setdefault(key, [])
            history.extend(outcomes)
            del history[: -self._lookback]

            current = self.current(symbol)
            if len(history) < self._min_outcomes:
                return current

            old = current.for_timeframe(timeframe)
            adjusted = {}
            for name in CATEGORIES:
                rate = self._success_rate(history, name)
                value = getattr(old, name) * (1.0 + self._learning_rate * (rate - 0.5) * 2.0)
                adjusted[name] = min(self._max_weight, max(self._min_weight, value))
            new_weights = CategoryWeights(**adjusted).normalised()

            updated = current.with_timeframe(timeframe, new_weights)
            self._weights[symbol] = updated
            logger.info(
                "Weights for %s %s → v%d (trend=%.3f momentum=%.3f volume=%.3f)",
                symbol, timeframe, updated.version,
                new_weights.trend, new_weights.momentum, new_weights.volume,
            )
            return updated

    def _success_rate(self, history: list[SignalOutcome], category: str) -> float:
        relevant = [
            o for o in history
            if abs(o.category_votes.get(category, 0.0)) > self._vote_threshold
        ]
        if not relevant:
            return 0.5
        return sum(1 for o in relevant if o.success) / len(relevant)

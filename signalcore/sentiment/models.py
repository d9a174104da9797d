"""Sentiment data models and the sentiment-feed collaborator protocol."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Sequence, runtime_checkable

from signalcore.errors import InvalidInputError

SentimentTrend = Literal["bullish", "bearish", "neutral"]
CorrelationStatus = Literal["ok", "insufficient_data"]

TREND_THRESHOLD = 0.1


def classify_trend(overall: float) -> SentimentTrend:
    """``> 0.1`` bullish, ``< -0.1`` bearish, otherwise neutral."""
    if overall > TREND_THRESHOLD:
        return "bullish"
    if overall < -TREND_THRESHOLD:
        return "bearish"
    return "neutral"


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not (math.isfinite(value) and low <= value <= high):
        raise InvalidInputError(f"{name} must be in [{low}, {high}], got {value}")


@dataclass(frozen=True)
class SentimentScore:
    """One aggregated sentiment sample.

    ``overall``, ``news`` and ``social`` lie in [-1, 1]; ``confidence`` in
    [0, 1].  ``timestamp`` is epoch milliseconds.
    """

    overall: float
    news: float
    social: float
    confidence: float
    source_count: int
    trend: SentimentTrend
    timestamp: int

    def __post_init__(self) -> None:
        _check_range("overall", self.overall, -1.0, 1.0)
        _check_range("news", self.news, -1.0, 1.0)
        _check_range("social", self.social, -1.0, 1.0)
        _check_range("confidence", self.confidence, 0.0, 1.0)
        if self.source_count < 0:
            raise InvalidInputError(f"source_count must be >= 0, got {self.source_count}")
        if self.trend not in ("bullish", "bearish", "neutral"):
            raise InvalidInputError(f"Unknown sentiment trend '{self.trend}'")

    @classmethod
    def from_components(
        cls,
        overall: float,
        timestamp: int,
        news: Optional[float] = None,
        social: Optional[float] = None,
        confidence: float = 1.0,
        source_count: int = 1,
    ) -> SentimentScore:
        """Build a score whose trend is derived from *overall*."""
        return cls(
            overall=overall,
            news=overall if news is None else news,
            social=overall if social is None else social,
            confidence=confidence,
            source_count=source_count,
            trend=classify_trend(overall),
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class CorrelationResult:
    """Sentiment→price correlation for one symbol.

    ``correlation`` is measured at zero lag; ``optimal_lag_ms`` is the
    scanned lag with the largest absolute correlation.
    """

    symbol: str
    correlation: float
    is_leading_indicator: bool
    optimal_lag_ms: int
    confidence_level: float
    sample_count: int
    status: CorrelationStatus
    computed_at: Optional[int]
    lag_correlations: tuple[tuple[int, float], ...] = ()


@runtime_checkable
class SentimentFeed(Protocol):
    """Supplies sentiment samples for a symbol, oldest first."""

    def samples(self, symbol: str) -> Sequence[SentimentScore]:
        ...

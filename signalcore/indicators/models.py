"""Market data and indicator models — typed, immutable representations."""

import math
from dataclasses import dataclass

from signalcore.errors import InvalidInputError


@dataclass(frozen=True)
class OHLCVBar:
    """A single closed OHLCV bar.  ``timestamp`` is epoch milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class MACDValues:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerValues:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class StochasticValues:
    k: float
    d: float


@dataclass(frozen=True)
class IndicatorSet:
    """Latest indicator values derived from one window of bars.

    ``close`` and ``timestamp`` are those of the last bar in the window,
    so downstream consumers never need the raw bars again.

    Raises ``InvalidInputError`` for non-finite values, a non-positive
    close, a negative ATR or Bollinger bands that are not strictly ordered.
    """

    rsi: float
    macd: MACDValues
    bollinger: BollingerValues
    atr: float
    stochastic: StochasticValues
    close: float
    timestamp: int

    def __post_init__(self) -> None:
        values = {
            "rsi": self.rsi,
            "macd.line": self.macd.line,
            "macd.signal": self.macd.signal,
            "macd.histogram": self.macd.histogram,
            "bollinger.upper": self.bollinger.upper,
            "bollinger.middle": self.bollinger.middle,
            "bollinger.lower": self.bollinger.lower,
            "atr": self.atr,
            "stochastic.k": self.stochastic.k,
            "stochastic.d": self.stochastic.d,
            "close": self.close,
        }
        bad = [name for name, value in values.items() if not math.isfinite(value)]
        if bad:
            raise InvalidInputError(f"Non-finite indicator value(s): {', '.join(bad)}")
        if self.close <= 0:
            raise InvalidInputError(f"close must be positive, got {self.close}")
        if self.atr < 0:
            raise InvalidInputError(f"atr must be non-negative, got {self.atr}")
        b = self.bollinger
        if not b.lower < b.middle < b.upper:
            raise InvalidInputError(
                f"Bollinger bands must satisfy lower < middle < upper, "
                f"got {b.lower} / {b.middle} / {b.upper}"
            )


@dataclass(frozen=True)
class VolumeConfirmation:
    """Volume behaviour of the last bar relative to its recent average."""

    volume_ratio: float
    price_direction: int  # +1 up-close, -1 down-close, 0 unchanged

    @property
    def vote(self) -> float:
        """Directional vote in [-1, 1]; below-average volume confirms nothing."""
        strength = max(0.0, min(1.0, self.volume_ratio - 1.0))
        return self.price_direction * strength


# ── Timeframe metadata ───────────────────────────────────────────────────

_MINUTE_MS = 60_000

TIMEFRAME_DURATIONS_MS: dict[str, int] = {
    "1m": _MINUTE_MS,
    "5m": 5 * _MINUTE_MS,
    "15m": 15 * _MINUTE_MS,
    "30m": 30 * _MINUTE_MS,
    "1h": 60 * _MINUTE_MS,
    "4h": 240 * _MINUTE_MS,
    "1d": 1_440 * _MINUTE_MS,
    "3d": 3 * 1_440 * _MINUTE_MS,
    "1w": 7 * 1_440 * _MINUTE_MS,
    "1M": 30 * 1_440 * _MINUTE_MS,
}


def timeframe_duration_ms(timeframe: str) -> int:
    """Return the bar duration of *timeframe* in milliseconds.

    Raises ``InvalidInputError`` for an unsupported timeframe.
    """
    try:
        return TIMEFRAME_DURATIONS_MS[timeframe]
    except KeyError:
        raise InvalidInputError(
            f"Unsupported timeframe '{timeframe}'. "
            f"Available: {', '.join(TIMEFRAME_DURATIONS_MS)}"
        ) from None

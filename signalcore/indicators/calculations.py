"""Technical indicators — RSI, EMA, MACD, Bollinger Bands, ATR, Stochastic.

Pure functions, no I/O, no randomness, no clock.  Series functions return
a list the same length as the input; entries before an indicator is ready
are ``float('nan')``.
"""

import logging
import math
from typing import Optional, Sequence

from signalcore.errors import (
    ComputationInvariantViolation,
    InsufficientDataError,
    InvalidInputError,
)
from signalcore.indicators.models import (
    BollingerValues,
    IndicatorSet,
    MACDValues,
    OHLCVBar,
    StochasticValues,
    VolumeConfirmation,
)

logger = logging.getLogger("signalcore.indicators")


def _require(bars: Sequence, needed: int, label: str) -> None:
    if len(bars) < needed:
        raise InsufficientDataError(
            f"Need at least {needed} bars for {label}, got {len(bars)}"
        )


# ── Input validation ─────────────────────────────────────────────────────


def validate_bars(bars: Sequence[OHLCVBar]) -> None:
    """Check that *bars* form a well-formed, ascending OHLCV series.

    Raises ``InvalidInputError`` on the first violation found:
    non-finite prices, negative volume, ``high``/``low`` not enclosing
    ``open``/``close``, or timestamps that are not strictly ascending.
    """
    prev_ts = None
    for i, bar in enumerate(bars):
        values = (bar.open, bar.high, bar.low, bar.close, bar.volume)
        if not all(math.isfinite(v) for v in values):
            raise InvalidInputError(f"Bar {i} has a non-finite value: {bar}")
        if bar.volume < 0:
            raise InvalidInputError(f"Bar {i} has negative volume {bar.volume}")
        if bar.low <= 0:
            raise InvalidInputError(f"Bar {i} has non-positive low {bar.low}")
        if bar.high < max(bar.open, bar.close) or bar.low > min(bar.open, bar.close):
            raise InvalidInputError(
                f"Bar {i} range [{bar.low}, {bar.high}] does not enclose "
                f"open {bar.open} / close {bar.close}"
            )
        if prev_ts is not None and bar.timestamp <= prev_ts:
            raise InvalidInputError(
                f"Bar {i} timestamp {bar.timestamp} is not after {prev_ts}"
            )
        prev_ts = bar.timestamp


# ── EMA / MACD ───────────────────────────────────────────────────────────


def calculate_ema(values: Sequence[float], period: int) -> list[float]:
    """Exponential Moving Average seeded with the first value.

        ``ema = value × α + ema × (1 − α)``, ``α = 2 / (period + 1)``

    Every entry is defined, including the first.
    """
    if not values:
        raise InsufficientDataError(f"Need at least 1 value for EMA({period}), got 0")
    alpha = 2.0 / (period + 1)
    ema = [float(values[0])]
    for value in values[1:]:
        ema.append(value * alpha + ema[-1] * (1 - alpha))
    return ema


def calculate_macd(
    bars: Sequence[OHLCVBar],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[list[float], list[float], list[float]]:
    """Calculate MACD line, signal line and histogram series.

    MACD line = EMA(fast) − EMA(slow) of closes; signal = EMA(signal) of
    the MACD line; histogram = MACD − signal.

    Requires at least *slow* bars.
    """
    if fast >= slow:
        raise InvalidInputError(f"MACD fast period {fast} must be below slow {slow}")
    _require(bars, slow, f"MACD({fast},{slow},{signal})")

    closes = [b.close for b in bars]
    ema_fast = calculate_ema(closes, fast)
    ema_slow = calculate_ema(closes, slow)
    line = [f - s for f, s in zip(ema_fast, ema_slow)]
    signal_line = calculate_ema(line, signal)
    histogram = [m - s for m, s in zip(line, signal_line)]
    return line, signal_line, histogram


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(bars: Sequence[OHLCVBar], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 - 100 / (1 + avg_gain / avg_loss), or 100 when
           avg_loss is zero.

    Requires at least ``period + 1`` bars.
    """
    _require(bars, period + 1, f"RSI({period})")

    closes = [b.close for b in bars]
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]

    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    rsi: list[float] = [float("nan")] * len(bars)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    def _rsi_from_avgs(ag: float, al: float) -> float:
        if al == 0:
            return 100.0
        return 100.0 - 100.0 / (1.0 + ag / al)

    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # deltas are offset by one bar
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi


# ── Bollinger Bands ──────────────────────────────────────────────────────


def calculate_bollinger(
    bars: Sequence[OHLCVBar],
    period: int = 20,
    std_dev: float = 2.0,
    check_last: Optional[int] = None,
) -> tuple[list[float], list[float], list[float]]:
    """Calculate Bollinger Bands.

    Middle = SMA(close, *period*)
    Upper  = middle + *std_dev* × σ   (population σ over the same window)
    Lower  = middle − *std_dev* × σ

    Requires at least *period* bars.  Checked points must satisfy
    ``lower < middle < upper``; a zero-width band raises
    ``ComputationInvariantViolation``.  By default every point is checked;
    with *check_last* only that many trailing points are.

    Returns ``(upper, middle, lower)``.
    """
    _require(bars, period, f"Bollinger({period})")
    if check_last is not None and check_last < 1:
        raise InvalidInputError(f"check_last must be >= 1, got {check_last}")

    closes = [b.close for b in bars]
    n = len(closes)
    first_checked = 0 if check_last is None else n - check_last

    upper: list[float] = [float("nan")] * n
    middle: list[float] = [float("nan")] * n
    lower: list[float] = [float("nan")] * n

    for i in range(period - 1, n):
        window = closes[i - period + 1 : i + 1]
        sma = sum(window) / period
        variance = sum((x - sma) ** 2 for x in window) / period
        sigma = math.sqrt(variance)

        middle[i] = sma
        upper[i] = sma + std_dev * sigma
        lower[i] = sma - std_dev * sigma

        if i >= first_checked and not lower[i] < middle[i] < upper[i]:
            logger.error(
                "Bollinger ordering broken at bar %d: lower=%r middle=%r upper=%r",
                i, lower[i], middle[i], upper[i],
            )
            raise ComputationInvariantViolation(
                f"Bollinger bands out of order at bar {i}: "
                f"lower={lower[i]} middle={middle[i]} upper={upper[i]}"
            )

    return upper, middle, lower


# ── ATR ──────────────────────────────────────────────────────────────────


def true_ranges(bars: Sequence[OHLCVBar]) -> list[float]:
    """TR = max(high - low, |high - prev_close|, |low - prev_close|), one per bar after the first."""
    result: list[float] = []
    for i in range(1, len(bars)):
        high = bars[i].high
        low = bars[i].low
        prev_close = bars[i - 1].close
        result.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))
    return result


def calculate_atr(bars: Sequence[OHLCVBar], period: int = 14) -> list[float]:
    """Calculate the Average True Range series.

    The seed is the mean of the first ``period − 1`` true ranges; later
    values use Wilder's smoothing ``atr = (atr × (period-1) + tr) / period``.

    Requires at least ``period + 1`` bars.
    """
    if period < 2:
        raise InvalidInputError(f"ATR period must be at least 2, got {period}")
    _require(bars, period + 1, f"ATR({period})")

    trs = true_ranges(bars)
    atr: list[float] = [float("nan")] * len(bars)

    seed_count = period - 1
    value = sum(trs[:seed_count]) / seed_count
    # trs[j] belongs to bar j + 1
    atr[seed_count] = value
    for j in range(seed_count, len(trs)):
        value = (value * (period - 1) + trs[j]) / period
        atr[j + 1] = value

    return atr


# ── Stochastic ───────────────────────────────────────────────────────────


def calculate_stochastic(
    bars: Sequence[OHLCVBar],
    k_period: int = 14,
    d_period: int = 3,
) -> tuple[list[float], list[float]]:
    """Calculate the Stochastic oscillator.

    %K = 100 × (close − lowest low) / (highest high − lowest low) over
    *k_period* bars; a window with no range reads 50.  %D is the simple
    average of the last *d_period* %K values.

    Requires at least ``k_period + d_period − 1`` bars.
    """
    _require(bars, k_period + d_period - 1, f"Stochastic({k_period},{d_period})")

    n = len(bars)
    k_values: list[float] = [float("nan")] * n
    d_values: list[float] = [float("nan")] * n

    for i in range(k_period - 1, n):
        window = bars[i - k_period + 1 : i + 1]
        lowest = min(b.low for b in window)
        highest = max(b.high for b in window)
        span = highest - lowest
        if span == 0:
            k_values[i] = 50.0
        else:
            k_values[i] = 100.0 * (bars[i].close - lowest) / span

    for i in range(k_period + d_period - 2, n):
        recent = k_values[i - d_period + 1 : i + 1]
        d_values[i] = sum(recent) / d_period

    return k_values, d_values


# ── Volume / returns ─────────────────────────────────────────────────────


def calculate_volume_confirmation(
    bars: Sequence[OHLCVBar],
    period: int = 20,
) -> VolumeConfirmation:
    """Compare the last bar's volume with the mean of the previous *period*.

    Requires at least ``period + 1`` bars.  A zero average volume means
    volume carries no information and yields a ratio of 1.0.
    """
    _require(bars, period + 1, f"volume confirmation({period})")

    previous = bars[-period - 1 : -1]
    average = sum(b.volume for b in previous) / period
    ratio = bars[-1].volume / average if average > 0 else 1.0

    change = bars[-1].close - bars[-2].close
    direction = 1 if change > 0 else -1 if change < 0 else 0
    return VolumeConfirmation(volume_ratio=ratio, price_direction=direction)


def log_returns(bars: Sequence[OHLCVBar]) -> list[float]:
    """Close-to-close natural log returns (one fewer than *bars*)."""
    return [
        math.log(bars[i].close / bars[i - 1].close) for i in range(1, len(bars))
    ]


# ── Indicator engine ─────────────────────────────────────────────────────


def required_bars(
    rsi_period: int = 14,
    macd_slow: int = 26,
    bollinger_period: int = 20,
    atr_period: int = 14,
    stoch_k: int = 14,
    stoch_d: int = 3,
) -> int:
    """Minimum window length for :func:`compute_indicator_set`."""
    return max(
        rsi_period + 1,
        macd_slow,
        bollinger_period,
        atr_period + 1,
        stoch_k + stoch_d - 1,
    )


def compute_indicator_set(
    bars: Sequence[OHLCVBar],
    rsi_period: int = 14,
    macd_fast: int = 12,
    macd_slow: int = 26,
    macd_signal: int = 9,
    bollinger_period: int = 20,
    bollinger_k: float = 2.0,
    atr_period: int = 14,
    stoch_k: int = 14,
    stoch_d: int = 3,
) -> IndicatorSet:
    """Validate *bars* and compute the latest value of every indicator.

    Raises ``InsufficientDataError`` when the window is shorter than any
    indicator needs, ``InvalidInputError`` for malformed bars and
    ``ComputationInvariantViolation`` when a computed value breaks its
    range invariant.
    """
    validate_bars(bars)

    rsi = calculate_rsi(bars, rsi_period)[-1]
    line, signal, histogram = calculate_macd(bars, macd_fast, macd_slow, macd_signal)
    upper, middle, lower = calculate_bollinger(bars, bollinger_period, bollinger_k, check_last=1)
    atr = calculate_atr(bars, atr_period)[-1]
    k_values, d_values = calculate_stochastic(bars, stoch_k, stoch_d)

    indicators = IndicatorSet(
        rsi=rsi,
        macd=MACDValues(line=line[-1], signal=signal[-1], histogram=histogram[-1]),
        bollinger=BollingerValues(upper=upper[-1], middle=middle[-1], lower=lower[-1]),
        atr=atr,
        stochastic=StochasticValues(k=k_values[-1], d=d_values[-1]),
        close=bars[-1].close,
        timestamp=bars[-1].timestamp,
    )
    _check_ranges(indicators)
    return indicators


def _check_ranges(ind: IndicatorSet) -> None:
    problems = []
    if not 0.0 <= ind.rsi <= 100.0:
        problems.append(f"rsi={ind.rsi}")
    if not ind.atr >= 0.0:
        problems.append(f"atr={ind.atr}")
    if not 0.0 <= ind.stochastic.k <= 100.0:
        problems.append(f"stochastic.k={ind.stochastic.k}")
    if not 0.0 <= ind.stochastic.d <= 100.0:
        problems.append(f"stochastic.d={ind.stochastic.d}")
    if problems:
        logger.error("Indicator range invariant broken: %s", ", ".join(problems))
        raise ComputationInvariantViolation(
            f"Indicator values out of range: {', '.join(problems)}"
        )

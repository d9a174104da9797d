"""SentimentCorrelationEngine — rolling sentiment vs. forward price return.

For each sentiment sample the nearest price sample within the alignment
window is found, and the price return over the forward horizon is
measured from that point.  Pearson correlation over the aligned pairs is
reported at zero lag; the same alignment is repeated with the sentiment
timestamps shifted forward by each scan lag to find the lag with the
strongest absolute correlation.

Results depend only on the stored histories, so recomputing with an
unchanged history returns an identical ``CorrelationResult``.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from signalcore.errors import InvalidInputError
from signalcore.sentiment.models import CorrelationResult, SentimentFeed, SentimentScore

logger = logging.getLogger("signalcore.sentiment")

MINUTE_MS = 60_000
DEFAULT_LAGS_MS: tuple[int, ...] = (0, 5 * MINUTE_MS, 10 * MINUTE_MS, 15 * MINUTE_MS, 30 * MINUTE_MS)


def pearson_correlation(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson coefficient clamped to [-1, 1]; 0.0 when either side is constant."""
    if x.size != y.size:
        raise InvalidInputError(f"Series lengths differ: {x.size} vs {y.size}")
    if x.size < 2:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = math.sqrt(float(np.dot(dx, dx)) * float(np.dot(dy, dy)))
    if denom == 0:
        return 0.0
    return max(-1.0, min(1.0, float(np.dot(dx, dy)) / denom))


def align_forward_returns(
    sentiment: pd.DataFrame,
    prices: pd.DataFrame,
    window_ms: int,
    horizon_ms: int,
    lag_ms: int = 0,
) -> pd.DataFrame:
    """Pair sentiment samples with the forward price return that follows them.

    Args:
        sentiment: Columns ``timestamp`` (int ms, sorted) and ``sentiment``.
        prices: Columns ``timestamp`` (int ms, sorted) and ``price``.
        window_ms: Maximum distance (inclusive) when matching to a price.
        horizon_ms: Forward return horizon.
        lag_ms: Shift applied to sentiment timestamps before matching.

    Returns:
        DataFrame with ``timestamp``, ``sentiment`` and ``forward_return``.
    """
    if sentiment.empty or prices.empty:
        return pd.DataFrame(columns=["timestamp", "sentiment", "forward_return"])

    left = sentiment.assign(match_ts=sentiment["timestamp"] + lag_ms)
    base = prices.rename(columns={"timestamp": "base_ts", "price": "base_price"})
    start = pd.merge_asof(
        left, base,
        left_on="match_ts", right_on="base_ts",
        direction="nearest", tolerance=window_ms,
    ).dropna(subset=["base_price"])
    if start.empty:
        return pd.DataFrame(columns=["timestamp", "sentiment", "forward_return"])

    start = start.assign(target_ts=start["base_ts"].astype("int64") + horizon_ms)
    start = start.sort_values("target_ts", kind="mergesort")
    future = prices.rename(columns={"timestamp": "future_ts", "price": "future_price"})
    paired = pd.merge_asof(
        start, future,
        left_on="target_ts", right_on="future_ts",
        direction="nearest", tolerance=window_ms,
    ).dropna(subset=["future_price"])

    paired = paired.assign(
        forward_return=(paired["future_price"] - paired["base_price"]) / paired["base_price"]
    )
    return paired[["timestamp", "sentiment", "forward_return"]].reset_index(drop=True)


@dataclass(frozen=True)
class _Snapshot:
    version: int
    sentiment: tuple[tuple[int, float], ...]
    prices: tuple[tuple[int, float], ...]


class SentimentCorrelationEngine:
    """Per-symbol rolling histories and cached correlation results.

    Args:
        capacity: Samples retained per series; oldest are evicted.
        min_samples: Aligned pairs (and samples per series) needed for a result.
        min_lag_samples: Aligned pairs needed for a lag to be considered.
        alignment_window_ms: Price-matching tolerance.
        horizon_ms: Forward return horizon.
        lags_ms: Lags scanned for the leading-indicator test.
    """

    def __init__(
        self,
        capacity: int = 1000,
        min_samples: int = 20,
        min_lag_samples: int = 6,
        alignment_window_ms: int = MINUTE_MS,
        horizon_ms: int = 5 * MINUTE_MS,
        lags_ms: tuple[int, ...] = DEFAULT_LAGS_MS,
    ) -> None:
        if capacity < 1:
            raise InvalidInputError(f"capacity must be >= 1, got {capacity}")
        if min_samples < 2:
            raise InvalidInputError(f"min_samples must be >= 2, got {min_samples}")
        if 0 not in lags_ms or any(lag < 0 for lag in lags_ms):
            raise InvalidInputError(f"lags_ms must include 0 and be non-negative, got {lags_ms}")
        self._capacity = capacity
        self._min_samples = min_samples
        self._min_lag_samples = max(2, min_lag_samples)
        self._window_ms = alignment_window_ms
        self._horizon_ms = horizon_ms
        self._lags_ms = tuple(sorted(set(lags_ms)))
        self._sentiment: dict[str, deque[tuple[int, float]]] = {}
        self._prices: dict[str, deque[tuple[int, float]]] = {}
        self._versions: dict[str, int] = {}
        self._results: dict[str, tuple[int, CorrelationResult]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(symbol, threading.Lock())

    # ── Ingestion ────────────────────────────────────────────────────────

    def add_sentiment(self, symbol: str, score: SentimentScore) -> None:
        """Append a sentiment sample; timestamps must not go backwards."""
        self._append(self._sentiment, symbol, score.timestamp, score.overall, "sentiment")

    def add_price(self, symbol: str, price: float, timestamp: int) -> None:
        """Append a price tick; timestamps must not go backwards."""
        if not (math.isfinite(price) and price > 0):
            raise InvalidInputError(f"price must be positive, got {price}")
        self._append(self._prices, symbol, timestamp, price, "price")

    def ingest_feed(self, symbol: str, feed: SentimentFeed) -> int:
        """Pull new samples from *feed*; returns how many were appended."""
        with self._lock_for(symbol):
            history = self._sentiment.get(symbol)
            last_ts = history[-1][0] if history else None
        added = 0
        for score in feed.samples(symbol):
            if last_ts is not None and score.timestamp <= last_ts:
                continue
            self.add_sentiment(symbol, score)
            last_ts = score.timestamp
            added += 1
        if added:
            logger.debug("Ingested %d sentiment samples for %s", added, symbol)
        return added

    def _append(
        self,
        store: dict[str, deque[tuple[int, float]]],
        symbol: str,
        timestamp: int,
        value: float,
        label: str,
    ) -> None:
        with self._lock_for(symbol):
            history = store.setdefault(symbol, deque(maxlen=self._capacity))
            if history and timestamp < history[-1][0]:
                raise InvalidInputError(
                    f"{label} timestamp {timestamp} for {symbol} precedes last {history[-1][0]}"
                )
            history.append((timestamp, value))
            self._versions[symbol] = self._versions.get(symbol, 0) + 1

    # ── Correlation ──────────────────────────────────────────────────────

    def history_version(self, symbol: str) -> int:
        return self._versions.get(symbol, 0)

    def correlate(self, symbol: str) -> CorrelationResult:
        """Cached result for the current history, recomputing if it changed."""
        cached = self._results.get(symbol)
        if cached is not None and cached[0] == self.history_version(symbol):
            return cached[1]
        return self.refresh(symbol)

    def latest(self, symbol: str) -> Optional[CorrelationResult]:
        """Last cached result, possibly stale, without computing."""
        cached = self._results.get(symbol)
        return cached[1] if cached is not None else None

    def refresh(self, symbol: str) -> CorrelationResult:
        """Recompute from a snapshot of the histories.

        The result is cached only if no sample arrived while computing;
        otherwise it is returned but discarded as stale.
        """
        snap = self._snapshot(symbol)
        result = self._compute(symbol, snap)
        with self._lock_for(symbol):
            if self._versions.get(symbol, 0) == snap.version:
                self._results[symbol] = (snap.version, result)
            else:
                logger.debug("History for %s changed during correlation; result not cached", symbol)
        return result

    def _snapshot(self, symbol: str) -> _Snapshot:
        with self._lock_for(symbol):
            return _Snapshot(
                version=self._versions.get(symbol, 0),
                sentiment=tuple(self._sentiment.get(symbol, ())),
                prices=tuple(self._prices.get(symbol, ())),
            )

    def _compute(self, symbol: str, snap: _Snapshot) -> CorrelationResult:
        latest_ts = max(
            (series[-1][0] for series in (snap.sentiment, snap.prices) if series),
            default=None,
        )
        if len(snap.sentiment) < self._min_samples or len(snap.prices) < self._min_samples:
            return self._insufficient(symbol, 0, latest_ts)

        sentiment = pd.DataFrame(list(snap.sentiment), columns=["timestamp", "sentiment"])
        prices = pd.DataFrame(list(snap.prices), columns=["timestamp", "price"])
        # one price per timestamp, the last tick wins
        prices = prices.drop_duplicates(subset="timestamp", keep="last")

        lag_results: list[tuple[int, float, int]] = []
        for lag in self._lags_ms:
            aligned = align_forward_returns(
                sentiment, prices, self._window_ms, self._horizon_ms, lag
            )
            corr = pearson_correlation(
                aligned["sentiment"].to_numpy(dtype=float),
                aligned["forward_return"].to_numpy(dtype=float),
            )
            lag_results.append((lag, corr, len(aligned)))

        # lags are sorted and include 0
        _, correlation, n_aligned = lag_results[0]
        if n_aligned < self._min_samples:
            logger.info(
                "Correlation for %s: %d aligned pairs (< %d)", symbol, n_aligned, self._min_samples
            )
            return self._insufficient(symbol, n_aligned, latest_ts)

        optimal_lag, best = 0, -1.0
        for lag, corr, n in lag_results:
            if n >= self._min_lag_samples and abs(corr) > best:
                optimal_lag, best = lag, abs(corr)

        confidence = 0.5 * min(n_aligned / 100.0, 1.0) + 0.5 * abs(correlation)
        result = CorrelationResult(
            symbol=symbol,
            correlation=correlation,
            is_leading_indicator=optimal_lag > 0,
            optimal_lag_ms=optimal_lag,
            confidence_level=max(0.0, min(1.0, confidence)),
            sample_count=n_aligned,
            status="ok",
            computed_at=latest_ts,
            lag_correlations=tuple((lag, corr) for lag, corr, _ in lag_results),
        )
        logger.debug(
            "Correlation %s: r=%.4f lag=%dms n=%d", symbol, correlation, optimal_lag, n_aligned
        )
        return result

    @staticmethod
    def _insufficient(symbol: str, sample_count: int, latest_ts: Optional[int]) -> CorrelationResult:
        return CorrelationResult(
            symbol=symbol,
            correlation=0.0,
            is_leading_indicator=False,
            optimal_lag_ms=0,
            confidence_level=0.0,
            sample_count=sample_count,
            status="insufficient_data",
            computed_at=latest_ts,
        )

"""Closed-trade statistics per (symbol, timeframe, category).

Writers record P&L under a per-symbol lock and publish a fresh immutable
``TradeStats`` snapshot; readers take the current snapshot without
locking.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from signalcore.errors import InvalidInputError

logger = logging.getLogger("signalcore.risk")

DEFAULT_CATEGORY = "confluence"


@dataclass(frozen=True)
class TradeStats:
    """Aggregate of closed trades for one key."""

    sample_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: Optional[float] = None
    net_pnl: float = 0.0
    max_drawdown: float = 0.0


EMPTY_STATS = TradeStats()


def calculate_trade_stats(pnls: list[float]) -> TradeStats:
    """Summary statistics from a P&L series.

    Zero P&L counts as a loss.  ``avg_loss`` is reported as a positive
    magnitude.
    """
    if not pnls:
        return EMPTY_STATS

    total = len(pnls)
    winners = [p for p in pnls if p > 0]
    losers = [p for p in pnls if p <= 0]

    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        gross_profit / gross_loss if gross_loss > 0 else None
    )

    return TradeStats(
        sample_count=total,
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=len(winners) / total,
        avg_win=gross_profit / len(winners) if winners else 0.0,
        avg_loss=gross_loss / len(losers) if losers else 0.0,
        profit_factor=profit_factor,
        net_pnl=sum(pnls),
        max_drawdown=_max_drawdown(pnls),
    )


def _max_drawdown(pnls: list[float]) -> float:
    """Largest peak-to-trough decline of the cumulative P&L, as a positive number."""
    cumulative = 0.0
    peak = 0.0
    max_dd = 0.0
    for p in pnls:
        cumulative += p
        if cumulative > peak:
            peak = cumulative
        dd = peak - cumulative
        if dd > max_dd:
            max_dd = dd
    return max_dd


class TradeStatsStore:
    """Rolling closed-trade history with lock-free snapshot reads.

    Args:
        max_trades: Trades retained per key; older ones fall off.
    """

    def __init__(self, max_trades: int = 500) -> None:
        if max_trades < 1:
            raise InvalidInputError(f"max_trades must be >= 1, got {max_trades}")
        self._max_trades = max_trades
        self._pnls: dict[tuple[str, str, str], deque[float]] = {}
        self._snapshots: dict[tuple[str, str, str], TradeStats] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(symbol, threading.Lock())

    def record_outcome(
        self,
        symbol: str,
        timeframe: str,
        pnl: float,
        category: str = DEFAULT_CATEGORY,
    ) -> TradeStats:
        """Append one closed trade and return the new snapshot."""
        if not math.isfinite(pnl):
            raise InvalidInputError(f"pnl must be finite, got {pnl}")
        key = (symbol, timeframe, category)
        with self._lock_for(symbol):
            history = self._pnls.setdefault(key, deque(maxlen=self._max_trades))
            history.append(pnl)
            stats = calculate_trade_stats(list(history))
            self._snapshots[key] = stats
        logger.debug(
            "Recorded %s %s [%s] pnl=%.4f → n=%d win_rate=%.3f",
            symbol, timeframe, category, pnl, stats.sample_count, stats.win_rate,
        )
        return stats

    def snapshot(
        self,
        symbol: str,
        timeframe: str,
        category: str = DEFAULT_CATEGORY,
    ) -> TradeStats:
        """Latest published statistics, or an empty ``TradeStats``."""
        return self._snapshots.get((symbol, timeframe, category), EMPTY_STATS)

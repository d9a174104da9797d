"""Tests for closed-trade statistics and the per-symbol stats store."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from signalcore.errors import InvalidInputError
from signalcore.risk.stats_store import (
    EMPTY_STATS,
    TradeStatsStore,
    calculate_trade_stats,
)


class TestCalculateTradeStats:
    def test_mixed_trades(self):
        stats = calculate_trade_stats([100.0, -50.0, 200.0, -50.0])
        assert stats.sample_count == 4
        assert stats.winning_trades == 2
        assert stats.losing_trades == 2
        assert stats.win_rate == pytest.approx(0.5)
        assert stats.avg_win == pytest.approx(150.0)
        assert stats.avg_loss == pytest.approx(50.0)
        assert stats.profit_factor == pytest.approx(3.0)
        assert stats.net_pnl == pytest.approx(200.0)
        assert stats.max_drawdown == pytest.approx(50.0)

    def test_empty(self):
        assert calculate_trade_stats([]) == EMPTY_STATS

    def test_no_losers_has_no_profit_factor(self):
        stats = calculate_trade_stats([10.0, 20.0])
        assert stats.profit_factor is None
        assert stats.avg_loss == 0.0

    def test_breakeven_counts_as_loss(self):
        stats = calculate_trade_stats([10.0, 0.0])
        assert stats.losing_trades == 1


class TestTradeStatsStore:
    def test_unknown_key_is_empty(self):
        assert TradeStatsStore().snapshot("BTC/USDT", "1h") == EMPTY_STATS

    def test_record_and_snapshot(self):
        store = TradeStatsStore()
        store.record_outcome("BTC/USDT", "1h", 120.0)
        store.record_outcome("BTC/USDT", "1h", -40.0)
        stats = store.snapshot("BTC/USDT", "1h")
        assert stats.sample_count == 2
        assert stats.win_rate == pytest.approx(0.5)

    def test_snapshots_are_immutable(self):
        store = TradeStatsStore()
        first = store.record_outcome("BTC/USDT", "1h", 120.0)
        store.record_outcome("BTC/USDT", "1h", -40.0)
        assert first.sample_count == 1
        with pytest.raises(AttributeError):
            first.sample_count = 5  # type: ignore[misc]

    def test_keys_are_independent(self):
        store = TradeStatsStore()
        store.record_outcome("BTC/USDT", "1h", 10.0)
        store.record_outcome("BTC/USDT", "4h", -10.0)
        store.record_outcome("BTC/USDT", "1h", -5.0, category="momentum")
        assert store.snapshot("BTC/USDT", "1h").win_rate == 1.0
        assert store.snapshot("BTC/USDT", "4h").win_rate == 0.0
        assert store.snapshot("BTC/USDT", "1h", "momentum").sample_count == 1

    def test_rolling_window(self):
        store = TradeStatsStore(max_trades=3)
        for pnl in [-1.0, -1.0, 5.0, 5.0, 5.0]:
            store.record_outcome("ETH/USDT", "1h", pnl)
        stats = store.snapshot("ETH/USDT", "1h")
        assert stats.sample_count == 3
        assert stats.win_rate == 1.0

    def test_rejects_non_finite_pnl(self):
        with pytest.raises(InvalidInputError, match="pnl"):
            TradeStatsStore().record_outcome("BTC/USDT", "1h", float("nan"))

    def test_concurrent_writers_lose_nothing(self):
        store = TradeStatsStore(max_trades=1_000)

        def _write(i):
            for _ in range(50):
                store.record_outcome("BTC/USDT", "1h", 1.0 if i % 2 else -1.0)

        with ThreadPoolExecutor(max_workers=10) as pool:
            list(pool.map(_write, range(10)))

        stats = store.snapshot("BTC/USDT", "1h")
        assert stats.sample_count == 500
        assert stats.win_rate == pytest.approx(0.5)

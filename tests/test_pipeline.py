"""Tests for the signal pipeline and the CLI entry point."""

import asyncio
import json

import pytest

from signalcore.errors import InsufficientDataError
from signalcore.indicators.models import OHLCVBar
from signalcore.main import load_bars_csv, run_cli
from signalcore.pipeline import SignalPipeline
from signalcore.risk.levels import RiskParameters, TierParameters
from signalcore.risk.stats_store import TradeStatsStore
from signalcore.sentiment.correlation import SentimentCorrelationEngine
from signalcore.signals.models import PatternFinding
from signalcore.signals.weights import ScoringWeights
from signalcore.simulation.cache import RiskSimulationService


# ── Helpers ──────────────────────────────────────────────────────────────


def _rising(n=30) -> list[OHLCVBar]:
    return [
        OHLCVBar(i * 3_600_000, 100.0 + i - 0.2, 100.0 + i + 0.1, 100.0 + i - 0.3, 100.0 + i, 1_000.0)
        for i in range(n)
    ]


def _falling(n=30) -> list[OHLCVBar]:
    return [
        OHLCVBar(i * 3_600_000, 200.0 - i + 0.2, 200.0 - i + 0.3, 200.0 - i - 0.1, 200.0 - i, 1_000.0)
        for i in range(n)
    ]


def _winning_store() -> TradeStatsStore:
    store = TradeStatsStore()
    for pnl in [200.0, -100.0, 200.0, -100.0, 200.0]:
        store.record_outcome("BTC/USDT", "1h", pnl)
    return store


def _calibrated_risk() -> RiskParameters:
    return RiskParameters(
        tier_parameters={
            "LOW": TierParameters(1.0, 2.0, 0.02),
            "MEDIUM": TierParameters(1.0, 2.0, 0.015),
            "HIGH": TierParameters(1.5, 3.0, 0.01),
        }
    )


class _StubPatterns:
    def __init__(self, findings):
        self.findings = findings
        self.calls = []

    def find_patterns(self, symbol, timeframe):
        self.calls.append((symbol, timeframe))
        return self.findings


def _write_bars_csv(path, bars) -> str:
    lines = ["timestamp,open,high,low,close,volume"]
    lines += [f"{b.timestamp},{b.open},{b.high},{b.low},{b.close},{b.volume}" for b in bars]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def service():
    svc = RiskSimulationService(ttl_seconds=300)
    yield svc
    svc.close()


# ── Synchronous generation ───────────────────────────────────────────────


class TestGenerate:
    def test_uptrend_long_with_levels(self):
        result = SignalPipeline().generate("BTC/USDT", "1h", _rising())
        assert result.signal.direction == "LONG"
        assert result.volatility_tier == "LOW"
        assert result.atr_percentage == pytest.approx(100 * 1.1 / 129.0)
        levels = result.risk_levels
        assert levels is not None
        assert levels.stop_loss == pytest.approx(129.0 - 1.5 * 1.1)
        assert levels.take_profit == pytest.approx(129.0 + 2.0 * 1.1)
        # default LOW tier gives rr 1.33, below the 1.5 minimum
        assert not levels.actionable
        assert not result.actionable

    def test_sizing_needs_trade_history(self):
        result = SignalPipeline().generate("BTC/USDT", "1h", _rising())
        assert result.position_sizing.insufficient_statistics
        assert result.position_sizing.recommended_size == 0.0

    def test_sizing_from_recorded_trades(self):
        pipeline = SignalPipeline(stats_store=_winning_store(), risk_params=_calibrated_risk())
        result = pipeline.generate("BTC/USDT", "1h", _rising())
        sizing = result.position_sizing
        assert not sizing.insufficient_statistics
        assert sizing.kelly_fraction == 0.25
        # 2% of 10k, ×1.2 for LOW tier, ×1.5 for ATR% < 1.33 = 360, then the
        # LOW tier ceiling of 2% brings it back to 200
        assert result.volatility_tier == "LOW"
        assert sizing.recommended_size == pytest.approx(200.0)
        assert sizing.risk_percentage_of_account == pytest.approx(2.0)
        assert sizing.units == pytest.approx(200.0 / result.risk_levels.stop_distance)
        assert result.risk_levels.risk_reward_ratio == pytest.approx(2.0)
        assert result.actionable

    @pytest.mark.parametrize("max_risk_pct", [2.0, 5.0])
    @pytest.mark.parametrize("bars", [_rising(), _falling()], ids=["long", "short"])
    def test_sizing_never_exceeds_tier_ceiling(self, bars, max_risk_pct):
        pipeline = SignalPipeline(stats_store=_winning_store(), max_risk_pct=max_risk_pct)
        result = pipeline.generate("BTC/USDT", "1h", bars)
        ceiling = result.risk_levels.max_risk_fraction * 100.0
        assert result.position_sizing.recommended_size > 0.0
        assert result.position_sizing.risk_percentage_of_account <= ceiling + 1e-9

    def test_account_balance_override(self):
        pipeline = SignalPipeline(stats_store=_winning_store())
        result = pipeline.generate("BTC/USDT", "1h", _rising(), account_balance=20_000.0)
        assert result.position_sizing.base_position_size == pytest.approx(400.0)

    def test_downtrend_short(self):
        result = SignalPipeline().generate("BTC/USDT", "1h", _falling())
        assert result.signal.direction == "SHORT"
        assert result.risk_levels.take_profit < result.signal.entry_price < result.risk_levels.stop_loss

    def test_neutral_has_no_levels(self):
        pipeline = SignalPipeline(weights=ScoringWeights(neutral_threshold=0.95))
        result = pipeline.generate("BTC/USDT", "1h", _rising())
        assert result.signal.direction == "NEUTRAL"
        assert result.risk_levels is None
        assert result.position_sizing is None
        assert not result.actionable

    def test_pattern_source_consulted(self):
        source = _StubPatterns([
            PatternFinding(type="double_bottom", category="reversal", strength="STRONG", direction="bullish")
        ])
        result = SignalPipeline(pattern_source=source).generate("BTC/USDT", "1h", _rising())
        assert source.calls == [("BTC/USDT", "1h")]
        assert result.signal.pattern_contribution == pytest.approx(1.2)

    def test_explicit_patterns_skip_source(self):
        source = _StubPatterns([])
        SignalPipeline(pattern_source=source).generate("BTC/USDT", "1h", _rising(), patterns=[])
        assert source.calls == []

    def test_short_window_raises(self):
        with pytest.raises(InsufficientDataError):
            SignalPipeline().generate("BTC/USDT", "1h", _rising(10))

    def test_latest_correlation_attached(self):
        engine = SentimentCorrelationEngine()
        pipeline = SignalPipeline(correlation=engine)
        assert pipeline.generate("BTC/USDT", "1h", _rising()).correlation is None
        engine.refresh("BTC/USDT")
        result = pipeline.generate("BTC/USDT", "1h", _rising())
        assert result.correlation is not None
        assert result.correlation.status == "insufficient_data"

    def test_to_dict_is_json_serialisable(self):
        pipeline = SignalPipeline(stats_store=_winning_store())
        data = json.loads(json.dumps(pipeline.generate("BTC/USDT", "1h", _rising()).to_dict()))
        assert data["direction"] == "LONG"
        assert data["risk_levels"]["actionable"] is False
        assert data["position_sizing"]["kelly_fraction"] == 0.25
        assert data["risk_simulation"] is None


# ── Async analysis with Monte Carlo enrichment ───────────────────────────


class TestAnalyse:
    @pytest.mark.asyncio
    async def test_wait_for_simulation(self, service):
        pipeline = SignalPipeline(simulation=service, simulation_options={"seed": 11})
        result = await pipeline.analyse("BTC/USDT", "1h", _rising(60), wait_for_simulation=True)
        sim = result.risk_simulation
        assert sim is not None
        assert sim.direction == "LONG"
        assert sim.observations == 59

    @pytest.mark.asyncio
    async def test_background_refresh_attaches_on_next_cycle(self, service):
        pipeline = SignalPipeline(simulation=service, simulation_options={"seed": 11})
        first = await pipeline.analyse("BTC/USDT", "1h", _rising(60))
        assert first.risk_simulation is None
        while service.in_flight("BTC/USDT", "1h"):
            await asyncio.sleep(0.01)
        second = pipeline.generate("BTC/USDT", "1h", _rising(60))
        assert second.risk_simulation is not None

    @pytest.mark.asyncio
    async def test_opposite_direction_cache_not_attached(self, service):
        pipeline = SignalPipeline(simulation=service, simulation_options={"seed": 11})
        await pipeline.analyse("BTC/USDT", "1h", _rising(60), wait_for_simulation=True)
        short = pipeline.generate("BTC/USDT", "1h", _falling(60))
        assert short.signal.direction == "SHORT"
        assert short.risk_simulation is None
        refreshed = await pipeline.analyse(
            "BTC/USDT", "1h", _falling(60), wait_for_simulation=True
        )
        assert refreshed.risk_simulation.direction == "SHORT"

    @pytest.mark.asyncio
    async def test_failed_simulation_leaves_signal_intact(self, service):
        pipeline = SignalPipeline(simulation=service, simulation_options={"min_observations": 100})
        result = await pipeline.analyse("BTC/USDT", "1h", _rising(60), wait_for_simulation=True)
        assert result.signal.direction == "LONG"
        assert result.risk_simulation is None

    @pytest.mark.asyncio
    async def test_without_simulation_service(self):
        result = await SignalPipeline().analyse("BTC/USDT", "1h", _rising(), wait_for_simulation=True)
        assert result.risk_simulation is None


# ── CLI ──────────────────────────────────────────────────────────────────


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for var in ["LOG_LEVEL", "ACCOUNT_BALANCE", "MAX_RISK_PCT", "MIN_RISK_REWARD",
                "MC_ITERATIONS", "MC_MIN_OBSERVATIONS", "CALIBRATION_PATH"]:
        monkeypatch.delenv(var, raising=False)
    return str(tmp_path / "nonexistent.env")


class TestCli:
    def test_load_bars_sorts_and_parses_dates(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text(
            "timestamp,open,high,low,close,volume\n"
            "2024-01-01T01:00:00Z,2,3,1,2.5,10\n"
            "2024-01-01T00:00:00Z,1,2,0.5,1.5,10\n",
            encoding="utf-8",
        )
        bars = load_bars_csv(str(path))
        assert [b.close for b in bars] == [1.5, 2.5]
        assert bars[0].timestamp == 1_704_067_200_000

    def test_missing_column(self, tmp_path):
        path = tmp_path / "bars.csv"
        path.write_text("timestamp,close\n1,2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="open"):
            load_bars_csv(str(path))

    def test_prints_analysis(self, tmp_path, capsys, clean_env):
        csv = _write_bars_csv(tmp_path / "bars.csv", _rising())
        assert run_cli(["--csv", csv, "--symbol", "BTC/USDT", "--env", clean_env]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["symbol"] == "BTC/USDT"
        assert data["direction"] == "LONG"
        assert data["position_sizing"]["insufficient_statistics"] is True

    def test_trades_file_feeds_sizing(self, tmp_path, capsys, clean_env):
        csv = _write_bars_csv(tmp_path / "bars.csv", _rising())
        trades = tmp_path / "trades.csv"
        trades.write_text("pnl\n200\n-100\n200\n-100\n200\n", encoding="utf-8")
        code = run_cli([
            "--csv", csv, "--symbol", "BTC/USDT", "--trades", str(trades), "--env", clean_env,
        ])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["position_sizing"]["insufficient_statistics"] is False

    def test_simulate_flag(self, tmp_path, capsys, clean_env):
        csv = _write_bars_csv(tmp_path / "bars.csv", _rising(60))
        code = run_cli(["--csv", csv, "--symbol", "BTC/USDT", "--simulate", "--env", clean_env])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["risk_simulation"]["direction"] == "LONG"

    def test_short_window_exit_code(self, tmp_path, capsys, clean_env):
        csv = _write_bars_csv(tmp_path / "bars.csv", _rising(10))
        assert run_cli(["--csv", csv, "--symbol", "BTC/USDT", "--env", clean_env]) == 1
        assert capsys.readouterr().out == ""

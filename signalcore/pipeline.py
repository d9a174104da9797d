"""SignalCore — signal pipeline (orchestration).

Wires the pure components together for one evaluation cycle:

    bars → indicators → volatility tier → confluence signal
         → stop/target levels → position size

Monte Carlo and sentiment-correlation results are enrichments: the
synchronous path only attaches whatever is already cached, and
:meth:`SignalPipeline.analyse` schedules (or optionally awaits) a
simulation refresh without ever blocking signal generation on it.
"""

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional, Sequence

from signalcore.config import Config, load_calibration
from signalcore.indicators.calculations import (
    calculate_volume_confirmation,
    compute_indicator_set,
    log_returns,
)
from signalcore.indicators.models import OHLCVBar
from signalcore.indicators.volatility import atr_percentage, classify_volatility
from signalcore.risk.levels import RiskLevels, RiskParameters, compute_levels
from signalcore.risk.position_sizer import PositionSizing, size_position
from signalcore.risk.stats_store import TradeStatsStore
from signalcore.sentiment.correlation import SentimentCorrelationEngine
from signalcore.sentiment.models import CorrelationResult
from signalcore.signals.base import PatternSource
from signalcore.signals.confluence import score_signal
from signalcore.signals.models import PatternFinding, Signal
from signalcore.signals.weights import AdaptiveWeightManager, ScoringWeights
from signalcore.simulation.cache import RiskSimulationService
from signalcore.simulation.monte_carlo import RiskSimulationResult

logger = logging.getLogger("signalcore.pipeline")

VOLUME_PERIOD = 20


@dataclass(frozen=True)
class AnalysisResult:
    """Everything produced for one symbol/timeframe evaluation."""

    signal: Signal
    volatility_tier: str
    atr_percentage: float
    risk_levels: Optional[RiskLevels] = None
    position_sizing: Optional[PositionSizing] = None
    risk_simulation: Optional[RiskSimulationResult] = None
    correlation: Optional[CorrelationResult] = None

    @property
    def actionable(self) -> bool:
        return (
            self.signal.direction != "NEUTRAL"
            and self.risk_levels is not None
            and self.risk_levels.actionable
            and self.position_sizing is not None
            and not self.position_sizing.insufficient_statistics
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view for JSON output."""
        sig = self.signal
        risk = asdict(self.risk_levels) if self.risk_levels else None
        if risk is not None:
            risk["actionable"] = self.risk_levels.actionable
        return {
            "symbol": sig.symbol,
            "timeframe": sig.timeframe,
            "direction": sig.direction,
            "confidence": sig.confidence,
            "entry_price": sig.entry_price,
            "confluence": sig.confluence,
            "category_votes": asdict(sig.category_votes),
            "pattern_contribution": sig.pattern_contribution,
            "weights_version": sig.weights_version,
            "created_at": sig.created_at,
            "indicators": asdict(sig.indicator_snapshot),
            "volatility_tier": self.volatility_tier,
            "atr_percentage": self.atr_percentage,
            "risk_levels": risk,
            "position_sizing": asdict(self.position_sizing) if self.position_sizing else None,
            "risk_simulation": asdict(self.risk_simulation) if self.risk_simulation else None,
            "correlation": asdict(self.correlation) if self.correlation else None,
            "actionable": self.actionable,
        }


class SignalPipeline:
    """Generates signals with risk levels, sizing and cached enrichments.

    Args:
        weights:          Fixed scoring weights (ignored when a
                          *weight_manager* is given).
        weight_manager:   Per-symbol adaptive weights.
        risk_params:      Stop/target calibration tables.
        stats_store:      Closed-trade statistics used for Kelly sizing.
        simulation:       Monte Carlo cache service.
        correlation:      Sentiment correlation engine.
        pattern_source:   External pattern detector.
        account_balance:  Default account balance for sizing.
        max_risk_pct:     Per-trade risk cap, percent.
        simulation_options: Extra keyword arguments for the simulator.
    """

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        weight_manager: Optional[AdaptiveWeightManager] = None,
        risk_params: Optional[RiskParameters] = None,
        stats_store: Optional[TradeStatsStore] = None,
        simulation: Optional[RiskSimulationService] = None,
        correlation: Optional[SentimentCorrelationEngine] = None,
        pattern_source: Optional[PatternSource] = None,
        account_balance: float = 10_000.0,
        max_risk_pct: float = 2.0,
        simulation_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self._weights = weights or ScoringWeights()
        self._weight_manager = weight_manager
        self._risk_params = risk_params or RiskParameters()
        self._stats = stats_store or TradeStatsStore()
        self._simulation = simulation
        self._correlation = correlation
        self._pattern_source = pattern_source
        self._account_balance = account_balance
        self._max_risk_pct = max_risk_pct
        self._simulation_options = dict(simulation_options or {})

    @classmethod
    def from_config(
        cls,
        config: Config,
        pattern_source: Optional[PatternSource] = None,
        with_simulation: bool = True,
    ) -> "SignalPipeline":
        """Build a pipeline from environment configuration."""
        if config.calibration_path:
            weights, risk_params = load_calibration(
                config.calibration_path, min_risk_reward=config.min_risk_reward
            )
            logger.info("Loaded calibration from %s", config.calibration_path)
        else:
            weights = ScoringWeights()
            risk_params = RiskParameters(min_risk_reward=config.min_risk_reward)

        simulation = None
        if with_simulation:
            simulation = RiskSimulationService(
                ttl_seconds=config.mc_cache_ttl_seconds,
                max_workers=config.mc_workers,
            )
        return cls(
            weights=weights,
            weight_manager=AdaptiveWeightManager(base=weights),
            risk_params=risk_params,
            simulation=simulation,
            correlation=SentimentCorrelationEngine(
                capacity=config.sentiment_history_capacity,
                min_samples=config.correlation_min_samples,
            ),
            pattern_source=pattern_source,
            account_balance=config.account_balance,
            max_risk_pct=config.max_risk_pct,
            simulation_options={
                "iterations": config.mc_iterations,
                "horizon_steps": config.mc_horizon_steps,
                "min_observations": config.mc_min_observations,
            },
        )

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def stats_store(self) -> TradeStatsStore:
        return self._stats

    @property
    def weight_manager(self) -> Optional[AdaptiveWeightManager]:
        return self._weight_manager

    @property
    def simulation(self) -> Optional[RiskSimulationService]:
        return self._simulation

    @property
    def correlation_engine(self) -> Optional[SentimentCorrelationEngine]:
        return self._correlation

    def weights_for(self, symbol: str) -> ScoringWeights:
        if self._weight_manager is not None:
            return self._weight_manager.current(symbol)
        return self._weights

    def generate(
        self,
        symbol: str,
        timeframe: str,
        bars: Sequence[OHLCVBar],
        patterns: Optional[Sequence[PatternFinding]] = None,
        account_balance: Optional[float] = None,
    ) -> AnalysisResult:
        """Run one synchronous evaluation cycle.

        Raises the indicator errors (``InsufficientDataError``,
        ``InvalidInputError``, ``ComputationInvariantViolation``) unchanged;
        the caller decides whether to wait for more bars.
        """
        indicators = compute_indicator_set(bars)
        tier = classify_volatility(indicators.atr, indicators.close)
        atr_pct = atr_percentage(indicators.atr, indicators.close)

        volume = None
        if len(bars) > VOLUME_PERIOD:
            volume = calculate_volume_confirmation(bars, VOLUME_PERIOD)

        if patterns is None and self._pattern_source is not None:
            patterns = self._pattern_source.find_patterns(symbol, timeframe)

        signal = score_signal(
            symbol,
            timeframe,
            indicators,
            patterns=patterns,
            volume=volume,
            weights=self.weights_for(symbol),
        )

        levels = None
        sizing = None
        if signal.direction != "NEUTRAL":
            levels = compute_levels(
                entry_price=signal.entry_price,
                atr=indicators.atr,
                direction=signal.direction,
                volatility_tier=tier,
                timeframe=timeframe,
                params=self._risk_params,
            )
            stats = self._stats.snapshot(symbol, timeframe)
            sizing = size_position(
                win_rate=stats.win_rate,
                avg_win=stats.avg_win,
                avg_loss=stats.avg_loss,
                account_balance=account_balance or self._account_balance,
                volatility_tier=tier,
                atr_percentage=atr_pct,
                max_risk_pct=self._max_risk_pct,
                stop_distance=levels.stop_distance,
                tier_max_risk_pct=levels.max_risk_fraction * 100.0,
            )

        result = AnalysisResult(
            signal=signal,
            volatility_tier=tier,
            atr_percentage=atr_pct,
            risk_levels=levels,
            position_sizing=sizing,
            risk_simulation=self._cached_simulation(symbol, timeframe, signal.direction),
            correlation=self._correlation.latest(symbol) if self._correlation else None,
        )
        logger.info(
            "%s %s → %s (%.1f%%) tier=%s actionable=%s",
            symbol, timeframe, signal.direction, signal.confidence, tier, result.actionable,
        )
        return result

    async def analyse(
        self,
        symbol: str,
        timeframe: str,
        bars: Sequence[OHLCVBar],
        patterns: Optional[Sequence[PatternFinding]] = None,
        account_balance: Optional[float] = None,
        wait_for_simulation: bool = False,
    ) -> AnalysisResult:
        """Generate a signal, then refresh the Monte Carlo enrichment.

        By default the refresh runs in the background and the result
        carries whatever was cached.  With ``wait_for_simulation=True`` the
        (shared) simulation is awaited; a failed simulation yields
        ``risk_simulation=None``.
        """
        result = self.generate(symbol, timeframe, bars, patterns, account_balance)
        if self._simulation is None or result.signal.direction == "NEUTRAL":
            return result

        returns = log_returns(bars)
        options = dict(self._simulation_options)
        options["direction"] = result.signal.direction
        if result.risk_levels is not None:
            options["entry_price"] = result.risk_levels.entry_price
            options["stop_loss"] = result.risk_levels.stop_loss
            options["take_profit"] = result.risk_levels.take_profit

        if wait_for_simulation:
            sim = await self._simulation.get_or_unavailable(symbol, timeframe, returns, **options)
            return replace(result, risk_simulation=sim)

        self._simulation.schedule_refresh(symbol, timeframe, returns, **options)
        return result

    # ── Internals ────────────────────────────────────────────────────────

    def _cached_simulation(
        self, symbol: str, timeframe: str, direction: str
    ) -> Optional[RiskSimulationResult]:
        if self._simulation is None or direction == "NEUTRAL":
            return None
        return self._simulation.peek(symbol, timeframe, direction=direction)

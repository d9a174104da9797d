"""Monte Carlo risk simulation — CPU-bound, no I/O.

Forward price paths follow geometric Brownian motion whose per-step
log-return mean and standard deviation are estimated from history.  Each
path may end early on a stop-loss or take-profit barrier.  Returns are
measured in the signal's direction (a SHORT gains when price falls) and
expressed in percent.

Run this off the signal hot path; see ``signalcore.simulation.cache``.
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import numpy as np

from signalcore.errors import InvalidInputError, StatisticalInsufficiencyError
from signalcore.indicators.models import timeframe_duration_ms

logger = logging.getLogger("signalcore.simulation")

RiskLevel = Literal["VERY_LOW", "LOW", "MODERATE", "HIGH", "VERY_HIGH"]

MIN_ITERATIONS = 1000
DEFAULT_ITERATIONS = 1000
DEFAULT_HORIZON_STEPS = 24
DEFAULT_MIN_OBSERVATIONS = 30
VAR_PERCENTILE = 5.0
CI_Z = 1.96

_YEAR_MS = 365 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class RiskSimulationResult:
    """Simulated risk profile for one (symbol, timeframe).

    All return-like fields are percentages of the entry price.
    ``value_at_risk`` is the signed 5th percentile of terminal returns.
    """

    symbol: str
    timeframe: str
    direction: str
    volatility_percent: float
    value_at_risk: float
    win_probability: float
    expected_return: float
    max_drawdown: float
    sharpe_ratio: float
    confidence_interval: tuple[float, float]
    risk_score: float
    risk_level: RiskLevel
    iterations: int
    observations: int


def periods_per_year(timeframe: str) -> float:
    return _YEAR_MS / timeframe_duration_ms(timeframe)


def annualised_volatility_percent(returns: np.ndarray, timeframe: str) -> float:
    """Sample std of per-bar log returns scaled to one year, in percent."""
    return float(np.std(returns, ddof=1) * math.sqrt(periods_per_year(timeframe)) * 100.0)


def calculate_risk_score(
    expected_return: float,
    value_at_risk: float,
    max_drawdown: float,
    win_probability: float,
    sharpe_ratio: float,
) -> float:
    """Composite 0–100 score, higher is safer.

    Starts at 50 and adds bounded contributions from each metric.
    """
    score = 50.0
    score += max(-25.0, min(25.0, expected_return * 5.0))
    score += max(-15.0, min(15.0, (value_at_risk + 2.0) * 7.5))
    score -= min(20.0, max_drawdown * 2.0)
    score += max(-15.0, min(15.0, (win_probability - 50.0) * 0.3))
    score += max(-15.0, min(15.0, sharpe_ratio * 10.0))
    return max(0.0, min(100.0, score))


def classify_risk(score: float) -> RiskLevel:
    if score >= 80:
        return "VERY_LOW"
    if score >= 60:
        return "LOW"
    if score >= 40:
        return "MODERATE"
    if score >= 20:
        return "HIGH"
    return "VERY_HIGH"


def _simulate_paths(
    mu: float,
    sigma: float,
    iterations: int,
    horizon_steps: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Relative price paths ``P_t / P_0``, shape ``(iterations, horizon_steps)``."""
    steps = rng.normal(loc=mu, scale=sigma, size=(iterations, horizon_steps))
    return np.exp(np.cumsum(steps, axis=1))


def _apply_barriers(
    paths: np.ndarray,
    lower: Optional[float],
    upper: Optional[float],
) -> np.ndarray:
    """Freeze each path at the first barrier it touches.

    Barriers are relative prices.  After the first hit the path stays at
    the barrier level for the remaining steps.
    """
    if lower is None and upper is None:
        return paths
    hit_lower = paths <= lower if lower is not None else np.zeros_like(paths, dtype=bool)
    hit_upper = paths >= upper if upper is not None else np.zeros_like(paths, dtype=bool)
    hit = hit_lower | hit_upper
    any_hit = hit.any(axis=1)
    first = np.where(any_hit, hit.argmax(axis=1), paths.shape[1])

    out = paths.copy()
    for i in np.nonzero(any_hit)[0]:
        j = first[i]
        level = lower if hit_lower[i, j] else upper
        out[i, j:] = level
    return out


def simulate(
    symbol: str,
    timeframe: str,
    historical_returns: Sequence[float],
    direction: str = "LONG",
    iterations: int = DEFAULT_ITERATIONS,
    horizon_steps: int = DEFAULT_HORIZON_STEPS,
    min_observations: int = DEFAULT_MIN_OBSERVATIONS,
    entry_price: Optional[float] = None,
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
    seed: Optional[int] = None,
) -> RiskSimulationResult:
    """Simulate forward paths and summarise the directional risk profile.

    Args:
        historical_returns: Per-bar log returns for *timeframe*.
        direction: ``"LONG"`` or ``"SHORT"``.
        iterations: Number of paths (at least 1000).
        horizon_steps: Bars simulated per path.
        min_observations: Fewest historical returns accepted.
        entry_price / stop_loss / take_profit: Optional absolute levels;
            barriers apply only when *entry_price* is given.
        seed: Seed for ``numpy.random.default_rng``; same seed, same result.

    Raises:
        StatisticalInsufficiencyError: fewer than *min_observations* returns.
        InvalidInputError: non-finite returns, bad direction, iterations
            below 1000, non-positive horizon or inconsistent levels.
    """
    timeframe_duration_ms(timeframe)
    if direction not in ("LONG", "SHORT"):
        raise InvalidInputError(f"direction must be 'LONG' or 'SHORT', got '{direction}'")
    if iterations < MIN_ITERATIONS:
        raise InvalidInputError(f"iterations must be >= {MIN_ITERATIONS}, got {iterations}")
    if horizon_steps < 1:
        raise InvalidInputError(f"horizon_steps must be >= 1, got {horizon_steps}")

    returns = np.asarray(historical_returns, dtype=float)
    n_obs = int(returns.size)
    if n_obs < max(min_observations, 2):
        raise StatisticalInsufficiencyError(
            f"Need {max(min_observations, 2)} historical returns for {symbol} {timeframe}, got {n_obs}"
        )
    if not np.all(np.isfinite(returns)):
        raise InvalidInputError(f"Historical returns for {symbol} {timeframe} contain non-finite values")

    lower, upper = _relative_barriers(direction, entry_price, stop_loss, take_profit)

    mu = float(np.mean(returns))
    sigma = float(np.std(returns, ddof=1))
    rng = np.random.default_rng(seed)

    paths = _apply_barriers(
        _simulate_paths(mu, sigma, iterations, horizon_steps, rng), lower, upper
    )

    sign = 1.0 if direction == "LONG" else -1.0
    directional = sign * (paths - 1.0) * 100.0
    terminal = directional[:, -1]

    expected_return = float(np.mean(terminal))
    std = float(np.std(terminal, ddof=1))
    value_at_risk = float(np.percentile(terminal, VAR_PERCENTILE))
    win_probability = float(np.count_nonzero(terminal > 0) / iterations * 100.0)
    # Worst adverse excursion across all paths.
    max_drawdown = float(max(0.0, -float(np.min(directional))))
    sharpe = expected_return / std if std > 0 else 0.0
    margin = CI_Z * std / math.sqrt(iterations)

    score = calculate_risk_score(expected_return, value_at_risk, max_drawdown, win_probability, sharpe)
    result = RiskSimulationResult(
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        volatility_percent=annualised_volatility_percent(returns, timeframe),
        value_at_risk=value_at_risk,
        win_probability=win_probability,
        expected_return=expected_return,
        max_drawdown=max_drawdown,
        sharpe_ratio=sharpe,
        confidence_interval=(expected_return - margin, expected_return + margin),
        risk_score=score,
        risk_level=classify_risk(score),
        iterations=iterations,
        observations=n_obs,
    )
    logger.info(
        "Simulated %s %s %s: E[r]=%.3f%% VaR95=%.3f%% P(win)=%.1f%% risk=%s",
        symbol, timeframe, direction, expected_return, value_at_risk,
        win_probability, result.risk_level,
    )
    return result


def _relative_barriers(
    direction: str,
    entry_price: Optional[float],
    stop_loss: Optional[float],
    take_profit: Optional[float],
) -> tuple[Optional[float], Optional[float]]:
    """Convert absolute SL/TP into ``(lower, upper)`` relative price barriers."""
    if entry_price is None:
        return None, None
    if not (math.isfinite(entry_price) and entry_price > 0):
        raise InvalidInputError(f"entry_price must be positive, got {entry_price}")

    def rel(level: Optional[float]) -> Optional[float]:
        if level is None:
            return None
        if not (math.isfinite(level) and level > 0):
            raise InvalidInputError(f"Barrier level must be positive, got {level}")
        return level / entry_price

    sl, tp = rel(stop_loss), rel(take_profit)
    if direction == "LONG":
        if (sl is not None and sl >= 1.0) or (tp is not None and tp <= 1.0):
            raise InvalidInputError("LONG barriers need stop_loss < entry < take_profit")
        return sl, tp
    if (sl is not None and sl <= 1.0) or (tp is not None and tp >= 1.0):
        raise InvalidInputError("SHORT barriers need take_profit < entry < stop_loss")
    return tp, sl

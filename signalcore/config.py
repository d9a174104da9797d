"""SignalCore — application configuration.

Loads .env variables into a typed config object and validates them on
startup.  Calibration tables (category weights, timeframe adjustments,
tier parameters) live in an optional JSON file.
"""

import json
import os
import pathlib
from dataclasses import dataclass
from typing import Any, Callable

from dotenv import load_dotenv

from signalcore.risk.levels import (
    DEFAULT_TIER_PARAMETERS,
    DEFAULT_TIMEFRAME_ADJUSTMENTS,
    RiskParameters,
    TierParameters,
)
from signalcore.signals.weights import (
    DEFAULT_CATEGORY_WEIGHTS,
    CategoryWeights,
    ScoringWeights,
)


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    log_level: str
    account_balance: float
    max_risk_pct: float
    min_risk_reward: float
    mc_iterations: int
    mc_horizon_steps: int
    mc_min_observations: int
    mc_cache_ttl_seconds: float
    mc_workers: int
    sentiment_history_capacity: int
    correlation_min_samples: int
    calibration_path: str | None = None


def _read(name: str, default: str, cast: Callable[[str], Any]) -> Any:
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the offending variable when a value is
    malformed or out of range.
    """
    load_dotenv(dotenv_path=env_path)

    cfg = Config(
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        account_balance=_read("ACCOUNT_BALANCE", "10000", float),
        max_risk_pct=_read("MAX_RISK_PCT", "2.0", float),
        min_risk_reward=_read("MIN_RISK_REWARD", "1.5", float),
        mc_iterations=_read("MC_ITERATIONS", "1000", int),
        mc_horizon_steps=_read("MC_HORIZON_STEPS", "24", int),
        mc_min_observations=_read("MC_MIN_OBSERVATIONS", "30", int),
        mc_cache_ttl_seconds=_read("MC_CACHE_TTL_SECONDS", "300", float),
        mc_workers=_read("MC_WORKERS", "2", int),
        sentiment_history_capacity=_read("SENTIMENT_HISTORY_CAPACITY", "1000", int),
        correlation_min_samples=_read("CORRELATION_MIN_SAMPLES", "20", int),
        calibration_path=os.environ.get("CALIBRATION_PATH") or None,
    )

    problems = []
    if cfg.account_balance <= 0:
        problems.append("ACCOUNT_BALANCE must be positive")
    if not 0 < cfg.max_risk_pct <= 5:
        problems.append("MAX_RISK_PCT must be in (0, 5]")
    if cfg.min_risk_reward <= 0:
        problems.append("MIN_RISK_REWARD must be positive")
    if cfg.mc_iterations < 1000:
        problems.append("MC_ITERATIONS must be >= 1000")
    if cfg.mc_horizon_steps < 1:
        problems.append("MC_HORIZON_STEPS must be >= 1")
    if cfg.mc_min_observations < 2:
        problems.append("MC_MIN_OBSERVATIONS must be >= 2")
    if cfg.mc_cache_ttl_seconds < 0:
        problems.append("MC_CACHE_TTL_SECONDS must be >= 0")
    if cfg.mc_workers < 1:
        problems.append("MC_WORKERS must be >= 1")
    if cfg.sentiment_history_capacity < 1:
        problems.append("SENTIMENT_HISTORY_CAPACITY must be >= 1")
    if cfg.correlation_min_samples < 2:
        problems.append("CORRELATION_MIN_SAMPLES must be >= 2")
    if problems:
        raise ValueError("; ".join(problems))

    return cfg


# ── Calibration ──────────────────────────────────────────────────────────


def load_calibration(
    path: str | pathlib.Path,
    min_risk_reward: float | None = None,
) -> tuple[ScoringWeights, RiskParameters]:
    """Read calibration tables from a JSON file.

    Any section that is absent keeps its built-in default.  Example::

        {
          "category_weights": {"1h": {"trend": 0.5, "momentum": 0.3, "volume": 0.2}},
          "neutral_threshold": 0.12,
          "pattern_influence": 0.25,
          "timeframe_adjustments": {"1h": 1.0},
          "tier_parameters": {"HIGH": {"stop_multiplier": 3.0,
                                       "take_profit_multiplier": 4.5,
                                       "max_risk_fraction": 0.01}}
        }

    Raises ``ValueError`` (including the ``InvalidInputError`` subclass)
    for malformed JSON, unknown timeframes/tiers or bad values.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Calibration file {path} is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise ValueError(f"Calibration file {path} must contain a JSON object")

    try:
        category_weights = dict(DEFAULT_CATEGORY_WEIGHTS)
        for tf, w in doc.get("category_weights", {}).items():
            category_weights[tf] = CategoryWeights(
                trend=float(w["trend"]),
                momentum=float(w["momentum"]),
                volume=float(w["volume"]),
            )
        weights = ScoringWeights(
            category_weights=category_weights,
            neutral_threshold=float(doc.get("neutral_threshold", 0.1)),
            pattern_influence=float(doc.get("pattern_influence", 0.2)),
        )

        adjustments = dict(DEFAULT_TIMEFRAME_ADJUSTMENTS)
        adjustments.update(
            {tf: float(v) for tf, v in doc.get("timeframe_adjustments", {}).items()}
        )
        tiers = dict(DEFAULT_TIER_PARAMETERS)
        for tier, p in doc.get("tier_parameters", {}).items():
            if tier not in DEFAULT_TIER_PARAMETERS:
                raise ValueError(f"Unknown volatility tier '{tier}'")
            tiers[tier] = TierParameters(
                stop_multiplier=float(p["stop_multiplier"]),
                take_profit_multiplier=float(p["take_profit_multiplier"]),
                max_risk_fraction=float(p["max_risk_fraction"]),
            )
        risk_kwargs: dict[str, Any] = {
            "tier_parameters": tiers,
            "timeframe_adjustments": adjustments,
        }
        if min_risk_reward is not None:
            risk_kwargs["min_risk_reward"] = min_risk_reward
        risk = RiskParameters(**risk_kwargs)
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Malformed calibration file {path}: {exc!r}") from exc

    return weights, risk

"""Tests for the risk module.

Covers volatility-adaptive stop/target levels, level validation,
risk/reward invariants and Kelly position sizing.
"""

import math

import pytest

from signalcore.errors import ComputationInvariantViolation, InvalidInputError
from signalcore.risk.levels import (
    DEFAULT_TIMEFRAME_ADJUSTMENTS,
    RiskParameters,
    TierParameters,
    calculate_risk_reward,
    compute_levels,
)
from signalcore.risk.position_sizer import (
    atr_size_multiplier,
    calculate_kelly_fraction,
    size_position,
)


# ── Stop / target levels ─────────────────────────────────────────────────


class TestComputeLevels:
    def test_medium_long_1h(self):
        """entry 100, ATR 2, MEDIUM, 1h → SL 96, TP 105."""
        levels = compute_levels(100.0, 2.0, "LONG", "MEDIUM", "1h")
        # SL = 100 − 2 × 2.0 × 1.0, TP = 100 + 2 × 2.5 × 1.0
        assert levels.stop_loss == pytest.approx(96.0)
        assert levels.take_profit == pytest.approx(105.0)
        assert levels.risk_reward_ratio == pytest.approx(
            levels.take_profit_distance / levels.stop_distance
        )
        assert levels.risk_reward_ratio == pytest.approx(1.25)
        assert levels.atr_percentage == pytest.approx(2.0)
        assert levels.max_risk_fraction == 0.015

    def test_low_rr_reported_not_dropped(self):
        levels = compute_levels(100.0, 2.0, "LONG", "MEDIUM", "1h")
        assert levels.validation is not None
        assert not levels.actionable
        assert not levels.validation.risk_reward_acceptable
        assert any("risk/reward" in r for r in levels.validation.reasons)

    def test_medium_short_1h(self):
        levels = compute_levels(100.0, 2.0, "SHORT", "MEDIUM", "1h")
        assert levels.stop_loss == pytest.approx(104.0)
        assert levels.take_profit == pytest.approx(95.0)

    @pytest.mark.parametrize("tier", ["LOW", "MEDIUM", "HIGH"])
    @pytest.mark.parametrize("timeframe", ["1m", "1h", "1d", "1M"])
    def test_level_ordering(self, tier, timeframe):
        long = compute_levels(250.0, 3.0, "LONG", tier, timeframe)
        short = compute_levels(250.0, 3.0, "SHORT", tier, timeframe)
        assert long.stop_loss < long.entry_price < long.take_profit
        assert short.take_profit < short.entry_price < short.stop_loss
        assert long.risk_reward_ratio >= 0

    def test_timeframe_scales_distances(self):
        hourly = compute_levels(100.0, 1.0, "LONG", "LOW", "1h")
        four_hour = compute_levels(100.0, 1.0, "LONG", "LOW", "4h")
        assert four_hour.stop_distance == pytest.approx(hourly.stop_distance * 1.1)
        assert four_hour.risk_reward_ratio == pytest.approx(hourly.risk_reward_ratio)

    def test_actionable_with_calibrated_tiers(self):
        params = RiskParameters(
            tier_parameters={
                "LOW": TierParameters(1.0, 2.0, 0.02),
                "MEDIUM": TierParameters(1.0, 2.0, 0.015),
                "HIGH": TierParameters(1.5, 3.0, 0.01),
            }
        )
        levels = compute_levels(100.0, 2.0, "LONG", "MEDIUM", "1h", params)
        assert levels.risk_reward_ratio == pytest.approx(2.0)
        assert levels.actionable
        assert levels.validation.reasons == ()

    def test_unreasonable_atr_flagged(self):
        levels = compute_levels(100.0, 15.0, "LONG", "HIGH", "1h")
        assert not levels.validation.atr_reasonable
        assert any("ATR" in r for r in levels.validation.reasons)

    def test_negative_stop_price_flagged(self):
        levels = compute_levels(10.0, 5.0, "LONG", "HIGH", "1M")
        assert levels.stop_loss < 0
        assert not levels.validation.stop_loss_valid
        assert not levels.actionable

    def test_neutral_rejected(self):
        with pytest.raises(InvalidInputError, match="direction"):
            compute_levels(100.0, 2.0, "NEUTRAL", "MEDIUM", "1h")

    @pytest.mark.parametrize("entry, atr", [(0.0, 2.0), (100.0, 0.0), (100.0, math.inf)])
    def test_non_positive_inputs_rejected(self, entry, atr):
        with pytest.raises(InvalidInputError):
            compute_levels(entry, atr, "LONG", "MEDIUM", "1h")

    def test_unknown_timeframe_and_tier(self):
        with pytest.raises(InvalidInputError, match="2h"):
            compute_levels(100.0, 2.0, "LONG", "MEDIUM", "2h")
        with pytest.raises(InvalidInputError, match="EXTREME"):
            compute_levels(100.0, 2.0, "LONG", "EXTREME", "1h")


class TestRiskReward:
    def test_long(self):
        assert calculate_risk_reward(100.0, 98.0, 106.0, "LONG") == pytest.approx(3.0)

    def test_short(self):
        assert calculate_risk_reward(100.0, 102.0, 97.0, "SHORT") == pytest.approx(1.5)

    def test_stop_on_wrong_side_is_invariant_violation(self):
        with pytest.raises(ComputationInvariantViolation):
            calculate_risk_reward(100.0, 101.0, 105.0, "LONG")

    def test_target_on_wrong_side_is_invariant_violation(self):
        with pytest.raises(ComputationInvariantViolation):
            calculate_risk_reward(100.0, 102.0, 103.0, "SHORT")


class TestRiskParameters:
    def test_default_adjustments_increase(self):
        values = list(DEFAULT_TIMEFRAME_ADJUSTMENTS.values())
        assert values == sorted(values)
        assert values[0] == 0.6 and values[-1] == 1.5

    def test_decreasing_adjustments_rejected(self):
        bad = dict(DEFAULT_TIMEFRAME_ADJUSTMENTS, **{"1d": 0.5})
        with pytest.raises(InvalidInputError, match="decrease"):
            RiskParameters(timeframe_adjustments=bad)

    def test_missing_tier_rejected(self):
        with pytest.raises(InvalidInputError, match="HIGH"):
            RiskParameters(tier_parameters={
                "LOW": TierParameters(1.5, 2.0, 0.02),
                "MEDIUM": TierParameters(2.0, 2.5, 0.015),
            })

    def test_tables_are_read_only(self):
        adjustments = dict(DEFAULT_TIMEFRAME_ADJUSTMENTS)
        params = RiskParameters(timeframe_adjustments=adjustments)
        with pytest.raises(TypeError):
            params.tier_parameters["LOW"] = TierParameters(0.1, 9.0, 0.05)
        with pytest.raises(TypeError):
            params.timeframe_adjustments["1h"] = 9.0
        adjustments["1h"] = 9.0
        assert params.timeframe_adjustments["1h"] == DEFAULT_TIMEFRAME_ADJUSTMENTS["1h"]

    def test_tier_risk_fraction_bounded(self):
        with pytest.raises(InvalidInputError, match="max_risk_fraction"):
            TierParameters(1.0, 2.0, 0.1)


# ── Position sizing ──────────────────────────────────────────────────────


class TestKelly:
    def test_raw_fraction_clamped_to_quarter(self):
        # b = 2, f = (2 × 0.6 − 0.4) / 2 = 0.4 → 0.25
        assert calculate_kelly_fraction(0.6, 200.0, 100.0) == 0.25

    def test_unclamped_fraction(self):
        # b = 1, f = 0.55 − 0.45 = 0.10
        assert calculate_kelly_fraction(0.55, 100.0, 100.0) == pytest.approx(0.10)

    def test_negative_edge_is_zero(self):
        assert calculate_kelly_fraction(0.3, 100.0, 100.0) == 0.0

    @pytest.mark.parametrize("atr_pct, expected", [(0.5, 1.5), (2.0, 1.0), (8.0, 0.5)])
    def test_atr_multiplier(self, atr_pct, expected):
        assert atr_size_multiplier(atr_pct) == pytest.approx(expected)


class TestSizePosition:
    def test_kelly_capped_by_max_risk(self):
        """winRate 0.6, 200/100, $10k → Kelly 0.25, sized at the 2% cap."""
        sizing = size_position(0.6, 200.0, 100.0, 10_000.0, "MEDIUM", 2.0)
        assert sizing.kelly_fraction == 0.25
        assert sizing.base_position_size == pytest.approx(200.0)
        assert sizing.recommended_size == pytest.approx(200.0)
        assert sizing.risk_percentage_of_account == pytest.approx(2.0)
        assert not sizing.insufficient_statistics

    def test_low_volatility_upweights(self):
        sizing = size_position(0.6, 200.0, 100.0, 10_000.0, "LOW", 0.5)
        # 200 × 1.2 × 1.5
        assert sizing.recommended_size == pytest.approx(360.0)
        assert sizing.risk_percentage_of_account <= 5.0

    def test_high_volatility_downweights(self):
        sizing = size_position(0.6, 200.0, 100.0, 10_000.0, "HIGH", 8.0)
        # 200 × 0.7 × 0.5
        assert sizing.recommended_size == pytest.approx(70.0)

    def test_hard_cap_after_adjustment(self):
        sizing = size_position(
            0.6, 200.0, 100.0, 10_000.0, "LOW", 0.5, max_risk_pct=5.0
        )
        # 500 × 1.2 × 1.5 = 900 → capped at 5% = 500
        assert sizing.recommended_size == pytest.approx(500.0)
        assert sizing.risk_percentage_of_account == pytest.approx(5.0)

    def test_tier_ceiling_after_adjustment(self):
        sizing = size_position(
            0.6, 200.0, 100.0, 10_000.0, "LOW", 0.5, tier_max_risk_pct=2.0, stop_distance=4.0
        )
        # 200 × 1.2 × 1.5 = 360 → capped at the tier's 2% = 200
        assert sizing.recommended_size == pytest.approx(200.0)
        assert sizing.risk_percentage_of_account == pytest.approx(2.0)
        assert sizing.units == pytest.approx(50.0)

    def test_tier_ceiling_leaves_smaller_sizes_alone(self):
        sizing = size_position(0.6, 200.0, 100.0, 10_000.0, "HIGH", 8.0, tier_max_risk_pct=1.0)
        assert sizing.recommended_size == pytest.approx(70.0)

    @pytest.mark.parametrize("ceiling", [0.0, -1.0, 6.0])
    def test_rejects_bad_tier_ceiling(self, ceiling):
        with pytest.raises(InvalidInputError, match="tier_max_risk_pct"):
            size_position(0.6, 200.0, 100.0, 10_000.0, "LOW", 0.5, tier_max_risk_pct=ceiling)

    def test_units_from_stop_distance(self):
        sizing = size_position(0.6, 200.0, 100.0, 10_000.0, "MEDIUM", 2.0, stop_distance=4.0)
        assert sizing.units == pytest.approx(50.0)

    @pytest.mark.parametrize(
        "win_rate, avg_win, avg_loss",
        [(0.6, 200.0, 0.0), (0.6, 200.0, -5.0), (0.0, 200.0, 100.0),
         (1.0, 200.0, 100.0), (math.nan, 200.0, 100.0)],
    )
    def test_insufficient_statistics(self, win_rate, avg_win, avg_loss):
        sizing = size_position(win_rate, avg_win, avg_loss, 10_000.0, "MEDIUM", 2.0)
        assert sizing.insufficient_statistics
        assert sizing.recommended_size == 0.0
        assert sizing.kelly_fraction == 0.0

    @pytest.mark.parametrize("tier", ["LOW", "MEDIUM", "HIGH"])
    @pytest.mark.parametrize("win_rate", [0.35, 0.5, 0.65, 0.9])
    def test_bounds(self, tier, win_rate):
        sizing = size_position(win_rate, 300.0, 100.0, 25_000.0, tier, 0.3, max_risk_pct=5.0)
        assert 0.0 <= sizing.kelly_fraction <= 0.25
        assert sizing.risk_percentage_of_account <= 5.0

    def test_rejects_bad_balance(self):
        with pytest.raises(InvalidInputError, match="account_balance"):
            size_position(0.6, 200.0, 100.0, 0.0, "MEDIUM", 2.0)

    def test_rejects_bad_atr(self):
        with pytest.raises(InvalidInputError, match="atr_percentage"):
            size_position(0.6, 200.0, 100.0, 10_000.0, "MEDIUM", 0.0)

    def test_rejects_unknown_tier(self):
        with pytest.raises(InvalidInputError, match="EXTREME"):
            size_position(0.6, 200.0, 100.0, 10_000.0, "EXTREME", 2.0)

"""
Tests for risk_manager.py — risk metrics, Kelly-based position sizing,
stress scenarios and pre-trade limit checks.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
from types import SimpleNamespace

from risk_manager import (
    RISK_PROFILES,
    STRESS_SCENARIOS,
    RiskManager,
    RiskMetrics,
    compound_annualized,
    cumulative_drawdown,
    kelly_fraction,
    risk_limits,
)


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def rm():
    return RiskManager(profile="moderate")


RETURNS = [0.01, -0.005, 0.02, -0.01]


# ─── Helpers ──────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_compound_annualized_full_year(self):
        assert compound_annualized([0.001] * 252) == pytest.approx(1.001 ** 252 - 1)

    def test_compound_annualized_empty(self):
        assert compound_annualized([]) == 0.0

    def test_cumulative_drawdown(self):
        assert cumulative_drawdown([0.1, -0.2, 0.05]) == pytest.approx(0.2 / 1.1)

    def test_cumulative_drawdown_monotonic(self):
        assert cumulative_drawdown([0.01, 0.02]) == 0.0

    def test_kelly(self):
        assert kelly_fraction(0.6, 2.0, -1.0) == pytest.approx(0.4)

    def test_kelly_degenerate(self):
        assert kelly_fraction(0.6, 0.0, -1.0) == 0.0
        assert kelly_fraction(0.6, 1.0, 0.0) == 0.0

    def test_risk_limits(self):
        assert risk_limits("conservative").max_position_size == 0.05
        with pytest.raises(ValueError, match="Unknown risk profile"):
            risk_limits("yolo")

    def test_profiles(self):
        assert set(RISK_PROFILES) == {"conservative", "moderate", "aggressive"}
        assert RISK_PROFILES["aggressive"].to_dict()["max_correlated_positions"] == 7


# ─── Metrics ──────────────────────────────────────────────────────────────────

class TestRiskMetrics:
    def test_empty(self, rm):
        assert rm.calculate_risk_metrics([]) == RiskMetrics()

    def test_basic(self, rm):
        m = rm.calculate_risk_metrics(RETURNS)
        assert m.win_rate == 0.5
        assert m.profit_factor == pytest.approx(2.0)
        assert m.value_at_risk == -0.01
        assert m.beta == 1.0
        assert m.volatility > 0
        assert m.max_drawdown == pytest.approx(0.01 / 1.025)

    def test_benchmark_identical(self, rm):
        m = rm.calculate_risk_metrics(RETURNS, RETURNS)
        assert m.beta == pytest.approx(1.0)
        assert m.alpha == pytest.approx(0.0)
        assert m.information_ratio == 0.0

    def test_benchmark_length_mismatch(self, rm):
        m = rm.calculate_risk_metrics(RETURNS, [0.01, 0.02])
        assert (m.beta, m.alpha, m.information_ratio) == (1.0, 0.0, 0.0)

    def test_to_dict_json_safe(self, rm):
        d = rm.calculate_risk_metrics([0.01, 0.02]).to_dict()
        assert d["profit_factor"] is None
        assert d["calmar_ratio"] == 0.0

    def test_huge_return_serializes(self, rm):
        d = rm.calculate_risk_metrics([1e6]).to_dict()
        assert d["annualized_return"] is None
        assert d["win_rate"] == 1.0


# ─── Sizing ───────────────────────────────────────────────────────────────────

class TestPositionSizing:
    def test_most_conservative_wins(self, rm):
        sizing = rm.calculate_position_sizing(10_000, 0.6, 2.0, -1.0, volatility=0.3)
        assert sizing.kelly_percentage == pytest.approx(0.4)
        assert sizing.volatility_adjusted == pytest.approx(0.01)
        assert sizing.recommended_size == pytest.approx(0.01)
        assert sizing.recommended_amount == pytest.approx(100)
        assert sizing.maximum_position == 0.10

    def test_negative_kelly_floored(self, rm):
        sizing = rm.calculate_position_sizing(10_000, 0.2, 1.0, -1.0, volatility=0.1)
        assert sizing.kelly_percentage < 0
        assert sizing.recommended_size == 0.001

    def test_fixed_cap(self, rm):
        sizing = rm.calculate_position_sizing(1000, 0.9, 3.0, -1.0, volatility=0.05, risk_tolerance=0.05)
        assert sizing.recommended_size == pytest.approx(0.05)

    def test_invalid_volatility(self, rm):
        with pytest.raises(ValueError, match="volatility"):
            rm.calculate_position_sizing(1000, 0.5, 1, -1, volatility=0)

    def test_negative_balance(self, rm):
        with pytest.raises(ValueError):
            rm.calculate_position_sizing(-1, 0.5, 1, -1, volatility=0.2)


# ─── Stress Testing ───────────────────────────────────────────────────────────

class TestStressTest:
    def test_all_scenarios(self, rm):
        results = rm.perform_stress_test([{"size": 1000}])
        assert [r.scenario for r in results] == [s[0] for s in STRESS_SCENARIOS]
        assert results[0].portfolio_impact == pytest.approx(-450)

    def test_mixed_position_types(self, rm):
        positions = [{"size": 1000}, SimpleNamespace(size=500)]
        assert rm.perform_stress_test(positions)[0].portfolio_impact == pytest.approx(-675)

    def test_correlation_scaling(self, rm):
        positions = [{"size": 1000}, {"size": 500}]
        results = rm.perform_stress_test(positions, [[1.0, 0.5], [0.5, 1.0]])
        assert results[0].portfolio_impact == pytest.approx(-675 * 0.75)

    def test_missing_row_defaults_to_one(self, rm):
        results = rm.perform_stress_test([{"size": 100}, {"size": 100}], [[0.5, 0.5]])
        assert results[0].portfolio_impact == pytest.approx(-45 * 0.5 - 45)

    def test_empty_portfolio(self, rm):
        assert all(r.portfolio_impact == 0 for r in rm.perform_stress_test([]))

    def test_to_dict(self, rm):
        d = rm.perform_stress_test([{"size": 1}])[0].to_dict()
        assert d["time_horizon"] == "1 day"


# ─── Limits ───────────────────────────────────────────────────────────────────

class TestCheckTrade:
    def test_allowed(self, rm):
        assert rm.check_trade(800, 10_000) == (True, "OK")

    def test_position_too_large(self, rm):
        ok, reason = rm.check_trade(1500, 10_000)
        assert ok is False
        assert "exceeds max" in reason

    def test_profile_override(self, rm):
        ok, _ = rm.check_trade(800, 10_000, profile="conservative")
        assert ok is False

    def test_daily_loss_limit(self, rm):
        ok, reason = rm.check_trade(500, 10_000, daily_pnl=-300)
        assert ok is False
        assert reason.startswith("Daily loss")

    def test_daily_profit_ignored(self, rm):
        assert rm.check_trade(500, 10_000, daily_pnl=5000)[0] is True

    def test_drawdown_limit(self, rm):
        ok, reason = rm.check_trade(500, 10_000, current_drawdown=0.15)
        assert ok is False
        assert reason.startswith("Drawdown")

    def test_invalid_values(self, rm):
        assert rm.check_trade(100, 0)[0] is False
        assert rm.check_trade(0, 1000)[0] is False

    def test_unknown_profile(self):
        with pytest.raises(ValueError):
            RiskManager(profile="reckless")

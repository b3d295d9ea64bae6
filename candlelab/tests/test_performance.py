"""
Tests for performance.py — return-series statistics shared by the
backtesters and the risk manager.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import math
import pytest

from performance import (
    annualize_return,
    beta,
    expected_shortfall,
    information_ratio,
    jensen_alpha,
    json_safe,
    max_consecutive,
    max_drawdown,
    mean,
    population_std,
    profit_factor,
    sample_std,
    sharpe_ratio,
    simple_returns,
    sortino_ratio,
    tracking_error,
    ulcer_index,
    value_at_risk,
)


# ─── Basic Statistics ─────────────────────────────────────────────────────────

class TestBasics:
    def test_mean_empty(self):
        assert mean([]) == 0.0

    def test_population_vs_sample(self):
        values = [1.0, 3.0]
        assert population_std(values) == pytest.approx(1.0)
        assert sample_std(values) == pytest.approx(math.sqrt(2))

    def test_sample_std_single(self):
        assert sample_std([5.0]) == 0.0

    def test_simple_returns(self):
        assert simple_returns([100, 110, 99]) == pytest.approx([0.1, -0.1])

    def test_simple_returns_zero_base(self):
        assert simple_returns([0, 10]) == [0.0]


# ─── Risk-adjusted Returns ────────────────────────────────────────────────────

class TestRatios:
    def test_sharpe_empty(self):
        assert sharpe_ratio([]) == 0.0

    def test_sharpe_zero_variance(self):
        assert sharpe_ratio([0.01] * 10) == 0.0

    def test_sharpe_formula(self):
        returns = [0.02, 0.0]
        expected = (0.01 * 252 - 0.02) / (0.01 * math.sqrt(252))
        assert sharpe_ratio(returns) == pytest.approx(expected)

    def test_sortino_no_losses_infinite(self):
        assert sortino_ratio([0.01, 0.02]) == math.inf

    def test_sortino_uses_downside_only(self):
        returns = [0.03, -0.01]
        downside = math.sqrt(0.0001 * 252)
        assert sortino_ratio(returns) == pytest.approx((0.01 * 252 - 0.02) / downside)

    def test_information_ratio_zero_tracking(self):
        assert information_ratio([0.01, 0.02], [0.01, 0.02]) == 0.0

    def test_tracking_error(self):
        te = tracking_error([0.02, 0.0], [0.0, 0.0])
        assert te == pytest.approx(sample_std([0.02, 0.0]) * math.sqrt(252))


class TestTailRisk:
    returns = [-0.05, -0.03, -0.01, 0.0, 0.01, 0.02, 0.02, 0.03, 0.04, 0.05,
               0.01, 0.0, -0.02, 0.01, 0.02, 0.03, 0.01, 0.0, 0.01, 0.02]

    def test_var_quantile(self):
        # 5% of 20 returns → index 1 of the sorted series
        assert value_at_risk(self.returns, 0.05) == -0.03

    def test_var_empty(self):
        assert value_at_risk([]) == 0.0

    def test_expected_shortfall(self):
        assert expected_shortfall(self.returns, 0.05) == pytest.approx(-0.04)

    def test_ulcer_index(self):
        assert ulcer_index([0.0, 0.1]) == pytest.approx(math.sqrt(0.005))
        assert ulcer_index([]) == 0.0


class TestMarketRelative:
    def test_beta_identical(self):
        r = [0.01, -0.02, 0.03]
        assert beta(r, r) == pytest.approx(1.0)

    def test_beta_levered(self):
        b = [0.01, -0.02, 0.03]
        assert beta([2 * x for x in b], b) == pytest.approx(2.0)

    def test_beta_flat_benchmark(self):
        assert beta([0.01, 0.02], [0.0, 0.0]) == 1.0

    def test_beta_empty(self):
        assert beta([], []) == 1.0

    def test_jensen_alpha_zero_for_market(self):
        b = [0.001, 0.002, -0.001]
        assert jensen_alpha(b, b, 1.0) == pytest.approx(0.0)


# ─── Trade Statistics ─────────────────────────────────────────────────────────

class TestTradeStats:
    def test_profit_factor(self):
        assert profit_factor([30, -10, 20, -15]) == pytest.approx(2.0)

    def test_profit_factor_no_losses(self):
        assert profit_factor([10, 5]) == math.inf

    def test_profit_factor_nothing(self):
        assert profit_factor([]) == 0.0
        assert profit_factor([-5]) == 0.0

    def test_max_consecutive(self):
        pnls = [1, 2, -1, 3, 4, 5, -2, -3]
        assert max_consecutive(pnls, wins=True) == 3
        assert max_consecutive(pnls, wins=False) == 2

    def test_annualize(self):
        assert annualize_return(0.1, 365) == pytest.approx(0.1)
        assert annualize_return(0.1, 0) == 0.0
        assert annualize_return(-1.0, 10) == -1.0

    def test_annualize_overflow(self):
        assert annualize_return(1e6, 1, 252) == math.inf
        assert json_safe(annualize_return(1e6, 1, 252)) is None

    def test_json_safe(self):
        assert json_safe(1.5) == 1.5
        assert json_safe(math.inf) is None
        assert json_safe(math.nan) is None

    def test_max_drawdown(self):
        assert max_drawdown([100, 120, 90, 130]) == pytest.approx(0.25)
        assert max_drawdown([]) == 0.0

"""
risk_manager.py — Portfolio risk metrics, position sizing and limit checks.

Provides:
  - Risk metrics over a return series (Sharpe, VaR, ES, beta/alpha, Calmar)
  - Position sizing (quarter-Kelly, fixed, volatility-adjusted, capped)
  - Historical-scenario stress tests
  - Risk-limit profiles and pre-trade validation against them

Usage:
    rm = RiskManager(profile="moderate")
    metrics = rm.calculate_risk_metrics(daily_returns)
    sizing = rm.calculate_position_sizing(10_000, 0.55, 120, -80, volatility=0.25)
    ok, reason = rm.check_trade(position_value=800, portfolio_value=10_000)
    if not ok:
        logger.warning(f"Trade rejected: {reason}")
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from performance import (
    annualize_return,
    beta as calc_beta,
    expected_shortfall,
    information_ratio,
    json_safe,
    profit_factor,
    sample_std,
    value_at_risk,
)

TRADING_DAYS = 252
BASE_VOLATILITY = 0.15
MAX_POSITION = 0.10
MIN_POSITION = 0.001


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class RiskMetrics:
    annualized_return: float = 0.0
    volatility: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    value_at_risk: float = 0.0
    expected_shortfall: float = 0.0
    beta: float = 1.0
    alpha: float = 0.0
    information_ratio: float = 0.0
    calmar_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {k: json_safe(v) for k, v in asdict(self).items()}


@dataclass
class PositionSizing:
    kelly_percentage: float
    fixed_percentage: float
    volatility_adjusted: float
    maximum_position: float
    recommended_size: float
    recommended_amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StressTestResult:
    scenario: str
    price_change: float
    portfolio_impact: float
    probability: float
    time_horizon: str = "1 day"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskLimits:
    max_position_size: float
    max_daily_loss: float
    max_drawdown: float
    max_correlated_positions: int
    max_sector_exposure: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


STRESS_SCENARIOS: List[Tuple[str, float, float]] = [
    ("2008 crisis", -0.45, 0.02),
    ("2020 pandemic", -0.35, 0.05),
    ("Flash crash", -0.20, 0.10),
    ("Market correction", -0.15, 0.20),
    ("Moderate decline", -0.10, 0.30),
    ("Volatility", -0.05, 0.40),
]

RISK_PROFILES: Dict[str, RiskLimits] = {
    "conservative": RiskLimits(0.05, 0.02, 0.10, 3, 0.20),
    "moderate": RiskLimits(0.10, 0.03, 0.15, 5, 0.30),
    "aggressive": RiskLimits(0.20, 0.05, 0.25, 7, 0.50),
}


# ─── Helpers ──────────────────────────────────────────────────────────────────

def compound_annualized(returns: Sequence[float], periods: int = TRADING_DAYS) -> float:
    """(Π(1+r))^(periods/n) − 1"""
    if not returns:
        return 0.0
    total = math.prod(1 + r for r in returns) - 1
    return annualize_return(total, len(returns), basis=periods)


def cumulative_drawdown(returns: Sequence[float]) -> float:
    """Max drawdown over additively cumulated returns: (peak − cum) / (1 + peak)."""
    peak = cum = worst = 0.0
    for r in returns:
        cum += r
        peak = max(peak, cum)
        worst = max(worst, (peak - cum) / (1 + peak))
    return worst


def kelly_fraction(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """p − (1−p)/b with b = avg_win/|avg_loss|; 0 when either average is zero."""
    if avg_loss == 0 or avg_win == 0:
        return 0.0
    return win_rate - (1 - win_rate) / (avg_win / abs(avg_loss))


def risk_limits(profile: str) -> RiskLimits:
    if profile not in RISK_PROFILES:
        raise ValueError(f"Unknown risk profile '{profile}'. Choose: {list(RISK_PROFILES)}")
    return RISK_PROFILES[profile]


def _position_size(position: Any) -> float:
    if isinstance(position, Mapping):
        return float(position.get("size", 0.0))
    return float(getattr(position, "size", 0.0))


# ─── Risk Manager ─────────────────────────────────────────────────────────────

class RiskManager:
    """
    Stateless risk calculations plus limit checks for one risk profile.

    Args:
        profile: "conservative", "moderate" or "aggressive".
    """

    def __init__(self, profile: str = "moderate") -> None:
        self.limits = risk_limits(profile)
        self.profile = profile
        logger.info(
            f"RiskManager initialized: profile={profile} "
            f"max_pos={self.limits.max_position_size:.0%} "
            f"max_dd={self.limits.max_drawdown:.0%}"
        )

    # ─── Metrics ──────────────────────────────────────────────────────────────

    def calculate_risk_metrics(
        self,
        returns: Sequence[float],
        benchmark_returns: Optional[Sequence[float]] = None,
        risk_free_rate: float = 0.02,
    ) -> RiskMetrics:
        """
        Risk metrics for a periodic return series.

        Beta, alpha and information ratio need a benchmark of the same length;
        otherwise they keep their neutral defaults (1, 0, 0).
        """
        if not returns:
            return RiskMetrics()

        annualized = compound_annualized(returns)
        volatility = sample_std(returns) * math.sqrt(TRADING_DAYS)
        max_dd = cumulative_drawdown(returns)

        beta_, alpha, info = 1.0, 0.0, 0.0
        if benchmark_returns is not None and len(benchmark_returns) == len(returns):
            beta_ = calc_beta(returns, benchmark_returns)
            market = compound_annualized(benchmark_returns)
            alpha = annualized - (risk_free_rate + beta_ * (market - risk_free_rate))
            info = information_ratio(returns, benchmark_returns)
        elif benchmark_returns is not None:
            logger.debug(
                f"Benchmark length {len(benchmark_returns)} != {len(returns)}; skipping beta/alpha"
            )

        return RiskMetrics(
            annualized_return=annualized,
            volatility=volatility,
            max_drawdown=max_dd,
            sharpe_ratio=(annualized - risk_free_rate) / volatility if volatility else 0.0,
            win_rate=sum(1 for r in returns if r > 0) / len(returns),
            profit_factor=profit_factor(returns),
            value_at_risk=value_at_risk(returns, 0.05),
            expected_shortfall=expected_shortfall(returns, 0.05),
            beta=beta_,
            alpha=alpha,
            information_ratio=info,
            calmar_ratio=annualized / abs(max_dd) if max_dd else 0.0,
        )

    # ─── Sizing ───────────────────────────────────────────────────────────────

    def calculate_position_sizing(
        self,
        account_balance: float,
        win_rate: float,
        avg_win: float,
        avg_loss: float,
        volatility: float,
        risk_tolerance: float = 0.02,
    ) -> PositionSizing:
        """Most conservative of quarter-Kelly, fixed, vol-adjusted and the 10% cap."""
        if volatility <= 0:
            raise ValueError("volatility must be positive")
        if account_balance < 0:
            raise ValueError("account_balance must be non-negative")

        kelly = kelly_fraction(win_rate, avg_win, avg_loss)
        vol_adjusted = BASE_VOLATILITY / volatility * risk_tolerance
        recommended = max(MIN_POSITION, min(kelly * 0.25, risk_tolerance, vol_adjusted, MAX_POSITION))
        return PositionSizing(
            kelly_percentage=kelly,
            fixed_percentage=risk_tolerance,
            volatility_adjusted=vol_adjusted,
            maximum_position=MAX_POSITION,
            recommended_size=recommended,
            recommended_amount=account_balance * recommended,
        )

    # ─── Stress Testing ───────────────────────────────────────────────────────

    def perform_stress_test(
        self,
        positions: Sequence[Any],
        correlation_matrix: Optional[Sequence[Sequence[float]]] = None,
    ) -> List[StressTestResult]:
        """
        Apply each historical scenario to the positions.

        Each position's impact is scaled by the mean absolute correlation of
        its row in correlation_matrix (1 when the row is missing).
        """
        matrix = correlation_matrix or []
        factors = []
        for i in range(len(positions)):
            row = matrix[i] if i < len(matrix) else None
            factors.append(sum(abs(c) for c in row) / len(row) if row else 1.0)

        results = []
        for name, change, probability in STRESS_SCENARIOS:
            impact = sum(
                _position_size(p) * change * factors[i] for i, p in enumerate(positions)
            )
            results.append(StressTestResult(name, change, impact, probability))
        logger.debug(f"Stress test over {len(positions)} positions: worst={results[0].portfolio_impact:.2f}")
        return results

    # ─── Limits ───────────────────────────────────────────────────────────────

    def check_trade(
        self,
        position_value: float,
        portfolio_value: float,
        daily_pnl: float = 0.0,
        current_drawdown: float = 0.0,
        profile: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate a proposed position against the profile's limits.

        Returns:
            (allowed, reason). reason is "OK" when allowed.
        """
        limits = risk_limits(profile) if profile else self.limits

        if portfolio_value <= 0:
            return False, f"Invalid portfolio value {portfolio_value:.2f}"
        if position_value <= 0:
            return False, f"Invalid position value {position_value:.2f}"

        max_size = portfolio_value * limits.max_position_size
        if position_value > max_size:
            return False, (
                f"Position {position_value:.2f} exceeds max {max_size:.2f} "
                f"({limits.max_position_size:.0%} of portfolio)"
            )

        daily_loss = abs(min(daily_pnl, 0.0)) / portfolio_value
        if daily_loss >= limits.max_daily_loss:
            return False, (
                f"Daily loss {daily_loss:.2%} reached limit {limits.max_daily_loss:.2%}"
            )

        if current_drawdown >= limits.max_drawdown:
            return False, (
                f"Drawdown {current_drawdown:.2%} reached limit {limits.max_drawdown:.2%}"
            )

        logger.debug(
            f"RiskManager: trade approved, position={position_value:.2f} "
            f"portfolio={portfolio_value:.2f}"
        )
        return True, "OK"

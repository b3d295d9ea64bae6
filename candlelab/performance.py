"""
performance.py — Return-series statistics shared by the backtesters and
the risk manager.

All functions take plain lists of periodic returns (fractions, not
percent) and annualise with `periods` (252 trading days by default).
Degenerate inputs (empty series, zero variance) return 0 rather than
raising, except where noted.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence

TRADING_DAYS = 252


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def population_std(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def sample_std(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / (len(values) - 1))


def simple_returns(values: Sequence[float]) -> List[float]:
    """Period-over-period returns of a price or equity series."""
    return [
        (values[i] - values[i - 1]) / values[i - 1] if values[i - 1] else 0.0
        for i in range(1, len(values))
    ]


def sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.02,
                 periods: int = TRADING_DAYS) -> float:
    """(mean × periods − rf) / (population σ × √periods)"""
    if not returns:
        return 0.0
    vol = population_std(returns) * math.sqrt(periods)
    if vol == 0:
        return 0.0
    return (mean(returns) * periods - risk_free_rate) / vol


def sortino_ratio(returns: Sequence[float], risk_free_rate: float = 0.02,
                  periods: int = TRADING_DAYS) -> float:
    """Infinite when no period lost money."""
    if not returns:
        return 0.0
    negatives = [r for r in returns if r < 0]
    if not negatives:
        return math.inf
    downside = math.sqrt(sum(r * r for r in negatives) / len(negatives) * periods)
    if downside == 0:
        return 0.0
    return (mean(returns) * periods - risk_free_rate) / downside


def value_at_risk(returns: Sequence[float], level: float = 0.05) -> float:
    """Historical VaR: the return at the `level` quantile (a negative number for losses)."""
    if not returns:
        return 0.0
    ordered = sorted(returns)
    return ordered[min(int(level * len(ordered)), len(ordered) - 1)]


def expected_shortfall(returns: Sequence[float], level: float = 0.05) -> float:
    """Mean of the returns at or below VaR."""
    var = value_at_risk(returns, level)
    tail = [r for r in returns if r <= var]
    return mean(tail)


def beta(returns: Sequence[float], benchmark: Sequence[float]) -> float:
    n = min(len(returns), len(benchmark))
    if n == 0:
        return 1.0
    r, b = returns[:n], benchmark[:n]
    mr, mb = mean(r), mean(b)
    cov = sum((r[i] - mr) * (b[i] - mb) for i in range(n))
    var = sum((b[i] - mb) ** 2 for i in range(n))
    return 1.0 if var == 0 else cov / var


def jensen_alpha(returns: Sequence[float], benchmark: Sequence[float], beta_: float,
                 risk_free_rate: float = 0.02, periods: int = TRADING_DAYS) -> float:
    portfolio = mean(returns) * periods
    market = mean(benchmark) * periods
    return portfolio - (risk_free_rate + beta_ * (market - risk_free_rate))


def _excess(returns: Sequence[float], benchmark: Sequence[float]) -> List[float]:
    n = min(len(returns), len(benchmark))
    return [returns[i] - benchmark[i] for i in range(n)]


def information_ratio(returns: Sequence[float], benchmark: Sequence[float]) -> float:
    excess = _excess(returns, benchmark)
    te = sample_std(excess)
    return 0.0 if te == 0 else mean(excess) / te


def tracking_error(returns: Sequence[float], benchmark: Sequence[float],
                   periods: int = TRADING_DAYS) -> float:
    return sample_std(_excess(returns, benchmark)) * math.sqrt(periods)


def ulcer_index(drawdowns: Sequence[float]) -> float:
    """√ mean of squared drawdown fractions."""
    if not drawdowns:
        return 0.0
    return math.sqrt(sum(d * d for d in drawdowns) / len(drawdowns))


def profit_factor(pnls: Sequence[float]) -> float:
    """Gross profit / gross loss; inf with no losses, 0 with no profit."""
    gross_profit = sum(p for p in pnls if p > 0)
    gross_loss = abs(sum(p for p in pnls if p < 0))
    if gross_loss == 0:
        return math.inf if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def max_consecutive(pnls: Sequence[float], wins: bool = True) -> int:
    best = current = 0
    for p in pnls:
        if (p > 0) == wins:
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best


def annualize_return(total_return: float, periods: int, basis: int = 365) -> float:
    """(1 + total)^(basis / periods) − 1; 0 when empty, −1 when wiped out, inf on overflow."""
    if periods <= 0 or total_return <= -1:
        return 0.0 if periods <= 0 else -1.0
    try:
        return (1 + total_return) ** (basis / periods) - 1
    except OverflowError:
        return math.inf


def json_safe(value: float) -> Optional[float]:
    """None for inf/NaN, which JSON cannot carry."""
    return value if math.isfinite(value) else None


def max_drawdown(equity: Sequence[float]) -> float:
    """Largest peak-to-trough decline of an equity series, as a fraction."""
    peak = -math.inf
    worst = 0.0
    for value in equity:
        peak = max(peak, value)
        if peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst

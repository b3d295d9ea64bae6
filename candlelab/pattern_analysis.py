"""
pattern_analysis.py — Volatility-adaptive pattern and volume analysis.

Unlike patterns.py (fixed-threshold scanners over a whole series), this
module inspects one candle in context and returns a single graded signal
used as input for the prediction models:

  - Doji threshold scales with recent volatility (5%–20% of range)
  - Candles much smaller than the average range are ignored
  - Strength blends volume, trend context and range expansion

Usage:
    signal = analyze_patterns(candles, idx)
    volume = analyze_volume(candles, idx)
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class PatternSignals:
    pattern: Optional[str] = None
    strength: float = 0.0
    is_reversal: bool = False
    is_continuation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VolumeAnalysis:
    volume_trend: str = "stable"        # increasing / decreasing / stable
    volume_oscillator: float = 0.0
    on_balance_volume: float = 0.0
    volume_weighted_price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Context Helpers ──────────────────────────────────────────────────────────

def _window(candles: Sequence[Any], idx: int, size: int) -> List[Any]:
    lookback = min(size, idx + 1)
    return list(candles[max(0, idx - lookback + 1): idx + 1])


def recent_volatility(candles: Sequence[Any], idx: int) -> float:
    window = _window(candles, idx, 10)
    if len(window) < 2:
        return 0.02
    returns = [
        (window[i].close - window[i - 1].close) / window[i - 1].close
        for i in range(1, len(window)) if window[i - 1].close
    ]
    if not returns:
        return 0.02
    mean = sum(returns) / len(returns)
    return math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))


def average_range(candles: Sequence[Any], idx: int) -> float:
    window = _window(candles, idx, 20)
    return sum(c.high - c.low for c in window) / len(window)


def average_volume(candles: Sequence[Any], idx: int) -> float:
    window = _window(candles, idx, 10)
    return sum(c.volume for c in window) / len(window)


def trend_context(candles: Sequence[Any], idx: int) -> float:
    """tanh-squashed 10-candle change, in [-1, 1]."""
    window = _window(candles, idx, 10)
    if len(window) < 3 or not window[0].close:
        return 0.0
    return math.tanh((window[-1].close - window[0].close) / window[0].close * 10)


def _at_bottom(candles: Sequence[Any], idx: int) -> bool:
    return candles[idx].low <= min(c.low for c in _window(candles, idx, 5)) * 1.01


def _at_top(candles: Sequence[Any], idx: int) -> bool:
    return candles[idx].high >= max(c.high for c in _window(candles, idx, 5)) * 0.99


def _bullish_engulfing(prev: Any, curr: Any) -> bool:
    return (prev.close < prev.open and curr.close > curr.open
            and curr.open < prev.close and curr.close > prev.open
            and (curr.close - curr.open) > (prev.open - prev.close) * 1.1)


def _bearish_engulfing(prev: Any, curr: Any) -> bool:
    return (prev.close > prev.open and curr.close < curr.open
            and curr.open > prev.close and curr.close < prev.open
            and (curr.open - curr.close) > (prev.close - prev.open) * 1.1)


def pattern_strength(candles: Sequence[Any], idx: int) -> float:
    current = candles[idx]
    strength = 0.7
    if current.volume > average_volume(candles, idx) * 1.5:
        strength += 0.1
    strength += trend_context(candles, idx) * 0.1
    if current.high - current.low > average_range(candles, idx) * 1.2:
        strength += 0.05
    return min(0.95, max(0.5, strength))


def _multi_candle(candles: Sequence[Any], idx: int) -> Optional[PatternSignals]:
    c1, c2, c3 = candles[idx - 2], candles[idx - 1], candles[idx]
    if (c3.close > c3.open and c2.close > c2.open and c1.close > c1.open
            and c3.close > c2.close > c1.close
            and c3.high > c2.high > c1.high):
        return PatternSignals("Three White Soldiers", 0.85, False, True)
    if (c3.close < c3.open and c2.close < c2.open and c1.close < c1.open
            and c3.close < c2.close < c1.close
            and c3.low < c2.low < c1.low):
        return PatternSignals("Three Black Crows", 0.85, False, True)
    return None


# ─── Public API ───────────────────────────────────────────────────────────────

def analyze_patterns(candles: Sequence[Any], idx: int) -> PatternSignals:
    """Grade the candle at idx; returns an empty signal when nothing matches."""
    if idx < 0 or idx >= len(candles):
        return PatternSignals()
    current = candles[idx]

    threshold = max(0.05, min(0.2, recent_volatility(candles, idx) * 2))
    body = abs(current.close - current.open)
    candle_range = current.high - current.low
    upper = current.high - max(current.open, current.close)
    lower = min(current.open, current.close) - current.low

    if candle_range < average_range(candles, idx) * 0.3:
        return PatternSignals()

    if idx >= 2:
        multi = _multi_candle(candles, idx)
        if multi is not None:
            return multi

    if body < candle_range * threshold:
        return PatternSignals("Doji", pattern_strength(candles, idx), True, False)
    if lower > body * 2 and upper < body * 0.5 and _at_bottom(candles, idx):
        return PatternSignals("Hammer", pattern_strength(candles, idx), True, False)
    if upper > body * 2 and lower < body * 0.5 and _at_top(candles, idx):
        return PatternSignals("Shooting Star", pattern_strength(candles, idx), True, False)

    if idx >= 1:
        prev = candles[idx - 1]
        if _bullish_engulfing(prev, current):
            return PatternSignals("Bullish Engulfing", pattern_strength(candles, idx), True, False)
        if _bearish_engulfing(prev, current):
            return PatternSignals("Bearish Engulfing", pattern_strength(candles, idx), True, False)

    return PatternSignals()


def analyze_volume(candles: Sequence[Any], idx: int) -> VolumeAnalysis:
    if not candles or idx < 0:
        return VolumeAnalysis()
    window = _window(candles, min(idx, len(candles) - 1), 20)
    if len(window) < 3:
        return VolumeAnalysis(volume_weighted_price=window[0].close if window else 0.0)

    score = 0
    for period in (3, 5, 10):
        if len(window) >= period * 2:
            early = sum(c.volume for c in window[:period]) / period
            late = sum(c.volume for c in window[-period:]) / period
            if late > early * 1.2:
                score += 1
            elif late < early * 0.8:
                score -= 1
    if score >= 2:
        trend = "increasing"
    elif score <= -2:
        trend = "decreasing"
    else:
        trend = "stable"

    obv = 0.0
    for i in range(1, len(window)):
        if window[i].close > window[i - 1].close:
            obv += window[i].volume
        elif window[i].close < window[i - 1].close:
            obv -= window[i].volume

    total_volume = sum(c.volume for c in window)
    if total_volume > 0:
        vwap = sum((c.high + c.low + c.close) / 3 * c.volume for c in window) / total_volume
    else:
        vwap = window[-1].close

    # Fixed divisors: short windows are averaged as if zero-padded
    short_avg = sum(c.volume for c in window[-5:]) / 5
    long_avg = sum(c.volume for c in window[-10:]) / 10
    oscillator = (short_avg - long_avg) / long_avg * 100 if long_avg > 0 else 0.0

    return VolumeAnalysis(
        volume_trend=trend,
        volume_oscillator=oscillator,
        on_balance_volume=obv,
        volume_weighted_price=vwap,
    )

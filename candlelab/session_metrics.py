"""
session_metrics.py — Live analytics for the candles of one session.

Reads candles from the SessionStore and derives price, trend, volume and
support/resistance figures for the monitoring endpoints. Real-time metrics
are cached per session for `metrics_ttl` seconds and invalidated whenever a
candle in that session changes.

Usage:
    metrics = SessionMetrics(store)
    metrics.trend_direction(session_id)        # "UP" / "DOWN" / "SIDEWAYS"
    metrics.real_time_metrics(session_id).to_dict()
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Sequence

from loguru import logger

from cache import TTLCache
from session_store import Candle, SessionStore


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class VolumeSummary:
    current_volume: float = 0.0
    average_volume: float = 0.0
    volume_ratio: float = 1.0
    volume_trend: str = "STABLE"        # INCREASING / DECREASING / STABLE
    significant_volume_candles: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RealTimeMetrics:
    price_change_percent: float = 0.0
    volatility_index: float = 0.0
    momentum_score: float = 0.0
    support_level: float = 0.0
    resistance_level: float = 0.0
    trend_strength: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Pure Calculations ────────────────────────────────────────────────────────

def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def close_volatility(candles: Sequence[Candle]) -> float:
    """Population std-dev of close-to-close returns, in percent."""
    if len(candles) < 2:
        return 0.0
    returns = [
        (candles[i].close - candles[i - 1].close) / candles[i - 1].close
        for i in range(1, len(candles))
        if candles[i - 1].close
    ]
    if not returns:
        return 0.0
    avg = _mean(returns)
    variance = _mean([(r - avg) ** 2 for r in returns])
    return math.sqrt(variance) * 100


def trend_direction(candles: Sequence[Candle]) -> str:
    if len(candles) < 5:
        return "SIDEWAYS"
    recent = candles[-10:]
    first, last = recent[0].close, recent[-1].close
    if not first:
        return "SIDEWAYS"
    change = (last - first) / first * 100
    if change > 0.5:
        return "UP"
    if change < -0.5:
        return "DOWN"
    return "SIDEWAYS"


def volume_summary(candles: Sequence[Candle]) -> VolumeSummary:
    if not candles:
        return VolumeSummary()
    volumes = [c.volume for c in candles]
    current = volumes[-1]
    average = _mean(volumes)

    recent = volumes[-5:]
    rising = sum(1 for i in range(1, len(recent)) if recent[i] > recent[i - 1])
    falling = sum(1 for i in range(1, len(recent)) if recent[i] < recent[i - 1])
    if rising > falling:
        trend = "INCREASING"
    elif falling > rising:
        trend = "DECREASING"
    else:
        trend = "STABLE"

    significant = [c.candle_index for c in candles if c.volume > average * 1.5]
    return VolumeSummary(
        current_volume=current,
        average_volume=average,
        volume_ratio=current / (average or 1),
        volume_trend=trend,
        significant_volume_candles=significant,
    )


def trend_strength(closes: Sequence[float]) -> float:
    """|total change| × share of moves in the trend direction × 100."""
    if len(closes) < 5 or not closes[0]:
        return 0.0
    total = (closes[-1] - closes[0]) / closes[0]
    moves = sum(
        1
        for i in range(1, len(closes))
        if (total > 0 and closes[i] > closes[i - 1]) or (total < 0 and closes[i] < closes[i - 1])
    )
    consistency = moves / (len(closes) - 1)
    return abs(total) * consistency * 100


def compute_real_time_metrics(candles: Sequence[Candle]) -> RealTimeMetrics:
    if len(candles) < 5:
        return RealTimeMetrics()

    closes = [c.close for c in candles]
    previous = closes[-2]
    change_pct = (closes[-1] - previous) / previous * 100 if previous else 0.0

    ranges = [c.high - c.low for c in candles]
    avg_range = _mean(ranges)
    volatility_index = ranges[-1] / avg_range * 100 if avg_range else 0.0

    momentum = 0.0
    if len(closes) >= 10:
        short_ma = _mean(closes[-5:])
        long_ma = _mean(closes[-10:])
        momentum = (short_ma - long_ma) / long_ma * 100 if long_ma else 0.0

    return RealTimeMetrics(
        price_change_percent=change_pct,
        volatility_index=volatility_index,
        momentum_score=momentum,
        support_level=min(c.low for c in candles),
        resistance_level=max(c.high for c in candles),
        trend_strength=trend_strength(closes),
    )


# ─── SessionMetrics ───────────────────────────────────────────────────────────

class SessionMetrics:
    """Session-scoped analytics backed by a SessionStore."""

    def __init__(self, store: SessionStore, metrics_ttl: float = 30.0) -> None:
        self.store = store
        self._cache = TTLCache(max_size=256, ttl=metrics_ttl)

    def _candles(self, session_id: str) -> List[Candle]:
        return self.store.get_candles(session_id)

    def current_price(self, session_id: str) -> float:
        candles = self._candles(session_id)
        return candles[-1].close if candles else 0.0

    def volatility(self, session_id: str) -> float:
        return close_volatility(self._candles(session_id))

    def trend_direction(self, session_id: str) -> str:
        return trend_direction(self._candles(session_id))

    def volume_analysis(self, session_id: str) -> VolumeSummary:
        return volume_summary(self._candles(session_id))

    def real_time_metrics(self, session_id: str) -> RealTimeMetrics:
        cached = self._cache.get(session_id)
        if cached is not None:
            logger.debug("Metrics cache hit for session {}", session_id)
            return cached

        candles = self._candles(session_id)
        metrics = compute_real_time_metrics(candles)
        # Too few candles: defaults are returned without being cached
        if len(candles) >= 5:
            self._cache.set(session_id, metrics)
        return metrics

    def snapshot(self, session_id: str) -> Dict[str, Any]:
        candles = self._candles(session_id)
        return {
            "session_id": session_id,
            "candle_count": len(candles),
            "current_price": candles[-1].close if candles else 0.0,
            "volatility": close_volatility(candles),
            "trend_direction": trend_direction(candles),
            "volume": volume_summary(candles).to_dict(),
            "real_time": self.real_time_metrics(session_id).to_dict(),
        }

    def invalidate(self, session_id: str) -> None:
        self._cache.delete(session_id)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats().to_dict()

"""
indicators.py — Technical indicators over candle lists.

Scalar helpers return the latest value of an indicator for a window of
candles; RSIIndicator produces a full series and supports streaming
updates, level classification and divergence detection.

Indicators:
  - RSI (Wilder), MACD (12/26/9), Bollinger Bands (20, 2σ)
  - EMA 12/26, Stochastic %K/%D, ATR, ADX

Usage:
    snap = calculate_all(candles, current_index=len(candles) - 1)
    print(snap.rsi, snap.macd["histogram"], snap.bollinger["upper"])

    rsi = RSIIndicator(period=14)
    result = rsi.analyze([c.close for c in candles])
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class TechnicalSnapshot:
    """Latest value of every indicator at one candle index."""
    rsi: float = 50.0
    macd: Dict[str, float] = field(default_factory=lambda: {"line": 0.0, "signal": 0.0, "histogram": 0.0})
    bollinger: Dict[str, float] = field(default_factory=lambda: {"upper": 0.0, "middle": 0.0, "lower": 0.0})
    ema: Dict[str, float] = field(default_factory=lambda: {"ema12": 0.0, "ema26": 0.0})
    stochastic: Dict[str, float] = field(default_factory=lambda: {"k": 50.0, "d": 50.0})
    atr: float = 0.0
    adx: float = 25.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rsi": self.rsi,
            "macd": dict(self.macd),
            "bollinger": dict(self.bollinger),
            "ema": dict(self.ema),
            "stochastic": dict(self.stochastic),
            "atr": self.atr,
            "adx": self.adx,
        }


# ─── Helpers ──────────────────────────────────────────────────────────────────

def ema_array(values: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the first value (no warm-up padding)."""
    if not values:
        return []
    k = 2 / (period + 1)
    out = [float(values[0])]
    for v in values[1:]:
        out.append(v * k + out[-1] * (1 - k))
    return out


def _true_ranges(candles: Sequence[Any]) -> List[float]:
    trs = []
    for i in range(1, len(candles)):
        high, low, prev_close = candles[i].high, candles[i].low, candles[i - 1].close
        trs.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))
    return trs


def _wilder_smooth(values: Sequence[float], period: int) -> float:
    if not values:
        return 0.0
    if len(values) < period:
        return sum(values) / len(values)
    smoothed = sum(values[:period]) / period
    for v in values[period:]:
        smoothed = (smoothed * (period - 1) + v) / period
    return smoothed


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    denom = n * sum_xx - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom


# ─── Scalar Indicators ────────────────────────────────────────────────────────

def calculate_rsi(candles: Sequence[Any], period: int = 14) -> float:
    """Wilder RSI of the last candle; 50 when there is not enough data."""
    if len(candles) < period + 1:
        return 50.0
    closes = [c.close for c in candles]

    avg_gain = avg_loss = 0.0
    for i in range(1, period + 1):
        change = closes[i] - closes[i - 1]
        if change > 0:
            avg_gain += change
        else:
            avg_loss -= change
    avg_gain /= period
    avg_loss /= period

    for i in range(period + 1, len(closes)):
        change = closes[i] - closes[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def calculate_macd(
    candles: Sequence[Any],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> Dict[str, float]:
    closes = [c.close for c in candles]
    fast = ema_array(closes, fast_period)
    slow = ema_array(closes, slow_period)
    if not fast or not slow:
        return {"line": 0.0, "signal": 0.0, "histogram": 0.0}

    history = [f - s for f, s in zip(fast, slow)]
    line = history[-1]
    signal_series = ema_array(history, signal_period)
    signal = signal_series[-1] if signal_series else 0.0
    return {"line": line, "signal": signal, "histogram": line - signal}


def calculate_bollinger_bands(
    candles: Sequence[Any],
    period: int = 20,
    std_dev: float = 2.0,
) -> Dict[str, float]:
    """Bands over the last `period` closes (or all closes if fewer)."""
    if not candles:
        return {"upper": 0.0, "middle": 0.0, "lower": 0.0, "bandwidth": 0.0, "percent_b": 0.5}
    closes = [c.close for c in candles][-period:]
    sma = sum(closes) / len(closes)
    variance = sum((p - sma) ** 2 for p in closes) / len(closes)
    sd = math.sqrt(variance)
    upper, lower = sma + sd * std_dev, sma - sd * std_dev
    width = upper - lower
    return {
        "upper": upper,
        "middle": sma,
        "lower": lower,
        "bandwidth": width / sma if sma else 0.0,
        "percent_b": (closes[-1] - lower) / width if width else 0.5,
    }


def simple_ema(candles: Sequence[Any], period: int) -> float:
    if not candles:
        return 0.0
    return ema_array([c.close for c in candles], period)[-1]


def calculate_ema(candles: Sequence[Any]) -> Dict[str, float]:
    return {"ema12": simple_ema(candles, 12), "ema26": simple_ema(candles, 26)}


def calculate_stochastic(
    candles: Sequence[Any],
    period: int = 14,
    k_smoothing: int = 3,
) -> Dict[str, float]:
    if len(candles) < period:
        return {"k": 50.0, "d": 50.0}

    k_values = []
    for i in range(period - 1, len(candles)):
        window = candles[i - period + 1: i + 1]
        highest = max(c.high for c in window)
        lowest = min(c.low for c in window)
        if highest == lowest:
            k_values.append(50.0)
        else:
            k_values.append((candles[i].close - lowest) / (highest - lowest) * 100)

    recent = k_values[-min(k_smoothing, len(k_values)):]
    return {"k": k_values[-1], "d": sum(recent) / len(recent)}


def calculate_atr(candles: Sequence[Any]) -> float:
    """Mean true range across the window."""
    trs = _true_ranges(candles)
    return sum(trs) / len(trs) if trs else 0.0


def calculate_adx(candles: Sequence[Any], period: int = 14) -> float:
    if len(candles) < period + 1:
        return 25.0

    dm_plus: List[float] = []
    dm_minus: List[float] = []
    for i in range(1, len(candles)):
        up = candles[i].high - candles[i - 1].high
        down = candles[i - 1].low - candles[i].low
        dm_plus.append(up if up > down and up > 0 else 0.0)
        dm_minus.append(down if down > up and down > 0 else 0.0)

    smooth_tr = _wilder_smooth(_true_ranges(candles), period)
    if smooth_tr == 0:
        return 25.0
    di_plus = _wilder_smooth(dm_plus, period) / smooth_tr * 100
    di_minus = _wilder_smooth(dm_minus, period) / smooth_tr * 100
    if di_plus + di_minus == 0:
        return 25.0
    dx = abs(di_plus - di_minus) / (di_plus + di_minus) * 100
    if math.isnan(dx):
        return 25.0
    return min(100.0, max(0.0, dx))


def calculate_all(candles: Sequence[Any], current_index: int) -> TechnicalSnapshot:
    """Every indicator over the (up to) 50 candles ending at current_index."""
    if not candles or current_index < 0:
        return TechnicalSnapshot()
    current_index = min(current_index, len(candles) - 1)
    lookback = min(50, current_index + 1)
    window = list(candles[current_index - lookback + 1: current_index + 1])

    bands = calculate_bollinger_bands(window)
    return TechnicalSnapshot(
        rsi=calculate_rsi(window),
        macd=calculate_macd(window),
        bollinger={"upper": bands["upper"], "middle": bands["middle"], "lower": bands["lower"]},
        ema=calculate_ema(window),
        stochastic=calculate_stochastic(window),
        atr=calculate_atr(window),
        adx=calculate_adx(window),
    )


# ─── RSI Series ───────────────────────────────────────────────────────────────

SMOOTHING_METHODS = ("wilder", "ema", "sma")


@dataclass
class RSIResult:
    values: List[float]
    current: float
    level: str                                  # overbought / oversold / neutral
    divergence: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "values": [None if math.isnan(v) else v for v in self.values],
            "current": self.current,
            "level": self.level,
            "divergence": self.divergence,
        }


class RSIIndicator:
    """
    RSI series with configurable smoothing.

    The first `period` outputs are NaN. Streaming mode continues from the
    averages left by the last call to initialize_streaming().
    """

    def __init__(
        self,
        period: int = 14,
        overbought: float = 70.0,
        oversold: float = 30.0,
        smoothing: str = "wilder",
    ) -> None:
        if period < 1:
            raise ValueError("period must be >= 1")
        if smoothing not in SMOOTHING_METHODS:
            raise ValueError(f"Unknown smoothing '{smoothing}'. Choose: {list(SMOOTHING_METHODS)}")
        self.period = period
        self.overbought = overbought
        self.oversold = oversold
        self.smoothing = smoothing
        self._avg_gain = 0.0
        self._avg_loss = 0.0
        self._streaming = False

    @staticmethod
    def _rsi(avg_gain: float, avg_loss: float) -> float:
        if avg_loss == 0:
            return 100.0
        return 100 - 100 / (1 + avg_gain / avg_loss)

    def _smooth(self, prev: float, new: float, series: List[float], i: int) -> float:
        p = self.period
        if self.smoothing == "ema":
            alpha = 2 / (p + 1)
            return alpha * new + (1 - alpha) * prev
        if self.smoothing == "sma":
            window = series[max(0, i - p + 1): i + 1]
            return sum(window) / len(window)
        return (prev * (p - 1) + new) / p

    def series(self, closes: Sequence[float]) -> List[float]:
        p = self.period
        if len(closes) < p + 1:
            raise ValueError(f"Insufficient data: need {p + 1} points, got {len(closes)}")

        gains = [max(closes[i] - closes[i - 1], 0.0) for i in range(1, len(closes))]
        losses = [max(closes[i - 1] - closes[i], 0.0) for i in range(1, len(closes))]

        avg_gain = sum(gains[:p]) / p
        avg_loss = sum(losses[:p]) / p
        values = [math.nan] * p + [self._rsi(avg_gain, avg_loss)]
        for i in range(p, len(gains)):
            avg_gain = self._smooth(avg_gain, gains[i], gains, i)
            avg_loss = self._smooth(avg_loss, losses[i], losses, i)
            values.append(self._rsi(avg_gain, avg_loss))

        self._avg_gain, self._avg_loss = avg_gain, avg_loss
        return values

    def classify(self, rsi: float) -> str:
        if rsi >= self.overbought:
            return "overbought"
        if rsi <= self.oversold:
            return "oversold"
        return "neutral"

    def detect_divergence(
        self,
        closes: Sequence[float],
        rsi_values: Sequence[float],
        min_points: int = 10,
    ) -> Optional[Dict[str, Any]]:
        if len(closes) < min_points or len(rsi_values) < min_points:
            return None
        recent_prices = list(closes[-min_points:])
        recent_rsi = [v for v in rsi_values[-min_points:] if not math.isnan(v)]
        if len(recent_rsi) < min_points:
            return None

        price_slope = linear_slope(recent_prices)
        rsi_slope = linear_slope(recent_rsi)
        if price_slope < -0.001 and rsi_slope > 0.1:
            return {"type": "bullish", "strength": min(1.0, abs(price_slope) + rsi_slope)}
        if price_slope > 0.001 and rsi_slope < -0.1:
            return {"type": "bearish", "strength": min(1.0, price_slope + abs(rsi_slope))}
        return None

    def detect_level_cross(self, current: float, previous: float) -> Optional[Dict[str, Any]]:
        ob, os_ = self.overbought, self.oversold
        if previous < ob <= current:
            return {"level": ob, "direction": "up"}
        if previous > ob >= current:
            return {"level": ob, "direction": "down"}
        if previous > os_ >= current:
            return {"level": os_, "direction": "down"}
        if previous < os_ <= current:
            return {"level": os_, "direction": "up"}
        return None

    def analyze(self, closes: Sequence[float]) -> RSIResult:
        values = self.series(closes)
        current = values[-1]
        return RSIResult(
            values=values,
            current=current,
            level=self.classify(current),
            divergence=self.detect_divergence(closes, values),
        )

    # ── Streaming ──────────────────────────────────────────────────────────

    def initialize_streaming(self, closes: Sequence[float]) -> float:
        values = self.series(closes)
        self._streaming = True
        logger.debug(f"RSI({self.period}) streaming initialised at {values[-1]:.2f}")
        return values[-1]

    def streaming_update(self, new_price: float, previous_price: float) -> float:
        if not self._streaming:
            raise RuntimeError("RSI not initialized for streaming. Call initialize_streaming() first.")
        change = new_price - previous_price
        gain, loss = max(change, 0.0), max(-change, 0.0)
        p = self.period
        if self.smoothing == "ema":
            alpha = 2 / (p + 1)
            self._avg_gain = alpha * gain + (1 - alpha) * self._avg_gain
            self._avg_loss = alpha * loss + (1 - alpha) * self._avg_loss
        else:
            self._avg_gain = (self._avg_gain * (p - 1) + gain) / p
            self._avg_loss = (self._avg_loss * (p - 1) + loss) / p
        return self._rsi(self._avg_gain, self._avg_loss)

    def reset_streaming(self) -> None:
        self._avg_gain = self._avg_loss = 0.0
        self._streaming = False

"""
feature_extraction.py — Grouped feature vectors for the prediction ensemble.

Builds five feature groups for one candle, using only candles up to that
index:

  technical (9)  RSI, MACD line/signal/histogram, Stochastic K/D, ADX,
                 Bollinger width, position inside the bands
  pattern   (6)  strength, reversal, continuation, pattern code,
                 reliability, frequency
  volume    (4)  ratio to average, trend, oscillator, OBV
  price     (6)  O/C, H/C, L/C, velocity, trend strength, volatility
  momentum  (6)  tanh momentum over 1/3/5/10 bars, acceleration,
                 mean reversion

Each group is then normalised (minmax / zscore / robust). Results are
cached by index, recent closes/volumes and config.

Usage:
    extractor = FeatureExtractor()
    fs = extractor.extract(candles, idx)
    vector = extractor.flatten(fs, size=30)
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from cache import TTLCache
from indicators import calculate_all
from neural_predictor import normalize
from pattern_analysis import analyze_patterns

NORMALIZATION_METHODS = ("minmax", "zscore", "robust")
GROUPS = ("technical", "pattern", "volume", "price", "momentum")

PATTERN_CODES: Dict[str, float] = {
    "Doji": 0.1,
    "Hammer": 0.2,
    "Shooting Star": 0.3,
    "Bullish Engulfing": 0.4,
    "Bearish Engulfing": 0.5,
    "Three White Soldiers": 0.6,
    "Three Black Crows": 0.7,
}


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FeatureConfig:
    lookback: int = 20
    include_volume: bool = True
    include_momentum: bool = True
    include_patterns: bool = True
    normalization: str = "zscore"

    def __post_init__(self) -> None:
        if self.normalization not in NORMALIZATION_METHODS:
            raise ValueError(
                f"Unknown normalization '{self.normalization}'. Choose: {list(NORMALIZATION_METHODS)}"
            )
        if self.lookback < 1:
            raise ValueError("lookback must be at least 1")


@dataclass
class FeatureSet:
    candle_index: int
    technical: List[float] = field(default_factory=list)
    pattern: List[float] = field(default_factory=list)
    volume: List[float] = field(default_factory=list)
    price: List[float] = field(default_factory=list)
    momentum: List[float] = field(default_factory=list)
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Normalisation ────────────────────────────────────────────────────────────

def minmax_normalize(values: List[float]) -> None:
    lo, hi = min(values), max(values)
    if hi == lo:
        return
    for i, v in enumerate(values):
        values[i] = (v - lo) / (hi - lo) * 2 - 1


def zscore_normalize(values: List[float]) -> None:
    m = sum(values) / len(values)
    std = math.sqrt(sum((v - m) ** 2 for v in values) / len(values))
    if std == 0:
        return
    for i, v in enumerate(values):
        values[i] = (v - m) / std


def robust_normalize(values: List[float]) -> None:
    """Centre on the median, scale by the median absolute deviation."""
    ordered = sorted(values)
    median = ordered[len(ordered) // 2]
    mad = sorted(abs(v - median) for v in values)[len(values) // 2]
    if mad == 0:
        return
    for i, v in enumerate(values):
        values[i] = (v - median) / mad


_NORMALIZERS = {
    "minmax": minmax_normalize,
    "zscore": zscore_normalize,
    "robust": robust_normalize,
}


# ─── Group Calculations ───────────────────────────────────────────────────────

def _div(a: float, b: float) -> float:
    return a / b if b else math.nan


def _closes(candles: Sequence[Any]) -> List[float]:
    return [c.close for c in candles]


def volume_trend(volumes: Sequence[float]) -> float:
    """Relative change of the last 3 volumes versus the 3 before."""
    if len(volumes) < 6:
        return 0.0
    recent = sum(volumes[-3:]) / 3
    older = sum(volumes[-6:-3]) / 3
    return (recent - older) / older if older > 0 else 0.0


def volume_oscillator(volumes: Sequence[float]) -> float:
    if len(volumes) < 10:
        return 0.0
    short = sum(volumes[-5:]) / 5
    long = sum(volumes[-10:]) / 10
    return (short - long) / long * 100 if long > 0 else 0.0


def on_balance_volume(candles: Sequence[Any]) -> float:
    obv = 0.0
    for i in range(1, len(candles)):
        if candles[i].close > candles[i - 1].close:
            obv += candles[i].volume
        elif candles[i].close < candles[i - 1].close:
            obv -= candles[i].volume
    return obv


def price_velocity(closes: Sequence[float]) -> float:
    if len(closes) < 3 or not closes[-1]:
        return 0.0
    change = (closes[-1] - closes[-2]) - (closes[-2] - closes[-3])
    return math.tanh(change / closes[-1])


def trend_strength(closes: Sequence[float]) -> float:
    if len(closes) < 5 or not closes[0]:
        return 0.0
    total = (closes[-1] - closes[0]) / closes[0]
    count = sum(
        1 for i in range(1, len(closes))
        if (total > 0 and closes[i] > closes[i - 1]) or (total < 0 and closes[i] < closes[i - 1])
    )
    return math.tanh(total * count / (len(closes) - 1))


def volatility(closes: Sequence[float]) -> float:
    returns = [
        (closes[i] - closes[i - 1]) / closes[i - 1]
        for i in range(1, len(closes)) if closes[i - 1]
    ]
    if not returns:
        return 0.0
    m = sum(returns) / len(returns)
    return math.tanh(math.sqrt(sum((r - m) ** 2 for r in returns) / len(returns)) * 100)


def momentum(closes: Sequence[float], period: int) -> float:
    if len(closes) <= period or not closes[-1 - period]:
        return 0.0
    past = closes[-1 - period]
    return math.tanh((closes[-1] - past) / past)


def acceleration(closes: Sequence[float]) -> float:
    if len(closes) < 4 or not closes[-1]:
        return 0.0
    change = (closes[-1] - closes[-2]) - (closes[-2] - closes[-3])
    return math.tanh(change / closes[-1])


def mean_reversion(closes: Sequence[float]) -> float:
    if len(closes) < 10:
        return 0.0
    sma = sum(closes) / len(closes)
    return math.tanh((closes[-1] - sma) / sma) if sma else 0.0


# ─── Extractor ────────────────────────────────────────────────────────────────

class FeatureExtractor:
    """Feature extraction with a bounded cache of computed FeatureSets."""

    def __init__(self, cache_size: int = 1000) -> None:
        self._cache = TTLCache(max_size=cache_size, ttl=None)

    @staticmethod
    def _cache_key(candles: Sequence[Any], idx: int, config: FeatureConfig) -> tuple:
        recent = tuple((c.close, c.volume) for c in candles[max(0, idx - 20): idx + 1])
        return idx, recent, config

    def extract(
        self,
        candles: Sequence[Any],
        idx: int,
        config: Optional[FeatureConfig] = None,
    ) -> Optional[FeatureSet]:
        """
        Feature groups for the candle at idx.

        Returns None when the series is shorter than config.lookback.

        Raises:
            ValueError: idx outside the series.
        """
        config = config or FeatureConfig()
        if idx < 0 or idx >= len(candles):
            raise ValueError(f"Invalid candle index {idx} for {len(candles)} candles")
        if len(candles) < config.lookback:
            return None

        key = self._cache_key(candles, idx, config)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Feature cache hit idx={idx}")
            return cached

        lookback = min(config.lookback, idx)
        history = list(candles[idx - lookback: idx + 1])
        current = candles[idx]

        features = FeatureSet(
            candle_index=idx,
            technical=self.technical_features(candles, idx),
            pattern=self.pattern_features(candles, idx) if config.include_patterns else [],
            volume=self.volume_features(history) if config.include_volume else [],
            price=self.price_features(history),
            momentum=self.momentum_features(history) if config.include_momentum else [],
            timestamp=getattr(current, "candle_datetime", None),
        )
        normalizer = _NORMALIZERS[config.normalization]
        for group in GROUPS:
            values = getattr(features, group)
            if values:
                normalizer(values)

        self._cache.set(key, features)
        return features

    # ─── Groups ───────────────────────────────────────────────────────────────

    @staticmethod
    def technical_features(candles: Sequence[Any], idx: int) -> List[float]:
        tech = calculate_all(candles, idx)
        close = candles[idx].close
        upper, lower = tech.bollinger["upper"], tech.bollinger["lower"]
        position = 0.5 if upper == lower else (close - lower) / (upper - lower)
        return [
            normalize(tech.rsi, 0, 100),
            normalize(tech.macd["line"], -1, 1),
            normalize(tech.macd["signal"], -1, 1),
            normalize(tech.macd["histogram"], -0.5, 0.5),
            normalize(tech.stochastic["k"], 0, 100),
            normalize(tech.stochastic["d"], 0, 100),
            normalize(tech.adx, 0, 100),
            normalize(upper - lower, 0, close * 0.2),
            position,
        ]

    @staticmethod
    def pattern_features(candles: Sequence[Any], idx: int) -> List[float]:
        signal = analyze_patterns(candles, idx)
        return [
            signal.strength,
            1.0 if signal.is_reversal else 0.0,
            1.0 if signal.is_continuation else 0.0,
            PATTERN_CODES.get(signal.pattern, 0.0) if signal.pattern else 0.0,
            signal.strength * 0.8 + (0.2 if signal.is_reversal else 0.0),
            0.5 if signal.pattern else 0.0,
        ]

    @staticmethod
    def volume_features(history: Sequence[Any]) -> List[float]:
        if not history:
            return [0.0] * 4
        volumes = [c.volume for c in history]
        avg = sum(volumes) / len(volumes)
        ratio = volumes[-1] / avg if avg > 0 else 1.0
        return [
            normalize(ratio, 0.1, 5),
            normalize(volume_trend(volumes), -1, 1),
            normalize(volume_oscillator(volumes), -100, 100),
            normalize(on_balance_volume(history), -1_000_000, 1_000_000),
        ]

    @staticmethod
    def price_features(history: Sequence[Any]) -> List[float]:
        if not history:
            return [0.0] * 6
        c = history[-1]
        closes = _closes(history)
        return [
            normalize(_div(c.open, c.close), 0.95, 1.05),
            normalize(_div(c.high, c.close), 1, 1.1),
            normalize(_div(c.low, c.close), 0.9, 1),
            price_velocity(closes),
            trend_strength(closes),
            volatility(closes),
        ]

    @staticmethod
    def momentum_features(history: Sequence[Any]) -> List[float]:
        closes = _closes(history)
        return [
            momentum(closes, 1),
            momentum(closes, 3),
            momentum(closes, 5),
            momentum(closes, 10),
            acceleration(closes),
            mean_reversion(closes),
        ]

    # ─── Utilities ────────────────────────────────────────────────────────────

    @staticmethod
    def flatten(features: FeatureSet, size: int = 30) -> List[float]:
        """Concatenate the groups, then truncate or zero-pad to `size`."""
        flat = [v for group in GROUPS for v in getattr(features, group)]
        if len(flat) >= size:
            return flat[:size]
        return flat + [0.0] * (size - len(flat))

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats().to_dict()

    def clear_cache(self) -> None:
        self._cache.clear()

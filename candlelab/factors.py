"""
factors.py — Rule-based prediction factors, recommendations and risk notes.

Turns a TechnicalSnapshot plus pattern/volume analysis into six 0–100
factor scores (technical, volume, momentum, volatility, pattern, trend),
combines them with adaptive weights and renders a CALL/PUT recommendation.

PredictionResult is the shared result type of every predictor in the
package (rule-based here, neural_predictor, prediction_engine).

Usage:
    result = build_prediction(candles, idx=len(candles) - 1, interval=5)
    if result:
        print(result.direction, result.probability, result.recommendation)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from indicators import TechnicalSnapshot, calculate_all
from pattern_analysis import PatternSignals, VolumeAnalysis, analyze_patterns, analyze_volume

FACTOR_NAMES = ("technical", "volume", "momentum", "volatility", "pattern", "trend")

DEFAULT_WEIGHTS: Dict[str, float] = {
    "technical": 0.30,
    "volume": 0.15,
    "momentum": 0.25,
    "volatility": 0.15,
    "pattern": 0.10,
    "trend": 0.05,
}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class PredictionResult:
    direction: str                      # UP / DOWN
    probability: float                  # 0–100
    confidence: float                   # 0–100
    interval: int                       # minutes
    factors: Dict[str, float]
    recommendation: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Factors:
    technical: float = 50.0
    volume: float = 50.0
    momentum: float = 50.0
    volatility: float = 50.0
    pattern: float = 50.0
    trend: float = 50.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


# ─── Factor Scoring ───────────────────────────────────────────────────────────

def calculate_advanced_factors(
    candle: Any,
    technical: TechnicalSnapshot,
    patterns: PatternSignals,
    volume: VolumeAnalysis,
) -> Factors:
    tech = 50.0
    if technical.rsi > 70:
        tech -= 20
    elif technical.rsi < 30:
        tech += 20
    else:
        tech += (50 - technical.rsi) * 0.4
    tech += 10 if technical.macd["histogram"] > 0 else -10
    if candle.close > technical.bollinger["upper"]:
        tech -= 15
    elif candle.close < technical.bollinger["lower"]:
        tech += 15

    vol = 50.0
    if volume.volume_trend == "increasing":
        vol += 20
    elif volume.volume_trend == "decreasing":
        vol -= 10

    momentum = 50.0
    momentum += 15 if technical.ema["ema12"] > technical.ema["ema26"] else -15
    if technical.stochastic["k"] > 80:
        momentum -= 10
    elif technical.stochastic["k"] < 20:
        momentum += 10

    volatility = 50.0
    if technical.atr > 0 and candle.close:
        ratio = technical.atr / candle.close
        if ratio > 0.02:
            volatility += 20
        elif ratio < 0.005:
            volatility -= 10

    pattern = 50.0
    if patterns.pattern and patterns.is_reversal:
        pattern += patterns.strength * 30

    trend = 50.0
    if technical.adx > 60:
        trend += 20
    elif technical.adx < 25:
        trend -= 10

    return Factors(
        technical=_clamp(tech, 0, 100),
        volume=_clamp(vol, 0, 100),
        momentum=_clamp(momentum, 0, 100),
        volatility=_clamp(volatility, 0, 100),
        pattern=_clamp(pattern, 0, 100),
        trend=_clamp(trend, 0, 100),
    )


def weighted_score(factors: Factors, weights: Optional[Mapping[str, float]] = None) -> float:
    weights = weights or DEFAULT_WEIGHTS
    values = factors.to_dict()
    return sum(values[name] * weights.get(name, 0.0) for name in FACTOR_NAMES)


def confidence_modifier(technical: TechnicalSnapshot, patterns: PatternSignals) -> float:
    modifier = 1.0
    if technical.adx > 60:
        modifier += 0.2
    if patterns.pattern:
        modifier += patterns.strength * 0.3
    if technical.rsi > 80 or technical.rsi < 20:
        modifier += 0.15
    return min(1.5, modifier)


class FactorModel:
    """Factor weights that drift toward factors with a good recent record."""

    def __init__(self, weights: Optional[Mapping[str, float]] = None) -> None:
        self.weights: Dict[str, float] = dict(weights or DEFAULT_WEIGHTS)

    @staticmethod
    def success_rate(history: Sequence[Mapping[str, Any]]) -> float:
        """Share of resolved predictions that were correct; 0.5 when none are resolved."""
        resolved = [h for h in history if h.get("actual_outcome")]
        if not resolved:
            return 0.5
        return sum(1 for h in resolved if h.get("result")) / len(resolved)

    def update_weights(self, history: Sequence[Mapping[str, Any]]) -> bool:
        """
        Nudge technical/volume weights up when the last 20 results were >70%
        accurate. Returns True when any weight changed.
        """
        if len(history) < 10:
            return False
        rate = self.success_rate(list(history)[-20:])
        if rate <= 0.7:
            return False
        before = dict(self.weights)
        self.weights["technical"] = min(0.4, self.weights["technical"] + 0.05)
        self.weights["volume"] = min(0.3, self.weights["volume"] + 0.02)
        changed = before != self.weights
        if changed:
            logger.info(
                f"FactorModel weights updated: success={rate:.0%} "
                f"technical={self.weights['technical']:.2f} volume={self.weights['volume']:.2f}"
            )
        return changed

    def get_weights(self) -> Dict[str, float]:
        return dict(self.weights)

    def reset(self) -> None:
        self.weights = dict(DEFAULT_WEIGHTS)


# ─── Recommendations ──────────────────────────────────────────────────────────

def generate_recommendation(
    direction: str,
    probability: float,
    interval: int,
    pattern: Optional[str],
    technical: TechnicalSnapshot,
) -> str:
    option = "CALL" if direction == "UP" else "PUT"
    parts = [f"Recommend {option} option for {interval} min"]
    if pattern:
        parts.append(f'Pattern "{pattern}" detected')
    if technical.rsi > 80:
        parts.append("RSI in overbought zone")
    elif technical.rsi < 20:
        parts.append("RSI in oversold zone")
    if probability > 85:
        parts.append("High confidence signal")
    elif probability < 65:
        parts.append("Additional confirmation recommended")
    histogram = technical.macd["histogram"]
    if direction == "UP" and histogram > 0:
        parts.append("MACD supports the bullish trend")
    elif direction == "DOWN" and histogram < 0:
        parts.append("MACD supports the bearish trend")
    return ". ".join(parts) + "."


def risk_warnings(probability: float, volatility: float, technical: TechnicalSnapshot) -> List[str]:
    warnings = []
    if probability < 65:
        warnings.append("Low prediction probability")
    if volatility > 85:
        warnings.append("High market volatility")
    if 70 < technical.rsi <= 80:
        warnings.append("RSI near overbought zone")
    elif 20 <= technical.rsi < 30:
        warnings.append("RSI near oversold zone")
    if technical.adx < 25:
        warnings.append("Weak trend (ADX < 25)")
    return warnings


def risk_score(
    probability: float,
    confidence: float,
    volatility: float,
    technical: TechnicalSnapshot,
) -> float:
    score = 50.0
    score -= (probability - 50) * 0.5
    score -= (confidence - 50) * 0.3
    score += (volatility - 50) * 0.4
    if technical.rsi > 80 or technical.rsi < 20:
        score += 10
    if technical.adx < 25:
        score += 15
    return _clamp(score, 0, 100)


# ─── Rule-based Prediction ────────────────────────────────────────────────────

def build_prediction(
    candles: Sequence[Any],
    idx: int,
    interval: int = 5,
    model: Optional[FactorModel] = None,
) -> Optional[PredictionResult]:
    """
    Deterministic prediction from indicators, pattern and volume analysis.

    Returns None with fewer than 5 candles or an index outside the series.
    """
    if len(candles) < 5 or idx < 0 or idx >= len(candles):
        return None
    current = candles[idx]

    technical = calculate_all(candles, idx)
    patterns = analyze_patterns(candles, idx)
    volume = analyze_volume(candles, idx)
    factors = calculate_advanced_factors(current, technical, patterns, volume)

    score = weighted_score(factors, model.weights if model else None)
    direction = "UP" if score > 50 else "DOWN"
    raw = abs(score - 50) * 2
    probability = _clamp(raw * confidence_modifier(technical, patterns), 55, 95)
    confidence = _clamp(probability - 2.5, 60, 90)

    volatility = factors.volatility
    result = PredictionResult(
        direction=direction,
        probability=round(probability, 1),
        confidence=round(confidence, 1),
        interval=interval,
        factors=factors.to_dict(),
        recommendation=generate_recommendation(
            direction, probability, interval, patterns.pattern, technical
        ),
        metadata={
            "model": "rule_based",
            "weighted_score": round(score, 2),
            "pattern_detected": patterns.pattern,
            "volume_analysis": volume.volume_trend,
            "risk_score": round(risk_score(probability, confidence, volatility, technical), 1),
            "risk_warnings": risk_warnings(probability, volatility, technical),
        },
    )
    logger.debug(
        f"Rule-based prediction idx={idx}: {direction} p={result.probability} score={score:.1f}"
    )
    return result

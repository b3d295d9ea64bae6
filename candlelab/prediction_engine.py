"""
prediction_engine.py — Accuracy-weighted ensemble of small neural networks.

Each model is a ReLU → sigmoid network over a 30-value feature vector
(FeatureExtractor groups, flattened and z-scored). Model weights in the
ensemble are accuracy³, normalised to sum to 1. Results are cached for
five minutes keyed on the recent candles and the prediction interval.

Usage:
    engine = PredictionEngine()
    engine.add_model("trained", weights, accuracy=0.68)
    pred = engine.generate(candles, idx=len(candles) - 1, interval_minutes=15)
    if pred:
        print(pred.result.direction, pred.result.probability, pred.signal_strength)
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from cache import TTLCache
from factors import PredictionResult
from feature_extraction import FeatureConfig, FeatureExtractor, FeatureSet
from network_trainer import NetworkWeights, forward

INPUT_SIZE = 30
DEFAULT_HIDDEN = 64
MIN_CANDLES = 20

INTERVAL_MODIFIERS: Dict[int, float] = {
    1: 0.8,
    5: 0.9,
    15: 0.95,
    30: 1.0,
    60: 1.05,
    240: 1.1,
    1440: 1.15,
}

ENGINE_FEATURES = FeatureConfig(
    lookback=20,
    include_volume=True,
    include_momentum=True,
    include_patterns=True,
    normalization="zscore",
)


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class EnsembleModel:
    id: str
    weights: NetworkWeights
    accuracy: float
    weight: float = 0.0
    last_updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "accuracy": self.accuracy, "weight": self.weight}


@dataclass
class EnsemblePrediction:
    result: PredictionResult
    signal_strength: float
    model_version: str
    candle_index: int
    processing_ms: float = 0.0
    model_outputs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.to_dict()
        return data


def default_weights(input_size: int = INPUT_SIZE, hidden_size: int = DEFAULT_HIDDEN) -> NetworkWeights:
    """Uniform 0.1 weights with zero biases."""
    return NetworkWeights(
        input_hidden=[[0.1] * hidden_size for _ in range(input_size)],
        hidden_output=[0.1] * hidden_size,
        hidden_bias=[0.0] * hidden_size,
        output_bias=0.0,
    )


def zscore(vector: Sequence[float]) -> List[float]:
    m = sum(vector) / len(vector)
    std = math.sqrt(sum((v - m) ** 2 for v in vector) / len(vector))
    if std == 0:
        return list(vector)
    return [(v - m) / std for v in vector]


def _first(values: Sequence[float], default: float = 0.0) -> float:
    return values[0] if values else default


# ─── Scoring ──────────────────────────────────────────────────────────────────

def technical_agreement(technical: Sequence[float]) -> float:
    """|mean vote| of RSI, MACD line vs signal and Stochastic K, in [0, 1]."""
    if len(technical) < 5:
        return 0.0
    votes = [
        1 if technical[0] > 0.4 else -1 if technical[0] < -0.4 else 0,
        1 if technical[1] > technical[2] else -1,
        1 if technical[4] > 0.6 else -1 if technical[4] < -0.6 else 0,
    ]
    return abs(sum(votes)) / len(votes)


def model_confidence(probability: float, features: FeatureSet, accuracy: float) -> float:
    strength = abs(probability - 0.5) * 2
    confidence = (60 + strength * 20) * (0.5 + accuracy * 0.5)
    if features.pattern and features.pattern[0] > 0.7:
        confidence += 5
    if len(features.volume) > 2 and features.volume[2] != 0:
        confidence += 3
    if features.momentum and abs(features.momentum[0]) > 0.5:
        confidence += 2
    confidence += technical_agreement(features.technical) * 10
    return min(95.0, max(50.0, confidence))


def signal_strength(outputs: Sequence[float], features: FeatureSet) -> float:
    m = sum(outputs) / len(outputs)
    consensus = 1 - math.sqrt(sum((p - m) ** 2 for p in outputs) / len(outputs))
    combined = (
        consensus * 0.4
        + abs(_first(features.technical)) * 0.3
        + abs(_first(features.momentum)) * 0.2
        + abs(_first(features.volume)) * 0.1
    )
    return min(1.0, max(0.0, combined))


def adjust_confidence(
    base: float, strength: float, features: FeatureSet, interval_minutes: int
) -> float:
    confidence = base * (0.7 + strength * 0.3)
    confidence *= INTERVAL_MODIFIERS.get(interval_minutes, 1.0)
    if len(features.price) > 5 and abs(features.price[5]) > 0.8:
        confidence *= 0.9
    return min(95.0, max(55.0, confidence))


def ensemble_recommendation(
    direction: str, probability: float, confidence: float, features: FeatureSet
) -> str:
    if probability > 75:
        strength = "Strong"
    elif probability > 65:
        strength = "Moderate"
    else:
        strength = "Weak"
    if confidence > 80:
        level = "high"
    elif confidence > 70:
        level = "medium"
    else:
        level = "low"
    text = f"{strength} {direction.lower()} signal ({probability:.1f}%) with {level} confidence."
    if features.pattern and features.pattern[0] > 0.5:
        text += " Pattern detected."
    if len(features.volume) > 2 and features.volume[2] != 0:
        text += f" Volume {'increasing' if features.volume[2] > 0 else 'decreasing'}."
    return text


# ─── Engine ───────────────────────────────────────────────────────────────────

class PredictionEngine:
    """
    Weighted ensemble with a prediction cache.

    Args:
        extractor: Shared FeatureExtractor (a private one is created if omitted).
        cache: TTLCache for predictions (default 500 entries, 300 s).
    """

    def __init__(
        self,
        extractor: Optional[FeatureExtractor] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.extractor = extractor or FeatureExtractor()
        self.cache = cache or TTLCache(max_size=500, ttl=300)
        self.models: Dict[str, EnsembleModel] = {}
        self._init_default_model()

    def _init_default_model(self) -> None:
        self.add_model("default", default_weights(), 0.6)

    @property
    def version(self) -> str:
        return f"ensemble_v1.0_{len(self.models)}models"

    # ─── Prediction ───────────────────────────────────────────────────────────

    @staticmethod
    def _cache_key(candles: Sequence[Any], idx: int, interval_minutes: int) -> tuple:
        recent = tuple(
            (round(c.close, 2), c.volume) for c in candles[max(0, idx - 5): idx + 1]
        )
        return idx, recent, interval_minutes

    def generate(
        self,
        candles: Sequence[Any],
        idx: int,
        interval_minutes: int = 5,
    ) -> Optional[EnsemblePrediction]:
        """
        Ensemble prediction for the candle at idx.

        Returns None with fewer than 20 candles, idx < 19 or when every model failed.
        """
        if len(candles) < MIN_CANDLES or idx < MIN_CANDLES - 1 or idx >= len(candles):
            return None

        key = self._cache_key(candles, idx, interval_minutes)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Prediction cache hit idx={idx}")
            return cached

        started = time.perf_counter()
        features = self.extractor.extract(candles, idx, ENGINE_FEATURES)
        if features is None:
            return None
        inputs = zscore(self.extractor.flatten(features, INPUT_SIZE))

        weighted = total_weight = confidence_sum = 0.0
        outputs: List[Dict[str, Any]] = []
        for model_id, model in self.models.items():
            try:
                probability = forward(model.weights, inputs)
                confidence = model_confidence(probability, features, model.accuracy)
            except (ArithmeticError, IndexError, TypeError, ValueError) as exc:
                logger.warning(f"Model '{model_id}' prediction failed: {exc}")
                continue
            outputs.append({"id": model_id, "output": probability, "weight": model.weight,
                            "confidence": confidence})
            weighted += probability * model.weight
            total_weight += model.weight
            confidence_sum += confidence * model.weight

        if total_weight == 0:
            logger.warning("No ensemble model produced a prediction")
            return None

        ensemble_prob = weighted / total_weight
        direction = "UP" if ensemble_prob > 0.5 else "DOWN"
        probability = round((ensemble_prob if direction == "UP" else 1 - ensemble_prob) * 100, 1)
        strength = signal_strength([o["output"] for o in outputs], features)
        confidence = round(
            adjust_confidence(confidence_sum / total_weight, strength, features, interval_minutes), 1
        )

        result = PredictionResult(
            direction=direction,
            probability=probability,
            confidence=confidence,
            interval=interval_minutes,
            factors={
                "technical_strength": _first(features.technical),
                "momentum_factor": _first(features.momentum),
                "pattern_confidence": _first(features.pattern),
                "volume_factor": _first(features.volume),
                "trend_factor": features.price[4] if len(features.price) > 4 else 0.0,
                "signal_strength": strength,
                "ensemble_consensus": confidence / 100,
            },
            recommendation=ensemble_recommendation(direction, probability, confidence, features),
            metadata={"model": "ensemble", "model_version": self.version},
        )
        prediction = EnsemblePrediction(
            result=result,
            signal_strength=strength,
            model_version=self.version,
            candle_index=idx,
            processing_ms=(time.perf_counter() - started) * 1000,
            model_outputs=outputs,
        )
        self.cache.set(key, prediction)
        logger.info(
            f"Ensemble prediction idx={idx}: {direction} p={probability} "
            f"conf={confidence} ({self.version})"
        )
        return prediction

    # ─── Model Management ─────────────────────────────────────────────────────

    def _rebalance(self) -> None:
        total = sum(m.accuracy ** 3 for m in self.models.values())
        for model in self.models.values():
            model.weight = model.accuracy ** 3 / total if total else 0.0

    def add_model(self, model_id: str, weights: NetworkWeights, accuracy: float) -> EnsembleModel:
        if weights.input_size != INPUT_SIZE:
            raise ValueError(f"Model input size must be {INPUT_SIZE}, got {weights.input_size}")
        model = EnsembleModel(
            id=model_id,
            weights=weights.copy(),
            accuracy=max(0.5, min(1.0, accuracy)),
        )
        self.models[model_id] = model
        self._rebalance()
        logger.info(
            f"Model '{model_id}' added: accuracy={model.accuracy:.3f} "
            f"weight={model.weight:.3f} ensemble_size={len(self.models)}"
        )
        return model

    def remove_model(self, model_id: str) -> bool:
        if self.models.pop(model_id, None) is None:
            return False
        self._rebalance()
        logger.info(f"Model '{model_id}' removed")
        return True

    def update_model_accuracy(self, model_id: str, accuracy: float) -> bool:
        model = self.models.get(model_id)
        if model is None:
            return False
        model.accuracy = max(0.5, min(1.0, accuracy))
        model.last_updated = time.time()
        self._rebalance()
        logger.info(f"Model '{model_id}' accuracy={model.accuracy:.3f} weight={model.weight:.3f}")
        return True

    def clear_models(self) -> None:
        self.models.clear()
        self._init_default_model()

    def clear_cache(self) -> None:
        self.cache.clear()

    def ensemble_info(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        return {
            "model_version": self.version,
            "model_count": len(self.models),
            "models": [m.to_dict() for m in self.models.values()],
            "cache_size": stats.size,
            "cache_hit_rate": round(stats.hit_rate, 4),
        }

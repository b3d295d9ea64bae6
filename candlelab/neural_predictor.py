"""
neural_predictor.py — Small online neural network for next-candle direction.

A 20 → 15 → 1 sigmoid network fed with hand-built candle features. Every
prediction is stored as a training example (target = the model's own
output) until the real outcome is reported with update_with_actual_result,
which relabels the example and retrains on the most recent batch.

Usage:
    nn = NeuralPredictor(seed=42)
    result = nn.predict(candles, idx=len(candles) - 1, interval_minutes=5)
    ...
    nn.update_with_actual_result(0, "UP")
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from factors import PredictionResult

INPUT_SIZE = 20
HIDDEN_SIZE = 15
LEARNING_RATE = 0.01
MOMENTUM = 0.8
MAX_EXAMPLES = 1000
MIN_TRAINING_EXAMPLES = 50
TRAINING_BATCH = 32


@dataclass
class _Example:
    features: List[float]
    target: float
    timestamp: float = field(default_factory=time.time)


# ─── Feature Helpers ──────────────────────────────────────────────────────────

def normalize(value: float, lo: float, hi: float) -> float:
    """Map [lo, hi] onto [-1, 1], clamped; 0 for NaN/inf or an empty range."""
    if hi == lo or not math.isfinite(value):
        return 0.0
    return max(-1.0, min(1.0, (value - lo) / (hi - lo) * 2 - 1))


def _sigmoid(x: float) -> float:
    if x > 500:
        return 1.0
    if x < -500:
        return 0.0
    return 1 / (1 + math.exp(-x))


def _rsi(candles: Sequence[Any], period: int = 7) -> float:
    """Simple-average RSI over the first `period` changes of the window."""
    if len(candles) < period + 1:
        return 50.0
    gains = losses = 0.0
    for i in range(1, period + 1):
        change = candles[i].close - candles[i - 1].close
        if change > 0:
            gains += change
        else:
            losses -= change
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return 100 - 100 / (1 + rs)


def _sma(candles: Sequence[Any], period: int) -> float:
    window = candles[-period:]
    return sum(c.close for c in window) / len(window) if window else 0.0


def _ema(candles: Sequence[Any], period: int) -> float:
    if not candles:
        return 0.0
    k = 2 / (period + 1)
    value = candles[0].close
    for c in candles[1:]:
        value = (c.close - value) * k + value
    return value


def _volatility(candles: Sequence[Any]) -> float:
    returns = [
        (candles[i].close - candles[i - 1].close) / candles[i - 1].close
        for i in range(1, len(candles))
        if candles[i - 1].close > 0
    ]
    if not returns:
        return 0.0
    m = sum(returns) / len(returns)
    return math.sqrt(sum((r - m) ** 2 for r in returns) / len(returns))


def _trend_strength(candles: Sequence[Any]) -> float:
    """Total change scaled by the share of moves in its direction."""
    if len(candles) < 3 or candles[0].close == 0:
        return 0.0
    total = (candles[-1].close - candles[0].close) / candles[0].close
    consistent = sum(
        1 for i in range(1, len(candles))
        if (total > 0 and candles[i].close > candles[i - 1].close)
        or (total < 0 and candles[i].close < candles[i - 1].close)
    )
    return total * consistent / (len(candles) - 1)


def market_condition(features: Sequence[float]) -> str:
    volatility = abs(features[14])
    trend = features[15]
    if volatility > 0.6:
        return "High volatility"
    if abs(trend) > 0.7:
        return "Strong uptrend" if trend > 0 else "Strong downtrend"
    if volatility < 0.2:
        return "Low volatility"
    return "Normal conditions"


# ─── Network ──────────────────────────────────────────────────────────────────

class NeuralPredictor:
    """
    Online feed-forward network (sigmoid hidden and output layers).

    Args:
        seed: Seed for weight initialisation; None for a random start.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = random.Random(seed)
        self.examples: List[_Example] = []
        self._prev_hidden_output: Optional[List[float]] = None
        self._prev_input_hidden: Optional[List[List[float]]] = None
        self._init_weights()
        logger.info(f"NeuralPredictor initialized: {INPUT_SIZE}→{HIDDEN_SIZE}→1 seed={seed}")

    def _init_weights(self) -> None:
        in_range = math.sqrt(2.0 / INPUT_SIZE)
        hid_range = math.sqrt(2.0 / HIDDEN_SIZE)
        self.input_hidden = [
            [self._rng.uniform(-in_range, in_range) for _ in range(HIDDEN_SIZE)]
            for _ in range(INPUT_SIZE)
        ]
        self.hidden_output = [self._rng.uniform(-hid_range, hid_range) for _ in range(HIDDEN_SIZE)]
        self.hidden_bias = [0.0] * HIDDEN_SIZE
        self.output_bias = 0.0

    # ─── Features ─────────────────────────────────────────────────────────────

    def extract_features(self, candles: Sequence[Any], idx: int) -> List[float]:
        lookback = min(10, idx + 1)
        if lookback < 5:
            return [0.0] * INPUT_SIZE

        window = list(candles[idx - lookback + 1: idx + 1])
        c = window[-1]
        price_range = c.high - c.low
        body = abs(c.close - c.open)
        avg_volume = sum(x.volume for x in window) / len(window)
        sma5 = _sma(window, 5)
        ema3 = _ema(window, 3)
        momentum = (c.close - window[0].close) / window[0].close if window[0].close > 0 else 0.0
        upper = (c.high - max(c.open, c.close)) / price_range if price_range > 0 else None
        lower = (min(c.open, c.close) - c.low) / price_range if price_range > 0 else None

        features = [
            normalize(c.open / c.close if c.close else math.nan, 0.95, 1.05),
            normalize(c.high / c.close if c.close else math.nan, 0.98, 1.02),
            normalize(c.low / c.close if c.close else math.nan, 0.98, 1.02),
            normalize(body / (price_range or 1), 0, 1),
            normalize((c.close - c.open) / c.close if c.close else math.nan, -0.05, 0.05),
            normalize(c.volume / (avg_volume or 1), 0.5, 2.0),
            normalize(math.log(c.volume + 1), 0, 20),
            normalize(_rsi(window), 0, 100),
            normalize(c.close / (sma5 or c.close or 1), 0.95, 1.05),
            normalize(c.close / (ema3 or c.close or 1), 0.98, 1.02),
            normalize(momentum, -0.1, 0.1),
            1.0 if c.close > c.open else -1.0,
            normalize(upper, 0, 1) if upper is not None else 0.0,
            normalize(lower, 0, 1) if lower is not None else 0.0,
            normalize(_volatility(window), 0, 0.1),
            normalize(_trend_strength(window), -1, 1),
            normalize((c.close - sma5) / sma5 if sma5 > 0 else 0.0, -0.05, 0.05),
            normalize(c.volume / avg_volume if avg_volume > 0 else 1.0, 0.1, 3.0),
            normalize(c.close / (c.high + c.low + 0.001), 0.4, 0.6),
            normalize(body / (c.close + 0.001), 0, 0.1),
            math.sin(idx * 0.1),
        ]
        # Cycle term is the 21st value and falls outside the input layer
        return features[:INPUT_SIZE]

    # ─── Forward / Backward ───────────────────────────────────────────────────

    def _forward(self, inputs: Sequence[float]):
        hidden = []
        for j in range(HIDDEN_SIZE):
            total = self.hidden_bias[j]
            for i in range(INPUT_SIZE):
                total += inputs[i] * self.input_hidden[i][j]
            hidden.append(_sigmoid(total))
        out = self.output_bias + sum(h * w for h, w in zip(hidden, self.hidden_output))
        return hidden, _sigmoid(out)

    def forward(self, features: Sequence[float]) -> float:
        return self._forward(features)[1]

    def _backprop(self, example: _Example) -> None:
        hidden, output = self._forward(example.features)
        output_delta = (example.target - output) * output * (1 - output)
        hidden_deltas = [
            output_delta * self.hidden_output[j] * hidden[j] * (1 - hidden[j])
            for j in range(HIDDEN_SIZE)
        ]

        ho_deltas = [LEARNING_RATE * output_delta * hidden[j] for j in range(HIDDEN_SIZE)]
        ih_deltas = [
            [LEARNING_RATE * hidden_deltas[j] * example.features[i] for j in range(HIDDEN_SIZE)]
            for i in range(INPUT_SIZE)
        ]

        for j in range(HIDDEN_SIZE):
            step = ho_deltas[j]
            if self._prev_hidden_output is not None:
                step += MOMENTUM * self._prev_hidden_output[j]
            self.hidden_output[j] += step
        for i in range(INPUT_SIZE):
            for j in range(HIDDEN_SIZE):
                step = ih_deltas[i][j]
                if self._prev_input_hidden is not None:
                    step += MOMENTUM * self._prev_input_hidden[i][j]
                self.input_hidden[i][j] += step

        self._prev_hidden_output = ho_deltas
        self._prev_input_hidden = ih_deltas
        self.output_bias += LEARNING_RATE * output_delta
        for j in range(HIDDEN_SIZE):
            self.hidden_bias[j] += LEARNING_RATE * hidden_deltas[j]

    # ─── Prediction ───────────────────────────────────────────────────────────

    @staticmethod
    def confidence(features: Sequence[float], output: float) -> float:
        value = 60 + abs(output - 0.5) * 60
        trend_features = [features[4], features[9], features[13], features[15]]
        agreement = sum(1 for f in trend_features if (f > 0) == (output > 0.5)) / len(trend_features)
        value *= 0.7 + agreement * 0.3
        value *= 1 - abs(features[14]) * 0.2
        return max(60.0, min(90.0, value))

    @staticmethod
    def factors(features: Sequence[float]) -> Dict[str, float]:
        def clamp(v: float) -> float:
            return max(20.0, min(80.0, v))

        return {
            "technical": clamp(50 + features[7] * 30),
            "volume": clamp(50 + features[5] * 30),
            "momentum": clamp(50 + features[10] * 30),
            "volatility": clamp(50 + features[14] * 30),
            "pattern": clamp(50 + (20 if features[11] > 0 else -20)),
            "trend": clamp(50 + features[15] * 30),
        }

    @staticmethod
    def recommendation(direction: str, probability: float, interval: int) -> str:
        if probability > 80:
            strength = "Strong"
        elif probability > 70:
            strength = "Moderate"
        else:
            strength = "Weak"
        option = "CALL" if direction == "UP" else "PUT"
        return (
            f"{strength} signal for {option} option on {interval} min. "
            f"Success probability: {probability:.1f}%"
        )

    def predict(
        self, candles: Sequence[Any], idx: int, interval_minutes: int = 5
    ) -> Optional[PredictionResult]:
        if idx < 5 or idx >= len(candles):
            return None

        features = self.extract_features(candles, idx)
        output = self.forward(features)
        direction = "UP" if output > 0.5 else "DOWN"
        raw = output if output > 0.5 else 1 - output
        probability = max(55.0, min(95.0, 55 + (raw - 0.5) * 80))
        confidence = self.confidence(features, output)

        self._add_example(features, output)

        return PredictionResult(
            direction=direction,
            probability=round(probability, 1),
            confidence=round(confidence, 1),
            interval=interval_minutes,
            factors=self.factors(features),
            recommendation=self.recommendation(direction, probability, interval_minutes),
            metadata={
                "model": "neural",
                "example_index": len(self.examples) - 1,
                "model_agreement": raw * 100,
                "risk_score": 100 - confidence,
                "market_condition": market_condition(features),
                "model_breakdown": [{"name": "Neural Network", "confidence": raw, "weight": 1.0}],
            },
        )

    # ─── Training ─────────────────────────────────────────────────────────────

    def _add_example(self, features: List[float], target: float) -> None:
        self.examples.append(_Example(list(features), target))
        if len(self.examples) > MAX_EXAMPLES:
            self.examples = self.examples[-MAX_EXAMPLES:]

    def train(self) -> bool:
        """One momentum-SGD pass over the latest batch. False when too few examples."""
        if len(self.examples) < MIN_TRAINING_EXAMPLES:
            logger.debug(f"NeuralPredictor: {len(self.examples)} examples, training skipped")
            return False
        batch = self.examples[-TRAINING_BATCH:]
        for example in batch:
            self._backprop(example)
        logger.debug(f"NeuralPredictor trained on {len(batch)} examples")
        return True

    def update_with_actual_result(self, example_index: int, actual_direction: str) -> bool:
        if actual_direction not in ("UP", "DOWN"):
            raise ValueError(f"Unknown direction '{actual_direction}'. Choose: ['UP', 'DOWN']")
        if not 0 <= example_index < len(self.examples):
            logger.warning(f"NeuralPredictor: example {example_index} not found, outcome ignored")
            return False
        self.examples[example_index].target = 1.0 if actual_direction == "UP" else 0.0
        self.train()
        return True

    def network_stats(self) -> Dict[str, Any]:
        last = None
        if self.examples:
            last = datetime.fromtimestamp(self.examples[-1].timestamp, tz=timezone.utc).isoformat()
        return {
            "training_examples": len(self.examples),
            "network_size": f"{INPUT_SIZE}→{HIDDEN_SIZE}→1",
            "learning_rate": LEARNING_RATE,
            "last_training_time": last,
        }

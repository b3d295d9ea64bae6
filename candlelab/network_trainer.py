"""
network_trainer.py — Mini-batch trainer for single-hidden-layer networks.

Trains the ReLU → sigmoid networks used by the prediction ensemble with:
  - shuffled train/validation split
  - inverted dropout on the hidden layer (training only)
  - binary cross-entropy loss
  - momentum SGD with L2 on the weights (biases are not regularised)
  - early stopping on validation loss, returning the best weights seen

Usage:
    trainer = NetworkTrainer(seed=42)
    weights = trainer.initialize_network(30, 64)
    weights, metrics = trainer.train(weights, examples, TrainingConfig(epochs=50))
    prob_up = trainer.predict_proba(weights, features)
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

BCE_EPSILON = 1e-15
MIN_EXAMPLES = 10


class TrainingError(Exception):
    """Raised when a network cannot be trained on the given data."""


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class NetworkWeights:
    input_hidden: List[List[float]]     # [input][hidden]
    hidden_output: List[float]
    hidden_bias: List[float]
    output_bias: float = 0.0

    @property
    def input_size(self) -> int:
        return len(self.input_hidden)

    @property
    def hidden_size(self) -> int:
        return len(self.hidden_bias)

    def copy(self) -> "NetworkWeights":
        return NetworkWeights(
            input_hidden=[list(row) for row in self.input_hidden],
            hidden_output=list(self.hidden_output),
            hidden_bias=list(self.hidden_bias),
            output_bias=self.output_bias,
        )

    def count(self) -> int:
        return self.input_size * self.hidden_size + 2 * self.hidden_size + 1

    @classmethod
    def zeros(cls, input_size: int, hidden_size: int) -> "NetworkWeights":
        return cls(
            input_hidden=[[0.0] * hidden_size for _ in range(input_size)],
            hidden_output=[0.0] * hidden_size,
            hidden_bias=[0.0] * hidden_size,
            output_bias=0.0,
        )

    @classmethod
    def constant(cls, input_size: int, hidden_size: int, value: float) -> "NetworkWeights":
        return cls(
            input_hidden=[[value] * hidden_size for _ in range(input_size)],
            hidden_output=[value] * hidden_size,
            hidden_bias=[value] * hidden_size,
            output_bias=value,
        )


@dataclass
class TrainingExample:
    features: List[float]
    target: int                         # 1 = UP, 0 = DOWN
    timestamp: float = field(default_factory=time.time)
    weight: float = 1.0


@dataclass
class TrainingConfig:
    learning_rate: float = 0.001
    momentum: float = 0.9
    batch_size: int = 32
    epochs: int = 100
    validation_split: float = 0.2
    early_stopping_patience: int = 10
    dropout_rate: float = 0.1
    l2_regularization: float = 0.001


@dataclass
class TrainingMetrics:
    accuracy: float = 0.5
    loss: float = 1.0
    validation_accuracy: float = 0.5
    validation_loss: float = 1.0
    precision: float = 0.5
    recall: float = 0.5
    f1_score: float = 0.5
    train_time: float = 0.0             # seconds
    epoch: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Math ─────────────────────────────────────────────────────────────────────

def sigmoid(x: float) -> float:
    return 1 / (1 + math.exp(-max(-500.0, min(500.0, x))))


def relu(x: float) -> float:
    return x if x > 0 else 0.0


def bce_loss(prediction: float, target: float) -> float:
    p = max(BCE_EPSILON, min(1 - BCE_EPSILON, prediction))
    return -(target * math.log(p) + (1 - target) * math.log(1 - p))


def forward(weights: NetworkWeights, features: Sequence[float]) -> float:
    """Inference pass (no dropout); returns the sigmoid output."""
    hidden = []
    for j in range(weights.hidden_size):
        total = weights.hidden_bias[j]
        for i, x in enumerate(features[: weights.input_size]):
            total += x * weights.input_hidden[i][j]
        hidden.append(relu(total))
    return sigmoid(weights.output_bias + sum(h * w for h, w in zip(hidden, weights.hidden_output)))


# ─── Trainer ──────────────────────────────────────────────────────────────────

class NetworkTrainer:
    """
    Stateful trainer: keeps momentum buffers, per-epoch history and the best
    validation loss across calls until clear_history().
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = random.Random(seed)
        self._velocity: Optional[NetworkWeights] = None
        self._history: List[TrainingMetrics] = []
        self._best_validation_loss = math.inf

    def initialize_network(self, input_size: int, hidden_size: int) -> NetworkWeights:
        """Xavier-uniform weights and biases."""
        if input_size <= 0 or hidden_size <= 0:
            raise ValueError("input_size and hidden_size must be positive")

        def init(fan_in: int, fan_out: int) -> float:
            limit = math.sqrt(6 / (fan_in + fan_out))
            return self._rng.uniform(-limit, limit)

        weights = NetworkWeights(
            input_hidden=[[init(input_size, hidden_size) for _ in range(hidden_size)]
                          for _ in range(input_size)],
            hidden_output=[init(hidden_size, 1) for _ in range(hidden_size)],
            hidden_bias=[init(1, hidden_size) for _ in range(hidden_size)],
            output_bias=init(1, 1),
        )
        logger.info(
            f"Network initialized: {input_size}→{hidden_size}→1 ({weights.count()} weights)"
        )
        return weights

    # ─── Forward / Backward ───────────────────────────────────────────────────

    def _forward(
        self, features: Sequence[float], weights: NetworkWeights, dropout: float = 0.0
    ) -> Tuple[List[float], float]:
        hidden = []
        for j in range(weights.hidden_size):
            total = weights.hidden_bias[j]
            for i, x in enumerate(features[: weights.input_size]):
                total += x * weights.input_hidden[i][j]
            activation = relu(total)
            if dropout > 0:
                if self._rng.random() < dropout:
                    activation = 0.0
                else:
                    activation /= 1 - dropout
            hidden.append(activation)
        out = weights.output_bias + sum(h * w for h, w in zip(hidden, weights.hidden_output))
        return hidden, out

    def predict_proba(self, weights: NetworkWeights, features: Sequence[float]) -> float:
        """Probability of UP, without dropout."""
        return forward(weights, features)

    @staticmethod
    def _gradients(
        features: Sequence[float], hidden: List[float], prediction: float,
        target: float, weights: NetworkWeights,
    ) -> NetworkWeights:
        out_grad = (target - prediction) * prediction * (1 - prediction)
        hidden_grads = [
            out_grad * weights.hidden_output[j] * (1.0 if hidden[j] > 0 else 0.0)
            for j in range(weights.hidden_size)
        ]
        inputs = list(features[: weights.input_size])
        inputs += [0.0] * (weights.input_size - len(inputs))
        return NetworkWeights(
            input_hidden=[[x * g for g in hidden_grads] for x in inputs],
            hidden_output=[h * out_grad for h in hidden],
            hidden_bias=hidden_grads,
            output_bias=out_grad,
        )

    @staticmethod
    def _accumulate(total: NetworkWeights, grads: NetworkWeights, weight: float) -> None:
        for i, row in enumerate(grads.input_hidden):
            acc = total.input_hidden[i]
            for j, g in enumerate(row):
                acc[j] += g * weight
        for j, g in enumerate(grads.hidden_output):
            total.hidden_output[j] += g * weight
        for j, g in enumerate(grads.hidden_bias):
            total.hidden_bias[j] += g * weight
        total.output_bias += grads.output_bias * weight

    def _apply(
        self, weights: NetworkWeights, grads: NetworkWeights,
        config: TrainingConfig, batch_size: int,
    ) -> None:
        if self._velocity is None or self._velocity.input_size != weights.input_size \
                or self._velocity.hidden_size != weights.hidden_size:
            self._velocity = NetworkWeights.zeros(weights.input_size, weights.hidden_size)
        v = self._velocity
        lr, mom, l2 = config.learning_rate, config.momentum, config.l2_regularization

        for i in range(weights.input_size):
            for j in range(weights.hidden_size):
                g = grads.input_hidden[i][j] / batch_size
                v.input_hidden[i][j] = mom * v.input_hidden[i][j] + lr * (g - l2 * weights.input_hidden[i][j])
                weights.input_hidden[i][j] += v.input_hidden[i][j]
        for j in range(weights.hidden_size):
            g = grads.hidden_output[j] / batch_size
            v.hidden_output[j] = mom * v.hidden_output[j] + lr * (g - l2 * weights.hidden_output[j])
            weights.hidden_output[j] += v.hidden_output[j]
            v.hidden_bias[j] = mom * v.hidden_bias[j] + lr * grads.hidden_bias[j] / batch_size
            weights.hidden_bias[j] += v.hidden_bias[j]
        v.output_bias = mom * v.output_bias + lr * grads.output_bias / batch_size
        weights.output_bias += v.output_bias

    # ─── Epochs ───────────────────────────────────────────────────────────────

    def _train_epoch(
        self, weights: NetworkWeights, train_set: List[TrainingExample], config: TrainingConfig
    ) -> Dict[str, float]:
        shuffled = list(train_set)
        self._rng.shuffle(shuffled)
        batch_size = max(1, config.batch_size)

        batch_losses = []
        correct = tp = fp = fn = 0
        for start in range(0, len(shuffled), batch_size):
            batch = shuffled[start: start + batch_size]
            total = NetworkWeights.zeros(weights.input_size, weights.hidden_size)
            loss = 0.0
            for ex in batch:
                hidden, out = self._forward(ex.features, weights, config.dropout_rate)
                prediction = sigmoid(out)
                loss += bce_loss(prediction, ex.target)
                predicted = 1 if prediction > 0.5 else 0
                correct += predicted == ex.target
                tp += predicted == 1 and ex.target == 1
                fp += predicted == 1 and ex.target == 0
                fn += predicted == 0 and ex.target == 1
                grads = self._gradients(ex.features, hidden, prediction, ex.target, weights)
                self._accumulate(total, grads, ex.weight)
            self._apply(weights, total, config, len(batch))
            batch_losses.append(loss / len(batch))

        precision = tp / (tp + fp) if tp + fp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        return {
            "accuracy": correct / len(shuffled),
            "loss": sum(batch_losses) / len(batch_losses),
            "precision": precision,
            "recall": recall,
            "f1_score": f1,
        }

    def _validate(self, weights: NetworkWeights, examples: List[TrainingExample]) -> Tuple[float, float]:
        """(accuracy, loss) without dropout."""
        loss = 0.0
        correct = 0
        for ex in examples:
            prediction = self.predict_proba(weights, ex.features)
            loss += bce_loss(prediction, ex.target)
            correct += (1 if prediction > 0.5 else 0) == ex.target
        return correct / len(examples), loss / len(examples)

    def _split(
        self, examples: Sequence[TrainingExample], validation_split: float
    ) -> Tuple[List[TrainingExample], List[TrainingExample]]:
        shuffled = list(examples)
        self._rng.shuffle(shuffled)
        cut = int(len(shuffled) * (1 - validation_split))
        cut = max(1, min(len(shuffled), cut))
        return shuffled[:cut], shuffled[cut:]

    def train(
        self,
        weights: NetworkWeights,
        examples: Sequence[TrainingExample],
        config: Optional[TrainingConfig] = None,
    ) -> Tuple[NetworkWeights, TrainingMetrics]:
        """
        Train a copy of `weights`.

        Returns:
            (best_weights, metrics_of_last_epoch). The input weights are not modified.

        Raises:
            TrainingError: fewer than 10 examples.
        """
        config = config or TrainingConfig()
        if len(examples) < MIN_EXAMPLES:
            raise TrainingError(
                f"Insufficient training data: {len(examples)} examples (need {MIN_EXAMPLES})"
            )

        started = time.time()
        train_set, validation_set = self._split(examples, config.validation_split)
        if not validation_set:
            validation_set = train_set

        current = weights.copy()
        best = weights.copy()
        best_loss = math.inf
        patience = 0
        metrics = TrainingMetrics()
        logger.info(
            f"Training started: train={len(train_set)} validation={len(validation_set)} "
            f"epochs={config.epochs} lr={config.learning_rate}"
        )

        for epoch in range(config.epochs):
            epoch_stats = self._train_epoch(current, train_set, config)
            val_acc, val_loss = self._validate(current, validation_set)
            metrics = TrainingMetrics(
                validation_accuracy=val_acc,
                validation_loss=val_loss,
                train_time=time.time() - started,
                epoch=epoch,
                **epoch_stats,
            )
            self._history.append(metrics)

            if val_loss < best_loss:
                best_loss = val_loss
                best = current.copy()
                patience = 0
            else:
                patience += 1
                if patience >= config.early_stopping_patience:
                    logger.info(f"Early stopping at epoch {epoch} (best val loss {best_loss:.4f})")
                    break

            if epoch % 10 == 0 or epoch == config.epochs - 1:
                logger.debug(
                    f"Epoch {epoch}: loss={metrics.loss:.4f} val_loss={val_loss:.4f} "
                    f"acc={metrics.accuracy:.3f}"
                )

        self._best_validation_loss = min(self._best_validation_loss, best_loss)
        logger.info(
            f"Training finished: epochs={metrics.epoch + 1} acc={metrics.accuracy:.3f} "
            f"val_loss={best_loss:.4f} in {time.time() - started:.2f}s"
        )
        return best, metrics

    # ─── History ──────────────────────────────────────────────────────────────

    def history(self) -> List[TrainingMetrics]:
        return list(self._history)

    def best_validation_loss(self) -> float:
        return self._best_validation_loss

    def clear_history(self) -> None:
        self._history = []
        self._velocity = None
        self._best_validation_loss = math.inf

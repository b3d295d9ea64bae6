"""
Tests for network_trainer.py — weight containers, activation/loss helpers
and the mini-batch trainer with early stopping.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import math
import pytest

from network_trainer import (
    NetworkTrainer,
    NetworkWeights,
    TrainingConfig,
    TrainingError,
    TrainingExample,
    bce_loss,
    forward,
    relu,
    sigmoid,
)


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def trainer():
    return NetworkTrainer(seed=42)


@pytest.fixture
def separable():
    """UP when the first feature is positive."""
    out = []
    for i in range(40):
        sign = 1.0 if i % 2 == 0 else -1.0
        out.append(TrainingExample([sign, 0.1 * (i % 3)], 1 if sign > 0 else 0))
    return out


# ─── Weights ──────────────────────────────────────────────────────────────────

class TestNetworkWeights:
    def test_zeros_shape(self):
        w = NetworkWeights.zeros(3, 4)
        assert (w.input_size, w.hidden_size) == (3, 4)
        assert w.count() == 3 * 4 + 2 * 4 + 1

    def test_constant(self):
        w = NetworkWeights.constant(2, 2, 0.5)
        assert w.input_hidden == [[0.5, 0.5], [0.5, 0.5]]
        assert w.output_bias == 0.5

    def test_copy_is_deep(self):
        w = NetworkWeights.zeros(2, 2)
        c = w.copy()
        c.input_hidden[0][0] = 9.0
        c.hidden_output[0] = 9.0
        assert w.input_hidden[0][0] == 0.0
        assert w.hidden_output[0] == 0.0


# ─── Math ─────────────────────────────────────────────────────────────────────

class TestMath:
    def test_sigmoid(self):
        assert sigmoid(0) == 0.5
        assert sigmoid(10_000) == pytest.approx(1.0)
        assert sigmoid(-10_000) == pytest.approx(0.0)

    def test_relu(self):
        assert relu(-2.0) == 0.0
        assert relu(3.0) == 3.0

    def test_bce(self):
        assert bce_loss(0.5, 1) == pytest.approx(math.log(2))
        assert bce_loss(1.0, 1) == pytest.approx(0.0, abs=1e-12)
        assert math.isfinite(bce_loss(0.0, 1))

    def test_forward_zero_weights(self):
        assert forward(NetworkWeights.zeros(3, 2), [1.0, 2.0, 3.0]) == 0.5

    def test_forward_ignores_extra_features(self):
        w = NetworkWeights.constant(2, 2, 0.1)
        assert forward(w, [1.0, 1.0]) == forward(w, [1.0, 1.0, 50.0])


# ─── Trainer ──────────────────────────────────────────────────────────────────

class TestNetworkTrainer:
    def test_initialize_network(self, trainer):
        w = trainer.initialize_network(5, 8)
        limit = math.sqrt(6 / 13)
        assert (w.input_size, w.hidden_size) == (5, 8)
        assert all(abs(x) <= limit for row in w.input_hidden for x in row)

    def test_initialize_invalid(self, trainer):
        with pytest.raises(ValueError):
            trainer.initialize_network(0, 8)

    def test_seeded_init_reproducible(self):
        a = NetworkTrainer(seed=1).initialize_network(3, 3)
        b = NetworkTrainer(seed=1).initialize_network(3, 3)
        assert a == b

    def test_insufficient_data(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        with pytest.raises(TrainingError, match="Insufficient training data"):
            trainer.train(w, separable[:9])

    def test_input_weights_untouched(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        snapshot = w.copy()
        trainer.train(w, separable, TrainingConfig(epochs=3))
        assert w == snapshot

    def test_learns_separable_data(self, trainer, separable):
        w = trainer.initialize_network(2, 8)
        config = TrainingConfig(learning_rate=0.1, epochs=300, batch_size=8,
                                dropout_rate=0.0, early_stopping_patience=300)
        best, metrics = trainer.train(w, separable, config)
        assert trainer.predict_proba(best, [1.0, 0.0]) > 0.5
        assert trainer.predict_proba(best, [-1.0, 0.0]) < 0.5
        assert metrics.validation_loss < math.log(2)

    def test_early_stopping(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        config = TrainingConfig(learning_rate=0.0, momentum=0.0, epochs=50,
                                dropout_rate=0.0, early_stopping_patience=1)
        _, metrics = trainer.train(w, separable, config)
        assert metrics.epoch == 1
        assert len(trainer.history()) == 2

    def test_no_validation_split_uses_train_set(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        _, metrics = trainer.train(w, separable, TrainingConfig(epochs=2, validation_split=0.0))
        assert 0.0 <= metrics.validation_accuracy <= 1.0

    def test_metrics_shape(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        _, metrics = trainer.train(w, separable, TrainingConfig(epochs=2))
        d = metrics.to_dict()
        assert set(d) >= {"accuracy", "loss", "precision", "recall", "f1_score", "epoch"}
        assert d["train_time"] >= 0

    def test_history_and_clear(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        trainer.train(w, separable, TrainingConfig(epochs=3, early_stopping_patience=10))
        assert len(trainer.history()) == 3
        assert math.isfinite(trainer.best_validation_loss())
        trainer.clear_history()
        assert trainer.history() == []
        assert trainer.best_validation_loss() == math.inf

    def test_example_weight_zero_freezes_gradients(self, trainer, separable):
        w = trainer.initialize_network(2, 4)
        frozen = [TrainingExample(e.features, e.target, weight=0.0) for e in separable]
        config = TrainingConfig(epochs=1, dropout_rate=0.0, l2_regularization=0.0)
        best, _ = trainer.train(w, frozen, config)
        assert best == w

"""
test_context.py
~~~~~~~~~~~~~~~

Tests for the recognition context: load-or-train and isolation.
"""

import numpy as np
import pytest

from digit_ocr.config import NetworkConfig, TrainingConfig
from digit_ocr.context import RecognitionContext
from digit_ocr.dataset import LabeledSample, SampleSet
from digit_ocr.errors import ModelFormatError
from digit_ocr.trainer import TrainingOutcome

TINY_CONFIG = NetworkConfig(layers=[4, 6, 1], learning_rate=0.1)
QUICK_TRAINING = TrainingConfig(max_epochs=5000, warmup_epochs=0)


@pytest.fixture
def tiny_samples():
    return SampleSet([
        LabeledSample(np.array([1.0, 0.0, 0.0, 0.0]), 1, 'tiny'),
        LabeledSample(np.array([0.0, 1.0, 1.0, 0.0]), 5, 'tiny'),
    ])


@pytest.mark.unit
class TestRecognitionContext:
    """Test building and using a context."""

    def test_from_config(self, tiny_samples):
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        assert context.network.sizes == [4, 6, 1]
        assert context.samples is tiny_samples
        assert context.trainer is None

    def test_contexts_are_independent(self, tiny_samples):
        """Test that training one context leaves another untouched."""
        first = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        second = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)

        first.train(QUICK_TRAINING)

        assert not np.array_equal(first.network.weights[0], second.network.weights[0])

    def test_load_model_needs_path(self, tiny_samples):
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        with pytest.raises(ValueError):
            context.load_model()

    def test_has_saved_model(self, tiny_samples, tmp_path):
        context = RecognitionContext.from_config(
            TINY_CONFIG, tiny_samples, str(tmp_path / 'model.npz')
        )
        assert not context.has_saved_model()
        assert not RecognitionContext.from_config(TINY_CONFIG).has_saved_model()

    def test_cancel_without_training(self, tiny_samples):
        RecognitionContext.from_config(TINY_CONFIG, tiny_samples).cancel_training()

    def test_cancel_before_training_stops_next_run(self, tiny_samples):
        """Test that a cancel sent before training starts is not lost."""
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        context.cancel_training()

        result = context.train(TrainingConfig(max_epochs=50, warmup_epochs=1000))

        assert result.outcome is TrainingOutcome.CANCELLED
        assert result.epochs == 0
        assert context.trainer is None

    def test_cancel_applies_to_one_run(self, tiny_samples):
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        context.cancel_training()
        context.train(TrainingConfig(max_epochs=50, warmup_epochs=1000))

        result = context.train(TrainingConfig(max_epochs=50, warmup_epochs=1000))

        assert result.outcome is TrainingOutcome.MAX_EPOCHS_EXHAUSTED
        assert result.epochs == 50


@pytest.mark.integration
class TestLoadOrTrain:
    """Test the load-or-train workflow."""

    def test_trains_then_loads(self, tiny_samples, tmp_path):
        """Test that the first run trains and saves and the second run loads."""
        path = str(tmp_path / 'models' / 'tiny.npz')
        updates = []

        first = RecognitionContext.from_config(TINY_CONFIG, tiny_samples, path)
        result = first.load_or_train(QUICK_TRAINING, callback=updates.append)

        assert result.outcome is TrainingOutcome.CONVERGED
        assert updates
        assert first.has_saved_model()

        second = RecognitionContext.from_config(
            NetworkConfig(layers=[4, 6, 1], seed=99), tiny_samples, path
        )
        assert second.load_or_train(QUICK_TRAINING) is None
        np.testing.assert_array_equal(second.network.weights[0], first.network.weights[0])
        assert second.verify().all_correct

    def test_corrupt_model_raises(self, tiny_samples, tmp_path):
        path = tmp_path / 'broken.npz'
        path.write_bytes(b'broken')
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples, str(path))
        with pytest.raises(ModelFormatError):
            context.load_or_train(QUICK_TRAINING)

    def test_predictor_uses_current_network(self, tiny_samples, tmp_path):
        context = RecognitionContext.from_config(TINY_CONFIG, tiny_samples)
        context.train(QUICK_TRAINING)
        assert context.predictor.predict(np.array([1.0, 0.0, 0.0, 0.0])).digit == 1
        assert context.predictor.predict(np.array([0.0, 1.0, 1.0, 0.0])).digit == 5

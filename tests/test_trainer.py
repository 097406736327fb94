"""
test_trainer.py
~~~~~~~~~~~~~~~

Tests for the epoch loop, its progress reporting and convergence.
"""

import numpy as np
import pytest

from digit_ocr.dataset import LabeledSample, SampleSet
from digit_ocr.inference import verify
from digit_ocr.network import NeuralNetwork
from digit_ocr.trainer import Trainer, TrainingOutcome


@pytest.fixture
def tiny_samples():
    """Two separable one-hot samples for a 4-input network."""
    return SampleSet([
        LabeledSample(np.array([1.0, 0.0, 0.0, 0.0]), 2, 'tiny'),
        LabeledSample(np.array([0.0, 0.0, 0.0, 1.0]), 6, 'tiny'),
    ])


@pytest.fixture
def tiny_network():
    return NeuralNetwork(0, [4, 6, 1], ['tanh', 'tanh'], learning_rate=0.1)


@pytest.mark.unit
class TestTrainerArguments:
    """Test argument validation."""

    @pytest.mark.parametrize('kwargs', [
        {'max_epochs': 0},
        {'warmup_epochs': -1},
        {'report_every': 0},
    ])
    def test_invalid_arguments(self, tiny_network, tiny_samples, kwargs):
        with pytest.raises(ValueError):
            Trainer(tiny_network, tiny_samples, **kwargs)

    def test_empty_sample_set(self, tiny_network):
        with pytest.raises(ValueError):
            Trainer(tiny_network, SampleSet())


@pytest.mark.unit
class TestTrainingLoop:
    """Test how training runs and ends."""

    def test_converges_on_separable_samples(self, tiny_network, tiny_samples):
        trainer = Trainer(tiny_network, tiny_samples, max_epochs=5000, warmup_epochs=0)

        result = trainer.train()

        assert result.outcome is TrainingOutcome.CONVERGED
        assert result.converged
        assert result.epochs == trainer.state.epoch
        assert trainer.state.all_correct
        assert verify(tiny_network, tiny_samples).all_correct

    def test_exhausts_epoch_cap(self, tiny_network, tiny_samples):
        """Test that training stops at max_epochs when the check never runs."""
        trainer = Trainer(tiny_network, tiny_samples, max_epochs=30, warmup_epochs=1000)

        result = trainer.train()

        assert result.outcome is TrainingOutcome.MAX_EPOCHS_EXHAUSTED
        assert result.epochs == 30
        assert not result.converged
        assert result.model_path is None

    def test_no_check_during_warmup(self, tiny_network, tiny_samples):
        """Test that convergence is not checked before the warm-up ends."""
        trainer = Trainer(tiny_network, tiny_samples, max_epochs=5000, warmup_epochs=50)

        result = trainer.train()

        assert result.epochs > 50

    def test_callback_reports_progress(self, tiny_network, tiny_samples):
        """Test that the callback fires every report_every epochs and at the end."""
        updates = []
        trainer = Trainer(
            tiny_network, tiny_samples,
            max_epochs=45, warmup_epochs=1000, report_every=20,
            callback=updates.append
        )

        trainer.train()

        assert [u['epoch'] for u in updates] == [20, 40, 45]
        assert all(u['total_epochs'] == 45 for u in updates)
        assert all(u['elapsed_time'] >= 0 for u in updates)
        assert all(u['all_correct'] is False for u in updates)

    def test_callback_reports_convergence(self, tiny_network, tiny_samples):
        updates = []
        trainer = Trainer(
            tiny_network, tiny_samples,
            max_epochs=5000, warmup_epochs=0, report_every=100000,
            callback=updates.append
        )

        result = trainer.train()

        assert updates[-1]['epoch'] == result.epochs
        assert updates[-1]['all_correct'] is True

    def test_yield_func_called_every_epoch(self, tiny_network, tiny_samples):
        calls = []
        trainer = Trainer(
            tiny_network, tiny_samples,
            max_epochs=12, warmup_epochs=1000,
            yield_func=lambda: calls.append(1)
        )

        trainer.train()

        assert len(calls) == 12

    def test_cancel_before_start(self, tiny_network, tiny_samples):
        trainer = Trainer(tiny_network, tiny_samples, max_epochs=100)
        trainer.cancel()

        result = trainer.train()

        assert result.outcome is TrainingOutcome.CANCELLED
        assert result.epochs == 0

    def test_trainer_reusable_after_cancel(self, tiny_network, tiny_samples):
        """Test that a cancelled trainer runs normally when trained again."""
        trainer = Trainer(tiny_network, tiny_samples, max_epochs=20, warmup_epochs=1000)
        trainer.cancel()
        assert trainer.train().outcome is TrainingOutcome.CANCELLED

        result = trainer.train()

        assert result.outcome is TrainingOutcome.MAX_EPOCHS_EXHAUSTED
        assert result.epochs == 20

    def test_cancel_from_callback(self, tiny_network, tiny_samples):
        """Test that a cancel request stops training after the current epoch."""
        trainer = None

        def on_progress(data):
            if data['epoch'] == 10:
                trainer.cancel()

        trainer = Trainer(
            tiny_network, tiny_samples,
            max_epochs=1000, warmup_epochs=1000, report_every=5,
            callback=on_progress
        )

        result = trainer.train()

        assert result.outcome is TrainingOutcome.CANCELLED
        assert result.epochs == 10

    def test_converged_network_saved(self, tiny_network, tiny_samples, tmp_path):
        path = str(tmp_path / 'tiny.npz')
        trainer = Trainer(
            tiny_network, tiny_samples,
            max_epochs=5000, warmup_epochs=0, model_path=path
        )

        result = trainer.train()

        assert result.model_path == path
        loaded = NeuralNetwork.load(path)
        assert loaded.metadata['converged'] is True
        assert loaded.metadata['epochs'] == result.epochs
        assert verify(loaded, tiny_samples).all_correct

    def test_unconverged_network_not_saved(self, tiny_network, tiny_samples, tmp_path):
        path = tmp_path / 'tiny.npz'
        Trainer(
            tiny_network, tiny_samples,
            max_epochs=5, warmup_epochs=1000, model_path=str(path)
        ).train()
        assert not path.exists()


@pytest.mark.integration
@pytest.mark.slow
class TestDigitTraining:
    """Train the full digit network on rendered glyphs."""

    def test_digit_network_learns_every_sample(self, sample_set, tmp_path):
        """Test that the 196-30-30-30-1 tanh network recognises all 30 glyphs."""
        network = NeuralNetwork(0, [196, 30, 30, 30, 1], ['tanh'] * 4)
        path = str(tmp_path / 'digits.npz')

        result = Trainer(
            network, sample_set,
            max_epochs=20000, warmup_epochs=0, model_path=path
        ).train()

        assert result.outcome is TrainingOutcome.CONVERGED
        report = verify(NeuralNetwork.load(path), sample_set)
        assert report.all_correct
        assert report.total == 30

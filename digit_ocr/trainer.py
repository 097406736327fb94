"""
trainer.py
~~~~~~~~~~

Train a network until every labeled sample is recognised.

One epoch runs :meth:`NeuralNetwork.backpropagate` over every sample, digit
0 first. Checking all samples costs a forward pass each, so the check only
starts once ``warmup_epochs`` have passed. Training stops on the first epoch
where every sample is correct, when the epoch cap is hit, or when
:meth:`Trainer.cancel` has been called.

The trainer runs synchronously; callers that need a responsive UI or
server run :meth:`Trainer.train` in a background task and use ``callback``
and ``yield_func`` to report progress.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from digit_ocr.dataset import SampleSet
from digit_ocr.inference import all_samples_correct
from digit_ocr.network import NeuralNetwork

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_EPOCHS = 30000
DEFAULT_WARMUP_EPOCHS = 16000
DEFAULT_REPORT_EVERY = 20


class TrainingOutcome(str, Enum):
    CONVERGED = 'converged'
    MAX_EPOCHS_EXHAUSTED = 'max_epochs_exhausted'
    CANCELLED = 'cancelled'


@dataclass
class TrainingState:
    """Where training is right now. Not persisted."""
    epoch: int = 0
    all_correct: bool = False


@dataclass(frozen=True)
class TrainingResult:
    outcome: TrainingOutcome
    epochs: int
    elapsed_time: float
    model_path: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.outcome is TrainingOutcome.CONVERGED


class Trainer:
    """
    Repeats backpropagation epochs over a sample set until convergence.

    Args:
        network: The network to train (mutated in place)
        samples: Every labeled sample, all of which must be learnt
        max_epochs: Hard cap on the number of epochs
        warmup_epochs: Epochs to run before checking for convergence
        report_every: Call ``callback`` every this many epochs
        model_path: Where to save the network once it converges
        callback: Receives a dict with epoch, total_epochs, elapsed_time
            and all_correct
        yield_func: Called after every epoch, for cooperative multitasking
    """

    def __init__(
        self,
        network: NeuralNetwork,
        samples: SampleSet,
        max_epochs: int = DEFAULT_MAX_EPOCHS,
        warmup_epochs: int = DEFAULT_WARMUP_EPOCHS,
        report_every: int = DEFAULT_REPORT_EVERY,
        model_path: Optional[str] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ):
        if max_epochs < 1:
            raise ValueError(f"max_epochs must be a positive integer, got {max_epochs}")
        if warmup_epochs < 0:
            raise ValueError(f"warmup_epochs must be non-negative, got {warmup_epochs}")
        if report_every < 1:
            raise ValueError(f"report_every must be a positive integer, got {report_every}")
        if len(samples) == 0:
            raise ValueError('Cannot train on an empty sample set')

        self.network = network
        self.samples = samples
        self.max_epochs = max_epochs
        self.warmup_epochs = warmup_epochs
        self.report_every = report_every
        self.model_path = model_path
        self.callback = callback
        self.yield_func = yield_func

        self.state = TrainingState()
        self._cancel_requested = False

    def cancel(self) -> None:
        """
        Stop training after the current epoch finishes.

        Called before :meth:`train`, the next run stops before its first epoch.
        """
        self._cancel_requested = True

    def run_epoch(self) -> None:
        """Backpropagate every sample once, digit by digit."""
        for sample in self.samples:
            self.network.backpropagate(sample.features, sample.target)

    def _report(self, epoch: int, start_time: float) -> None:
        if self.callback is None:
            return
        self.callback({
            'epoch': epoch,
            'total_epochs': self.max_epochs,
            'elapsed_time': time.time() - start_time,
            'all_correct': self.state.all_correct,
        })

    def train(self) -> TrainingResult:
        """
        Train until converged, cancelled or out of epochs.

        Returns:
            TrainingResult describing how training ended

        Raises:
            ModelIOError: If the converged network cannot be saved
        """
        logger.info(
            f"Training {self.network.sizes} on {len(self.samples)} samples: "
            f"max_epochs={self.max_epochs}, warmup={self.warmup_epochs}, "
            f"lr={self.network.learning_rate}"
        )
        start_time = time.time()
        self.state = TrainingState()
        outcome = TrainingOutcome.MAX_EPOCHS_EXHAUSTED

        for epoch in range(self.max_epochs):
            if self._cancel_requested:
                outcome = TrainingOutcome.CANCELLED
                break

            self.run_epoch()
            self.state.epoch = epoch + 1

            if self.state.epoch > self.warmup_epochs:
                self.state.all_correct = all_samples_correct(self.network, self.samples)

            final = self.state.all_correct or self.state.epoch == self.max_epochs
            if final or self.state.epoch % self.report_every == 0:
                logger.debug(f"Epoch {self.state.epoch}/{self.max_epochs}")
                self._report(self.state.epoch, start_time)

            if self.yield_func is not None:
                self.yield_func()

            if self.state.all_correct:
                outcome = TrainingOutcome.CONVERGED
                break

        # A cancel request applies to one run only
        self._cancel_requested = False
        elapsed = time.time() - start_time
        saved_path = None

        if outcome is TrainingOutcome.CONVERGED:
            logger.info(
                f"Training complete after {self.state.epoch} epochs "
                f"({elapsed:.1f}s): all samples recognised"
            )
            if self.model_path:
                self.network.save(self.model_path, metadata={
                    'epochs': self.state.epoch,
                    'samples': len(self.samples),
                    'converged': True,
                })
                saved_path = self.model_path
        elif outcome is TrainingOutcome.CANCELLED:
            logger.info(f"Training cancelled after {self.state.epoch} epochs")
        else:
            logger.warning(
                f"Training stopped at the {self.max_epochs} epoch cap "
                f"without recognising every sample"
            )

        return TrainingResult(outcome, self.state.epoch, elapsed, saved_path)

"""
context.py
~~~~~~~~~~

Everything one recognition session needs, passed around explicitly.

A :class:`RecognitionContext` bundles a network, the samples it learns from
and the file it is saved to. Independent contexts never share state, so
several can be trained side by side.
"""

import logging
import os
from typing import Any, Callable, Dict, Optional

from digit_ocr.config import NetworkConfig, TrainingConfig
from digit_ocr.dataset import SampleSet
from digit_ocr.inference import DiagnosticReport, Predictor, verify
from digit_ocr.network import NeuralNetwork
from digit_ocr.trainer import Trainer, TrainingResult

# Configure module logger
logger = logging.getLogger(__name__)


class RecognitionContext:
    """A network, its training samples and its model file."""

    def __init__(
        self,
        network: NeuralNetwork,
        samples: Optional[SampleSet] = None,
        model_path: Optional[str] = None
    ):
        self.network = network
        self.samples = samples if samples is not None else SampleSet()
        self.model_path = model_path
        self.trainer: Optional[Trainer] = None
        self._cancel_requested = False

    @classmethod
    def from_config(
        cls,
        config: NetworkConfig,
        samples: Optional[SampleSet] = None,
        model_path: Optional[str] = None
    ) -> 'RecognitionContext':
        network = NeuralNetwork(
            config.seed,
            config.layers,
            config.activations,
            zero_bias=config.zero_bias,
            learning_rate=config.learning_rate
        )
        return cls(network, samples, model_path)

    @property
    def predictor(self) -> Predictor:
        return Predictor(self.network)

    def has_saved_model(self) -> bool:
        return bool(self.model_path) and os.path.exists(self.model_path)

    def load_model(self) -> None:
        """
        Replace the network with the one saved at ``model_path``.

        Raises:
            ModelIOError: If the file cannot be read
            ModelFormatError: If the file is not a valid model
        """
        if not self.model_path:
            raise ValueError('No model_path configured')
        self.network = NeuralNetwork.load(self.model_path)

    def train(
        self,
        config: Optional[TrainingConfig] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> TrainingResult:
        """Train on this context's samples, saving on convergence."""
        config = config or TrainingConfig()
        if self.model_path:
            model_dir = os.path.dirname(self.model_path)
            if model_dir and not os.path.exists(model_dir):
                os.makedirs(model_dir)

        self.trainer = Trainer(
            self.network,
            self.samples,
            max_epochs=config.max_epochs,
            warmup_epochs=config.warmup_epochs,
            report_every=config.report_every,
            model_path=self.model_path,
            callback=callback,
            yield_func=yield_func
        )
        if self._cancel_requested:
            self.trainer.cancel()
        try:
            return self.trainer.train()
        finally:
            self.trainer = None
            self._cancel_requested = False

    def cancel_training(self) -> None:
        """
        Stop the current training run, or the next one if it has not started.

        The request is kept until a call to :meth:`train` consumes it.
        """
        self._cancel_requested = True
        if self.trainer is not None:
            self.trainer.cancel()

    def verify(self) -> DiagnosticReport:
        return verify(self.network, self.samples)

    def load_or_train(
        self,
        config: Optional[TrainingConfig] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ) -> Optional[TrainingResult]:
        """
        Load the saved model if there is one, otherwise train a new one.

        Returns:
            The TrainingResult when training ran, None when a model was loaded
        """
        if self.has_saved_model():
            self.load_model()
            logger.info(f"Using saved model {self.model_path}")
            return None

        logger.info('No saved model found, training from scratch')
        return self.train(config, callback=callback)

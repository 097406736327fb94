"""
config.py
~~~~~~~~~

Settings for the network, training and the API server.

Defaults reproduce the setup that reliably learns every digit in 300 fonts:
a 196-30-30-30-1 network with tanh throughout, convergence checks starting
after 16,000 epochs and a cap of 30,000.

Every setting can be overridden from the environment through
:meth:`Settings.from_env`.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from digit_ocr.features import CANVAS_SIZE
from digit_ocr.network import DEFAULT_LEARNING_RATE
from digit_ocr.trainer import (
    DEFAULT_MAX_EPOCHS,
    DEFAULT_REPORT_EVERY,
    DEFAULT_WARMUP_EPOCHS,
)

DEFAULT_LAYERS = [CANVAS_SIZE * CANVAS_SIZE, 30, 30, 30, 1]


@dataclass
class NetworkConfig:
    """Shape and initialization of a new network."""
    layers: List[int] = field(default_factory=lambda: list(DEFAULT_LAYERS))
    activations: Optional[List[str]] = None
    seed: Optional[int] = 0
    zero_bias: bool = False
    learning_rate: float = DEFAULT_LEARNING_RATE

    def __post_init__(self):
        if self.activations is None:
            self.activations = ['tanh'] * (len(self.layers) - 1)


@dataclass
class TrainingConfig:
    """How long to train and how often to report."""
    max_epochs: int = DEFAULT_MAX_EPOCHS
    warmup_epochs: int = DEFAULT_WARMUP_EPOCHS
    report_every: int = DEFAULT_REPORT_EVERY


@dataclass
class Settings:
    """Everything the command line script and API server need."""
    model_dir: str = 'models'
    model_filename: str = 'digits.npz'
    font_dirs: Optional[List[str]] = None
    font_limit: int = 300
    canvas_size: int = CANVAS_SIZE
    log_level: str = 'INFO'
    production: bool = False
    port: int = 8000
    async_mode: str = 'gevent'
    network: NetworkConfig = field(default_factory=NetworkConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)

    @property
    def model_path(self) -> str:
        return os.path.join(self.model_dir, self.model_filename)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Recognised variables: DIGITS_MODEL_DIR, DIGITS_FONT_DIRS
        (os.pathsep separated), DIGITS_FONT_LIMIT, DIGITS_MAX_EPOCHS,
        DIGITS_WARMUP_EPOCHS, DIGITS_LEARNING_RATE, DIGITS_SEED,
        DIGITS_ASYNC_MODE, LOG_LEVEL, FLASK_ENV and PORT.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        settings = cls()

        settings.model_dir = env.get('DIGITS_MODEL_DIR', settings.model_dir)
        font_dirs = env.get('DIGITS_FONT_DIRS')
        if font_dirs:
            settings.font_dirs = [d for d in font_dirs.split(os.pathsep) if d]
        settings.font_limit = int(env.get('DIGITS_FONT_LIMIT', settings.font_limit))
        settings.log_level = env.get('LOG_LEVEL', settings.log_level).upper()
        settings.production = env.get('FLASK_ENV') == 'production'
        settings.port = int(env.get('PORT', settings.port))
        settings.async_mode = env.get('DIGITS_ASYNC_MODE', settings.async_mode)

        training = settings.training
        training.max_epochs = int(env.get('DIGITS_MAX_EPOCHS', training.max_epochs))
        training.warmup_epochs = int(env.get('DIGITS_WARMUP_EPOCHS', training.warmup_epochs))

        network = settings.network
        network.learning_rate = float(env.get('DIGITS_LEARNING_RATE', network.learning_rate))
        if 'DIGITS_SEED' in env:
            seed = env['DIGITS_SEED'].strip().lower()
            network.seed = None if seed in ('', 'none', 'random') else int(seed)

        return settings

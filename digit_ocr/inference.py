"""
inference.py
~~~~~~~~~~~~

Digit predictions and the per-sample verification report.

The network has a single output encoding ``digit / 10``; a prediction is
``round(10 * output)``.
"""

import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image

from digit_ocr import features as feature_extraction
from digit_ocr.dataset import SampleSet
from digit_ocr.network import NeuralNetwork

# Configure module logger
logger = logging.getLogger(__name__)


def decode_output(raw: float) -> int:
    """Digit encoded by a raw network output, before clamping."""
    return int(round(10 * float(raw)))


@dataclass(frozen=True)
class Prediction:
    """A predicted digit and the raw network output it came from."""
    digit: int
    raw: float

    def to_dict(self) -> dict:
        return {'digit': self.digit, 'raw': self.raw}


class Predictor:
    """Runs feature vectors, glyphs and drawings through a trained network."""

    def __init__(self, network: NeuralNetwork):
        self.network = network

    def predict(self, features) -> Prediction:
        """
        Predict the digit for a feature vector.

        The rounded digit is clamped to 0-9; ``raw`` is left untouched.
        """
        raw = float(self.network.feedforward(features)[0])
        digit = min(9, max(0, decode_output(raw)))
        return Prediction(digit, raw)

    def predict_glyph(self, digit: int, font) -> Prediction:
        features, _image = feature_extraction.render_digit(digit, font)
        return self.predict(features)

    def predict_image(self, image: Optional[Image.Image]) -> Prediction:
        return self.predict(feature_extraction.features_from_image(image))

    def predict_drawing(self, image: Optional[Image.Image]) -> Prediction:
        return self.predict(feature_extraction.features_from_drawing(image))


@dataclass(frozen=True)
class ReportRow:
    digit: int
    predicted: int
    font_name: str = ''

    @property
    def match(self) -> bool:
        return self.digit == self.predicted


@dataclass
class DiagnosticReport:
    """Outcome of running every training sample through the network."""
    rows: List[ReportRow] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows)

    @property
    def mismatch_count(self) -> int:
        return sum(1 for row in self.rows if not row.match)

    @property
    def all_correct(self) -> bool:
        return self.mismatch_count == 0

    @property
    def accuracy(self) -> float:
        if not self.rows:
            return 0.0
        return (self.total - self.mismatch_count) / self.total

    def to_csv(self) -> str:
        """One ``digit,predicted,-`` line per sample; mismatches say NO MATCH."""
        buffer = io.StringIO()
        for row in self.rows:
            status = '-' if row.match else 'NO MATCH'
            buffer.write(f"{row.digit},{row.predicted},{status}\n")
        return buffer.getvalue()

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'mismatches': self.mismatch_count,
            'accuracy': self.accuracy,
            'rows': [
                {
                    'digit': row.digit,
                    'predicted': row.predicted,
                    'font': row.font_name,
                    'match': row.match,
                }
                for row in self.rows
            ],
        }


def verify(network: NeuralNetwork, samples: SampleSet) -> DiagnosticReport:
    """Check every sample against the network and report each result."""
    report = DiagnosticReport()
    for sample in samples:
        raw = network.feedforward(sample.features)[0]
        report.rows.append(
            ReportRow(sample.digit, decode_output(raw), sample.font_name)
        )

    if report.all_correct:
        logger.info(f"Verified {report.total} samples: all correct")
    else:
        logger.warning(
            f"Verified {report.total} samples: "
            f"{report.mismatch_count} mismatches"
        )
    return report


def all_samples_correct(network: NeuralNetwork, samples: SampleSet) -> bool:
    """True when every sample decodes to its own digit. Stops at the first miss."""
    for sample in samples:
        if decode_output(network.feedforward(sample.features)[0]) != sample.digit:
            return False
    return True

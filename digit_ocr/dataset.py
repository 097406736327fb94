"""
dataset.py
~~~~~~~~~~

Labeled digit samples grouped by digit.

A :class:`SampleSet` maps each digit 0-9 to the samples rendered for it,
one per font, in rendering order. Samples are immutable once created.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Tuple, Union

import numpy as np

from digit_ocr.features import CANVAS_SIZE, FontLike, load_font, render_digit
from digit_ocr.fonts import FontEntry

# Configure module logger
logger = logging.getLogger(__name__)

DIGITS = tuple(range(10))


@dataclass(frozen=True)
class LabeledSample:
    """A feature vector and the digit it depicts."""
    features: np.ndarray
    digit: int
    font_name: str = ''

    @property
    def target(self) -> np.ndarray:
        """The digit encoded for a single-output network: digit / 10."""
        return np.array([self.digit / 10.0])


class SampleSet:
    """Training samples keyed by digit."""

    def __init__(self, samples: Iterable[LabeledSample] = ()):
        self._by_digit: Dict[int, List[LabeledSample]] = {d: [] for d in DIGITS}
        for sample in samples:
            self.add(sample)

    def add(self, sample: LabeledSample) -> None:
        if sample.digit not in self._by_digit:
            raise ValueError(f"digit must be between 0 and 9, got {sample.digit}")
        self._by_digit[sample.digit].append(sample)

    def for_digit(self, digit: int) -> List[LabeledSample]:
        return list(self._by_digit[digit])

    def __iter__(self) -> Iterator[LabeledSample]:
        """Samples in training order: digit 0 first, fonts in order."""
        for digit in DIGITS:
            yield from self._by_digit[digit]

    def __len__(self) -> int:
        return sum(len(samples) for samples in self._by_digit.values())

    @property
    def font_names(self) -> List[str]:
        names = []
        for sample in self:
            if sample.font_name not in names:
                names.append(sample.font_name)
        return names


FontSource = Union[FontEntry, Tuple[str, FontLike]]


def build_sample_set(
    fonts: Iterable[FontSource],
    canvas_size: int = CANVAS_SIZE
) -> SampleSet:
    """
    Render every digit in every font.

    Fonts that fail to load or render are skipped with a warning so one
    broken file does not stop the whole set from being built.

    Args:
        fonts: FontEntry objects or (name, font) pairs, where font is a path
            or a loaded Pillow font
        canvas_size: Width and height of each rendered digit
    """
    samples = SampleSet()
    rendered_fonts = 0

    for entry in fonts:
        if isinstance(entry, FontEntry):
            name, font = entry.name, entry.path
        else:
            name, font = entry

        try:
            loaded = load_font(font)
            rendered = [
                LabeledSample(render_digit(digit, loaded, canvas_size)[0], digit, name)
                for digit in DIGITS
            ]
        except OSError as e:
            logger.warning(f"Skipping font '{name}': {e}")
            continue

        for sample in rendered:
            samples.add(sample)
        rendered_fonts += 1

    logger.info(
        f"Built sample set: {rendered_fonts} fonts, {len(samples)} samples"
    )
    return samples

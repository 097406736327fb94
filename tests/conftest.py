"""
conftest.py
~~~~~~~~~~~

Shared fixtures: Pillow's bundled font and a small rendered sample set.
"""

import pytest
from PIL import ImageFont

from digit_ocr.dataset import build_sample_set


def bundled_font(size: int = 10):
    """Pillow's built-in font, so tests do not depend on installed fonts."""
    return ImageFont.load_default(size=size)


@pytest.fixture(scope='session')
def font():
    return bundled_font(10)


@pytest.fixture(scope='session')
def sample_set():
    """Every digit rendered at three sizes: 30 samples."""
    return build_sample_set(
        [(f'default-{size}', bundled_font(size)) for size in (9, 10, 11)]
    )

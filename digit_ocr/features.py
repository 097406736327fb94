"""
features.py
~~~~~~~~~~~

Turn digit glyphs and drawings into 14x14 grayscale feature vectors.

Glyphs are painted white on black. Font metrics (advance width and
ascent + descent) are a poor guide to where the ink actually lands, since
digits have no descenders, so each glyph is rendered twice: once to measure
its visual bounding box, and once shifted so that box sits in the middle of
the canvas.

A feature vector is a read-only float64 array of ``canvas_size ** 2``
values in [0, 1], row-major, where 1.0 is a fully lit pixel.
"""

import logging
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from digit_ocr.errors import DimensionMismatchError, InvalidInputError

# Configure module logger
logger = logging.getLogger(__name__)

CANVAS_SIZE = 14
FONT_SIZE = 10
BACKGROUND = 0
FOREGROUND = 255

# Samples this dark in an inverted drawing are treated as blank paper
DRAWING_NOISE_FLOOR = 0.004

FontLike = Union[str, ImageFont.FreeTypeFont, ImageFont.ImageFont]
Bounds = Tuple[int, int, int, int]


def load_font(font: FontLike, size: int = FONT_SIZE):
    """
    Return a Pillow font for ``font``.

    Args:
        font: A path to a TrueType/OpenType file, or an already loaded font
        size: Point size used when ``font`` is a path

    Raises:
        OSError: If the font file cannot be opened
    """
    if isinstance(font, str):
        return ImageFont.truetype(font, size)
    return font


def nominal_size(text: str, font) -> Tuple[float, float]:
    """
    Metric size of ``text``: advance width by ascent + descent.

    This is the box the font claims the text occupies, not where the
    ink lands.
    """
    width = float(font.getlength(text))
    if hasattr(font, 'getmetrics'):
        ascent, descent = font.getmetrics()
        height = float(ascent + descent)
    else:
        # Bitmap fonts carry no metrics
        height = float(font.getbbox(text)[3])
    return max(width, 1.0), max(height, 1.0)


def visual_bounds(image: Image.Image, background: int = BACKGROUND) -> Optional[Bounds]:
    """
    Tight bounding box of every non-background pixel.

    Returns:
        (min_x, min_y, max_x, max_y), inclusive, or None for a blank image
    """
    pixels = np.asarray(image.convert('L'))
    ink = pixels != background
    rows = np.flatnonzero(ink.any(axis=1))
    cols = np.flatnonzero(ink.any(axis=0))
    if rows.size == 0:
        return None
    return int(cols[0]), int(rows[0]), int(cols[-1]), int(rows[-1])


def bounds_center(bounds: Bounds) -> Tuple[float, float]:
    """Centre of an inclusive pixel box, in continuous image coordinates."""
    min_x, min_y, max_x, max_y = bounds
    return (min_x + max_x + 1) / 2.0, (min_y + max_y + 1) / 2.0


def visual_offset(text: str, font) -> Tuple[float, float]:
    """
    How far the ink of ``text`` sits from the centre of its metric box.

    The glyph is drawn at the origin of a scratch canvas of its nominal
    size and every pixel is scanned for the visual bounding box.
    """
    width, height = nominal_size(text, font)
    scratch = Image.new('L', (int(round(width)), int(round(height))), BACKGROUND)
    ImageDraw.Draw(scratch).text((0, 0), text, font=font, fill=FOREGROUND)

    bounds = visual_bounds(scratch)
    if bounds is None:
        return 0.0, 0.0

    center_x, center_y = bounds_center(bounds)
    return center_x - width / 2.0, center_y - height / 2.0


def render_glyph(text: str, font, canvas_size: int = CANVAS_SIZE) -> Image.Image:
    """Render ``text`` white on black with its visual content centred."""
    canvas = Image.new('L', (canvas_size, canvas_size), BACKGROUND)

    width, height = nominal_size(text, font)
    offset_x, offset_y = visual_offset(text, font)

    origin = (
        canvas_size / 2.0 - width / 2.0 - offset_x,
        canvas_size / 2.0 - height / 2.0 - offset_y,
    )
    ImageDraw.Draw(canvas).text(origin, text, font=font, fill=FOREGROUND)
    return canvas


def pixels_from_image(image: Optional[Image.Image], canvas_size: int = CANVAS_SIZE) -> np.ndarray:
    """
    Read one channel per pixel of a canvas-sized image as a feature vector.

    Rendering is monochrome, so the first band carries all the information.

    Raises:
        InvalidInputError: If ``image`` is None
        DimensionMismatchError: If ``image`` is not ``canvas_size`` square
    """
    if image is None:
        raise InvalidInputError('image must be rendered before reading pixels')
    if image.size != (canvas_size, canvas_size):
        raise DimensionMismatchError(
            f"image is {image.size[0]}x{image.size[1]}, "
            f"expected {canvas_size}x{canvas_size}"
        )

    if image.mode not in ('L', 'RGB', 'RGBA'):
        image = image.convert('RGB')
    band = image.getchannel(0) if len(image.getbands()) > 1 else image
    features = np.asarray(band, dtype=np.float64).reshape(-1) / 255.0
    features.flags.writeable = False
    return features


def render_digit(digit: int, font: FontLike, canvas_size: int = CANVAS_SIZE) -> Tuple[np.ndarray, Image.Image]:
    """
    Render ``digit`` in ``font`` and extract its feature vector.

    Returns:
        (features, image) where image is the rendered canvas
    """
    if not 0 <= int(digit) <= 9:
        raise InvalidInputError(f"digit must be between 0 and 9, got {digit}")

    image = render_glyph(str(int(digit)), load_font(font), canvas_size)
    return pixels_from_image(image, canvas_size), image


def scale_to_canvas(
    image: Optional[Image.Image],
    canvas_size: int = CANVAS_SIZE,
    background: int = BACKGROUND
) -> Image.Image:
    """
    Fit ``image`` inside a square canvas without cropping.

    The scale factor is the smaller of the width and height ratios; the
    result is centred and the border filled with ``background``.

    Raises:
        InvalidInputError: If ``image`` is None or has a zero dimension
    """
    if image is None:
        raise InvalidInputError('image is None')

    width, height = image.size
    if width == 0 or height == 0:
        raise InvalidInputError(f"image has invalid dimensions {width}x{height}")

    gray = image.convert('L')
    ratio = min(canvas_size / width, canvas_size / height)
    new_width = max(1, int(round(width * ratio)))
    new_height = max(1, int(round(height * ratio)))
    pos_x = int(round((canvas_size - new_width) / 2))
    pos_y = int(round((canvas_size - new_height) / 2))

    resized = gray.resize((new_width, new_height), Image.BICUBIC)
    canvas = Image.new('L', (canvas_size, canvas_size), background)
    canvas.paste(resized, (pos_x, pos_y))
    return canvas


def features_from_image(
    image: Optional[Image.Image],
    canvas_size: int = CANVAS_SIZE,
    background: int = BACKGROUND
) -> np.ndarray:
    """Scale an arbitrary image into the canvas and extract its features."""
    return pixels_from_image(scale_to_canvas(image, canvas_size, background), canvas_size)


def features_from_drawing(image: Optional[Image.Image], canvas_size: int = CANVAS_SIZE) -> np.ndarray:
    """
    Features for a black-ink-on-white drawing.

    The drawing is padded with white, scaled, then inverted so ink reads as
    lit pixels like a rendered glyph. Near-white specks are flushed to 0.
    """
    scaled = scale_to_canvas(image, canvas_size, background=FOREGROUND)
    features = 1.0 - pixels_from_image(scaled, canvas_size)
    features[features < DRAWING_NOISE_FLOOR] = 0.0
    features.flags.writeable = False
    return features

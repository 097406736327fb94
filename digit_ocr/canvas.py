"""
canvas.py
~~~~~~~~~

A freehand drawing surface.

Strokes are drawn inside :meth:`DrawingCanvas.stroke`, which hands out a
drawing context for the duration of one stroke only. Feature extraction
never sees the live canvas, only an immutable :meth:`snapshot`.
"""

from contextlib import contextmanager
from typing import Generator, Iterable, Optional, Sequence, Tuple

from PIL import Image, ImageDraw

Point = Tuple[int, int]

PAPER = 255
INK = 0
PEN_WIDTH = 8


class DrawingCanvas:
    """Black ink on white paper, drawn one stroke at a time."""

    def __init__(self, width: int = 200, height: int = 200, pen_width: int = PEN_WIDTH):
        if width <= 0 or height <= 0:
            raise ValueError(f"Canvas dimensions must be positive, got {width}x{height}")
        self.pen_width = pen_width
        self._image = Image.new('L', (width, height), PAPER)
        self._last_point: Optional[Point] = None
        self._in_stroke = False

    @property
    def size(self) -> Tuple[int, int]:
        return self._image.size

    def clear(self) -> None:
        if self._in_stroke:
            raise RuntimeError('Cannot clear the canvas while a stroke is in progress')
        self._image = Image.new('L', self._image.size, PAPER)

    @contextmanager
    def stroke(self) -> Generator['_Stroke', None, None]:
        """
        Draw one connected stroke.

        Example:
            >>> with canvas.stroke() as pen:
            ...     pen.move_to(10, 10)
            ...     pen.move_to(40, 60)
        """
        if self._in_stroke:
            raise RuntimeError('A stroke is already in progress')

        self._in_stroke = True
        self._last_point = None
        try:
            yield _Stroke(self, ImageDraw.Draw(self._image))
        finally:
            self._in_stroke = False
            self._last_point = None

    def draw_polyline(self, points: Iterable[Sequence[float]]) -> None:
        """Draw a whole stroke from a list of (x, y) points."""
        with self.stroke() as pen:
            for x, y in points:
                pen.move_to(int(round(x)), int(round(y)))

    def snapshot(self) -> Image.Image:
        """A copy of the drawing that later strokes cannot change."""
        return self._image.copy()


class _Stroke:
    """Drawing context handed out by :meth:`DrawingCanvas.stroke`."""

    def __init__(self, canvas: DrawingCanvas, draw: ImageDraw.ImageDraw):
        self._canvas = canvas
        self._draw = draw

    def move_to(self, x: int, y: int) -> None:
        """Dab the pen at (x, y) and join it to the previous point."""
        radius = self._canvas.pen_width // 2
        self._draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=INK)

        last = self._canvas._last_point
        if last is not None:
            self._draw.line([last, (x, y)], fill=INK, width=self._canvas.pen_width)
        self._canvas._last_point = (x, y)

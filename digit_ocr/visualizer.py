"""
visualizer.py
~~~~~~~~~~~~~

Images of a network and of what it sees.

Rendering uses matplotlib's Agg backend so it works without a display.
None of these functions modify the network.
"""

import base64
import logging
from io import BytesIO
from typing import List, Optional

import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.collections import LineCollection
from matplotlib.figure import Figure
from PIL import Image

from digit_ocr.errors import InvalidInputError
from digit_ocr.features import CANVAS_SIZE
from digit_ocr.network import NeuralNetwork

# Configure module logger
logger = logging.getLogger(__name__)

DPI = 100
POSITIVE_COLOR = (0.12, 0.47, 0.71)
NEGATIVE_COLOR = (0.84, 0.15, 0.16)


def _node_positions(sizes: List[int]) -> List[np.ndarray]:
    """(x, y) of every neuron in unit coordinates, one array per layer."""
    positions = []
    columns = len(sizes)
    for layer, size in enumerate(sizes):
        x = (layer + 0.5) / columns
        y = (np.arange(size) + 0.5) / size
        positions.append(np.column_stack([np.full(size, x), 1.0 - y]))
    return positions


def render_network(network: NeuralNetwork, width: int, height: int) -> Image.Image:
    """
    Draw every neuron and connection of ``network``.

    Neurons are placed in one column per layer. Each connection's line width
    and opacity grow with the magnitude of its weight; positive weights are
    blue and negative weights red.

    Args:
        network: Network to draw
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        RGB PIL image of exactly width x height pixels

    Raises:
        InvalidInputError: If width or height is not positive
    """
    if width <= 0 or height <= 0:
        raise InvalidInputError(
            f"Image dimensions must be positive, got {width}x{height}"
        )

    fig = Figure(figsize=(width / DPI, height / DPI), dpi=DPI)
    canvas = FigureCanvasAgg(fig)
    ax = fig.add_axes([0, 0, 1, 1])
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.axis('off')

    positions = _node_positions(network.sizes)
    largest = max(float(np.max(np.abs(w))) for w in network.weights) or 1.0

    for layer, weights in enumerate(network.weights):
        source, target = positions[layer], positions[layer + 1]
        rows, cols = np.indices(weights.shape)
        segments = np.stack(
            [source[cols.ravel()], target[rows.ravel()]], axis=1
        )
        strength = np.abs(weights.ravel()) / largest
        base = np.where(
            (weights.ravel() >= 0)[:, None], POSITIVE_COLOR, NEGATIVE_COLOR
        )
        colors = np.column_stack([base, 0.05 + 0.75 * strength])
        ax.add_collection(LineCollection(
            segments, colors=colors, linewidths=0.1 + 1.9 * strength
        ))

    node_size = float(np.clip(0.5 * height / max(network.sizes), 2, 40)) ** 2
    for layer_positions in positions:
        ax.scatter(
            layer_positions[:, 0], layer_positions[:, 1],
            s=node_size, c='white', edgecolors='black', linewidths=0.5,
            zorder=3
        )

    canvas.draw()
    image = Image.fromarray(np.asarray(canvas.buffer_rgba())).convert('RGB')
    if image.size != (width, height):
        image = image.resize((width, height), Image.BICUBIC)

    logger.debug(f"Rendered network {network.sizes} at {width}x{height}")
    return image


def render_features(features, scale: int = 15, canvas_size: int = CANVAS_SIZE) -> Image.Image:
    """
    Enlarge a feature vector so each pixel becomes a scale x scale square.

    Lit pixels are drawn black on white.
    """
    if scale <= 0:
        raise InvalidInputError(f"scale must be positive, got {scale}")

    values = np.asarray(features, dtype=np.float64).reshape(canvas_size, canvas_size)
    gray = np.round((1.0 - np.clip(values, 0.0, 1.0)) * 255).astype(np.uint8)
    size = canvas_size * scale
    return Image.fromarray(gray).resize((size, size), Image.NEAREST)


def image_to_png_bytes(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


def render_prediction_png(
    features,
    predicted: int,
    actual: Optional[int] = None,
    canvas_size: int = CANVAS_SIZE
) -> str:
    """
    Create a base64-encoded PNG of a digit with its prediction as the title.

    Args:
        features: Feature vector of the digit
        predicted: The digit the network predicted (0-9)
        actual: The correct digit, when known

    Returns:
        Base64-encoded PNG image string
    """
    fig = Figure(figsize=(3, 3))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)
    ax.imshow(
        np.asarray(features).reshape(canvas_size, canvas_size),
        cmap='gray', vmin=0.0, vmax=1.0
    )
    title = f"Predicted: {predicted}"
    if actual is not None:
        title += f" | Actual: {actual}"
    ax.set_title(title)
    ax.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    return base64.b64encode(buffer.getvalue()).decode('utf-8')


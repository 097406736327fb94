"""
network.py
~~~~~~~~~~

A feedforward neural network trained one sample at a time by backpropagation.

Each layer transition ``l`` owns a weight matrix ``weights[l]`` of shape
``(sizes[l + 1], sizes[l])`` and a bias vector ``biases[l]`` of length
``sizes[l + 1]``. Inputs and outputs are flat 1-D vectors.

The network is saved as a self-describing ``.npz`` archive, so a loaded
model can be checked against its declared topology before it is used.
"""

import json
import logging
import zipfile
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from digit_ocr.activations import ActivationFunction
from digit_ocr.errors import DimensionMismatchError, ModelFormatError, ModelIOError

# Configure module logger
logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
DEFAULT_LEARNING_RATE = 0.01


class NeuralNetwork:
    """
    Multilayer perceptron with a selectable activation per layer.

    Args:
        seed: Seed for weight initialization. Any integer (0 included) gives
            reproducible weights; None draws fresh entropy.
        layers: Layer widths, input layer first, output layer last.
        activations: One activation per layer transition. Extra entries are
            ignored.
        zero_bias: Start every bias at 0 instead of a random value.
        learning_rate: Step size used by :meth:`backpropagate`.

    Example:
        >>> net = NeuralNetwork(0, [196, 30, 30, 30, 1], ['tanh'] * 4)
        >>> net.feedforward(np.zeros(196)).shape
        (1,)
    """

    def __init__(
        self,
        seed: Optional[int],
        layers: Sequence[int],
        activations: Sequence[Union[str, ActivationFunction]],
        zero_bias: bool = False,
        learning_rate: float = DEFAULT_LEARNING_RATE
    ):
        sizes = [int(size) for size in layers]
        if len(sizes) < 2:
            raise ValueError(
                f"A network needs at least 2 layers, got {len(sizes)}"
            )
        if any(size < 1 for size in sizes):
            raise ValueError(f"Layer widths must be positive, got {sizes}")

        transitions = len(sizes) - 1
        if len(activations) < transitions:
            raise ValueError(
                f"Expected {transitions} activations for layers {sizes}, "
                f"got {len(activations)}"
            )
        if len(activations) > transitions:
            logger.debug(
                f"Ignoring {len(activations) - transitions} extra "
                f"activation entries"
            )

        if learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {learning_rate}"
            )

        self.sizes: List[int] = sizes
        self.num_layers = len(sizes)
        self.activations: List[ActivationFunction] = [
            ActivationFunction.parse(a) for a in activations[:transitions]
        ]
        self.zero_bias = bool(zero_bias)
        self.learning_rate = float(learning_rate)
        self.metadata: Dict[str, Any] = {}

        rng = np.random.default_rng(seed)
        self.weights: List[np.ndarray] = [
            rng.random((n_out, n_in)) - 0.5
            for n_in, n_out in zip(sizes[:-1], sizes[1:])
        ]
        if self.zero_bias:
            self.biases: List[np.ndarray] = [np.zeros(n) for n in sizes[1:]]
        else:
            self.biases = [rng.random(n) - 0.5 for n in sizes[1:]]

    def __repr__(self) -> str:
        names = ','.join(a.value for a in self.activations)
        return f"NeuralNetwork(sizes={self.sizes}, activations=[{names}])"

    @property
    def input_size(self) -> int:
        return self.sizes[0]

    @property
    def output_size(self) -> int:
        return self.sizes[-1]

    @property
    def parameter_count(self) -> int:
        """Total number of weights and biases."""
        return sum(w.size + b.size for w, b in zip(self.weights, self.biases))

    def _as_vector(self, values, width: int, name: str) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float64).reshape(-1)
        if vector.size != width:
            raise DimensionMismatchError(
                f"{name} has length {vector.size}, network expects {width}"
            )
        return vector

    def _forward(self, x: np.ndarray) -> List[np.ndarray]:
        """Return the activations of every layer, input included."""
        outputs = [x]
        a = x
        for w, b, activation in zip(self.weights, self.biases, self.activations):
            a = activation.apply(w @ a + b)
            outputs.append(a)
        return outputs

    def feedforward(self, x) -> np.ndarray:
        """
        Propagate ``x`` through the network and return the output layer.

        Raises:
            DimensionMismatchError: If ``x`` does not match the input width
        """
        vector = self._as_vector(x, self.input_size, 'input')
        return self._forward(vector)[-1]

    def backpropagate(self, x, expected) -> None:
        """
        Apply one stochastic gradient step for a single training pair.

        The output error is scaled by the output activation's derivative and
        pushed back through every layer; each weight and bias then moves by
        ``learning_rate`` times its gradient, reducing the squared error.

        Raises:
            DimensionMismatchError: If ``x`` or ``expected`` has the wrong length
        """
        vector = self._as_vector(x, self.input_size, 'input')
        target = self._as_vector(expected, self.output_size, 'expected output')

        outputs = self._forward(vector)
        delta = (target - outputs[-1]) * self.activations[-1].derivative(outputs[-1])

        for layer in range(len(self.weights) - 1, -1, -1):
            previous = outputs[layer]
            if layer > 0:
                # Computed from the weights before this layer is updated
                next_delta = (
                    (self.weights[layer].T @ delta)
                    * self.activations[layer - 1].derivative(previous)
                )
            self.weights[layer] += self.learning_rate * np.outer(delta, previous)
            self.biases[layer] += self.learning_rate * delta
            if layer > 0:
                delta = next_delta

    def squared_error(self, x, expected) -> float:
        """Sum of squared differences between the output and ``expected``."""
        target = self._as_vector(expected, self.output_size, 'expected output')
        return float(np.sum((self.feedforward(x) - target) ** 2))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Write topology, activations and all parameters to ``path``.

        Args:
            path: Destination file. Written as-is; no extension is appended.
            metadata: JSON-serializable extras stored alongside the model

        Raises:
            ModelIOError: If the file cannot be written
        """
        if metadata is not None:
            self.metadata = dict(metadata)

        arrays = {
            'format_version': np.array(FORMAT_VERSION),
            'layer_sizes': np.array(self.sizes, dtype=np.int64),
            'activations': np.array([a.value for a in self.activations]),
            'learning_rate': np.array(self.learning_rate),
            'zero_bias': np.array(self.zero_bias),
            'metadata': np.array(json.dumps(self.metadata)),
        }
        for index, (w, b) in enumerate(zip(self.weights, self.biases)):
            arrays[f'weights_{index}'] = w
            arrays[f'biases_{index}'] = b

        try:
            with open(path, 'wb') as fh:
                np.savez(fh, **arrays)
        except OSError as e:
            raise ModelIOError(f"Could not write model to {path}: {e}") from e

        logger.info(f"Saved network {self.sizes} to {path}")

    @classmethod
    def load(cls, path: str) -> 'NeuralNetwork':
        """
        Restore a network written by :meth:`save`.

        Raises:
            ModelIOError: If the file cannot be read
            ModelFormatError: If the archive is malformed or inconsistent
        """
        try:
            with np.load(path, allow_pickle=False) as data:
                if not hasattr(data, 'files'):
                    raise ModelFormatError(f"{path} is not a model archive")
                arrays = {key: data[key] for key in data.files}
        except ModelFormatError:
            raise
        except (ValueError, EOFError, zipfile.BadZipFile) as e:
            raise ModelFormatError(f"{path} is not a model archive: {e}") from e
        except OSError as e:
            raise ModelIOError(f"Could not read model from {path}: {e}") from e

        net = cls._from_arrays(arrays, source=path)
        logger.info(f"Loaded network {net.sizes} from {path}")
        return net

    @classmethod
    def _from_arrays(cls, arrays: Dict[str, np.ndarray], source: str) -> 'NeuralNetwork':
        required = ('format_version', 'layer_sizes', 'activations')
        missing = [key for key in required if key not in arrays]
        if missing:
            raise ModelFormatError(f"{source} is missing {', '.join(missing)}")

        version = _scalar(arrays, 'format_version', source, np.integer)
        if int(version) != FORMAT_VERSION:
            raise ModelFormatError(
                f"{source} has format version {version}, "
                f"expected {FORMAT_VERSION}"
            )

        layer_sizes = arrays['layer_sizes']
        if (not np.issubdtype(layer_sizes.dtype, np.integer) or layer_sizes.ndim != 1
                or layer_sizes.size < 2 or np.any(layer_sizes < 1)):
            raise ModelFormatError(f"{source} declares invalid layers {layer_sizes}")
        sizes = [int(size) for size in layer_sizes]

        activations = arrays['activations']
        if activations.ndim != 1 or not np.issubdtype(activations.dtype, np.str_):
            raise ModelFormatError(f"{source} declares invalid activations {activations}")
        names = [str(name) for name in activations]
        if len(names) != len(sizes) - 1:
            raise ModelFormatError(
                f"{source} declares {len(names)} activations "
                f"for {len(sizes) - 1} layer transitions"
            )

        zero_bias = False
        if 'zero_bias' in arrays:
            zero_bias = bool(_scalar(arrays, 'zero_bias', source, np.bool_))
        learning_rate = DEFAULT_LEARNING_RATE
        if 'learning_rate' in arrays:
            learning_rate = float(_scalar(arrays, 'learning_rate', source, np.number))
            if not np.isfinite(learning_rate):
                raise ModelFormatError(f"{source} has learning rate {learning_rate}")

        try:
            net = cls(
                None,
                sizes,
                names,
                zero_bias=zero_bias,
                learning_rate=learning_rate
            )
        except ValueError as e:
            raise ModelFormatError(f"{source}: {e}") from e

        weights, biases = [], []
        for index, (n_in, n_out) in enumerate(zip(sizes[:-1], sizes[1:])):
            w = arrays.get(f'weights_{index}')
            b = arrays.get(f'biases_{index}')
            if w is None or b is None:
                raise ModelFormatError(
                    f"{source} has no parameters for layer transition {index}"
                )
            if not (np.issubdtype(w.dtype, np.floating) and np.issubdtype(b.dtype, np.floating)):
                raise ModelFormatError(
                    f"{source} layer transition {index} has non-float parameters"
                )
            if w.shape != (n_out, n_in) or b.shape != (n_out,):
                raise ModelFormatError(
                    f"{source} layer transition {index}: weights {w.shape} and "
                    f"biases {b.shape} do not match ({n_out}, {n_in})"
                )
            weights.append(w.astype(np.float64))
            biases.append(b.astype(np.float64))

        net.weights = weights
        net.biases = biases

        if 'metadata' in arrays:
            text = _scalar(arrays, 'metadata', source, np.str_)
            try:
                metadata = json.loads(str(text))
            except json.JSONDecodeError as e:
                raise ModelFormatError(f"{source} has unreadable metadata: {e}") from e
            if not isinstance(metadata, dict):
                raise ModelFormatError(f"{source} metadata is not a JSON object")
            net.metadata = metadata

        return net


def _scalar(arrays: Dict[str, np.ndarray], key: str, source: str, kind) -> Any:
    """
    The 0-d value stored under ``key``, checked against the numpy ``kind``.

    Raises:
        ModelFormatError: If the entry is not a single value of that kind
    """
    value = arrays[key]
    if value.ndim != 0 or not np.issubdtype(value.dtype, kind):
        raise ModelFormatError(
            f"{source} has invalid {key}: expected a single {kind.__name__} "
            f"value, got {value.dtype} with shape {value.shape}"
        )
    return value.item()

"""
activations.py
~~~~~~~~~~~~~~

Activation functions available to each layer of the network.

Derivatives are expressed in terms of the activation's *output*, so the
backward pass can reuse the values cached during the forward pass.
"""

from enum import Enum
from typing import Union

import numpy as np

LEAKY_SLOPE = 0.01


class ActivationFunction(str, Enum):
    """Per-layer nonlinearity selector."""

    TANH = 'tanh'
    SIGMOID = 'sigmoid'
    RELU = 'relu'
    LEAKY_RELU = 'leaky_relu'
    IDENTITY = 'identity'

    @classmethod
    def parse(cls, value: Union[str, 'ActivationFunction']) -> 'ActivationFunction':
        """Accept an enum member or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ', '.join(member.value for member in cls)
            raise ValueError(
                f"Unknown activation '{value}'. Expected one of: {valid}"
            ) from None

    def apply(self, z: np.ndarray) -> np.ndarray:
        if self is ActivationFunction.TANH:
            return np.tanh(z)
        if self is ActivationFunction.SIGMOID:
            # Clip to avoid overflow in exp
            return 1.0 / (1.0 + np.exp(-np.clip(z, -500, 500)))
        if self is ActivationFunction.RELU:
            return np.maximum(z, 0.0)
        if self is ActivationFunction.LEAKY_RELU:
            return np.where(z > 0, z, LEAKY_SLOPE * z)
        return z.copy()

    def derivative(self, a: np.ndarray) -> np.ndarray:
        """
        Derivative of the activation, given its output ``a``.

        For tanh this is 1 - a**2, for sigmoid a * (1 - a).
        """
        if self is ActivationFunction.TANH:
            return 1.0 - a * a
        if self is ActivationFunction.SIGMOID:
            return a * (1.0 - a)
        if self is ActivationFunction.RELU:
            return (a > 0).astype(a.dtype)
        if self is ActivationFunction.LEAKY_RELU:
            return np.where(a > 0, 1.0, LEAKY_SLOPE)
        return np.ones_like(a)

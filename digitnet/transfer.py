"""
transfer.py
~~~~~~~~~~~

Activation functions used by the dense layers.

Both operations work on scalars as well as numpy arrays. ``derivative`` is
always evaluated on the pre-activation value a layer stored during the
forward pass, not on the transformed output.
"""

from enum import Enum

import numpy as np

# Sigmoid2 is the scaled tanh 1.7159 * tanh(2x/3)
SIGMOID2_SCALE = 1.7159
SIGMOID2_SLOPE = 0.66666666
SIGMOID2_DERIVATIVE_SCALE = 1.1427894

LEAKY_FLOOR = 0.01


class TransferFunction(Enum):
    """Activation family. The enum value is the tag used when persisting."""

    IDENTITY = 'identity'
    RELU = 'relu'
    LEAKY_RELU = 'leaky_relu'
    TANH = 'tanh'
    SIGMOID = 'sigmoid'
    SIGMOID2 = 'sigmoid2'

    @classmethod
    def from_tag(cls, tag: str) -> 'TransferFunction':
        """
        Look up a transfer function by its persisted tag.

        Raises:
            ValueError: If the tag is unknown
        """
        return cls(tag.lower())

    def activate(self, x):
        """Apply the activation to ``x``."""
        if self is TransferFunction.IDENTITY:
            return x
        if self is TransferFunction.RELU:
            return np.maximum(x, 0.0)
        if self is TransferFunction.LEAKY_RELU:
            # clamps at 0.01 instead of scaling negative inputs
            return np.maximum(x, LEAKY_FLOOR)
        if self is TransferFunction.TANH:
            return np.tanh(x)
        if self is TransferFunction.SIGMOID:
            return 0.5 + 0.5 * np.tanh(x * 0.5)
        return SIGMOID2_SCALE * np.tanh(SIGMOID2_SLOPE * x)

    def derivative(self, x):
        """Derivative of the activation at pre-activation value ``x``."""
        if self is TransferFunction.IDENTITY:
            return np.ones_like(x, dtype=float)
        if self is TransferFunction.RELU:
            return np.where(x > 0.0, 1.0, 0.0)
        if self is TransferFunction.LEAKY_RELU:
            return np.where(x > 0.0, 1.0, LEAKY_FLOOR)
        if self is TransferFunction.TANH:
            return 1.0 - np.tanh(x) ** 2
        if self is TransferFunction.SIGMOID:
            return 0.25 - 0.25 * np.tanh(x * 0.5) ** 2
        return (SIGMOID2_DERIVATIVE_SCALE
                - SIGMOID2_DERIVATIVE_SCALE * np.tanh(SIGMOID2_SLOPE * x) ** 2)

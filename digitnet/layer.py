"""
layer.py
~~~~~~~~

A single dense layer trained with resilient backpropagation (RPROP).

Each layer owns four matrices of identical shape
``(neuron_count, previous_size + 1)``, the last column being the bias:

- ``weights``
- ``learning_rates``: per-weight step sizes, kept in [1e-6, 1e-2]
- ``previous_signs``: sign of the last applied gradient (-1, 0 or 1)
- ``gradient_batch``: gradient accumulated over the current batch

Two per-neuron buffers are transient and never persisted:
``activations`` holds the pre-activation sums written by ``forward`` and
``local_gradients`` holds the error gradients written by ``backward``.
"""

from typing import Optional

import numpy as np

from digitnet.exceptions import ContractViolation
from digitnet.transfer import TransferFunction


INITIAL_LEARNING_RATE = 0.1
MIN_LEARNING_RATE = 0.000001
MAX_LEARNING_RATE = 0.01
RATE_INCREASE = 1.2
RATE_DECREASE = 0.5


class Layer:
    """
    Dense layer of ``size`` neurons fed by ``previous_size`` inputs.

    The layer stores raw sums; its transfer function is applied by whoever
    reads the layer (the next layer's ``forward`` or the network output).
    """

    def __init__(
        self,
        size: int,
        previous_size: int,
        transfer_function: TransferFunction,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Create a layer with random weights drawn uniformly from [-1, 1).

        Args:
            size: Number of neurons
            previous_size: Number of inputs (neurons of the previous layer)
            transfer_function: Activation applied to this layer's sums
            rng: Generator for reproducible weights
        """
        if size < 1 or previous_size < 1:
            raise ContractViolation(
                f"Layer sizes must be positive, got size={size}, "
                f"previous_size={previous_size}"
            )

        rng = np.random.default_rng() if rng is None else rng

        self.transfer_function = transfer_function
        self.weights = rng.uniform(-1.0, 1.0, size=(size, previous_size + 1))
        self.learning_rates = np.full_like(self.weights, INITIAL_LEARNING_RATE)
        self.previous_signs = np.sign(self.weights).astype(np.int8)
        self.reset_temporary()

    @classmethod
    def from_arrays(
        cls,
        weights: np.ndarray,
        learning_rates: np.ndarray,
        previous_signs: np.ndarray,
        transfer_function: TransferFunction
    ) -> 'Layer':
        """
        Rebuild a layer from persisted matrices.

        Transient buffers and the gradient accumulator start zeroed.

        Raises:
            ContractViolation: If the matrices do not share one 2-D shape
        """
        weights = np.array(weights, dtype=np.float64)
        if weights.ndim != 2 or weights.shape[0] < 1 or weights.shape[1] < 2:
            raise ContractViolation(
                f"Weight matrix must be 2-D with at least one input, "
                f"got shape {weights.shape}"
            )

        learning_rates = np.array(learning_rates, dtype=np.float64)
        previous_signs = np.array(previous_signs, dtype=np.int8)
        for name, matrix in (('learning_rates', learning_rates),
                             ('previous_signs', previous_signs)):
            if matrix.shape != weights.shape:
                raise ContractViolation(
                    f"{name} shape {matrix.shape} does not match "
                    f"weights shape {weights.shape}"
                )

        layer = cls.__new__(cls)
        layer.transfer_function = transfer_function
        layer.weights = weights
        layer.learning_rates = learning_rates
        layer.previous_signs = previous_signs
        layer.reset_temporary()
        return layer

    def __repr__(self):
        return (f"<Layer size={self.size}, previous_size={self.previous_size}, "
                f"transfer_function={self.transfer_function.value}>")

    @property
    def size(self) -> int:
        return self.weights.shape[0]

    @property
    def previous_size(self) -> int:
        return self.weights.shape[1] - 1

    def reset_temporary(self) -> None:
        """Zero the neuron buffers and the gradient accumulator."""
        self.activations = np.zeros(self.size)
        self.local_gradients = np.zeros(self.size)
        self.gradient_batch = np.zeros_like(self.weights)

    def outputs(self) -> np.ndarray:
        """The stored sums with this layer's transfer function applied."""
        return self.transfer_function.activate(self.activations)

    def forward(
        self,
        previous_activations: np.ndarray,
        previous_transfer_function: TransferFunction
    ) -> None:
        """
        Compute the pre-activation sums of every neuron.

        Args:
            previous_activations: Raw values of the previous layer (or the
                network inputs for the first layer)
            previous_transfer_function: Transform applied to those values
                before weighting (IDENTITY for network inputs)
        """
        previous_activations = np.asarray(previous_activations, dtype=np.float64)
        if previous_activations.shape != (self.previous_size,):
            raise ContractViolation(
                f"Expected {self.previous_size} inputs, "
                f"got shape {previous_activations.shape}"
            )

        inputs = previous_transfer_function.activate(previous_activations)
        self.activations = self.weights[:, :-1] @ inputs + self.weights[:, -1]

    def backward(
        self,
        inputs: np.ndarray,
        expected: Optional[np.ndarray] = None,
        next_layer: Optional['Layer'] = None
    ) -> None:
        """
        Accumulate the gradient of one sample into ``gradient_batch``.

        Exactly one error source must be given: ``expected`` for the output
        layer, or ``next_layer`` (whose ``local_gradients`` were already
        computed for this sample) for hidden layers.

        Args:
            inputs: Transformed values this layer consumed in ``forward``
            expected: Target outputs for the output layer
            next_layer: The layer this one feeds into
        """
        if (expected is None) == (next_layer is None):
            raise ContractViolation(
                "backward needs exactly one of expected or next_layer"
            )

        if expected is not None:
            expected = np.asarray(expected, dtype=np.float64)
            if expected.shape != (self.size,):
                raise ContractViolation(
                    f"Expected {self.size} target outputs, "
                    f"got shape {expected.shape}"
                )
            error = self.outputs() - expected
        else:
            error = next_layer.weights[:, :-1].T @ next_layer.local_gradients

        local_gradients = self.transfer_function.derivative(self.activations) * error

        self.gradient_batch[:, :-1] += np.outer(local_gradients, inputs)
        self.gradient_batch[:, -1] += local_gradients
        self.local_gradients = local_gradients

    def apply_gradients(self) -> None:
        """
        Update every weight with the RPROP rule, then clear the accumulator.

        The step size grows while the gradient keeps its sign and shrinks
        when it flips; a flip skips the step and forgets the sign. Only the
        sign of the gradient is used, never its magnitude.
        """
        signs_now = np.sign(self.gradient_batch).astype(np.int8)
        agreement = signs_now * self.previous_signs

        grow = agreement > 0
        flip = agreement < 0

        self.learning_rates[grow] *= RATE_INCREASE
        self.learning_rates[flip] *= RATE_DECREASE
        np.clip(self.learning_rates, MIN_LEARNING_RATE, MAX_LEARNING_RATE,
                out=self.learning_rates)

        step = ~flip
        self.weights[step] -= self.learning_rates[step] * signs_now[step]

        self.previous_signs = np.where(flip, 0, signs_now).astype(np.int8)
        self.gradient_batch.fill(0.0)

    def combine(self, other: 'Layer') -> None:
        """Add another copy's accumulated gradients into this layer."""
        if other.gradient_batch.shape != self.gradient_batch.shape:
            raise ContractViolation(
                f"Cannot combine gradients of shape {other.gradient_batch.shape} "
                f"into {self.gradient_batch.shape}"
            )
        self.gradient_batch += other.gradient_batch

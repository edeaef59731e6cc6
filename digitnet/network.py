"""
network.py
~~~~~~~~~~

A feed-forward network built from a chain of dense layers.

Gradients are computed by backpropagation and accumulated over a whole
batch; weights are only updated once per batch, by each layer's RPROP rule.
``train_on_batch_parallel`` splits the gradient computation of a batch over
worker threads, each working on a private copy of the network, and merges
their gradients in a fixed order before the single update.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from digitnet.exceptions import ContractViolation, TrainingError
from digitnet.layer import Layer
from digitnet.transfer import TransferFunction

logger = logging.getLogger(__name__)


@dataclass
class LayerSpec:
    """Size and activation of one layer, used to create a network."""
    size: int
    transfer_function: TransferFunction


@dataclass
class TrainSample:
    """One input vector with the outputs the network should produce."""
    inputs: np.ndarray
    outputs: np.ndarray


class _GradientWorker(threading.Thread):
    """Accumulates the gradients of one chunk of a batch on its own network."""

    def __init__(self, network: 'Network', samples: Sequence[TrainSample]):
        super().__init__(daemon=True)
        self.network = network
        self.samples = samples
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.network.accumulate_gradients(self.samples)
        except Exception as e:
            self.error = e


class Network:
    """
    Ordered chain of dense layers.

    Layer ``i`` takes ``layers[i - 1].size`` inputs, the first layer takes
    ``input_size``. Use ``Network.create`` to build a fresh network and
    ``Network.load`` to restore a saved one.
    """

    def __init__(self, input_size: int, layers: List[Layer]):
        """
        Wrap an existing chain of layers.

        Raises:
            ContractViolation: If the layer list is empty or the layer
                sizes do not chain
        """
        if not layers:
            raise ContractViolation("A network needs at least one layer")

        previous_size = input_size
        for index, layer in enumerate(layers):
            if layer.previous_size != previous_size:
                raise ContractViolation(
                    f"Layer {index} expects {layer.previous_size} inputs "
                    f"but the previous layer provides {previous_size}"
                )
            previous_size = layer.size

        self.input_size = input_size
        self.layers = layers

    @classmethod
    def create(
        cls,
        input_size: int,
        layer_specs: Sequence[LayerSpec],
        rng: Optional[np.random.Generator] = None
    ) -> 'Network':
        """
        Create a network with freshly initialized layers.

        Args:
            input_size: Length of the input vector
            layer_specs: Size and transfer function of each layer, from the
                first hidden layer to the output layer
            rng: Generator for reproducible weights

        Returns:
            Network: The new network

        Example:
            >>> net = Network.create(784, [LayerSpec(30, TransferFunction.TANH),
            ...                            LayerSpec(10, TransferFunction.SIGMOID)])
            >>> net.sizes
            [784, 30, 10]
        """
        if not layer_specs:
            raise ContractViolation("A network needs at least one layer")

        rng = np.random.default_rng() if rng is None else rng

        layers = []
        previous_size = input_size
        for spec in layer_specs:
            layers.append(
                Layer(spec.size, previous_size, spec.transfer_function, rng=rng)
            )
            previous_size = spec.size

        return cls(input_size, layers)

    @classmethod
    def load(cls, path: str) -> 'Network':
        """
        Load a network saved with ``save``.

        Raises:
            ModelIOError: If the file cannot be read
            ModelDeserializationError: If the file is not a valid model
        """
        from digitnet.model_persistence import load_network_file
        return load_network_file(path)

    def save(self, path: str) -> None:
        """
        Save weights, learning rates, signs and transfer functions to ``path``.

        Raises:
            ModelIOError: If the file cannot be written
        """
        from digitnet.model_persistence import save_network_file
        save_network_file(self, path)

    def __repr__(self):
        return f"<Network sizes={self.sizes}>"

    @property
    def sizes(self) -> List[int]:
        """Input size followed by the neuron count of every layer."""
        return [self.input_size] + [layer.size for layer in self.layers]

    @property
    def output_size(self) -> int:
        return self.layers[-1].size

    def copy(self) -> 'Network':
        """Independent deep copy, including accumulated gradients."""
        return copy.deepcopy(self)

    def feedforward(self, inputs: np.ndarray) -> np.ndarray:
        """
        Run the network on one input vector.

        Returns:
            np.ndarray: Output layer values with its transfer function applied
        """
        self._forward(inputs)
        return self.layers[-1].outputs()

    def _forward(self, inputs: np.ndarray) -> None:
        previous_values = inputs
        previous_transfer = TransferFunction.IDENTITY
        for layer in self.layers:
            layer.forward(previous_values, previous_transfer)
            previous_values = layer.activations
            previous_transfer = layer.transfer_function

    def _backward(self, inputs: np.ndarray, expected: np.ndarray) -> None:
        inputs = np.asarray(inputs, dtype=np.float64)
        last = len(self.layers) - 1

        for index in range(last, -1, -1):
            layer = self.layers[index]
            if index == 0:
                layer_inputs = inputs
            else:
                layer_inputs = self.layers[index - 1].outputs()

            if index == last:
                layer.backward(layer_inputs, expected=expected)
            else:
                layer.backward(layer_inputs, next_layer=self.layers[index + 1])

    def accumulate_gradients(self, samples: Sequence[TrainSample]) -> None:
        """Forward and backward pass for each sample, without updating weights."""
        for sample in samples:
            self._forward(sample.inputs)
            self._backward(sample.inputs, sample.outputs)

    def apply_gradients(self) -> None:
        """Apply the accumulated gradients of every layer and reset them."""
        for layer in self.layers:
            layer.apply_gradients()

    def zero_gradients(self) -> None:
        for layer in self.layers:
            layer.gradient_batch.fill(0.0)

    def combine(self, other: 'Network') -> None:
        """Add the accumulated gradients of ``other`` into this network."""
        if other.sizes != self.sizes:
            raise ContractViolation(
                f"Cannot combine network {other.sizes} into {self.sizes}"
            )
        for layer, other_layer in zip(self.layers, other.layers):
            layer.combine(other_layer)

    def train_on_batch(self, samples: Sequence[TrainSample]) -> None:
        """
        Accumulate gradients over the whole batch, then update once.

        If a sample fails, the partial gradients are discarded and the
        weights are left untouched.
        """
        try:
            self.accumulate_gradients(samples)
        except Exception:
            self.zero_gradients()
            raise
        self.apply_gradients()

    def train_on_batch_parallel(
        self,
        samples: Sequence[TrainSample],
        workers: int
    ) -> None:
        """
        Same result as ``train_on_batch``, with the gradient work split
        over ``workers`` threads.

        The batch is cut into ``workers`` contiguous chunks. All but the
        last chunk go to worker threads, each owning a copy of the network;
        the calling thread processes the last chunk on this network. Once
        every worker has joined, their gradients are merged in chunk order
        and the weights are updated once. With fewer samples than workers
        the whole batch runs on the calling thread.

        Args:
            samples: The training batch
            workers: Number of threads taking part, including the caller

        Raises:
            TrainingError: If any worker or the calling thread failed; the
                accumulated gradients are discarded and no weights are updated
        """
        if workers < 1:
            raise ContractViolation(f"workers must be at least 1, got {workers}")

        remaining = list(samples)
        threads: List[_GradientWorker] = []

        if len(remaining) >= workers:
            per_worker = len(remaining) // workers
            for _ in range(workers - 1):
                chunk, remaining = remaining[:per_worker], remaining[per_worker:]

                network_copy = self.copy()
                network_copy.zero_gradients()

                thread = _GradientWorker(network_copy, chunk)
                thread.start()
                threads.append(thread)

        caller_error: Optional[Exception] = None
        try:
            self.accumulate_gradients(remaining)
        except Exception as e:
            caller_error = e
        finally:
            for thread in threads:
                thread.join()

        if caller_error is not None:
            self.zero_gradients()
            raise TrainingError(
                f"Gradient computation on the calling thread failed: {caller_error}",
                context={'worker': len(threads), 'samples': len(remaining)}
            ) from caller_error

        for index, thread in enumerate(threads):
            if thread.error is not None:
                self.zero_gradients()
                raise TrainingError(
                    f"Gradient worker {index} failed: {thread.error}",
                    context={'worker': index, 'samples': len(thread.samples)}
                ) from thread.error

        for thread in threads:
            self.combine(thread.network)

        logger.debug(
            f"Merged gradients of {len(threads)} worker(s) "
            f"into a batch of {len(samples)} sample(s)"
        )

        self.apply_gradients()

    def evaluate(self, samples: Sequence[TrainSample]) -> int:
        """
        Count the samples whose highest output matches the highest target.

        Returns:
            int: Number of correctly classified samples
        """
        correct = 0
        for sample in samples:
            output = self.feedforward(sample.inputs)
            if int(np.argmax(output)) == int(np.argmax(sample.outputs)):
                correct += 1
        return correct

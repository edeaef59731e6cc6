"""
recognize.py
~~~~~~~~~~~~

Single-image digit recognition.

``recognize`` loads a saved model and scores one raw image. A missing path
or an invalid image yields an all-zero score vector instead of an error, so
callers cannot tell "no confidence" from "invalid input" by the result
alone. Model loading failures still raise.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np

from digitnet.mnist_loader import DIGIT_COUNT, normalize_image
from digitnet.network import Network

logger = logging.getLogger(__name__)

IMAGE_WIDTH = 28
IMAGE_HEIGHT = 28


def scores_for_image(
    network: Network,
    image: Optional[Union[bytes, Sequence[int], np.ndarray]]
) -> np.ndarray:
    """
    Score one flat image of raw pixel bytes with an already loaded network.

    Returns:
        np.ndarray: One score per output neuron, or zeros of the same
            length for an invalid image
    """
    if image is None:
        return np.zeros(network.output_size)

    if isinstance(image, (bytes, bytearray)):
        pixels = np.frombuffer(image, dtype=np.uint8)
    else:
        try:
            pixels = np.asarray(image, dtype=np.float64).ravel()
        except (TypeError, ValueError):
            logger.warning("Ignoring image that is not numeric")
            return np.zeros(network.output_size)

    if pixels.size != network.input_size or \
            not np.all((pixels >= 0) & (pixels <= 255)):
        logger.warning(
            f"Ignoring image of {pixels.size} pixels, "
            f"expected {network.input_size} values in [0, 255]"
        )
        return np.zeros(network.output_size)

    return network.feedforward(normalize_image(pixels))


def recognize(
    network_path: Optional[str],
    image: Optional[Union[bytes, Sequence[int], np.ndarray]],
    width: int = IMAGE_WIDTH,
    height: int = IMAGE_HEIGHT
) -> np.ndarray:
    """
    Score one ``width * height`` image with the model saved at ``network_path``.

    Args:
        network_path: Path of a model saved with ``Network.save``
        image: Flat row-major pixel bytes in [0, 255]
        width: Image width
        height: Image height

    Returns:
        np.ndarray: One score per output neuron of the model. Without a
            model path or image, or for an image of the wrong size, the
            model is not read and ``DIGIT_COUNT`` zeros are returned

    Raises:
        ModelIOError: If the model file cannot be read
        ModelDeserializationError: If the model file is invalid
    """
    if network_path is None or image is None:
        return np.zeros(DIGIT_COUNT)

    size = len(image) if isinstance(image, (bytes, bytearray)) else np.size(image)
    if size != width * height:
        logger.warning(
            f"Ignoring image of {size} pixels, expected {width * height}"
        )
        return np.zeros(DIGIT_COUNT)

    network = Network.load(network_path)
    return scores_for_image(network, image)

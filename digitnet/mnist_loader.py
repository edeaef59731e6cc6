"""
mnist_loader.py
~~~~~~~~~~~~~~~

Reader for the MNIST dataset in its original IDX format.

A label file starts with the big-endian magic number 2049 and a sample
count, followed by one byte per label. An image file starts with 2051, the
count, the row count and the column count, followed by row-major pixel
bytes. ``DigitReader`` pairs both files and yields ``(label, pixels)``
tuples; ``load_samples`` turns them into training samples.
"""

import os
import struct
import logging
from typing import BinaryIO, Iterator, List, Optional, Tuple

import numpy as np

from digitnet.exceptions import DatasetFormatError
from digitnet.network import TrainSample

logger = logging.getLogger(__name__)

LABELS_MAGIC = 2049
IMAGES_MAGIC = 2051
DIGIT_COUNT = 10

_WORD = struct.Struct('>I')


def _read_words(stream: BinaryIO, count: int, path: str) -> Tuple[int, ...]:
    data = stream.read(_WORD.size * count)
    if len(data) != _WORD.size * count:
        raise DatasetFormatError(
            f"Truncated header in '{path}'",
            context={'path': path}
        )
    return tuple(word for (word,) in _WORD.iter_unpack(data))


def _read_record(stream: BinaryIO, size: int, path: str, index: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise DatasetFormatError(
            f"Truncated record {index} in '{path}'",
            context={'path': path, 'index': index}
        )
    return data


class DigitReader:
    """
    Iterates over ``(label, pixels)`` pairs of an IDX label/image file pair.

    ``pixels`` is a flat ``uint8`` array of ``width * height`` values. The
    reader keeps both files open until it is exhausted or closed, and can
    only be iterated once.
    """

    def __init__(self, labels_path: str, images_path: str):
        """
        Open both files and validate their headers.

        Raises:
            FileNotFoundError: If either file does not exist
            DatasetFormatError: If a magic number is wrong, a header is
                truncated, or the label and image counts differ
        """
        self.labels_path = labels_path
        self.images_path = images_path

        self._labels = open(labels_path, 'rb')
        try:
            self._images = open(images_path, 'rb')
        except OSError:
            self._labels.close()
            raise

        try:
            self._read_headers()
        except DatasetFormatError:
            self.close()
            raise

        self._index = 0
        logger.debug(
            f"Opened {self.count} digits of {self.width}x{self.height} "
            f"from '{images_path}'"
        )

    def _read_headers(self) -> None:
        magic, label_count = _read_words(self._labels, 2, self.labels_path)
        if magic != LABELS_MAGIC:
            raise DatasetFormatError(
                f"'{self.labels_path}' is not an IDX label file "
                f"(magic {magic}, expected {LABELS_MAGIC})",
                context={'path': self.labels_path, 'magic': magic}
            )

        magic, image_count, height, width = _read_words(
            self._images, 4, self.images_path
        )
        if magic != IMAGES_MAGIC:
            raise DatasetFormatError(
                f"'{self.images_path}' is not an IDX image file "
                f"(magic {magic}, expected {IMAGES_MAGIC})",
                context={'path': self.images_path, 'magic': magic}
            )

        if label_count != image_count:
            raise DatasetFormatError(
                f"Label count {label_count} does not match "
                f"image count {image_count}",
                context={'labels': label_count, 'images': image_count}
            )

        self.count = label_count
        self.width = width
        self.height = height

    @property
    def image_size(self) -> int:
        return self.width * self.height

    def __len__(self) -> int:
        return self.count

    def __iter__(self) -> Iterator[Tuple[int, np.ndarray]]:
        return self

    def __next__(self) -> Tuple[int, np.ndarray]:
        if self._index >= self.count or self._labels.closed:
            self.close()
            raise StopIteration

        label = _read_record(self._labels, 1, self.labels_path, self._index)[0]
        pixels = _read_record(
            self._images, self.image_size, self.images_path, self._index
        )
        self._index += 1

        return label, np.frombuffer(pixels, dtype=np.uint8)

    def close(self) -> None:
        self._labels.close()
        self._images.close()

    def __enter__(self) -> 'DigitReader':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()


def normalize_image(pixels: np.ndarray) -> np.ndarray:
    """Scale raw pixel bytes to floats in [0, 1]."""
    return np.asarray(pixels, dtype=np.float64) / 255.0


def one_hot(label: int) -> np.ndarray:
    """Target vector with 1.0 at ``label`` and 0.0 elsewhere."""
    outputs = np.zeros(DIGIT_COUNT)
    outputs[label] = 1.0
    return outputs


def load_samples(
    labels_path: str,
    images_path: str,
    limit: Optional[int] = None
) -> Tuple[List[TrainSample], int, int]:
    """
    Read an IDX file pair into training samples.

    Args:
        labels_path: Path to the label file
        images_path: Path to the image file
        limit: Read at most this many samples

    Returns:
        tuple: (samples, width, height)

    Raises:
        DatasetFormatError: If the files are malformed
    """
    if not os.path.exists(labels_path) or not os.path.exists(images_path):
        raise FileNotFoundError(
            f"MNIST files not found: '{labels_path}', '{images_path}'"
        )

    samples = []
    with DigitReader(labels_path, images_path) as reader:
        for label, pixels in reader:
            if limit is not None and len(samples) >= limit:
                break
            if label >= DIGIT_COUNT:
                raise DatasetFormatError(
                    f"Label {label} out of range in '{labels_path}'",
                    context={'path': labels_path, 'label': label}
                )
            samples.append(TrainSample(
                inputs=normalize_image(pixels),
                outputs=one_hot(label)
            ))
        width, height = reader.width, reader.height

    logger.info(
        f"Loaded {len(samples)} samples of {width}x{height} "
        f"from '{images_path}'"
    )
    return samples, width, height

"""Shared fixtures for writing small IDX datasets."""

import struct

import numpy as np
import pytest


def write_idx(directory, labels, images, width, height,
              labels_magic=2049, images_magic=2051, image_count=None):
    """Write an IDX label/image pair and return their paths."""
    labels_path = directory / "labels-idx1-ubyte"
    images_path = directory / "images-idx3-ubyte"

    labels_path.write_bytes(
        struct.pack('>II', labels_magic, len(labels)) + bytes(labels)
    )

    count = len(labels) if image_count is None else image_count
    pixels = np.asarray(images, dtype=np.uint8).tobytes()
    images_path.write_bytes(
        struct.pack('>IIII', images_magic, count, height, width) + pixels
    )
    return str(labels_path), str(images_path)


@pytest.fixture
def tiny_digits(tmp_path):
    """Twenty 2x2 images whose brightest pixel encodes the label."""
    labels = [i % 4 for i in range(20)]
    images = []
    for label in labels:
        image = np.zeros(4, dtype=np.uint8)
        image[label] = 255
        images.append(image)
    labels_path, images_path = write_idx(tmp_path, labels, images, 2, 2)
    return labels_path, images_path, labels, images


@pytest.fixture
def idx_writer():
    """Expose ``write_idx`` to tests that need malformed files."""
    return write_idx

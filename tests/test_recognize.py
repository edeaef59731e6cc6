"""
test_recognize.py
~~~~~~~~~~~~~~~~~

Unit tests for single-image recognition.
"""

import numpy as np
import pytest

from digitnet.exceptions import ModelIOError
from digitnet.network import LayerSpec, Network
from digitnet.recognize import recognize, scores_for_image
from digitnet.transfer import TransferFunction


@pytest.fixture
def digit_network():
    """A 2x2-pixel classifier with ten outputs."""
    return Network.create(4, [
        LayerSpec(6, TransferFunction.TANH),
        LayerSpec(10, TransferFunction.SIGMOID)
    ], rng=np.random.default_rng(3))


@pytest.fixture
def model_path(digit_network, tmp_path):
    path = str(tmp_path / "digits.nn")
    digit_network.save(path)
    return path


@pytest.mark.unit
class TestRecognize:
    """Test scoring of raw images."""

    def test_scores_match_feedforward(self, digit_network, model_path):
        image = [0, 64, 128, 255]

        scores = recognize(model_path, image, width=2, height=2)

        expected = digit_network.feedforward(np.array(image) / 255.0)
        assert scores.shape == (10,)
        assert np.allclose(scores, expected)

    def test_bytes_image(self, digit_network, model_path):
        image = bytes([0, 64, 128, 255])

        scores = recognize(model_path, image, width=2, height=2)

        assert np.allclose(scores, recognize(model_path, [0, 64, 128, 255], 2, 2))

    def test_missing_path_gives_zeros(self):
        scores = recognize(None, [0, 0, 0, 0], width=2, height=2)
        assert np.array_equal(scores, np.zeros(10))

    def test_missing_image_gives_zeros(self, model_path):
        assert not recognize(model_path, None, width=2, height=2).any()

    def test_wrong_size_gives_zeros(self, model_path):
        scores = recognize(model_path, [0, 0, 0], width=2, height=2)
        assert np.array_equal(scores, np.zeros(10))

    def test_default_size_is_mnist(self, model_path):
        # a 2x2 image is not a 28x28 image
        assert not recognize(model_path, [0, 0, 0, 0]).any()

    def test_missing_model_file(self, tmp_path):
        with pytest.raises(ModelIOError):
            recognize(str(tmp_path / "missing.nn"), [0, 0, 0, 0], 2, 2)


@pytest.mark.unit
class TestScoresForImage:
    """Test scoring with an already loaded network."""

    def test_out_of_range_pixels(self, digit_network):
        assert not scores_for_image(digit_network, [0, 0, 0, 256]).any()
        assert not scores_for_image(digit_network, [-1, 0, 0, 0]).any()

    def test_non_numeric_image(self, digit_network):
        assert not scores_for_image(digit_network, ["a", "b", "c", "d"]).any()

    def test_accepts_2d_image(self, digit_network):
        image = np.array([[0, 255], [255, 0]])
        assert np.allclose(
            scores_for_image(digit_network, image),
            digit_network.feedforward(np.array([0.0, 1.0, 1.0, 0.0]))
        )

    def test_one_score_per_output_neuron(self):
        network = Network.create(4, [LayerSpec(3, TransferFunction.SIGMOID)])

        scores = scores_for_image(network, [0, 0, 0, 255])

        assert scores.shape == (3,)
        assert np.allclose(scores, network.feedforward(np.array([0.0, 0.0, 0.0, 1.0])))
        assert scores_for_image(network, [1, 2]).shape == (3,)

    def test_model_with_other_output_size(self, tmp_path):
        network = Network.create(4, [LayerSpec(3, TransferFunction.TANH)])
        path = str(tmp_path / "three.nn")
        network.save(path)

        assert recognize(path, [0, 0, 0, 0], width=2, height=2).shape == (3,)

#!/usr/bin/env python3
"""
Train and evaluate a digit classifier on MNIST IDX files.

Usage:
    digitnet-train -i train-images-idx3-ubyte -l train-labels-idx1-ubyte
    digitnet-train -M train -o network.nn -I 100 -b 1000 --threads 4 \\
        -i train-images-idx3-ubyte -l train-labels-idx1-ubyte \\
        -t t10k-images-idx3-ubyte -T t10k-labels-idx1-ubyte

The training run:
1. Loads the training set and creates (restart) or loads (train) a network
2. Trains for the given number of batches, using all threads per batch
3. Saves the network to the output file
4. Evaluates it on the first 1000 test samples
"""

import os
import sys
import logging
import argparse
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from digitnet.exceptions import ConfigError, DatasetFormatError, ModelError
from digitnet.logging_setup import configure_logging
from digitnet.mnist_loader import load_samples
from digitnet.network import LayerSpec, Network, TrainSample
from digitnet.transfer import TransferFunction

logger = logging.getLogger(__name__)

MODES = ('restart', 'train')
EVALUATION_SAMPLES = 1000

DIGIT_LAYERS = [
    LayerSpec(50, TransferFunction.TANH),
    LayerSpec(50, TransferFunction.TANH),
    LayerSpec(10, TransferFunction.SIGMOID),
]


@dataclass
class TrainingConfig:
    """Validated command-line options of a training run."""
    mode: str
    output: str
    threads: int
    iterations: int
    batch_size: int
    train_images: str
    train_labels: str
    test_images: str
    test_labels: str
    seed: Optional[int] = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='digitnet-train',
        description="Train a digit classifier with RPROP on MNIST IDX files"
    )
    parser.add_argument("-M", "--mode", choices=MODES, default="restart",
                        help="restart from a new network or continue training "
                             "the output file (default: restart)")
    parser.add_argument("-o", "--output", default="network.nn",
                        help="model file to write (default: network.nn)")
    parser.add_argument("--threads", type=int, default=None,
                        help="override the number of threads used "
                             "(default: available CPUs)")
    parser.add_argument("-I", "--iter", dest="iterations", type=int, default=10,
                        help="batches to train for (default: 10)")
    parser.add_argument("-b", "--batch", dest="batch_size", type=int, default=10000,
                        help="batch size (default: 10000)")
    parser.add_argument("-i", "--images", required=True,
                        help="MNIST training images")
    parser.add_argument("-l", "--labels", required=True,
                        help="MNIST training labels")
    parser.add_argument("-t", "--test-images", default=None,
                        help="optional test images (uses training otherwise)")
    parser.add_argument("-T", "--test-labels", default=None,
                        help="optional test labels (uses training otherwise)")
    parser.add_argument("--seed", type=int, default=None,
                        help="seed for weight initialization and batch offset")
    return parser


def parse_config(argv: Optional[Sequence[str]] = None) -> TrainingConfig:
    """
    Parse and validate command-line arguments.

    Raises:
        ConfigError: If a numeric option is out of range
    """
    args = build_parser().parse_args(argv)

    threads = args.threads if args.threads is not None else (os.cpu_count() or 1)
    if threads < 1:
        raise ConfigError(f"--threads must be at least 1, got {threads}")
    if args.iterations < 0:
        raise ConfigError(f"--iter must not be negative, got {args.iterations}")
    if args.batch_size < 1:
        raise ConfigError(f"--batch must be at least 1, got {args.batch_size}")

    return TrainingConfig(
        mode=args.mode,
        output=args.output,
        threads=threads,
        iterations=args.iterations,
        batch_size=args.batch_size,
        train_images=args.images,
        train_labels=args.labels,
        test_images=args.test_images or args.images,
        test_labels=args.test_labels or args.labels,
        seed=args.seed,
    )


def select_batch(
    samples: Sequence[TrainSample],
    iteration: int,
    batch_size: int,
    offset: int
) -> List[TrainSample]:
    """Contiguous, wrapping window of the dataset for one iteration."""
    return [
        samples[(iteration + b + offset) % len(samples)]
        for b in range(batch_size)
    ]


def progress_interval(iterations: int) -> int:
    """Smallest power of two not below ``iterations / 100``."""
    interval = 1
    while interval < iterations // 100:
        interval <<= 1
    return interval


def train(config: TrainingConfig) -> Network:
    """
    Run the training loop described by ``config`` and save the result.

    Returns:
        Network: The trained network
    """
    samples, width, height = load_samples(config.train_labels, config.train_images)
    if not samples:
        raise DatasetFormatError(f"No training samples in '{config.train_images}'")

    rng = np.random.default_rng(config.seed)

    if config.mode == 'restart':
        network = Network.create(width * height, DIGIT_LAYERS, rng=rng)
        logger.info(f"Created network {network.sizes}")
    else:
        network = Network.load(config.output)

    interval = progress_interval(config.iterations)
    offset = int(rng.integers(0, len(samples)))

    logger.info(
        f"Training for {config.iterations} batch(es) of {config.batch_size} "
        f"on {config.threads} thread(s)"
    )

    for iteration in range(config.iterations):
        batch = select_batch(samples, iteration, config.batch_size, offset)
        network.train_on_batch_parallel(batch, config.threads)

        if iteration % interval == 0:
            percent = (iteration + 1) / config.iterations * 100
            logger.info(f"Batch {iteration + 1}/{config.iterations} ({percent:.2f}%)")

    network.save(config.output)
    return network


def evaluate(network: Network, samples: Sequence[TrainSample]) -> dict:
    """
    Measure classification quality on ``samples``.

    Returns:
        dict: ``correct``, ``total``, ``accuracy`` and ``combined_error``,
            the summed half squared error over all outputs
    """
    correct = 0
    combined_error = 0.0
    for index, sample in enumerate(samples):
        output = network.feedforward(sample.inputs)
        if index == 0:
            logger.info(
                f"Sample output: {np.round(output, 4).tolist()} "
                f"(correct {int(np.argmax(sample.outputs))})"
            )

        combined_error += float(np.sum(0.5 * (sample.outputs - output) ** 2))
        if int(np.argmax(output)) == int(np.argmax(sample.outputs)):
            correct += 1

    total = len(samples)
    return {
        'correct': correct,
        'total': total,
        'accuracy': correct / total if total else 0.0,
        'combined_error': combined_error,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of ``digitnet-train``."""
    configure_logging()

    try:
        config = parse_config(argv)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        build_parser().print_help()
        return 1

    try:
        train(config)

        test_samples, _, _ = load_samples(
            config.test_labels, config.test_images, limit=EVALUATION_SAMPLES
        )
        network = Network.load(config.output)
        report = evaluate(network, test_samples)
    except (OSError, DatasetFormatError) as e:
        logger.error(f"Dataset error: {e}")
        return 1
    except ModelError as e:
        logger.error(f"Model error: {e}")
        return 1

    logger.info(
        f"Combined error: {report['combined_error']:.4f}, "
        f"percent correct: {report['accuracy'] * 100:.2f}%"
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())

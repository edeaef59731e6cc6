"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit networks.

This module provides endpoints for:
- Creating and managing RPROP-trained digit networks
- Training networks in the background with real-time progress updates
- Recognizing single digit images
- Persisting networks to/from the SQLite model registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet.exceptions import DatasetFormatError, ModelError
from digitnet.logging_setup import configure_logging
from digitnet.mnist_loader import DIGIT_COUNT, load_samples
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network
)
from digitnet.network import LayerSpec, Network
from digitnet.recognize import scores_for_image
from digitnet.transfer import TransferFunction

# ============================================================================
# LOGGING SETUP
# ============================================================================

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

MODEL_DIR = os.getenv('MODEL_DIR', 'models')
DEFAULT_THREADS = os.cpu_count() or 1

DEFAULT_LAYERS = [
    {'size': 50, 'transfer_function': 'tanh'},
    {'size': 50, 'transfer_function': 'tanh'},
    {'size': DIGIT_COUNT, 'transfer_function': 'sigmoid'},
]

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST samples - loaded once at startup when the dataset paths are set
training_data: Optional[list] = None
test_data: Optional[list] = None
image_shape = (28, 28)


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST IDX files named by the MNIST_* environment variables.

    Training is unavailable when the training files are not configured;
    the test set falls back to the training files.
    """
    global training_data, test_data, image_shape

    train_images = os.getenv('MNIST_TRAIN_IMAGES')
    train_labels = os.getenv('MNIST_TRAIN_LABELS')
    if not train_images or not train_labels:
        logger.warning(
            "MNIST_TRAIN_IMAGES / MNIST_TRAIN_LABELS not set, training disabled"
        )
        return

    test_images = os.getenv('MNIST_TEST_IMAGES', train_images)
    test_labels = os.getenv('MNIST_TEST_LABELS', train_labels)

    logger.info("Loading MNIST data...")
    try:
        training_data, width, height = load_samples(train_labels, train_images)
        test_data, _, _ = load_samples(test_labels, test_images)
        image_shape = (height, width)
        logger.info(
            f"Data loaded: {len(training_data)} training, {len(test_data)} test"
        )
    except (OSError, DatasetFormatError) as e:
        logger.exception(f"Error loading MNIST data: {e}")
        raise


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the registry into memory.

    Called at startup to restore networks that were saved before the
    application was restarted.
    """
    if not os.path.exists(os.path.join(MODEL_DIR, 'networks.db')):
        logger.info("No model registry found, nothing to reload")
        return

    loaded_count = 0
    for net_info in list_saved_networks(MODEL_DIR):
        network_id = net_info['network_id']
        try:
            net = load_network(network_id, MODEL_DIR)
        except ModelError as e:
            logger.error(f"Error loading network {network_id}: {e}")
            continue

        if net is not None:
            active_networks[network_id] = {
                'network': net,
                'architecture': net_info['architecture'],
                'trained': net_info['trained'],
                'accuracy': net_info['accuracy']
            }
            loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from registry")


load_mnist_data()
reload_saved_networks()


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Returns counts of active networks and training jobs that are
    currently in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


def parse_layer_specs(layers: Any) -> List[LayerSpec]:
    """
    Convert a JSON layer list into layer specs.

    Raises:
        ValueError: If the list is empty or an entry is malformed
    """
    if not isinstance(layers, list) or not layers:
        raise ValueError('layers must be a non-empty list')

    specs = []
    for layer in layers:
        if not isinstance(layer, dict):
            raise ValueError('each layer must be an object')
        size = layer.get('size')
        if not isinstance(size, int) or size < 1:
            raise ValueError('layer size must be a positive integer')
        transfer = layer.get('transfer_function', 'sigmoid')
        try:
            specs.append(LayerSpec(size, TransferFunction.from_tag(str(transfer))))
        except ValueError:
            raise ValueError(f"unknown transfer function '{transfer}'")
    return specs


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new neural network.

    Request body (optional):
        {
            'input_size': 784,
            'layers': [{'size': 50, 'transfer_function': 'tanh'}, ...]
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    input_size = data.get('input_size', image_shape[0] * image_shape[1])
    layers = data.get('layers', DEFAULT_LAYERS)

    if not isinstance(input_size, int) or input_size < 1:
        return jsonify({'error': 'input_size must be a positive integer'}), 400

    try:
        specs = parse_layer_specs(layers)
    except ValueError as e:
        logger.warning(f"Invalid architecture requested: {layers}")
        return jsonify({'error': f'Invalid architecture: {e}'}), 400

    network_id = str(uuid.uuid4())
    net = Network.create(input_size, specs)
    architecture = {
        'input_size': input_size,
        'layers': [
            {'size': spec.size, 'transfer_function': spec.transfer_function.value}
            for spec in specs
        ]
    }

    active_networks[network_id] = {
        'network': net,
        'architecture': architecture,
        'trained': False,
        'accuracy': None
    }

    logger.info(f"Created network {network_id} with sizes {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': architecture,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'iterations': 100,
            'batch_size': 1000,
            'threads': 4
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    iterations = data.get('iterations', 100)
    batch_size = data.get('batch_size', 1000)
    threads = data.get('threads', DEFAULT_THREADS)

    # Validate training parameters
    if not isinstance(iterations, int) or iterations < 1:
        return jsonify({'error': 'iterations must be a positive integer'}), 400
    if not isinstance(batch_size, int) or batch_size < 1:
        return jsonify({'error': 'batch_size must be a positive integer'}), 400
    if not isinstance(threads, int) or threads < 1:
        return jsonify({'error': 'threads must be a positive integer'}), 400

    if not training_data or not test_data:
        return jsonify({'error': 'Training data not available'}), 503

    net = active_networks[network_id]['network']
    if net.input_size != len(training_data[0].inputs) or \
            net.output_size != DIGIT_COUNT:
        return jsonify({
            'error': f'Network sizes {net.sizes} do not fit the dataset'
        }), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'iterations': iterations
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"iterations={iterations}, batch_size={batch_size}, threads={threads}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, iterations, batch_size, threads
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    iterations: int,
    batch_size: int,
    threads: int
) -> None:
    """
    Background task that trains a neural network.

    Sends progress updates via WebSocket as training progresses. Any failure
    marks the job as failed and emits ``training_error``.
    """
    net = active_networks[network_id]['network']
    report_every = max(1, iterations // 100)

    # The batch spawns and joins OS threads; run it on gevent's thread pool
    # so the hub keeps serving requests while the batch is in flight
    threadpool = gevent.get_hub().threadpool

    try:
        logger.info(f"Starting training for job {job_id}")
        training_jobs[job_id]['status'] = 'training'
        offset = np.random.randint(0, len(training_data))

        for iteration in range(iterations):
            batch = [
                training_data[(iteration + b + offset) % len(training_data)]
                for b in range(batch_size)
            ]
            threadpool.apply(net.train_on_batch_parallel, (batch, threads))

            if (iteration + 1) % report_every == 0 or iteration + 1 == iterations:
                progress = (iteration + 1) / iterations * 100
                training_jobs[job_id]['progress'] = progress

                socketio.emit('training_update', {
                    'job_id': job_id,
                    'network_id': network_id,
                    'iteration': iteration + 1,
                    'total_iterations': iterations,
                    'progress': progress
                })

            # Let gevent serve other requests between batches
            gevent.sleep(0)

        accuracy = net.evaluate(test_data) / len(test_data)

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        save_network(net, network_id, model_dir=MODEL_DIR,
                     trained=True, accuracy=accuracy)

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    # Get saved networks, excluding duplicates already in memory
    saved_only = []
    if os.path.exists(os.path.join(MODEL_DIR, 'networks.db')):
        for net in list_saved_networks(MODEL_DIR):
            if net['network_id'] not in active_networks:
                net['status'] = 'saved'
                saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    in_memory_ids = list(active_networks.keys())
    saved_ids = [net['network_id'] for net in list_saved_networks(MODEL_DIR)]
    all_network_ids = list(set(in_memory_ids + saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if active_networks.pop(network_id, None) is not None:
            deleted_from_memory_count += 1

        if delete_network(network_id, MODEL_DIR):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {len(all_network_ids)} network(s)'
    }), 200


@app.route('/api/networks/<network_id>/recognize', methods=['POST'])
def recognize_digit(network_id: str):
    """
    Score one flat image of raw pixel values in [0, 255].

    Request body:
        {'image': [0, 0, 12, 255, ...]}

    An invalid image yields all-zero guesses rather than an error.
    """
    if network_id not in active_networks:
        logger.warning(f"Recognition requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    net = active_networks[network_id]['network']

    guesses = scores_for_image(net, data.get('image'))

    return jsonify({
        'network_id': network_id,
        'guesses': array_to_float_list(guesses),
        'predicted_digit': int(np.argmax(guesses)) if guesses.any() else None
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image_data: Flat normalized image
        predicted: The digit the network predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(image_data.reshape(image_shape), cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def find_example(network_id: str, successful: bool, max_attempts: int):
    """
    Return a random test example the network classified right (or wrong).

    Returns JSON with image, prediction details, and network output.
    """
    if network_id not in active_networks:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if not test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    net = active_networks[network_id]['network']
    if net.input_size != len(test_data[0].inputs) or net.output_size != DIGIT_COUNT:
        return jsonify({'error': f'Network sizes {net.sizes} do not fit the dataset'}), 400

    for attempt in range(max_attempts):
        index = np.random.randint(0, len(test_data))
        sample = test_data[index]

        output = net.feedforward(sample.inputs)
        predicted_digit = int(np.argmax(output))
        actual_digit = int(np.argmax(sample.outputs))

        if (predicted_digit == actual_digit) == successful:
            logger.debug(f"Found example on attempt {attempt + 1}")

            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(sample.inputs, predicted_digit, actual_digit),
                'network_output': array_to_float_list(output)
            }), 200

    kind = 'successful' if successful else 'unsuccessful'
    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


# ============================================================================
# EXAMPLE ENDPOINTS
# ============================================================================

@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    """Find and return a random example where the network predicted correctly."""
    return find_example(network_id, successful=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    """Find and return a random example where the network predicted incorrectly."""
    return find_example(network_id, successful=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    """Run the API server on $PORT (default 8000)."""
    # Check if running in cloud environment (Railway, etc.)
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()

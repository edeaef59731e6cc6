"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API using the Flask test client.
"""

import threading

import numpy as np
import pytest

from digitnet import api_server
from digitnet.mnist_loader import load_samples
from digitnet.model_persistence import get_network_metadata, save_network
from digitnet.network import LayerSpec, Network
from digitnet.transfer import TransferFunction


@pytest.fixture
def server(tmp_path, monkeypatch):
    """Isolate the server's global state and registry directory."""
    monkeypatch.setattr(api_server, 'MODEL_DIR', str(tmp_path / "models"))
    monkeypatch.setattr(api_server, 'active_networks', {})
    monkeypatch.setattr(api_server, 'training_jobs', {})
    monkeypatch.setattr(api_server, 'training_data', None)
    monkeypatch.setattr(api_server, 'test_data', None)
    monkeypatch.setattr(api_server, 'image_shape', (2, 2))

    events = []
    monkeypatch.setattr(
        api_server.socketio, 'emit',
        lambda event, data: events.append((event, data))
    )
    api_server.app.config['TESTING'] = True
    return api_server, events


@pytest.fixture
def client(server):
    return api_server.app.test_client()


@pytest.fixture
def with_data(server, tiny_digits, monkeypatch):
    """Load the tiny 2x2 dataset as both training and test data."""
    labels_path, images_path, _, _ = tiny_digits
    samples, _, _ = load_samples(labels_path, images_path)
    monkeypatch.setattr(api_server, 'training_data', samples)
    monkeypatch.setattr(api_server, 'test_data', samples)
    return samples


def add_network(network):
    network_id = f"net-{len(api_server.active_networks)}"
    api_server.active_networks[network_id] = {
        'network': network,
        'architecture': {'input_size': network.input_size, 'layers': []},
        'trained': False,
        'accuracy': None
    }
    return network_id


def pixel_network():
    """A 4-pixel network whose guess is the index of the brightest pixel."""
    network = Network.create(4, [LayerSpec(10, TransferFunction.IDENTITY)])
    weights = np.zeros((10, 5))
    weights[:4, :4] = np.eye(4)
    network.layers[0].weights = weights
    return network


SMALL_ARCHITECTURE = {
    'input_size': 4,
    'layers': [
        {'size': 3, 'transfer_function': 'tanh'},
        {'size': 10, 'transfer_function': 'sigmoid'}
    ]
}


@pytest.mark.unit
class TestNetworkEndpoints:
    """Test creating, listing and deleting networks."""

    def test_status(self, client):
        response = client.get('/api/status')

        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online',
            'active_networks': 0,
            'training_jobs': 0,
            'data_loaded': False
        }

    def test_create_default(self, client):
        response = client.post('/api/networks')

        assert response.status_code == 201
        body = response.get_json()
        assert body['status'] == 'created'
        assert body['architecture']['input_size'] == 4
        assert [layer['size'] for layer in body['architecture']['layers']] == [50, 50, 10]
        assert body['network_id'] in api_server.active_networks

    def test_create_custom(self, client):
        response = client.post('/api/networks', json=SMALL_ARCHITECTURE)

        assert response.status_code == 201
        network_id = response.get_json()['network_id']
        assert api_server.active_networks[network_id]['network'].sizes == [4, 3, 10]

    @pytest.mark.parametrize('body', [
        {'layers': []},
        {'layers': [{'size': 0}]},
        {'layers': [{'size': 3, 'transfer_function': 'softmax'}]},
        {'layers': 'dense'},
        {'input_size': -1},
    ])
    def test_create_invalid(self, client, body):
        response = client.post('/api/networks', json=body)

        assert response.status_code == 400
        assert 'error' in response.get_json()
        assert not api_server.active_networks

    def test_list_in_memory_and_saved(self, client, server):
        add_network(pixel_network())
        save_network(pixel_network(), 'saved-net', model_dir=api_server.MODEL_DIR,
                     trained=True, accuracy=0.5)

        response = client.get('/api/networks')

        statuses = {
            net['network_id']: net['status']
            for net in response.get_json()['networks']
        }
        assert statuses == {'net-0': 'in_memory', 'saved-net': 'saved'}

    def test_delete(self, client):
        network_id = add_network(pixel_network())

        response = client.delete(f'/api/networks/{network_id}')

        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert network_id not in api_server.active_networks

    def test_delete_unknown(self, client):
        assert client.delete('/api/networks/nope').status_code == 404

    def test_delete_all(self, client):
        add_network(pixel_network())
        add_network(pixel_network())
        save_network(pixel_network(), 'saved-net', model_dir=api_server.MODEL_DIR)

        response = client.delete('/api/networks')

        assert response.status_code == 200
        assert response.get_json()['deleted_count'] == 3
        assert not api_server.active_networks


@pytest.mark.unit
class TestRecognizeEndpoint:
    """Test single-image recognition over HTTP."""

    def test_recognize(self, client):
        network_id = add_network(pixel_network())

        response = client.post(
            f'/api/networks/{network_id}/recognize',
            json={'image': [0, 0, 255, 0]}
        )

        assert response.status_code == 200
        body = response.get_json()
        assert len(body['guesses']) == 10
        assert body['predicted_digit'] == 2

    def test_invalid_image_gives_zero_guesses(self, client):
        network_id = add_network(pixel_network())

        response = client.post(
            f'/api/networks/{network_id}/recognize', json={'image': [1, 2]}
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body['guesses'] == [0.0] * 10
        assert body['predicted_digit'] is None

    def test_other_output_size(self, client):
        network_id = add_network(
            Network.create(4, [LayerSpec(3, TransferFunction.SIGMOID)])
        )

        response = client.post(
            f'/api/networks/{network_id}/recognize', json={'image': [0, 0, 0, 0]}
        )

        assert response.status_code == 200
        assert len(response.get_json()['guesses']) == 3

    def test_unknown_network(self, client):
        response = client.post('/api/networks/nope/recognize', json={'image': []})
        assert response.status_code == 404


@pytest.mark.unit
class TestTrainingEndpoints:
    """Test validation of training requests and the training task."""

    def test_unknown_network(self, client):
        assert client.post('/api/networks/nope/train').status_code == 404

    @pytest.mark.parametrize('body', [
        {'iterations': 0},
        {'batch_size': 'ten'},
        {'threads': 0},
    ])
    def test_invalid_parameters(self, client, with_data, body):
        network_id = add_network(pixel_network())

        response = client.post(f'/api/networks/{network_id}/train', json=body)

        assert response.status_code == 400

    def test_no_training_data(self, client):
        network_id = add_network(pixel_network())

        response = client.post(f'/api/networks/{network_id}/train')

        assert response.status_code == 503

    def test_network_does_not_fit_data(self, client, with_data):
        network_id = add_network(
            Network.create(9, [LayerSpec(10, TransferFunction.SIGMOID)])
        )

        response = client.post(f'/api/networks/{network_id}/train')

        assert response.status_code == 400

    def test_unknown_job(self, client):
        assert client.get('/api/training/nope').status_code == 404

    def test_training_task(self, client, server, with_data):
        _, events = server
        network_id = add_network(Network.create(4, [
            LayerSpec(5, TransferFunction.TANH),
            LayerSpec(10, TransferFunction.SIGMOID)
        ]))
        api_server.training_jobs['job-1'] = {
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'iterations': 3
        }

        api_server.train_network_task(network_id, 'job-1', 3, 5, 2)

        job = client.get('/api/training/job-1').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100
        assert 0.0 <= job['accuracy'] <= 1.0

        assert [event for event, _ in events].count('training_update') == 3
        assert events[-1][0] == 'training_complete'

        metadata = get_network_metadata(network_id, api_server.MODEL_DIR)
        assert metadata['trained'] is True
        assert metadata['sizes'] == [4, 5, 10]

    def test_empty_dataset(self, client, with_data, monkeypatch):
        monkeypatch.setattr(api_server, 'test_data', [])
        network_id = add_network(pixel_network())

        response = client.post(f'/api/networks/{network_id}/train')

        assert response.status_code == 503

    def start_job(self, network):
        network_id = add_network(network)
        api_server.training_jobs['job-1'] = {
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'iterations': 2
        }
        return network_id

    def test_training_task_failure(self, client, server, with_data, monkeypatch):
        _, events = server
        network = pixel_network()
        network_id = self.start_job(network)

        def fail(samples, workers):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(network, 'train_on_batch_parallel', fail)

        api_server.train_network_task(network_id, 'job-1', 2, 4, 2)

        job = client.get('/api/training/job-1').get_json()
        assert job['status'] == 'failed'
        assert 'out of memory' in job['error']
        assert events[-1][0] == 'training_error'
        assert api_server.active_networks[network_id]['trained'] is False

    def test_batches_run_off_the_server_thread(self, server, with_data, monkeypatch):
        network = pixel_network()
        network_id = self.start_job(network)
        batch_threads = []
        train = network.train_on_batch_parallel

        def record(samples, workers):
            batch_threads.append(threading.get_ident())
            train(samples, workers)

        monkeypatch.setattr(network, 'train_on_batch_parallel', record)

        api_server.train_network_task(network_id, 'job-1', 2, 4, 2)

        assert api_server.training_jobs['job-1']['status'] == 'completed'
        assert len(batch_threads) == 2
        assert threading.get_ident() not in batch_threads

    def test_training_task_without_test_samples(self, client, server, with_data,
                                                monkeypatch):
        _, events = server
        monkeypatch.setattr(api_server, 'test_data', [])
        network_id = self.start_job(pixel_network())

        api_server.train_network_task(network_id, 'job-1', 2, 4, 1)

        assert api_server.training_jobs['job-1']['status'] == 'failed'
        assert events[-1][0] == 'training_error'


@pytest.mark.unit
class TestExampleEndpoints:
    """Test the successful and unsuccessful example endpoints."""

    def test_successful_example(self, client, with_data):
        network_id = add_network(pixel_network())

        response = client.get(f'/api/networks/{network_id}/successful_example')

        assert response.status_code == 200
        body = response.get_json()
        assert body['predicted_digit'] == body['actual_digit']
        assert body['image_data'].startswith('iVBOR')
        assert len(body['network_output']) == 10

    def test_no_unsuccessful_example(self, client, with_data):
        network_id = add_network(pixel_network())

        response = client.get(f'/api/networks/{network_id}/unsuccessful_example')

        assert response.status_code == 404

    def test_no_test_data(self, client):
        network_id = add_network(pixel_network())

        response = client.get(f'/api/networks/{network_id}/successful_example')

        assert response.status_code == 503

    def test_empty_test_data(self, client, monkeypatch):
        monkeypatch.setattr(api_server, 'test_data', [])
        network_id = add_network(pixel_network())

        response = client.get(f'/api/networks/{network_id}/unsuccessful_example')

        assert response.status_code == 503

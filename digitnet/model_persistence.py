"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Persistence for neural network models.

A model is stored as a numpy ``.npz`` archive holding the input size and,
for every layer, its weights, learning rates, previous gradient signs and
transfer function tag. Neuron buffers and gradient accumulators are never
stored. The same bytes are kept as blobs by the SQLite model registry.
"""

import io
import os
import json
import sqlite3
import logging
import zipfile
from typing import Optional, List, Dict, Any, Generator, BinaryIO
from contextlib import contextmanager

import numpy as np

from digitnet.exceptions import ModelDeserializationError, ModelIOError, ContractViolation
from digitnet.layer import Layer
from digitnet.network import Network
from digitnet.transfer import TransferFunction

# Configure module logger
logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# ============================================================================
# MODEL CODEC
# ============================================================================

def _layer_key(index: int, field: str) -> str:
    return f'layer_{index}_{field}'


def write_network(network: Network, stream: BinaryIO) -> None:
    """
    Encode a network into an ``.npz`` archive written to ``stream``.

    Args:
        network: Network to encode
        stream: Writable binary file object
    """
    arrays: Dict[str, np.ndarray] = {
        'format_version': np.array(FORMAT_VERSION, dtype=np.int64),
        'input_size': np.array(network.input_size, dtype=np.int64),
        'layer_count': np.array(len(network.layers), dtype=np.int64),
    }

    for index, layer in enumerate(network.layers):
        arrays[_layer_key(index, 'weights')] = layer.weights
        arrays[_layer_key(index, 'learning_rates')] = layer.learning_rates
        arrays[_layer_key(index, 'previous_signs')] = layer.previous_signs
        arrays[_layer_key(index, 'transfer_function')] = np.array(
            layer.transfer_function.value
        )

    np.savez_compressed(stream, **arrays)


def read_network(stream: BinaryIO) -> Network:
    """
    Decode a network from an ``.npz`` archive.

    Args:
        stream: Readable binary file object

    Returns:
        Network: The restored network with zeroed transient buffers

    Raises:
        ModelDeserializationError: If the archive is malformed, truncated
            or does not describe a consistent network
    """
    try:
        archive = np.load(stream, allow_pickle=False)
        if not isinstance(archive, np.lib.npyio.NpzFile):
            raise ModelDeserializationError("Not an npz model archive")
        with archive:
            return _network_from_archive(archive)
    except ModelDeserializationError:
        raise
    except (ValueError, KeyError, TypeError, EOFError, OSError,
            zipfile.BadZipFile) as e:
        raise ModelDeserializationError(f"Invalid model data: {e}") from e


def _network_from_archive(archive) -> Network:
    version = int(archive['format_version'])
    if version != FORMAT_VERSION:
        raise ModelDeserializationError(
            f"Unsupported model format version {version}",
            context={'version': version}
        )

    input_size = int(archive['input_size'])
    layer_count = int(archive['layer_count'])

    layers = []
    for index in range(layer_count):
        weights = archive[_layer_key(index, 'weights')]
        learning_rates = archive[_layer_key(index, 'learning_rates')]
        previous_signs = archive[_layer_key(index, 'previous_signs')]
        tag = str(archive[_layer_key(index, 'transfer_function')])

        if not np.issubdtype(weights.dtype, np.floating) or \
                not np.issubdtype(learning_rates.dtype, np.floating):
            raise ModelDeserializationError(
                f"Layer {index} weights and learning rates must be floats"
            )
        if not np.issubdtype(previous_signs.dtype, np.integer) or \
                not np.isin(previous_signs, (-1, 0, 1)).all():
            raise ModelDeserializationError(
                f"Layer {index} previous signs must be -1, 0 or 1"
            )

        try:
            transfer_function = TransferFunction.from_tag(tag)
        except ValueError as e:
            raise ModelDeserializationError(
                f"Layer {index} has unknown transfer function '{tag}'"
            ) from e

        try:
            layers.append(Layer.from_arrays(
                weights, learning_rates, previous_signs, transfer_function
            ))
        except ContractViolation as e:
            raise ModelDeserializationError(f"Layer {index}: {e}") from e

    try:
        return Network(input_size, layers)
    except ContractViolation as e:
        raise ModelDeserializationError(str(e)) from e


def network_to_bytes(network: Network) -> bytes:
    """Encode a network as ``.npz`` bytes."""
    buffer = io.BytesIO()
    write_network(network, buffer)
    return buffer.getvalue()


def network_from_bytes(data: bytes) -> Network:
    """Decode a network from ``.npz`` bytes."""
    return read_network(io.BytesIO(data))


def _discard(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


def save_network_file(network: Network, path: str) -> None:
    """
    Save a network to ``path``, replacing any existing file.

    The model is written next to ``path`` first and moved into place once
    complete, so a failed save leaves the previous file intact.

    Raises:
        ModelIOError: If the file cannot be written
    """
    temp_path = f"{path}.tmp"
    try:
        with open(temp_path, 'wb') as f:
            write_network(network, f)
        os.replace(temp_path, path)
    except OSError as e:
        _discard(temp_path)
        raise ModelIOError(
            f"Could not save network to '{path}': {e}",
            context={'path': path}
        ) from e
    except Exception:
        _discard(temp_path)
        raise

    logger.info(f"Saved network {network.sizes} to '{path}'")


def load_network_file(path: str) -> Network:
    """
    Load a network from ``path``.

    Raises:
        ModelIOError: If the file cannot be opened
        ModelDeserializationError: If the file is not a valid model
    """
    try:
        f = open(path, 'rb')
    except OSError as e:
        raise ModelIOError(
            f"Could not open network file '{path}': {e}",
            context={'path': path}
        ) from e

    with f:
        network = read_network(f)

    logger.info(f"Loaded network {network.sizes} from '{path}'")
    return network


# ============================================================================
# MODEL REGISTRY
# ============================================================================

class ModelDatabase:
    """
    Manages SQLite database for neural network model persistence.

    The database stores:
    - Network metadata (architecture, training status, accuracy)
    - Encoded network models as binary blobs
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection

        Raises:
            ModelIOError: If the database operation fails
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise ModelIOError(
                f"Could not open model database '{self.db_path}': {e}"
            ) from e

        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise ModelIOError(f"Model database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    network_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _architecture(network: Network) -> List[Dict[str, Any]]:
        """Layer sizes and transfer functions, for queryable metadata."""
        return [
            {'size': layer.size, 'transfer_function': layer.transfer_function.value}
            for layer in network.layers
        ]

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> None:
        """
        Save a network to the database, replacing a row with the same id.

        Args:
            network: Network object to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            accuracy: Test accuracy (0.0 to 1.0)

        Raises:
            ValueError: If accuracy is out of valid range
            ModelIOError: If the database operation fails
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        network_data = network_to_bytes(network)

        architecture_json = json.dumps({
            'input_size': network.input_size,
            'layers': self._architecture(network)
        })

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, network_data, trained, accuracy)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                sqlite3.Binary(network_data),
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with sizes "
            f"{network.sizes}, trained={trained}, accuracy={accuracy}"
        )

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Load a network from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Network object or None if not found

        Raises:
            ModelDeserializationError: If the stored blob is corrupt
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = network_from_bytes(bytes(row['network_data']))
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        List all networks with metadata.

        Returns:
            List of network metadata dictionaries, newest first
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            rows = cursor.fetchall()

        networks = [self._metadata_from_row(row) for row in rows]
        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(
                f"Could not delete network '{network_id}': not found"
            )
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get network metadata without decoding the stored model.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(
                f"Metadata for network '{network_id}' not found"
            )
            return None

        return self._metadata_from_row(row)

    @staticmethod
    def _metadata_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        sizes = [architecture['input_size']] + [
            layer['size'] for layer in architecture['layers']
        ]

        # Weight matrices carry one extra bias column
        weights_shape = [
            [sizes[i + 1], sizes[i] + 1]
            for i in range(len(sizes) - 1)
        ]

        return {
            'network_id': row['network_id'],
            'architecture': architecture,
            'sizes': sizes,
            'weights_shape': weights_shape,
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }


def _get_db(model_dir: str) -> ModelDatabase:
    """
    Open the registry stored in ``model_dir``.

    Returns:
        ModelDatabase: Database backed by ``<model_dir>/networks.db``
    """
    return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))


def _check_network_id(network_id: str) -> None:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        raise ValueError("network_id must be a non-empty string")


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = 'models',
    trained: bool = True,
    accuracy: Optional[float] = None
) -> None:
    """
    Save a neural network to the model registry.

    Args:
        network: The neural network object to save
        network_id: A unique identifier for the network
        model_dir: Directory for the database file
        trained: Boolean indicating if the network has been trained
        accuracy: The accuracy of the trained network (0.0 to 1.0)

    Raises:
        ValueError: If network_id is empty or accuracy is out of range
        ModelIOError: If the database cannot be written

    Example:
        >>> net = Network.create(784, [LayerSpec(10, TransferFunction.SIGMOID)])
        >>> save_network(net, "my_network", trained=False)
    """
    _check_network_id(network_id)

    try:
        _get_db(model_dir).save_network_to_db(network, network_id, trained, accuracy)
    except ModelIOError as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        raise


def load_network(network_id: str, model_dir: str = 'models') -> Optional[Network]:
    """
    Load a neural network from the model registry.

    Args:
        network_id: The unique identifier of the network to load
        model_dir: Directory where the database is stored

    Returns:
        The loaded neural network object or None if not found

    Raises:
        ModelIOError: If the database cannot be read
        ModelDeserializationError: If the stored model is corrupt
    """
    _check_network_id(network_id)

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except ModelDeserializationError as e:
        logger.error(
            f"Deserialization error loading network '{network_id}': {e}"
        )
        raise
    except ModelIOError as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
        raise


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Args:
        model_dir: Directory where the database is stored

    Returns:
        list: A list of metadata dictionaries for each saved network
    """
    try:
        return _get_db(model_dir).list_networks_from_db()
    except ModelIOError as e:
        logger.error(f"Database error listing networks: {e}")
        raise


def delete_network(network_id: str, model_dir: str = 'models') -> bool:
    """
    Delete a saved network from the model registry.

    Args:
        network_id: The unique identifier of the network to delete
        model_dir: Directory where the database is stored

    Returns:
        bool: True if the network was deleted, False if it did not exist
    """
    _check_network_id(network_id)

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except ModelIOError as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        raise


def get_network_metadata(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific network without loading the model.

    Args:
        network_id: The unique identifier of the network
        model_dir: Directory where the database is stored

    Returns:
        dict: Network metadata or None if not found
    """
    _check_network_id(network_id)

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except ModelIOError as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        raise

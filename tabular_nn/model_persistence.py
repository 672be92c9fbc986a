"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for trained models.

Models are stored as their trained-model JSON (``Network.save()``), so a
stored row can be exported as-is and re-imported by any compatible
client. Also provides helpers to read and write ``trained_model.json``
files.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

import numpy as np

from tabular_nn.errors import NeuralNetworkError
from tabular_nn.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

DB_FILENAME = 'models.db'


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that also handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def dumps_model(network: Network, indent: Optional[int] = None) -> str:
    """Serialize a network to trained-model JSON text."""
    return json.dumps(network.save(), cls=NetworkEncoder, indent=indent)


def loads_model(text: str) -> Network:
    """Rebuild a network from trained-model JSON text."""
    return Network.load(json.loads(text))


class ModelDatabase:
    """
    Manages the SQLite database of trained models.

    The database stores:
    - Model metadata (layer sizes, training status, accuracy)
    - The trained-model JSON snapshot
    """

    def __init__(self, db_path: str = f'models/{DB_FILENAME}'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    model_data TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_models_trained
                ON models(trained)
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_models_created_at
                ON models(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        return {
            'model_id': row['model_id'],
            'architecture': architecture,
            'weights_shape': [
                [architecture[i + 1], architecture[i]]
                for i in range(len(architecture) - 1)
            ],
            'biases_shape': [
                [architecture[i + 1]]
                for i in range(len(architecture) - 1)
            ],
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_model_to_db(
        self,
        network: Network,
        model_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Insert or replace a model. ``created_at`` survives replacement.

        Raises:
            ValueError: If accuracy is out of valid range
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        model_data = dumps_model(network)
        architecture_json = json.dumps(network.sizes)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO models
                (model_id, architecture, model_data, trained, accuracy)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(model_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    model_data = excluded.model_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                model_id,
                architecture_json,
                model_data,
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved model '{model_id}' with sizes {network.sizes}, "
            f"trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_model_from_db(self, model_id: str) -> Optional[Network]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT model_data FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Model '{model_id}' not found")
            return None

        network = loads_model(row['model_data'])
        logger.info(f"Loaded model '{model_id}'")
        return network

    def list_models_from_db(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                ORDER BY created_at DESC
            ''')
            models = [self._row_to_metadata(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(models)} models")
        return models

    def delete_model_from_db(self, model_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM models WHERE model_id = ?',
                (model_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted model '{model_id}'")
        else:
            logger.warning(f"Could not delete model '{model_id}': not found")
        return deleted

    def get_model_metadata_from_db(self, model_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                WHERE model_id = ?
            ''', (model_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for model '{model_id}' not found")
            return None
        return self._row_to_metadata(row)

    def delete_old_models_from_db(self, days: int) -> int:
        """
        Delete models created more than ``days`` days ago.

        Returns:
            int: number of deleted models

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM models WHERE created_at < datetime('now', ?)",
                (f'-{int(days)} days',)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} model(s) older than {days} day(s)")
        return deleted


# Global database instance
_db = None


def _get_db(model_dir: str = 'models') -> ModelDatabase:
    """Return the shared instance for the default directory, else a new one."""
    global _db
    if model_dir != 'models':
        return ModelDatabase(db_path=os.path.join(model_dir, DB_FILENAME))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_id(model_id: Any) -> bool:
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False
    return True


def save_model(
    network: Network,
    model_id: str,
    model_dir: str = 'models',
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a model to the SQLite database.

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = Network.from_config(model_json)
        >>> save_model(net, "my_model", trained=False)
        True
    """
    if not _valid_id(model_id):
        return False

    try:
        return _get_db(model_dir).save_model_to_db(network, model_id, trained, accuracy)
    except ValueError as e:
        logger.error(f"Validation error saving model '{model_id}': {e}")
        return False
    except (AttributeError, TypeError) as e:
        logger.error(f"Serialization error saving model '{model_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving model '{model_id}': {e}")
        return False


def load_model(model_id: str, model_dir: str = 'models') -> Optional[Network]:
    """
    Load a model from the SQLite database.

    Returns:
        The rebuilt Network, or None if missing or unreadable
    """
    if not _valid_id(model_id):
        return None

    try:
        return _get_db(model_dir).load_model_from_db(model_id)
    except (json.JSONDecodeError, NeuralNetworkError) as e:
        logger.error(f"Deserialization error loading model '{model_id}': {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading model '{model_id}': {e}")
        return None


def list_saved_models(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """
    List all saved models with their metadata, newest first.

    Example:
        >>> for meta in list_saved_models():
        ...     print(f"{meta['model_id']}: {meta['architecture']}")
    """
    try:
        return _get_db(model_dir).list_models_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing models: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing models: {e}")
        return []


def delete_model(model_id: str, model_dir: str = 'models') -> bool:
    """Delete a saved model. Returns True if a row was removed."""
    if not _valid_id(model_id):
        return False

    try:
        return _get_db(model_dir).delete_model_from_db(model_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting model '{model_id}': {e}")
        return False


def get_model_metadata(
    model_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """Metadata for one model without rebuilding the network."""
    if not _valid_id(model_id):
        return None

    try:
        return _get_db(model_dir).get_model_metadata_from_db(model_id)
    except sqlite3.Error as e:
        logger.error(f"Database error getting metadata for '{model_id}': {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error getting metadata for '{model_id}': {e}")
        return None


def delete_old_models(days: int = 2, model_dir: str = 'models') -> int:
    """
    Delete models created more than ``days`` days ago.

    Returns:
        int: number of deleted models, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_models_from_db(days)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting old models: {e}")
        return -1


def export_model_file(network: Network, path: str) -> str:
    """
    Write ``network`` as an indented trained-model JSON file.

    Returns:
        str: the path written
    """
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(dumps_model(network, indent=2))
    logger.info(f"Exported model with sizes {network.sizes} to {path}")
    return path


def import_model_file(path: str) -> Network:
    """
    Read a trained-model JSON file.

    Raises:
        OSError: the file cannot be read
        json.JSONDecodeError: the file is not JSON
        InvalidConfig: the JSON is not a usable trained model
    """
    with open(path, 'r', encoding='utf-8') as f:
        network = loads_model(f.read())
    logger.info(f"Imported model with sizes {network.sizes} from {path}")
    return network

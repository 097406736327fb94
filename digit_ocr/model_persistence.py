"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

A directory of saved networks, one ``.npz`` model file per network id.

Each file is a complete model (see :meth:`NeuralNetwork.save`) whose
metadata records whether it was trained, its accuracy, the epochs it took
and when it was saved.
"""

import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from digit_ocr.errors import DigitOCRError
from digit_ocr.network import NeuralNetwork

# Configure module logger
logger = logging.getLogger(__name__)

MODEL_EXTENSION = '.npz'
_NETWORK_ID = re.compile(r'^[A-Za-z0-9_-]+$')


class ModelStore:
    """
    Saves and loads networks by id inside ``model_dir``.

    Args:
        model_dir: Directory holding the model files (created if missing)
    """

    def __init__(self, model_dir: str = 'models'):
        self.model_dir = model_dir
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Create the model directory if it doesn't exist."""
        if self.model_dir and not os.path.exists(self.model_dir):
            os.makedirs(self.model_dir)

    def path_for(self, network_id: str) -> str:
        """
        Path of the model file for ``network_id``.

        Raises:
            ValueError: If the id is empty or not filename-safe
        """
        if not network_id or not _NETWORK_ID.match(network_id):
            raise ValueError(
                f"Invalid network_id {network_id!r}: use letters, digits, '-' or '_'"
            )
        return os.path.join(self.model_dir, network_id + MODEL_EXTENSION)

    def save_network(
        self,
        network: NeuralNetwork,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None,
        epochs: Optional[int] = None
    ) -> str:
        """
        Save a network under ``network_id``, replacing any earlier version.

        Returns:
            Path of the written model file

        Raises:
            ValueError: If accuracy is out of range or the id is invalid
            ModelIOError: If the file cannot be written
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        path = self.path_for(network_id)
        network.save(path, metadata={
            'network_id': network_id,
            'trained': bool(trained),
            'accuracy': accuracy,
            'epochs': epochs,
            'saved_at': datetime.now(timezone.utc).isoformat(),
        })

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, accuracy={accuracy}"
        )
        return path

    def load_network(self, network_id: str) -> Optional[NeuralNetwork]:
        """
        Load a saved network.

        Returns:
            The network, or None if no model file exists for the id

        Raises:
            ModelIOError: If the file exists but cannot be read
            ModelFormatError: If the file is not a valid model
        """
        path = self.path_for(network_id)
        if not os.path.exists(path):
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = NeuralNetwork.load(path)
        logger.info(f"Loaded network '{network_id}'")
        return network

    def get_network_metadata(self, network_id: str) -> Optional[Dict[str, Any]]:
        """Architecture and training metadata of a saved network, or None."""
        network = self.load_network(network_id)
        if network is None:
            return None
        return self._describe(network_id, network)

    def list_networks(self) -> List[Dict[str, Any]]:
        """
        Metadata of every readable model in the directory, newest first.

        Files that cannot be loaded are logged and left out.
        """
        networks = []
        for filename in sorted(os.listdir(self.model_dir)):
            if not filename.endswith(MODEL_EXTENSION):
                continue
            network_id = filename[:-len(MODEL_EXTENSION)]
            if not _NETWORK_ID.match(network_id):
                continue
            try:
                network = NeuralNetwork.load(os.path.join(self.model_dir, filename))
            except DigitOCRError as e:
                logger.warning(f"Skipping unreadable model {filename}: {e}")
                continue
            networks.append(self._describe(network_id, network))

        networks.sort(key=lambda info: info.get('saved_at') or '', reverse=True)
        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network(self, network_id: str) -> bool:
        """
        Delete a saved network.

        Returns:
            True if deleted, False if not found
        """
        path = self.path_for(network_id)
        if not os.path.exists(path):
            logger.warning(f"Could not delete network '{network_id}': not found")
            return False

        os.remove(path)
        logger.info(f"Deleted network '{network_id}'")
        return True

    @staticmethod
    def _describe(network_id: str, network: NeuralNetwork) -> Dict[str, Any]:
        metadata = network.metadata
        sizes = network.sizes
        return {
            'network_id': network_id,
            'architecture': list(sizes),
            'activations': [a.value for a in network.activations],
            'weights_shape': [[sizes[i + 1], sizes[i]] for i in range(len(sizes) - 1)],
            'biases_shape': [[sizes[i + 1]] for i in range(len(sizes) - 1)],
            'trained': bool(metadata.get('trained', False)),
            'accuracy': metadata.get('accuracy'),
            'epochs': metadata.get('epochs'),
            'saved_at': metadata.get('saved_at'),
        }

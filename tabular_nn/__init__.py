"""
tabular_nn package
~~~~~~~~~~~~~~~~~~

Dense feed-forward neural networks for tabular data.
Contains the activation library, the network model, the Adam optimizer,
the training loop, model persistence and the API server.
"""

from tabular_nn.activations import Activation
from tabular_nn.config import ArchitectureSpec, LayerSpec, TrainingConfig, build_model_json
from tabular_nn.errors import (
    InvalidConfig,
    InvalidInput,
    NeuralNetworkError,
    NumericAnomaly,
    ShapeMismatch
)
from tabular_nn.network import ForwardCache, Network
from tabular_nn.optimizer import AdamOptimizer, AdamState
from tabular_nn.trainer import EarlyStopping, EpochRecord, Trainer, TrainingHistory, train

__version__ = "1.0.0"

__all__ = [
    "Activation",
    "AdamOptimizer",
    "AdamState",
    "ArchitectureSpec",
    "EarlyStopping",
    "EpochRecord",
    "ForwardCache",
    "InvalidConfig",
    "InvalidInput",
    "LayerSpec",
    "Network",
    "NeuralNetworkError",
    "NumericAnomaly",
    "ShapeMismatch",
    "Trainer",
    "TrainingConfig",
    "TrainingHistory",
    "build_model_json",
    "train",
]

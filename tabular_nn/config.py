"""
config.py
~~~~~~~~~

Configuration objects for network architecture, training runs and the
API server.

The Model JSON produced by the model designer looks like::

    {
        "architecture": {
            "inputLayer": {"units": 4},
            "hiddenLayers": [{"units": 3, "activation": "relu"}],
            "outputLayer": {"units": 1, "activation": "sigmoid"}
        },
        "trainingConfig": {"optimizer": "adam",
                           "loss": "binaryCrossentropy",
                           "metrics": ["accuracy"]}
    }

:class:`ArchitectureSpec` and :class:`CompileConfig` are the parsed,
immutable views of the two halves. :class:`TrainingConfig` holds the
per-run hyperparameters and is passed to every training call separately.
"""

import os
import numbers
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from tabular_nn.errors import InvalidConfig


@dataclass(frozen=True)
class LayerSpec:
    """A single dense layer: unit count, activation name and role."""

    units: int
    activation: str = 'linear'
    type: str = 'hidden'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'units': self.units,
            'activation': self.activation
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_type: str = 'hidden') -> 'LayerSpec':
        if not isinstance(data, Mapping):
            raise InvalidConfig(f"Layer must be an object, got {data!r}")
        if 'units' not in data:
            raise InvalidConfig(f"Layer is missing 'units': {dict(data)!r}")
        return cls(
            units=data['units'],
            activation=data.get('activation') or 'linear',
            type=data.get('type', default_type)
        )


def validate_layers(layers: Sequence[LayerSpec]) -> None:
    """
    Check that a layer sequence describes a buildable network.

    Raises:
        InvalidConfig: fewer than two layers, or a unit count that is not
            a positive integer
    """
    if len(layers) < 2:
        raise InvalidConfig(
            f"A network needs at least 2 layers, got {len(layers)}"
        )
    for index, layer in enumerate(layers):
        units = layer.units
        if (isinstance(units, bool)
                or not isinstance(units, numbers.Integral)
                or units <= 0):
            raise InvalidConfig(
                f"Layer {index} must have a positive integer unit count, "
                f"got {units!r}"
            )


@dataclass(frozen=True)
class ArchitectureSpec:
    """Immutable, validated layer topology."""

    layers: Tuple[LayerSpec, ...]

    def __post_init__(self):
        object.__setattr__(self, 'layers', tuple(self.layers))
        validate_layers(self.layers)

    @property
    def input_units(self) -> int:
        return self.layers[0].units

    @property
    def output_units(self) -> int:
        return self.layers[-1].units

    @classmethod
    def from_dict(cls, model_json: Mapping[str, Any]) -> 'ArchitectureSpec':
        """
        Parse the ``architecture`` block of a Model JSON.

        Accepts either the whole Model JSON or the ``architecture`` object
        itself.
        """
        if not isinstance(model_json, Mapping):
            raise InvalidConfig("Model configuration must be a JSON object")
        architecture = model_json.get('architecture', model_json)
        if not isinstance(architecture, Mapping):
            raise InvalidConfig("'architecture' must be a JSON object")

        try:
            input_layer = architecture['inputLayer']
            output_layer = architecture['outputLayer']
        except KeyError as e:
            raise InvalidConfig(f"Architecture is missing {e.args[0]!r}") from e

        hidden_layers = architecture.get('hiddenLayers') or []
        if not isinstance(hidden_layers, list):
            raise InvalidConfig("'hiddenLayers' must be a list")

        if not isinstance(input_layer, Mapping) or 'units' not in input_layer:
            raise InvalidConfig("'inputLayer' must define 'units'")

        layers = [LayerSpec(units=input_layer['units'], activation='linear', type='input')]
        layers.extend(LayerSpec.from_dict(layer, 'hidden') for layer in hidden_layers)
        layers.append(LayerSpec.from_dict(output_layer, 'output'))
        # Roles come from position, not from whatever the JSON claims
        layers[1:-1] = [
            LayerSpec(layer.units, layer.activation, 'hidden') for layer in layers[1:-1]
        ]
        layers[-1] = LayerSpec(layers[-1].units, layers[-1].activation, 'output')
        return cls(layers=tuple(layers))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inputLayer': {'units': self.layers[0].units},
            'hiddenLayers': [
                {'units': layer.units, 'activation': layer.activation}
                for layer in self.layers[1:-1]
            ],
            'outputLayer': {
                'units': self.layers[-1].units,
                'activation': self.layers[-1].activation
            }
        }


@dataclass(frozen=True)
class CompileConfig:
    """The ``trainingConfig`` block of a Model JSON."""

    optimizer: str = 'adam'
    loss: Optional[str] = None
    metrics: Tuple[str, ...] = ('accuracy',)

    @classmethod
    def from_dict(cls, model_json: Optional[Mapping[str, Any]]) -> 'CompileConfig':
        block = (model_json or {}).get('trainingConfig') or {}
        if not isinstance(block, Mapping):
            raise InvalidConfig("'trainingConfig' must be a JSON object")
        return cls(
            optimizer=block.get('optimizer', 'adam'),
            loss=block.get('loss'),
            metrics=tuple(block.get('metrics') or ('accuracy',))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'optimizer': self.optimizer,
            'loss': self.loss,
            'metrics': list(self.metrics)
        }


# camelCase keys sent by the web front end -> TrainingConfig fields
_TRAINING_KEY_ALIASES = {
    'batchSize': 'batch_size',
    'learningRate': 'learning_rate',
    'earlyStopping': 'early_stopping',
    'adamBeta1': 'adam_beta1',
    'adamBeta2': 'adam_beta2',
    'adamEpsilon': 'adam_epsilon',
    'exactDerivatives': 'exact_derivatives',
    'strictNumerics': 'strict_numerics',
}


@dataclass(frozen=True)
class TrainingConfig:
    """
    Hyperparameters for a single training run.

    Parameters
    ----------
    epochs:
        Maximum number of passes over the training data.
    batch_size:
        Samples per optimizer step. The last batch of an epoch may be
        smaller.
    learning_rate:
        Adam step size.
    early_stopping:
        Stop once the monitored loss has not improved for ``patience``
        consecutive epochs. The validation loss is monitored when a
        validation set is given, the training loss otherwise.
    adam_beta1, adam_beta2, adam_epsilon:
        Adam moment decay rates and denominator epsilon.
    loss:
        Loss name overriding the model's ``trainingConfig.loss``.
    exact_derivatives:
        Use the true derivatives of elu, selu and swish instead of the
        constant 1 the model designer has always trained with.
    strict_numerics:
        Raise :class:`~tabular_nn.errors.NumericAnomaly` on a non-finite
        loss instead of logging and skipping the sample.
    seed:
        Seed for the per-epoch shuffling.
    """

    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 0.001
    early_stopping: bool = False
    patience: int = 10
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    adam_epsilon: float = 1e-8
    loss: Optional[str] = None
    exact_derivatives: bool = False
    strict_numerics: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        for name in ('epochs', 'batch_size', 'patience'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
                raise InvalidConfig(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.learning_rate, numbers.Real) or self.learning_rate <= 0:
            raise InvalidConfig(
                f"learning_rate must be a positive number, got {self.learning_rate!r}"
            )
        for name in ('adam_beta1', 'adam_beta2'):
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or not 0.0 <= value < 1.0:
                raise InvalidConfig(f"{name} must be in [0, 1), got {value!r}")
        if not isinstance(self.adam_epsilon, numbers.Real) or self.adam_epsilon <= 0:
            raise InvalidConfig(
                f"adam_epsilon must be a positive number, got {self.adam_epsilon!r}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'TrainingConfig':
        """
        Build a config from a plain dict.

        Both the front end's camelCase keys (``batchSize``, ``learningRate``,
        ...) and snake_case field names are accepted. Unknown keys are
        ignored.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _TRAINING_KEY_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def build_model_json(
    input_units: int,
    hidden_layers: Sequence[Mapping[str, Any]],
    output_units: int,
    output_activation: Optional[str] = None,
    loss: Optional[str] = None,
    name: str = 'Custom Neural Network'
) -> Dict[str, Any]:
    """
    Build a Model JSON the way the model designer does.

    A single output unit defaults to a sigmoid output with binary
    cross-entropy; several output units default to softmax with
    categorical cross-entropy.

    Example:
        >>> cfg = build_model_json(4, [{'units': 3, 'activation': 'relu'}], 1)
        >>> cfg['trainingConfig']['loss']
        'binaryCrossentropy'
    """
    binary = output_units == 1
    model_json = {
        'name': name,
        'version': '1.0',
        'created': datetime.now(timezone.utc).isoformat(),
        'architecture': {
            'inputLayer': {'type': 'dense', 'units': input_units},
            'hiddenLayers': [
                {
                    'type': 'dense',
                    'units': layer['units'],
                    'activation': layer.get('activation', 'relu')
                }
                for layer in hidden_layers
            ],
            'outputLayer': {
                'type': 'dense',
                'units': output_units,
                'activation': output_activation or ('sigmoid' if binary else 'softmax')
            }
        },
        'trainingConfig': {
            'optimizer': 'adam',
            'loss': loss or ('binaryCrossentropy' if binary else 'categoricalCrossentropy'),
            'metrics': ['accuracy']
        }
    }
    # Fail early on a bad design rather than at network construction
    ArchitectureSpec.from_dict(model_json)
    return model_json


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class ServerSettings:
    """Environment-driven settings for the API server."""

    log_level: str = 'INFO'
    is_production: bool = False
    port: int = 8000
    model_dir: str = 'models'
    cleanup_days: int = 2
    epoch_yield_seconds: float = 0.01
    autostart: bool = True
    static_folder: str = 'static'
    quiet_loggers: List[str] = field(default_factory=lambda: [
        'socketio', 'engineio', 'engineio.server', 'socketio.server', 'werkzeug'
    ])

    @classmethod
    def from_env(cls) -> 'ServerSettings':
        return cls(
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            is_production=os.getenv('FLASK_ENV') == 'production',
            port=int(os.getenv('PORT', '8000')),
            model_dir=os.getenv('MODEL_DIR', 'models'),
            cleanup_days=int(os.getenv('CLEANUP_DAYS', '2')),
            epoch_yield_seconds=float(os.getenv('EPOCH_YIELD_SECONDS', '0.01')),
            autostart=_env_flag('NN_AUTOSTART', '1'),
            static_folder=os.getenv('STATIC_FOLDER', 'static')
        )

"""
network.py
~~~~~~~~~~

Dense feed-forward neural network.

The network owns its layer topology and parameters. Weight layer ``i``
maps layer ``i`` to layer ``i + 1`` and is stored row-major as
``[units_out, units_in]``; bias ``i`` has ``units_out`` entries. This is
also the layout of the trained-model JSON, so :meth:`Network.save` and
:meth:`Network.load` round-trip every parameter exactly.
"""

import copy
import logging
import numbers
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from tabular_nn.activations import Activation
from tabular_nn.config import ArchitectureSpec, CompileConfig, LayerSpec, validate_layers
from tabular_nn.errors import InvalidConfig, InvalidInput, ShapeMismatch
from tabular_nn.metrics import resolve_loss_name

logger = logging.getLogger(__name__)


@dataclass
class ForwardCache:
    """
    Intermediate values of one forward pass, kept for backpropagation.

    Attributes:
        output: activation of the output layer
        layer_inputs: ``layer_inputs[i]`` is the activation fed into
            weight layer ``i`` (``layer_inputs[0]`` is the raw input)
        layer_zs: pre-activation of every weight layer
        layer_activations: post-activation of every weight layer
    """
    output: np.ndarray
    layer_inputs: List[np.ndarray]
    layer_zs: List[np.ndarray]
    layer_activations: List[np.ndarray]


def _coerce_layers(layers: Sequence[Union[LayerSpec, Mapping[str, Any]]]) -> List[LayerSpec]:
    specs = []
    for index, layer in enumerate(layers):
        if isinstance(layer, LayerSpec):
            specs.append(layer)
        else:
            default_type = 'input' if index == 0 else 'hidden'
            specs.append(LayerSpec.from_dict(layer, default_type))
    last = len(specs) - 1
    for index, spec in enumerate(specs):
        role = 'input' if index == 0 else 'output' if index == last else 'hidden'
        if spec.type != role:
            specs[index] = LayerSpec(spec.units, spec.activation, role)
    return specs


class Network:
    """
    A dense feed-forward network.

    Example:
        >>> net = Network([LayerSpec(2), LayerSpec(3, 'relu'), LayerSpec(1, 'sigmoid', 'output')])
        >>> [w.shape for w in net.weights]
        [(3, 2), (1, 3)]
    """

    def __init__(
        self,
        layers: Sequence[Union[LayerSpec, Mapping[str, Any]]],
        config: Optional[Mapping[str, Any]] = None,
        rng: Union[None, int, np.random.Generator] = None
    ):
        """
        Build the topology and Xavier/Glorot-uniform initialize it.

        Args:
            layers: layer specs, input layer first, output layer last
            config: the Model JSON this network came from; kept verbatim
                for :meth:`save`
            rng: numpy Generator or seed for reproducible initialization

        Raises:
            InvalidConfig: fewer than two layers or a bad unit count
        """
        specs = _coerce_layers(layers)
        validate_layers(specs)

        self.layers: List[LayerSpec] = specs
        self.config: Dict[str, Any] = copy.deepcopy(dict(config)) if config else {
            'architecture': ArchitectureSpec(tuple(specs)).to_dict(),
            'trainingConfig': CompileConfig().to_dict()
        }
        self.compile_config = CompileConfig.from_dict(self.config)
        self._activations = [Activation.parse(layer.activation) for layer in specs]

        rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        self.weights: List[np.ndarray] = []
        self.biases: List[np.ndarray] = []
        for fan_in, fan_out in zip(self.sizes[:-1], self.sizes[1:]):
            limit = np.sqrt(6.0 / (fan_in + fan_out))
            self.weights.append(rng.uniform(-limit, limit, size=(fan_out, fan_in)))
            self.biases.append(np.zeros(fan_out))

    @classmethod
    def from_config(
        cls,
        model_json: Mapping[str, Any],
        rng: Union[None, int, np.random.Generator] = None
    ) -> 'Network':
        """Build a network from a Model JSON (``architecture`` + ``trainingConfig``)."""
        architecture = ArchitectureSpec.from_dict(model_json)
        return cls(architecture.layers, config=model_json, rng=rng)

    def __repr__(self):
        return f"<Network sizes={self.sizes} loss={self.loss_name!r}>"

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @property
    def sizes(self) -> List[int]:
        return [layer.units for layer in self.layers]

    @property
    def input_units(self) -> int:
        return self.layers[0].units

    @property
    def output_units(self) -> int:
        return self.layers[-1].units

    @property
    def activations(self) -> List[Activation]:
        """Resolved activation of every layer (index 0 is the input layer)."""
        return list(self._activations)

    @property
    def output_activation(self) -> Activation:
        return self._activations[-1]

    @property
    def loss_name(self) -> str:
        return resolve_loss_name(self.compile_config.loss)

    @property
    def weight_shapes(self) -> List[tuple]:
        return [w.shape for w in self.weights]

    def count_parameters(self) -> int:
        """Number of trainable weights and biases."""
        return int(sum(w.size for w in self.weights) + sum(b.size for b in self.biases))

    def describe(self) -> Dict[str, Any]:
        return {
            'layers': [layer.to_dict() for layer in self.layers],
            'sizes': self.sizes,
            'weights_shape': [list(shape) for shape in self.weight_shapes],
            'total_parameters': self.count_parameters(),
            'loss': self.loss_name
        }

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def validate_input(self, x) -> np.ndarray:
        """Convert one sample to a float vector of the input layer's length."""
        if x is None or isinstance(x, (str, bytes, numbers.Number)):
            raise InvalidInput(f"Input must be a sequence of numbers, got {x!r}")
        try:
            a = np.asarray(x, dtype=float)
        except (TypeError, ValueError) as e:
            raise InvalidInput(f"Input must be numeric: {e}") from e
        if a.ndim != 1:
            raise ShapeMismatch(f"Input must be a vector, got shape {a.shape}")
        if a.shape[0] != self.input_units:
            raise ShapeMismatch(
                f"Input has {a.shape[0]} values, the input layer has "
                f"{self.input_units} units"
            )
        return a

    def forward(self, x) -> np.ndarray:
        """
        Return the output activation for one input vector.

        Raises:
            ShapeMismatch: the input length differs from the input units
        """
        a = self.validate_input(x)
        for w, b, activation in zip(self.weights, self.biases, self._activations[1:]):
            a = activation.apply(w @ a + b)
        return a

    def forward_with_cache(self, x) -> ForwardCache:
        """Same computation as :meth:`forward`, keeping every ``z`` and ``a``."""
        a = self.validate_input(x)
        layer_inputs = [a]
        layer_zs = []
        layer_activations = []

        last = len(self.weights) - 1
        for i, (w, b, activation) in enumerate(
                zip(self.weights, self.biases, self._activations[1:])):
            z = w @ a + b
            a = activation.apply(z)
            layer_zs.append(z)
            layer_activations.append(a)
            if i < last:
                layer_inputs.append(a)

        return ForwardCache(
            output=a,
            layer_inputs=layer_inputs,
            layer_zs=layer_zs,
            layer_activations=layer_activations
        )

    def predict(self, x) -> Union[np.ndarray, List[np.ndarray]]:
        """
        Predict a single sample or a batch.

        A batch is recognized by its first element being a sequence
        itself; each sample is then run through :meth:`forward`.
        """
        if isinstance(x, np.ndarray):
            if x.ndim == 2:
                return [self.forward(sample) for sample in x]
            return self.forward(x)
        if isinstance(x, (list, tuple)) and x and isinstance(x[0], (list, tuple, np.ndarray)):
            return [self.forward(sample) for sample in x]
        return self.forward(x)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def save(self) -> Dict[str, Any]:
        """
        Snapshot the model as a JSON-ready dict.

        The snapshot holds ``config``, ``weights``, ``biases`` and
        ``layers``. Optimizer state is not included.
        """
        return {
            'config': copy.deepcopy(self.config),
            'weights': [w.tolist() for w in self.weights],
            'biases': [b.tolist() for b in self.biases],
            'layers': [layer.to_dict() for layer in self.layers]
        }

    @classmethod
    def load(cls, snapshot: Mapping[str, Any]) -> 'Network':
        """
        Rebuild a network from :meth:`save` output.

        The network is constructed from ``config`` and its parameters and
        layers are then replaced by the snapshot's values.

        Raises:
            InvalidConfig: the snapshot is incomplete or inconsistent
        """
        if not isinstance(snapshot, Mapping):
            raise InvalidConfig("Saved model must be a JSON object")
        missing = [key for key in ('config', 'weights', 'biases') if key not in snapshot]
        if missing:
            raise InvalidConfig(f"Saved model is missing {', '.join(missing)}")

        network = cls.from_config(snapshot['config'])
        if snapshot.get('layers'):
            layers = _coerce_layers(snapshot['layers'])
            validate_layers(layers)
            network.layers = layers
            network._activations = [Activation.parse(layer.activation) for layer in layers]

        try:
            weights = [np.array(w, dtype=float) for w in snapshot['weights']]
            biases = [np.array(b, dtype=float) for b in snapshot['biases']]
        except (TypeError, ValueError) as e:
            raise InvalidConfig(f"Saved parameters are not numeric: {e}") from e

        expected = list(zip(network.sizes[1:], network.sizes[:-1]))
        if len(weights) != len(expected) or len(biases) != len(expected):
            raise InvalidConfig(
                f"Saved model has {len(weights)} weight and {len(biases)} bias "
                f"layers, its topology needs {len(expected)}"
            )
        for i, (w, b, shape) in enumerate(zip(weights, biases, expected)):
            if w.shape != shape or b.shape != (shape[0],):
                raise InvalidConfig(
                    f"Weight layer {i} has shapes {w.shape}/{b.shape}, "
                    f"expected {shape}/({shape[0]},)"
                )

        network.weights = weights
        network.biases = biases
        logger.debug(f"Loaded network with sizes {network.sizes}")
        return network

"""
activations.py
~~~~~~~~~~~~~~

Activation functions and their derivatives.

Every activation is a member of the closed :class:`Activation` enum and
is resolved from its name once, when a layer is built. Derivatives are
taken with respect to the pre-activation ``z``.
"""

from enum import Enum
from typing import Callable, Dict, Union

import numpy as np

ArrayLike = Union[float, np.ndarray]

ELU_ALPHA = 1.0
SELU_ALPHA = 1.67326
SELU_SCALE = 1.0507


def relu(z: ArrayLike) -> ArrayLike:
    return np.maximum(0.0, z)


def sigmoid(z: ArrayLike) -> ArrayLike:
    return 1.0 / (1.0 + np.exp(-z))


def tanh(z: ArrayLike) -> ArrayLike:
    return np.tanh(z)


def softmax(z: np.ndarray) -> np.ndarray:
    """Softmax of a vector, shifted by its maximum before exponentiating."""
    z = np.asarray(z, dtype=float)
    if z.size == 0:
        return z
    exp = np.exp(z - np.max(z))
    return exp / np.sum(exp)


def linear(z: ArrayLike) -> ArrayLike:
    return z


def elu(z: ArrayLike, alpha: float = ELU_ALPHA) -> ArrayLike:
    return np.where(z > 0, z, alpha * (np.exp(np.minimum(z, 0.0)) - 1.0))


def selu(z: ArrayLike, alpha: float = SELU_ALPHA, scale: float = SELU_SCALE) -> ArrayLike:
    return scale * elu(z, alpha)


def swish(z: ArrayLike) -> ArrayLike:
    return z * sigmoid(z)


def _ones(z: ArrayLike) -> ArrayLike:
    return np.ones_like(np.asarray(z, dtype=float))


def _relu_derivative(z: ArrayLike) -> ArrayLike:
    return (np.asarray(z) > 0).astype(float)


def _sigmoid_derivative(z: ArrayLike) -> ArrayLike:
    s = sigmoid(z)
    return s * (1.0 - s)


def _tanh_derivative(z: ArrayLike) -> ArrayLike:
    t = np.tanh(z)
    return 1.0 - t * t


def _elu_derivative(z: ArrayLike) -> ArrayLike:
    return np.where(z > 0, 1.0, ELU_ALPHA * np.exp(np.minimum(z, 0.0)))


def _selu_derivative(z: ArrayLike) -> ArrayLike:
    return SELU_SCALE * np.where(z > 0, 1.0, SELU_ALPHA * np.exp(np.minimum(z, 0.0)))


def _swish_derivative(z: ArrayLike) -> ArrayLike:
    s = sigmoid(z)
    return s + z * s * (1.0 - s)


class Activation(Enum):
    """The activations a dense layer can use."""

    RELU = 'relu'
    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    SOFTMAX = 'softmax'
    LINEAR = 'linear'
    ELU = 'elu'
    SELU = 'selu'
    SWISH = 'swish'

    @classmethod
    def parse(cls, name) -> 'Activation':
        """
        Resolve an activation name.

        Names match exactly. Any other spelling, a different case
        included, behaves as linear.
        """
        if isinstance(name, cls):
            return name
        try:
            return cls(name) if name else cls.LINEAR
        except ValueError:
            return cls.LINEAR

    def apply(self, z: np.ndarray) -> np.ndarray:
        """Apply the activation element-wise (softmax: over the vector)."""
        return _FORWARD[self](z)

    def derivative(self, z: np.ndarray, exact: bool = False) -> np.ndarray:
        """
        Derivative with respect to the pre-activation ``z``.

        Softmax has no derivative of its own and returns ones: it is only
        used at the output layer, where the softmax + cross-entropy delta
        is already ``prediction - target``.

        elu, selu and swish return ones unless ``exact`` is set. Networks
        exported by the model designer were trained that way, so the
        approximation stays the default.
        """
        if exact and self in _EXACT_DERIVATIVE:
            return _EXACT_DERIVATIVE[self](z)
        return _DERIVATIVE.get(self, _ones)(z)


_FORWARD: Dict[Activation, Callable[[np.ndarray], np.ndarray]] = {
    Activation.RELU: relu,
    Activation.SIGMOID: sigmoid,
    Activation.TANH: tanh,
    Activation.SOFTMAX: softmax,
    Activation.LINEAR: linear,
    Activation.ELU: elu,
    Activation.SELU: selu,
    Activation.SWISH: swish,
}

_DERIVATIVE: Dict[Activation, Callable[[np.ndarray], np.ndarray]] = {
    Activation.RELU: _relu_derivative,
    Activation.SIGMOID: _sigmoid_derivative,
    Activation.TANH: _tanh_derivative,
}

_EXACT_DERIVATIVE: Dict[Activation, Callable[[np.ndarray], np.ndarray]] = {
    Activation.ELU: _elu_derivative,
    Activation.SELU: _selu_derivative,
    Activation.SWISH: _swish_derivative,
}

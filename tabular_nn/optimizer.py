"""
optimizer.py
~~~~~~~~~~~~

Adam optimizer for :class:`~tabular_nn.network.Network`.

Moment buffers mirror the network's weight and bias shapes and are
created on the first :meth:`AdamOptimizer.step`. An optimizer belongs to
one network for one training run.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np

from tabular_nn.errors import ShapeMismatch

logger = logging.getLogger(__name__)

MIN_BIAS_CORRECTION = 1e-12


@dataclass
class AdamState:
    """First/second moments per weight and bias, and the shared step count."""
    mW: List[np.ndarray] = field(default_factory=list)
    vW: List[np.ndarray] = field(default_factory=list)
    mB: List[np.ndarray] = field(default_factory=list)
    vB: List[np.ndarray] = field(default_factory=list)
    t: int = 0

    @classmethod
    def zeros_like(cls, weights: Sequence[np.ndarray], biases: Sequence[np.ndarray]) -> 'AdamState':
        return cls(
            mW=[np.zeros_like(w) for w in weights],
            vW=[np.zeros_like(w) for w in weights],
            mB=[np.zeros_like(b) for b in biases],
            vB=[np.zeros_like(b) for b in biases],
            t=0
        )


class AdamOptimizer:
    """
    Bias-corrected Adam.

    Each call to :meth:`step` increments ``t`` once and then, for every
    parameter ``p`` with averaged gradient ``g``::

        lr_t = lr * sqrt(1 - beta2**t) / max(1 - beta1**t, 1e-12)
        m = beta1 * m + (1 - beta1) * g
        v = beta2 * v + (1 - beta2) * g**2
        p -= lr_t * m / (sqrt(v) + eps)
    """

    def __init__(
        self,
        network,
        learning_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8
    ):
        self.network = network
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.state = None

    def reset(self) -> None:
        """Drop the moment buffers; the next step starts again at t=1."""
        self.state = None

    def _check_shapes(self, grad_weights, grad_biases) -> None:
        weights = self.network.weights
        biases = self.network.biases
        if len(grad_weights) != len(weights) or len(grad_biases) != len(biases):
            raise ShapeMismatch(
                f"Got gradients for {len(grad_weights)} weight and "
                f"{len(grad_biases)} bias layers, network has {len(weights)}"
            )
        for i, (gw, w, gb, b) in enumerate(zip(grad_weights, weights, grad_biases, biases)):
            if np.shape(gw) != w.shape or np.shape(gb) != b.shape:
                raise ShapeMismatch(
                    f"Gradient shapes {np.shape(gw)}/{np.shape(gb)} for layer {i} "
                    f"do not match parameters {w.shape}/{b.shape}"
                )

    def step(self, grad_weights: Sequence[np.ndarray], grad_biases: Sequence[np.ndarray]) -> None:
        """
        Apply one update with already batch-averaged gradients.

        Raises:
            ShapeMismatch: a gradient does not match its parameter
        """
        self._check_shapes(grad_weights, grad_biases)
        if self.state is None:
            self.state = AdamState.zeros_like(self.network.weights, self.network.biases)

        state = self.state
        state.t += 1
        t = state.t
        beta1, beta2 = self.beta1, self.beta2
        bias_corr1 = 1.0 - beta1 ** t
        bias_corr2 = 1.0 - beta2 ** t
        lr_t = self.learning_rate * np.sqrt(bias_corr2) / max(bias_corr1, MIN_BIAS_CORRECTION)

        for i, (gw, gb) in enumerate(zip(grad_weights, grad_biases)):
            gw = np.asarray(gw, dtype=float)
            gb = np.asarray(gb, dtype=float)

            state.mW[i] = beta1 * state.mW[i] + (1.0 - beta1) * gw
            state.vW[i] = beta2 * state.vW[i] + (1.0 - beta2) * (gw * gw)
            self.network.weights[i] -= lr_t * state.mW[i] / (np.sqrt(state.vW[i]) + self.epsilon)

            state.mB[i] = beta1 * state.mB[i] + (1.0 - beta1) * gb
            state.vB[i] = beta2 * state.vB[i] + (1.0 - beta2) * (gb * gb)
            self.network.biases[i] -= lr_t * state.mB[i] / (np.sqrt(state.vB[i]) + self.epsilon)

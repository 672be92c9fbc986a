"""
trainer.py
~~~~~~~~~~

Mini-batch training with backpropagation and Adam.

Each epoch shuffles the samples, splits them into contiguous batches,
accumulates per-sample gradients over a batch and applies one Adam step
per batch. After every epoch the host gets the epoch record through
``on_epoch_end`` and a chance to run other work through ``yield_func``
(the API server passes ``gevent.sleep``). Training ends when the epochs
are exhausted, early stopping triggers or ``should_stop`` returns true.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from tabular_nn.activations import Activation
from tabular_nn.config import TrainingConfig
from tabular_nn.errors import InvalidInput, NumericAnomaly, ShapeMismatch
from tabular_nn.metrics import LOSSES, accuracy, is_finite, resolve_loss_name
from tabular_nn.network import ForwardCache, Network
from tabular_nn.optimizer import AdamOptimizer

logger = logging.getLogger(__name__)


@dataclass
class EpochRecord:
    """Metrics of one finished epoch."""
    epoch: int
    loss: float
    accuracy: float
    val_loss: Optional[float] = None
    val_accuracy: Optional[float] = None
    numeric_anomalies: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epoch': self.epoch,
            'loss': self.loss,
            'accuracy': self.accuracy,
            'valLoss': self.val_loss,
            'valAccuracy': self.val_accuracy,
            'numericAnomalies': self.numeric_anomalies
        }


@dataclass
class TrainingHistory:
    """Append-only list of epoch records plus how the run ended."""
    records: List[EpochRecord] = field(default_factory=list)
    stopped_early: bool = False
    cancelled: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def append(self, record: EpochRecord) -> None:
        self.records.append(record)

    @property
    def loss(self) -> List[float]:
        return [r.loss for r in self.records]

    @property
    def accuracy(self) -> List[float]:
        return [r.accuracy for r in self.records]

    @property
    def val_loss(self) -> List[Optional[float]]:
        return [r.val_loss for r in self.records]

    @property
    def val_accuracy(self) -> List[Optional[float]]:
        return [r.val_accuracy for r in self.records]

    @property
    def last(self) -> Optional[EpochRecord]:
        return self.records[-1] if self.records else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loss': self.loss,
            'accuracy': self.accuracy,
            'valLoss': self.val_loss,
            'valAccuracy': self.val_accuracy,
            'epochs': [r.to_dict() for r in self.records],
            'stoppedEarly': self.stopped_early,
            'cancelled': self.cancelled
        }


class EarlyStopping:
    """
    Patience counter over a monitored loss.

    A value strictly lower than the best seen so far resets the counter;
    anything else increments it. :meth:`update` returns True once the
    counter reaches ``patience``.
    """

    def __init__(self, patience: int):
        self.patience = patience
        self.best = math.inf
        self.wait = 0

    def update(self, value: float) -> bool:
        if value < self.best:
            self.best = value
            self.wait = 0
            return False
        self.wait += 1
        return self.wait >= self.patience


class Trainer:
    """
    Trains a :class:`~tabular_nn.network.Network` in place.

    Args:
        network: the network to train
        config: a :class:`TrainingConfig` or a dict accepted by
            :meth:`TrainingConfig.from_dict`
    """

    def __init__(
        self,
        network: Network,
        config: Union[None, TrainingConfig, Mapping[str, Any]] = None
    ):
        self.network = network
        self.config = config if isinstance(config, TrainingConfig) else TrainingConfig.from_dict(config)
        self.loss_name = resolve_loss_name(self.config.loss or network.compile_config.loss)
        self.loss_fn = LOSSES[self.loss_name]
        self.rng = np.random.default_rng(self.config.seed)
        self.optimizer: Optional[AdamOptimizer] = None

    # ------------------------------------------------------------------
    # Data preparation
    # ------------------------------------------------------------------

    def _prepare_target(self, label, index: int) -> np.ndarray:
        units = self.network.output_units
        if isinstance(label, str):
            raise InvalidInput(f"Label {index} is not numeric: {label!r}")
        try:
            target = np.atleast_1d(np.asarray(label, dtype=float))
        except (TypeError, ValueError) as e:
            raise InvalidInput(f"Label {index} is not numeric: {label!r}") from e
        if target.ndim != 1:
            raise ShapeMismatch(f"Label {index} must be a number or a vector")

        if target.shape[0] == units:
            return target
        if target.shape[0] == 1 and units > 1:
            # Integer class index for a multi-unit output
            value = target[0]
            if not float(value).is_integer() or not 0 <= value < units:
                raise InvalidInput(
                    f"Label {index} ({label!r}) is not a class index in [0, {units})"
                )
            one_hot = np.zeros(units)
            one_hot[int(value)] = 1.0
            return one_hot
        raise ShapeMismatch(
            f"Label {index} has {target.shape[0]} values, the output layer "
            f"has {units} units"
        )

    def prepare_data(
        self,
        features: Sequence[Any],
        labels: Sequence[Any],
        name: str = 'training'
    ) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """
        Validate and convert a feature matrix and label vector.

        Raises:
            InvalidInput: empty or unequal-length collections, non-numeric
                values
            ShapeMismatch: a row or label does not fit the network
        """
        if features is None or labels is None:
            raise InvalidInput(f"{name} features and labels are required")
        if isinstance(features, (str, bytes)) or isinstance(labels, (str, bytes)):
            raise InvalidInput(f"{name} features and labels must be sequences")
        try:
            n_features = len(features)
            n_labels = len(labels)
        except TypeError as e:
            raise InvalidInput(f"{name} features and labels must be sequences") from e
        if n_features == 0 or n_labels == 0:
            raise InvalidInput(f"{name} data cannot be empty")
        if n_features != n_labels:
            raise InvalidInput(
                f"{name} features ({n_features}) and labels ({n_labels}) "
                f"must have the same length"
            )

        x = [self.network.validate_input(row) for row in features]
        y = [self._prepare_target(label, i) for i, label in enumerate(labels)]
        return x, y

    def _shuffled_indices(self, n: int) -> List[int]:
        """Fisher-Yates shuffle of ``range(n)``."""
        indices = list(range(n))
        for i in range(n - 1, 0, -1):
            j = int(self.rng.integers(0, i + 1))
            indices[i], indices[j] = indices[j], indices[i]
        return indices

    # ------------------------------------------------------------------
    # Backpropagation
    # ------------------------------------------------------------------

    def uses_simplified_delta(self) -> bool:
        """True when the output delta is exactly ``prediction - target``."""
        output = self.network.output_activation
        return ((output is Activation.SIGMOID and self.loss_name == 'binaryCrossentropy')
                or (output is Activation.SOFTMAX and self.loss_name == 'categoricalCrossentropy'))

    def output_delta(self, prediction: np.ndarray, target: np.ndarray, z_out: np.ndarray) -> np.ndarray:
        if self.uses_simplified_delta():
            return prediction - target
        derivative = self.network.output_activation.derivative(
            z_out, exact=self.config.exact_derivatives
        )
        return (prediction - target) * derivative

    def backpropagate(self, cache: ForwardCache, target: np.ndarray) -> List[np.ndarray]:
        """Return the delta of every weight layer for one sample."""
        weights = self.network.weights
        activations = self.network.activations
        exact = self.config.exact_derivatives

        deltas: List[np.ndarray] = [None] * len(weights)
        deltas[-1] = self.output_delta(cache.output, target, cache.layer_zs[-1])
        for l in range(len(weights) - 2, -1, -1):
            derivative = activations[l + 1].derivative(cache.layer_zs[l], exact=exact)
            deltas[l] = (weights[l + 1].T @ deltas[l + 1]) * derivative
        return deltas

    # ------------------------------------------------------------------
    # Training loop
    # ------------------------------------------------------------------

    def _record_anomaly(self, epoch: int, index: int, loss, prediction) -> None:
        message = (
            f"Non-finite loss {loss!r} for sample {index} in epoch {epoch} "
            f"(prediction {np.asarray(prediction).tolist()})"
        )
        if self.config.strict_numerics:
            raise NumericAnomaly(message)
        logger.warning(message + "; sample skipped")

    def _run_epoch(self, epoch: int, x: List[np.ndarray], y: List[np.ndarray]) -> Tuple[float, float, int]:
        network = self.network
        batch_size = self.config.batch_size
        order = self._shuffled_indices(len(x))

        epoch_loss = 0.0
        epoch_accuracy = 0.0
        batch_count = 0
        anomalies = 0

        for start in range(0, len(order), batch_size):
            batch = order[start:start + batch_size]
            grad_weights = [np.zeros_like(w) for w in network.weights]
            grad_biases = [np.zeros_like(b) for b in network.biases]
            batch_loss = 0.0
            batch_accuracy = 0.0
            used = 0

            for index in batch:
                cache = network.forward_with_cache(x[index])
                prediction = cache.output
                target = y[index]
                loss = self.loss_fn(target, prediction)
                if not is_finite(loss) or not is_finite(prediction):
                    anomalies += 1
                    self._record_anomaly(epoch, index, loss, prediction)
                    continue

                batch_loss += loss
                batch_accuracy += accuracy(target, prediction)
                used += 1

                deltas = self.backpropagate(cache, target)
                for l, delta in enumerate(deltas):
                    a_prev = cache.layer_inputs[0] if l == 0 else cache.layer_activations[l - 1]
                    grad_weights[l] += np.outer(delta, a_prev)
                    grad_biases[l] += delta

            if used == 0:
                continue

            inv_batch = 1.0 / used
            self.optimizer.step(
                [g * inv_batch for g in grad_weights],
                [g * inv_batch for g in grad_biases]
            )
            epoch_loss += batch_loss * inv_batch
            epoch_accuracy += batch_accuracy * inv_batch
            batch_count += 1

        if batch_count == 0:
            return float('nan'), float('nan'), anomalies
        return epoch_loss / batch_count, epoch_accuracy / batch_count, anomalies

    def _evaluate_prepared(self, x: List[np.ndarray], y: List[np.ndarray]) -> Tuple[float, float]:
        loss_sum = 0.0
        accuracy_sum = 0.0
        for features, target in zip(x, y):
            prediction = self.network.forward(features)
            loss_sum += self.loss_fn(target, prediction)
            accuracy_sum += accuracy(target, prediction)
        mean_loss = loss_sum / len(x)
        if not math.isfinite(mean_loss):
            logger.warning(f"Non-finite evaluation loss: {mean_loss}")
        return mean_loss, accuracy_sum / len(x)

    def evaluate(self, features: Sequence[Any], labels: Sequence[Any]) -> Tuple[float, float]:
        """Mean loss and accuracy over a labelled set, without training."""
        x, y = self.prepare_data(features, labels, name='evaluation')
        return self._evaluate_prepared(x, y)

    def train(
        self,
        features: Sequence[Any],
        labels: Sequence[Any],
        val_features: Optional[Sequence[Any]] = None,
        val_labels: Optional[Sequence[Any]] = None,
        on_epoch_end: Optional[Callable[[EpochRecord], None]] = None,
        yield_func: Optional[Callable[[], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> TrainingHistory:
        """
        Train the network and return the per-epoch history.

        Args:
            features: training rows, each of the input layer's length
            labels: numbers, vectors or class indices
            val_features, val_labels: optional validation set; when
                empty, ``val_loss``/``val_accuracy`` are None
            on_epoch_end: called with each :class:`EpochRecord`
            yield_func: called after ``on_epoch_end`` to let the host
                run other work before the next epoch
            should_stop: polled before each epoch; returning True ends
                training and marks the history as cancelled

        Raises:
            InvalidInput: empty or mismatched data
            ShapeMismatch: rows or labels that do not fit the network
            NumericAnomaly: non-finite loss with ``strict_numerics``
        """
        config = self.config
        x_train, y_train = self.prepare_data(features, labels, name='training')

        has_validation = val_features is not None and len(val_features) > 0
        if has_validation:
            x_val, y_val = self.prepare_data(val_features, val_labels, name='validation')

        self.optimizer = AdamOptimizer(
            self.network,
            learning_rate=config.learning_rate,
            beta1=config.adam_beta1,
            beta2=config.adam_beta2,
            epsilon=config.adam_epsilon
        )
        stopper = EarlyStopping(config.patience) if config.early_stopping else None
        history = TrainingHistory()

        logger.info(
            f"Training {self.network.sizes} on {len(x_train)} samples: "
            f"epochs={config.epochs}, batch_size={config.batch_size}, "
            f"lr={config.learning_rate}, loss={self.loss_name}"
        )

        for epoch in range(1, config.epochs + 1):
            if should_stop is not None and should_stop():
                history.cancelled = True
                logger.info(f"Training cancelled before epoch {epoch}")
                break

            loss, acc, anomalies = self._run_epoch(epoch, x_train, y_train)
            val_loss = val_acc = None
            if has_validation:
                val_loss, val_acc = self._evaluate_prepared(x_val, y_val)

            record = EpochRecord(
                epoch=epoch,
                loss=loss,
                accuracy=acc,
                val_loss=val_loss,
                val_accuracy=val_acc,
                numeric_anomalies=anomalies
            )
            history.append(record)
            logger.debug(
                f"Epoch {epoch}/{config.epochs}: loss={loss:.6f} accuracy={acc:.4f} "
                f"val_loss={val_loss} val_accuracy={val_acc}"
            )

            if on_epoch_end is not None:
                on_epoch_end(record)
            if yield_func is not None:
                yield_func()

            if stopper is not None and stopper.update(val_loss if has_validation else loss):
                history.stopped_early = True
                logger.info(f"Early stopping at epoch {epoch}")
                break

        return history


def train(
    network: Network,
    features: Sequence[Any],
    labels: Sequence[Any],
    val_features: Optional[Sequence[Any]] = None,
    val_labels: Optional[Sequence[Any]] = None,
    config: Union[None, TrainingConfig, Mapping[str, Any]] = None,
    **callbacks
) -> TrainingHistory:
    """
    Train ``network`` in place with a fresh :class:`Trainer`.

    Example:
        >>> history = train(net, [[0, 0], [1, 1]], [0, 1], config={'epochs': 5})
        >>> len(history.loss)
        5
    """
    return Trainer(network, config).train(
        features, labels, val_features, val_labels, **callbacks
    )

"""
test_trainer.py
~~~~~~~~~~~~~~~

Unit and integration tests for the training loop.
"""

import pytest
import os
import sys
import math

import numpy as np

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tabular_nn.activations import Activation
from tabular_nn.config import LayerSpec, TrainingConfig, build_model_json
from tabular_nn.errors import InvalidConfig, InvalidInput, NumericAnomaly, ShapeMismatch
from tabular_nn.metrics import binary_crossentropy
from tabular_nn.network import Network
from tabular_nn.trainer import EarlyStopping, Trainer, train


@pytest.fixture
def binary_network():
    """4 inputs, 3 relu hidden units, 1 sigmoid output, binary cross-entropy."""
    return Network.from_config(
        build_model_json(4, [{'units': 3, 'activation': 'relu'}], 1), rng=0
    )


@pytest.fixture
def or_data():
    features = [[0, 0], [0, 1], [1, 0], [1, 1]]
    labels = [0, 1, 1, 1]
    return features, labels


def or_network(seed=0):
    return Network.from_config(
        build_model_json(2, [{'units': 4, 'activation': 'tanh'}], 1), rng=seed
    )


@pytest.mark.unit
class TestTrainingConfig:
    """Hyperparameter parsing."""

    def test_defaults(self):
        config = TrainingConfig()
        assert config.epochs == 100
        assert config.batch_size == 32
        assert config.learning_rate == 0.001
        assert config.early_stopping is False
        assert config.patience == 10

    def test_camel_case_keys(self):
        config = TrainingConfig.from_dict({
            'epochs': 5, 'batchSize': 8, 'learningRate': 0.01,
            'earlyStopping': True, 'patience': 3, 'somethingElse': 1
        })
        assert (config.epochs, config.batch_size, config.learning_rate) == (5, 8, 0.01)
        assert config.early_stopping is True
        assert config.patience == 3

    @pytest.mark.parametrize('data', [
        {'epochs': 0}, {'batch_size': -1}, {'learning_rate': 0},
        {'adam_beta1': 1.0}, {'patience': 0}
    ])
    def test_invalid_values(self, data):
        with pytest.raises(InvalidConfig):
            TrainingConfig.from_dict(data)


@pytest.mark.unit
class TestEarlyStopping:
    """Patience counter."""

    def test_stops_after_patience_non_improving_epochs(self):
        stopper = EarlyStopping(patience=2)
        results = [stopper.update(v) for v in [0.5, 0.4, 0.45, 0.46]]
        assert results == [False, False, False, True]
        assert stopper.best == 0.4

    def test_equal_value_is_not_an_improvement(self):
        stopper = EarlyStopping(patience=1)
        stopper.update(0.3)
        assert stopper.update(0.3) is True

    def test_improvement_resets_counter(self):
        stopper = EarlyStopping(patience=2)
        for value in [0.5, 0.6, 0.4, 0.45]:
            assert stopper.update(value) is False
        assert stopper.wait == 1


@pytest.mark.unit
class TestBackpropagation:
    """Output deltas and gradients."""

    def test_sigmoid_bce_delta_is_prediction_minus_target(self, binary_network):
        trainer = Trainer(binary_network)
        prediction = np.array([0.8])
        target = np.array([1.0])
        z = np.array([np.log(4.0)])

        assert trainer.uses_simplified_delta()
        assert np.array_equal(trainer.output_delta(prediction, target, z), prediction - target)

    def test_softmax_cce_delta_is_prediction_minus_target(self):
        net = Network.from_config(build_model_json(2, [{'units': 2}], 3), rng=0)
        trainer = Trainer(net)
        prediction = np.array([0.2, 0.5, 0.3])
        target = np.array([0.0, 1.0, 0.0])
        assert np.array_equal(
            trainer.output_delta(prediction, target, np.zeros(3)), prediction - target
        )

    def test_other_pairs_use_activation_derivative(self, binary_network):
        trainer = Trainer(binary_network, {'loss': 'meanSquaredError'})
        z = np.array([0.3])
        prediction = Activation.SIGMOID.apply(z)
        target = np.array([1.0])

        assert not trainer.uses_simplified_delta()
        expected = (prediction - target) * prediction * (1 - prediction)
        assert np.allclose(trainer.output_delta(prediction, target, z), expected)

    def test_gradients_match_finite_differences(self):
        net = Network.from_config(
            build_model_json(3, [{'units': 4, 'activation': 'tanh'}], 1), rng=5
        )
        trainer = Trainer(net)
        x = np.array([0.4, -0.6, 0.9])
        target = np.array([1.0])

        cache = net.forward_with_cache(x)
        deltas = trainer.backpropagate(cache, target)
        analytic = [np.outer(deltas[0], cache.layer_inputs[0]),
                    np.outer(deltas[1], cache.layer_activations[0])]

        h = 1e-6
        for l, w in enumerate(net.weights):
            numeric = np.zeros_like(w)
            for idx in np.ndindex(w.shape):
                original = w[idx]
                w[idx] = original + h
                up = binary_crossentropy(target, net.forward(x))
                w[idx] = original - h
                down = binary_crossentropy(target, net.forward(x))
                w[idx] = original
                numeric[idx] = (up - down) / (2 * h)
            assert np.allclose(analytic[l], numeric, atol=1e-6)

    def test_exact_derivatives_flag(self):
        net = Network([LayerSpec(2), LayerSpec(3, 'elu'), LayerSpec(1, 'linear')], rng=2)
        x = np.array([-1.0, -2.0])
        target = np.array([0.0])
        cache = net.forward_with_cache(x)

        approx = Trainer(net).backpropagate(cache, target)
        exact = Trainer(net, {'exact_derivatives': True}).backpropagate(cache, target)

        upstream = net.weights[1].T @ approx[1]
        assert np.allclose(approx[0], upstream)
        z = cache.layer_zs[0]
        assert np.allclose(exact[0], upstream * Activation.ELU.derivative(z, exact=True))


@pytest.mark.unit
class TestDataPreparation:
    """Validation of training data."""

    def test_empty_data(self, binary_network):
        with pytest.raises(InvalidInput):
            Trainer(binary_network).train([], [])

    def test_length_mismatch(self, binary_network):
        with pytest.raises(InvalidInput):
            Trainer(binary_network).train([[0, 0, 0, 0], [1, 1, 1, 1]], [0])

    def test_wrong_row_length_leaves_network_untouched(self, binary_network):
        before = [w.copy() for w in binary_network.weights]
        with pytest.raises(ShapeMismatch):
            Trainer(binary_network).train([[0, 0, 0]], [0])
        for w, original in zip(binary_network.weights, before):
            assert np.array_equal(w, original)

    def test_non_numeric_label(self, binary_network):
        with pytest.raises(InvalidInput):
            Trainer(binary_network).train([[0, 0, 0, 0]], ['yes'])

    def test_class_index_is_one_hot_encoded(self):
        net = Network.from_config(build_model_json(2, [{'units': 3}], 3), rng=0)
        trainer = Trainer(net)
        _, y = trainer.prepare_data([[0, 1], [1, 0]], [2, [1, 0, 0]])
        assert np.array_equal(y[0], [0.0, 0.0, 1.0])
        assert np.array_equal(y[1], [1.0, 0.0, 0.0])

    @pytest.mark.parametrize('label', [3, -1, 1.5])
    def test_bad_class_index(self, label):
        net = Network.from_config(build_model_json(2, [{'units': 3}], 3), rng=0)
        with pytest.raises(InvalidInput):
            Trainer(net).prepare_data([[0, 1]], [label])

    def test_wrong_label_length(self):
        net = Network.from_config(build_model_json(2, [{'units': 3}], 3), rng=0)
        with pytest.raises(ShapeMismatch):
            Trainer(net).prepare_data([[0, 1]], [[0, 1]])

    def test_shuffle_is_a_permutation(self, binary_network):
        trainer = Trainer(binary_network, {'seed': 11})
        assert sorted(trainer._shuffled_indices(10)) == list(range(10))


@pytest.mark.unit
class TestTrainingLoop:
    """Epoch bookkeeping, callbacks and stopping."""

    def test_single_sample_single_epoch(self, binary_network):
        history = Trainer(binary_network, {'epochs': 1, 'batchSize': 1}).train(
            [[0, 0, 0, 0]], [0]
        )
        assert len(history.loss) == 1
        assert math.isfinite(history.loss[0])
        assert history.accuracy[0] in (0.0, 1.0)
        assert history.val_loss == [None]

    def test_one_optimizer_step_per_batch(self, binary_network):
        rng = np.random.default_rng(0)
        trainer = Trainer(binary_network, {'epochs': 2, 'batch_size': 4, 'seed': 0})
        trainer.train(rng.normal(size=(10, 4)), rng.integers(0, 2, size=10))
        assert trainer.optimizer.state.t == 2 * 3

    def test_validation_metrics_recorded(self, binary_network):
        history = Trainer(binary_network, {'epochs': 3}).train(
            [[0, 0, 0, 0], [1, 1, 1, 1]], [0, 1],
            val_features=[[0.5, 0.5, 0.5, 0.5]], val_labels=[1]
        )
        assert len(history.val_loss) == 3
        assert all(isinstance(v, float) for v in history.val_loss)
        assert all(v in (0.0, 1.0) for v in history.val_accuracy)

    def test_empty_validation_set_is_ignored(self, binary_network):
        history = Trainer(binary_network, {'epochs': 2}).train(
            [[0, 0, 0, 0]], [0], val_features=[], val_labels=[]
        )
        assert history.val_loss == [None, None]

    def test_callbacks_run_every_epoch(self, binary_network):
        records = []
        yields = []
        Trainer(binary_network, {'epochs': 4}).train(
            [[0, 0, 0, 0]], [0],
            on_epoch_end=records.append,
            yield_func=lambda: yields.append(len(records))
        )
        assert [r.epoch for r in records] == [1, 2, 3, 4]
        # yield runs after the epoch's record was delivered
        assert yields == [1, 2, 3, 4]

    def test_should_stop_cancels(self, binary_network):
        records = []
        history = Trainer(binary_network, {'epochs': 10}).train(
            [[0, 0, 0, 0]], [0],
            on_epoch_end=records.append,
            should_stop=lambda: len(records) >= 2
        )
        assert len(history) == 2
        assert history.cancelled is True
        assert history.stopped_early is False

    def test_early_stopping_on_training_loss(self, binary_network, monkeypatch):
        trainer = Trainer(binary_network, {'epochs': 10, 'earlyStopping': True, 'patience': 2})
        losses = iter([0.5, 0.4, 0.45, 0.46, 0.47])
        monkeypatch.setattr(trainer, '_run_epoch', lambda epoch, x, y: (next(losses), 1.0, 0))
        records = []

        history = trainer.train([[0, 0, 0, 0]], [0], on_epoch_end=records.append)

        assert history.loss == [0.5, 0.4, 0.45, 0.46]
        assert history.stopped_early is True
        assert len(records) == 4

    def test_early_stopping_monitors_validation_loss(self, binary_network, monkeypatch):
        trainer = Trainer(binary_network, {'epochs': 10, 'earlyStopping': True, 'patience': 2})
        train_losses = iter([0.9, 0.8, 0.7, 0.6, 0.5])
        val_losses = iter([0.5, 0.4, 0.45, 0.46, 0.47])
        monkeypatch.setattr(trainer, '_run_epoch', lambda epoch, x, y: (next(train_losses), 1.0, 0))
        monkeypatch.setattr(trainer, '_evaluate_prepared', lambda x, y: (next(val_losses), 1.0))

        history = trainer.train([[0, 0, 0, 0]], [0],
                                val_features=[[1, 1, 1, 1]], val_labels=[1])

        assert len(history) == 4
        assert history.val_loss == [0.5, 0.4, 0.45, 0.46]
        assert history.loss == [0.9, 0.8, 0.7, 0.6]
        assert history.stopped_early is True

    def test_non_finite_loss_is_skipped(self, binary_network):
        trainer = Trainer(binary_network, {'epochs': 1})
        trainer.loss_fn = lambda y, p: float('nan')
        before = [w.copy() for w in binary_network.weights]

        history = trainer.train([[0, 0, 0, 0], [1, 1, 1, 1]], [0, 1])

        assert history.last.numeric_anomalies == 2
        assert math.isnan(history.loss[0])
        assert trainer.optimizer.state is None
        for w, original in zip(binary_network.weights, before):
            assert np.array_equal(w, original)

    def test_strict_numerics_raises(self, binary_network):
        trainer = Trainer(binary_network, {'epochs': 1, 'strictNumerics': True})
        trainer.loss_fn = lambda y, p: float('inf')
        with pytest.raises(NumericAnomaly):
            trainer.train([[0, 0, 0, 0]], [0])

    def test_history_to_dict(self, binary_network):
        history = Trainer(binary_network, {'epochs': 2}).train([[0, 0, 0, 0]], [0])
        data = history.to_dict()
        assert len(data['loss']) == 2
        assert data['valLoss'] == [None, None]
        assert data['epochs'][1]['epoch'] == 2
        assert data['stoppedEarly'] is False


@pytest.mark.integration
class TestLearning:
    """End-to-end training."""

    def test_loss_decreases_on_or(self, or_data):
        features, labels = or_data
        net = or_network(seed=0)
        history = train(net, features, labels, config={
            'epochs': 200, 'batchSize': 4, 'learningRate': 0.05, 'seed': 0
        })

        assert len(history) == 200
        assert history.loss[-1] < history.loss[0]
        predictions = [p[0] for p in net.predict(features)]
        assert predictions[3] > predictions[0]

    def test_evaluate_does_not_train(self, or_data):
        features, labels = or_data
        net = or_network(seed=1)
        trainer = Trainer(net)
        before = [w.copy() for w in net.weights]

        loss, acc = trainer.evaluate(features, labels)

        assert math.isfinite(loss)
        assert 0.0 <= acc <= 1.0
        assert np.array_equal(net.weights[0], before[0])

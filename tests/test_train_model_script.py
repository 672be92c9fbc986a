"""
test_train_model_script.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Tests for the command-line training script.
"""

import pytest
import os
import sys
import json

import numpy as np

# Add project root and scripts directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'scripts'))

import train_model
from tabular_nn.config import build_model_json
from tabular_nn.model_persistence import import_model_file


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "model.json"
    path.write_text(json.dumps(build_model_json(2, [{'units': 3, 'activation': 'relu'}], 1)),
                    encoding='utf-8')
    return str(path)


@pytest.fixture
def data_file(tmp_path):
    path = str(tmp_path / "data.npz")
    np.savez(
        path,
        features=np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=float),
        labels=np.array([0, 1, 1, 1]),
        val_features=np.array([[1, 1]], dtype=float),
        val_labels=np.array([1])
    )
    return path


@pytest.mark.integration
class TestTrainModelScript:
    """End-to-end runs of scripts/train_model.py."""

    def test_trains_and_writes_model(self, model_file, data_file, tmp_path, capsys):
        output = str(tmp_path / "trained_model.json")

        status = train_model.main([model_file, data_file, output, '--epochs', '3', '--seed', '1'])

        assert status == 0
        network = import_model_file(output)
        assert network.sizes == [2, 3, 1]
        out = capsys.readouterr().out
        assert 'val_loss' in out
        assert 'TRAINING COMPLETE' in out

    def test_missing_file_returns_error(self, data_file, tmp_path):
        status = train_model.main([str(tmp_path / "nope.json"), data_file])
        assert status == 1

    def test_bad_model_returns_error(self, data_file, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({'architecture': {}}), encoding='utf-8')
        assert train_model.main([str(path), data_file]) == 1

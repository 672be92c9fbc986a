"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Integration tests for the REST API.

Background training is run synchronously and Socket.IO events are
captured instead of broadcast.
"""

import pytest
import os
import sys
import base64

# Keep the import free of startup side effects
os.environ['NN_AUTOSTART'] = '0'

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tabular_nn import api_server
from tabular_nn.config import ServerSettings, build_model_json
from tabular_nn.model_persistence import get_model_metadata


@pytest.fixture
def emitted(monkeypatch):
    events = []
    monkeypatch.setattr(api_server.socketio, 'emit',
                        lambda event, data=None, **kwargs: events.append((event, data)))
    return events


@pytest.fixture
def client(tmp_path, monkeypatch, emitted):
    """Test client backed by an empty model directory."""
    monkeypatch.setattr(api_server, 'settings', ServerSettings(
        model_dir=str(tmp_path / "models"),
        epoch_yield_seconds=0,
        autostart=False
    ))
    monkeypatch.setattr(api_server.socketio, 'start_background_task',
                        lambda func, *args, **kwargs: func(*args, **kwargs))
    api_server.active_networks.clear()
    api_server.training_jobs.clear()
    api_server.cancel_events.clear()
    yield api_server.app.test_client()
    api_server.active_networks.clear()
    api_server.training_jobs.clear()
    api_server.cancel_events.clear()


@pytest.fixture
def model_json():
    return build_model_json(2, [{'units': 4, 'activation': 'tanh'}], 1)


@pytest.fixture
def network_id(client, model_json):
    response = client.post('/api/networks', json=model_json)
    return response.get_json()['network_id']


TRAIN_BODY = {
    'features': [[0, 0], [0, 1], [1, 0], [1, 1]],
    'labels': [0, 1, 1, 1],
    'epochs': 5,
    'batchSize': 2,
    'learningRate': 0.05,
    'seed': 0
}


@pytest.mark.integration
class TestNetworkEndpoints:
    """Creating, describing and deleting networks."""

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'online'

    def test_create_network(self, client, model_json):
        response = client.post('/api/networks', json=model_json)
        data = response.get_json()

        assert response.status_code == 201
        assert data['architecture'] == [2, 4, 1]
        assert data['total_parameters'] == 2 * 4 + 4 + 4 + 1
        assert [layer['type'] for layer in data['layers']] == ['input', 'hidden', 'output']

    def test_create_network_rejects_bad_architecture(self, client):
        bad = {'architecture': {'inputLayer': {'units': 0},
                                'outputLayer': {'units': 1, 'activation': 'sigmoid'}}}
        response = client.post('/api/networks', json=bad)
        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_get_network(self, client, network_id):
        data = client.get(f'/api/networks/{network_id}').get_json()
        assert data['sizes'] == [2, 4, 1]
        assert data['trained'] is False
        assert data['loss'] == 'binaryCrossentropy'

    def test_unknown_network(self, client):
        assert client.get('/api/networks/missing').status_code == 404
        assert client.delete('/api/networks/missing').status_code == 404

    def test_delete_network(self, client, network_id):
        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert network_id not in api_server.active_networks

    def test_delete_all(self, client, model_json):
        client.post('/api/networks', json=model_json)
        client.post('/api/networks', json=model_json)
        data = client.delete('/api/networks').get_json()
        assert data['deleted_count'] == 2
        assert api_server.active_networks == {}


@pytest.mark.integration
class TestTrainingEndpoints:
    """Training jobs, progress events and cancellation."""

    def test_train_runs_and_saves(self, client, network_id, emitted):
        response = client.post(f'/api/networks/{network_id}/train', json=TRAIN_BODY)
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100

        updates = [data for event, data in emitted if event == 'training_update']
        assert [u['epoch'] for u in updates] == [1, 2, 3, 4, 5]
        assert updates[-1]['progress'] == 100
        assert emitted[-1][0] == 'training_complete'

        info = api_server.active_networks[network_id]
        assert info['trained'] is True
        assert info['training_job'] is None
        assert get_model_metadata(network_id, api_server.settings.model_dir)['trained'] is True

    def test_train_rejects_bad_data(self, client, network_id):
        body = dict(TRAIN_BODY, features=[[0, 0]], labels=[0, 1])
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

        body = dict(TRAIN_BODY, features=[[0, 0, 0]], labels=[0])
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

    def test_train_rejects_bad_config(self, client, network_id):
        body = dict(TRAIN_BODY, epochs=0)
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

    def test_train_conflict_while_training(self, client, network_id):
        api_server.active_networks[network_id]['training_job'] = 'running-job'
        response = client.post(f'/api/networks/{network_id}/train', json=TRAIN_BODY)
        assert response.status_code == 409
        assert client.delete(f'/api/networks/{network_id}').status_code == 409

    def test_cancelled_job(self, client, network_id, monkeypatch, emitted):
        captured = []
        monkeypatch.setattr(api_server.socketio, 'start_background_task',
                            lambda func, *args: captured.append(args))
        job_id = client.post(f'/api/networks/{network_id}/train', json=TRAIN_BODY).get_json()['job_id']

        response = client.post(f'/api/training/{job_id}/cancel')
        assert response.status_code == 202

        api_server.train_network_task(*captured[0])

        assert api_server.training_jobs[job_id]['status'] == 'cancelled'
        assert emitted[-1][0] == 'training_cancelled'
        assert emitted[-1][1]['epochs_completed'] == 0
        assert api_server.active_networks[network_id]['trained'] is False
        assert client.post(f'/api/training/{job_id}/cancel').status_code == 404

    def test_unknown_job(self, client):
        assert client.get('/api/training/nope').status_code == 404

    def test_history_plot(self, client, network_id):
        assert client.get(f'/api/networks/{network_id}/history_plot').status_code == 404

        client.post(f'/api/networks/{network_id}/train', json=TRAIN_BODY)
        data = client.get(f'/api/networks/{network_id}/history_plot').get_json()

        assert data['epochs'] == 5
        assert base64.b64decode(data['image_data'])[:8] == b'\x89PNG\r\n\x1a\n'
        assert len(data['history']['loss']) == 5


@pytest.mark.integration
class TestPredictionEndpoints:
    """Inference, export and import."""

    def test_predict_with_metrics(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'features': [[0, 0], [1, 1]],
            'labels': ['benign', 'malignant']
        })
        data = response.get_json()

        assert response.status_code == 200
        assert len(data['predictions']) == 2
        assert all(0.0 <= p[0] <= 1.0 for p in data['predictions'])
        assert [r['sample'] for r in data['results']] == [1, 2]
        assert data['metrics']['tp'] + data['metrics']['fn'] == 1

    def test_predict_single_row(self, client, network_id):
        data = client.post(f'/api/networks/{network_id}/predict',
                           json={'features': [0.5, 0.5]}).get_json()
        assert len(data['predictions']) == 1

    def test_predict_wrong_width(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'features': [[1, 2, 3]]})
        assert response.status_code == 400

    def test_predict_label_count_mismatch(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict',
                               json={'features': [[1, 2]], 'labels': [1, 0]})
        assert response.status_code == 400

    def test_export_then_import(self, client, network_id):
        exported = client.get(f'/api/networks/{network_id}/export').get_json()
        assert set(exported) == {'config', 'weights', 'biases', 'layers'}

        response = client.post('/api/networks/import', json=exported)
        assert response.status_code == 201
        imported_id = response.get_json()['network_id']

        row = [0.3, -0.4]
        original = client.post(f'/api/networks/{network_id}/predict',
                               json={'features': [row]}).get_json()['predictions']
        imported = client.post(f'/api/networks/{imported_id}/predict',
                               json={'features': [row]}).get_json()['predictions']
        assert original == imported

        listed = client.get('/api/networks').get_json()['networks']
        assert {n['network_id'] for n in listed} == {network_id, imported_id}

    def test_import_rejects_incomplete_model(self, client):
        response = client.post('/api/networks/import', json={'weights': []})
        assert response.status_code == 400

    def test_cleanup_endpoint(self, client):
        assert client.post('/api/networks/cleanup', json={'days': -1}).status_code == 400
        data = client.post('/api/networks/cleanup', json={'days': 2}).get_json()
        assert data['deleted_count'] == 0

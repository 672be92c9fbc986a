"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training dense
networks on tabular data.

This module provides endpoints for:
- Creating networks from a Model JSON
- Training networks with real-time progress updates via WebSockets
- Running predictions and binary evaluation metrics
- Exporting and importing trained-model JSON
- Persisting models to/from SQLite

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for cooperative background training tasks
- Matplotlib for training-curve images
"""

import os
import sys
import uuid
import base64
import math
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
from gevent.event import Event
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from tabular_nn.config import ServerSettings, TrainingConfig
from tabular_nn.errors import NeuralNetworkError
from tabular_nn.metrics import binary_classification_metrics, summarize_predictions
from tabular_nn.network import Network
from tabular_nn.trainer import EpochRecord, Trainer, TrainingHistory
from tabular_nn.model_persistence import (
    save_model,
    load_model,
    list_saved_models,
    delete_model,
    delete_old_models
)

settings = ServerSettings.from_env()

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: quiet the Socket.IO/Engine.IO/werkzeug loggers
    - In development: show more detailed logs for debugging
    """
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if settings.is_production:
        for logger_name in settings.quiet_loggers:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('tabular_nn').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__, static_folder=settings.static_folder)
CORS(app, resources={r"/*": {"origins": "*"}})

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not settings.is_production,
    engineio_logger=not settings.is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Cancellation flags of running jobs: {job_id: Event}
cancel_events: Dict[str, Event] = {}


def _network_entry(net: Network, trained: bool = False,
                   accuracy: Optional[float] = None) -> Dict[str, Any]:
    return {
        'network': net,
        'architecture': net.sizes,
        'trained': trained,
        'accuracy': accuracy,
        'history': None,
        'training_job': None
    }


def reload_saved_models() -> None:
    """
    Reload all saved models from the database into memory.

    Called at startup so that models saved before a restart are available
    again under their ids.
    """
    saved_models = list_saved_models(settings.model_dir)

    if not saved_models:
        logger.info("No saved models to reload")
        return

    loaded_count = 0
    for meta in saved_models:
        model_id = meta['model_id']
        net = load_model(model_id, settings.model_dir)
        if net is None:
            logger.warning(f"Failed to load model {model_id}")
            continue
        active_networks[model_id] = _network_entry(
            net, trained=meta['trained'], accuracy=meta['accuracy']
        )
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} model(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_models_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete models older than ``CLEANUP_DAYS`` from the database
    - Drop in-memory networks whose saved model was deleted
    - Remove completed/failed training jobs from memory
    """
    while True:
        try:
            logger.info("Starting automatic cleanup of old models...")
            deleted_count = delete_old_models(
                days=settings.cleanup_days, model_dir=settings.model_dir
            )

            if deleted_count > 0:
                saved_ids = {
                    meta['model_id']
                    for meta in list_saved_models(settings.model_dir)
                }
                stale = [
                    nid for nid, info in active_networks.items()
                    if info['trained'] and nid not in saved_ids
                    and info['training_job'] is None
                ]
                for nid in stale:
                    del active_networks[nid]
                    logger.info(f"Removed network {nid} from memory (deleted from database)")
                logger.info(f"Cleanup completed: deleted {deleted_count} model(s)")
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old models found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during model cleanup: {e}")
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed, failed or cancelled training jobs from memory."""
    finished_statuses = {'completed', 'failed', 'cancelled'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]
        cancel_events.pop(job_id, None)

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Uses gevent.spawn() directly so it works both when running directly
    and under gunicorn. Calling it more than once has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_models_task)


if settings.autostart:
    reload_saved_models()
    start_cleanup_task()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def to_float_list(array) -> List[float]:
    """Convert a prediction vector to a list of floats (for JSON)."""
    return [float(val) for val in array]


def error_response(message: str, status: int):
    return jsonify({'error': message}), status


def create_history_plot(history: TrainingHistory) -> str:
    """
    Render loss and accuracy curves of a training run.

    Returns:
        Base64-encoded PNG image string
    """
    epochs = [record.epoch for record in history.records]
    fig, (ax_loss, ax_acc) = plt.subplots(1, 2, figsize=(8, 3))

    ax_loss.plot(epochs, history.loss, label='loss')
    if any(v is not None for v in history.val_loss):
        ax_loss.plot(epochs, [v if v is not None else float('nan') for v in history.val_loss],
                     label='val loss')
    ax_loss.set_xlabel('epoch')
    ax_loss.set_title('Loss')
    ax_loss.legend()

    ax_acc.plot(epochs, history.accuracy, label='accuracy')
    if any(v is not None for v in history.val_accuracy):
        ax_acc.plot(epochs, [v if v is not None else float('nan') for v in history.val_accuracy],
                    label='val accuracy')
    ax_acc.set_xlabel('epoch')
    ax_acc.set_title('Accuracy')
    ax_acc.set_ylim(0, 1)
    ax_acc.legend()

    fig.tight_layout()
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close(fig)

    return img_base64


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status, network count and running training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network from a Model JSON.

    Request body:
        {'architecture': {...}, 'trainingConfig': {...}}

    Returns:
        JSON with network_id, layers and total_parameters
    """
    data = request.get_json(silent=True)
    if not data:
        return error_response('Request body must be a Model JSON object', 400)

    try:
        net = Network.from_config(data)
    except NeuralNetworkError as e:
        logger.warning(f"Invalid architecture requested: {e}")
        return error_response(f'Invalid architecture: {e}', 400)
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return error_response(f'Failed to create network: {e}', 500)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = _network_entry(net)
    logger.info(f"Created network {network_id} with sizes {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'layers': [layer.to_dict() for layer in net.layers],
        'total_parameters': net.count_parameters(),
        'status': 'created'
    }), 201


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """Create an in-memory network from a trained-model JSON."""
    data = request.get_json(silent=True)
    if not data:
        return error_response('Request body must be a trained-model JSON object', 400)

    try:
        net = Network.load(data)
    except NeuralNetworkError as e:
        logger.warning(f"Rejected model import: {e}")
        return error_response(f'Invalid model: {e}', 400)
    except Exception as e:
        logger.exception(f"Error importing model: {e}")
        return error_response(f'Failed to import model: {e}', 500)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = _network_entry(net, trained=True)
    save_model(net, network_id, model_dir=settings.model_dir, trained=True)
    logger.info(f"Imported network {network_id} with sizes {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'total_parameters': net.count_parameters(),
        'status': 'imported'
    }), 201


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Describe one in-memory network."""
    info = active_networks.get(network_id)
    if info is None:
        return error_response('Network not found', 404)

    description = info['network'].describe()
    description.update({
        'network_id': network_id,
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'training_job': info['training_job']
    })
    return jsonify(description), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'features': [[...], ...],
            'labels': [...],
            'val_features': [[...], ...],   # optional
            'val_labels': [...],            # optional
            'epochs': 100, 'batch_size': 32, 'learning_rate': 0.001,
            'early_stopping': false, 'patience': 10, ...
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return error_response('Network not found', 404)
    if info['training_job'] is not None:
        return error_response('Network is already training', 409)

    data = request.get_json(silent=True) or {}
    features = data.get('features')
    labels = data.get('labels')
    val_features = data.get('val_features') or data.get('valFeatures')
    val_labels = data.get('val_labels') or data.get('valLabels')

    try:
        config = TrainingConfig.from_dict(data)
        trainer = Trainer(info['network'], config)
        # Validate up front so bad data is a 400, not a failed job
        trainer.prepare_data(features, labels)
        if val_features:
            trainer.prepare_data(val_features, val_labels, name='validation')
    except NeuralNetworkError as e:
        return error_response(str(e), 400)

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': config.epochs
    }
    cancel_events[job_id] = Event()
    info['training_job'] = job_id

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={config.epochs}, batch_size={config.batch_size}, "
        f"lr={config.learning_rate}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, trainer, features, labels, val_features, val_labels
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    trainer: Trainer,
    features: List[Any],
    labels: List[Any],
    val_features: Optional[List[Any]] = None,
    val_labels: Optional[List[Any]] = None
) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket as training progresses.
    """
    info = active_networks[network_id]
    total_epochs = trainer.config.epochs
    cancel_event = cancel_events.get(job_id) or Event()

    def on_epoch_end(record: EpochRecord) -> None:
        progress = (record.epoch / total_epochs) * 100

        job = training_jobs[job_id]
        job['status'] = 'training'
        job['progress'] = progress
        job['last_epoch'] = record.to_dict()

        payload = {
            'job_id': job_id,
            'network_id': network_id,
            'total_epochs': total_epochs,
            'progress': progress
        }
        payload.update(record.to_dict())
        socketio.emit('training_update', payload)

    def yield_to_other_tasks() -> None:
        gevent.sleep(settings.epoch_yield_seconds)

    try:
        logger.info(f"Starting training for job {job_id}")

        history = trainer.train(
            features,
            labels,
            val_features,
            val_labels,
            on_epoch_end=on_epoch_end,
            yield_func=yield_to_other_tasks,
            should_stop=cancel_event.is_set
        )
        info['history'] = history

        if history.cancelled:
            training_jobs[job_id]['status'] = 'cancelled'
            logger.info(f"Training cancelled for job {job_id} after {len(history)} epoch(s)")
            socketio.emit('training_cancelled', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'cancelled',
                'epochs_completed': len(history)
            })
            gevent.sleep(0)
            return

        last = history.last
        accuracy = last.val_accuracy if last.val_accuracy is not None else last.accuracy
        accuracy = float(accuracy) if math.isfinite(accuracy) else None

        info['trained'] = True
        info['accuracy'] = accuracy

        job = training_jobs[job_id]
        job['status'] = 'completed'
        job['accuracy'] = accuracy
        job['progress'] = 100
        job['stopped_early'] = history.stopped_early

        save_model(info['network'], network_id, model_dir=settings.model_dir,
                   trained=True, accuracy=accuracy)

        logger.info(
            f"Training completed for job {job_id}: {len(history)} epoch(s), "
            f"accuracy {accuracy}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': accuracy,
            'epochs_completed': len(history),
            'stopped_early': history.stopped_early,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info['training_job'] = None
        cancel_events.pop(job_id, None)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return error_response('Training job not found', 404)


@app.route('/api/training/<job_id>/cancel', methods=['POST'])
def cancel_training(job_id: str):
    """Ask a running job to stop at the next epoch boundary."""
    event = cancel_events.get(job_id)
    if event is None:
        return error_response('Training job not found or already finished', 404)

    event.set()
    logger.info(f"Cancellation requested for job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'cancelling'}), 202


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run inference on a batch of feature rows.

    Request body:
        {'features': [[...], ...], 'labels': [...]}   # labels optional

    Returns raw predictions; for single-output networks also per-sample
    summaries and, when labels are given, binary evaluation metrics.
    """
    info = active_networks.get(network_id)
    if info is None:
        return error_response('Network not found', 404)

    data = request.get_json(silent=True) or {}
    features = data.get('features')
    if not isinstance(features, list) or not features:
        return error_response('features must be a non-empty list of rows', 400)

    net = info['network']
    rows = features if isinstance(features[0], list) else [features]
    try:
        predictions = [net.forward(row) for row in rows]
    except NeuralNetworkError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.exception(f"Prediction failed for network {network_id}: {e}")
        return error_response('Internal server error', 500)

    response: Dict[str, Any] = {
        'network_id': network_id,
        'predictions': [to_float_list(p) for p in predictions]
    }

    if net.output_units == 1:
        response['results'] = summarize_predictions(predictions)
        labels = data.get('labels')
        if isinstance(labels, list):
            if len(labels) != len(rows):
                return error_response('labels must have one entry per row', 400)
            response['metrics'] = binary_classification_metrics(labels, predictions)

    return jsonify(response), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Return the trained-model JSON of a network."""
    info = active_networks.get(network_id)
    if info is None:
        return error_response('Network not found', 404)
    return jsonify(info['network'].save()), 200


@app.route('/api/networks/<network_id>/history_plot', methods=['GET'])
def get_history_plot(network_id: str):
    """Loss/accuracy curves of the most recent training run as a PNG."""
    info = active_networks.get(network_id)
    if info is None:
        return error_response('Network not found', 404)
    history = info.get('history')
    if history is None or len(history) == 0:
        return error_response('Network has no training history', 404)

    return jsonify({
        'network_id': network_id,
        'epochs': len(history),
        'image_data': create_history_plot(history),
        'history': history.to_dict()
    }), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'training' if info['training_job'] else 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    saved_only = []
    for meta in list_saved_models(settings.model_dir):
        if meta['model_id'] not in active_networks:
            meta['network_id'] = meta['model_id']
            meta['status'] = 'saved'
            saved_only.append(meta)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    info = active_networks.get(network_id)
    if info is not None and info['training_job'] is not None:
        return error_response('Network is training; cancel the job first', 409)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_model(network_id, settings.model_dir)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all idle networks from both memory and disk."""
    in_memory_ids = [
        nid for nid, info in active_networks.items()
        if info['training_job'] is None
    ]
    saved_ids = [meta['model_id'] for meta in list_saved_models(settings.model_dir)]
    all_ids = sorted(set(in_memory_ids + saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0
    for network_id in all_ids:
        if network_id in in_memory_ids:
            del active_networks[network_id]
            deleted_from_memory_count += 1
        if delete_model(network_id, settings.model_dir):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {len(all_ids)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_models_endpoint():
    """
    Manually trigger cleanup of saved models older than ``days``.

    Request body (optional):
        {'days': 2}
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', settings.cleanup_days)

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return error_response('days must be a non-negative number', 400)

    try:
        deleted_count = delete_old_models(days=int(days), model_dir=settings.model_dir)
    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.exception(f"Error during manual cleanup: {e}")
        return error_response('Internal server error', 500)
    if deleted_count == -1:
        return error_response('Error occurred during cleanup', 500)

    logger.info(f"Manual cleanup: deleted {deleted_count} model(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} model(s) older than {days} day(s)'
    }), 200


# ============================================================================
# STATIC FILE SERVING
# ============================================================================

@app.route('/')
def index():
    """Serve the front-end page."""
    return send_from_directory(app.static_folder, 'index.html')


@app.route('/<path:path>')
def serve_static(path: str):
    """Serve static files (CSS, JS, images, etc.)."""
    return send_from_directory(app.static_folder, path)

# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    static_dir = app.static_folder
    if not os.path.exists(static_dir):
        os.makedirs(static_dir)
        logger.info(f"Created static directory: {static_dir}")

    port = settings.port
    if settings.is_production:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    start_cleanup_task()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not settings.is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise

"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Creating and managing digit networks
- Training networks on every installed font with live progress via WebSockets
- Predicting a digit from a font glyph, an uploaded image or freehand strokes
- Verification reports and network visualisations
- Persisting networks to a model directory

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent (the default async mode) for background training tasks

All state lives on a :class:`ServerState` created by :func:`create_app`,
so separate apps (in tests, for example) never interfere.
"""

import base64
import binascii
import logging
import sys
import uuid
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_cors import CORS
from flask_socketio import SocketIO
from PIL import Image, UnidentifiedImageError

from digit_ocr.canvas import DrawingCanvas
from digit_ocr.config import Settings, TrainingConfig
from digit_ocr.context import RecognitionContext
from digit_ocr.dataset import SampleSet, build_sample_set
from digit_ocr.errors import DigitOCRError
from digit_ocr.features import (
    features_from_drawing,
    features_from_image,
    render_digit,
)
from digit_ocr.fonts import FontEntry, discover_fonts
from digit_ocr.inference import verify
from digit_ocr.model_persistence import ModelStore
from digit_ocr.network import NeuralNetwork
from digit_ocr.trainer import TrainingOutcome
from digit_ocr.visualizer import (
    image_to_png_bytes,
    render_network,
    render_prediction_png,
)

logger = logging.getLogger(__name__)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(settings: Settings) -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if settings.production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digit_ocr').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


# ============================================================================
# SERVER STATE
# ============================================================================

class ServerState:
    """
    Networks, training jobs, fonts and samples owned by one app.

    Fonts and samples are discovered on first use, since rendering every
    digit in a few hundred fonts takes a while.
    """

    def __init__(
        self,
        settings: Settings,
        socketio: SocketIO,
        fonts: Optional[List[FontEntry]] = None,
        samples: Optional[SampleSet] = None
    ):
        self.settings = settings
        self.socketio = socketio
        self.store = ModelStore(settings.model_dir)

        # Networks currently loaded in memory: {network_id: network_info}
        self.active_networks: Dict[str, Dict[str, Any]] = {}

        # Training jobs being tracked: {job_id: job_info}
        self.training_jobs: Dict[str, Dict[str, Any]] = {}

        self._fonts = fonts
        self._samples = samples

    def fonts(self) -> List[FontEntry]:
        if self._fonts is None:
            self._fonts = discover_fonts(self.settings.font_dirs)
        return self._fonts

    def samples(self) -> SampleSet:
        """Every digit rendered in the first ``font_limit`` fonts."""
        if self._samples is None:
            fonts = self.fonts()[:self.settings.font_limit]
            self._samples = build_sample_set(fonts, self.settings.canvas_size)
        return self._samples

    def find_font(self, name: str) -> Optional[FontEntry]:
        for font in self.fonts():
            if font.name == name:
                return font
        return None

    def add_network(
        self,
        network_id: str,
        network: NeuralNetwork,
        trained: bool = False,
        accuracy: Optional[float] = None
    ) -> None:
        self.active_networks[network_id] = {
            'context': RecognitionContext(network),
            'architecture': list(network.sizes),
            'trained': trained,
            'accuracy': accuracy
        }

    def reload_saved_networks(self) -> None:
        """
        Load every saved network into memory.

        Called at startup so networks saved before a restart are available
        again.
        """
        saved_networks = self.store.list_networks()

        if not saved_networks:
            logger.info("No saved networks to reload")
            return

        loaded_count = 0
        for net_info in saved_networks:
            network_id = net_info['network_id']
            try:
                net = self.store.load_network(network_id)
            except DigitOCRError as e:
                logger.warning(f"Failed to load network {network_id}: {e}")
                continue
            if net is not None:
                self.add_network(
                    network_id, net, net_info['trained'], net_info['accuracy']
                )
                loaded_count += 1

        logger.info(f"Reloaded {loaded_count} network(s) from {self.settings.model_dir}")


api = Blueprint('api', __name__)


def _state() -> ServerState:
    return current_app.extensions['digit_ocr']


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


# ============================================================================
# API ENDPOINTS
# ============================================================================

@api.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts networks in memory and training jobs still pending or running.
    """
    state = _state()
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in state.training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(state.active_networks),
        'training_jobs': active_training
    }), 200


@api.route('/api/fonts', methods=['GET'])
def list_fonts():
    """List the fonts digits can be rendered in; training fonts come first."""
    state = _state()
    limit = state.settings.font_limit
    return jsonify({
        'fonts': [
            {'name': font.name, 'training': index < limit}
            for index, font in enumerate(state.fonts())
        ]
    }), 200


@api.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new digit network.

    Request body (all optional):
        {
            'layer_sizes': [196, 30, 30, 30, 1],
            'activations': ['tanh', 'tanh', 'tanh', 'tanh'],
            'seed': 0,
            'zero_bias': false,
            'learning_rate': 0.01
        }

    Returns:
        JSON with network_id, architecture, activations and status
    """
    state = _state()
    defaults = state.settings.network
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error('Request body must be a JSON object', 400)

    layer_sizes = data.get('layer_sizes', list(defaults.layers))
    if (not isinstance(layer_sizes, list) or len(layer_sizes) < 2
            or not all(_is_positive_int(size) for size in layer_sizes)):
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return _error('Invalid architecture. Must have at least 2 positive layer sizes.', 400)

    input_size = state.settings.canvas_size ** 2
    if layer_sizes[0] != input_size or layer_sizes[-1] != 1:
        return _error(
            f'Digit networks need {input_size} inputs and 1 output, got {layer_sizes}', 400
        )

    activations = data.get('activations', ['tanh'] * (len(layer_sizes) - 1))
    seed = data.get('seed', defaults.seed)
    zero_bias = data.get('zero_bias', defaults.zero_bias)
    learning_rate = data.get('learning_rate', defaults.learning_rate)

    if not isinstance(activations, list):
        return _error('activations must be a list', 400)
    if seed is not None and (not isinstance(seed, int) or isinstance(seed, bool)):
        return _error('seed must be an integer or null', 400)
    if not isinstance(zero_bias, bool):
        return _error('zero_bias must be a boolean', 400)
    if not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
        return _error('learning_rate must be a positive number', 400)

    try:
        net = NeuralNetwork(
            seed, layer_sizes, activations,
            zero_bias=zero_bias, learning_rate=learning_rate
        )
    except ValueError as e:
        return _error(str(e), 400)

    network_id = str(uuid.uuid4())
    state.add_network(network_id, net)

    logger.info(f"Created network {network_id} with architecture {layer_sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': layer_sizes,
        'activations': [a.value for a in net.activations],
        'status': 'created'
    }), 201


@api.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    state = _state()
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in state.active_networks.items()
    ]

    # Saved networks, excluding duplicates already in memory
    saved_only = []
    for net in state.store.list_networks():
        if net['network_id'] not in state.active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@api.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    state = _state()
    deleted_from_memory = False
    if network_id in state.active_networks:
        state.active_networks[network_id]['context'].cancel_training()
        del state.active_networks[network_id]
        deleted_from_memory = True

    try:
        deleted_from_disk = state.store.delete_network(network_id)
    except ValueError:
        deleted_from_disk = False

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return _error('Network not found', 404)

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@api.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'max_epochs': 30000,
            'warmup_epochs': 16000,
            'report_every': 20
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    state = _state()
    if network_id not in state.active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return _error('Network not found', 404)

    defaults = state.settings.training
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error('Request body must be a JSON object', 400)
    max_epochs = data.get('max_epochs', defaults.max_epochs)
    warmup_epochs = data.get('warmup_epochs', defaults.warmup_epochs)
    report_every = data.get('report_every', defaults.report_every)

    if not _is_positive_int(max_epochs):
        return _error('max_epochs must be a positive integer', 400)
    if not isinstance(warmup_epochs, int) or isinstance(warmup_epochs, bool) or warmup_epochs < 0:
        return _error('warmup_epochs must be a non-negative integer', 400)
    if not _is_positive_int(report_every):
        return _error('report_every must be a positive integer', 400)

    busy = any(
        job['network_id'] == network_id and job['status'] in ('pending', 'training')
        for job in state.training_jobs.values()
    )
    if busy:
        return _error('Network is already training', 409)

    job_id = str(uuid.uuid4())
    config = TrainingConfig(max_epochs, warmup_epochs, report_every)

    state.training_jobs[job_id] = {
        'job_id': job_id,
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epoch': 0,
        'max_epochs': max_epochs
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"max_epochs={max_epochs}, warmup={warmup_epochs}"
    )

    # Run training in background so we can return immediately
    state.socketio.start_background_task(
        train_network_task, state, network_id, job_id, config
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    state: ServerState,
    network_id: str,
    job_id: str,
    config: TrainingConfig
) -> None:
    """
    Background task that trains a network until it recognises every sample.

    Sends progress updates via WebSocket as training progresses.
    """
    socketio = state.socketio
    job = state.training_jobs[job_id]

    def on_progress(data: Dict[str, Any]) -> None:
        """Called every few epochs to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100
        job['status'] = 'training'
        job['progress'] = progress
        job['epoch'] = data['epoch']

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'elapsed_time': data['elapsed_time'],
            'all_correct': data['all_correct'],
            'progress': progress
        })

    def yield_to_other_tasks() -> None:
        # Let HTTP requests and socket messages through between epochs
        socketio.sleep(0)

    try:
        info = state.active_networks.get(network_id)
        if info is None:
            # Deleted between the request and the task starting
            logger.info(f"Network {network_id} is gone; cancelling job {job_id}")
            job['status'] = 'cancelled'
            socketio.emit('training_cancelled', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'cancelled',
                'epochs': 0,
                'progress': job['progress']
            })
            return

        context: RecognitionContext = info['context']
        logger.info(f"Starting training for job {job_id}")
        job['status'] = 'training'
        context.samples = state.samples()

        result = context.train(
            config, callback=on_progress, yield_func=yield_to_other_tasks
        )
        report = verify(context.network, context.samples)

        info['trained'] = result.converged
        info['accuracy'] = report.accuracy

        job['epoch'] = result.epochs
        job['accuracy'] = report.accuracy
        job['elapsed_time'] = result.elapsed_time

        if result.outcome is TrainingOutcome.CANCELLED:
            job['status'] = 'cancelled'
            event = 'training_cancelled'
        else:
            state.store.save_network(
                context.network, network_id,
                trained=result.converged,
                accuracy=report.accuracy,
                epochs=result.epochs
            )
            if result.converged:
                job['status'] = 'completed'
                job['progress'] = 100
                event = 'training_complete'
            else:
                job['status'] = 'exhausted'
                event = 'training_exhausted'

        logger.info(
            f"Training job {job_id} finished: {result.outcome.value} after "
            f"{result.epochs} epochs, accuracy {report.accuracy:.2%}"
        )

        socketio.emit(event, {
            'job_id': job_id,
            'network_id': network_id,
            'status': job['status'],
            'epochs': result.epochs,
            'accuracy': float(report.accuracy),
            'mismatches': report.mismatch_count,
            'progress': job['progress']
        })

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        job['status'] = 'failed'
        job['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })


@api.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    state = _state()
    if job_id not in state.training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return _error('Training job not found', 404)
    return jsonify(state.training_jobs[job_id]), 200


@api.route('/api/training/<job_id>/cancel', methods=['POST'])
def cancel_training(job_id: str):
    """Ask a running training job to stop after its current epoch."""
    state = _state()
    job = state.training_jobs.get(job_id)
    if job is None:
        return _error('Training job not found', 404)
    if job['status'] not in ('pending', 'training'):
        return _error(f"Training job is already {job['status']}", 409)

    info = state.active_networks.get(job['network_id'])
    if info is not None:
        info['context'].cancel_training()

    logger.info(f"Cancellation requested for training job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'cancelling'}), 202


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def decode_image(data: str) -> Image.Image:
    """
    Decode a base64 image, with or without a ``data:`` URL prefix.

    Raises:
        ValueError: If the data is not valid base64 or not an image
    """
    if ',' in data and data.lstrip().startswith('data:'):
        data = data.split(',', 1)[1]
    try:
        raw = base64.b64decode(data, validate=True)
        image = Image.open(BytesIO(raw))
        image.load()
    except (binascii.Error, UnidentifiedImageError) as e:
        raise ValueError(f'image is not a valid base64-encoded image: {e}') from e
    return image


def features_from_request(state: ServerState, data: Dict[str, Any]) -> Tuple[Any, Optional[int]]:
    """
    Feature vector described by a prediction request.

    Returns:
        (features, actual digit if the request named one)

    Raises:
        LookupError: If a named font is unknown
        ValueError: If the request is malformed
    """
    if 'strokes' in data:
        strokes = data['strokes']
        if not isinstance(strokes, list):
            raise ValueError('strokes must be a list of point lists')
        canvas = DrawingCanvas(
            int(data.get('width', 200)), int(data.get('height', 200))
        )
        for points in strokes:
            canvas.draw_polyline(points)
        return features_from_drawing(canvas.snapshot()), None

    if 'image' in data:
        image = decode_image(str(data['image']))
        if data.get('drawn', False):
            return features_from_drawing(image), None
        return features_from_image(image), None

    if 'digit' in data and 'font' in data:
        digit = data['digit']
        if not isinstance(digit, int) or isinstance(digit, bool):
            raise ValueError('digit must be an integer')
        font = state.find_font(str(data['font']))
        if font is None:
            raise LookupError(f"Font not found: {data['font']}")
        features, _image = render_digit(digit, font.path, state.settings.canvas_size)
        return features, digit

    raise ValueError("Provide 'strokes', 'image', or 'digit' and 'font'")


# ============================================================================
# PREDICTION AND INSPECTION ENDPOINTS
# ============================================================================

@api.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_digit(network_id: str):
    """
    Ask a network which digit it sees.

    Request body, one of:
        {'digit': 7, 'font': 'DejaVu Sans'}
        {'image': '<base64 PNG>', 'drawn': true}
        {'strokes': [[[x, y], [x, y], ...], ...], 'width': 200, 'height': 200}

    Returns JSON with the predicted digit, the raw network output and an
    image of the 14x14 input the network saw.
    """
    state = _state()
    if network_id not in state.active_networks:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return _error('Network not found', 404)

    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error('Request body must be a JSON object', 400)
    context: RecognitionContext = state.active_networks[network_id]['context']

    try:
        features, actual = features_from_request(state, data)
        prediction = context.predictor.predict(features)
    except LookupError as e:
        return _error(str(e), 404)
    except (ValueError, TypeError) as e:
        # DigitOCRError input failures are ValueErrors too
        return _error(str(e), 400)
    except OSError as e:
        return _error(f'Could not render digit: {e}', 400)

    return jsonify({
        'network_id': network_id,
        'predicted_digit': prediction.digit,
        'actual_digit': actual,
        'raw_output': prediction.raw,
        'image_data': render_prediction_png(features, prediction.digit, actual),
        'features': [float(value) for value in features]
    }), 200


@api.route('/api/networks/<network_id>/report', methods=['GET'])
def get_report(network_id: str):
    """Run every training sample through the network and report each result."""
    state = _state()
    if network_id not in state.active_networks:
        return _error('Network not found', 404)

    context: RecognitionContext = state.active_networks[network_id]['context']
    report = verify(context.network, state.samples())

    body = report.to_dict()
    body['network_id'] = network_id
    body['csv'] = report.to_csv()
    return jsonify(body), 200


@api.route('/api/networks/<network_id>/visualization', methods=['GET'])
def get_visualization(network_id: str):
    """
    PNG drawing of the network's neurons and weights.

    Query parameters: width (default 900) and height (default 300).
    """
    state = _state()
    if network_id not in state.active_networks:
        return _error('Network not found', 404)

    width = request.args.get('width', 900, type=int)
    height = request.args.get('height', 300, type=int)

    context: RecognitionContext = state.active_networks[network_id]['context']
    try:
        image = render_network(context.network, width, height)
    except DigitOCRError as e:
        return _error(str(e), 400)

    return send_file(
        BytesIO(image_to_png_bytes(image)),
        mimetype='image/png',
        download_name=f'{network_id}-network.png'
    )


# ============================================================================
# APP FACTORY AND SERVER STARTUP
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    fonts: Optional[List[FontEntry]] = None,
    samples: Optional[SampleSet] = None
) -> Tuple[Flask, SocketIO]:
    """
    Build the Flask app and its SocketIO server.

    Args:
        settings: Server settings (defaults to Settings.from_env())
        fonts: Fonts to offer instead of discovering installed ones
        samples: Training samples to use instead of rendering every font

    Returns:
        (app, socketio)
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

    # SocketIO enables real-time communication (WebSockets) for training updates
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=settings.async_mode,
        logger=not settings.production,
        engineio_logger=not settings.production,
        ping_timeout=60,
        ping_interval=25
    )

    state = ServerState(settings, socketio, fonts=fonts, samples=samples)
    app.extensions['digit_ocr'] = state
    app.register_blueprint(api)

    state.reload_saved_networks()
    return app, socketio


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings)

    app, socketio = create_app(settings)
    logger.info(f"Starting server at http://localhost:{settings.port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=settings.port,
            debug=not settings.production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {settings.port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()

"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Integration tests for the REST API, using Flask's test client.
"""

import base64
import time
from io import BytesIO

import pytest
from PIL import Image

from digit_ocr.api_server import create_app, decode_image, train_network_task
from digit_ocr.config import Settings, TrainingConfig
from digit_ocr.fonts import FontEntry

DIGIT_LAYERS = [196, 30, 30, 30, 1]


def png_base64(image: Image.Image, data_url: bool = False) -> str:
    buffer = BytesIO()
    image.save(buffer, format='PNG')
    encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
    return f'data:image/png;base64,{encoded}' if data_url else encoded


@pytest.fixture
def settings(tmp_path):
    settings = Settings(model_dir=str(tmp_path / 'models'), async_mode='threading')
    settings.production = True
    return settings


@pytest.fixture
def app_and_socketio(settings, sample_set):
    return create_app(settings, fonts=[FontEntry('Missing Sans', '/nonexistent/missing.ttf')],
                      samples=sample_set)


@pytest.fixture
def client(app_and_socketio):
    app, _socketio = app_and_socketio
    app.config['TESTING'] = True
    return app.test_client()


@pytest.fixture
def network_id(client):
    response = client.post('/api/networks', json={'layer_sizes': DIGIT_LAYERS})
    assert response.status_code == 201
    return response.get_json()['network_id']


def wait_for_job(client, job_id, timeout=30.0):
    """Poll a training job until it leaves the pending and training states."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = client.get(f'/api/training/{job_id}').get_json()
        if job['status'] not in ('pending', 'training'):
            return job
        time.sleep(0.05)
    raise AssertionError(f'training job {job_id} did not finish in {timeout}s')


def slow_samples(sample_set, delay=0.5):
    """A samples() replacement that takes a while, like rendering real fonts."""
    def samples():
        time.sleep(delay)
        return sample_set
    return samples


@pytest.mark.integration
class TestStatusAndFonts:
    """Test server status and font listing."""

    def test_status(self, client):
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json() == {
            'status': 'online', 'active_networks': 0, 'training_jobs': 0
        }

    def test_fonts(self, client):
        fonts = client.get('/api/fonts').get_json()['fonts']
        assert fonts == [{'name': 'Missing Sans', 'training': True}]


@pytest.mark.integration
class TestNetworkManagement:
    """Test creating, listing and deleting networks."""

    def test_create_with_defaults(self, client):
        response = client.post('/api/networks', json={})
        data = response.get_json()

        assert response.status_code == 201
        assert data['architecture'] == DIGIT_LAYERS
        assert data['activations'] == ['tanh'] * 4
        assert data['status'] == 'created'

    @pytest.mark.parametrize('body', [
        {'layer_sizes': [196]},
        {'layer_sizes': [196, 0, 1]},
        {'layer_sizes': [196, 'ten', 1]},
        {'layer_sizes': [100, 30, 1]},
        {'layer_sizes': [196, 30, 2]},
        {'activations': 'tanh'},
        {'activations': ['tanh']},
        {'activations': ['swish'] * 4},
        {'seed': 'abc'},
        {'zero_bias': 'yes'},
        {'learning_rate': 0},
    ])
    def test_create_rejects_invalid_requests(self, client, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_list_networks(self, client, network_id):
        networks = client.get('/api/networks').get_json()['networks']
        assert [n['network_id'] for n in networks] == [network_id]
        assert networks[0]['status'] == 'in_memory'
        assert networks[0]['trained'] is False

    def test_delete_network(self, client, network_id):
        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True
        assert client.get('/api/networks').get_json()['networks'] == []

    def test_delete_unknown_network(self, client):
        assert client.delete('/api/networks/unknown').status_code == 404


@pytest.mark.integration
class TestPrediction:
    """Test the prediction endpoint with each kind of input."""

    def test_predict_from_strokes(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'strokes': [[[100, 20], [100, 180]]],
        })
        data = response.get_json()

        assert response.status_code == 200
        assert 0 <= data['predicted_digit'] <= 9
        assert data['actual_digit'] is None
        assert len(data['features']) == 196
        assert max(data['features']) > 0.0
        assert base64.b64decode(data['image_data'])

    def test_predict_from_image(self, client, network_id):
        image = Image.new('L', (28, 28), 0)
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'image': png_base64(image, data_url=True),
        })
        assert response.status_code == 200
        assert response.get_json()['features'] == [0.0] * 196

    def test_predict_from_drawn_image(self, client, network_id):
        image = Image.new('L', (28, 28), 255)
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'image': png_base64(image), 'drawn': True,
        })
        assert response.status_code == 200
        assert response.get_json()['features'] == [0.0] * 196

    def test_unknown_font(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'digit': 3, 'font': 'No Such Font',
        })
        assert response.status_code == 404

    def test_unreadable_font_file(self, client, network_id):
        response = client.post(f'/api/networks/{network_id}/predict', json={
            'digit': 3, 'font': 'Missing Sans',
        })
        assert response.status_code == 400

    @pytest.mark.parametrize('body', [
        {},
        {'image': 'not base64!'},
        {'strokes': 'zigzag'},
        {'digit': 'three', 'font': 'Missing Sans'},
        [1, 2, 3],
    ])
    def test_invalid_requests(self, client, network_id, body):
        response = client.post(f'/api/networks/{network_id}/predict', json=body)
        assert response.status_code == 400

    def test_unknown_network(self, client):
        response = client.post('/api/networks/unknown/predict', json={'strokes': []})
        assert response.status_code == 404


@pytest.mark.integration
class TestReportAndVisualization:
    """Test the verification report and network drawing."""

    def test_report(self, client, network_id):
        data = client.get(f'/api/networks/{network_id}/report').get_json()

        assert data['total'] == 30
        assert len(data['rows']) == 30
        assert len(data['csv'].splitlines()) == 30
        assert data['csv'].splitlines()[0].startswith('0,')

    def test_visualization_png(self, client, network_id):
        response = client.get(f'/api/networks/{network_id}/visualization?width=300&height=100')

        assert response.status_code == 200
        assert response.mimetype == 'image/png'
        assert Image.open(BytesIO(response.data)).size == (300, 100)

    def test_visualization_invalid_size(self, client, network_id):
        response = client.get(f'/api/networks/{network_id}/visualization?width=0')
        assert response.status_code == 400


@pytest.mark.integration
class TestTraining:
    """Test background training jobs."""

    @pytest.mark.parametrize('body', [
        {'max_epochs': 0},
        {'warmup_epochs': -1},
        {'report_every': 'often'},
    ])
    def test_invalid_training_options(self, client, network_id, body):
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400

    def test_train_unknown_network(self, client):
        assert client.post('/api/networks/unknown/train', json={}).status_code == 404

    def test_unknown_job(self, client):
        assert client.get('/api/training/unknown').status_code == 404
        assert client.post('/api/training/unknown/cancel').status_code == 404

    def test_training_exhausts_and_saves(self, client, network_id, app_and_socketio):
        """Test a short run that stops at its epoch cap and is saved."""
        response = client.post(f'/api/networks/{network_id}/train', json={
            'max_epochs': 3, 'warmup_epochs': 1000, 'report_every': 1,
        })
        assert response.status_code == 202

        job = wait_for_job(client, response.get_json()['job_id'])

        assert job['status'] == 'exhausted'
        assert job['epoch'] == 3
        state = app_and_socketio[0].extensions['digit_ocr']
        saved = state.store.get_network_metadata(network_id)
        assert saved['trained'] is False
        assert saved['epochs'] == 3
        assert client.post(f"/api/training/{job['job_id']}/cancel").status_code == 409

    def test_saved_networks_reloaded(self, settings, sample_set, client, network_id):
        """Test that a new app picks up networks saved by an earlier one."""
        response = client.post(f'/api/networks/{network_id}/train', json={
            'max_epochs': 1, 'warmup_epochs': 1000,
        })
        wait_for_job(client, response.get_json()['job_id'])

        app, _socketio = create_app(settings, fonts=[], samples=sample_set)
        networks = app.test_client().get('/api/networks').get_json()['networks']

        assert [n['network_id'] for n in networks] == [network_id]
        assert networks[0]['status'] == 'in_memory'

    def test_cancel_before_training_starts(self, client, network_id, app_and_socketio,
                                           monkeypatch, sample_set):
        """Test that a cancel sent while samples are still being built stops the job."""
        state = app_and_socketio[0].extensions['digit_ocr']
        monkeypatch.setattr(state, 'samples', slow_samples(sample_set))

        response = client.post(f'/api/networks/{network_id}/train', json={
            'max_epochs': 200, 'warmup_epochs': 1000,
        })
        job_id = response.get_json()['job_id']
        cancel = client.post(f'/api/training/{job_id}/cancel')

        assert cancel.status_code == 202
        job = wait_for_job(client, job_id)
        assert job['status'] == 'cancelled'
        assert job['epoch'] == 0
        assert state.store.get_network_metadata(network_id) is None

    def test_delete_while_job_pending(self, client, network_id, app_and_socketio,
                                      monkeypatch, sample_set):
        """Test that deleting a network cancels its queued job."""
        state = app_and_socketio[0].extensions['digit_ocr']
        monkeypatch.setattr(state, 'samples', slow_samples(sample_set))

        response = client.post(f'/api/networks/{network_id}/train', json={
            'max_epochs': 200, 'warmup_epochs': 1000,
        })
        job_id = response.get_json()['job_id']
        assert client.delete(f'/api/networks/{network_id}').status_code == 200

        assert wait_for_job(client, job_id)['status'] == 'cancelled'
        assert state.store.get_network_metadata(network_id) is None
        assert client.get('/api/status').get_json()['training_jobs'] == 0

    def test_task_for_missing_network(self, client, app_and_socketio):
        """Test that a job whose network no longer exists ends as cancelled."""
        state = app_and_socketio[0].extensions['digit_ocr']
        state.training_jobs['orphan'] = {
            'job_id': 'orphan', 'network_id': 'gone', 'status': 'pending',
            'progress': 0, 'epoch': 0, 'max_epochs': 5,
        }

        train_network_task(state, 'gone', 'orphan', TrainingConfig(5, 0, 1))

        assert state.training_jobs['orphan']['status'] == 'cancelled'
        assert client.get('/api/status').get_json()['training_jobs'] == 0


@pytest.mark.unit
class TestDecodeImage:
    """Test base64 image decoding."""

    def test_plain_and_data_url(self):
        image = Image.new('RGB', (5, 3))
        assert decode_image(png_base64(image)).size == (5, 3)
        assert decode_image(png_base64(image, data_url=True)).size == (5, 3)

    @pytest.mark.parametrize('data', ['!!!', base64.b64encode(b'not an image').decode()])
    def test_invalid_data(self, data):
        with pytest.raises(ValueError):
            decode_image(data)

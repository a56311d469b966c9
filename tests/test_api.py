import json
import os
import threading

import pytest

from stackctl import events
from stackctl.errors import ConfigError
from stackctl.health import HealthStatus
from stackctl.main import create_app

from conftest import fake_aggregator, stack_spec


class StubBackup:
    def __init__(self):
        self.calls = []
        self.done = threading.Event()

    def execute(self, inventory, destination, retention, stop_components=False, triggered_by='manual', job_id=None):
        self.calls.append({'stop': stop_components, 'triggered_by': triggered_by, 'job_id': job_id})
        self.done.set()


@pytest.fixture
def app_setup(project, tmp_path, monkeypatch):
    path = project / 'stackctl.json'
    path.write_text(json.dumps(stack_spec(project)))
    monkeypatch.setenv('STACKCTL_BACKUP_DIR', str(tmp_path / 'backups'))
    statuses = {}
    stub = StubBackup()
    app = create_app(
        inventory_path=str(path),
        aggregator_factory=lambda: fake_aggregator(statuses),
        backup_factory=lambda inventory: stub,
    )
    return app.test_client(), statuses, stub


def test_controller_health(app_setup):
    client, _, _ = app_setup
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'
    assert resp.headers['X-Content-Type-Options'] == 'nosniff'


def test_stack_health_reports_503_when_degraded(app_setup):
    client, statuses, _ = app_setup
    resp = client.get('/api/stack/health')
    assert resp.status_code == 200
    assert resp.get_json()['healthy'] is True

    statuses['api'] = HealthStatus.TIMEOUT
    resp = client.get('/api/stack/health')
    assert resp.status_code == 503
    assert resp.get_json()['components']['api']['status'] == 'timeout'


def test_token_required_when_configured(app_setup, monkeypatch):
    client, _, _ = app_setup
    monkeypatch.setenv('STACKCTL_API_TOKEN', 's3cret')
    assert client.get('/api/backups').status_code == 401
    assert client.get('/api/backups', headers={'Authorization': 'Bearer wrong'}).status_code == 401
    resp = client.get('/api/backups', headers={'Authorization': 'Bearer s3cret'})
    assert resp.status_code == 200
    assert resp.get_json() == {'backups': []}


def test_start_backup_runs_in_background(app_setup, project):
    client, _, stub = app_setup
    resp = client.post('/api/backups', json={'stop': True})
    assert resp.status_code == 202
    assert stub.done.wait(5)
    assert stub.calls[0]['stop'] is True
    assert stub.calls[0]['triggered_by'] == 'api'
    # The lock is released once the background run ends
    for _ in range(50):
        if not (project / '.stackctl.lock').exists():
            break
        threading.Event().wait(0.1)
    assert not (project / '.stackctl.lock').exists()


def test_start_backup_conflicts_with_running_job(app_setup, project):
    client, _, stub = app_setup
    (project / '.stackctl.lock').write_text(f"{os.getpid()}\n")
    resp = client.post('/api/backups')
    assert resp.status_code == 409
    assert resp.get_json()['holder_pid'] == os.getpid()
    assert stub.calls == []


def test_inventory_error_is_reported(tmp_path):
    app = create_app(inventory_path=str(tmp_path / 'missing.yml'))
    resp = app.test_client().get('/api/stack/health')
    assert resp.status_code == 500
    assert 'not found' in resp.get_json()['error']


def test_job_events_stream(app_setup):
    client, _, _ = app_setup
    resp = client.get('/api/jobs/7/events')
    assert resp.mimetype == 'text/event-stream'
    stream = iter(resp.response)
    assert b'"connected"' in next(stream)
    events.send_event(7, 'log', {'line': 'Stopped api'})
    assert b'Stopped api' in next(stream)
    resp.close()


def test_failed_backup_setup_releases_the_lock(project, tmp_path, monkeypatch):
    path = project / 'stackctl.json'
    path.write_text(json.dumps(stack_spec(project)))
    monkeypatch.setenv('STACKCTL_BACKUP_DIR', str(tmp_path / 'backups'))

    def broken_factory(inventory):
        raise ConfigError('backup archiver could not be built')

    client = create_app(inventory_path=str(path), backup_factory=broken_factory).test_client()
    resp = client.post('/api/backups')
    assert resp.status_code == 500
    assert 'could not be built' in resp.get_json()['error']
    assert not (project / '.stackctl.lock').exists()

    stub = StubBackup()
    retry = create_app(inventory_path=str(path), backup_factory=lambda inventory: stub).test_client()
    assert retry.post('/api/backups').status_code == 202
    assert stub.done.wait(5)

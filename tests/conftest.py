import os

import pytest

from stackctl import events
from stackctl.compose import CommandResult
from stackctl.health import ComponentHealth, HealthAggregator, HealthStatus
from stackctl.inventory import load_inventory


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """No database, Redis or notification settings leak in from the host."""
    for key in list(os.environ):
        if key.startswith('STACKCTL_'):
            monkeypatch.delenv(key, raising=False)
    for key in ('DATABASE_URL', 'REDIS_URL', 'BACKUP_DIR', 'RETENTION_DAYS', 'TZ'):
        monkeypatch.delenv(key, raising=False)
    events.reset()
    yield
    events.reset()


class FakeManager:
    """Records lifecycle calls; names in the *_fail sets report failure."""

    def __init__(self, stop_fail=(), kill_fail=(), start_fail=(), pull_ok=True):
        self.calls = []
        self.stop_fail = set(stop_fail)
        self.kill_fail = set(kill_fail)
        self.start_fail = set(start_fail)
        self.pull_ok = pull_ok
        self.profile = None

    def stop(self, component, timeout):
        self.calls.append(('stop', component.name))
        return CommandResult(component.name not in self.stop_fail, 'stop')

    def kill(self, component):
        self.calls.append(('kill', component.name))
        return CommandResult(component.name not in self.kill_fail, 'kill')

    def start(self, component):
        self.calls.append(('start', component.name))
        return CommandResult(component.name not in self.start_fail, 'start')

    def pull(self, components):
        self.calls.append(('pull', tuple(c.name for c in components)))
        return CommandResult(self.pull_ok, 'pull')

    def ps(self):
        return 'NAME   STATUS'

    def docker_version(self):
        return '24.0.7'

    def names(self, action):
        return [name for a, name in self.calls if a == action]


class FakeProber:
    """Returns a fixed status per component (healthy by default)."""

    def __init__(self, statuses=None):
        self.statuses = dict(statuses or {})
        self.calls = []

    def probe(self, component, timeout=None):
        self.calls.append(component.name)
        status = self.statuses.get(component.name, HealthStatus.HEALTHY)
        if callable(status):
            status = status()
        return ComponentHealth(component.name, status, 'fake')


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def fake_aggregator(statuses=None, clock=None):
    clock = clock or FakeClock()
    return HealthAggregator(prober=FakeProber(statuses), clock=clock, sleep=clock.sleep)


def stack_spec(project_dir, extra_volumes=(), configs=None):
    """db <- api <- web; db and api own local volumes."""
    spec = {
        'project_dir': str(project_dir),
        'components': [
            {'name': 'db', 'health': {'kind': 'tcp', 'port': 5432},
             'volumes': [{'name': 'db-data', 'driver': 'local', 'location': 'volumes/db-data'}]},
            {'name': 'api', 'depends_on': ['db'], 'health': 'http://localhost:8000/health',
             'volumes': [{'name': 'api-uploads', 'driver': 'local', 'location': 'volumes/api-uploads'}]
                        + [{'name': n, 'driver': 'local', 'location': f"volumes/{n}"} for n in extra_volumes]},
            {'name': 'web', 'depends_on': ['api'], 'health': 'none'},
        ],
    }
    if configs is not None:
        spec['configs'] = configs
    return spec


@pytest.fixture
def project(tmp_path):
    """A project directory with two populated local volumes and a config file."""
    root = tmp_path / 'project'
    (root / 'volumes' / 'db-data' / 'base').mkdir(parents=True)
    (root / 'volumes' / 'db-data' / 'base' / '1.dat').write_bytes(b'\x00\x01table-data' * 100)
    (root / 'volumes' / 'db-data' / 'PG_VERSION').write_text('16\n')
    (root / 'volumes' / 'api-uploads').mkdir(parents=True)
    (root / 'volumes' / 'api-uploads' / 'avatar.png').write_bytes(b'png' * 50)
    (root / '.env').write_text('SECRET=one\n')
    return root


@pytest.fixture
def inventory(project):
    return load_inventory(stack_spec(project, configs=['.env', {'path': 'overrides.yml', 'optional': True}]))

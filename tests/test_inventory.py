import json

import pytest

from stackctl.errors import ConfigError
from stackctl.inventory import ConfigPath, load_inventory

from conftest import stack_spec


def _names(components):
    return [c.name for c in components]


def test_topological_order_and_reverse_stop_order(tmp_path):
    inv = load_inventory(stack_spec(tmp_path))
    assert _names(inv.topological_order()) == ['db', 'api', 'web']
    assert _names(inv.stop_order()) == ['web', 'api', 'db']


def test_declared_order_breaks_ties(tmp_path):
    spec = {
        'project_dir': str(tmp_path),
        'components': [
            {'name': 'worker', 'depends_on': ['queue'], 'health': 'none'},
            {'name': 'cache', 'health': 'none'},
            {'name': 'queue', 'health': 'none'},
            {'name': 'proxy', 'health': 'none'},
        ],
    }
    inv = load_inventory(spec)
    assert _names(inv.topological_order()) == ['cache', 'queue', 'worker', 'proxy']


def test_subset_in_order(tmp_path):
    inv = load_inventory(stack_spec(tmp_path))
    assert _names(inv.subset_in_order({'web', 'db'})) == ['db', 'web']
    assert _names(inv.subset_in_order({'web', 'db'}, reverse=True)) == ['web', 'db']


def test_cycle_is_rejected_with_members(tmp_path):
    spec = {
        'project_dir': str(tmp_path),
        'components': [
            {'name': 'a', 'depends_on': ['c'], 'health': 'none'},
            {'name': 'b', 'depends_on': ['a'], 'health': 'none'},
            {'name': 'c', 'depends_on': ['b'], 'health': 'none'},
            {'name': 'd', 'health': 'none'},
        ],
    }
    with pytest.raises(ConfigError) as exc:
        load_inventory(spec)
    assert 'cycle' in str(exc.value)
    assert 'a, b, c' in str(exc.value)
    assert 'd' not in str(exc.value).split(':')[-1]


def test_self_dependency_is_a_cycle(tmp_path):
    spec = {'project_dir': str(tmp_path), 'components': [{'name': 'a', 'depends_on': 'a', 'health': 'none'}]}
    with pytest.raises(ConfigError, match='cycle'):
        load_inventory(spec)


def test_unknown_dependency(tmp_path):
    spec = {'project_dir': str(tmp_path), 'components': [{'name': 'a', 'depends_on': ['ghost'], 'health': 'none'}]}
    with pytest.raises(ConfigError, match='ghost'):
        load_inventory(spec)


def test_duplicate_component_and_shared_volume(tmp_path):
    dup = {'project_dir': str(tmp_path), 'components': [
        {'name': 'a', 'health': 'none'}, {'name': 'a', 'health': 'none'},
    ]}
    with pytest.raises(ConfigError, match='Duplicate component'):
        load_inventory(dup)

    shared = {'project_dir': str(tmp_path), 'components': [
        {'name': 'a', 'health': 'none', 'volumes': ['data']},
        {'name': 'b', 'health': 'none', 'volumes': ['data']},
    ]}
    with pytest.raises(ConfigError, match="claimed by both 'a' and 'b'"):
        load_inventory(shared)


def test_missing_health_descriptor_is_rejected(tmp_path):
    spec = {'project_dir': str(tmp_path), 'components': [{'name': 'a'}]}
    with pytest.raises(ConfigError, match='health'):
        load_inventory(spec)


def test_health_parsing(tmp_path, monkeypatch):
    monkeypatch.setenv('STACKCTL_TIMEOUT_DB', '9')
    inv = load_inventory(stack_spec(tmp_path))
    db = inv.component('db').health
    assert (db.kind, db.host, db.port, db.timeout) == ('tcp', 'localhost', 5432, 9.0)
    api = inv.component('api').health
    assert api.kind == 'http' and api.url.endswith('/health') and api.expected_status == (200,)
    assert inv.component('web').health.kind == 'none'


def test_http_health_needs_url(tmp_path):
    spec = {'project_dir': str(tmp_path), 'components': [
        {'name': 'a', 'health': {'kind': 'http', 'url': 'ftp://x'}},
    ]}
    with pytest.raises(ConfigError, match='http'):
        load_inventory(spec)


def test_local_volume_location_is_project_relative(tmp_path):
    inv = load_inventory(stack_spec(tmp_path))
    vol = inv.volume('db-data')
    assert vol.driver == 'local'
    assert vol.location == str(tmp_path / 'volumes' / 'db-data')
    assert inv.owner_of('api-uploads').name == 'api'
    assert inv.volume('nope') is None


def test_config_paths(tmp_path):
    inv = load_inventory(stack_spec(tmp_path, configs=['.env', {'path': 'extra.yml', 'optional': True}]))
    assert inv.config_paths == (ConfigPath('.env'), ConfigPath('extra.yml', optional=True))

    with pytest.raises(ConfigError):
        load_inventory(stack_spec(tmp_path, configs=['/etc/passwd']))
    with pytest.raises(ConfigError):
        load_inventory(stack_spec(tmp_path, configs=['../outside.env']))


def test_load_from_yaml_and_json_files(tmp_path):
    (tmp_path / 'stackctl.yml').write_text(
        "project_dir: .\n"
        "compose_files: docker-compose.yml\n"
        "components:\n"
        "  - name: db\n"
        "    health: none\n"
        "    volumes: [pgdata]\n"
    )
    inv = load_inventory(tmp_path / 'stackctl.yml')
    assert inv.project_dir == tmp_path.resolve()
    assert inv.compose_files == ('docker-compose.yml',)
    assert inv.volume('pgdata').driver == 'docker'

    (tmp_path / 'stack.json').write_text(json.dumps(stack_spec(tmp_path)))
    assert len(load_inventory(tmp_path / 'stack.json').components) == 3


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigError, match='not found'):
        load_inventory(tmp_path / 'missing.yml')
    (tmp_path / 'bad.yml').write_text("components: [\n")
    with pytest.raises(ConfigError, match='parse'):
        load_inventory(tmp_path / 'bad.yml')
    (tmp_path / 'empty.yml').write_text("components: []\n")
    with pytest.raises(ConfigError):
        load_inventory(tmp_path / 'empty.yml')

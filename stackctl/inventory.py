"""
Inventory model: which components exist, which volumes they own and how
their health is checked.

The inventory is loaded once per run from a YAML or JSON file and validated
up front; any problem raises ConfigError before anything is touched.
"""
import heapq
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from stackctl import settings
from stackctl.errors import ConfigError
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

DEFAULT_HEALTH_TIMEOUT = 3.0
VOLUME_DRIVERS = ('docker', 'local')
HEALTH_KINDS = ('http', 'tcp', 'none')


@dataclass(frozen=True)
class HealthCheck:
    """How a component reports health."""
    kind: str = 'http'
    url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    expected_status: Tuple[int, ...] = (200,)
    timeout: float = DEFAULT_HEALTH_TIMEOUT

    def describe(self):
        if self.kind == 'http':
            return self.url
        if self.kind == 'tcp':
            return f"tcp://{self.host}:{self.port}"
        return 'none'


@dataclass(frozen=True)
class Volume:
    """A named durable data store owned by exactly one component."""
    name: str
    owner: str
    driver: str = 'docker'
    location: str = ''


@dataclass(frozen=True)
class ConfigPath:
    """A project-relative configuration file or directory captured by backups."""
    path: str
    optional: bool = False


@dataclass(frozen=True)
class Component:
    name: str
    service: str
    health: HealthCheck
    depends_on: Tuple[str, ...] = ()
    volumes: Tuple[Volume, ...] = ()
    # Optional components (profile-only services) never make the stack unhealthy
    optional: bool = False


@dataclass(frozen=True)
class Inventory:
    components: Tuple[Component, ...]
    project_dir: Path
    config_paths: Tuple[ConfigPath, ...] = ()
    compose_files: Tuple[str, ...] = ()
    project_name: Optional[str] = None
    source: Optional[str] = None
    _order: Tuple[str, ...] = field(default=(), repr=False, compare=False)

    def component(self, name) -> Component:
        for c in self.components:
            if c.name == name:
                return c
        raise KeyError(name)

    def volumes(self) -> List[Volume]:
        """All volumes in component declaration order."""
        return [v for c in self.components for v in c.volumes]

    def volume(self, name) -> Optional[Volume]:
        for v in self.volumes():
            if v.name == name:
                return v
        return None

    def owner_of(self, volume_name) -> Optional[Component]:
        v = self.volume(volume_name)
        return self.component(v.owner) if v else None

    def topological_order(self) -> List[Component]:
        """Components with every dependency before its dependents.

        Components without a dependency relation keep their declared order.
        """
        return [self.component(n) for n in self._order]

    def stop_order(self) -> List[Component]:
        return list(reversed(self.topological_order()))

    def subset_in_order(self, names, reverse=False) -> List[Component]:
        """Return the named components in (reverse) topological order."""
        wanted = set(names)
        ordered = [c for c in self.topological_order() if c.name in wanted]
        return list(reversed(ordered)) if reverse else ordered


def _topological_sort(components: List[Component]) -> List[str]:
    """Kahn's algorithm with a declared-order tie break.

    Raises ConfigError listing the components that form a cycle.
    """
    index = {c.name: i for i, c in enumerate(components)}
    indegree = {c.name: len(set(c.depends_on)) for c in components}
    dependents: Dict[str, List[str]] = {c.name: [] for c in components}
    for c in components:
        for dep in set(c.depends_on):
            dependents[dep].append(c.name)

    ready = [(index[name], name) for name, deg in indegree.items() if deg == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in dependents[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (index[child], child))

    if len(order) != len(components):
        stuck = sorted((n for n, d in indegree.items() if d > 0), key=index.get)
        raise ConfigError(f"Dependency cycle detected among components: {', '.join(stuck)}")
    return order


def _parse_health(name, raw) -> HealthCheck:
    if raw is None:
        raise ConfigError(f"Component '{name}' has no health descriptor (use 'health: none' to opt out)")
    if isinstance(raw, str):
        if raw.strip().lower() == 'none':
            return HealthCheck(kind='none')
        raw = {'url': raw}
    if not isinstance(raw, dict):
        raise ConfigError(f"Component '{name}': health must be a mapping, URL string or 'none'")

    kind = str(raw.get('kind') or ('tcp' if 'port' in raw and 'url' not in raw else 'http')).lower()
    if kind not in HEALTH_KINDS:
        raise ConfigError(f"Component '{name}': unknown health kind '{kind}'")

    try:
        timeout = float(raw.get('timeout', DEFAULT_HEALTH_TIMEOUT))
    except (TypeError, ValueError):
        raise ConfigError(f"Component '{name}': health timeout must be a number")
    timeout = settings.get_component_timeout(name, timeout)
    if timeout <= 0:
        raise ConfigError(f"Component '{name}': health timeout must be positive")

    expected = raw.get('expected_status', 200)
    if not isinstance(expected, (list, tuple)):
        expected = [expected]
    try:
        expected = tuple(int(s) for s in expected)
    except (TypeError, ValueError):
        raise ConfigError(f"Component '{name}': expected_status must be integer(s)")

    if kind == 'http':
        url = raw.get('url')
        if not url or not str(url).startswith(('http://', 'https://')):
            raise ConfigError(f"Component '{name}': http health check needs an http(s) url")
        return HealthCheck(kind='http', url=str(url), expected_status=expected, timeout=timeout)
    if kind == 'tcp':
        host = raw.get('host', 'localhost')
        try:
            port = int(raw.get('port'))
        except (TypeError, ValueError):
            raise ConfigError(f"Component '{name}': tcp health check needs a numeric port")
        return HealthCheck(kind='tcp', host=str(host), port=port, timeout=timeout)
    return HealthCheck(kind='none')


def _parse_volume(owner, raw, project_dir: Path) -> Volume:
    if isinstance(raw, str):
        raw = {'name': raw}
    if not isinstance(raw, dict) or not raw.get('name'):
        raise ConfigError(f"Component '{owner}': every volume needs a name")
    name = str(raw['name'])
    driver = str(raw.get('driver', 'docker')).lower()
    if driver not in VOLUME_DRIVERS:
        raise ConfigError(f"Volume '{name}': unknown driver '{driver}'")
    location = str(raw.get('location') or name)
    if driver == 'local':
        path = Path(location)
        if not path.is_absolute():
            path = project_dir / path
        location = str(path)
    return Volume(name=name, owner=owner, driver=driver, location=location)


def _parse_config_path(raw) -> ConfigPath:
    if isinstance(raw, str):
        raw = {'path': raw}
    if not isinstance(raw, dict) or not raw.get('path'):
        raise ConfigError(f"Malformed config entry: {raw!r}")
    path = str(raw['path'])
    if Path(path).is_absolute() or '..' in Path(path).parts:
        raise ConfigError(f"Config path must be relative to the project directory: {path}")
    return ConfigPath(path=path, optional=bool(raw.get('optional', False)))


def _read_source(source):
    if isinstance(source, dict):
        return source, None, Path('.')
    path = Path(source)
    if not path.is_file():
        raise ConfigError(f"Inventory file not found: {path}")
    try:
        text = path.read_text(encoding='utf-8')
        if path.suffix.lower() == '.json':
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not parse inventory {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Inventory {path} must be a mapping")
    return data, str(path), path.parent


def load_inventory(source) -> Inventory:
    """Load and validate an inventory from a file path or a parsed mapping."""
    data, source_name, base_dir = _read_source(source)

    project_dir = Path(data.get('project_dir') or '.')
    if not project_dir.is_absolute():
        project_dir = (base_dir / project_dir).resolve()

    raw_components = data.get('components')
    if not isinstance(raw_components, list) or not raw_components:
        raise ConfigError("Inventory must declare a non-empty 'components' list")

    components = []
    seen_components = set()
    volume_owner = {}
    for raw in raw_components:
        if not isinstance(raw, dict) or not raw.get('name'):
            raise ConfigError("Every component needs a name")
        name = str(raw['name'])
        if name in seen_components:
            raise ConfigError(f"Duplicate component name: {name}")
        seen_components.add(name)

        depends_on = raw.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        depends_on = tuple(str(d) for d in depends_on)

        volumes = []
        for raw_volume in raw.get('volumes') or []:
            volume = _parse_volume(name, raw_volume, project_dir)
            if volume.name in volume_owner:
                raise ConfigError(
                    f"Volume '{volume.name}' is claimed by both '{volume_owner[volume.name]}' and '{name}'"
                )
            volume_owner[volume.name] = name
            volumes.append(volume)

        components.append(Component(
            name=name,
            service=str(raw.get('service') or name),
            health=_parse_health(name, raw.get('health')),
            depends_on=depends_on,
            volumes=tuple(volumes),
            optional=bool(raw.get('optional', False)),
        ))

    for c in components:
        for dep in c.depends_on:
            if dep not in seen_components:
                raise ConfigError(f"Component '{c.name}' depends on unknown component '{dep}'")
            if dep == c.name:
                raise ConfigError(f"Dependency cycle detected among components: {c.name}")

    order = _topological_sort(components)

    compose_files = data.get('compose_files') or data.get('compose_file') or []
    if isinstance(compose_files, str):
        compose_files = [compose_files]

    inventory = Inventory(
        components=tuple(components),
        project_dir=project_dir,
        config_paths=tuple(_parse_config_path(p) for p in (data.get('configs') or [])),
        compose_files=tuple(str(f) for f in compose_files),
        project_name=data.get('project_name'),
        source=source_name,
        _order=tuple(order),
    )
    logger.debug("Loaded inventory with %d component(s), %d volume(s)",
                 len(inventory.components), len(inventory.volumes()))
    return inventory

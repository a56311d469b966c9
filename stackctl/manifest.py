"""
Backup manifest: the persisted record of what one backup run captured.

The manifest is written exactly once, through a temporary file and an atomic
rename, and is never modified afterwards. Reading is tolerant of manifests
written by older versions of the backup scripts (``version: "1.0"``), which
only listed volume names.
"""
import json
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from stackctl.errors import ConfigError
from stackctl.utils import get_logger, to_iso_z, parse_iso, parse_filename_timestamp

logger = get_logger(__name__)

MANIFEST_NAME = 'manifest.json'
CONFIGS_ARCHIVE = 'configs.tar.gz'
MANIFEST_VERSION = '2.0'


def _byte_count(data, kind):
    value = data.get('bytes') or 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Malformed byte count in {kind} record {data.get('name')!r}: {value!r}")


@dataclass
class ArchiveRecord:
    """Outcome of archiving one volume."""
    name: str
    archive: Optional[str] = None
    checksum: Optional[str] = None
    bytes: int = 0
    success: bool = False
    error: Optional[str] = None

    def to_dict(self):
        return {
            'name': self.name,
            'archive': self.archive,
            'checksum': self.checksum,
            'bytes': self.bytes,
            'success': self.success,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, str):
            # 1.0 manifests: plain volume names, archive named after the short name
            short = data.rsplit('_', 1)[-1]
            return cls(name=short, archive=f"{short}.tar.gz", success=True)
        if not isinstance(data, dict) or not data.get('name'):
            raise ConfigError(f"Malformed volume record in manifest: {data!r}")
        name = str(data['name'])
        return cls(
            name=name,
            archive=data.get('archive') or f"{name}.tar.gz",
            checksum=data.get('checksum'),
            bytes=_byte_count(data, 'volume'),
            success=bool(data.get('success', True)),
            error=data.get('error'),
        )


@dataclass
class ConfigRecord:
    """Outcome of capturing one declared configuration path."""
    name: str
    bytes: int = 0
    success: bool = False
    error: Optional[str] = None

    def to_dict(self):
        return {'name': self.name, 'bytes': self.bytes, 'success': self.success, 'error': self.error}

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, str):
            return cls(name=data, success=True)
        if not isinstance(data, dict) or not data.get('name'):
            raise ConfigError(f"Malformed config record in manifest: {data!r}")
        return cls(
            name=str(data['name']),
            bytes=_byte_count(data, 'config'),
            success=bool(data.get('success', True)),
            error=data.get('error'),
        )


@dataclass
class BackupManifest:
    timestamp: str
    created_at: Optional[datetime] = None
    volumes: List[ArchiveRecord] = field(default_factory=list)
    configs: List[ConfigRecord] = field(default_factory=list)
    configs_archive: Optional[ArchiveRecord] = None
    overall_success: bool = False
    version: str = MANIFEST_VERSION
    host: Optional[str] = None
    docker_version: Optional[str] = None
    path: Optional[Path] = None

    @property
    def backup_time(self) -> Optional[datetime]:
        """The backup's identity instant (aware UTC)."""
        return self.created_at or parse_filename_timestamp(self.timestamp)

    def volume(self, name) -> Optional[ArchiveRecord]:
        for v in self.volumes:
            if v.name == name:
                return v
        return None

    def counts(self):
        ok = sum(1 for v in self.volumes if v.success)
        return {
            'volumes_ok': ok,
            'volumes_failed': len(self.volumes) - ok,
            'configs_ok': sum(1 for c in self.configs if c.success),
            'configs_failed': sum(1 for c in self.configs if not c.success),
        }

    def total_bytes(self):
        total = sum(v.bytes for v in self.volumes if v.success)
        if self.configs_archive and self.configs_archive.success:
            total += self.configs_archive.bytes
        return total

    def to_dict(self):
        return {
            'version': self.version,
            'timestamp': self.timestamp,
            'date': to_iso_z(self.created_at),
            'host': self.host,
            'docker_version': self.docker_version,
            'volumes': [v.to_dict() for v in self.volumes],
            'configs': [c.to_dict() for c in self.configs],
            'configs_archive': self.configs_archive.to_dict() if self.configs_archive else None,
            'overall_success': self.overall_success,
            'overallSuccess': self.overall_success,
        }

    @classmethod
    def from_dict(cls, data, path=None):
        if not isinstance(data, dict):
            raise ConfigError("Manifest must be a JSON object")
        timestamp = data.get('timestamp')
        if not timestamp:
            raise ConfigError("Manifest has no timestamp")

        for key in ('volumes', 'configs'):
            if not isinstance(data.get(key) or [], list):
                raise ConfigError(f"Manifest field '{key}' must be a list")
        volumes = [ArchiveRecord.from_dict(v) for v in (data.get('volumes') or [])]
        configs = [ConfigRecord.from_dict(c) for c in (data.get('configs') or [])]
        configs_archive = data.get('configs_archive')
        if configs_archive:
            configs_archive = ArchiveRecord.from_dict(configs_archive)

        if 'overall_success' in data:
            overall = bool(data['overall_success'])
        elif 'overallSuccess' in data:
            overall = bool(data['overallSuccess'])
        else:
            # Older scripts only wrote a manifest after every step had succeeded
            overall = all(v.success for v in volumes)

        return cls(
            timestamp=str(timestamp),
            created_at=parse_iso(data.get('date')),
            volumes=volumes,
            configs=configs,
            configs_archive=configs_archive or None,
            overall_success=overall,
            version=str(data.get('version') or '1.0'),
            host=data.get('host'),
            docker_version=data.get('docker_version'),
            path=Path(path) if path else None,
        )


def manifest_path_for(path) -> Path:
    """Accept a backup directory or a manifest file and return the manifest file."""
    p = Path(path)
    if p.is_dir():
        return p / MANIFEST_NAME
    return p


def read_manifest(path) -> BackupManifest:
    """Read and parse a manifest; raises ConfigError if it is missing or malformed."""
    mpath = manifest_path_for(path)
    if not mpath.is_file():
        raise ConfigError(f"Manifest not found: {mpath}")
    try:
        with open(mpath, 'r', encoding='utf-8') as fh:
            data = json.load(fh)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read manifest {mpath}: {e}")
    return BackupManifest.from_dict(data, path=mpath)


def write_manifest(manifest: BackupManifest, backup_dir) -> Path:
    """Persist the manifest once via temp file + rename. Refuses to overwrite."""
    target = Path(backup_dir) / MANIFEST_NAME
    if target.exists():
        raise FileExistsError(f"Manifest already exists: {target}")
    tmp = target.with_name(MANIFEST_NAME + '.tmp')
    with open(tmp, 'w', encoding='utf-8') as fh:
        json.dump(manifest.to_dict(), fh, indent=2)
        fh.write('\n')
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, target)
    manifest.path = target
    return target


def default_host():
    try:
        return socket.gethostname()
    except OSError:
        return None


@dataclass
class BackupEntry:
    """A backup directory found under the backup root."""
    path: Path
    manifest: Optional[BackupManifest] = None
    error: Optional[str] = None

    @property
    def name(self):
        return self.path.name

    @property
    def backup_time(self) -> Optional[datetime]:
        """Manifest timestamp, else the timestamp encoded in the directory name."""
        if self.manifest is not None and self.manifest.backup_time is not None:
            return self.manifest.backup_time
        return parse_filename_timestamp(self.path.name)

    def to_dict(self):
        data = {
            'name': self.name,
            'path': str(self.path),
            'time': to_iso_z(self.backup_time),
            'has_manifest': self.manifest is not None,
            'error': self.error,
        }
        if self.manifest is not None:
            data.update({
                'overall_success': self.manifest.overall_success,
                'version': self.manifest.version,
                'total_bytes': self.manifest.total_bytes(),
                'counts': self.manifest.counts(),
            })
        return data


def scan_backups(backup_root) -> List[BackupEntry]:
    """List first-level backup directories, newest first.

    Unreadable manifests are reported on the entry instead of raising.
    """
    root = Path(backup_root)
    if not root.is_dir():
        return []
    entries = []
    for item in root.iterdir():
        if not item.is_dir() or item.name.startswith('.'):
            continue
        entry = BackupEntry(path=item)
        if (item / MANIFEST_NAME).is_file():
            try:
                entry.manifest = read_manifest(item)
            except ConfigError as e:
                entry.error = str(e)
        entries.append(entry)

    def sort_key(e):
        t = e.backup_time
        return (t is not None, t.timestamp() if t else 0, e.name)

    entries.sort(key=sort_key, reverse=True)
    return entries


def latest_backup(backup_root) -> BackupEntry:
    """Return the newest backup with a readable manifest; ConfigError if there is none."""
    for entry in scan_backups(backup_root):
        if entry.manifest is not None:
            return entry
    raise ConfigError(f"No backup with a readable manifest under {backup_root}")

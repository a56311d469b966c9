"""
Controller settings.

Values are looked up in the environment first (``STACKCTL_<KEY>``), then in
the database ``settings`` table when a database is configured, then fall back
to the documented default.
"""
import os
from stackctl import db
from stackctl.utils import get_logger, env_key

logger = get_logger(__name__)

DEFAULT_INVENTORY = 'stackctl.yml'
DEFAULT_BACKUP_DIR = 'backups'
DEFAULT_RETENTION_DAYS = 7
DEFAULT_LOCK_NAME = '.stackctl.lock'
DEFAULT_HEALTH_DEADLINE = 60
DEFAULT_DRAIN_SECONDS = 10
DEFAULT_STOP_TIMEOUT = 30
DEFAULT_ARCHIVE_WORKERS = 2
MAX_ARCHIVE_WORKERS = 4
DEFAULT_PROBE_WORKERS = 8


def _db_setting(key):
    """Return a setting value from the database (best-effort, None on any error)."""
    if not db.is_enabled():
        return None
    try:
        with db.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT value FROM settings WHERE key = %s;", (key,))
            row = cur.fetchone()
            return row['value'] if row else None
    except Exception as e:
        logger.debug("Settings lookup for %s failed: %s", key, e)
        return None


def get_setting(key: str, default: str = '', legacy_env: str = None) -> str:
    """Return a setting value.

    ``legacy_env`` names an unprefixed variable that is honoured as well
    (e.g. ``BACKUP_DIR``) so existing cron entries keep working.
    """
    value = os.environ.get(f"STACKCTL_{env_key(key)}")
    if value is None and legacy_env:
        value = os.environ.get(legacy_env)
    if value is None:
        value = _db_setting(key)
    return default if value is None else value


def get_int_setting(key: str, default: int, legacy_env: str = None) -> int:
    raw = get_setting(key, '', legacy_env=legacy_env)
    if raw == '' or raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for setting %s=%r, using default %s", key, raw, default)
        return default


def get_float_setting(key: str, default: float) -> float:
    raw = get_setting(key, '')
    if raw == '' or raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid number for setting %s=%r, using default %s", key, raw, default)
        return default


def get_inventory_path():
    return get_setting('inventory', DEFAULT_INVENTORY)


def get_backup_dir():
    return get_setting('backup_dir', DEFAULT_BACKUP_DIR, legacy_env='BACKUP_DIR')


def get_retention_days():
    return get_int_setting('retention_days', DEFAULT_RETENTION_DAYS, legacy_env='RETENTION_DAYS')


def get_lock_path(project_dir='.'):
    return get_setting('lock_file', os.path.join(project_dir, DEFAULT_LOCK_NAME))


def get_health_deadline():
    return get_float_setting('health_deadline', DEFAULT_HEALTH_DEADLINE)


def get_drain_seconds():
    return get_float_setting('drain_seconds', DEFAULT_DRAIN_SECONDS)


def get_stop_timeout():
    return get_int_setting('stop_timeout', DEFAULT_STOP_TIMEOUT)


def get_archive_workers():
    """Number of concurrent archive jobs, clamped to 1..MAX_ARCHIVE_WORKERS."""
    workers = get_int_setting('archive_workers', DEFAULT_ARCHIVE_WORKERS)
    return max(1, min(MAX_ARCHIVE_WORKERS, workers))


def get_probe_workers():
    return max(1, get_int_setting('probe_workers', DEFAULT_PROBE_WORKERS))


def get_component_timeout(component_name, default):
    """Per-component health timeout override (STACKCTL_TIMEOUT_<COMPONENT>)."""
    raw = os.environ.get(f"STACKCTL_TIMEOUT_{env_key(component_name)}")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid timeout override for %s: %r", component_name, raw)
        return default


def get_backup_cron():
    return get_setting('backup_cron', '').strip()


def get_api_token():
    return get_setting('api_token', '').strip()

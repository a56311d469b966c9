"""
Utility functions for the controller.
"""
import os
import re
import shutil
import hashlib
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import logging

LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'
LOG_FILE_NAME = 'stackctl.log'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


# Central logging helpers
def setup_logging():
    """Configure root logger from environment.

    - Uses LOG_LEVEL env var (e.g., DEBUG, INFO); defaults to INFO.
    - If no handlers exist, installs a StreamHandler and, when STACKCTL_LOG_DIR
      is set, a TimedRotatingFileHandler writing daily files into that directory.
    """
    level_name = os.environ.get('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        log_dir = get_log_dir()
        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
                from logging.handlers import TimedRotatingFileHandler
                fh = TimedRotatingFileHandler(
                    filename=os.path.join(log_dir, LOG_FILE_NAME),
                    when='midnight',
                    backupCount=14,
                    encoding='utf-8'
                )
                fh.setLevel(level)
                fh.setFormatter(logging.Formatter(LOG_FORMAT))
                root.addHandler(fh)
            except OSError as e:
                root.warning("Failed to configure file logging (STACKCTL_LOG_DIR=%s): %s", log_dir, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def get_log_dir():
    """Return the optional log directory (file logging is off when unset)."""
    return os.environ.get('STACKCTL_LOG_DIR') or None


def now():
    """Get current datetime in UTC.

    Returns a timezone-aware datetime with tzinfo=timezone.utc to avoid naive/aware
    mismatches across the controller."""
    return datetime.now(timezone.utc)


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return ZoneInfo('UTC')


def local_now():
    """Get current datetime in the display timezone (for backup names, logs)."""
    return now().astimezone(get_display_timezone())


def filename_timestamp(dt=None):
    """Return a timestamp string suitable for directory names.

    Format: YYYYMMDD_HHMMSS (e.g. 20251225_182530) in the display timezone.
    """
    if dt is None:
        dt = local_now()
    elif getattr(dt, 'tzinfo', None) is not None:
        dt = dt.astimezone(get_display_timezone())
    return dt.strftime(TIMESTAMP_FORMAT)


_TS_RE = re.compile(r'^(\d{8}_\d{6})')


def parse_filename_timestamp(value):
    """Parse a YYYYMMDD_HHMMSS prefix into an aware UTC datetime.

    The timestamp is interpreted in the display timezone, matching
    `filename_timestamp`. Returns None when `value` has no such prefix.
    """
    if not value:
        return None
    m = _TS_RE.match(str(value))
    if not m:
        return None
    try:
        naive = datetime.strptime(m.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return naive.replace(tzinfo=get_display_timezone()).astimezone(timezone.utc)


def ensure_utc(dt):
    """Normalize a datetime to a timezone-aware UTC datetime.

    Naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None
    if getattr(dt, 'tzinfo', None) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_z(dt):
    """Convert a datetime to an ISO 8601 UTC string ending with 'Z'."""
    if dt is None:
        return None
    if hasattr(dt, 'astimezone'):
        return ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%SZ')
    return str(dt)


def parse_iso(value):
    """Parse an ISO 8601 string (with optional trailing 'Z') to aware UTC."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_bytes(bytes_val):
    """Format bytes to human readable string."""
    if bytes_val is None:
        return 'N/A'

    bytes_val = float(bytes_val)

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}PB"


def format_duration(seconds):
    """Format duration in seconds to human readable string."""
    if seconds is None:
        return 'N/A'

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes = seconds // 60
    secs = seconds % 60

    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def env_key(name):
    """Upper-case a component or setting name for use in an env var."""
    return re.sub(r'[^A-Za-z0-9]+', '_', str(name)).strip('_').upper()


def file_sha256(path, chunk_size=1024 * 1024):
    """Return the hex sha256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


def get_dir_size(path):
    total = 0
    for root, dirs, files in os.walk(path):
        for f in files:
            try:
                total += os.path.getsize(os.path.join(root, f))
            except OSError:
                pass
    return total


def get_disk_usage(path):
    """
    Get disk usage for the filesystem holding `path`.

    Returns dict with total, used, free (bytes) and percent.
    """
    try:
        usage = shutil.disk_usage(path)
        return {
            'total': usage.total,
            'used': usage.used,
            'free': usage.free,
            'percent': (usage.used / usage.total) * 100
        }
    except OSError:
        return {'total': 0, 'used': 0, 'free': 0, 'percent': 0}


def logging_level(level_name):
    """Map a level name such as 'WARNING' to its logging constant (INFO if unknown)."""
    level = getattr(logging, str(level_name).upper(), None)
    return level if isinstance(level, int) else logging.INFO

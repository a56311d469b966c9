"""
Age-based retention for backup directories.
"""
import shutil
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List

from stackctl import utils
from stackctl.manifest import scan_backups
from stackctl.utils import setup_logging, get_logger, get_dir_size, format_bytes

setup_logging()
logger = get_logger(__name__)


@dataclass
class RetentionResult:
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reclaimed: int = 0

    def to_dict(self):
        return {
            'deleted': list(self.deleted),
            'kept': len(self.kept),
            'skipped': list(self.skipped),
            'failed': list(self.failed),
            'reclaimed_bytes': self.reclaimed,
        }


def run_retention(backup_root, retention_days, now=None, exclude=(), is_dry_run=False, log_callback=None):
    """Delete backups whose own timestamp is more than `retention_days` old.

    The timestamp comes from each backup's manifest, else from its directory
    name; backups with neither are never touched. `retention_days <= 0`
    disables pruning. Paths in `exclude` are always kept.
    """
    def log(level, msg):
        if log_callback:
            log_callback(level, msg)
        else:
            logger.log(utils.logging_level(level), "%s", msg)

    result = RetentionResult()
    if retention_days is None or retention_days <= 0:
        log('INFO', "Retention disabled (retention_days <= 0); no backups pruned")
        return result

    now = now or utils.now()
    cutoff = timedelta(days=retention_days)
    excluded = {Path(p).resolve() for p in exclude}

    entries = scan_backups(backup_root)
    log('INFO', f"Evaluating {len(entries)} backup(s) in {backup_root} against {retention_days} day(s) retention")
    for entry in entries:
        if entry.path.resolve() in excluded:
            result.kept.append(entry.name)
            continue
        backup_time = entry.backup_time
        if backup_time is None:
            log('WARNING', f"Skipping {entry.name}: no manifest timestamp and no timestamp in its name")
            result.skipped.append(entry.name)
            continue
        if now - backup_time <= cutoff:
            result.kept.append(entry.name)
            continue

        size = get_dir_size(entry.path)
        if is_dry_run:
            log('INFO', f"Would delete backup {entry.name} ({format_bytes(size)})")
            result.deleted.append(entry.name)
            result.reclaimed += size
            continue
        try:
            shutil.rmtree(entry.path)
        except OSError as e:
            log('ERROR', f"Failed to delete backup {entry.name}: {e}")
            result.failed.append(entry.name)
            continue
        log('INFO', f"Deleted backup {entry.name} ({format_bytes(size)})")
        result.deleted.append(entry.name)
        result.reclaimed += size

    if result.deleted:
        log('INFO', f"Retention finished: deleted {len(result.deleted)} backup(s), freed {format_bytes(result.reclaimed)}")
    else:
        log('INFO', "Retention finished: no backups needed deletion")
    return result

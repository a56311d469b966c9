"""
Backup orchestrator with phased processing.

Phases:
  0. prepare the timestamped backup directory
  1. stop owning components (only with ``stop_components``)
  2. snapshot every volume on a bounded worker pool
  3. restart the components stopped in phase 1
  4. capture the declared config paths into ``configs.tar.gz``
  5. write ``manifest.json`` once
  6. prune old backups
  7. finalize the run record and notify

Per-volume failures are recorded in the manifest and never abort the run.
"""
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from stackctl import settings
from stackctl import utils
from stackctl.archive import VolumeArchiver, archive_configs
from stackctl.errors import ArchiveError, StackctlError
from stackctl.jobs import Job, unit_result, SUCCEEDED, DEGRADED, FAILED
from stackctl.lock import StackLock
from stackctl.manifest import (
    ArchiveRecord, BackupManifest, ConfigRecord, CONFIGS_ARCHIVE, default_host, write_manifest,
)
from stackctl.notifications import notify_run, build_backup_body
from stackctl.retention import RetentionResult, run_retention
from stackctl.utils import setup_logging, get_logger, format_bytes

setup_logging()
logger = get_logger(__name__)


@dataclass
class BackupResult:
    status: str
    manifest: Optional[BackupManifest] = None
    destination: Optional[Path] = None
    retention: Optional[RetentionResult] = None
    restart_failures: List[str] = field(default_factory=list)
    job_id: object = None
    duration: int = 0
    error: Optional[str] = None

    def to_dict(self):
        return {
            'status': self.status,
            'job_id': self.job_id,
            'backup_path': str(self.destination) if self.destination else None,
            'duration_seconds': self.duration,
            'manifest': self.manifest.to_dict() if self.manifest else None,
            'retention': self.retention.to_dict() if self.retention else None,
            'restart_failures': list(self.restart_failures),
            'error': self.error,
        }


def backup_status(manifest, restart_failures=()):
    """Classify a finished backup as succeeded, degraded or failed."""
    if manifest is None or manifest.path is None:
        return FAILED
    if manifest.overall_success and not restart_failures:
        return SUCCEEDED
    if any(v.success for v in manifest.volumes) or not manifest.volumes:
        return DEGRADED
    return FAILED


def new_backup_dir(destination_root):
    """Create ``<root>/<timestamp>``; a suffix keeps same-second runs apart."""
    root = Path(destination_root)
    root.mkdir(parents=True, exist_ok=True)
    stamp = utils.filename_timestamp()
    candidate = root / stamp
    n = 1
    while True:
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            candidate = root / f"{stamp}_{n}"
            n += 1


class BackupOrchestrator:
    """Captures every volume and the declared configs of a stack."""

    def __init__(self, archiver=None, manager=None, max_workers=None, lock_path=None,
                 notify=True, stop_timeout=None):
        self.archiver = archiver or VolumeArchiver()
        self.manager = manager
        self.max_workers = max_workers
        self.lock_path = lock_path
        self.notify = notify
        self.stop_timeout = stop_timeout
        self.job = None

    def run(self, inventory, destination_dir, retention_days, stop_components=False) -> BackupManifest:
        """Run a backup and return its manifest (None if no manifest could be built)."""
        return self.execute(inventory, destination_dir, retention_days, stop_components).manifest

    def execute(self, inventory, destination_dir, retention_days, stop_components=False,
                triggered_by='manual', job_id=None) -> BackupResult:
        lock = StackLock(self.lock_path, 'backup') if self.lock_path else nullcontext()
        with lock:
            self.job = Job('backup', triggered_by=triggered_by, job_id=job_id)
            self.job.start()
            try:
                return self._execute(inventory, destination_dir, retention_days, stop_components)
            except Exception as e:
                self.job.log('ERROR', f"Backup failed: {e}")
                self.job.finish(FAILED, error=str(e))
                raise

    def _execute(self, inventory, destination_dir, retention_days, stop_components):
        job = self.job
        job.log('INFO', f"Starting backup of {len(inventory.volumes())} volume(s) into {destination_dir}")

        job.phase(0, 'Preparing backup directory')
        try:
            target = new_backup_dir(destination_dir)
        except OSError as e:
            raise ArchiveError(f"Cannot create backup directory under {destination_dir}: {e}")
        job.log('INFO', f"Backup directory: {target}")

        stopped = []
        if stop_components:
            stopped = self._phase_1_stop(inventory)

        records = self._phase_2_snapshot(inventory, target)

        restart_failures = []
        if stop_components:
            restart_failures = self._phase_3_restart(inventory, stopped)

        configs_archive, configs = self._phase_4_configs(inventory, target)

        manifest = self._phase_5_manifest(inventory, target, records, configs_archive, configs)

        retention = self._phase_6_retention(destination_dir, retention_days, target)

        return self._phase_7_finalize(target, manifest, retention, restart_failures)

    def _phase_1_stop(self, inventory):
        job = self.job
        job.phase(1, 'Stopping components that own volumes')
        if self.manager is None:
            job.log('WARNING', "No component manager configured; snapshotting running components")
            return []
        owners = {v.owner for v in inventory.volumes()}
        timeout = self.stop_timeout if self.stop_timeout is not None else settings.get_stop_timeout()
        stopped = []
        for component in inventory.subset_in_order(owners, reverse=True):
            result = self.manager.stop(component, timeout)
            if result.ok:
                job.log('INFO', f"Stopped {component.name}")
            else:
                job.log('ERROR', f"Failed to stop {component.name}: {result.detail}")
            # Restart is attempted even when the stop reported an error
            stopped.append(component.name)
        return stopped

    def _phase_2_snapshot(self, inventory, target):
        job = self.job
        volumes = [v for c in inventory.topological_order() for v in c.volumes]
        workers = self.max_workers or settings.get_archive_workers()
        workers = max(1, min(settings.MAX_ARCHIVE_WORKERS, workers))
        job.phase(2, f"Archiving {len(volumes)} volume(s) with {workers} worker(s)")

        def snapshot(volume):
            try:
                return self.archiver.snapshot(volume, target)
            except ArchiveError as e:
                job.log('ERROR', f"Volume {volume.name} failed: {e}")
                return ArchiveRecord(name=volume.name, success=False, error=str(e))
            except Exception as e:
                logger.exception("Unexpected error archiving %s", volume.name)
                job.log('ERROR', f"Volume {volume.name} failed unexpectedly: {e}")
                return ArchiveRecord(name=volume.name, success=False, error=str(e))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='archive') as pool:
            records = list(pool.map(snapshot, volumes))

        for r in records:
            if r.success:
                job.log('INFO', f"Volume {r.name}: {format_bytes(r.bytes)} sha256={r.checksum[:12]}")
        job.save_units([
            unit_result('volume', r.name, 'success' if r.success else 'failed', r.bytes, r.checksum, r.error)
            for r in records
        ])
        return records

    def _phase_3_restart(self, inventory, stopped):
        job = self.job
        job.phase(3, 'Restarting stopped components')
        failures = []
        for component in inventory.subset_in_order(stopped):
            result = self.manager.start(component)
            if result.ok:
                job.log('INFO', f"Started {component.name}")
            else:
                job.log('ERROR', f"Failed to start {component.name}: {result.detail}")
                failures.append(component.name)
        return failures

    def _phase_4_configs(self, inventory, target):
        job = self.job
        job.phase(4, 'Capturing configuration files')
        if not inventory.config_paths:
            job.log('INFO', "No config paths declared")
            return None, []
        try:
            record, results = archive_configs(inventory.config_paths, inventory.project_dir, target / CONFIGS_ARCHIVE)
        except ArchiveError as e:
            job.log('ERROR', f"Config archive failed: {e}")
            record = ArchiveRecord(name='configs', success=False, error=str(e))
            return record, [ConfigRecord(name=p.path, success=False, error=str(e)) for p in inventory.config_paths]

        configs = []
        for name, size, error in results:
            if error:
                job.log('ERROR', f"Config {name}: {error}")
            configs.append(ConfigRecord(name=name, bytes=size, success=error is None, error=error))
        job.log('INFO', f"Captured {sum(1 for c in configs if c.success)} config path(s) "
                        f"into {CONFIGS_ARCHIVE} ({format_bytes(record.bytes)})")
        job.save_units([
            unit_result('config', c.name, 'success' if c.success else 'failed', c.bytes, None, c.error)
            for c in configs
        ])
        return record, configs

    def _phase_5_manifest(self, inventory, target, records, configs_archive, configs):
        job = self.job
        job.phase(5, 'Writing manifest')
        overall = all(r.success for r in records) and all(c.success for c in configs)
        if configs_archive is not None and not configs_archive.success:
            overall = False
        manifest = BackupManifest(
            timestamp=target.name,
            created_at=utils.now(),
            volumes=records,
            configs=configs,
            configs_archive=configs_archive,
            overall_success=overall,
            host=default_host(),
            docker_version=self.manager.docker_version() if self.manager else None,
        )
        try:
            write_manifest(manifest, target)
        except OSError as e:
            job.log('ERROR', f"Could not write manifest: {e}")
            manifest.overall_success = False
            return manifest
        job.log('INFO', f"Manifest written: {manifest.path}")
        return manifest

    def _phase_6_retention(self, destination_dir, retention_days, target):
        job = self.job
        job.phase(6, 'Applying retention')
        try:
            return run_retention(destination_dir, retention_days, exclude=[target], log_callback=job.log)
        except (OSError, StackctlError) as e:
            job.log('ERROR', f"Retention failed: {e}")
            return None

    def _phase_7_finalize(self, target, manifest, retention, restart_failures):
        job = self.job
        job.phase(7, 'Finalizing')
        status = backup_status(manifest, restart_failures)
        counts = manifest.counts()
        error = None
        if status != SUCCEEDED:
            failed = [v.name for v in manifest.volumes if not v.success]
            failed += [c.name for c in manifest.configs if not c.success]
            failed += [f"restart:{n}" for n in restart_failures]
            if manifest.path is None:
                failed.append('manifest')
            error = 'Failed: ' + ', '.join(failed)

        duration = job.finish(
            status,
            summary={'counts': counts, 'retention': retention.to_dict() if retention else None},
            error=error,
            total_size=manifest.total_bytes(),
            reclaimed=retention.reclaimed if retention else 0,
            backup_path=target,
        )
        result = BackupResult(
            status=status, manifest=manifest, destination=target, retention=retention,
            restart_failures=restart_failures, job_id=job.job_id, duration=duration, error=error,
        )
        level = 'INFO' if status == SUCCEEDED else 'ERROR'
        job.log(level, f"Backup {status}: {counts['volumes_ok']} volume(s) ok, "
                       f"{counts['volumes_failed']} failed in {duration}s")
        if self.notify:
            try:
                notify_run('backup', status, build_backup_body(result), subject=target.name)
            except Exception as e:
                job.log('WARNING', f"Failed to send notification: {e}")
        return result

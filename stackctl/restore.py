"""
Restore orchestrator.

Restores volumes (and optionally configs) from one backup. Only the
components owning restored volumes are stopped, in reverse dependency order,
and restarted in dependency order. A failed volume marks the run degraded but
never aborts it; restart and health verification always run once anything
was stopped. Nothing is rolled back automatically.
"""
import shutil
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from stackctl import settings
from stackctl import utils
from stackctl.archive import VolumeArchiver, extract_archive
from stackctl.errors import ConfigError, RestoreError
from stackctl.health import HealthAggregator
from stackctl.jobs import Job, unit_result, SUCCEEDED, DEGRADED, FAILED, CANCELLED, DRY_RUN
from stackctl.lock import StackLock
from stackctl.manifest import CONFIGS_ARCHIVE, read_manifest
from stackctl.notifications import notify_run, build_restore_body
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

CONFIG_BACKUP_DIR = '.config-backup'


class RestorePhase(str, Enum):
    VALIDATING = 'validating'
    CONFIRMING = 'confirming'
    STOPPING = 'stopping'
    RESTORING = 'restoring'
    STARTING = 'starting'
    VERIFYING = 'verifying'
    DONE = 'done'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class RestoreOptions:
    dry_run: bool = False
    volume_filter: Optional[List[str]] = None
    force: bool = False
    confirm: Optional[Callable[[str], bool]] = None
    restore_volumes: bool = True
    restore_configs: bool = True
    health_deadline: Optional[float] = None
    stop_timeout: Optional[int] = None


@dataclass
class RestoreResult:
    manifest_path: Optional[Path] = None
    status: str = FAILED
    phase: RestorePhase = RestorePhase.VALIDATING
    history: List[RestorePhase] = field(default_factory=list)
    plan: List[str] = field(default_factory=list)
    restore_configs: bool = False
    restored: List[str] = field(default_factory=list)
    non_atomic: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)
    start_failures: List[str] = field(default_factory=list)
    configs_restored: Optional[bool] = None
    config_error: Optional[str] = None
    health: object = None
    job_id: object = None
    duration: int = 0
    error: Optional[str] = None

    def enter(self, phase):
        self.phase = phase
        self.history.append(phase)

    def to_dict(self):
        return {
            'status': self.status,
            'phase': self.phase.value,
            'history': [p.value for p in self.history],
            'manifest': str(self.manifest_path) if self.manifest_path else None,
            'plan': {'volumes': list(self.plan), 'configs': self.restore_configs},
            'restored': list(self.restored),
            'non_atomic': list(self.non_atomic),
            'failed': dict(self.failed),
            'skipped': dict(self.skipped),
            'warnings': list(self.warnings),
            'stopped': list(self.stopped),
            'start_failures': list(self.start_failures),
            'configs_restored': self.configs_restored,
            'config_error': self.config_error,
            'health': self.health.to_dict() if self.health is not None else None,
            'job_id': self.job_id,
            'duration_seconds': self.duration,
            'error': self.error,
        }


class RestoreOrchestrator:
    """Brings volumes and configs back from a backup."""

    def __init__(self, manager, archiver=None, aggregator=None, lock_path=None, notify=True):
        self.manager = manager
        self.archiver = archiver or VolumeArchiver()
        self.aggregator = aggregator or HealthAggregator()
        self.lock_path = lock_path
        self.notify = notify
        self.job = None

    def run(self, inventory, manifest_path, options=None, triggered_by='manual') -> RestoreResult:
        options = options or RestoreOptions()
        lock = StackLock(self.lock_path, 'restore') if self.lock_path and not options.dry_run else nullcontext()
        with lock:
            self.job = Job('restore', is_dry_run=options.dry_run, triggered_by=triggered_by)
            self.job.start()
            result = RestoreResult()
            result.job_id = self.job.job_id
            try:
                self._run(inventory, manifest_path, options, result)
            except ConfigError as e:
                self.job.log('ERROR', f"Restore rejected: {e}")
                self.job.finish(FAILED, error=str(e))
                raise
            except Exception as e:
                self.job.log('ERROR', f"Restore failed: {e}")
                result.enter(RestorePhase.FAILED)
                result.status = FAILED
                result.error = str(e)
                result.duration = self.job.finish(FAILED, summary=result.to_dict(), error=str(e))
                self._notify(result)
                raise
            return result

    def _run(self, inventory, manifest_path, options, result):
        job = self.job
        plan, manifest = self._phase_validate(inventory, manifest_path, options, result)

        if options.dry_run:
            job.log('INFO', "Dry run: no changes made")
            result.status = DRY_RUN
            result.duration = job.finish(DRY_RUN, summary=result.to_dict())
            return

        if not plan and not result.restore_configs:
            result.enter(RestorePhase.FAILED)
            result.status = FAILED
            result.error = 'Nothing to restore'
            job.log('ERROR', result.error)
            result.duration = job.finish(FAILED, summary=result.to_dict(), error=result.error)
            self._notify(result)
            return

        if not self._phase_confirm(options, result):
            result.enter(RestorePhase.CANCELLED)
            result.status = CANCELLED
            job.log('WARNING', "Restore cancelled; nothing was changed")
            result.duration = job.finish(CANCELLED, summary=result.to_dict())
            return

        affected = {volume.owner for volume, _ in plan}
        stop_failed = self._phase_stop(inventory, affected, options, result)
        self._phase_restore(manifest, plan, stop_failed, inventory, result)
        self._phase_start(inventory, result)
        self._phase_verify(inventory, options, result)
        self._finalize(result)

    def _phase_validate(self, inventory, manifest_path, options, result):
        job = self.job
        result.enter(RestorePhase.VALIDATING)
        if not options.restore_volumes and not options.restore_configs:
            raise ConfigError("Nothing selected: both volume and config restore are disabled")

        manifest = read_manifest(manifest_path)
        result.manifest_path = manifest.path
        backup_dir = manifest.path.parent
        job.log('INFO', f"Restoring from {backup_dir} (manifest {manifest.version}, taken {manifest.timestamp})")
        if not manifest.overall_success:
            result.warnings.append("Backup is marked as not fully successful")
            job.log('WARNING', result.warnings[-1])

        names = [v.name for v in manifest.volumes]
        wanted = None
        if options.volume_filter:
            wanted = list(dict.fromkeys(options.volume_filter))
            unknown = [n for n in wanted if n not in names]
            if unknown:
                raise ConfigError(f"Volume(s) not in this backup: {', '.join(unknown)}")
            missing = [n for n in wanted if inventory.volume(n) is None]
            if missing:
                raise ConfigError(f"Volume(s) not in the inventory: {', '.join(missing)}")

        plan = []
        if options.restore_volumes:
            for record in manifest.volumes:
                if wanted is not None and record.name not in wanted:
                    continue
                volume = inventory.volume(record.name)
                if volume is None:
                    self._skip(result, record.name, 'not in inventory')
                    continue
                if not record.success:
                    self._skip(result, record.name, 'archive failed at backup time')
                    continue
                archive = backup_dir / (record.archive or f"{record.name}.tar.gz")
                if not archive.is_file():
                    result.failed[record.name] = f"archive missing: {archive.name}"
                    job.log('ERROR', f"Volume {record.name}: archive {archive} is missing")
                    continue
                plan.append((volume, record))
        result.plan = [v.name for v, _ in plan]

        configs_archive = backup_dir / CONFIGS_ARCHIVE
        result.restore_configs = bool(options.restore_configs and configs_archive.is_file())
        if options.restore_configs and not configs_archive.is_file() and not options.restore_volumes:
            raise ConfigError(f"Backup has no {CONFIGS_ARCHIVE}")
        if options.restore_configs and not configs_archive.is_file():
            result.warnings.append(f"Backup has no {CONFIGS_ARCHIVE}; configs not restored")
            job.log('WARNING', result.warnings[-1])

        owners = sorted({v.owner for v, _ in plan})
        job.log('INFO', f"Plan: restore {len(plan)} volume(s) [{', '.join(result.plan)}]"
                        f"{' and configs' if result.restore_configs else ''}; "
                        f"components affected: {', '.join(owners) or 'none'}")
        return plan, manifest

    def _skip(self, result, name, reason):
        result.skipped[name] = reason
        result.warnings.append(f"Volume {name} skipped: {reason}")
        self.job.log('WARNING', result.warnings[-1])

    def _phase_confirm(self, options, result):
        result.enter(RestorePhase.CONFIRMING)
        if options.force:
            return True
        if options.confirm is None:
            self.job.log('WARNING', "Restore needs confirmation; pass force to run unattended")
            return False
        what = ', '.join(result.plan) or 'no volumes'
        if result.restore_configs:
            what += ' + configs'
        return bool(options.confirm(f"Restore {what} from {result.manifest_path.parent}? Current data will be replaced."))

    def _phase_stop(self, inventory, affected, options, result):
        """Stop affected components; return the names that could not be stopped."""
        job = self.job
        result.enter(RestorePhase.STOPPING)
        timeout = options.stop_timeout if options.stop_timeout is not None else settings.get_stop_timeout()
        not_stopped = set()
        for component in inventory.subset_in_order(affected, reverse=True):
            stop = self.manager.stop(component, timeout)
            if not stop.ok:
                job.log('WARNING', f"Graceful stop of {component.name} failed ({stop.detail}); killing")
                kill = self.manager.kill(component)
                if not kill.ok:
                    job.log('ERROR', f"Could not stop {component.name}: {kill.detail}")
                    not_stopped.add(component.name)
            # Every affected component is started again, stopped or not
            result.stopped.append(component.name)
            if component.name not in not_stopped:
                job.log('INFO', f"Stopped {component.name}")
        return not_stopped

    def _phase_restore(self, manifest, plan, stop_failed, inventory, result):
        job = self.job
        result.enter(RestorePhase.RESTORING)
        backup_dir = manifest.path.parent
        units = []
        for volume, record in plan:
            if volume.owner in stop_failed:
                result.failed[volume.name] = f"owner {volume.owner} could not be stopped"
                job.log('ERROR', f"Volume {volume.name} not restored: {result.failed[volume.name]}")
                units.append(unit_result('volume', volume.name, 'failed', error=result.failed[volume.name]))
                continue
            archive = backup_dir / record.archive
            try:
                atomic = self.archiver.restore(volume, archive, expected_checksum=record.checksum)
            except RestoreError as e:
                result.failed[volume.name] = str(e)
                job.log('ERROR', f"Volume {volume.name} failed: {e}")
                units.append(unit_result('volume', volume.name, 'failed', error=str(e)))
                continue
            except Exception as e:
                logger.exception("Unexpected error restoring %s", volume.name)
                result.failed[volume.name] = str(e)
                job.log('ERROR', f"Volume {volume.name} failed unexpectedly: {e}")
                units.append(unit_result('volume', volume.name, 'failed', error=str(e)))
                continue
            result.restored.append(volume.name)
            job.log('INFO', f"Volume {volume.name} restored")
            if not atomic:
                result.non_atomic.append(volume.name)
                job.log('WARNING', f"Volume {volume.name} was replaced in place, not swapped atomically")
            units.append(unit_result('volume', volume.name, 'success', record.bytes, record.checksum))

        if result.restore_configs:
            self._restore_configs(inventory, backup_dir / CONFIGS_ARCHIVE, result)
            units.append(unit_result('config', CONFIGS_ARCHIVE, 'success' if result.configs_restored else 'failed',
                                     error=result.config_error))
        job.save_units(units)

    def _restore_configs(self, inventory, archive, result):
        job = self.job
        project_dir = Path(inventory.project_dir)
        safety_dir = project_dir / CONFIG_BACKUP_DIR / utils.filename_timestamp()
        try:
            for entry in inventory.config_paths:
                current = project_dir / entry.path
                if not current.exists():
                    continue
                dest = safety_dir / entry.path
                dest.parent.mkdir(parents=True, exist_ok=True)
                if current.is_dir():
                    shutil.copytree(current, dest, symlinks=True)
                else:
                    shutil.copy2(current, dest)
            job.log('INFO', f"Saved current configs to {safety_dir}")
            extract_archive(archive, project_dir)
        except (OSError, shutil.Error, RestoreError) as e:
            result.configs_restored = False
            result.config_error = str(e)
            job.log('ERROR', f"Config restore failed: {e}")
            return
        result.configs_restored = True
        job.log('INFO', "Configs restored")

    def _phase_start(self, inventory, result):
        job = self.job
        result.enter(RestorePhase.STARTING)
        for component in inventory.subset_in_order(result.stopped):
            start = self.manager.start(component)
            if start.ok:
                job.log('INFO', f"Started {component.name}")
            else:
                result.start_failures.append(component.name)
                job.log('ERROR', f"Failed to start {component.name}: {start.detail}")

    def _phase_verify(self, inventory, options, result):
        job = self.job
        result.enter(RestorePhase.VERIFYING)
        deadline = options.health_deadline if options.health_deadline is not None else settings.get_health_deadline()
        report = self.aggregator.wait_until_healthy(inventory, deadline)
        result.health = report
        if report.healthy:
            job.log('INFO', "All components healthy")
        else:
            job.log('WARNING', f"Not healthy after {deadline:.0f}s: {', '.join(report.failing())}")

    def _finalize(self, result):
        job = self.job
        degraded = (result.failed or result.start_failures or result.config_error
                    or (result.health is not None and not result.health.healthy))
        result.status = DEGRADED if degraded else SUCCEEDED
        result.enter(RestorePhase.DONE)
        error = None
        if degraded:
            parts = [f"{n}: {e}" for n, e in result.failed.items()]
            parts += [f"start {n}" for n in result.start_failures]
            if result.config_error:
                parts.append(f"configs: {result.config_error}")
            if result.health is not None and not result.health.healthy:
                parts.append('unhealthy: ' + ', '.join(result.health.failing()))
            error = '; '.join(parts)
        result.duration = job.finish(result.status, summary=result.to_dict(), error=error,
                                     backup_path=result.manifest_path.parent if result.manifest_path else None)
        job.log('INFO' if not degraded else 'WARNING',
                f"Restore {result.status}: {len(result.restored)} restored, {len(result.failed)} failed")
        self._notify(result)

    def _notify(self, result):
        if not self.notify:
            return
        try:
            notify_run('restore', result.status, build_restore_body(result),
                       subject=result.manifest_path.parent.name if result.manifest_path else '')
        except Exception as e:
            self.job.log('WARNING', f"Failed to send notification: {e}")

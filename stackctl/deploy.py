"""
Deploy orchestrator: restart the whole stack with an optional safety backup.

Phases run strictly in order: backup (unless skipped), drain, graceful stop
in reverse dependency order, optional image pull, start in dependency order,
health verification. A failed backup is logged but does not stop the deploy.
The result is SUCCEEDED only when every component stopped, started and
became healthy within the deadline; anything else is DEGRADED and names the
failing components.
"""
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from stackctl import settings
from stackctl.backup import BackupOrchestrator
from stackctl.compose import CommandResult
from stackctl.health import HealthAggregator
from stackctl.jobs import Job, unit_result, SUCCEEDED, DEGRADED, FAILED
from stackctl.lock import StackLock
from stackctl.notifications import notify_run, build_deploy_body
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


class DeployPhase(str, Enum):
    BACKING_UP = 'backing_up'
    DRAINING = 'draining'
    STOPPING = 'stopping'
    PULLING = 'pulling'
    STARTING = 'starting'
    VERIFYING = 'verifying'
    SUCCEEDED = 'succeeded'
    DEGRADED = 'degraded'
    FAILED = 'failed'


@dataclass
class DeployOptions:
    skip_backup: bool = False
    pull_images: bool = False
    drain_seconds: Optional[float] = None
    stop_timeout: Optional[int] = None
    profile: Optional[str] = None
    health_deadline: Optional[float] = None
    backup_dir: Optional[str] = None
    retention_days: Optional[int] = None


@dataclass
class DeployResult:
    status: str = FAILED
    phase: DeployPhase = DeployPhase.BACKING_UP
    history: List[DeployPhase] = field(default_factory=list)
    backup_ran: bool = False
    backup_manifest: object = None
    backup_error: Optional[str] = None
    drain_seconds: float = 0
    stop_results: Dict[str, CommandResult] = field(default_factory=dict)
    start_results: Dict[str, CommandResult] = field(default_factory=dict)
    pulled: Optional[bool] = None
    health: object = None
    failing: List[str] = field(default_factory=list)
    not_running: List[str] = field(default_factory=list)
    job_id: object = None
    duration: int = 0

    def enter(self, phase):
        self.phase = phase
        self.history.append(phase)

    def to_dict(self):
        manifest = self.backup_manifest
        return {
            'status': self.status,
            'phase': self.phase.value,
            'history': [p.value for p in self.history],
            'backup': {
                'ran': self.backup_ran,
                'path': str(manifest.path.parent) if manifest is not None and manifest.path else None,
                'overall_success': manifest.overall_success if manifest is not None else None,
                'error': self.backup_error,
            },
            'drain_seconds': self.drain_seconds,
            'stop': {n: {'ok': r.ok, 'detail': r.detail} for n, r in self.stop_results.items()},
            'start': {n: {'ok': r.ok, 'detail': r.detail} for n, r in self.start_results.items()},
            'pulled': self.pulled,
            'health': self.health.to_dict() if self.health is not None else None,
            'failing': list(self.failing),
            'not_running': list(self.not_running),
            'job_id': self.job_id,
            'duration_seconds': self.duration,
        }


class DeployOrchestrator:
    """Backs up, drains, restarts and verifies a stack."""

    def __init__(self, manager, aggregator=None, backup=None, sleep=time.sleep, lock_path=None, notify=True):
        self.manager = manager
        self.aggregator = aggregator or HealthAggregator()
        self.backup = backup
        self.sleep = sleep
        self.lock_path = lock_path
        self.notify = notify
        self.job = None

    def run(self, inventory, options=None, triggered_by='manual') -> DeployResult:
        options = options or DeployOptions()
        lock = StackLock(self.lock_path, 'deploy') if self.lock_path else nullcontext()
        with lock:
            self.job = Job('deploy', triggered_by=triggered_by)
            self.job.start()
            result = DeployResult(job_id=self.job.job_id)
            try:
                self._run(inventory, options, result)
            except Exception as e:
                self.job.log('ERROR', f"Deploy failed in phase {result.phase.value}: {e}")
                result.enter(DeployPhase.FAILED)
                result.status = FAILED
                result.duration = self.job.finish(FAILED, summary=result.to_dict(), error=str(e))
                self._notify(result)
                raise
            return result

    def _run(self, inventory, options, result):
        if options.profile:
            self.manager.profile = options.profile
        if not options.skip_backup:
            self._phase_backup(inventory, options, result)
        self._phase_drain(options, result)
        self._phase_stop(inventory, options, result)
        if options.pull_images:
            self._phase_pull(inventory, result)
        self._phase_start(inventory, result)
        self._phase_verify(inventory, options, result)
        self._finalize(result)

    def _phase_backup(self, inventory, options, result):
        job = self.job
        result.enter(DeployPhase.BACKING_UP)
        job.log('INFO', "### Backing up before deploy ###")
        backup = self.backup or BackupOrchestrator(manager=self.manager, notify=False)
        destination = options.backup_dir or settings.get_backup_dir()
        retention = options.retention_days if options.retention_days is not None else settings.get_retention_days()
        result.backup_ran = True
        try:
            # Runs under this deploy's lock
            manifest = backup.run(inventory, destination, retention)
        except Exception as e:
            result.backup_error = str(e)
            job.log('WARNING', f"Backup failed (not critical, continuing deploy): {e}")
            return
        result.backup_manifest = manifest
        if manifest is None or manifest.path is None:
            result.backup_error = 'manifest could not be written'
            job.log('WARNING', "Backup produced no manifest (not critical, continuing deploy)")
        elif not manifest.overall_success:
            job.log('WARNING', f"Backup {manifest.path.parent.name} is partial (not critical, continuing deploy)")
        else:
            job.log('INFO', f"Backup {manifest.path.parent.name} complete")

    def _phase_drain(self, options, result):
        result.enter(DeployPhase.DRAINING)
        seconds = options.drain_seconds if options.drain_seconds is not None else settings.get_drain_seconds()
        result.drain_seconds = max(0.0, float(seconds))
        self.job.log('INFO', f"### Draining for {result.drain_seconds:.0f}s ###")
        if result.drain_seconds > 0:
            self.sleep(result.drain_seconds)

    def _phase_stop(self, inventory, options, result):
        job = self.job
        result.enter(DeployPhase.STOPPING)
        timeout = options.stop_timeout if options.stop_timeout is not None else settings.get_stop_timeout()
        job.log('INFO', f"### Stopping {len(inventory.components)} component(s) (timeout {timeout}s) ###")
        for component in inventory.stop_order():
            stop = self.manager.stop(component, timeout)
            if stop.ok:
                job.log('INFO', f"Stopped {component.name}")
                result.stop_results[component.name] = stop
                continue
            job.log('WARNING', f"Graceful stop of {component.name} failed ({stop.detail}); killing")
            kill = self.manager.kill(component)
            if kill.ok:
                result.stop_results[component.name] = CommandResult(True, f"killed after failed stop: {stop.detail}")
            else:
                job.log('ERROR', f"Could not stop {component.name}: {kill.detail}")
                result.stop_results[component.name] = CommandResult(False, kill.detail)

    def _phase_pull(self, inventory, result):
        result.enter(DeployPhase.PULLING)
        self.job.log('INFO', "### Pulling images ###")
        pull = self.manager.pull(inventory.components)
        result.pulled = pull.ok
        if not pull.ok:
            self.job.log('ERROR', f"Image pull failed, starting with local images: {pull.detail}")

    def _phase_start(self, inventory, result):
        job = self.job
        result.enter(DeployPhase.STARTING)
        job.log('INFO', "### Starting components ###")
        for component in inventory.topological_order():
            start = self.manager.start(component)
            result.start_results[component.name] = start
            if start.ok:
                job.log('INFO', f"Started {component.name}")
            elif component.optional:
                result.not_running.append(component.name)
                job.log('WARNING', f"Optional component {component.name} not started: {start.detail}")
            else:
                job.log('ERROR', f"Failed to start {component.name}: {start.detail}")

    def _phase_verify(self, inventory, options, result):
        job = self.job
        result.enter(DeployPhase.VERIFYING)
        deadline = options.health_deadline if options.health_deadline is not None else settings.get_health_deadline()
        job.log('INFO', f"### Verifying health (deadline {deadline:.0f}s) ###")
        result.health = self.aggregator.wait_until_healthy(inventory, deadline)
        if result.health.healthy:
            job.log('INFO', "All components healthy")
        else:
            job.log('WARNING', f"Not healthy: {', '.join(result.health.failing())}")

    def _finalize(self, result):
        job = self.job
        failing = []
        for name, r in result.stop_results.items():
            if not r.ok:
                failing.append(name)
        for name, r in result.start_results.items():
            if not r.ok and name not in failing and name not in result.not_running:
                failing.append(name)
        if result.health is not None:
            for name in result.health.failing():
                if name not in failing:
                    failing.append(name)
            for name in result.health.not_running():
                if name not in result.not_running:
                    result.not_running.append(name)
        if result.pulled is False:
            failing.append('image-pull')
        result.failing = failing

        if failing:
            result.status = DEGRADED
            result.enter(DeployPhase.DEGRADED)
            job.log('WARNING', f"Deploy degraded: {', '.join(failing)}")
        else:
            result.status = SUCCEEDED
            result.enter(DeployPhase.SUCCEEDED)
            job.log('INFO', "Deploy succeeded")

        units = []
        for n in result.start_results:
            if n in failing:
                state = 'failed'
            elif n in result.not_running:
                state = 'skipped'
            else:
                state = 'success'
            units.append(unit_result('component', n, state))
        job.save_units(units)
        result.duration = job.finish(result.status, summary=result.to_dict(),
                                     error=', '.join(failing) if failing else None)
        self._notify(result)

    def _notify(self, result):
        if not self.notify:
            return
        try:
            notify_run('deploy', result.status, build_deploy_body(result))
        except Exception as e:
            self.job.log('WARNING', f"Failed to send notification: {e}")

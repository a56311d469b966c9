"""
Component manager: lifecycle hooks for components via Docker Compose.

Every call shells out to ``docker compose`` (or the legacy ``docker-compose``
binary) in the project directory with an explicit timeout and reports a
`CommandResult` instead of raising.
"""
import shutil
import subprocess
from dataclasses import dataclass

from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120
PULL_TIMEOUT = 900
# Extra seconds granted to `docker compose stop` beyond the container stop timeout
STOP_GRACE = 15


@dataclass
class CommandResult:
    ok: bool
    detail: str = ''

    def __bool__(self):
        return self.ok


def detect_compose_command():
    """Return the compose command prefix available on this host."""
    if shutil.which('docker'):
        return ['docker', 'compose']
    if shutil.which('docker-compose'):
        return ['docker-compose']
    return ['docker', 'compose']


class ComposeManager:
    """Stops, starts and pulls components of one compose project."""

    def __init__(self, project_dir, compose_files=(), project_name=None, profile=None,
                 command=None, runner=subprocess.run):
        self.project_dir = str(project_dir)
        self.compose_files = list(compose_files or [])
        self.project_name = project_name
        self.profile = profile
        self.command = list(command) if command else detect_compose_command()
        self.runner = runner

    @classmethod
    def for_inventory(cls, inventory, profile=None, **kwargs):
        return cls(inventory.project_dir, inventory.compose_files, inventory.project_name, profile=profile, **kwargs)

    def _base(self):
        cmd = list(self.command)
        if self.project_name:
            cmd += ['-p', self.project_name]
        for f in self.compose_files:
            cmd += ['-f', f]
        if self.profile:
            cmd += ['--profile', self.profile]
        return cmd

    def _run(self, args, timeout=DEFAULT_COMMAND_TIMEOUT, action=''):
        cmd = self._base() + list(args)
        logger.debug("Running: %s (cwd=%s)", ' '.join(cmd), self.project_dir)
        try:
            result = self.runner(cmd, cwd=self.project_dir, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(False, f"{action or args[0]} timed out after {timeout}s")
        except OSError as e:
            return CommandResult(False, f"could not run {cmd[0]}: {e}")
        if result.returncode == 0:
            return CommandResult(True, (result.stdout or '').strip())
        output = (result.stderr or result.stdout or '').strip()
        return CommandResult(False, f"exit {result.returncode}: {output[-500:]}")

    def stop(self, component, timeout):
        """Graceful stop; the container gets `timeout` seconds before SIGKILL."""
        timeout = int(timeout)
        return self._run(['stop', '--timeout', str(timeout), component.service],
                         timeout=timeout + STOP_GRACE, action=f"stop {component.name}")

    def kill(self, component):
        return self._run(['kill', component.service], action=f"kill {component.name}")

    def start(self, component):
        # Dependencies are started explicitly in topological order
        return self._run(['up', '-d', '--no-deps', component.service], action=f"start {component.name}")

    def pull(self, components):
        services = [c.service for c in components]
        return self._run(['pull'] + services, timeout=PULL_TIMEOUT, action='pull')

    def ps(self):
        """Return the compose project's `ps` output (empty string on failure)."""
        result = self._run(['ps'], action='ps')
        if not result.ok:
            logger.warning("docker compose ps failed: %s", result.detail)
            return ''
        return result.detail

    def docker_version(self):
        try:
            result = self.runner(['docker', 'version', '--format', '{{.Server.Version}}'],
                                 capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return None
        return result.stdout.strip() if result.returncode == 0 else None

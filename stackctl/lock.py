"""
Stack lock: at most one backup, restore or deploy run per stack at a time.

The lock is a PID file. It is written to a private temporary file first and
then hard-linked into place, so the lock file never exists without a PID in
it. A lock left behind by a process that no longer exists is reclaimed; an
empty or unreadable lock is only reclaimed once it is older than
``EMPTY_LOCK_GRACE`` seconds.
"""
import os
import time
from pathlib import Path

from stackctl.errors import LockConflictError
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

EMPTY_LOCK_GRACE = 10


def _pid_alive(pid):
    try:
        # Signal 0 only checks whether the process exists
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_holder(path):
    """Return the PID recorded in the lock file, or None if absent/invalid."""
    try:
        with open(path, 'r') as fh:
            content = fh.read().strip()
    except OSError:
        return None
    try:
        return int(content) if content else None
    except ValueError:
        return None


def _lock_age(path):
    try:
        return time.time() - os.stat(path).st_mtime
    except OSError:
        return None


class StackLock:
    """Exclusive PID lock file, usable as a context manager."""

    def __init__(self, path, operation='run'):
        self.path = Path(path)
        self.operation = operation
        self.held = False

    def _try_create(self):
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        with open(tmp, 'w') as fh:
            fh.write(f"{os.getpid()}\n")
            fh.flush()
            os.fsync(fh.fileno())
        try:
            os.link(str(tmp), str(self.path))
        except FileExistsError:
            return False
        finally:
            try:
                os.remove(tmp)
            except OSError:
                pass
        return True

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            self.held = True
            logger.debug("Acquired stack lock %s for %s", self.path, self.operation)
            return self

        holder = read_holder(self.path)
        if holder is not None and _pid_alive(holder):
            raise LockConflictError(
                f"Another stackctl run (pid {holder}) holds the lock {self.path}", holder_pid=holder
            )
        if holder is None:
            age = _lock_age(self.path)
            if age is not None and age < EMPTY_LOCK_GRACE:
                raise LockConflictError(f"Stack lock {self.path} is being created by another run")

        # Stale or unreadable lock: remove and claim it
        logger.warning("Reclaiming stale stack lock %s (pid %s)", self.path, holder)
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        if not self._try_create():
            raise LockConflictError(f"Lost the race for the stack lock {self.path}", holder_pid=read_holder(self.path))
        self.held = True
        return self

    def release(self):
        if not self.held:
            return
        self.held = False
        try:
            if read_holder(self.path) == os.getpid():
                os.remove(self.path)
        except OSError as e:
            logger.warning("Could not remove stack lock %s: %s", self.path, e)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

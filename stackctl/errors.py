"""
Exception types raised by the controller.

Only global preconditions abort a run (`ConfigError`, `LockConflictError`).
`ArchiveError` and `RestoreError` are raised per volume and collected by the
orchestrators into their results.
"""


class StackctlError(Exception):
    """Base class for controller errors."""


class ConfigError(StackctlError):
    """Invalid inventory, manifest or option; raised before any state change."""


class ArchiveError(StackctlError):
    """A volume or config snapshot could not be written."""

    def __init__(self, message, partial_path=None):
        super().__init__(message)
        self.partial_path = partial_path


class RestoreError(StackctlError):
    """A volume could not be restored from its archive."""


class LockConflictError(StackctlError):
    """Another orchestrator run holds the stack lock."""

    def __init__(self, message, holder_pid=None):
        super().__init__(message)
        self.holder_pid = holder_pid

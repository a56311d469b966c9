"""Run notifications delivered through Apprise.

Re-exports the public helpers so callers can use
``from stackctl.notifications import notify_run``.
"""

from .helpers import get_subject_with_tag, should_notify, notify_event_for_status, get_apprise_urls
from .formatters import build_title, build_backup_body, build_restore_body, build_deploy_body
from .handlers import get_apprise_instance, notify_run

__all__ = [
    name for name in dir() if not name.startswith('_')
]

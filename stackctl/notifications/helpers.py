"""Small helper utilities used by the notification subsystem.

Pure helpers for subject tags, enablement checks and URL parsing, kept apart
so they are easy to test.
"""
from typing import List

from stackctl.settings import get_setting
from stackctl.utils import get_logger

logger = get_logger(__name__)

# Which runs notify when nothing is configured
DEFAULT_NOTIFY = {
    'success': 'false',
    'degraded': 'true',
    'failure': 'true',
}

_STATUS_EVENTS = {
    'succeeded': 'success',
    'degraded': 'degraded',
    'failed': 'failure',
}


def get_subject_with_tag(subject: str) -> str:
    """Prefix the notification subject with an optional tag from settings.

    E.g., if setting notification_subject_tag is "[prod]", then
    get_subject_with_tag('Hello') -> '[prod] Hello'
    """
    tag = get_setting('notification_subject_tag', '').strip()
    if tag:
        return f"{tag} {subject}"
    return subject


def notify_event_for_status(status: str):
    """Map a run status to its notification event (None: never notified)."""
    return _STATUS_EVENTS.get(status)


def should_notify(event_type: str) -> bool:
    """Return whether notifications are enabled for the event type.

    The setting keys are `notify_on_<event_type>`, stored as 'true'/'false'.
    """
    if not event_type:
        return False
    value = get_setting(f"notify_on_{event_type}", DEFAULT_NOTIFY.get(event_type, 'false'))
    return str(value).strip().lower() == 'true'


def get_apprise_urls() -> List[str]:
    """Apprise URLs from the `apprise_urls` setting (newline or comma separated)."""
    raw = get_setting('apprise_urls', '') or ''
    urls = []
    for line in raw.replace(',', '\n').splitlines():
        line = line.strip()
        if line and not line.startswith('#'):
            urls.append(line)
    return urls

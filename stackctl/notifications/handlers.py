"""
Notification delivery via Apprise.
"""
import time

import apprise

from stackctl.notifications.formatters import build_title
from stackctl.notifications.helpers import (
    get_apprise_urls, get_subject_with_tag, should_notify, notify_event_for_status,
)
from stackctl.utils import get_logger

logger = get_logger(__name__)

RETRY_DELAY = 1


def get_apprise_instance(urls=None):
    """Create an Apprise instance with the configured URLs (None when there are none)."""
    urls = get_apprise_urls() if urls is None else urls
    if not urls:
        return None
    apobj = apprise.Apprise()
    added = 0
    for url in urls:
        if apobj.add(url):
            added += 1
        else:
            logger.warning("Apprise: failed to add URL %s", url.split('://', 1)[0] + '://...')
    if added == 0:
        logger.warning("Apprise: none of the configured URLs could be added")
        return None
    return apobj


def _apprise_notify(apobj, title, body, context=''):
    """Notify once and retry once; returns True on success."""
    for attempt in (1, 2):
        try:
            if apobj.notify(title=title, body=body, body_format=apprise.NotifyFormat.TEXT):
                logger.info("Apprise: notification sent (%s)", context)
                return True
        except Exception as e:
            logger.exception("Apprise: exception during notify (%s): %s", context, e)
        if attempt == 1:
            time.sleep(RETRY_DELAY)
    logger.error("Apprise: notification failed after retry (%s)", context)
    return False


def notify_run(job_type, status, body, subject=''):
    """Send a run summary when notifications are enabled for its status.

    Returns True when a notification was delivered.
    """
    event = notify_event_for_status(status)
    if not should_notify(event):
        logger.debug("Notifications disabled for %s %s", job_type, status)
        return False
    apobj = get_apprise_instance()
    if apobj is None:
        logger.debug("No Apprise URLs configured; skipping %s notification", job_type)
        return False
    title = get_subject_with_tag(build_title(job_type, status, subject))
    return _apprise_notify(apobj, title, body, context=f"{job_type}:{status}")

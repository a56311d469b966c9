"""Live run events: in-process listener queues plus optional Redis pub/sub.

Listeners registered with `register_event_listener` receive JSON strings for
one job id. When REDIS_URL is set and reachable, events are also published on
``stackctl-events:<job_id>`` (and global summaries on ``stackctl-events``) so
other processes can follow a run. Delivery is best-effort everywhere.
"""
from collections import defaultdict
import json
import os
import queue
import threading
import logging

import redis

from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

GLOBAL_CHANNEL = 'stackctl-events'

_listeners = defaultdict(list)  # job_id -> list of Queue
_lock = threading.Lock()

_redis_client = None
_redis_checked = False


def job_channel(job_id):
    return f"{GLOBAL_CHANNEL}:{job_id}"


def _get_redis():
    """Return a connected Redis client or None (connection attempted once)."""
    global _redis_client, _redis_checked
    if _redis_checked:
        return _redis_client
    with _lock:
        if _redis_checked:
            return _redis_client
        _redis_checked = True
        url = os.environ.get('REDIS_URL')
        if not url:
            return None
        try:
            client = redis.from_url(url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("[Events] Redis at REDIS_URL is not reachable, events stay in-process: %s", e)
            _redis_client = None
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("[Events] redis enabled=%s", _redis_client is not None)
    return _redis_client


def reset():
    """Forget listeners and the Redis connection (used by tests)."""
    global _redis_client, _redis_checked
    with _lock:
        _listeners.clear()
        _redis_client = None
        _redis_checked = False


def register_event_listener(job_id):
    q = queue.Queue()
    with _lock:
        _listeners[job_id].append(q)
    return q


def unregister_event_listener(job_id, q):
    with _lock:
        lst = _listeners.get(job_id)
        if not lst:
            return
        try:
            lst.remove(q)
        except ValueError:
            return
        if not lst:
            del _listeners[job_id]


def _publish(channel, data):
    client = _get_redis()
    if client is None:
        return
    try:
        client.publish(channel, data)
    except redis.RedisError as e:
        logger.debug("[Events] publish to %s failed: %s", channel, e)


def send_event(job_id, event_type, payload):
    """Send a JSON event to every listener of `job_id` and to Redis."""
    data = json.dumps({'type': event_type, 'data': payload}, default=str)

    with _lock:
        queues = list(_listeners.get(job_id, []))
    for q in queues:
        try:
            q.put_nowait(data)
        except queue.Full:
            pass

    _publish(job_channel(job_id), data)


def send_global_event(event_type, payload):
    """Publish a run summary on the global channel (no-op without Redis)."""
    data = json.dumps({'type': event_type, 'data': payload}, default=str)
    _publish(GLOBAL_CHANNEL, data)

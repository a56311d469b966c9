"""
JSON API blueprint: stack health, backup listing, backup trigger and live
run events.
"""
import json
import queue
import threading
from functools import wraps

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from stackctl import settings
from stackctl.backup import BackupOrchestrator
from stackctl.compose import ComposeManager
from stackctl.errors import ConfigError, LockConflictError
from stackctl.events import register_event_listener, unregister_event_listener
from stackctl.inventory import load_inventory
from stackctl.jobs import create_job_record
from stackctl.lock import StackLock
from stackctl.manifest import scan_backups
from stackctl.utils import get_logger

logger = get_logger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')

KEEPALIVE_SECONDS = 15


def api_auth_required(f):
    """Require `Authorization: Bearer <STACKCTL_API_TOKEN>` when a token is configured."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = settings.get_api_token()
        if not token:
            return f(*args, **kwargs)
        auth_header = request.headers.get('Authorization', '')
        if auth_header.startswith('Bearer ') and auth_header[7:] == token:
            return f(*args, **kwargs)
        return jsonify({'error': 'Invalid or missing API token'}), 401
    return decorated_function


def _inventory():
    return load_inventory(current_app.config.get('STACKCTL_INVENTORY') or settings.get_inventory_path())


@bp.errorhandler(ConfigError)
def handle_config_error(e):
    return jsonify({'error': str(e)}), 500


@bp.route('/stack/health')
@api_auth_required
def stack_health():
    aggregator = current_app.config['STACKCTL_AGGREGATOR_FACTORY']()
    report = aggregator.check(_inventory())
    return jsonify(report.to_dict()), 200 if report.healthy else 503


@bp.route('/backups', methods=['GET'])
@api_auth_required
def list_backups():
    entries = scan_backups(settings.get_backup_dir())
    return jsonify({'backups': [e.to_dict() for e in entries]})


@bp.route('/backups', methods=['POST'])
@api_auth_required
def start_backup():
    """Start a backup in a background thread; 409 while another run holds the lock."""
    inventory = _inventory()
    payload = request.get_json(silent=True) or {}
    stop_components = bool(payload.get('stop', False))

    lock = StackLock(settings.get_lock_path(inventory.project_dir), 'backup')
    try:
        lock.acquire()
    except LockConflictError as e:
        return jsonify({'error': str(e), 'holder_pid': e.holder_pid}), 409

    def run():
        try:
            orchestrator.execute(
                inventory, settings.get_backup_dir(), settings.get_retention_days(),
                stop_components=stop_components, triggered_by='api', job_id=job_id,
            )
        except Exception:
            logger.exception("Background backup failed")
        finally:
            lock.release()

    try:
        job_id = create_job_record('backup', triggered_by='api')
        orchestrator = current_app.config['STACKCTL_BACKUP_FACTORY'](inventory)
        threading.Thread(target=run, name='api-backup', daemon=True).start()
    except Exception:
        lock.release()
        raise
    return jsonify({'status': 'started', 'job_id': job_id}), 202


@bp.route('/jobs/<job_id>/events')
@api_auth_required
def job_events(job_id):
    """Server-sent events for one run: {"type": "log" | "status" | "metrics", "data": ...}."""
    key = int(job_id) if job_id.isdigit() else job_id

    def gen():
        q = register_event_listener(key)
        try:
            yield 'data: ' + json.dumps({'type': 'connected', 'data': {}}) + '\n\n'
            while True:
                try:
                    msg = q.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ': keepalive\n\n'
                    continue
                yield f"data: {msg}\n\n"
        finally:
            unregister_event_listener(key, q)

    return Response(stream_with_context(gen()), mimetype='text/event-stream')


def default_backup_factory(inventory):
    # The API thread holds the lock itself, so the orchestrator must not take it again
    return BackupOrchestrator(manager=ComposeManager.for_inventory(inventory))

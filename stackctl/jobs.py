"""
Run bookkeeping shared by the backup, restore and deploy orchestrators.

A `Job` owns the run's log buffer. Every log line is emitted to the logger,
published as a live event and, when a database is configured, appended to the
``jobs`` row so other processes can follow the run. Database and event errors
never interrupt a run.
"""
import json
import uuid

import psycopg2

from stackctl import db
from stackctl import utils
from stackctl.events import send_event, send_global_event
from stackctl.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

# Final statuses shared by every orchestrator result
SUCCEEDED = 'succeeded'
DEGRADED = 'degraded'
FAILED = 'failed'
CANCELLED = 'cancelled'
DRY_RUN = 'dry-run'

DB_ERRORS = (psycopg2.Error, RuntimeError)


def unit_result(kind, name, status, size_bytes=0, checksum=None, error=None):
    """One unit of work (volume, config or component) for the run record."""
    return {
        'unit_kind': kind,
        'unit_name': name,
        'status': status,
        'size_bytes': int(size_bytes or 0),
        'checksum': checksum,
        'error': error,
    }


class Job:
    """A single orchestrator run with its log and persisted record."""

    def __init__(self, job_type, is_dry_run=False, triggered_by='manual', job_id=None):
        self.job_type = job_type
        self.is_dry_run = is_dry_run
        self.triggered_by = triggered_by
        self.job_id = job_id
        self.persisted = False
        self.log_buffer = []
        self.start_time = None

    def start(self):
        """Create the job record (DB when configured) and return the job id."""
        self.start_time = utils.now()
        if self.job_id is None:
            self.job_id = create_job_record(self.job_type, self.start_time, self.is_dry_run, self.triggered_by)
            self.persisted = self.job_id is not None
        else:
            # Record created up front by the caller (e.g. the API)
            self.persisted = db.is_enabled() and isinstance(self.job_id, int)
        if self.job_id is None:
            self.job_id = f"{self.job_type}-{uuid.uuid4().hex[:12]}"
        send_global_event('job', {
            'id': self.job_id,
            'job_type': self.job_type,
            'status': 'running',
            'start_time': self.start_time,
            'is_dry_run': self.is_dry_run,
        })
        return self.job_id

    def log(self, level, message):
        """Add a timestamped log line to the buffer, logger, live events and DB."""
        timestamp = utils.local_now().strftime('%Y-%m-%d %H:%M:%S')
        prefix = "[DRY RUN] " if self.is_dry_run else ""
        log_line = f"[{timestamp}] [{level}] {prefix}{message}"
        self.log_buffer.append(log_line)
        logger.log(utils.logging_level(level), "%s%s", prefix, message)

        if self.job_id is not None:
            send_event(self.job_id, 'log', {'line': log_line})

        if self.persisted:
            try:
                with db.get_db() as conn:
                    cur = conn.cursor()
                    cur.execute("UPDATE jobs SET log = log || %s WHERE id = %s;", (log_line + "\n", self.job_id))
            except DB_ERRORS:
                # History is best-effort; the line is already in the buffer
                pass

    def phase(self, number, title):
        self.log('INFO', f"### Phase {number}: {title} ###")

    def save_units(self, units):
        """Persist per-unit results and emit them as a metrics event."""
        if self.job_id is not None:
            send_event(self.job_id, 'metrics', units)
        if not self.persisted or not units:
            return
        try:
            with db.get_db() as conn:
                cur = conn.cursor()
                for u in units:
                    cur.execute("""
                        INSERT INTO job_unit_results (job_id, unit_kind, unit_name, status, size_bytes, checksum, error)
                        VALUES (%s, %s, %s, %s, %s, %s, %s);
                    """, (self.job_id, u['unit_kind'], u['unit_name'], u['status'],
                          u['size_bytes'], u['checksum'], u['error']))
        except DB_ERRORS as e:
            logger.warning("Could not save unit results for job %s: %s", self.job_id, e)

    def finish(self, status, summary=None, error=None, total_size=0, reclaimed=0, backup_path=None):
        """Record the final status, duration and summary of the run."""
        end_time = utils.now()
        duration = int((end_time - self.start_time).total_seconds()) if self.start_time else 0
        job_meta = {
            'id': self.job_id,
            'job_type': self.job_type,
            'status': status,
            'end_time': end_time,
            'duration_seconds': duration,
            'total_size_bytes': total_size,
            'reclaimed_bytes': reclaimed,
        }
        if self.job_id is not None:
            send_event(self.job_id, 'status', job_meta)
        send_global_event('job', job_meta)

        if not self.persisted:
            return duration
        log_text = '\n'.join(self.log_buffer)
        if log_text and not log_text.endswith('\n'):
            log_text += '\n'
        try:
            with db.get_db() as conn:
                cur = conn.cursor()
                cur.execute("""
                    UPDATE jobs SET
                        status = %s,
                        end_time = %s,
                        duration_seconds = %s,
                        total_size_bytes = %s,
                        reclaimed_bytes = %s,
                        backup_path = %s,
                        summary = %s,
                        error = %s,
                        log = %s
                    WHERE id = %s;
                """, (status, end_time, duration, total_size, reclaimed,
                      str(backup_path) if backup_path else None,
                      json.dumps(summary, default=str) if summary is not None else None,
                      error, log_text, self.job_id))
        except DB_ERRORS as e:
            logger.warning("Could not update job %s: %s", self.job_id, e)
        return duration


def recent_jobs(limit=10):
    """Return the latest job rows (empty without a database)."""
    if not db.is_enabled():
        return []
    try:
        with db.get_db() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT id, job_type, status, start_time, end_time, duration_seconds,
                       is_dry_run, triggered_by, backup_path, total_size_bytes, error
                FROM jobs ORDER BY start_time DESC LIMIT %s;
            """, (limit,))
            return [dict(r) for r in cur.fetchall()]
    except DB_ERRORS as e:
        logger.warning("Could not read job history: %s", e)
        return []


def create_job_record(job_type, start_time=None, is_dry_run=False, triggered_by='manual'):
    """Insert a running job row and return its id (None without a database)."""
    if not db.is_enabled():
        return None
    try:
        with db.get_db() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO jobs (job_type, status, start_time, is_dry_run, triggered_by, log)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id;
            """, (job_type, 'running', start_time or utils.now(), is_dry_run, triggered_by, ''))
            return cur.fetchone()['id']
    except DB_ERRORS as e:
        logger.warning("Could not create job record, continuing without history: %s", e)
        return None

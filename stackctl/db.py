"""
Database schema and connection management for run history.

The database is optional: when DATABASE_URL is not set, run records are
log-only and settings come from the environment alone.
"""
import os
import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from stackctl.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)


def get_db_url():
    """Get database URL from environment (None when history is disabled)."""
    return os.environ.get('DATABASE_URL') or None


def is_enabled():
    """Return True when a database is configured."""
    return bool(get_db_url())


@contextmanager
def get_db():
    """Context manager for database connections."""
    url = get_db_url()
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    conn = psycopg2.connect(url, cursor_factory=RealDictCursor, connect_timeout=5)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize database schema."""
    with get_db() as conn:
        cur = conn.cursor()

        # Key/value settings (overridden by STACKCTL_<KEY> environment variables)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key VARCHAR(255) PRIMARY KEY,
                value TEXT
            );
        """)

        # Jobs table (backup, restore and deploy runs)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id SERIAL PRIMARY KEY,
                job_type VARCHAR(50) NOT NULL,
                status VARCHAR(50) DEFAULT 'running',
                start_time TIMESTAMPTZ NOT NULL,
                end_time TIMESTAMPTZ,
                duration_seconds INTEGER,
                is_dry_run BOOLEAN DEFAULT false,
                triggered_by VARCHAR(50) DEFAULT 'manual',
                backup_path TEXT,
                total_size_bytes BIGINT DEFAULT 0,
                reclaimed_bytes BIGINT DEFAULT 0,
                summary JSONB,
                error TEXT,
                log TEXT DEFAULT ''
            );
        """)

        # Per-unit results (one row per volume, config or component)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS job_unit_results (
                id SERIAL PRIMARY KEY,
                job_id INTEGER REFERENCES jobs(id) ON DELETE CASCADE,
                unit_kind VARCHAR(20) NOT NULL,
                unit_name VARCHAR(255) NOT NULL,
                status VARCHAR(50) NOT NULL,
                size_bytes BIGINT DEFAULT 0,
                checksum VARCHAR(64),
                error TEXT
            );
        """)

        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_start_time ON jobs(start_time DESC);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_unit_results_job ON job_unit_results(job_id);")
        conn.commit()
    logger.info("Database schema initialized")

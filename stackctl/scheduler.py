"""
Scheduler for automatic backups while `stackctl serve` runs.
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from stackctl import settings
from stackctl.backup import BackupOrchestrator
from stackctl.compose import ComposeManager
from stackctl.errors import ConfigError, LockConflictError, StackctlError
from stackctl.inventory import load_inventory
from stackctl.utils import setup_logging, get_logger, get_display_timezone, to_iso_z

setup_logging()
logger = get_logger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'
MISFIRE_GRACE = 300

scheduler = None


def parse_cron(expression):
    """Build a CronTrigger from a 5-field cron expression; raise ConfigError when invalid."""
    parts = (expression or '').split()
    if len(parts) != 5:
        raise ConfigError(f"Invalid cron expression '{expression}' (need 5 fields)")
    try:
        return CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
            timezone=get_display_timezone(),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid cron expression '{expression}': {e}")


def run_scheduled_backup(inventory_path=None):
    """Scheduled job: one backup under the stack lock; a held lock skips this run."""
    try:
        inventory = load_inventory(inventory_path or settings.get_inventory_path())
        orchestrator = BackupOrchestrator(
            manager=ComposeManager.for_inventory(inventory),
            lock_path=settings.get_lock_path(inventory.project_dir),
        )
        result = orchestrator.execute(
            inventory, settings.get_backup_dir(), settings.get_retention_days(), triggered_by='schedule',
        )
        logger.info("[Scheduler] Scheduled backup finished: %s (%s)", result.status, result.destination)
    except LockConflictError as e:
        logger.warning("[Scheduler] Skipping scheduled backup: %s", e)
    except StackctlError as e:
        logger.error("[Scheduler] Scheduled backup failed: %s", e)


def init_scheduler(inventory_path=None):
    """Start the background scheduler when a backup cron is configured."""
    global scheduler

    if scheduler is not None:
        return scheduler

    cron = settings.get_backup_cron()
    if not cron:
        logger.info("[Scheduler] STACKCTL_BACKUP_CRON not set; scheduled backups disabled")
        return None

    trigger = parse_cron(cron)
    scheduler = BackgroundScheduler(timezone=get_display_timezone(), daemon=True)
    scheduler.add_job(
        run_scheduled_backup,
        trigger,
        kwargs={'inventory_path': inventory_path},
        id=BACKUP_JOB_ID,
        name='Scheduled backup',
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=MISFIRE_GRACE,
    )
    scheduler.start()
    logger.info("[Scheduler] Scheduled backups with cron: %s (next run %s)", cron, get_next_run_time())
    return scheduler


def get_next_run_time():
    """ISO timestamp of the next scheduled backup, or None."""
    if scheduler is None:
        return None
    job = scheduler.get_job(BACKUP_JOB_ID)
    if job is None or job.next_run_time is None:
        return None
    return to_iso_z(job.next_run_time)


def shutdown_scheduler():
    global scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None

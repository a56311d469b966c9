"""Command line interface.

Usage:
  stackctl [--inventory PATH] [--json] backup [--dir PATH] [--retention-days N] [--stop]
  stackctl restore <backup-path>|latest [--dir PATH] [--dry-run] [--volume NAME]... [--force]
  stackctl deploy [--quick] [--pull] [--profile NAME]
  stackctl health [--wait SECONDS]
  stackctl status | backups | serve | init-db

Exit codes: 0 succeeded (or dry run), 1 degraded, 2 failed, 3 configuration
error, 4 another run holds the stack lock, 5 cancelled.
"""
import argparse
import json
import os
import sys

from stackctl import __version__
from stackctl import db
from stackctl import settings
from stackctl.archive import VolumeArchiver
from stackctl.backup import BackupOrchestrator
from stackctl.compose import ComposeManager
from stackctl.deploy import DeployOptions, DeployOrchestrator
from stackctl.errors import ConfigError, LockConflictError, StackctlError
from stackctl.health import HealthAggregator
from stackctl.inventory import load_inventory
from stackctl.jobs import recent_jobs
from stackctl.manifest import latest_backup, scan_backups
from stackctl.restore import RestoreOptions, RestoreOrchestrator
from stackctl.utils import setup_logging, get_logger, format_bytes, format_duration, get_disk_usage, to_iso_z

setup_logging()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_FAILED = 2
EXIT_CONFIG = 3
EXIT_LOCKED = 4
EXIT_CANCELLED = 5

LATEST = 'latest'

STATUS_EXIT = {
    'succeeded': EXIT_OK,
    'dry-run': EXIT_OK,
    'degraded': EXIT_DEGRADED,
    'failed': EXIT_FAILED,
    'cancelled': EXIT_CANCELLED,
}


def parse_args(argv):
    parser = argparse.ArgumentParser(prog='stackctl', description='Backup, restore and deploy a compose stack.')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--inventory', help='Inventory file (default: STACKCTL_INVENTORY or ./stackctl.yml)')
    parser.add_argument('--json', action='store_true', help='Print one JSON document instead of a summary')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('backup', help='Snapshot every volume and the declared configs')
    p.add_argument('--dir', help='Backup root directory')
    p.add_argument('--retention-days', type=int, help='Delete backups older than N days (0 disables)')
    p.add_argument('--stop', action='store_true', help='Stop owning components while archiving')

    p = sub.add_parser('restore', help='Restore volumes and configs from a backup')
    p.add_argument('backup_path', help='Backup directory or its manifest.json, or "latest"')
    p.add_argument('--dir', help='Backup root searched for "latest"')
    p.add_argument('--dry-run', action='store_true', help='Validate and print the plan only')
    p.add_argument('--volume', action='append', dest='volumes', metavar='NAME', help='Restore only this volume')
    p.add_argument('--force', action='store_true', help='Do not ask for confirmation')
    only = p.add_mutually_exclusive_group()
    only.add_argument('--volumes-only', action='store_true')
    only.add_argument('--configs-only', action='store_true')
    p.add_argument('--deadline', type=float, help='Seconds to wait for health after restart')

    p = sub.add_parser('deploy', help='Restart the stack with a safety backup')
    p.add_argument('--quick', action='store_true', help='Skip the pre-deploy backup')
    p.add_argument('--pull', action='store_true', help='Pull images before starting')
    p.add_argument('--profile', help='Compose profile to use')
    p.add_argument('--drain', type=float, help='Seconds to drain before stopping')
    p.add_argument('--stop-timeout', type=int, help='Graceful stop timeout per component')
    p.add_argument('--deadline', type=float, help='Seconds to wait for health after start')

    p = sub.add_parser('health', help='Probe every component once')
    p.add_argument('--wait', type=float, metavar='SECONDS', help='Poll until healthy or SECONDS pass')

    sub.add_parser('status', help='Health, containers and latest backups')

    p = sub.add_parser('backups', help='List backups')
    p.add_argument('--dir', help='Backup root directory')

    p = sub.add_parser('serve', help='Run the HTTP API and backup scheduler')
    p.add_argument('--host', default='0.0.0.0')
    p.add_argument('--port', type=int, default=8080)

    sub.add_parser('init-db', help='Create the run history tables')
    return parser.parse_args(argv)


# Factories are module-level so tests can replace them
def build_manager(inventory, profile=None):
    return ComposeManager.for_inventory(inventory, profile=profile)


def build_archiver():
    return VolumeArchiver()


def build_aggregator():
    return HealthAggregator()


def prompt_confirm(question):
    if not sys.stdin.isatty():
        print("Refusing to restore without a terminal; use --force", file=sys.stderr)
        return False
    answer = input(f"{question}\nType 'yes' to continue: ")
    return answer.strip().lower() == 'yes'


def emit(args, payload, lines):
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        for line in lines:
            print(line)


def _inventory(args):
    return load_inventory(args.inventory or settings.get_inventory_path())


def _health_lines(report):
    lines = []
    for c in report.components:
        lines.append(f"  {c.name:<20} {c.status.value:<10} {c.detail}")
    return lines


def cmd_backup(args):
    inventory = _inventory(args)
    destination = args.dir or settings.get_backup_dir()
    retention = args.retention_days if args.retention_days is not None else settings.get_retention_days()
    orchestrator = BackupOrchestrator(
        archiver=build_archiver(),
        manager=build_manager(inventory),
        lock_path=settings.get_lock_path(inventory.project_dir),
    )
    result = orchestrator.execute(inventory, destination, retention, stop_components=args.stop)
    lines = [f"Backup {result.status}: {result.destination}"]
    if result.manifest is not None:
        for v in result.manifest.volumes:
            state = format_bytes(v.bytes) if v.success else f"FAILED ({v.error})"
            lines.append(f"  {v.name:<20} {state}")
        for c in result.manifest.configs:
            if not c.success:
                lines.append(f"  config {c.name}: FAILED ({c.error})")
    if result.retention is not None and result.retention.deleted:
        lines.append(f"Pruned {len(result.retention.deleted)} old backup(s), freed {format_bytes(result.retention.reclaimed)}")
    emit(args, result.to_dict(), lines)
    return STATUS_EXIT[result.status]


def cmd_restore(args):
    inventory = _inventory(args)
    options = RestoreOptions(
        dry_run=args.dry_run,
        volume_filter=args.volumes,
        force=args.force,
        confirm=None if args.json else prompt_confirm,
        restore_volumes=not args.configs_only,
        restore_configs=not args.volumes_only,
        health_deadline=args.deadline,
    )
    orchestrator = RestoreOrchestrator(
        build_manager(inventory),
        archiver=build_archiver(),
        aggregator=build_aggregator(),
        lock_path=settings.get_lock_path(inventory.project_dir),
    )
    backup_path = args.backup_path
    if backup_path == LATEST:
        backup_path = latest_backup(args.dir or settings.get_backup_dir()).path
        logger.info("Restoring latest backup %s", backup_path)
    result = orchestrator.run(inventory, backup_path, options)
    lines = [f"Restore {result.status} (phase {result.phase.value})"]
    lines.append(f"  plan: {', '.join(result.plan) or 'no volumes'}{' + configs' if result.restore_configs else ''}")
    for w in result.warnings:
        lines.append(f"  warning: {w}")
    for name, err in result.failed.items():
        lines.append(f"  FAILED {name}: {err}")
    if result.health is not None:
        lines.append(f"  health: {'healthy' if result.health.healthy else 'NOT healthy'}")
        lines.extend(_health_lines(result.health))
    emit(args, result.to_dict(), lines)
    return STATUS_EXIT[result.status]


def cmd_deploy(args):
    inventory = _inventory(args)
    manager = build_manager(inventory, profile=args.profile)
    backup = BackupOrchestrator(archiver=build_archiver(), manager=manager, notify=False)
    orchestrator = DeployOrchestrator(
        manager,
        aggregator=build_aggregator(),
        backup=backup,
        lock_path=settings.get_lock_path(inventory.project_dir),
    )
    options = DeployOptions(
        skip_backup=args.quick,
        pull_images=args.pull,
        drain_seconds=args.drain,
        stop_timeout=args.stop_timeout,
        profile=args.profile,
        health_deadline=args.deadline,
    )
    result = orchestrator.run(inventory, options)
    lines = [f"Deploy {result.status} in {format_duration(result.duration)}"]
    if result.backup_error:
        lines.append(f"  backup failed (continued): {result.backup_error}")
    if result.failing:
        lines.append(f"  failing: {', '.join(result.failing)}")
    if result.health is not None:
        lines.extend(_health_lines(result.health))
    emit(args, result.to_dict(), lines)
    return STATUS_EXIT[result.status]


def cmd_health(args):
    inventory = _inventory(args)
    aggregator = build_aggregator()
    if args.wait is not None:
        report = aggregator.wait_until_healthy(inventory, args.wait)
    else:
        report = aggregator.check(inventory)
    lines = [f"Stack {'healthy' if report.healthy else 'NOT healthy'}"] + _health_lines(report)
    emit(args, report.to_dict(), lines)
    return EXIT_OK if report.healthy else EXIT_DEGRADED


def cmd_status(args):
    inventory = _inventory(args)
    report = build_aggregator().check(inventory)
    backup_dir = settings.get_backup_dir()
    backups = scan_backups(backup_dir)[:3]
    disk = get_disk_usage(backup_dir if os.path.isdir(backup_dir) else inventory.project_dir)
    ps = build_manager(inventory).ps()
    jobs = recent_jobs(5)
    payload = {
        'status': 'healthy' if report.healthy else 'degraded',
        'health': report.to_dict(),
        'containers': ps,
        'latest_backups': [b.to_dict() for b in backups],
        'recent_jobs': jobs,
        'disk': disk,
    }
    lines = [f"Stack {'healthy' if report.healthy else 'NOT healthy'}"] + _health_lines(report)
    if ps:
        lines += ['', ps]
    lines += ['', f"Backup storage: {format_bytes(disk['free'])} free of {format_bytes(disk['total'])}"]
    lines += ['', 'Latest backups:']
    lines += [f"  {b.name}  {'ok' if b.manifest and b.manifest.overall_success else 'partial/unknown'}" for b in backups] or ['  none']
    if jobs:
        lines += ['', 'Recent runs:']
        lines += [f"  #{j['id']} {j['job_type']:<8} {j['status']:<10} {to_iso_z(j['start_time'])}" for j in jobs]
    emit(args, payload, lines)
    return EXIT_OK if report.healthy else EXIT_DEGRADED


def cmd_backups(args):
    entries = scan_backups(args.dir or settings.get_backup_dir())
    lines = []
    for e in entries:
        if e.manifest is None:
            lines.append(f"{e.name}  {'unreadable manifest' if e.error else 'no manifest'}")
            continue
        counts = e.manifest.counts()
        state = 'ok' if e.manifest.overall_success else 'partial'
        lines.append(f"{e.name}  {state:<8} {counts['volumes_ok']} volume(s)  {format_bytes(e.manifest.total_bytes())}")
    emit(args, {'status': 'succeeded', 'backups': [e.to_dict() for e in entries]}, lines or ['No backups found'])
    return EXIT_OK


def cmd_serve(args):
    from stackctl.main import create_app
    from stackctl.scheduler import init_scheduler

    app = create_app()
    init_scheduler()
    logger.info("Serving API on %s:%s", args.host, args.port)
    app.run(host=args.host, port=args.port)
    return EXIT_OK


def cmd_init_db(args):
    if not db.is_enabled():
        raise ConfigError("DATABASE_URL is not set")
    db.init_db()
    emit(args, {'status': 'succeeded'}, ['Database schema initialized'])
    return EXIT_OK


COMMANDS = {
    'backup': cmd_backup,
    'restore': cmd_restore,
    'deploy': cmd_deploy,
    'health': cmd_health,
    'status': cmd_status,
    'backups': cmd_backups,
    'serve': cmd_serve,
    'init-db': cmd_init_db,
}


def _fail(args, code, message):
    if getattr(args, 'json', False):
        status = 'failed' if code != EXIT_LOCKED else 'locked'
        print(json.dumps({'status': status, 'error': message}))
    else:
        print(f"error: {message}", file=sys.stderr)
    return code


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        return COMMANDS[args.command](args)
    except ConfigError as e:
        return _fail(args, EXIT_CONFIG, str(e))
    except LockConflictError as e:
        return _fail(args, EXIT_LOCKED, str(e))
    except StackctlError as e:
        return _fail(args, EXIT_FAILED, str(e))
    except KeyboardInterrupt:
        return _fail(args, EXIT_CANCELLED, 'interrupted')


if __name__ == '__main__':
    sys.exit(main())

"""Notification-specific formatting helpers.

Pure functions that turn orchestrator results into a title and a plain-text
body. They never touch settings or the network.
"""
from typing import List

from stackctl.utils import format_bytes, format_duration

_STATUS_LABELS = {
    'succeeded': 'Succeeded',
    'degraded': 'Degraded',
    'failed': 'Failed',
    'cancelled': 'Cancelled',
    'dry-run': 'Dry run',
}


def build_title(job_type: str, status: str, subject: str = '') -> str:
    label = _STATUS_LABELS.get(status, status.title())
    title = f"{job_type.capitalize()} {label}"
    if subject:
        title += f": {subject}"
    return title


def _health_lines(report) -> List[str]:
    if report is None:
        return ["Health: not checked"]
    lines = [f"Health: {'healthy' if report.healthy else 'NOT healthy'} after {report.attempts} check(s)"]
    for c in report.components:
        if not c.healthy:
            lines.append(f"  - {c.name}: {c.status.value} ({c.detail})")
    return lines


def build_backup_body(result) -> str:
    manifest = result.manifest
    lines = [f"Backup {result.destination.name if result.destination else ''}".rstrip()]
    if manifest is not None:
        counts = manifest.counts()
        total = counts['volumes_ok'] + counts['volumes_failed']
        lines.append(f"Volumes: {counts['volumes_ok']}/{total} archived  |  "
                     f"Total size: {format_bytes(manifest.total_bytes())}  |  "
                     f"Duration: {format_duration(result.duration)}")
        failed = [v for v in manifest.volumes if not v.success]
        if failed:
            lines.append("")
            lines.append("FAILED VOLUMES")
            for v in failed:
                lines.append(f"  - {v.name}: {v.error or 'failed'}")
        failed_configs = [c for c in manifest.configs if not c.success]
        if failed_configs:
            lines.append("")
            lines.append("FAILED CONFIGS")
            for c in failed_configs:
                lines.append(f"  - {c.name}: {c.error or 'failed'}")
    if result.restart_failures:
        lines.append("")
        lines.append("Components that did not restart: " + ', '.join(result.restart_failures))
    if result.retention is not None and result.retention.deleted:
        lines.append("")
        lines.append(f"Retention: deleted {len(result.retention.deleted)} backup(s), "
                     f"freed {format_bytes(result.retention.reclaimed)}")
    if result.error:
        lines.append("")
        lines.append(f"Error: {result.error}")
    return '\n'.join(lines)


def build_restore_body(result) -> str:
    lines = [f"Restore from {result.manifest_path}"]
    lines.append(f"Final phase: {result.phase.value}  |  Duration: {format_duration(result.duration)}")
    if result.restored:
        lines.append(f"Restored volumes: {', '.join(result.restored)}")
    if result.failed:
        lines.append("")
        lines.append("FAILED VOLUMES")
        for name, err in result.failed.items():
            lines.append(f"  - {name}: {err}")
    if result.skipped:
        lines.append("Skipped: " + ', '.join(f"{n} ({why})" for n, why in result.skipped.items()))
    if result.config_error:
        lines.append(f"Configs: {result.config_error}")
    elif result.configs_restored:
        lines.append("Configs: restored")
    if result.start_failures:
        lines.append("Components that did not start: " + ', '.join(result.start_failures))
    lines.append("")
    lines.extend(_health_lines(result.health))
    if result.error:
        lines.append(f"Error: {result.error}")
    return '\n'.join(lines)


def build_deploy_body(result) -> str:
    lines = [f"Deploy finished in phase {result.phase.value} after {format_duration(result.duration)}"]
    if result.backup_ran:
        if result.backup_manifest is not None and result.backup_manifest.path:
            state = 'ok' if result.backup_manifest.overall_success else 'partial'
            lines.append(f"Pre-deploy backup ({state}): {result.backup_manifest.path.parent}")
        else:
            lines.append(f"Pre-deploy backup failed: {result.backup_error or 'unknown error'}")
    else:
        lines.append("Pre-deploy backup: skipped")
    if result.pulled is not None:
        lines.append(f"Image pull: {'ok' if result.pulled else 'failed'}")
    stop_failed = [n for n, r in result.stop_results.items() if not r.ok]
    start_failed = [n for n, r in result.start_results.items() if not r.ok and n not in result.not_running]
    if stop_failed:
        lines.append("Stop failures: " + ', '.join(stop_failed))
    if start_failed:
        lines.append("Start failures: " + ', '.join(start_failed))
    if result.not_running:
        lines.append("Optional components not running: " + ', '.join(result.not_running))
    lines.append("")
    lines.extend(_health_lines(result.health))
    return '\n'.join(lines)

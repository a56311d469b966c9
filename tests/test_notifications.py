from pathlib import Path

from stackctl.backup import BackupResult
from stackctl.compose import CommandResult
from stackctl.deploy import DeployPhase, DeployResult
from stackctl.manifest import ArchiveRecord, BackupManifest
from stackctl.notifications import formatters, handlers, helpers


def test_get_subject_with_tag(monkeypatch):
    monkeypatch.setattr('stackctl.notifications.helpers.get_setting', lambda k, d='': '[prod]')
    assert helpers.get_subject_with_tag('Backup Failed') == '[prod] Backup Failed'


def test_should_notify_defaults_and_overrides(monkeypatch):
    assert helpers.should_notify('success') is False
    assert helpers.should_notify('degraded') is True
    assert helpers.should_notify('failure') is True
    assert helpers.should_notify(None) is False
    monkeypatch.setenv('STACKCTL_NOTIFY_ON_SUCCESS', 'true')
    monkeypatch.setenv('STACKCTL_NOTIFY_ON_FAILURE', 'false')
    assert helpers.should_notify('success') is True
    assert helpers.should_notify('failure') is False


def test_status_events():
    assert helpers.notify_event_for_status('failed') == 'failure'
    assert helpers.notify_event_for_status('dry-run') is None


def test_get_apprise_urls(monkeypatch):
    monkeypatch.setenv('STACKCTL_APPRISE_URLS', 'mailto://a@example.com, discord://id/token\n# disabled://x\n\n')
    assert helpers.get_apprise_urls() == ['mailto://a@example.com', 'discord://id/token']


def _backup_result():
    manifest = BackupManifest(
        timestamp='20250301_020000',
        volumes=[ArchiveRecord('db-data', 'db-data.tar.gz', 'a' * 64, 2048, True),
                 ArchiveRecord('cache', error='volume missing')],
    )
    return BackupResult(status='degraded', manifest=manifest, destination=Path('/b/20250301_020000'),
                        duration=65, error='Failed: cache')


def test_backup_body_lists_failed_volumes():
    body = formatters.build_backup_body(_backup_result())
    assert 'Volumes: 1/2 archived' in body
    assert 'Duration: 1m 5s' in body
    assert '  - cache: volume missing' in body
    assert formatters.build_title('backup', 'degraded', '20250301_020000') == 'Backup Degraded: 20250301_020000'


def test_deploy_body():
    result = DeployResult(status='degraded', phase=DeployPhase.DEGRADED, duration=12)
    result.start_results = {'db': CommandResult(True), 'web': CommandResult(False, 'exit 1')}
    body = formatters.build_deploy_body(result)
    assert 'Pre-deploy backup: skipped' in body
    assert 'Start failures: web' in body
    assert 'Health: not checked' in body


def test_notify_run_sends_through_apprise(monkeypatch):
    sent = []

    class DummyApprise:
        def __init__(self):
            self.urls = []

        def add(self, url):
            self.urls.append(url)
            return True

        def notify(self, title, body, body_format=None):
            sent.append((title, body))
            return True

    monkeypatch.setattr(handlers.apprise, 'Apprise', DummyApprise)
    monkeypatch.setenv('STACKCTL_APPRISE_URLS', 'json://localhost')
    monkeypatch.setenv('STACKCTL_NOTIFICATION_SUBJECT_TAG', '[home]')

    assert handlers.notify_run('backup', 'failed', 'body text', subject='x') is True
    assert sent == [('[home] Backup Failed: x', 'body text')]
    # Successful runs stay quiet unless enabled
    assert handlers.notify_run('backup', 'succeeded', 'body text') is False
    assert len(sent) == 1


def test_notify_run_retries_once(monkeypatch):
    attempts = []

    class FlakyApprise:
        def add(self, url):
            return True

        def notify(self, title, body, body_format=None):
            attempts.append(title)
            return len(attempts) > 1

    monkeypatch.setattr(handlers.apprise, 'Apprise', FlakyApprise)
    monkeypatch.setattr(handlers.time, 'sleep', lambda s: None)
    monkeypatch.setenv('STACKCTL_APPRISE_URLS', 'json://localhost')
    assert handlers.notify_run('deploy', 'degraded', 'body') is True
    assert len(attempts) == 2


def test_notify_run_without_urls():
    assert handlers.notify_run('restore', 'failed', 'body') is False

import io
import os
import tarfile

import docker
import pytest

from stackctl.archive import (
    DockerVolumeDriver, VolumeArchiver, archive_configs, extract_archive, validate_archive,
)
from stackctl.errors import ArchiveError, RestoreError
from stackctl.inventory import ConfigPath, Volume
from stackctl.utils import file_sha256


def _local(path, name='data'):
    return Volume(name=name, owner='db', driver='local', location=str(path))


def _populate(root):
    (root / 'nested' / 'deeper').mkdir(parents=True)
    (root / 'a.txt').write_text('alpha')
    (root / 'nested' / 'deeper' / 'b.bin').write_bytes(os.urandom(2048))
    os.symlink('a.txt', root / 'link-to-a')


def _tar_gz(path, members):
    """Write a .tar.gz from (name, data) pairs; data None makes a directory."""
    with tarfile.open(path, 'w:gz') as tar:
        for name, data in members:
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))


def test_snapshot_and_restore_round_trip(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()
    _populate(src)
    archiver = VolumeArchiver()

    record = archiver.snapshot(_local(src), tmp_path / 'backup')
    assert record.success and record.archive == 'data.tar.gz'
    assert record.checksum == file_sha256(tmp_path / 'backup' / 'data.tar.gz')
    assert record.bytes == (tmp_path / 'backup' / 'data.tar.gz').stat().st_size

    expected_b = (src / 'nested' / 'deeper' / 'b.bin').read_bytes()
    (src / 'a.txt').write_text('changed')
    (src / 'extra.log').write_text('not in the backup')

    archiver.restore(_local(src), tmp_path / 'backup' / 'data.tar.gz', expected_checksum=record.checksum)
    assert (src / 'a.txt').read_text() == 'alpha'
    assert (src / 'nested' / 'deeper' / 'b.bin').read_bytes() == expected_b
    assert os.readlink(src / 'link-to-a') == 'a.txt'
    assert not (src / 'extra.log').exists()
    # No staging or old directories are left next to the volume
    assert sorted(p.name for p in tmp_path.iterdir()) == ['backup', 'vol']


def test_unchanged_volume_gives_identical_checksum(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()
    _populate(src)
    archiver = VolumeArchiver()
    first = archiver.snapshot(_local(src), tmp_path / 'one')
    second = archiver.snapshot(_local(src), tmp_path / 'two')
    assert first.checksum == second.checksum


def test_snapshot_of_missing_volume_fails(tmp_path):
    with pytest.raises(ArchiveError, match='could not be resolved'):
        VolumeArchiver().snapshot(_local(tmp_path / 'missing'), tmp_path / 'backup')
    assert not (tmp_path / 'backup' / 'data.tar.gz').exists()


def test_failed_export_leaves_incomplete_file(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()

    class BrokenDriver:
        def resolve(self, volume):
            return src

        def export(self, volume, fileobj):
            fileobj.write(b'half an archive')
            raise ArchiveError('disk full')

    archiver = VolumeArchiver(drivers={'local': BrokenDriver()})
    with pytest.raises(ArchiveError) as exc:
        archiver.snapshot(_local(src), tmp_path / 'backup')
    assert exc.value.partial_path.endswith('data.tar.gz.incomplete')
    assert os.listdir(tmp_path / 'backup') == ['data.tar.gz.incomplete']


def test_restore_rejects_checksum_mismatch_without_touching_volume(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()
    (src / 'keep.txt').write_text('current')
    archive = tmp_path / 'data.tar.gz'
    _tar_gz(archive, [('keep.txt', b'old')])

    with pytest.raises(RestoreError, match='Checksum mismatch'):
        VolumeArchiver().restore(_local(src), archive, expected_checksum='0' * 64)
    assert (src / 'keep.txt').read_text() == 'current'


def test_restore_rejects_corrupt_and_missing_archives(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()
    corrupt = tmp_path / 'data.tar.gz'
    corrupt.write_bytes(b'\x1f\x8b\x08\x00garbage')
    with pytest.raises(RestoreError, match='corrupt'):
        VolumeArchiver().restore(_local(src), corrupt)
    with pytest.raises(RestoreError, match='not found'):
        VolumeArchiver().restore(_local(src), tmp_path / 'nope.tar.gz')


@pytest.mark.parametrize('name', ['../escape.txt', '/etc/cron.d/evil'])
def test_validate_rejects_unsafe_paths(tmp_path, name):
    archive = tmp_path / 'evil.tar.gz'
    _tar_gz(archive, [('ok.txt', b'ok'), (name, b'evil')])
    with pytest.raises(RestoreError, match='unsafe'):
        validate_archive(archive)


def test_validate_rejects_escaping_symlink(tmp_path):
    archive = tmp_path / 'evil.tar.gz'
    with tarfile.open(archive, 'w:gz') as tar:
        info = tarfile.TarInfo('sub/link')
        info.type = tarfile.SYMTYPE
        info.linkname = '../../etc/passwd'
        tar.addfile(info)
    with pytest.raises(RestoreError, match='symlink'):
        validate_archive(archive)


def test_archive_configs_handles_missing_and_optional_paths(tmp_path):
    project = tmp_path / 'project'
    (project / 'conf.d').mkdir(parents=True)
    (project / 'conf.d' / 'site.conf').write_text('server {}')
    (project / '.env').write_text('A=1\n')
    paths = (ConfigPath('.env'), ConfigPath('conf.d'), ConfigPath('absent.yml'),
             ConfigPath('maybe.yml', optional=True))

    record, results = archive_configs(paths, project, tmp_path / 'configs.tar.gz')
    assert [r[0] for r in results] == ['.env', 'conf.d', 'absent.yml']
    assert results[2] == ('absent.yml', 0, 'not found')
    assert record.success is False

    out = tmp_path / 'out'
    out.mkdir()
    extract_archive(tmp_path / 'configs.tar.gz', out)
    assert (out / '.env').read_text() == 'A=1\n'
    assert (out / 'conf.d' / 'site.conf').read_text() == 'server {}'


class DummyContainer:
    def __init__(self, tar_bytes=None, exit_code=0, accept_upload=True):
        self.tar_bytes = tar_bytes
        self.exit_code = exit_code
        self.accept_upload = accept_upload
        self.removed = False
        self.uploads = []
        self.started = 0

    def get_archive(self, path):
        return iter([self.tar_bytes]), {'name': 'source'}

    def put_archive(self, path, data):
        self.uploads.append((path, data.read()))
        return self.accept_upload

    def start(self):
        self.started += 1

    def wait(self, timeout=None):
        return {'StatusCode': self.exit_code}

    def logs(self, tail=None):
        return b"rm: cannot remove '/dest/lost+found': Permission denied\n"

    def remove(self, force=False):
        self.removed = True


class DummyClient:
    def __init__(self, container, known=('pgdata',)):
        client = self
        self.container = container
        self.known = set(known)
        self.commands = []

        class Volumes:
            def get(self, name):
                if name not in client.known:
                    raise docker.errors.NotFound('no such volume')
                return {'Name': name}

        class Images:
            def get(self, name):
                return name

        class Containers:
            def create(self, image, command=None, volumes=None):
                client.created = (image, command, volumes)
                client.commands.append(command)
                return client.container

        self.volumes = Volumes()
        self.images = Images()
        self.containers = Containers()


def test_docker_driver_export_strips_copy_prefix(tmp_path):
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode='w') as tar:
        for name, data in [('source', None), ('source/PG_VERSION', b'16\n'), ('source/base', None)]:
            info = tarfile.TarInfo(name)
            if data is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
    container = DummyContainer(raw.getvalue())
    client = DummyClient(container)
    archiver = VolumeArchiver(drivers={'docker': DockerVolumeDriver(client=client, helper_image='alpine:3.20')})
    volume = Volume(name='pgdata', owner='db', driver='docker', location='pgdata')

    record = archiver.snapshot(volume, tmp_path)
    assert record.success
    assert client.created[2] == {'pgdata': {'bind': '/source', 'mode': 'ro'}}
    assert container.removed
    with tarfile.open(tmp_path / 'pgdata.tar.gz', 'r:gz') as tar:
        assert tar.getnames() == ['PG_VERSION', 'base']


def test_docker_driver_missing_volume_is_unresolved(tmp_path):
    driver = DockerVolumeDriver(client=DummyClient(None, known=()), helper_image='alpine:3.20')
    volume = Volume(name='gone', owner='db', driver='docker', location='gone')
    assert driver.resolve(volume) is None
    with pytest.raises(ArchiveError):
        VolumeArchiver(drivers={'docker': driver}).snapshot(volume, tmp_path)


def test_unreadable_subdirectory_fails_the_snapshot(tmp_path, monkeypatch):
    src = tmp_path / 'db-data'
    (src / 'base').mkdir(parents=True)
    (src / 'PG_VERSION').write_text('16\n')
    (src / 'base' / '1.dat').write_bytes(b'rows')
    real_scandir = os.scandir

    def scandir(path='.'):
        if os.fspath(path).endswith(os.path.join('db-data', 'base')):
            raise PermissionError(13, 'Permission denied', os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, 'scandir', scandir)
    with pytest.raises(ArchiveError, match='Permission denied') as exc:
        VolumeArchiver().snapshot(_local(src, name='db-data'), tmp_path / 'backup')
    assert exc.value.partial_path.endswith('db-data.tar.gz.incomplete')
    assert os.listdir(tmp_path / 'backup') == ['db-data.tar.gz.incomplete']


def test_local_restore_reports_atomic_swap(tmp_path):
    src = tmp_path / 'vol'
    src.mkdir()
    archive = tmp_path / 'data.tar.gz'
    _tar_gz(archive, [('a.txt', b'alpha')])
    assert VolumeArchiver().restore(_local(src), archive) is True


def test_failed_swap_puts_old_contents_back(tmp_path, monkeypatch):
    src = tmp_path / 'vol'
    src.mkdir()
    (src / 'keep.txt').write_text('current')
    archive = tmp_path / 'data.tar.gz'
    _tar_gz(archive, [('keep.txt', b'old')])
    real_rename = os.rename

    def rename(source, target):
        if '.restore-' in os.fspath(source):
            raise OSError(18, 'Invalid cross-device link')
        return real_rename(source, target)

    monkeypatch.setattr(os, 'rename', rename)
    with pytest.raises(RestoreError, match='Could not swap'):
        VolumeArchiver().restore(_local(src), archive)
    assert (src / 'keep.txt').read_text() == 'current'
    assert sorted(p.name for p in tmp_path.iterdir()) == ['data.tar.gz', 'vol']


def _pgdata():
    return Volume(name='pgdata', owner='db', driver='docker', location='pgdata')


def test_docker_driver_restore_uploads_into_staging(tmp_path):
    archive = tmp_path / 'pgdata.tar.gz'
    _tar_gz(archive, [('PG_VERSION', b'16\n')])
    container = DummyContainer()
    client = DummyClient(container)
    archiver = VolumeArchiver(drivers={'docker': DockerVolumeDriver(client=client, helper_image='alpine:3.20')})

    atomic = archiver.restore(_pgdata(), archive, expected_checksum=file_sha256(archive))

    assert atomic is False
    assert len(client.commands) == 2
    assert 'mkdir /dest/.stackctl-restore' in client.commands[0][2]
    assert 'rmdir /dest/.stackctl-restore' in client.commands[1][2]
    assert container.uploads == [('/dest/.stackctl-restore', archive.read_bytes())]
    assert container.started == 2
    assert client.created[2] == {'pgdata': {'bind': '/dest', 'mode': 'rw'}}
    assert container.removed


def test_docker_driver_restore_helper_failure(tmp_path):
    archive = tmp_path / 'pgdata.tar.gz'
    _tar_gz(archive, [('PG_VERSION', b'16\n')])
    container = DummyContainer(exit_code=1)
    archiver = VolumeArchiver(drivers={'docker': DockerVolumeDriver(client=DummyClient(container),
                                                                   helper_image='alpine:3.20')})

    with pytest.raises(RestoreError, match='exited with 1: rm: cannot remove'):
        archiver.restore(_pgdata(), archive)
    assert container.removed


def test_docker_driver_refused_upload(tmp_path):
    archive = tmp_path / 'pgdata.tar.gz'
    _tar_gz(archive, [('PG_VERSION', b'16\n')])
    container = DummyContainer(accept_upload=False)
    archiver = VolumeArchiver(drivers={'docker': DockerVolumeDriver(client=DummyClient(container),
                                                                   helper_image='alpine:3.20')})

    with pytest.raises(RestoreError, match='refused the archive upload'):
        archiver.restore(_pgdata(), archive)
    # The prepare step ran; the swap step never started
    assert container.started == 1
    assert container.removed

"""
Volume archiver: snapshot a volume into ``<name>.tar.gz`` and restore it back.

Archives are written deterministically (sorted members, integer mtimes,
gzip header without name or timestamp) so an unchanged volume always yields
the same checksum. Snapshots are written to a ``.partial`` file and only
renamed into place when complete; a failed snapshot is left behind as
``.incomplete`` and never reported as a success.

Two volume drivers exist:

- ``local``: the volume is a directory on this host. Restores extract into a
  staging directory next to it and swap it in with renames.
- ``docker``: the volume is a named Docker volume, accessed through a short
  lived helper container via the Docker SDK. Restores extract into a staging
  directory inside the volume and then replace the old entries; this is not a
  true atomic swap.
"""
import gzip
import os
import shutil
import stat
import tarfile
import tempfile
import zlib
from pathlib import Path, PurePosixPath

import docker
import requests

from stackctl import settings
from stackctl.errors import ArchiveError, RestoreError
from stackctl.manifest import ArchiveRecord
from stackctl.utils import setup_logging, get_logger, file_sha256, format_bytes

setup_logging()
logger = get_logger(__name__)

ARCHIVE_SUFFIX = '.tar.gz'
DEFAULT_HELPER_IMAGE = 'alpine:3.20'
DEFAULT_DOCKER_TIMEOUT = 600
STAGING_NAME = '.stackctl-restore'


def archive_name(volume_name):
    return f"{volume_name}{ARCHIVE_SUFFIX}"


# --- deterministic tar helpers ---

def open_archive_writer(fileobj):
    """Return (gzip, tar) writers producing a reproducible .tar.gz on `fileobj`."""
    gz = gzip.GzipFile(filename='', mode='wb', fileobj=fileobj, mtime=0)
    tar = tarfile.open(fileobj=gz, mode='w', format=tarfile.GNU_FORMAT)
    return gz, tar


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = int(info.mtime)
    return info


def _walk_error(error):
    raise error


def add_tree(tar, root, arcprefix=''):
    """Add the contents of `root` (not the root itself) in sorted order.

    A directory that cannot be listed raises OSError instead of being left out.
    """
    root = str(root)
    for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, root)
        entries = sorted(dirnames + filenames)
        for entry in entries:
            full = os.path.join(dirpath, entry)
            rel = entry if rel_dir == '.' else os.path.join(rel_dir, entry)
            arcname = os.path.join(arcprefix, rel) if arcprefix else rel
            add_path(tar, full, arcname, recursive=False)


def add_path(tar, path, arcname, recursive=True):
    """Add one file, link or directory; directories recurse when asked."""
    info = tar.gettarinfo(str(path), arcname=str(arcname).replace(os.sep, '/'))
    if info is None:
        # sockets and the like cannot be archived
        logger.debug("Skipping unsupported file type: %s", path)
        return
    _normalize(info)
    if info.isreg():
        with open(path, 'rb') as fh:
            tar.addfile(info, fh)
    else:
        tar.addfile(info)
    if recursive and info.isdir():
        add_tree(tar, path, arcprefix=info.name)


def _is_unsafe(name):
    p = PurePosixPath(name)
    return p.is_absolute() or '..' in p.parts


def validate_archive(path):
    """Read the whole archive once; raise RestoreError if it is corrupt or unsafe."""
    try:
        with tarfile.open(path, mode='r:gz') as tar:
            for member in tar:
                if _is_unsafe(member.name):
                    raise RestoreError(f"Archive {path} contains an unsafe path: {member.name}")
                if member.islnk() and _is_unsafe(member.linkname):
                    raise RestoreError(f"Archive {path} contains an unsafe link: {member.name}")
                if member.issym():
                    target = PurePosixPath(member.name).parent / member.linkname
                    if PurePosixPath(member.linkname).is_absolute() or _escapes(target):
                        raise RestoreError(
                            f"Archive {path} contains a symlink escaping the volume: "
                            f"{member.name} -> {member.linkname}"
                        )
                if member.isreg():
                    fh = tar.extractfile(member)
                    while fh.read(1024 * 1024):
                        pass
    except RestoreError:
        raise
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise RestoreError(f"Archive {path} is corrupt or unreadable: {e}")


def _escapes(path: PurePosixPath):
    depth = 0
    for part in path.parts:
        if part == '..':
            depth -= 1
        elif part not in ('.', ''):
            depth += 1
        if depth < 0:
            return True
    return False


def _extract_all(tar, dest):
    # Members are validated beforehand; keep owners and modes like `tar xzf`
    if hasattr(tarfile, 'tar_filter'):
        tar.extractall(dest, filter='tar')
    else:
        tar.extractall(dest)


def _mark_incomplete(partial):
    """Rename a leftover `.partial` file to `.incomplete`; return the kept path."""
    if not partial.exists():
        return None
    incomplete = partial.with_name(partial.name[:-len('.partial')] + '.incomplete')
    try:
        os.replace(partial, incomplete)
    except OSError:
        return str(partial)
    return str(incomplete)


# --- drivers ---

class LocalVolumeDriver:
    """Volumes that are plain directories on this host."""

    name = 'local'
    supports_atomic_swap = True

    def resolve(self, volume):
        path = Path(volume.location)
        return path if path.is_dir() else None

    def export(self, volume, fileobj):
        root = self.resolve(volume)
        gz, tar = open_archive_writer(fileobj)
        try:
            add_tree(tar, root)
        finally:
            tar.close()
            gz.close()

    def import_(self, volume, archive_path):
        target = self.resolve(volume)
        parent = target.parent
        suffix = f"{os.getpid()}"
        staging = parent / f".{target.name}.restore-{suffix}"
        old = parent / f".{target.name}.old-{suffix}"

        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir()
        try:
            os.chmod(staging, stat.S_IMODE(target.stat().st_mode))
            with tarfile.open(archive_path, mode='r:gz') as tar:
                _extract_all(tar, staging)
        except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise RestoreError(f"Extracting {archive_path} for volume {volume.name} failed: {e}")

        try:
            os.rename(target, old)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise RestoreError(f"Could not move current contents of {volume.name} aside: {e}")
        try:
            os.rename(staging, target)
        except OSError as e:
            os.rename(old, target)
            shutil.rmtree(staging, ignore_errors=True)
            raise RestoreError(f"Could not swap restored contents into {volume.name}: {e}")
        shutil.rmtree(old, ignore_errors=True)


class DockerVolumeDriver:
    """Named Docker volumes, accessed through a helper container."""

    name = 'docker'
    supports_atomic_swap = False

    def __init__(self, client=None, helper_image=None, timeout=None):
        self._client = client
        self.helper_image = helper_image or settings.get_setting('helper_image', DEFAULT_HELPER_IMAGE)
        self.timeout = timeout or settings.get_int_setting('docker_timeout', DEFAULT_DOCKER_TIMEOUT)

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env(timeout=self.timeout)
        return self._client

    def resolve(self, volume):
        try:
            return self.client.volumes.get(volume.location)
        except docker.errors.NotFound:
            return None
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            logger.warning("Could not look up docker volume %s: %s", volume.location, e)
            return None

    def _ensure_image(self):
        try:
            self.client.images.get(self.helper_image)
        except docker.errors.ImageNotFound:
            logger.info("Pulling helper image %s", self.helper_image)
            self.client.images.pull(self.helper_image)

    def export(self, volume, fileobj):
        try:
            self._ensure_image()
            container = self.client.containers.create(
                self.helper_image, command=['true'],
                volumes={volume.location: {'bind': '/source', 'mode': 'ro'}},
            )
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise ArchiveError(f"Could not create helper container for {volume.name}: {e}")

        try:
            with tempfile.TemporaryFile() as raw:
                stream, _ = container.get_archive('/source')
                for chunk in stream:
                    raw.write(chunk)
                raw.seek(0)
                gz, out = open_archive_writer(fileobj)
                try:
                    with tarfile.open(fileobj=raw, mode='r:') as src:
                        for member in src:
                            # Docker prefixes every entry with the basename of the copied path
                            if member.name in ('source', 'source/'):
                                continue
                            member.name = member.name.split('/', 1)[1]
                            if member.islnk() and member.linkname.startswith('source/'):
                                member.linkname = member.linkname.split('/', 1)[1]
                            _normalize(member)
                            if member.isreg():
                                out.addfile(member, src.extractfile(member))
                            else:
                                out.addfile(member)
                finally:
                    out.close()
                    gz.close()
        except (docker.errors.DockerException, requests.exceptions.RequestException, tarfile.TarError) as e:
            raise ArchiveError(f"Reading docker volume {volume.name} failed: {e}")
        finally:
            try:
                container.remove(force=True)
            except docker.errors.DockerException as e:
                logger.warning("Could not remove helper container: %s", e)

    def _run(self, volume, script, archive_path=None):
        volumes = {volume.location: {'bind': '/dest', 'mode': 'rw'}}
        container = self.client.containers.create(self.helper_image, command=['sh', '-c', script], volumes=volumes)
        try:
            if archive_path is not None:
                with open(archive_path, 'rb') as fh:
                    if not container.put_archive(f"/dest/{STAGING_NAME}", fh):
                        raise RestoreError(f"Docker refused the archive upload for {volume.name}")
            container.start()
            result = container.wait(timeout=self.timeout)
            code = result.get('StatusCode', 1) if isinstance(result, dict) else result
            if code != 0:
                output = container.logs(tail=20).decode('utf-8', errors='replace').strip()
                raise RestoreError(f"Helper container for {volume.name} exited with {code}: {output}")
        finally:
            try:
                container.remove(force=True)
            except docker.errors.DockerException as e:
                logger.warning("Could not remove helper container: %s", e)

    def import_(self, volume, archive_path):
        staging = f"/dest/{STAGING_NAME}"
        prepare = f"rm -rf {staging} && mkdir {staging}"
        swap = (
            "set -e; "
            f"find /dest -mindepth 1 -maxdepth 1 ! -name {STAGING_NAME} -exec rm -rf {{}} +; "
            f"find {staging} -mindepth 1 -maxdepth 1 -exec mv {{}} /dest/ \\;; "
            f"rmdir {staging}"
        )
        try:
            self._ensure_image()
            self._run(volume, prepare)
            # put_archive extracts the uploaded .tar.gz into the staging directory
            self._run(volume, swap, archive_path=archive_path)
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise RestoreError(f"Restoring docker volume {volume.name} failed: {e}")


class VolumeArchiver:
    """Snapshots and restores single volumes."""

    def __init__(self, drivers=None):
        self.drivers = drivers or {'local': LocalVolumeDriver(), 'docker': DockerVolumeDriver()}

    def driver_for(self, volume):
        try:
            return self.drivers[volume.driver]
        except KeyError:
            raise ArchiveError(f"No driver '{volume.driver}' for volume {volume.name}")

    def snapshot(self, volume, destination_dir) -> ArchiveRecord:
        """Write ``destination_dir/<volume>.tar.gz`` and return its record."""
        driver = self.driver_for(volume)
        if driver.resolve(volume) is None:
            raise ArchiveError(f"Volume {volume.name} ({volume.driver}:{volume.location}) could not be resolved")

        dest = Path(destination_dir)
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveError(f"Cannot create destination {dest}: {e}")

        final = dest / archive_name(volume.name)
        partial = dest / (final.name + '.partial')
        try:
            with open(partial, 'wb') as fh:
                driver.export(volume, fh)
                fh.flush()
                os.fsync(fh.fileno())
        except (ArchiveError, OSError) as e:
            incomplete = _mark_incomplete(partial)
            if isinstance(e, ArchiveError):
                e.partial_path = incomplete
                raise
            raise ArchiveError(f"Writing archive for {volume.name} failed: {e}", partial_path=incomplete)

        os.replace(partial, final)
        checksum = file_sha256(final)
        size = final.stat().st_size
        logger.info("Archived volume %s -> %s (%s)", volume.name, final, format_bytes(size))
        return ArchiveRecord(name=volume.name, archive=final.name, checksum=checksum, bytes=size, success=True)

    def restore(self, volume, archive_path, expected_checksum=None):
        """Replace all contents of `volume` with the archive's contents.

        Returns True when the driver swapped the new contents in atomically.
        """
        archive = Path(archive_path)
        if not archive.is_file():
            raise RestoreError(f"Archive not found for volume {volume.name}: {archive}")
        if expected_checksum:
            actual = file_sha256(archive)
            if actual != expected_checksum:
                raise RestoreError(
                    f"Checksum mismatch for {archive.name}: expected {expected_checksum[:12]}, got {actual[:12]}"
                )
        validate_archive(archive)

        try:
            driver = self.driver_for(volume)
        except ArchiveError as e:
            raise RestoreError(str(e))
        if driver.resolve(volume) is None:
            raise RestoreError(f"Target volume {volume.name} ({volume.driver}:{volume.location}) could not be resolved")

        driver.import_(volume, archive)
        logger.info("Restored volume %s from %s", volume.name, archive)
        return driver.supports_atomic_swap


def archive_configs(paths, base_dir, destination):
    """Write the given project-relative paths into one archive.

    `paths` are ConfigPath entries from the inventory.
    Returns (record, per_path_results) where per_path_results is a list of
    (name, size, error) tuples; missing required paths carry an error.
    """
    base = Path(base_dir)
    results = []
    destination = Path(destination)
    partial = destination.with_name(destination.name + '.partial')
    try:
        with open(partial, 'wb') as fh:
            gz, tar = open_archive_writer(fh)
            try:
                for entry in paths:
                    rel, optional = entry.path, entry.optional
                    full = base / rel
                    if not full.exists():
                        if optional:
                            logger.info("Optional config %s not present, skipping", rel)
                            continue
                        results.append((rel, 0, 'not found'))
                        continue
                    add_path(tar, full, rel.rstrip('/'))
                    size = full.stat().st_size if full.is_file() else _tree_size(full)
                    results.append((rel, size, None))
            finally:
                tar.close()
                gz.close()
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as e:
        incomplete = _mark_incomplete(partial)
        raise ArchiveError(f"Writing config archive failed: {e}", partial_path=incomplete)

    os.replace(partial, destination)
    record = ArchiveRecord(
        name='configs', archive=destination.name, checksum=file_sha256(destination),
        bytes=destination.stat().st_size, success=all(err is None for _, _, err in results),
    )
    return record, results


def _tree_size(path):
    total = 0
    for root, _, files in os.walk(path):
        for f in files:
            try:
                total += os.path.getsize(os.path.join(root, f))
            except OSError:
                pass
    return total


def extract_archive(archive_path, destination):
    """Validate an archive and extract it over `destination` in place."""
    validate_archive(archive_path)
    try:
        with tarfile.open(archive_path, mode='r:gz') as tar:
            _extract_all(tar, destination)
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise RestoreError(f"Extracting {archive_path} into {destination} failed: {e}")

"""
Remote mirroring of the backup root and the synchronize stage.

A mirror replicates the top-level entries of the backup root: archive
files and whole set directories. Destination entries missing from the
source are deleted. An entry is compared by size; a directory's size is
the total of the files beneath it. Supported destinations:
- RobocopyMirror: Windows share \\\\server\\share via robocopy /MIR
- DirectoryMirror: mounted directory <server>/<share>, copied in-process
- SftpMirror: remote directory <share> on SSH host <server>
- S3Mirror: key prefix <share> in bucket <server>
"""

import logging
import os
import posixpath
import shutil
import stat
from abc import ABC, abstractmethod
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from rotator.utils.crypto import resolve_secret
from rotator.utils.process import run_tool, ToolError
from .joblog import write_output_log
from .messages import Msg
from .policy import RotationTier
from .result import JobResult, Status

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE = ['*logs*']


class MirrorError(Exception):
    """Raised when a listing or mirror operation fails."""

    def __init__(self, message: str, output_lines: Optional[List[str]] = None):
        super().__init__(message)
        self.output_lines = output_lines or []


def is_excluded(name: str, patterns: Iterable[str]) -> bool:
    """
    Check if an entry name matches any exclusion pattern.

    Args:
        name: File name (no directory part)
        patterns: Glob patterns such as '*logs*'

    Returns:
        True if the name matches any pattern
    """
    return any(fnmatch(name, pattern) for pattern in patterns)


def tree_size(directory) -> int:
    """Total size of the regular files beneath a directory. Raises OSError."""
    total = 0
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                total += tree_size(entry.path)
            elif entry.is_file(follow_symlinks=False):
                total += entry.stat().st_size
    return total


def list_local_entries(directory) -> Dict[str, int]:
    """
    Top-level files and directories of a directory mapped to their size.

    Raises:
        MirrorError: If the directory cannot be read
    """
    entries_by_name = {}
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    entries_by_name[entry.name] = tree_size(entry.path)
                elif entry.is_file(follow_symlinks=False):
                    entries_by_name[entry.name] = entry.stat().st_size
    except OSError as e:
        raise MirrorError(f"Cannot list {directory}: {e}") from e
    return entries_by_name


def remove_local_entry(path: Path):
    """Delete a file or a whole directory tree if it exists."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def scope_listing(listing: Dict[str, int], tier: RotationTier, patterns: Iterable[str]) -> Dict[str, int]:
    """Keep the entries of one tier that are not excluded."""
    patterns = list(patterns)
    return {
        name: size for name, size in listing.items()
        if tier.label in name and not is_excluded(name, patterns)
    }


class Mirror(ABC):
    """One-way mirror of the top-level entries of a local directory."""

    def __init__(self, exclude: Optional[List[str]] = None):
        self.exclude = list(DEFAULT_EXCLUDE if exclude is None else exclude)

    @property
    @abstractmethod
    def destination(self) -> str:
        """Human-readable destination for messages."""

    @abstractmethod
    def is_reachable(self) -> bool:
        """Check that the destination can be listed."""

    @abstractmethod
    def list_files(self) -> Dict[str, int]:
        """Top-level destination entries mapped to their size. Raises MirrorError."""

    @abstractmethod
    def mirror(self, source_dir) -> List[str]:
        """Make the destination match source_dir. Returns tool output lines, raises MirrorError."""

    def close(self):
        """Release connections. Local mirrors hold none."""
        pass

    def _plan(self, source: Dict[str, int], destination: Dict[str, int]):
        """Names to copy (missing or size differs) and to delete (not in source)."""
        to_copy = sorted(
            name for name, size in source.items()
            if not is_excluded(name, self.exclude) and destination.get(name) != size
        )
        to_delete = sorted(
            name for name in destination
            if name not in source and not is_excluded(name, self.exclude)
        )
        return to_copy, to_delete


class DirectoryMirror(Mirror):
    """Mirror into a locally mounted directory."""

    def __init__(self, destination_path, exclude: Optional[List[str]] = None):
        super().__init__(exclude)
        self.destination_path = Path(destination_path)

    @property
    def destination(self) -> str:
        return str(self.destination_path)

    def is_reachable(self) -> bool:
        return self.destination_path.is_dir()

    def list_files(self) -> Dict[str, int]:
        return list_local_entries(self.destination_path)

    def mirror(self, source_dir) -> List[str]:
        source_dir = Path(source_dir)
        source = list_local_entries(source_dir)
        destination = self.list_files()

        to_copy, to_delete = self._plan(source, destination)
        # Same size but newer source still needs a copy
        to_copy = sorted(set(to_copy) | {
            name for name in source
            if name in destination and not is_excluded(name, self.exclude)
            and self._is_newer(source_dir / name, self.destination_path / name)
        })

        lines = []
        try:
            for name in to_copy:
                target = self.destination_path / name
                remove_local_entry(target)
                if (source_dir / name).is_dir():
                    shutil.copytree(source_dir / name, target)
                else:
                    shutil.copy2(source_dir / name, target)
                lines.append(f"Copied: {name} ({source[name]} bytes)")
            for name in to_delete:
                remove_local_entry(self.destination_path / name)
                lines.append(f"Deleted: {name}")
        except OSError as e:
            lines.append(f"Error: {e}")
            raise MirrorError(f"Mirror to {self.destination} failed: {e}", lines) from e

        lines.append(f"Copied {len(to_copy)}, deleted {len(to_delete)}")
        return lines

    @staticmethod
    def _is_newer(source: Path, target: Path) -> bool:
        try:
            return int(source.stat().st_mtime) > int(target.stat().st_mtime)
        except OSError:
            return True


class RobocopyMirror(DirectoryMirror):
    """Mirror to a Windows share with robocopy."""

    def __init__(self, server: str, share: str, exclude: Optional[List[str]] = None, executable: str = 'robocopy'):
        super().__init__(f"\\\\{server}\\{share}", exclude)
        self.executable = executable

    @property
    def destination(self) -> str:
        # Path() would normalize the UNC prefix on non-Windows hosts
        return str(self.destination_path)

    def build_command(self, source_dir) -> List[str]:
        args = [
            self.executable, str(source_dir), self.destination,
            '/MIR', '/R:2', '/W:5', '/NP',
        ]
        if self.exclude:
            args.append('/XF')
            args.extend(self.exclude)
            args.append('/XD')
            args.extend(self.exclude)
        return args

    def mirror(self, source_dir) -> List[str]:
        try:
            outcome = run_tool(self.build_command(source_dir))
        except ToolError as e:
            raise MirrorError(str(e)) from e

        # robocopy exit codes below 8 mean success with or without copies
        if outcome.returncode >= 8:
            raise MirrorError(f"robocopy failed with code {outcome.returncode}", outcome.output_lines)

        return outcome.output_lines


class SftpMirror(Mirror):
    """
    Mirror to a directory on an SSH host over SFTP.

    The connection is opened on first use and kept until close().
    """

    def __init__(
        self,
        host: str,
        remote_dir: str,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        port: int = 22,
        exclude: Optional[List[str]] = None
    ):
        super().__init__(exclude)
        self.host = host
        self.remote_dir = remote_dir
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.port = port

        self.ssh_client = None
        self.sftp_client = None

    @property
    def destination(self) -> str:
        return f"sftp://{self.host}:{self.port}{posixpath.join('/', self.remote_dir)}"

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            MirrorError: If connection fails
        """
        if self.sftp_client is not None:
            return

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise MirrorError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise MirrorError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except paramiko.AuthenticationException as e:
            raise MirrorError(f"SSH authentication failed: {e}") from e
        except paramiko.SSHException as e:
            raise MirrorError(f"SSH connection failed: {e}") from e
        except OSError as e:
            raise MirrorError(f"Failed to connect to {self.host}: {e}") from e

    def is_reachable(self) -> bool:
        try:
            self._connect()
            return stat.S_ISDIR(self.sftp_client.stat(self.remote_dir).st_mode)
        except (MirrorError, paramiko.SSHException, OSError) as e:
            logger.warning(f"SFTP destination {self.destination} not reachable: {e}")
            return False

    def _remote_size(self, path: str) -> int:
        total = 0
        for item in self.sftp_client.listdir_attr(path):
            if stat.S_ISDIR(item.st_mode):
                total += self._remote_size(posixpath.join(path, item.filename))
            else:
                total += item.st_size
        return total

    def _list_remote(self) -> Dict[str, tuple]:
        """Top-level remote entries mapped to (size, is_dir)."""
        self._connect()
        entries = {}
        try:
            for item in self.sftp_client.listdir_attr(self.remote_dir):
                if stat.S_ISDIR(item.st_mode):
                    size = self._remote_size(posixpath.join(self.remote_dir, item.filename))
                    entries[item.filename] = (size, True)
                else:
                    entries[item.filename] = (item.st_size, False)
        except (paramiko.SSHException, OSError) as e:
            raise MirrorError(f"Cannot list {self.destination}: {e}") from e
        return entries

    def list_files(self) -> Dict[str, int]:
        return {name: size for name, (size, _) in self._list_remote().items()}

    def _upload(self, local: Path, remote: str):
        if local.is_dir():
            self.sftp_client.mkdir(remote)
            for child in sorted(local.iterdir()):
                self._upload(child, posixpath.join(remote, child.name))
        else:
            self.sftp_client.put(str(local), remote)

    def _remove(self, remote: str, is_dir: bool):
        if not is_dir:
            self.sftp_client.remove(remote)
            return
        for item in self.sftp_client.listdir_attr(remote):
            self._remove(posixpath.join(remote, item.filename), stat.S_ISDIR(item.st_mode))
        self.sftp_client.rmdir(remote)

    def mirror(self, source_dir) -> List[str]:
        source_dir = Path(source_dir)
        remote = self._list_remote()
        to_copy, to_delete = self._plan(
            list_local_entries(source_dir),
            {name: size for name, (size, _) in remote.items()}
        )

        lines = []
        try:
            for name in to_copy:
                target = posixpath.join(self.remote_dir, name)
                if name in remote:
                    self._remove(target, remote[name][1])
                self._upload(source_dir / name, target)
                lines.append(f"Uploaded: {name}")
            for name in to_delete:
                self._remove(posixpath.join(self.remote_dir, name), remote[name][1])
                lines.append(f"Deleted: {name}")
        except (paramiko.SSHException, OSError) as e:
            lines.append(f"Error: {e}")
            raise MirrorError(f"Mirror to {self.destination} failed: {e}", lines) from e

        lines.append(f"Uploaded {len(to_copy)}, deleted {len(to_delete)}")
        return lines

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


class S3Mirror(Mirror):
    """
    Mirror to a key prefix in an S3 bucket.

    Objects directly under the prefix play the role of top-level files; a
    set directory becomes the objects under '<prefix>/<set name>/' plus an
    empty marker object with that key.
    """

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        exclude: Optional[List[str]] = None
    ):
        super().__init__(exclude)
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise MirrorError(f"Failed to initialize S3 client: {e}") from e

    @property
    def destination(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def is_reachable(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3 destination {self.destination} not reachable: {e}")
            return False

    def list_files(self) -> Dict[str, int]:
        key_prefix = f"{self.prefix}/" if self.prefix else ''
        files = {}

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(key_prefix):].split('/', 1)[0]
                    if name:
                        files[name] = files.get(name, 0) + obj['Size']
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise MirrorError(f"S3 list failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise MirrorError(f"S3 list failed: {e}") from e

        return files

    def _upload(self, local: Path, name: str):
        if not local.is_dir():
            self.s3_client.upload_file(str(local), self.bucket_name, self._key(name))
            return

        set_key = self._key(name)
        self.s3_client.put_object(Bucket=self.bucket_name, Key=f"{set_key}/", Body=b'')
        for path in sorted(local.rglob('*')):
            if path.is_file():
                key = f"{set_key}/{path.relative_to(local).as_posix()}"
                self.s3_client.upload_file(str(path), self.bucket_name, key)

    def _delete(self, name: str):
        """Delete the object for a name and every object under it."""
        set_key = self._key(name)
        paginator = self.s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=set_key):
            for obj in page.get('Contents', []):
                if obj['Key'] == set_key or obj['Key'].startswith(f"{set_key}/"):
                    self.s3_client.delete_object(Bucket=self.bucket_name, Key=obj['Key'])

    def mirror(self, source_dir) -> List[str]:
        source_dir = Path(source_dir)
        destination = self.list_files()
        to_copy, to_delete = self._plan(list_local_entries(source_dir), destination)

        lines = []
        try:
            for name in to_copy:
                if name in destination:
                    self._delete(name)
                self._upload(source_dir / name, name)
                lines.append(f"Uploaded: {self._key(name)}")
            for name in to_delete:
                self._delete(name)
                lines.append(f"Deleted: {self._key(name)}")
        except (ClientError, BotoCoreError, OSError) as e:
            lines.append(f"Error: {e}")
            raise MirrorError(f"Mirror to {self.destination} failed: {e}", lines) from e

        lines.append(f"Uploaded {len(to_copy)}, deleted {len(to_delete)}")
        return lines


def create_mirror(settings) -> Optional[Mirror]:
    """
    Factory function to create the configured mirror.

    Returns:
        Mirror instance, or None when SYNC_SERVER or SYNC_SHARE is missing

    Raises:
        ValueError: If SYNC_METHOD is invalid
    """
    server = settings.get('SYNC_SERVER')
    share = settings.get('SYNC_SHARE')
    if not server or not share:
        return None

    method = settings.get('SYNC_METHOD', 'robocopy')
    exclude = settings.get('SYNC_EXCLUDE')

    if method == 'robocopy':
        return RobocopyMirror(server, share, exclude)
    elif method == 'copy':
        return DirectoryMirror(Path(server) / share, exclude)
    elif method == 'sftp':
        return SftpMirror(
            host=server,
            remote_dir=share,
            username=settings.get('SYNC_USERNAME'),
            password=resolve_secret(settings, 'SYNC_PASSWORD'),
            private_key=settings.get('SYNC_PRIVATE_KEY'),
            port=settings.get('SYNC_PORT', 22),
            exclude=exclude,
        )
    elif method == 's3':
        return S3Mirror(
            bucket_name=server,
            prefix=share,
            access_key=settings.get('SYNC_USERNAME'),
            secret_key=resolve_secret(settings, 'SYNC_PASSWORD'),
            region=settings.get('SYNC_REGION', 'us-east-1'),
            exclude=exclude,
        )
    else:
        raise ValueError(f"Invalid sync method: {method}")


def _snapshot(mirror: Mirror, source_dir, tier: RotationTier):
    """Tier-scoped source and destination listings."""
    source = scope_listing(list_local_entries(source_dir), tier, mirror.exclude)
    destination = scope_listing(mirror.list_files(), tier, mirror.exclude)
    return source, destination


def synchronize(mirror: Optional[Mirror], source_dir, tier: RotationTier, result: JobResult, mirror_log_path) -> Status:
    """
    Mirror the backup root to the remote destination and verify parity.

    Skips the mirror when the tier-scoped listings already match, so a
    repeated call without source changes is a no-op. Never touches source
    data.

    Args:
        mirror: Configured mirror, or None when no destination is configured
        source_dir: Backup root
        tier: Tier whose sets are compared
        result: Job record
        mirror_log_path: File receiving the mirror tool output

    Returns:
        The synchronization sub-state recorded
    """
    if mirror is None:
        result.set_synchronization(Status.ERROR)
        result.fail(Msg.SYNC_NOT_CONFIGURED)
        return Status.ERROR

    if not mirror.is_reachable():
        result.set_synchronization(Status.ERROR)
        result.fail(Msg.SYNC_UNREACHABLE, destination=mirror.destination)
        return Status.ERROR

    try:
        source, destination = _snapshot(mirror, source_dir, tier)
    except MirrorError as e:
        result.set_synchronization(Status.ERROR)
        result.fail(Msg.SYNC_FAULT, error=e, mirror_log=None)
        return Status.ERROR

    if source == destination:
        result.set_synchronization(Status.SUCCESSFUL)
        result.info(Msg.SYNC_IN_SYNC, destination=mirror.destination)
        return Status.SUCCESSFUL

    result.info(Msg.SYNC_START, source=source_dir, destination=mirror.destination)

    try:
        lines = mirror.mirror(source_dir)
    except MirrorError as e:
        result.mirror_log = write_output_log(mirror_log_path, e.output_lines or [str(e)])
        result.set_synchronization(Status.ERROR)
        result.fail(Msg.SYNC_FAULT, error=e, mirror_log=result.mirror_log)
        return Status.ERROR

    result.mirror_log = write_output_log(mirror_log_path, lines)

    try:
        source, destination = _snapshot(mirror, source_dir, tier)
    except MirrorError as e:
        result.set_synchronization(Status.ERROR)
        result.fail(Msg.SYNC_FAULT, error=e, mirror_log=result.mirror_log)
        return Status.ERROR

    if source == destination:
        result.set_synchronization(Status.SUCCESSFUL)
        result.info(Msg.SYNC_SUCCESS, mirror_log=result.mirror_log)
        return Status.SUCCESSFUL

    result.set_synchronization(Status.ERROR)
    result.fail(Msg.SYNC_MISMATCH, mirror_log=result.mirror_log)
    return Status.ERROR

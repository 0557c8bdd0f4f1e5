"""
Archivers and the compress stage.

The produced set directory is replaced by a single archive file
<root>/<set name>.<ext>. Archivers:
- SevenZipArchiver: external 7z executable (7z, zip)
- BuiltinArchiver: in-process tarfile/zipfile (zip, tar, tar.gz, tar.bz2, tar.xz)
"""

import logging
import os
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from rotator.utils.process import run_tool, ToolError
from .joblog import write_output_log
from .messages import Msg
from .result import JobResult, Status

ARCHIVE_EXTENSIONS = {
    '7z': '7z',
    'zip': 'zip',
    'tar': 'tar',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
}

TAR_MODES = {
    'tar': 'w',
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
}

SEVEN_ZIP_SUCCESS_MARKER = 'Everything is Ok'


class ArchiverError(Exception):
    """Raised when the archiver cannot produce an archive at all."""
    pass


@dataclass(frozen=True)
class ArchiveOutcome:
    """`ok` is False when the tool ran but reported an anomaly."""
    ok: bool
    output_lines: List[str] = field(default_factory=list)


class Archiver(ABC):

    @abstractmethod
    def archive(self, source_dir: Path, archive_path: Path) -> ArchiveOutcome:
        """Archive the contents of source_dir into archive_path."""


def archive_path_for(root, set_name: str, archive_format: str) -> Path:
    """
    Archive file replacing a set directory.

    Raises:
        ValueError: If archive_format is not supported
    """
    if archive_format not in ARCHIVE_EXTENSIONS:
        raise ValueError(
            f"Invalid archive format: {archive_format}. "
            f"Valid options: {list(ARCHIVE_EXTENSIONS.keys())}"
        )
    return Path(root) / f"{set_name}.{ARCHIVE_EXTENSIONS[archive_format]}"


class SevenZipArchiver(Archiver):
    """
    Archives with the 7-Zip command-line tool.

    Exit code 0 with the success marker as last output line is a clean run;
    exit code 1 or a different last line is an anomaly; anything higher is
    a fault.
    """

    def __init__(self, executable: str = '7z', archive_format: str = '7z'):
        if archive_format not in ('7z', 'zip'):
            raise ValueError(f"7-Zip archiver supports 7z and zip, not {archive_format}")
        self.executable = executable
        self.archive_format = archive_format

    def build_command(self, source_dir: Path, archive_path: Path) -> List[str]:
        return [
            self.executable, 'a', f'-t{self.archive_format}', '-y',
            str(archive_path), str(Path(source_dir) / '*'),
        ]

    def archive(self, source_dir: Path, archive_path: Path) -> ArchiveOutcome:
        try:
            outcome = run_tool(self.build_command(source_dir, archive_path))
        except ToolError as e:
            raise ArchiverError(str(e)) from e

        if outcome.returncode > 1:
            raise ArchiverError(f"7-Zip failed with code {outcome.returncode}: {outcome.last_line}")

        ok = outcome.returncode == 0 and outcome.last_line == SEVEN_ZIP_SUCCESS_MARKER
        return ArchiveOutcome(ok=ok, output_lines=outcome.output_lines)


class BuiltinArchiver(Archiver):
    """Archives in-process with tarfile/zipfile."""

    def __init__(self, archive_format: str = 'tar.gz'):
        if archive_format not in TAR_MODES and archive_format != 'zip':
            raise ValueError(
                f"Invalid archive format: {archive_format}. "
                f"Valid options: {['zip'] + list(TAR_MODES.keys())}"
            )
        self.archive_format = archive_format

    def archive(self, source_dir: Path, archive_path: Path) -> ArchiveOutcome:
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ArchiverError(f"Path does not exist: {source_dir}")

        try:
            if self.archive_format == 'zip':
                count = _create_zip(source_dir, archive_path)
            else:
                count = _create_tar(source_dir, archive_path, TAR_MODES[self.archive_format])
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            # Clean up partial archive on failure
            if os.path.exists(archive_path):
                try:
                    os.remove(archive_path)
                except OSError:
                    pass
            raise ArchiverError(f"Failed to create archive: {e}") from e

        return ArchiveOutcome(ok=True, output_lines=[
            f"Archived {count} files from {source_dir}",
            f"Archive: {archive_path} ({os.path.getsize(archive_path)} bytes)",
        ])


def _create_zip(source_dir: Path, archive_path: Path) -> int:
    """Zip every file below source_dir under the directory's own name."""
    count = 0
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True) as zipf:
        for item in sorted(source_dir.rglob('*')):
            if item.is_file():
                zipf.write(item, item.relative_to(source_dir.parent))
                count += 1
    return count


def _create_tar(source_dir: Path, archive_path: Path, mode: str) -> int:
    count = 0
    with tarfile.open(archive_path, mode) as tar:
        tar.add(source_dir, arcname=source_dir.name, recursive=True)
        count = sum(1 for member in tar.getmembers() if member.isfile())
    return count


def create_archiver(settings) -> Archiver:
    """
    Factory function to create the configured archiver.

    Raises:
        ValueError: If ARCHIVER or ARCHIVE_FORMAT is invalid
    """
    archiver = settings.get('ARCHIVER', '7zip')
    archive_format = settings.get('ARCHIVE_FORMAT', '7z')

    if archiver == '7zip':
        return SevenZipArchiver(settings.get('SEVEN_ZIP_PATH') or '7z', archive_format)
    elif archiver == 'builtin':
        return BuiltinArchiver(archive_format)
    else:
        raise ValueError(f"Invalid archiver: {archiver}")


def compress_backup_set(archiver: Archiver, source_dir, archive_path, result: JobResult, side_log_path) -> Status:
    """
    Replace a set directory with a single archive.

    - source directory missing: compression ERROR, overall ERROR, nothing done
    - archiver fault: compression ERROR, overall WARNING, source kept
    - clean run: compression SUCCESSFUL, source deleted
    - anomaly: compression WARNING, overall WARNING, tool output saved to
      side_log_path, source still deleted

    Args:
        archiver: Archiver to run
        source_dir: Set directory produced by the engine
        archive_path: Archive file to create
        result: Job record
        side_log_path: Where archiver output goes on an anomaly

    Returns:
        The compression sub-state recorded
    """
    source_dir = Path(source_dir)
    archive_path = Path(archive_path)

    if not source_dir.is_dir():
        result.set_compression(Status.ERROR)
        result.fail(Msg.COMPRESS_NO_SOURCE, source=source_dir)
        return Status.ERROR

    result.info(Msg.COMPRESS_START, source=source_dir, archive=archive_path)

    try:
        outcome = archiver.archive(source_dir, archive_path)
    except ArchiverError as e:
        result.set_compression(Status.ERROR)
        result.log(logging.ERROR, Msg.COMPRESS_FAULT, error=e)
        result.escalate(Status.WARNING)
        return Status.ERROR

    if outcome.ok:
        status = Status.SUCCESSFUL
        result.info(Msg.COMPRESS_SUCCESS, archive=archive_path)
    else:
        status = Status.WARNING
        written = write_output_log(side_log_path, outcome.output_lines)
        detail = next((line.strip() for line in reversed(outcome.output_lines) if line.strip()), 'no output')
        result.warn(Msg.COMPRESS_WARNING, detail=detail, side_log=written)

    try:
        shutil.rmtree(source_dir)
    except OSError as e:
        result.warn(Msg.SOURCE_REMOVE_FAILED, source=source_dir, error=e)

    if archive_path.exists():
        result.artifact = str(archive_path)
    result.set_compression(status)
    return status

"""
Shared pytest fixtures for rotator tests.

This module provides fixtures for:
- Settings pointing at temporary directories
- Backup root with pre-existing backup sets
- Fake backup engine and archiver
- History store on a temporary SQLite database
- Mock fixtures for external services (S3, SSH)
"""

import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from rotator.config import Settings, DevelopmentConfig
from rotator.backup.compression import Archiver, ArchiveOutcome
from rotator.backup.engine import BackupEngine, EngineJob
from rotator.backup.policy import RotationTier
from rotator.backup.result import JobResult
from rotator.models import HistoryStore


@pytest.fixture(scope='function')
def settings(tmp_path):
    """
    Development settings with every path inside tmp_path.

    Compression, synchronization and notification are disabled.
    """
    settings = Settings()
    settings.from_object(DevelopmentConfig)

    backup_root = tmp_path / 'backups'
    backup_root.mkdir()

    settings.update({
        'HOST_ID': 'SRV01',
        'DATA_DIR': str(tmp_path),
        'BACKUP_ROOT': str(backup_root),
        'LOG_DIR': str(tmp_path / 'logs'),
        'DATABASE_URL': f"sqlite:///{tmp_path / 'rotator.db'}",
        'CONFIG_PATH': None,
        'RETENTION_MONTHLY': 2,
        'RETENTION_WEEKLY': 4,
        'RETENTION_DAILY': 15,
        'COMPRESS_ENABLED': False,
        'ARCHIVER': 'builtin',
        'ARCHIVE_FORMAT': 'tar.gz',
        'SYNC_ENABLED': False,
        'SYNC_METHOD': 'copy',
        'SYNC_SERVER': None,
        'SYNC_SHARE': None,
        'SYNC_EXCLUDE': ['*logs*'],
        'NOTIFY_ENABLED': False,
        'SECRET_KEY': 'test-secret-key',
    })
    return settings


@pytest.fixture
def backup_root(settings):
    """Path of the (existing) backup root."""
    from pathlib import Path
    return Path(settings['BACKUP_ROOT'])


@pytest.fixture
def make_backup_set():
    """
    Factory creating a backup set directory (or archive file) with a given age.

    Usage:
        make_backup_set(root, 'SRV01-Weekly-W01', datetime(2024, 1, 1))
    """
    def _make(root, name, modified, archive=False, content=b'backup data'):
        path = root / name
        if archive:
            path.write_bytes(content)
        else:
            path.mkdir()
            (path / 'image.vhdx').write_bytes(content)

        timestamp = modified.timestamp()
        os.utime(path, (timestamp, timestamp))
        return path

    return _make


@pytest.fixture
def job_result():
    """Open JobResult for a weekly run."""
    return JobResult(
        backup_type='BareMetal',
        tier=RotationTier.WEEKLY,
        set_name='SRV01-Weekly-W03',
        host_id='SRV01',
        started_at=datetime(2024, 1, 15, 22, 0, 0),
    )


class FakeEngine(BackupEngine):
    """
    In-memory backup engine.

    submit() writes an image file into the destination and appends a job
    to the history; last_job() returns the newest job.
    """

    def __init__(self, result_code=0, write_files=True, start=None):
        self.result_code = result_code
        self.write_files = write_files
        self.jobs = []
        self.policies = []
        self._next_start = start or datetime(2024, 1, 15, 22, 0, 5)

    def submit(self, policy):
        self.policies.append(policy)
        if self.write_files:
            with open(os.path.join(policy.destination, 'image.vhdx'), 'wb') as f:
                f.write(b'disk image' * 100)

        start = self._next_start
        self._next_start = start + timedelta(days=1)
        self.jobs.append(EngineJob(
            start_time=start,
            end_time=start + timedelta(minutes=30),
            result_code=self.result_code,
            failure_log_path='C:\\Windows\\Logs\\WindowsServerBackup\\Backup_Error.log' if self.result_code else None,
        ))

    def last_job(self):
        return self.jobs[-1] if self.jobs else None


class FakeArchiver(Archiver):
    """Archiver that writes a small file and reports a configurable outcome."""

    def __init__(self, ok=True, output_lines=None):
        self.ok = ok
        self.output_lines = output_lines or ['Everything is Ok']
        self.calls = []

    def archive(self, source_dir, archive_path):
        self.calls.append((source_dir, archive_path))
        with open(archive_path, 'wb') as f:
            f.write(b'archive')
        return ArchiveOutcome(ok=self.ok, output_lines=list(self.output_lines))


@pytest.fixture
def fake_engine():
    """Fake engine whose jobs succeed."""
    return FakeEngine()


@pytest.fixture
def fake_archiver():
    """Fake archiver reporting a clean run."""
    return FakeArchiver()


@pytest.fixture
def history_store(tmp_path):
    """History store on a fresh SQLite file."""
    store = HistoryStore(f"sqlite:///{tmp_path / 'history.db'}")
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; the SFTP client is
    mock_ssh_client.return_value.open_sftp.return_value.
    """
    with patch('rotator.backup.mirror.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Drop the module-level scheduler between tests."""
    import rotator.scheduler as scheduler_module
    yield
    scheduler_module.scheduler = None
    scheduler_module.job_settings = None


@pytest.fixture(autouse=True)
def detach_job_handlers():
    """Make sure no job log file handler leaks into the next test."""
    import logging
    yield
    job_logger = logging.getLogger('rotator.job')
    for handler in list(job_logger.handlers):
        job_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way pytest left it."""
    import logging
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def engine_factory():
    """The FakeEngine class, for tests needing a non-default engine."""
    return FakeEngine


@pytest.fixture
def archiver_factory():
    """The FakeArchiver class, for tests needing a non-default outcome."""
    return FakeArchiver

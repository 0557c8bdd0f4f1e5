"""
Unit tests for mirrors and the synchronize stage (rotator/backup/mirror.py).

Tests DirectoryMirror, RobocopyMirror, SftpMirror, S3Mirror and synchronize().
"""

import stat
from unittest.mock import MagicMock, patch

import pytest

from rotator.backup.mirror import (
    DirectoryMirror,
    MirrorError,
    RobocopyMirror,
    S3Mirror,
    SftpMirror,
    create_mirror,
    is_excluded,
    list_local_entries,
    scope_listing,
    synchronize,
)
from rotator.backup.policy import RotationTier
from rotator.backup.result import Status
from rotator.utils.crypto import SecretManager
from rotator.utils.process import ToolResult


@pytest.fixture
def source_root(backup_root):
    """Backup root holding two weekly archives, one daily archive and a set directory."""
    (backup_root / 'SRV01-Weekly-W02.7z').write_bytes(b'week two')
    (backup_root / 'SRV01-Weekly-W03.7z').write_bytes(b'week three!')
    (backup_root / 'SRV01-Daily-W03-Tuesday.7z').write_bytes(b'tuesday')
    (backup_root / 'SRV01-Weekly-W04').mkdir()
    (backup_root / 'SRV01-Weekly-W04' / 'image.vhdx').write_bytes(b'disk image')
    (backup_root / 'SRV01-Weekly-W04' / 'Catalog').mkdir()
    (backup_root / 'SRV01-Weekly-W04' / 'Catalog' / 'GlobalCatalog').write_bytes(b'cat')
    return backup_root


@pytest.fixture
def destination(tmp_path):
    """Mounted destination with one stale set and one log file."""
    path = tmp_path / 'nas' / 'backups'
    path.mkdir(parents=True)
    (path / 'SRV01-Weekly-W01.7z').write_bytes(b'week one')
    (path / 'rotator-logs.txt').write_text('remote log')
    return path


class TestListings:
    """Test listing helpers and exclusion."""

    def test_is_excluded(self):
        """Test glob exclusion."""
        assert is_excluded('rotator-logs.txt', ['*logs*'])
        assert not is_excluded('SRV01-Weekly-W01.7z', ['*logs*'])
        assert not is_excluded('anything', [])

    def test_list_local_entries(self, source_root):
        """Test set directories are listed with the total size of their files."""
        entries = list_local_entries(source_root)

        assert entries['SRV01-Weekly-W03.7z'] == len(b'week three!')
        assert entries['SRV01-Weekly-W04'] == len(b'disk image') + len(b'cat')
        assert 'image.vhdx' not in entries

    def test_list_local_entries_missing(self, tmp_path):
        """Test an unreadable directory raises MirrorError."""
        with pytest.raises(MirrorError):
            list_local_entries(tmp_path / 'missing')

    def test_scope_listing(self):
        """Test tier scoping and exclusion."""
        listing = {
            'SRV01-Weekly-W01.7z': 1,
            'SRV01-Daily-W01-Tuesday.7z': 2,
            'SRV01-Weekly-logs.txt': 3,
        }

        assert scope_listing(listing, RotationTier.WEEKLY, ['*logs*']) == {'SRV01-Weekly-W01.7z': 1}


class TestDirectoryMirror:
    """Test the in-process mirror."""

    def test_mirror_copies_and_deletes(self, source_root, destination):
        """Test the destination ends up matching the source."""
        mirror = DirectoryMirror(destination)

        lines = mirror.mirror(source_root)

        assert (destination / 'SRV01-Weekly-W03.7z').read_bytes() == b'week three!'
        assert (destination / 'SRV01-Daily-W03-Tuesday.7z').exists()
        assert not (destination / 'SRV01-Weekly-W01.7z').exists()
        assert (destination / 'SRV01-Weekly-W04' / 'Catalog' / 'GlobalCatalog').read_bytes() == b'cat'
        assert any('Deleted: SRV01-Weekly-W01.7z' in line for line in lines)

    def test_mirror_keeps_excluded_files(self, source_root, destination):
        """Test excluded destination files are not deleted."""
        DirectoryMirror(destination).mirror(source_root)

        assert (destination / 'rotator-logs.txt').exists()

    def test_reachability(self, tmp_path):
        """Test a missing destination is unreachable."""
        assert not DirectoryMirror(tmp_path / 'missing').is_reachable()
        assert DirectoryMirror(tmp_path).is_reachable()


class TestRobocopyMirror:
    """Test robocopy invocation."""

    def test_command(self):
        """Test mirror arguments and exclusions for files and directories."""
        mirror = RobocopyMirror('nas01', 'backups', exclude=['*logs*'])
        args = mirror.build_command('D:\\Backups')

        assert args[:3] == ['robocopy', 'D:\\Backups', '\\\\nas01\\backups']
        assert '/MIR' in args
        assert '/LEV:1' not in args
        assert args[-4:] == ['/XF', '*logs*', '/XD', '*logs*']

    @patch('rotator.backup.mirror.run_tool')
    def test_copy_exit_codes_succeed(self, mock_run_tool):
        """Test exit codes below 8 are success."""
        mock_run_tool.return_value = ToolResult(['robocopy'], 3, ['Files : 2 2 0'])

        lines = RobocopyMirror('nas01', 'backups').mirror('D:\\Backups')

        assert lines == ['Files : 2 2 0']

    @patch('rotator.backup.mirror.run_tool')
    def test_failure_exit_code(self, mock_run_tool):
        """Test exit code 8 and above raises with the tool output."""
        mock_run_tool.return_value = ToolResult(['robocopy'], 16, ['ERROR 53 (0x00000035)'])

        with pytest.raises(MirrorError) as exc_info:
            RobocopyMirror('nas01', 'backups').mirror('D:\\Backups')

        assert exc_info.value.output_lines == ['ERROR 53 (0x00000035)']


class TestS3Mirror:
    """Test S3Mirror against moto."""

    def _mirror(self, prefix='srv01'):
        return S3Mirror(
            bucket_name='test-bucket',
            prefix=prefix,
            access_key='test_access_key',
            secret_key='test_secret_key',
            region='us-east-1',
        )

    def test_reachable(self, mock_s3):
        """Test an existing bucket is reachable and a missing one is not."""
        assert self._mirror().is_reachable()

        missing = S3Mirror('missing-bucket', access_key='k', secret_key='s')
        assert not missing.is_reachable()

    def test_list_files_groups_set_directories(self, mock_s3):
        """Test nested objects are summed under their top-level name."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='srv01/SRV01-Weekly-W01.7z', Body=b'12345')
        bucket.put_object(Key='srv01/SRV01-Weekly-W02/', Body=b'')
        bucket.put_object(Key='srv01/SRV01-Weekly-W02/image.vhdx', Body=b'abc')
        bucket.put_object(Key='srv01/SRV01-Weekly-W02/Catalog/GlobalCatalog', Body=b'xy')
        bucket.put_object(Key='other/SRV01-Weekly-W03.7z', Body=b'x')

        assert self._mirror().list_files() == {'SRV01-Weekly-W01.7z': 5, 'SRV01-Weekly-W02': 5}

    def test_mirror_uploads_and_deletes(self, mock_s3, source_root):
        """Test the prefix ends up matching the source."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='srv01/SRV01-Weekly-W01.7z', Body=b'week one')
        bucket.put_object(Key='srv01/SRV01-Weekly-W00/image.vhdx', Body=b'old image')
        bucket.put_object(Key='srv01/rotator-logs.txt', Body=b'log')

        mirror = self._mirror()
        mirror.mirror(source_root)

        keys = {obj.key for obj in bucket.objects.filter(Prefix='srv01/')}
        assert keys == {
            'srv01/SRV01-Weekly-W02.7z',
            'srv01/SRV01-Weekly-W03.7z',
            'srv01/SRV01-Daily-W03-Tuesday.7z',
            'srv01/SRV01-Weekly-W04/',
            'srv01/SRV01-Weekly-W04/image.vhdx',
            'srv01/SRV01-Weekly-W04/Catalog/GlobalCatalog',
            'srv01/rotator-logs.txt',
        }
        assert mirror.list_files()['SRV01-Weekly-W04'] == list_local_entries(source_root)['SRV01-Weekly-W04']


class TestSftpMirror:
    """Test SftpMirror with a mocked paramiko client."""

    def _attr(self, filename, size, mode=stat.S_IFREG | 0o644):
        attr = MagicMock()
        attr.filename = filename
        attr.st_size = size
        attr.st_mode = mode
        return attr

    def test_connects_with_password(self, mock_ssh_client):
        """Test password authentication parameters."""
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        mock_sftp.stat.return_value.st_mode = stat.S_IFDIR | 0o755

        mirror = SftpMirror('nas01', '/backups', 'backup', password='secret', port=2222)

        assert mirror.is_reachable()
        kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert kwargs['hostname'] == 'nas01'
        assert kwargs['port'] == 2222
        assert kwargs['password'] == 'secret'

    def test_unreachable_on_connection_error(self, mock_ssh_client):
        """Test a connection failure means unreachable."""
        mock_ssh_client.return_value.connect.side_effect = OSError('Connection refused')

        assert not SftpMirror('nas01', '/backups', 'backup', password='secret').is_reachable()

    def test_requires_credentials(self, mock_ssh_client):
        """Test a mirror without password or key is unreachable."""
        assert not SftpMirror('nas01', '/backups', 'backup').is_reachable()

    def test_mirror(self, mock_ssh_client, source_root):
        """Test uploads of new files and set directories and removal of stale ones."""
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        remote_tree = {
            '/backups': [
                self._attr('SRV01-Weekly-W01.7z', 8),
                self._attr('SRV01-Weekly-W02.7z', len(b'week two')),
                self._attr('SRV01-Weekly-W00', 0, stat.S_IFDIR | 0o755),
            ],
            '/backups/SRV01-Weekly-W00': [self._attr('image.vhdx', 9)],
        }
        mock_sftp.listdir_attr.side_effect = lambda path: remote_tree[path]

        mirror = SftpMirror('nas01', '/backups', 'backup', password='secret')
        mirror.mirror(source_root)
        mirror.close()

        uploaded = {call[0][1] for call in mock_sftp.put.call_args_list}
        assert uploaded == {
            '/backups/SRV01-Weekly-W03.7z',
            '/backups/SRV01-Daily-W03-Tuesday.7z',
            '/backups/SRV01-Weekly-W04/image.vhdx',
            '/backups/SRV01-Weekly-W04/Catalog/GlobalCatalog',
        }
        created = [call[0][0] for call in mock_sftp.mkdir.call_args_list]
        assert created == ['/backups/SRV01-Weekly-W04', '/backups/SRV01-Weekly-W04/Catalog']
        removed = {call[0][0] for call in mock_sftp.remove.call_args_list}
        assert removed == {'/backups/SRV01-Weekly-W01.7z', '/backups/SRV01-Weekly-W00/image.vhdx'}
        mock_sftp.rmdir.assert_called_once_with('/backups/SRV01-Weekly-W00')
        mock_sftp.close.assert_called_once()

    def test_list_files_sums_directories(self, mock_ssh_client):
        """Test a remote set directory is listed with the total size of its files."""
        mock_sftp = mock_ssh_client.return_value.open_sftp.return_value
        remote_tree = {
            '/backups': [self._attr('SRV01-Weekly-W04', 0, stat.S_IFDIR | 0o755)],
            '/backups/SRV01-Weekly-W04': [
                self._attr('image.vhdx', 10),
                self._attr('Catalog', 0, stat.S_IFDIR | 0o755),
            ],
            '/backups/SRV01-Weekly-W04/Catalog': [self._attr('GlobalCatalog', 3)],
        }
        mock_sftp.listdir_attr.side_effect = lambda path: remote_tree[path]

        mirror = SftpMirror('nas01', '/backups', 'backup', password='secret')

        assert mirror.list_files() == {'SRV01-Weekly-W04': 13}


class TestCreateMirror:
    """Test the mirror factory."""

    def test_unconfigured(self, settings):
        """Test no server or share means no mirror."""
        assert create_mirror(settings) is None

    def test_copy(self, settings, tmp_path):
        """Test the directory mirror joins server and share."""
        settings.update({'SYNC_SERVER': str(tmp_path), 'SYNC_SHARE': 'nas'})

        mirror = create_mirror(settings)

        assert isinstance(mirror, DirectoryMirror)
        assert mirror.destination == str(tmp_path / 'nas')

    def test_sftp_decrypts_password(self, settings, mock_ssh_client):
        """Test encrypted passwords are decrypted with SECRET_KEY."""
        settings.update({
            'SYNC_METHOD': 'sftp',
            'SYNC_SERVER': 'nas01',
            'SYNC_SHARE': '/backups',
            'SYNC_USERNAME': 'backup',
            'SYNC_PASSWORD': SecretManager('test-secret-key').encrypt('secret'),
        })

        mirror = create_mirror(settings)

        assert isinstance(mirror, SftpMirror)
        assert mirror.password == 'secret'

    def test_s3(self, settings, mock_s3):
        """Test bucket and prefix mapping."""
        settings.update({'SYNC_METHOD': 's3', 'SYNC_SERVER': 'test-bucket', 'SYNC_SHARE': '/srv01/'})

        mirror = create_mirror(settings)

        assert isinstance(mirror, S3Mirror)
        assert mirror.destination == 's3://test-bucket/srv01'

    def test_invalid_method(self, settings):
        """Test unknown methods raise ValueError."""
        settings.update({'SYNC_METHOD': 'ftp', 'SYNC_SERVER': 'nas01', 'SYNC_SHARE': 'backups'})

        with pytest.raises(ValueError):
            create_mirror(settings)


class TestSynchronize:
    """Test the synchronize stage."""

    def test_not_configured(self, source_root, job_result, tmp_path):
        """Test enabled sync without destination is an error."""
        status = synchronize(None, source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm.log')

        assert status is Status.ERROR
        assert job_result.synchronization is Status.ERROR
        assert job_result.state is Status.ERROR

    def test_unreachable(self, source_root, job_result, tmp_path):
        """Test an unreachable destination is an error."""
        mirror = DirectoryMirror(tmp_path / 'missing')

        status = synchronize(mirror, source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm.log')

        assert status is Status.ERROR
        assert job_result.state is Status.ERROR

    def test_mirror_then_verify(self, source_root, destination, job_result, tmp_path):
        """Test a successful mirror records the log and SUCCESSFUL."""
        mirror_log = tmp_path / 'mirror.log'

        status = synchronize(DirectoryMirror(destination), source_root, RotationTier.WEEKLY, job_result, mirror_log)

        assert status is Status.SUCCESSFUL
        assert job_result.synchronization is Status.SUCCESSFUL
        assert job_result.mirror_log == str(mirror_log)
        assert 'Deleted: SRV01-Weekly-W01.7z' in mirror_log.read_text()
        assert job_result.state is Status.UNSET

    def test_repeated_call_is_noop(self, source_root, destination, job_result, tmp_path):
        """Test a second call without source changes does not mirror again."""
        mirror = DirectoryMirror(destination)
        synchronize(mirror, source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm1.log')

        with patch.object(mirror, 'mirror', wraps=mirror.mirror) as spy:
            status = synchronize(mirror, source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm2.log')

        assert status is Status.SUCCESSFUL
        spy.assert_not_called()
        assert not (tmp_path / 'm2.log').exists()

    def test_mismatch_after_mirror(self, source_root, destination, job_result, tmp_path):
        """Test listings that still differ after mirroring are an error."""
        mirror = DirectoryMirror(destination)

        with patch.object(mirror, 'mirror', return_value=['nothing copied']):
            status = synchronize(mirror, source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm.log')

        assert status is Status.ERROR
        assert job_result.synchronization is Status.ERROR
        assert job_result.state is Status.ERROR

    def test_mirror_fault(self, source_root, destination, job_result, tmp_path):
        """Test a mirror fault is an error and its output is kept."""
        mirror = DirectoryMirror(destination)
        mirror_log = tmp_path / 'm.log'

        with patch.object(mirror, 'mirror', side_effect=MirrorError('share offline', ['ERROR 64'])):
            status = synchronize(mirror, source_root, RotationTier.WEEKLY, job_result, mirror_log)

        assert status is Status.ERROR
        assert 'ERROR 64' in mirror_log.read_text()

    def test_never_touches_source(self, source_root, destination, job_result, tmp_path):
        """Test the source listing is unchanged after sync."""
        before = list_local_entries(source_root)

        synchronize(DirectoryMirror(destination), source_root, RotationTier.WEEKLY, job_result, tmp_path / 'm.log')

        assert list_local_entries(source_root) == before

    def test_set_directory_is_mirrored(self, backup_root, tmp_path, job_result):
        """Test an uncompressed set directory reaches the destination."""
        set_dir = backup_root / 'SRV01-Weekly-W03'
        set_dir.mkdir()
        (set_dir / 'image.vhdx').write_bytes(b'disk image')
        nas = tmp_path / 'nas'
        nas.mkdir()

        status = synchronize(DirectoryMirror(nas), backup_root, RotationTier.WEEKLY, job_result, tmp_path / 'm.log')

        assert status is Status.SUCCESSFUL
        assert (nas / 'SRV01-Weekly-W03' / 'image.vhdx').read_bytes() == b'disk image'
        assert 'Copied: SRV01-Weekly-W03' in (tmp_path / 'm.log').read_text()

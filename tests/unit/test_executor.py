"""
Unit tests for backup executor (restore/backup/executor.py).

Tests the backup pipeline end to end against local storage: change
selection, archiving, encryption, upload ordering, retention, state
updates and cleanup on failure.
"""

import os
import base64
import zipfile
from unittest.mock import MagicMock

import pytest

from restore.backup.executor import BackupExecutor, BackupResult
from restore.backup.storage import StorageError
from restore.config import RetentionConfig
from restore.exceptions import BackupIOError, ConfigurationError, NotFoundError, ValidationError
from restore.models import BackupType
from restore.state import timestamp_from_artifact_path
from restore.utils.crypto import EncryptionService
from restore.utils.password import StaticPasswordProvider


@pytest.fixture
def executor(settings, state, work_dir):
    return BackupExecutor(settings, state, temp_dir=work_dir)


def _archive_names(path):
    with zipfile.ZipFile(path, 'r') as zipf:
        return sorted(zipf.namelist())


class TestBackupDirectory:
    """Test BackupExecutor.backup_directory."""

    @pytest.mark.asyncio
    async def test_first_backup(self, executor, source_dir, storage_root, state, work_dir):
        """Test a first backup uploads every eligible file and records it."""
        result = await executor.backup_directory(str(source_dir))

        assert isinstance(result, BackupResult)
        assert result.remote_path.startswith('backups/Documents/backup_Documents_')
        assert result.remote_path.endswith('.zip')
        assert result.files_backed_up == 3
        assert result.encrypted is False

        artifact = storage_root / result.remote_path
        assert artifact.exists()
        assert result.size_bytes == artifact.stat().st_size
        assert _archive_names(artifact) == ['nested/deep.txt', 'notes.txt', 'report.log']

        records = state.get_backups_for_group(str(source_dir))
        assert len(records) == 1
        assert records[0].path == result.remote_path
        assert records[0].storage_type == 'local'
        assert records[0].is_diff is False

        assert state.get_file_metadata(str(source_dir / 'notes.txt')) is not None
        assert os.path.exists(state.state_file_path)
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_unchanged_directory_is_noop(self, executor, source_dir, state):
        """Test a second run with no changes uploads nothing."""
        await executor.backup_directory(str(source_dir))

        result = await executor.backup_directory(str(source_dir))

        assert result.remote_path is None
        assert result.files_backed_up == 0
        assert len(state.get_backups_for_group(str(source_dir))) == 1

    @pytest.mark.asyncio
    async def test_incremental_backs_up_only_new_file(self, executor, source_dir, storage_root, state):
        """Test a new file after a backup is the only file in the next artifact."""
        await executor.backup_directory(str(source_dir))
        (source_dir / 'new.txt').write_text('new at T1')

        result = await executor.backup_directory(str(source_dir))

        assert _archive_names(storage_root / result.remote_path) == ['new.txt']
        assert state.get_file_metadata(str(source_dir / 'notes.txt')) is not None
        assert state.get_file_metadata(str(source_dir / 'new.txt')) is not None

    @pytest.mark.asyncio
    async def test_full_backup_includes_everything(self, executor, settings, source_dir, storage_root):
        """Test Full backups include unchanged files."""
        await executor.backup_directory(str(source_dir))
        settings.backup_type = BackupType.FULL

        result = await executor.backup_directory(str(source_dir))

        assert result.files_backed_up == 3

    @pytest.mark.asyncio
    async def test_first_differential_recorded_as_full(self, executor, settings, source_dir, state):
        """Test a Differential run with no full backup yet is recorded as a full backup."""
        settings.backup_type = BackupType.DIFFERENTIAL

        result = await executor.backup_directory(str(source_dir))

        assert result.files_backed_up == 3
        assert state.get_backups_for_group(str(source_dir))[0].is_diff is False

    @pytest.mark.asyncio
    async def test_differential_after_full_recorded_as_diff(self, executor, settings, source_dir, state):
        """Test a Differential run after a full backup is recorded as differential."""
        settings.backup_type = BackupType.FULL
        full = await executor.backup_directory(str(source_dir))

        notes = source_dir / 'notes.txt'
        notes.write_text('Changed after full backup')
        later = notes.stat().st_mtime + 60
        os.utime(notes, (later, later))
        settings.backup_type = BackupType.DIFFERENTIAL
        diff = await executor.backup_directory(str(source_dir))

        records = {r.path: r for r in state.get_backups_for_group(str(source_dir))}
        assert records[full.remote_path].is_diff is False
        assert records[diff.remote_path].is_diff is True

    @pytest.mark.asyncio
    async def test_record_timestamp_matches_artifact_name(self, executor, source_dir, state):
        """Test the record carries the same instant as the artifact name."""
        result = await executor.backup_directory(str(source_dir))

        record = state.get_backups_for_group(str(source_dir))[0]
        assert record.timestamp == timestamp_from_artifact_path(result.remote_path)
        assert record.timestamp.microsecond == 0

    @pytest.mark.asyncio
    async def test_group_key_is_normalized(self, executor, source_dir, state):
        """Test a trailing separator does not create a second group."""
        await executor.backup_directory(str(source_dir) + os.sep)

        assert state.get_backup_groups() == [str(source_dir)]

    @pytest.mark.asyncio
    async def test_missing_source(self, executor, tmp_path):
        """Test a missing source directory raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await executor.backup_directory(str(tmp_path / 'missing'))

    @pytest.mark.asyncio
    async def test_empty_source(self, executor):
        """Test an empty source argument raises ValidationError."""
        with pytest.raises(ValidationError):
            await executor.backup_directory('  ')

    @pytest.mark.asyncio
    async def test_storage_override(self, settings, state, source_dir, work_dir):
        """Test an explicit storage type wins over the configured one."""
        storage = MagicMock()
        storage.__enter__.return_value = storage
        storage.__exit__.return_value = False
        factory = MagicMock(return_value=storage)
        executor = BackupExecutor(settings, state, storage_factory=factory, temp_dir=work_dir)

        await executor.backup_directory(str(source_dir), storage_type_override='s3')

        factory.assert_called_once_with('s3')
        assert state.get_backups_for_group(str(source_dir))[0].storage_type == 's3'

    @pytest.mark.asyncio
    async def test_per_directory_storage(self, settings, state, source_dir, work_dir):
        """Test a watch directory's own storage type is used."""
        settings.watch_directories[0].storage_type = 'sftp'
        storage = MagicMock()
        storage.__enter__.return_value = storage
        storage.__exit__.return_value = False
        factory = MagicMock(return_value=storage)
        executor = BackupExecutor(settings, state, storage_factory=factory, temp_dir=work_dir)

        await executor.backup_directory(str(source_dir))

        factory.assert_called_once_with('sftp')

    @pytest.mark.asyncio
    async def test_upload_failure_records_nothing(self, settings, state, source_dir, work_dir):
        """Test a failed upload leaves no record or metadata, cleans up and releases storage."""
        storage = MagicMock()
        storage.__enter__.return_value = storage
        storage.__exit__.return_value = False
        storage.upload.side_effect = StorageError("network down")
        executor = BackupExecutor(settings, state, storage_factory=MagicMock(return_value=storage),
                                  temp_dir=work_dir)

        with pytest.raises(StorageError):
            await executor.backup_directory(str(source_dir))

        assert state.get_backup_groups() == []
        assert state.file_metadata_snapshot() == {}
        storage.__exit__.assert_called_once()
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_unusable_temp_dir(self, settings, state, source_dir, tmp_path):
        """Test a temp directory that cannot be created raises BackupIOError."""
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        executor = BackupExecutor(settings, state, temp_dir=str(blocker / 'work'))

        with pytest.raises(BackupIOError, match="Backup of"):
            await executor.backup_directory(str(source_dir))

        assert state.get_backup_groups() == []

    @pytest.mark.asyncio
    async def test_retention_applied_after_backup(self, executor, settings, source_dir, storage_root, state):
        """Test retention trims older artifacts once the new record is appended."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)

        first = await executor.backup_directory(str(source_dir))
        (source_dir / 'notes.txt').write_text('changed content, different size')
        second = await executor.backup_directory(str(source_dir))

        records = state.get_backups_for_group(str(source_dir))
        assert [r.path for r in records] == [second.remote_path]
        assert not (storage_root / first.remote_path).exists()
        assert (storage_root / second.remote_path).exists()


class TestEncryptedBackup:
    """Test backups with encryption enabled."""

    @pytest.fixture
    def encrypted_settings(self, settings):
        settings.encryption.enabled = True
        settings.encryption.key_derivation_iterations = 1000
        return settings

    @pytest.mark.asyncio
    async def test_uploads_ciphertext_and_sidecar(self, encrypted_settings, state, source_dir,
                                                 storage_root, work_dir, password_provider):
        """Test the encrypted artifact and its metadata sidecar are both uploaded."""
        executor = BackupExecutor(encrypted_settings, state, password_provider, temp_dir=work_dir)

        result = await executor.backup_directory(str(source_dir))

        assert result.encrypted is True
        assert result.remote_path.endswith('.zip.enc')

        artifact = storage_root / result.remote_path
        sidecar = storage_root / (result.remote_path + '.meta')
        assert artifact.exists()
        assert sidecar.exists()
        assert not zipfile.is_zipfile(artifact)

        metadata = EncryptionService.load_metadata(str(sidecar))
        assert metadata.key_derivation_iterations == 1000
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_configured_salt_used(self, encrypted_settings, state, source_dir, storage_root,
                                        work_dir, password_provider):
        """Test the salt from settings is used for key derivation."""
        salt = EncryptionService.generate_salt()
        encrypted_settings.encryption.salt = base64.b64encode(salt).decode('ascii')
        executor = BackupExecutor(encrypted_settings, state, password_provider, temp_dir=work_dir)

        result = await executor.backup_directory(str(source_dir))

        metadata = EncryptionService.load_metadata(str(storage_root / (result.remote_path + '.meta')))
        assert metadata.salt == salt

    @pytest.mark.asyncio
    async def test_missing_provider(self, encrypted_settings, state, source_dir, work_dir):
        """Test encryption without a password provider is a configuration error."""
        executor = BackupExecutor(encrypted_settings, state, temp_dir=work_dir)

        with pytest.raises(ConfigurationError):
            await executor.backup_directory(str(source_dir))

        assert state.get_backup_groups() == []
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_empty_password(self, encrypted_settings, state, source_dir, work_dir):
        """Test an empty password is a configuration error."""
        executor = BackupExecutor(encrypted_settings, state, StaticPasswordProvider(''), temp_dir=work_dir)

        with pytest.raises(ConfigurationError):
            await executor.backup_directory(str(source_dir))

    @pytest.mark.asyncio
    async def test_sidecar_uploaded_before_artifact(self, encrypted_settings, state, source_dir,
                                                    work_dir, password_provider):
        """Test the metadata sidecar is uploaded before the ciphertext."""
        storage = MagicMock()
        storage.__enter__.return_value = storage
        storage.__exit__.return_value = False
        executor = BackupExecutor(encrypted_settings, state, password_provider,
                                  storage_factory=MagicMock(return_value=storage), temp_dir=work_dir)

        result = await executor.backup_directory(str(source_dir))

        remote_paths = [call.args[1] for call in storage.upload.call_args_list]
        assert remote_paths == [result.remote_path + '.meta', result.remote_path]


class TestBackupFiles:
    """Test BackupExecutor.backup_files."""

    @pytest.mark.asyncio
    async def test_backs_up_given_files(self, executor, source_dir, storage_root):
        """Test only the listed files are archived, relative to the base directory."""
        files = [str(source_dir / 'nested' / 'deep.txt'), str(source_dir / 'vanished.txt')]

        result = await executor.backup_files(files, str(source_dir))

        assert result.files_backed_up == 1
        assert _archive_names(storage_root / result.remote_path) == ['nested/deep.txt']

    @pytest.mark.asyncio
    async def test_no_files_is_noop(self, executor, source_dir):
        """Test an empty or fully vanished list does nothing."""
        result = await executor.backup_files([str(source_dir / 'vanished.txt')], str(source_dir))

        assert result.remote_path is None

    @pytest.mark.asyncio
    async def test_file_outside_base(self, executor, source_dir, tmp_path):
        """Test files outside the base directory are rejected."""
        outsider = tmp_path / 'outsider.txt'
        outsider.write_text('x')

        with pytest.raises(ValidationError):
            await executor.backup_files([str(outsider)], str(source_dir))

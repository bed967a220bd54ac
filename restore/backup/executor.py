"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate the source directory
2. Resolve the storage backend (override -> per-directory -> global)
3. Check directory size against the warning threshold
4. Collect candidate files
5. Select the change set for the configured backup type
6. Create the zip archive
7. Encrypt (if enabled) and upload artifact + metadata
8. Record the backup and apply retention
9. Update file metadata
10. Save state
11. Cleanup temporary files and release storage
"""

import os
import shutil
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional

from restore.config import Config
from restore.exceptions import BackupIOError, ConfigurationError, NotFoundError, RestoreError, ValidationError
from restore.models import BackupType
from restore.state import SystemState
from restore.utils.crypto import ENCRYPTED_SUFFIX, METADATA_SUFFIX, EncryptionService
from restore.utils.password import PasswordProvider
from .compression import create_archive, generate_archive_filename
from .retention import RetentionManager
from .selection import FileSelectionService, calculate_directory_size

logger = logging.getLogger(__name__)

REMOTE_ROOT = 'backups'


@dataclass
class BackupResult:
    """Outcome of a backup run. remote_path is None when nothing changed."""
    remote_path: Optional[str]
    files_backed_up: int
    size_bytes: int
    encrypted: bool = False


def normalize_directory(directory: str) -> str:
    expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(directory)))
    return expanded.rstrip('/\\') or os.sep


def group_display_name(directory: str) -> str:
    """Name used for the remote folder and artifact file of a group."""
    return os.path.basename(directory.rstrip('/\\')) or 'root'


def remote_path_for(group_name: str, file_name: str) -> str:
    return f"{REMOTE_ROOT}/{group_name}/{file_name}"


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a directory.
    """

    def __init__(self, settings, state: SystemState,
                 password_provider: Optional[PasswordProvider] = None,
                 storage_factory: Optional[Callable[[str], Any]] = None,
                 temp_dir: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            settings: Loaded Settings
            state: Shared SystemState
            password_provider: Supplies the password when encryption is enabled
            storage_factory: Callable mapping a storage type to an initialized
                backend (defaults to settings.create_storage)
            temp_dir: Parent directory for working files (defaults to Config.TEMP_DIR)
        """
        self.settings = settings
        self.state = state
        self.password_provider = password_provider
        self.storage_factory = storage_factory or settings.create_storage
        self.temp_dir = temp_dir or Config.TEMP_DIR
        self.selection = FileSelectionService.from_settings(settings)
        self.encryption = EncryptionService()
        self.retention = RetentionManager(settings, state, self.storage_factory)

    async def backup_directory(self, source_directory: str,
                               storage_type_override: Optional[str] = None) -> BackupResult:
        """
        Back up the changed files of a directory.

        Raises:
            ValidationError: If no directory is given
            NotFoundError: If the directory does not exist
            ConfigurationError: Unknown storage or missing encryption password
            BackupIOError: Archive, encryption, upload or state failures
        """
        if not source_directory or not source_directory.strip():
            raise ValidationError("Source directory cannot be empty")

        source = normalize_directory(source_directory)
        if not os.path.isdir(source):
            raise NotFoundError(f"Source directory not found: {source}")

        storage_type = storage_type_override or self.settings.storage_type_for_directory(source)
        logger.info(f"Starting {self.settings.backup_type.value} backup of {source} to {storage_type}")

        await self._warn_if_oversized(source)

        candidates = await asyncio.to_thread(self.selection.collect, [source])
        changed = await asyncio.to_thread(self.state.select_changed, candidates, self.settings.backup_type)

        if not changed:
            logger.info(f"No changes detected in {source}, nothing to back up")
            await asyncio.to_thread(self.state.save)
            return BackupResult(remote_path=None, files_backed_up=0, size_bytes=0)

        return await self._run_pipeline(source, changed, source, storage_type)

    async def backup_files(self, files: Iterable[str], base_directory: str,
                           storage_type_override: Optional[str] = None) -> BackupResult:
        """
        Back up an explicit list of files, stored relative to base_directory.

        Files that no longer exist are skipped; an empty list is a no-op.

        Raises:
            ValidationError: If a file lies outside base_directory
            NotFoundError: If base_directory does not exist
        """
        if not base_directory or not base_directory.strip():
            raise ValidationError("Base directory cannot be empty")

        base = normalize_directory(base_directory)
        if not os.path.isdir(base):
            raise NotFoundError(f"Base directory not found: {base}")

        selected = []
        for file_path in files:
            full_path = os.path.abspath(file_path)
            if os.path.commonpath([base, full_path]) != base:
                raise ValidationError(f"File is outside the base directory: {file_path}")
            if os.path.isfile(full_path):
                selected.append(full_path)
            else:
                logger.warning(f"File not found, skipping: {file_path}")

        if not selected:
            logger.info("No files to back up")
            return BackupResult(remote_path=None, files_backed_up=0, size_bytes=0)

        storage_type = storage_type_override or self.settings.storage_type_for_directory(base)
        return await self._run_pipeline(base, selected, base, storage_type)

    async def _warn_if_oversized(self, source: str):
        threshold = self.settings.size_threshold_mb
        try:
            total, exceeds = await asyncio.to_thread(calculate_directory_size, source, threshold)
        except OSError as e:
            logger.warning(f"Could not determine size of {source}: {e}")
            return

        if exceeds:
            logger.warning(
                f"{source} is {total / 1024 / 1024:.2f} MB, above the "
                f"{threshold} MB threshold. Continuing with backup."
            )

    async def _run_pipeline(self, group: str, files: List[str], base_directory: str,
                            storage_type: str) -> BackupResult:
        # One whole-second instant for both the artifact name and its record
        backup_time = datetime.now(timezone.utc).replace(microsecond=0)
        group_name = group_display_name(group)
        encrypted = self.settings.encryption.enabled
        is_diff = self._is_differential_run()
        work_dir = None

        try:
            work_dir = await asyncio.to_thread(self._make_work_dir)
            archive_path = os.path.join(work_dir, generate_archive_filename(group_name, backup_time))
            archived = await asyncio.to_thread(create_archive, files, base_directory, archive_path)

            upload_path = archive_path
            metadata_path = None
            if encrypted:
                upload_path, metadata_path = await self._encrypt(archive_path)

            remote_path = remote_path_for(group_name, os.path.basename(upload_path))
            size_bytes = os.path.getsize(upload_path)
            logger.info(f"Archive ready: {os.path.basename(upload_path)} ({size_bytes / 1024 / 1024:.2f} MB)")

            storage = await asyncio.to_thread(self.storage_factory, storage_type)
            with storage:
                if metadata_path:
                    await asyncio.to_thread(storage.upload, metadata_path, remote_path + METADATA_SUFFIX)
                await asyncio.to_thread(storage.upload, upload_path, remote_path)
            logger.info(f"Uploaded {remote_path} to {storage_type}")

            self.state.add_record(group, remote_path, is_diff, storage_type, size_bytes, timestamp=backup_time)
            await asyncio.to_thread(self.retention.apply_group, group)

            await asyncio.to_thread(self._record_files, archived)
            self.state.last_backup_time = datetime.now(timezone.utc)
            await asyncio.to_thread(self.state.save)

            logger.info(f"Backup of {group} completed: {len(archived)} files")
            return BackupResult(
                remote_path=remote_path,
                files_backed_up=len(archived),
                size_bytes=size_bytes,
                encrypted=encrypted,
            )

        except RestoreError as e:
            logger.error(f"Backup of {group} failed: {e}")
            raise
        except OSError as e:
            logger.error(f"Backup of {group} failed: {e}")
            raise BackupIOError(f"Backup of {group} failed: {e}") from e
        finally:
            self._cleanup(work_dir)

    def _is_differential_run(self) -> bool:
        if self.settings.backup_type != BackupType.DIFFERENTIAL:
            return False
        if not self.state.has_full_backup():
            logger.info("No full backup recorded yet, recording this run as a full backup")
            return False
        return True

    def _make_work_dir(self) -> str:
        os.makedirs(self.temp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix='restore_backup_', dir=self.temp_dir)

    async def _encrypt(self, archive_path: str):
        password = self._require_password()
        encryption = self.settings.encryption
        salt = EncryptionService.decode_salt(encryption.salt) if encryption.salt else None

        encrypted_path = archive_path + ENCRYPTED_SUFFIX
        metadata = await asyncio.to_thread(
            self.encryption.encrypt_file,
            archive_path,
            encrypted_path,
            password,
            salt,
            encryption.key_derivation_iterations,
        )

        metadata_path = encrypted_path + METADATA_SUFFIX
        await asyncio.to_thread(EncryptionService.save_metadata, metadata, metadata_path)
        return encrypted_path, metadata_path

    def _require_password(self) -> str:
        if self.password_provider is None:
            raise ConfigurationError("Encryption is enabled but no password provider is configured")

        password = self.password_provider.get_password()
        if not password or not password.strip():
            raise ConfigurationError("Encryption is enabled but no password was provided")
        return password

    def _record_files(self, files: List[str]):
        for file_path in files:
            self.state.record_file(file_path)

    @staticmethod
    def _cleanup(work_dir: str):
        """Remove the working directory (archive, ciphertext and metadata)."""
        if work_dir and os.path.exists(work_dir):
            try:
                shutil.rmtree(work_dir)
                logger.debug(f"Cleaned up temporary directory {work_dir}")
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {work_dir}: {e}")

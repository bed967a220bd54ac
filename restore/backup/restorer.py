"""
Restore executor - downloads, decrypts and extracts backup artifacts.

A differential artifact is restored by first restoring the full backup it
was taken against, then extracting the differential archive over it so each
changed file replaces the base copy.
"""

import os
import shutil
import asyncio
import logging
import tempfile
from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Optional

from restore.config import Config
from restore.exceptions import (
    AuthenticationError,
    BackupIOError,
    ConfigurationError,
    NotFoundError,
    RestoreError,
    ValidationError,
)
from restore.state import SystemState
from restore.utils.crypto import ENCRYPTED_SUFFIX, METADATA_SUFFIX, EncryptionService
from restore.utils.password import PasswordProvider
from .compression import extract_archive

logger = logging.getLogger(__name__)

DIFF_SUFFIX = '.diff'


class RestoreExecutor:
    """
    Restores backup artifacts into a target directory.
    """

    def __init__(self, settings, state: SystemState,
                 password_provider: Optional[PasswordProvider] = None,
                 storage_factory: Optional[Callable[[str], Any]] = None,
                 temp_dir: Optional[str] = None):
        self.settings = settings
        self.state = state
        self.password_provider = password_provider
        self.storage_factory = storage_factory or settings.create_storage
        self.temp_dir = temp_dir or Config.TEMP_DIR
        self.encryption = EncryptionService()

    def is_differential(self, artifact_path: str) -> bool:
        found = self.state.find_record(artifact_path)
        if found is not None and found[1].is_diff:
            return True
        return artifact_path.endswith(DIFF_SUFFIX)

    def storage_type_for(self, artifact_path: str) -> str:
        """Storage the artifact was recorded against, or the global default."""
        found = self.state.find_record(artifact_path)
        if found is not None and found[1].storage_type:
            return found[1].storage_type
        return self.settings.global_storage_type

    async def restore(self, artifact_path: str, target_directory: str,
                      storage_type: Optional[str] = None) -> List[str]:
        """
        Restore an artifact into target_directory.

        Args:
            artifact_path: Remote path of the artifact (backups/<group>/<file>)
            target_directory: Directory to extract into (created if missing)
            storage_type: Backend to read from (defaults to the recorded one)

        Returns:
            Paths of the restored files

        Raises:
            ValidationError: Missing arguments or unsafe archive entries
            NotFoundError: Missing artifact, sidecar or differential base
            AuthenticationError: Wrong password or tampered ciphertext
            ConfigurationError: Encrypted artifact without a password
            BackupIOError: Download, decryption or extraction failures
        """
        if not artifact_path or not artifact_path.strip():
            raise ValidationError("Artifact path cannot be empty")
        if not target_directory or not target_directory.strip():
            raise ValidationError("Target directory cannot be empty")

        target = os.path.abspath(target_directory)
        logger.info(f"Starting restore of {artifact_path} to {target}")

        with ExitStack() as stack:
            storages = {}

            def open_storage(name: str):
                key = name.lower()
                if key not in storages:
                    storages[key] = stack.enter_context(self.storage_factory(name))
                return storages[key]

            try:
                restored = await self._restore(artifact_path, target, storage_type, open_storage)
            except RestoreError as e:
                logger.error(f"Restore of {artifact_path} failed: {e}")
                raise
            except OSError as e:
                logger.error(f"Restore of {artifact_path} failed: {e}")
                raise BackupIOError(f"Restore of {artifact_path} failed: {e}") from e

        logger.info(f"Restore of {artifact_path} completed: {len(restored)} files")
        return restored

    async def _restore(self, artifact_path: str, target: str, storage_type: Optional[str],
                       open_storage: Callable[[str], Any]) -> List[str]:
        if self.is_differential(artifact_path):
            base_path = self.state.resolve_base_for_differential(artifact_path)
            if not base_path:
                raise NotFoundError(f"No base backup found for differential artifact: {artifact_path}")

            logger.info(f"Restoring base backup {base_path} before differential {artifact_path}")
            restored = await self._restore_single(base_path, target, open_storage(self.storage_type_for(base_path)))
            patched = await self._restore_single(
                artifact_path, target, open_storage(storage_type or self.storage_type_for(artifact_path))
            )
            return list(dict.fromkeys(restored + patched))

        storage = open_storage(storage_type or self.storage_type_for(artifact_path))
        return await self._restore_single(artifact_path, target, storage)

    async def _restore_single(self, artifact_path: str, target: str, storage) -> List[str]:
        work_dir = None

        try:
            work_dir = await asyncio.to_thread(self._make_work_dir)
            local_path = os.path.join(work_dir, os.path.basename(artifact_path.replace('\\', '/')))
            await asyncio.to_thread(storage.download, artifact_path, local_path)

            archive_path = local_path
            if artifact_path.endswith(ENCRYPTED_SUFFIX):
                archive_path = await self._decrypt(storage, artifact_path, local_path)

            return await asyncio.to_thread(extract_archive, archive_path, target)

        finally:
            self._cleanup(work_dir)

    async def _decrypt(self, storage, artifact_path: str, local_path: str) -> str:
        metadata_local = local_path + METADATA_SUFFIX
        await asyncio.to_thread(storage.download, artifact_path + METADATA_SUFFIX, metadata_local)
        metadata = EncryptionService.load_metadata(metadata_local)

        password = self._require_password()
        decrypted_path = local_path[:-len(ENCRYPTED_SUFFIX)]

        try:
            await asyncio.to_thread(self.encryption.decrypt_file, local_path, decrypted_path, password, metadata)
        except AuthenticationError:
            self.password_provider.clear_password()
            raise

        return decrypted_path

    def _make_work_dir(self) -> str:
        os.makedirs(self.temp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix='restore_restore_', dir=self.temp_dir)

    def _require_password(self) -> str:
        if self.password_provider is None:
            raise ConfigurationError("Artifact is encrypted but no password provider is configured")

        password = self.password_provider.get_password()
        if not password:
            raise ConfigurationError("Artifact is encrypted but no password was provided")
        return password

    @staticmethod
    def _cleanup(work_dir: str):
        if work_dir and os.path.exists(work_dir):
            try:
                shutil.rmtree(work_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {work_dir}: {e}")

"""
Backup module for ReStore.

This module handles the core backup functionality including:
- File selection
- Compression
- Storage (local, S3 and SFTP)
- Backup and restore orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupResult
from .restorer import RestoreExecutor
from .selection import FileSelectionService
from .compression import create_archive, extract_archive
from .storage import StorageBackend, LocalStorage, S3Storage, SFTPStorage, create_storage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'RestoreExecutor',
    'FileSelectionService',
    'create_archive',
    'extract_archive',
    'StorageBackend',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'create_storage',
    'RetentionManager'
]

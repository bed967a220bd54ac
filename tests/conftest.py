"""
Shared pytest fixtures for ReStore tests.

This module provides fixtures for:
- Settings and SystemState rooted in a temporary directory
- Source directories with sample files
- Local storage and a moto-backed S3 bucket
- Password providers
- A mocked APScheduler
"""

import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from restore.config import Settings, StorageConfig, WatchDirectoryConfig
from restore.models import BackupType
from restore.state import SystemState
from restore.backup.storage import LocalStorage
from restore.utils.password import StaticPasswordProvider


TEST_PASSWORD = 'correct horse battery'


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a source directory to back up.

    Creates:
    - notes.txt
    - report.log
    - nested/deep.txt
    - scratch.tmp (excluded by default patterns)
    - .hidden/secret.txt (hidden directory, skipped)
    """
    source = tmp_path / 'Documents'
    source.mkdir()
    (source / 'notes.txt').write_text('Test content 1')
    (source / 'report.log').write_text('Test log content')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'deep.txt').write_text('Nested test content')

    (source / 'scratch.tmp').write_text('temporary')

    hidden = source / '.hidden'
    hidden.mkdir()
    (hidden / 'secret.txt').write_text('hidden content')

    return source


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / 'storage'
    root.mkdir()
    return root


@pytest.fixture
def settings(tmp_path, source_dir, storage_root):
    """Settings with one watch directory backed up to local storage."""
    return Settings(
        watch_directories=[WatchDirectoryConfig(path=str(source_dir))],
        global_storage_type='local',
        storage_sources={'local': StorageConfig(path=str(storage_root))},
        backup_type=BackupType.INCREMENTAL,
    )


@pytest.fixture
def state(tmp_path):
    """Empty SystemState persisted under the temp directory."""
    return SystemState(str(tmp_path / 'state' / 'system_state.json'))


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return str(path)


@pytest.fixture
def local_storage(storage_root):
    storage = LocalStorage()
    storage.initialize({'path': str(storage_root)})
    yield storage
    storage.close()


@pytest.fixture
def password_provider():
    return StaticPasswordProvider(TEST_PASSWORD)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
        os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')

        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('restore.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import restore.scheduler as scheduler_module

    with patch('restore.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.backup_executor = None
    scheduler_module.retention_manager = None

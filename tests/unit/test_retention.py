"""
Unit tests for retention policy management (restore/backup/retention.py).

Tests record selection under keep-last and max-age policies and the
deletion of artifacts, sidecars and history entries.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from restore.backup.retention import RetentionManager
from restore.config import RetentionConfig
from restore.exceptions import ConfigurationError
from restore.backup.storage import StorageError
from restore.models import BackupRecord


NOW = datetime(2024, 1, 15, tzinfo=timezone.utc)


def _records(*ages_in_days):
    return [
        BackupRecord(path=f'backups/Docs/b{age}.zip', timestamp=NOW - timedelta(days=age))
        for age in ages_in_days
    ]


def _storage_mock(existing=()):
    storage = MagicMock()
    storage.__enter__.return_value = storage
    storage.__exit__.return_value = False
    storage.exists.side_effect = lambda path: path in existing
    return storage


class TestSelectBackupsToDelete:
    """Test RetentionManager.select_backups_to_delete."""

    def test_fewer_than_two_records(self):
        """Test a single record is never deleted."""
        policy = RetentionConfig(enabled=True, keep_last_per_directory=0, max_age_days=0)

        assert RetentionManager.select_backups_to_delete(_records(100), policy, NOW) == []

    def test_keep_last(self):
        """Test only the newest N records are kept."""
        policy = RetentionConfig(enabled=True, keep_last_per_directory=2, max_age_days=0)

        doomed = RetentionManager.select_backups_to_delete(_records(1, 2, 3, 4), policy, NOW)

        assert [r.path for r in doomed] == ['backups/Docs/b3.zip', 'backups/Docs/b4.zip']

    def test_keep_last_zero_keeps_newest(self):
        """Test keep_last below one still keeps the newest record."""
        policy = RetentionConfig(enabled=True, keep_last_per_directory=0, max_age_days=0)

        doomed = RetentionManager.select_backups_to_delete(_records(1, 2, 3), policy, NOW)

        assert [r.path for r in doomed] == ['backups/Docs/b2.zip', 'backups/Docs/b3.zip']

    def test_max_age_keeps_recent(self):
        """Test records younger than max_age_days are kept beyond keep_last."""
        policy = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=10)

        doomed = RetentionManager.select_backups_to_delete(_records(1, 5, 9, 20, 40), policy, NOW)

        assert [r.path for r in doomed] == ['backups/Docs/b20.zip', 'backups/Docs/b40.zip']

    @freeze_time("2024-01-15")
    def test_defaults_to_current_time(self):
        """Test the age cutoff is measured from now when no time is given."""
        policy = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=30)

        doomed = RetentionManager.select_backups_to_delete(_records(1, 29, 31), policy)

        assert [r.path for r in doomed] == ['backups/Docs/b31.zip']


class TestApplyGroup:
    """Test RetentionManager.apply_group."""

    def _populate(self, state, paths, storage_type=None):
        for path in paths:
            state.add_record('Docs', path, is_diff=False, storage_type=storage_type)

    def test_disabled(self, settings, state):
        """Test nothing happens when retention is disabled."""
        self._populate(state, ['backups/Docs/a.zip', 'backups/Docs/b.zip'])
        factory = MagicMock()

        manager = RetentionManager(settings, state, factory)

        assert manager.apply_group('Docs') == 0
        factory.assert_not_called()

    def test_deletes_artifacts_and_sidecars(self, settings, state):
        """Test old artifacts and their .meta sidecars are deleted and dropped from history."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        with freeze_time('2024-01-01'):
            self._populate(state, ['backups/Docs/old.zip.enc'])
        with freeze_time('2024-01-02'):
            self._populate(state, ['backups/Docs/new.zip.enc'])

        storage = _storage_mock(existing={'backups/Docs/old.zip.enc', 'backups/Docs/old.zip.enc.meta'})
        manager = RetentionManager(settings, state, MagicMock(return_value=storage))

        assert manager.apply_group('Docs') == 1

        storage.delete.assert_any_call('backups/Docs/old.zip.enc')
        storage.delete.assert_any_call('backups/Docs/old.zip.enc.meta')
        storage.__exit__.assert_called_once()
        assert [r.path for r in state.get_backups_for_group('Docs')] == ['backups/Docs/new.zip.enc']

    def test_missing_artifact_still_dropped(self, settings, state):
        """Test records whose artifact is already gone are removed from history."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        with freeze_time('2024-01-01'):
            self._populate(state, ['backups/Docs/old.zip'])
        with freeze_time('2024-01-02'):
            self._populate(state, ['backups/Docs/new.zip'])

        storage = _storage_mock(existing=set())
        manager = RetentionManager(settings, state, MagicMock(return_value=storage))

        assert manager.apply_group('Docs') == 1
        storage.delete.assert_not_called()
        assert len(state.get_backups_for_group('Docs')) == 1

    def test_delete_failure_keeps_record(self, settings, state):
        """Test a failed deletion is logged and the record kept."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        with freeze_time('2024-01-01'):
            self._populate(state, ['backups/Docs/old.zip'])
        with freeze_time('2024-01-02'):
            self._populate(state, ['backups/Docs/new.zip'])

        storage = _storage_mock(existing={'backups/Docs/old.zip'})
        storage.delete.side_effect = StorageError("permission denied")
        manager = RetentionManager(settings, state, MagicMock(return_value=storage))

        assert manager.apply_group('Docs') == 0
        assert len(state.get_backups_for_group('Docs')) == 2

    def test_groups_by_storage_type(self, settings, state):
        """Test each storage backend is opened once, falling back to the global default."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        with freeze_time('2024-01-01'):
            self._populate(state, ['backups/Docs/s3.zip'], storage_type='s3')
        with freeze_time('2024-01-02'):
            self._populate(state, ['backups/Docs/local.zip'])
        with freeze_time('2024-01-03'):
            self._populate(state, ['backups/Docs/newest.zip'])

        storages = {'s3': _storage_mock({'backups/Docs/s3.zip'}), 'local': _storage_mock({'backups/Docs/local.zip'})}
        factory = MagicMock(side_effect=lambda name: storages[name])
        manager = RetentionManager(settings, state, factory)

        assert manager.apply_group('Docs') == 2
        assert sorted(call.args[0] for call in factory.call_args_list) == ['local', 's3']
        storages['s3'].delete.assert_called_once_with('backups/Docs/s3.zip')
        storages['local'].delete.assert_called_once_with('backups/Docs/local.zip')

    def test_unavailable_storage_skipped(self, settings, state):
        """Test a backend that cannot be opened leaves its records in place."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        with freeze_time('2024-01-01'):
            self._populate(state, ['backups/Docs/old.zip'], storage_type='s3')
        with freeze_time('2024-01-02'):
            self._populate(state, ['backups/Docs/new.zip'])

        manager = RetentionManager(settings, state, MagicMock(side_effect=ConfigurationError("no s3")))

        assert manager.apply_group('Docs') == 0
        assert len(state.get_backups_for_group('Docs')) == 2

    def test_apply_all(self, settings, state):
        """Test apply_all processes every group."""
        settings.retention = RetentionConfig(enabled=True, keep_last_per_directory=1, max_age_days=0)
        for group in ('Docs', 'Photos'):
            with freeze_time('2024-01-01'):
                state.add_record(group, f'backups/{group}/old.zip', is_diff=False)
            with freeze_time('2024-01-02'):
                state.add_record(group, f'backups/{group}/new.zip', is_diff=False)

        manager = RetentionManager(settings, state, MagicMock(return_value=_storage_mock()))
        summary = manager.apply_all()

        assert summary['groups_processed'] == 2
        assert summary['deleted'] == 2
        assert summary['errors'] == []

"""
Retention policy enforcement for backups.

Trims each group's backup history to the configured keep-last-N and
max-age-days policy, deleting the artifacts (and encryption sidecars)
from whichever storage backend each record was written to.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from restore.config import RetentionConfig
from restore.exceptions import RestoreError
from restore.models import BackupRecord
from restore.state import SystemState
from restore.utils.crypto import ENCRYPTED_SUFFIX, METADATA_SUFFIX

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for backup groups.
    """

    def __init__(self, settings, state: SystemState,
                 storage_factory: Optional[Callable[[str], Any]] = None):
        """
        Initialize retention manager.

        Args:
            settings: Settings holding the retention policy and storage sources
            state: SystemState whose history is trimmed
            storage_factory: Callable mapping a storage type to an initialized
                backend (defaults to settings.create_storage)
        """
        self.settings = settings
        self.state = state
        self.storage_factory = storage_factory or settings.create_storage

    @staticmethod
    def select_backups_to_delete(records: List[BackupRecord], policy: RetentionConfig,
                                 now: Optional[datetime] = None) -> List[BackupRecord]:
        """
        Decide which records fall outside the retention policy.

        The newest max(1, keep_last) records are kept, plus every record newer
        than max_age_days when that is positive. Groups with fewer than two
        records are never trimmed.
        """
        if len(records) < 2:
            return []

        now = now or datetime.now(timezone.utc)
        ordered = sorted(records, key=lambda r: r.timestamp, reverse=True)

        keep_last = max(1, policy.keep_last_per_directory)
        keep = {id(r) for r in ordered[:keep_last]}

        if policy.max_age_days > 0:
            cutoff = now - timedelta(days=policy.max_age_days)
            keep.update(id(r) for r in ordered if r.timestamp >= cutoff)

        keep.add(id(ordered[0]))

        return [r for r in ordered if id(r) not in keep]

    def apply_group(self, group: str) -> int:
        """
        Enforce the retention policy for one group.

        Returns:
            Number of records removed from history
        """
        policy = self.settings.retention
        if not policy.enabled:
            return 0

        doomed = self.select_backups_to_delete(self.state.get_backups_for_group(group), policy)
        if not doomed:
            return 0

        logger.info(f"Retention: pruning {len(doomed)} backups from group {group}")

        by_storage = defaultdict(list)
        for record in doomed:
            by_storage[record.storage_type or self.settings.global_storage_type].append(record)

        removed_paths = []
        for storage_type, records in by_storage.items():
            try:
                storage = self.storage_factory(storage_type)
            except RestoreError as e:
                logger.error(f"Retention: could not open storage '{storage_type}': {e}")
                continue

            with storage:
                for record in records:
                    if self._delete_artifact(storage, record):
                        removed_paths.append(record.path)

        if removed_paths:
            self.state.remove_backups_from_group(group, removed_paths)
            self.state.save()

        return len(removed_paths)

    def _delete_artifact(self, storage, record: BackupRecord) -> bool:
        try:
            if storage.exists(record.path):
                storage.delete(record.path)
                logger.info(f"Retention: deleted {record.path}")
            else:
                logger.warning(f"Retention: artifact already missing: {record.path}")

            if record.path.endswith(ENCRYPTED_SUFFIX):
                metadata_path = record.path + METADATA_SUFFIX
                if storage.exists(metadata_path):
                    storage.delete(metadata_path)
            return True

        except RestoreError as e:
            logger.error(f"Retention: failed to delete {record.path}: {e}")
            return False

    def apply_all(self) -> Dict[str, Any]:
        """
        Enforce the retention policy for all groups.

        Returns:
            Dict with summary: {'groups_processed': int, 'deleted': int, 'errors': List[str]}
        """
        summary = {
            'groups_processed': 0,
            'deleted': 0,
            'errors': []
        }

        for group in self.state.get_backup_groups():
            try:
                summary['deleted'] += self.apply_group(group)
                summary['groups_processed'] += 1
            except RestoreError as e:
                error_msg = f"Failed to enforce retention for group {group}: {e}"
                logger.error(error_msg)
                summary['errors'].append(error_msg)

        logger.info(
            f"Retention enforcement complete. "
            f"Groups: {summary['groups_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

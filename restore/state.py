"""
Persistent backup state.

SystemState owns two maps, both keyed case-insensitively:
- file metadata: absolute file path -> FileMetadata
- backup history: group (source directory or component name) -> [BackupRecord]

All map mutations happen under a single lock. Hashing, stat calls and
document I/O always happen outside it; save() and load() snapshot or swap
the maps under the lock and do the disk work unlocked.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from restore.exceptions import BackupIOError
from restore.models import (
    BackupRecord,
    BackupType,
    CaseInsensitiveDict,
    FileMetadata,
    MIN_TIMESTAMP,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

HASH_BUFFER_SIZE = 1024 * 1024
TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
TIMESTAMP_PATTERN = re.compile(r'(?<!\d)(\d{14})(?!\d)')


def calculate_file_hash(file_path: str) -> str:
    """
    Compute the hex SHA-256 of a file, streaming it in 1 MiB blocks.

    Raises:
        OSError: If the file cannot be read
    """
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for block in iter(lambda: f.read(HASH_BUFFER_SIZE), b''):
            sha256.update(block)
    return sha256.hexdigest()


def _file_mtime(stat_result: os.stat_result) -> datetime:
    return datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc)


def timestamp_from_artifact_path(path: str) -> Optional[datetime]:
    """
    Extract the yyyyMMddHHmmss timestamp embedded in an artifact filename.

    A standalone run of 14 digits is tried first, then the underscore
    separated tokens from last to first. Returns None if nothing parses.
    """
    file_name = os.path.basename(path.replace('\\', '/'))

    match = TIMESTAMP_PATTERN.search(file_name)
    if match:
        try:
            return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            pass

    stem = file_name.split('.', 1)[0]
    for token in reversed(stem.split('_')):
        if len(token) == 14 and token.isdigit():
            try:
                return datetime.strptime(token, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                continue

    logger.warning(f"No valid timestamp found in filename: {file_name}")
    return None


class SystemState:
    """
    Durable record of per-file metadata and per-group backup history.

    Safe to share between concurrent backup and restore tasks; methods that
    touch the file system (record_file, select_changed, save, load) may be
    called from worker threads.
    """

    def __init__(self, state_file_path: Optional[str] = None):
        if state_file_path is None:
            from restore.config import Config
            state_file_path = Config.STATE_FILE

        self._lock = threading.Lock()
        self._state_file_path = state_file_path
        self._last_backup_time = MIN_TIMESTAMP
        self._backup_history = CaseInsensitiveDict()
        self._file_metadata = CaseInsensitiveDict()

        logger.debug(f"System state will be stored at: {state_file_path}")

    @property
    def state_file_path(self) -> str:
        with self._lock:
            return self._state_file_path

    def set_state_file_path(self, path: str):
        with self._lock:
            self._state_file_path = path
        logger.debug(f"System state file path set to: {path}")

    @property
    def last_backup_time(self) -> datetime:
        with self._lock:
            return self._last_backup_time

    @last_backup_time.setter
    def last_backup_time(self, value: datetime):
        with self._lock:
            self._last_backup_time = value

    # ------------------------------------------------------------------
    # File metadata
    # ------------------------------------------------------------------

    def get_file_metadata(self, file_path: str) -> Optional[FileMetadata]:
        with self._lock:
            metadata = self._file_metadata.get(file_path)
            if metadata is None:
                return None
            return FileMetadata(metadata.file_path, metadata.size, metadata.last_modified, metadata.hash)

    def file_metadata_snapshot(self) -> Dict[str, FileMetadata]:
        """Return a copy of the file metadata map."""
        with self._lock:
            return {
                path: FileMetadata(m.file_path, m.size, m.last_modified, m.hash)
                for path, m in self._file_metadata.items()
            }

    def has_file_changed(self, file_path: str, current_hash: str) -> bool:
        with self._lock:
            metadata = self._file_metadata.get(file_path)
            return metadata is None or metadata.hash != current_hash

    def record_file(self, file_path: str):
        """
        Add or refresh the metadata entry for a file.

        A missing file has its entry removed instead. Permission and I/O
        errors are logged and the file is skipped; an unreadable file body is
        recorded with an empty hash.
        """
        try:
            stat_result = os.stat(file_path)
        except FileNotFoundError:
            with self._lock:
                if file_path in self._file_metadata:
                    del self._file_metadata[file_path]
                    removed = True
                else:
                    removed = False
            if removed:
                logger.debug(f"Removed metadata for deleted file: {file_path}")
            return
        except PermissionError as e:
            logger.warning(f"Access denied updating metadata for {file_path}: {e}. Skipping file.")
            return
        except OSError as e:
            logger.warning(f"IO error updating metadata for {file_path}: {e}. Skipping file.")
            return

        try:
            file_hash = calculate_file_hash(file_path)
        except OSError as e:
            logger.warning(f"Could not hash {file_path}: {e}. Recording without hash.")
            file_hash = ''

        metadata = FileMetadata(
            file_path=file_path,
            size=stat_result.st_size,
            last_modified=_file_mtime(stat_result),
            hash=file_hash,
        )

        with self._lock:
            self._file_metadata[file_path] = metadata

    def get_tracked_files_in_directory(self, directory: str) -> List[str]:
        normalized = directory.rstrip('/\\')
        prefix = (normalized + os.sep).casefold()
        with self._lock:
            return [
                path for path in self._file_metadata
                if path.casefold() == normalized.casefold() or path.casefold().startswith(prefix)
            ]

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    def select_changed(self, candidates: Iterable[str], backup_type: BackupType) -> List[str]:
        """
        Return the candidates that belong in a backup of the given kind.

        Full selects everything. Incremental selects new files, files whose
        size changed, and files with a newer mtime whose hash differs (or
        that have no recorded hash). Differential selects new files and files
        modified after the most recent full backup of any group. A file that
        cannot be evaluated is selected.
        """
        candidates = list(dict.fromkeys(candidates))

        if backup_type == BackupType.FULL:
            logger.info("Full backup requested, including all files.")
            return candidates

        with self._lock:
            last_full_backup_time = self._last_full_backup_time()
            metadata_snapshot = self._file_metadata.copy()

        logger.debug(f"Last full backup time determined as: {last_full_backup_time}")

        selected = []
        for file_path in candidates:
            try:
                if self._should_select(file_path, backup_type, metadata_snapshot, last_full_backup_time):
                    selected.append(file_path)
            except Exception as e:
                logger.warning(f"Error checking file {file_path}: {e}. Including in backup.")
                selected.append(file_path)

        logger.info(
            f"Found {len(selected)} changed files out of {len(candidates)} total files "
            f"for {backup_type.value} backup."
        )
        return selected

    def _should_select(self, file_path: str, backup_type: BackupType,
                       metadata_snapshot: CaseInsensitiveDict, last_full_backup_time: datetime) -> bool:
        try:
            stat_result = os.stat(file_path)
        except FileNotFoundError:
            return False

        previous = metadata_snapshot.get(file_path)
        if previous is None:
            logger.debug(f"New file detected: {file_path}")
            return True

        modified = _file_mtime(stat_result)

        if backup_type == BackupType.INCREMENTAL:
            if stat_result.st_size != previous.size:
                logger.debug(f"File changed (Incremental, size): {file_path}")
                return True
            if modified > previous.last_modified:
                if not previous.hash:
                    logger.debug(f"File changed (Incremental, timestamp): {file_path}")
                    return True
                if calculate_file_hash(file_path) != previous.hash:
                    logger.debug(f"File changed (Incremental, hash): {file_path}")
                    return True
            return False

        if backup_type == BackupType.DIFFERENTIAL:
            if modified > last_full_backup_time:
                logger.debug(f"File changed (Differential): {file_path}")
                return True
            return False

        return True

    def _last_full_backup_time(self) -> datetime:
        # Caller holds the lock
        last_full = MIN_TIMESTAMP
        for records in self._backup_history.values():
            for record in records:
                if not record.is_diff and record.timestamp > last_full:
                    last_full = record.timestamp
        return last_full

    # ------------------------------------------------------------------
    # Backup history
    # ------------------------------------------------------------------

    def add_record(self, group: str, path: str, is_diff: bool,
                   storage_type: Optional[str] = None, size_bytes: int = 0,
                   timestamp: Optional[datetime] = None) -> BackupRecord:
        """
        Append a BackupRecord to a group's history.

        timestamp defaults to now. Backups pass the instant embedded in the
        artifact name.
        """
        record = BackupRecord(
            path=path,
            timestamp=timestamp or datetime.now(timezone.utc),
            is_diff=is_diff,
            storage_type=storage_type,
            size_bytes=size_bytes,
        )
        with self._lock:
            if group not in self._backup_history:
                self._backup_history[group] = []
            self._backup_history[group].append(record)
        return record

    def get_backup_groups(self) -> List[str]:
        with self._lock:
            return list(self._backup_history)

    def get_backups_for_group(self, group: str) -> List[BackupRecord]:
        """Return a group's records, newest first (later appends win ties)."""
        with self._lock:
            records = list(self._backup_history.get(group, []))
        ordered = sorted(enumerate(records), key=lambda item: (item[1].timestamp, item[0]), reverse=True)
        return [record for _, record in ordered]

    def has_full_backup(self) -> bool:
        """True once any group holds a non-differential record."""
        with self._lock:
            return self._last_full_backup_time() > MIN_TIMESTAMP

    def get_previous_backup_path(self, group: str) -> Optional[str]:
        records = self.get_backups_for_group(group)
        return records[0].path if records else None

    def find_record(self, path: str) -> Optional[Tuple[str, BackupRecord]]:
        """Find the group and record for an artifact path."""
        wanted = path.casefold()
        with self._lock:
            for group, records in self._backup_history.items():
                for record in records:
                    if record.path.casefold() == wanted:
                        return group, record
        return None

    def remove_backups_from_group(self, group: str, paths: Iterable[str]):
        """Drop records by path; a group left empty is removed."""
        doomed = {p.casefold() for p in paths if p and p.strip()}
        if not doomed:
            return

        with self._lock:
            records = self._backup_history.get(group)
            if not records:
                return
            remaining = [r for r in records if r.path.casefold() not in doomed]
            if remaining:
                self._backup_history[group] = remaining
            else:
                del self._backup_history[group]

    def resolve_base_for_differential(self, diff_path: str) -> Optional[str]:
        """
        Find the full backup a differential artifact was taken against.

        Returns the most recent non-differential record, across all groups,
        taken no later than the timestamp embedded in the artifact name.
        Records share the artifact name's whole-second resolution, so a full
        backup from the same second qualifies.
        """
        diff_time = timestamp_from_artifact_path(diff_path)
        if diff_time is None:
            return None

        wanted = diff_path.casefold()
        best = None
        with self._lock:
            for records in self._backup_history.values():
                for record in records:
                    if record.is_diff or record.timestamp > diff_time or record.path.casefold() == wanted:
                        continue
                    if best is None or record.timestamp >= best.timestamp:
                        best = record

        return best.path if best else None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self):
        """
        Write the state document atomically (temp file + rename).

        Raises:
            BackupIOError: If the document cannot be written
        """
        with self._lock:
            document = {
                'lastBackupTime': format_timestamp(self._last_backup_time),
                'backupHistory': {
                    group: [r.to_dict() for r in records]
                    for group, records in self._backup_history.items()
                },
                'fileMetadata': {
                    path: m.to_dict() for path, m in self._file_metadata.items()
                },
            }
            state_file_path = self._state_file_path

        state_dir = os.path.dirname(os.path.abspath(state_file_path))
        temp_path = None
        try:
            os.makedirs(state_dir, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=os.path.basename(state_file_path) + '.',
                suffix='.tmp',
                dir=state_dir,
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
            os.replace(temp_path, state_file_path)
            temp_path = None
            logger.info(f"System state saved to {state_file_path}")
        except OSError as e:
            logger.error(f"Error saving system state to {state_file_path}: {e}")
            raise BackupIOError(f"Failed to save system state: {e}") from e
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    logger.warning(f"Failed to remove temporary state file: {temp_path}")

    def load(self):
        """
        Load the state document, falling back to an empty state when the file
        is missing or cannot be parsed.
        """
        state_file_path = self.state_file_path

        if not os.path.exists(state_file_path):
            logger.info(f"State file not found, initializing empty state: {state_file_path}")
            self._initialize_empty_state()
            return

        try:
            logger.debug(f"Loading system state from {state_file_path}")
            with open(state_file_path, 'r', encoding='utf-8') as f:
                document = json.load(f)

            last_backup_time = parse_timestamp(document.get('lastBackupTime'))
            backup_history = CaseInsensitiveDict({
                group: [BackupRecord.from_dict(r) for r in records]
                for group, records in (document.get('backupHistory') or {}).items()
                if records
            })
            file_metadata = CaseInsensitiveDict({
                path: FileMetadata.from_dict(m)
                for path, m in (document.get('fileMetadata') or {}).items()
            })
        except Exception as e:
            logger.error(
                f"Error loading system state from {state_file_path}: {e}. Initializing empty state."
            )
            self._initialize_empty_state()
            return

        with self._lock:
            self._last_backup_time = last_backup_time
            self._backup_history = backup_history
            self._file_metadata = file_metadata

        logger.info(
            f"Loaded state: {len(file_metadata)} file metadata entries, "
            f"{len(backup_history)} backup history entries."
        )

    def _initialize_empty_state(self):
        with self._lock:
            self._last_backup_time = MIN_TIMESTAMP
            self._backup_history = CaseInsensitiveDict()
            self._file_metadata = CaseInsensitiveDict()

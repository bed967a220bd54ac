"""
Archive handling for backup artifacts.

Backups are ZIP containers whose entries are the selected files, named by
their path relative to the backed-up directory with '/' separators.
"""

import os
import uuid
import zipfile
import logging
from pathlib import Path
from typing import Iterable, List, Optional
from datetime import datetime, timezone

from restore.exceptions import BackupIOError, ValidationError

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = '.zip'


class CompressionError(BackupIOError):
    """Raised when archive creation or extraction fails."""
    pass


def archive_entry_name(file_path: str, base_directory: str) -> str:
    """Return the archive entry name for a file under base_directory."""
    relative_path = os.path.relpath(os.path.abspath(file_path), os.path.abspath(base_directory))
    return relative_path.replace('\\', '/')


def create_archive(files: Iterable[str], base_directory: str, archive_path: str) -> List[str]:
    """
    Create a ZIP archive of files, preserving paths relative to base_directory.

    Files that disappear before they can be archived are skipped.

    Args:
        files: Absolute paths of the files to include
        base_directory: Directory the entry names are relative to
        archive_path: Output archive path

    Returns:
        The file paths actually written to the archive

    Raises:
        CompressionError: If archive creation fails
    """
    files = list(files)
    if not files:
        raise CompressionError("No files provided for archive")

    archived = []
    try:
        os.makedirs(os.path.dirname(os.path.abspath(archive_path)), exist_ok=True)

        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for file_path in files:
                if not os.path.isfile(file_path):
                    logger.warning(f"File vanished before archiving, skipping: {file_path}")
                    continue

                zipf.write(file_path, archive_entry_name(file_path, base_directory))
                archived.append(file_path)

        logger.info(f"Created archive {os.path.basename(archive_path)} with {len(archived)} files")
        return archived

    except (OSError, zipfile.BadZipFile, ValueError) as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive: {archive_path}")
        raise CompressionError(f"Failed to create archive: {e}")


def extract_archive(archive_path: str, target_directory: str) -> List[str]:
    """
    Extract a backup archive into target_directory, overwriting existing files.

    Returns:
        Paths of the extracted files

    Raises:
        ValidationError: If an entry would be written outside target_directory
        CompressionError: If the archive is unreadable
    """
    target = Path(target_directory).resolve()
    extracted = []

    try:
        target.mkdir(parents=True, exist_ok=True)

        with zipfile.ZipFile(archive_path, 'r') as zipf:
            members = zipf.infolist()

            # Refuse the whole archive before writing anything
            for member in members:
                destination = target.joinpath(*member.filename.replace('\\', '/').split('/')).resolve()
                if destination != target and target not in destination.parents:
                    raise ValidationError(f"Archive entry escapes target directory: {member.filename}")

            for member in members:
                if member.is_dir():
                    continue
                extracted.append(zipf.extract(member, target))

        logger.info(f"Extracted {len(extracted)} files to {target}")
        return extracted

    except (OSError, zipfile.BadZipFile) as e:
        raise CompressionError(f"Failed to extract archive {archive_path}: {e}")


def generate_archive_filename(group_name: str, timestamp: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: backup_{group_name}_{uuid4 hex}_{YYYYMMDDHHMMSS}.zip (UTC)

    Args:
        group_name: Name of the backup group (typically the directory name)
        timestamp: Instant to embed (defaults to now, UTC)

    Returns:
        Filename (without path)
    """
    stamp = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime('%Y%m%d%H%M%S')

    # Sanitize group name (replace spaces and special chars with underscores)
    safe_group_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in group_name
    ) or 'backup'

    return f"backup_{safe_group_name}_{uuid.uuid4().hex}_{stamp}{ARCHIVE_EXTENSION}"

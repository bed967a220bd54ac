"""
File selection for backups.

FileSelectionService walks source directories and applies an ordered list
of exclusion rules to every entry. The first rule that matches excludes the
entry; an entry that cannot be evaluated is excluded as well.
"""

import os
import stat
import fnmatch
import logging
from typing import Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Windows file attribute flags (os.stat_result.st_file_attributes)
FILE_ATTRIBUTE_HIDDEN = getattr(stat, 'FILE_ATTRIBUTE_HIDDEN', 0x2)
FILE_ATTRIBUTE_SYSTEM = getattr(stat, 'FILE_ATTRIBUTE_SYSTEM', 0x4)

ExclusionRule = Callable[[str, os.stat_result], bool]


def _normalize_root(path: str) -> str:
    expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(path)))
    return expanded.rstrip('/\\').casefold()


def is_hidden_or_system(path: str, stat_result: os.stat_result) -> bool:
    """True for dot-files and for entries carrying the hidden or system attribute."""
    attributes = getattr(stat_result, 'st_file_attributes', 0)
    if attributes & (FILE_ATTRIBUTE_HIDDEN | FILE_ATTRIBUTE_SYSTEM):
        return True
    return os.path.basename(path.rstrip('/\\')).startswith('.')


class FileSelectionService:
    """
    Collects the files to back up from a set of paths.

    Exclusion rules, in order:
    1. the path lies under a configured excluded root
    2. the entry is hidden or a system file
    3. the file is larger than the size cap
    4. the file name matches an excluded glob pattern (case-insensitive)
    """

    def __init__(self, excluded_paths: Optional[Iterable[str]] = None,
                 excluded_patterns: Optional[Iterable[str]] = None,
                 max_file_size_mb: int = 0):
        self.excluded_roots = [_normalize_root(p) for p in (excluded_paths or []) if p and p.strip()]
        self.excluded_patterns = [p.casefold() for p in (excluded_patterns or []) if p and p.strip()]
        self.max_file_size_bytes = max(0, int(max_file_size_mb)) * 1024 * 1024

        self.rules: List[Tuple[str, ExclusionRule]] = [
            ('excluded path', self._is_in_excluded_root),
            ('hidden/system', is_hidden_or_system),
            ('size limit', self._exceeds_size_limit),
            ('pattern', self._matches_pattern),
        ]

    @classmethod
    def from_settings(cls, settings) -> 'FileSelectionService':
        return cls(
            excluded_paths=settings.excluded_paths,
            excluded_patterns=settings.excluded_patterns,
            max_file_size_mb=settings.max_file_size_mb,
        )

    def _is_in_excluded_root(self, path: str, stat_result: os.stat_result) -> bool:
        normalized = os.path.abspath(path).rstrip('/\\').casefold()
        for root in self.excluded_roots:
            if normalized == root or normalized.startswith(root + os.sep.casefold()):
                return True
            # Accept Windows-style separators in configured roots
            if normalized.startswith(root + '\\') or normalized.startswith(root + '/'):
                return True
        return False

    def _exceeds_size_limit(self, path: str, stat_result: os.stat_result) -> bool:
        if not self.max_file_size_bytes or not stat.S_ISREG(stat_result.st_mode):
            return False
        return stat_result.st_size > self.max_file_size_bytes

    def _matches_pattern(self, path: str, stat_result: os.stat_result) -> bool:
        name = os.path.basename(path).casefold()
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.excluded_patterns)

    def is_excluded(self, path: str, stat_result: Optional[os.stat_result] = None) -> bool:
        """Apply the exclusion rules to one path. Unreadable entries are excluded."""
        try:
            if stat_result is None:
                stat_result = os.stat(path)
            for name, rule in self.rules:
                if rule(path, stat_result):
                    logger.debug(f"Excluded ({name}): {path}")
                    return True
            return False
        except OSError as e:
            logger.warning(f"Cannot access {path}, excluding it: {e}")
            return True

    def _is_skipped_directory(self, path: str, stat_result: os.stat_result) -> bool:
        return self._is_in_excluded_root(path, stat_result) or is_hidden_or_system(path, stat_result)

    def is_under_skipped_directory(self, path: str, root: str) -> bool:
        """True when a directory between root and path is one the walk would skip."""
        root = os.path.abspath(root)
        parent = os.path.dirname(os.path.abspath(path))
        while parent != root and os.path.commonpath([root, parent]) == root:
            try:
                if self._is_skipped_directory(parent, os.stat(parent)):
                    return True
            except OSError:
                return True
            parent = os.path.dirname(parent)
        return False

    def collect(self, paths: Iterable[str]) -> List[str]:
        """
        Return every non-excluded file under paths.

        Files are taken as-is (subject to the exclusion rules); directories are
        walked iteratively, skipping hidden, system and excluded subdirectories.
        """
        collected = []

        for path in paths:
            path = os.path.abspath(path)
            if os.path.isfile(path):
                if not self.is_excluded(path):
                    collected.append(path)
            elif os.path.isdir(path):
                collected.extend(self._walk(path))
            else:
                logger.warning(f"Path not found, skipping: {path}")

        logger.info(f"Collected {len(collected)} files for backup")
        return collected

    def _walk(self, root: str) -> List[str]:
        files = []
        pending = [root]

        while pending:
            directory = pending.pop()
            try:
                with os.scandir(directory) as entries:
                    entries = list(entries)
            except OSError as e:
                logger.warning(f"Cannot read directory {directory}, skipping: {e}")
                continue

            for entry in sorted(entries, key=lambda e: e.name):
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if self._is_skipped_directory(entry.path, entry.stat(follow_symlinks=False)):
                            logger.debug(f"Skipping directory: {entry.path}")
                            continue
                        pending.append(entry.path)
                    elif entry.is_file():
                        if not self.is_excluded(entry.path, entry.stat()):
                            files.append(entry.path)
                except OSError as e:
                    logger.warning(f"Cannot access {entry.path}, excluding it: {e}")

        return files


def calculate_directory_size(directory: str, threshold_mb: int = 0) -> Tuple[int, bool]:
    """
    Sum the size of all files under a directory.

    Returns:
        (total bytes, whether the total exceeds threshold_mb)
    """
    total = 0
    for dirpath, _dirnames, filenames in os.walk(directory):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                # Unreadable entries do not count toward the total
                continue

    exceeds = bool(threshold_mb) and total > threshold_mb * 1024 * 1024
    return total, exceeds

"""
Filesystem watcher that backs up watch directories shortly after they change.

One watchdog Observer carries a handler per watch directory. Relevant events
are collected per directory and a timer is restarted on each one; when a
directory has been quiet for the buffer time its backup runs. A directory is
never backed up by two watcher runs at once.
"""

import os
import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from restore.backup.executor import BackupExecutor, normalize_directory
from restore.backup.selection import FileSelectionService
from restore.exceptions import RestoreError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SECONDS = 10.0


class BackupEventHandler(FileSystemEventHandler):
    """Forwards created, modified and moved paths under one watch directory."""

    def __init__(self, watcher: 'DirectoryWatcher', directory: str):
        super().__init__()
        self.watcher = watcher
        self.directory = directory

    def on_created(self, event):
        self._forward(event.src_path)

    def on_modified(self, event):
        # Directory mtime changes duplicate the events of their entries
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_moved(self, event):
        self._forward(event.dest_path)

    def _forward(self, path):
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        try:
            self.watcher.notify_change(self.directory, path)
        except Exception:
            logger.exception(f"Error handling file event for {path}")


class DirectoryWatcher:
    """
    Watches the configured directories and runs debounced backups.

    Deleted paths are not tracked: removing a file never adds content to a
    backup, so it does not start one.
    """

    def __init__(self, settings, executor: BackupExecutor,
                 buffer_seconds: float = DEFAULT_BUFFER_SECONDS,
                 observer_factory: Callable[[], Observer] = Observer):
        """
        Args:
            settings: Loaded Settings (watch directories and exclusion rules)
            executor: Executor that performs the backups
            buffer_seconds: Quiet time after the last change before a backup
            observer_factory: Builds the watchdog observer
        """
        self.settings = settings
        self.executor = executor
        self.buffer_seconds = buffer_seconds
        self.selection = FileSelectionService.from_settings(settings)
        self._observer_factory = observer_factory
        self._observer = None
        self._lock = threading.Lock()
        self._pending: Dict[str, Set[str]] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._running: Set[str] = set()
        self._stopped = False
        self.directories: List[str] = []

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> int:
        """
        Start watching every existing watch directory.

        Returns:
            Number of directories being watched
        """
        if self._observer is not None:
            return len(self.directories)

        observer = self._observer_factory()
        directories = []
        for watch in self.settings.watch_directories:
            directory = normalize_directory(watch.path)
            if not os.path.isdir(directory):
                logger.warning(f"Watch directory not found, cannot watch: {directory}")
                continue

            observer.schedule(BackupEventHandler(self, directory), directory, recursive=True)
            storage_info = f"{watch.storage_type} storage" if watch.storage_type else "global storage"
            logger.info(f"Watching directory: {directory} (using {storage_info})")
            directories.append(directory)

        if not directories:
            logger.warning("No watch directories available, file watcher not started")
            return 0

        with self._lock:
            self._stopped = False
        observer.start()
        self._observer = observer
        self.directories = directories
        logger.info(f"File watcher started for {len(directories)} directories")
        return len(directories)

    def stop(self):
        """Stop the observer and drop changes that have not been backed up yet."""
        with self._lock:
            self._stopped = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending.clear()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def notify_change(self, directory: str, path: str) -> bool:
        """
        Record a changed path under directory and restart its buffer timer.

        Returns:
            True if the path was accepted, False if selection rules reject it
        """
        if self.selection.is_excluded(path) or self.selection.is_under_skipped_directory(path, directory):
            return False

        with self._lock:
            if self._stopped:
                return False
            logger.debug(f"File change detected: {path}")
            self._pending.setdefault(directory, set()).add(path)
            self._restart_timer(directory)
        return True

    def pending_changes(self, directory: str) -> Set[str]:
        with self._lock:
            return set(self._pending.get(normalize_directory(directory), set()))

    def _restart_timer(self, directory: str):
        # Caller holds the lock
        timer = self._timers.get(directory)
        if timer is not None:
            timer.cancel()

        timer = threading.Timer(self.buffer_seconds, self.flush, args=[directory])
        timer.daemon = True
        self._timers[directory] = timer
        timer.start()

    def flush(self, directory: str) -> bool:
        """
        Back up directory if it has pending changes and no run in progress.

        Changes that arrive during a run stay pending and are picked up by a
        new timer once the run finishes.

        Returns:
            True if a backup ran
        """
        with self._lock:
            if directory in self._running:
                logger.debug(f"Backup of {directory} already running, keeping changes pending")
                return False

            changes = self._pending.pop(directory, set())
            if not changes:
                logger.debug(f"Buffer elapsed for {directory} with no pending changes")
                return False
            self._running.add(directory)

        try:
            logger.info(f"Change buffer elapsed, backing up {directory} ({len(changes)} changed paths)")
            self._run_backup(directory)
        finally:
            with self._lock:
                self._running.discard(directory)
                if self._pending.get(directory) and not self._stopped:
                    self._restart_timer(directory)
        return True

    def _run_backup(self, directory: str):
        try:
            result = asyncio.run(self.executor.backup_directory(directory))
            if result.remote_path:
                logger.info(f"Watched backup of {directory} stored at {result.remote_path}")
        except RestoreError as e:
            logger.error(f"Watched backup of {directory} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error in watched backup of {directory}")


def create_watcher(settings, state, password_provider=None,
                   buffer_seconds: float = DEFAULT_BUFFER_SECONDS) -> DirectoryWatcher:
    """Build a DirectoryWatcher with its own BackupExecutor over the shared state."""
    return DirectoryWatcher(settings, BackupExecutor(settings, state, password_provider), buffer_seconds)

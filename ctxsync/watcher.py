"""
File system watcher for ctxsync.

Monitors a project directory and triggers incremental sync passes once a
burst of changes has settled.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

from .errors import SyncStateUnavailable
from .models import SyncReport

logger = logging.getLogger(__name__)


class CodeChangeHandler(FileSystemEventHandler):
    """
    Event handler for code file changes.

    Collects changed paths and debounces rapid modifications so a burst of
    saves costs one sync pass.
    """

    def __init__(
        self,
        root: Path,
        sync_fn: Callable[[], SyncReport],
        is_excluded: Optional[Callable[[str], bool]] = None,
        debounce_seconds: float = 0.5,
        on_change: Optional[Callable[[str, str], None]] = None,
    ):
        """
        Initialize the change handler.

        Args:
            root: Watched project root
            sync_fn: Runs one sync pass
            is_excluded: Predicate on root-relative POSIX paths; excluded paths are ignored
            debounce_seconds: Quiet period required before syncing
            on_change: Optional callback(relative_path, event_type) per queued change
        """
        super().__init__()
        self.root = Path(root).resolve()
        self.sync_fn = sync_fn
        self.is_excluded = is_excluded
        self.debounce_seconds = debounce_seconds
        self.on_change = on_change

        self._pending_changes: dict[str, str] = {}  # relative path -> event type
        self._last_event_time = 0.0
        self._lock = threading.Lock()

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._queue_change(event.src_path, "modified")

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._queue_change(event.src_path, "created")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._queue_change(event.src_path, "deleted")

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        # Treat move as delete + create
        self._queue_change(event.src_path, "deleted")
        if getattr(event, "dest_path", None):
            self._queue_change(event.dest_path, "created")

    def _queue_change(self, path: str, event_type: str) -> None:
        try:
            rel_path = Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return
        if self.is_excluded is not None and self.is_excluded(rel_path):
            return

        with self._lock:
            self._pending_changes[rel_path] = event_type
            self._last_event_time = time.time()

        logger.debug(f"Queued {event_type} event for {rel_path}")
        if self.on_change:
            self.on_change(rel_path, event_type)

    @property
    def pending(self) -> dict[str, str]:
        with self._lock:
            return dict(self._pending_changes)

    def process_pending_changes(self) -> Optional[SyncReport]:
        """
        Run a sync pass if changes are pending and the debounce period has elapsed.

        This should be called periodically (e.g., in a loop).

        Returns:
            The sync report, or None when nothing ran
        """
        with self._lock:
            if not self._pending_changes:
                return None
            if time.time() - self._last_event_time < self.debounce_seconds:
                return None
            count = len(self._pending_changes)
            self._pending_changes.clear()

        logger.info(f"Syncing after {count} file changes")
        try:
            return self.sync_fn()
        except SyncStateUnavailable:
            logger.critical("Sync state is unavailable; stopping until it is repaired")
            raise
        except Exception as e:
            # Keep watching; the next change triggers another attempt
            logger.error(f"Sync after file changes failed: {e}")
            return None


class FileWatcher:
    """
    File system watcher that keeps a CodeIndex in sync with its directory.

    Uses watchdog to detect file system events and triggers incremental
    sync passes.
    """

    def __init__(self, code_index, debounce_seconds: float = 0.5, poll_interval: float = 0.1):
        """
        Initialize the file watcher.

        Args:
            code_index: CodeIndex to sync
            debounce_seconds: Quiet period before a sync pass
            poll_interval: How often pending changes are checked
        """
        self.code_index = code_index
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.observer: Optional[Observer] = None
        self.handler: Optional[CodeChangeHandler] = None
        self._running = False

    def start(
        self,
        on_change: Optional[Callable[[str, str], None]] = None,
        on_sync: Optional[Callable[[SyncReport], None]] = None,
    ) -> None:
        """
        Watch the project root until stop() is called or the process is interrupted.

        Args:
            on_change: Optional callback(path, event_type) for change notifications
            on_sync: Optional callback receiving each sync report
        """
        if self._running:
            logger.warning("Watcher is already running")
            return

        path = Path(self.code_index.config.project_root).resolve()
        if not path.is_dir():
            raise ValueError(f"Path is not a directory: {path}")

        logger.info(f"Starting file watcher for {path}")

        tree = self.code_index.tree
        self.handler = CodeChangeHandler(
            path,
            self.code_index.sync,
            is_excluded=getattr(tree, "is_excluded", None),
            debounce_seconds=self.debounce_seconds,
            on_change=on_change,
        )
        self.observer = Observer()
        self.observer.schedule(self.handler, str(path), recursive=True)
        self.observer.start()
        self._running = True

        logger.info("File watcher started")

        try:
            while self._running:
                time.sleep(self.poll_interval)
                handler = self.handler
                if handler is None:
                    break
                report = handler.process_pending_changes()
                if report is not None and on_sync:
                    on_sync(report)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop the file watcher."""
        if not self._running:
            return

        logger.info("Stopping file watcher")
        self._running = False

        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        self.handler = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def __repr__(self) -> str:
        status = "running" if self._running else "stopped"
        return f"FileWatcher({status})"

"""File system watcher triggering folder backup passes.

This module provides:
- FolderChangeHandler: watchdog handler with a settle delay per folder
- FolderWatcher: Watches every enabled sync folder and calls
  TransferEngine.reconcile_now after changes settle, and optionally on a
  fixed interval
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from bucketsync.storage import ObjectStoreError
from bucketsync.sync.ignore import IgnorePatterns
from bucketsync.sync.types import TransferError

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from bucketsync.sync.engine import TransferEngine
    from bucketsync.sync.types import ReconcileResult, SyncFolder

logger = logging.getLogger(__name__)


class FolderChangeHandler(FileSystemEventHandler):
    """Coalesces events of one folder into a single delayed trigger."""

    def __init__(
        self,
        folder: SyncFolder,
        on_settled: Callable[[int], None],
        delay: float = 3.0,
        ignore: IgnorePatterns | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            folder: Folder being watched.
            on_settled: Called with the folder id once no event arrived for delay seconds.
            delay: Settle delay in seconds.
            ignore: Patterns for paths that never trigger a pass.
        """
        super().__init__()
        self._folder = folder
        self._base_path = Path(folder.local_path)
        self._on_settled = on_settled
        self._delay = delay
        self._ignore = ignore or IgnorePatterns.for_folder(self._base_path)
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def _schedule(self) -> None:
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        self._on_settled(self._folder.id)

    def _handle_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        for raw in paths:
            if not raw:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if not self._ignore.should_ignore(Path(raw), self._base_path):
                logger.debug(f"Change in folder {self._folder.id}: {raw}")
                self._schedule()
                return

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event."""
        self._handle_event(event)

    def on_closed(self, event: FileSystemEvent) -> None:
        """Handle closed-after-write event."""
        self._handle_event(event)

    def stop(self) -> None:
        """Stop any pending timer."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None


class FolderWatcher:
    """Runs backup passes for enabled sync folders when they change.

    Deletions never trigger anything on their own (one-way backup).

    Usage:
        with FolderWatcher(engine, interval=600):
            engine.wait_all()
    """

    def __init__(
        self,
        engine: TransferEngine,
        debounce: float = 3.0,
        interval: float | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            engine: Engine whose reconcile_now() is called.
            debounce: Seconds without events before a pass starts.
            interval: Also run a pass on every folder this often (seconds).
        """
        self._engine = engine
        self._debounce = debounce
        self._interval = interval
        self._observer: BaseObserver = Observer()
        self._handlers: list[FolderChangeHandler] = []
        self._folder_locks: dict[int, threading.Lock] = {}
        self._stop = threading.Event()
        self._ticker: threading.Thread | None = None
        self._running = False
        # Last pass result per folder id
        self.results: dict[int, ReconcileResult] = {}

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Watch every enabled folder and run an initial pass on each."""
        if self._running:
            return

        folders = [f for f in self._engine.list_sync_folders() if f.enabled]
        for folder in folders:
            if not Path(folder.local_path).is_dir():
                logger.warning(f"Sync folder {folder.id} missing: {folder.local_path}")
                continue
            handler = FolderChangeHandler(folder, self.trigger, delay=self._debounce)
            self._observer.schedule(handler, folder.local_path, recursive=True)
            self._handlers.append(handler)
            self._folder_locks[folder.id] = threading.Lock()

        self._observer.start()
        self._running = True
        self._stop.clear()
        logger.info(f"Watching {len(self._handlers)} sync folders")

        for folder_id in list(self._folder_locks):
            self.trigger(folder_id)

        if self._interval:
            self._ticker = threading.Thread(target=self._tick, name="reconcile-ticker", daemon=True)
            self._ticker.start()

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return

        self._stop.set()
        for handler in self._handlers:
            handler.stop()
        self._observer.stop()
        self._observer.join(timeout=5.0)
        if self._ticker is not None:
            self._ticker.join(timeout=5.0)
            self._ticker = None
        self._handlers.clear()
        self._running = False

    def _tick(self) -> None:
        while not self._stop.wait(self._interval):
            for folder_id in list(self._folder_locks):
                self.trigger(folder_id)

    def trigger(self, folder_id: int) -> ReconcileResult | None:
        """Run a pass for one folder unless one is already running.

        Failures are logged; the watcher keeps running.
        """
        lock = self._folder_locks.setdefault(folder_id, threading.Lock())
        if not lock.acquire(blocking=False):
            logger.debug(f"Pass already running for folder {folder_id}")
            return None
        try:
            result = self._engine.reconcile_now(folder_id)
        except (TransferError, ObjectStoreError, OSError) as e:
            logger.error(f"Backup pass for folder {folder_id} failed: {e}")
            return None
        finally:
            lock.release()
        self.results[folder_id] = result
        return result

    def __enter__(self) -> FolderWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()

"""Transfer engine coordinating uploads, downloads and folder backup.

This module provides:
- TransferEngine: The public API used by the CLI (and any other caller)
  to start, control and observe transfers
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from bucketsync.core.chunking import effective_part_size, plan
from bucketsync.core.config import EngineConfig
from bucketsync.core.types import Direction, PartState, TransferState
from bucketsync.storage import ObjectNotFoundError, ObjectStoreError, SessionNotFoundError
from bucketsync.sync.domain import CANCELLABLE_STATES, InvalidTransitionError
from bucketsync.sync.progress import ProgressAggregator, Subscription
from bucketsync.sync.reconciler import SyncReconciler, normalize_prefix
from bucketsync.sync.retry import RetryPolicy, retry_with_backoff
from bucketsync.sync.types import (
    ProgressCallback,
    ProgressSnapshot,
    ReconcileResult,
    SyncFolder,
    SyncFolderDisabledError,
    Transfer,
    TransferNotFoundError,
    TransferSummary,
)
from bucketsync.sync.workers import TransferRunner

if TYPE_CHECKING:
    from bucketsync.state import TransferStateStore
    from bucketsync.storage import ObjectStore, RemoteObject

logger = logging.getLogger(__name__)

# States shown in the transfer queue (failed ones wait for an explicit retry)
QUEUE_STATES = (
    TransferState.PENDING,
    TransferState.ACTIVE,
    TransferState.PAUSED,
    TransferState.FAILED,
)


class TransferEngine:
    """Runs transfers in the background and exposes their control surface.

    Every long operation is fire-and-forget: start_upload() and
    start_download() persist the transfer and return its id at once; the
    bytes move on runner threads, observed through snapshot(), subscribe()
    and wait().

    Usage:
        engine = TransferEngine(store, state, EngineConfig())
        engine.start()
        transfer_id = engine.start_upload("/data/video.mkv", "backups/video.mkv")
        engine.wait(transfer_id)
        engine.shutdown()
    """

    def __init__(
        self,
        object_store: ObjectStore,
        state_store: TransferStateStore,
        config: EngineConfig | None = None,
        progress: ProgressAggregator | None = None,
        ignore_patterns: list[str] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            object_store: Shared store client.
            state_store: Persistent transfer state.
            config: Engine settings (defaults when omitted).
            progress: Aggregator to publish to (one is created when omitted).
            ignore_patterns: Extra ignore patterns for folder backup.
        """
        self._store = object_store
        self._state = state_store
        self._config = config or EngineConfig()
        self._progress = progress or ProgressAggregator(
            window=self._config.speed_window,
            min_interval=self._config.progress_interval,
        )
        self._policy = RetryPolicy.from_config(self._config)
        self._limiter = threading.BoundedSemaphore(self._config.max_concurrent_operations)
        self._reconciler = SyncReconciler(
            object_store,
            state_store,
            ignore_patterns=ignore_patterns,
            listing_ttl=self._config.listing_ttl,
        )
        self._runners: dict[str, TransferRunner] = {}
        # Transfers to relaunch once their current runner ends
        self._relaunch: set[str] = set()
        self._lock = threading.RLock()
        self._started = False
        self._closing = False
        self._owner = uuid.uuid4().hex

    @property
    def config(self) -> EngineConfig:
        """Engine settings."""
        return self._config

    @property
    def object_store(self) -> ObjectStore:
        """Store client shared by all transfers."""
        return self._store

    @property
    def state_store(self) -> TransferStateStore:
        """Persistent state."""
        return self._state

    @property
    def progress(self) -> ProgressAggregator:
        """Progress aggregator."""
        return self._progress

    @property
    def is_running(self) -> bool:
        """Check if start() was called without a matching shutdown()."""
        return self._started

    @property
    def owner(self) -> str:
        """Lease owner id of this engine's runners."""
        return self._owner

    # === Lifecycle ===

    def start(self) -> list[str]:
        """Recover from a previous crash and relaunch unfinished transfers.

        Transfers leased by a live engine in another process are left alone.

        Returns:
            Ids of the relaunched transfers.
        """
        self._started = True
        self._closing = False
        self._state.recover_interrupted()
        if not self._config.resume_on_start:
            return []
        relaunched = self.launch_pending()
        if relaunched:
            logger.info(f"Resumed {len(relaunched)} unfinished transfers")
        return relaunched

    def launch_pending(self) -> list[str]:
        """Start runners for pending or active transfers not running here.

        Picks up transfers queued by another process without a runner, and
        transfers whose runner lease expired with its engine.

        Returns:
            Ids of the launched transfers.
        """
        launched = []
        now = time.time()
        for transfer in self._state.list_transfers([TransferState.PENDING, TransferState.ACTIVE]):
            if transfer.held_by_other(self._owner, now):
                continue
            with self._lock:
                runner = self._runners.get(transfer.id)
            if runner is None or not runner.is_alive():
                self._launch(transfer)
                launched.append(transfer.id)
        return launched

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every runner without changing persisted states.

        Args:
            timeout: Seconds to wait for each runner to stop.
        """
        with self._lock:
            self._closing = True
            self._relaunch.clear()
            runners = list(self._runners.values())
        for runner in runners:
            runner.request_stop()
        for runner in runners:
            runner.join(timeout)
        self._started = False
        logger.info("Transfer engine stopped")

    def __enter__(self) -> TransferEngine:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    def _launch(self, transfer: Transfer, after_current: bool = False) -> TransferRunner:
        """Start a runner for a transfer unless one is already alive.

        Args:
            transfer: Transfer to run.
            after_current: When a runner is still finishing (a paused one
                draining its in-flight parts), start a fresh runner as soon
                as it ends instead of reusing it.
        """
        with self._lock:
            runner = self._runners.get(transfer.id)
            if runner is not None and runner.is_alive():
                if after_current:
                    self._relaunch.add(transfer.id)
                return runner
            self._progress.track(
                transfer.id, transfer.total_size, transfer.bytes_transferred, transfer.state
            )
            runner = TransferRunner(
                transfer.id,
                self._store,
                self._state,
                self._progress,
                self._limiter,
                self._config,
                on_finished=self._on_runner_finished,
                owner=self._owner,
            )
            self._runners[transfer.id] = runner
            runner.start()
            return runner

    def _on_runner_finished(self, transfer_id: str) -> None:
        with self._lock:
            if self._runners.get(transfer_id) is not threading.current_thread():
                return
            del self._runners[transfer_id]
            if transfer_id not in self._relaunch:
                return
            self._relaunch.discard(transfer_id)
            if self._closing:
                return
            try:
                transfer = self._state.get_transfer(transfer_id)
            except TransferNotFoundError:
                return
            logger.debug(f"Handing transfer {transfer_id} over to a new runner")
            self._launch(transfer)

    # === Starting transfers ===

    def start_upload(
        self,
        local_path: str | Path,
        remote_key: str,
        part_size: int | None = None,
        launch: bool = True,
    ) -> str:
        """Queue an upload and start it in the background.

        Args:
            local_path: File to upload.
            remote_key: Destination object key.
            part_size: Part size override (defaults to the configured size).
            launch: False only persists the transfer (left pending).

        Returns:
            The new transfer id.

        Raises:
            PlanningError: Empty file or bad part size; nothing is persisted.
            OSError: If the file cannot be read.
        """
        path = Path(local_path).expanduser().resolve()
        key = remote_key.lstrip("/")
        if not key:
            raise ValueError("Remote key must not be empty")
        stat = path.stat()
        if not path.is_file():
            raise IsADirectoryError(f"Not a regular file: {path}")

        size = stat.st_size
        effective = effective_part_size(
            size, part_size or self._config.part_size, self._store.limits
        )
        transfer = self._state.create_transfer(
            Direction.UPLOAD,
            str(path),
            key,
            size,
            effective,
            plan(size, effective, self._store.limits),
            source_mtime=stat.st_mtime,
        )
        logger.info(
            f"Queued upload {transfer.id}: {path} -> {key} "
            f"({size} bytes, {transfer.part_count} parts)"
        )
        if launch:
            self._launch(transfer)
        return transfer.id

    def start_download(
        self,
        remote_key: str,
        local_path: str | Path,
        part_size: int | None = None,
        launch: bool = True,
    ) -> str:
        """Queue a download and start it in the background.

        The object's size and etag are captured now; ranged GETs later require
        the same etag, so a concurrent overwrite fails the download instead of
        mixing two versions.

        Returns:
            The new transfer id.

        Raises:
            ObjectNotFoundError: If the key does not exist.
            PlanningError: Empty object or bad part size.
        """
        key = remote_key.lstrip("/")
        info = self._store.head(key)
        path = Path(local_path).expanduser().resolve()
        if path.is_dir():
            path = path / Path(key).name
        return self._create_download(info, path, part_size, launch)

    def start_prefix_download(
        self,
        prefix: str,
        local_dir: str | Path,
        part_size: int | None = None,
        launch: bool = True,
    ) -> list[str]:
        """Queue one download per object under a remote prefix.

        Keys are mirrored below local_dir relative to the prefix. Folder
        markers are skipped and empty objects are written at once, without
        a transfer.

        Returns:
            Ids of the queued transfers, in key order.

        Raises:
            ObjectNotFoundError: If nothing exists under the prefix.
        """
        prefix = normalize_prefix(prefix)
        base = Path(local_dir).expanduser().resolve()
        objects = [o for o in self._store.list(prefix) if not o.key.endswith("/")]
        if not objects:
            raise ObjectNotFoundError(f"No objects under {prefix or 'bucket root'}")

        transfer_ids = []
        for info in objects:
            path = (base / info.key[len(prefix):]).resolve()
            if not path.is_relative_to(base):
                logger.warning(f"Skipping {info.key}: resolves outside {base}")
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            if info.size == 0:
                path.touch()
                logger.info(f"Created empty file {path} for {info.key}")
                continue
            transfer_ids.append(self._create_download(info, path, part_size, launch))
        logger.info(f"Queued {len(transfer_ids)} downloads under {prefix or 'bucket root'}")
        return transfer_ids

    def _create_download(
        self, info: RemoteObject, path: Path, part_size: int | None, launch: bool
    ) -> str:
        effective = effective_part_size(
            info.size, part_size or self._config.part_size, self._store.limits
        )
        transfer = self._state.create_transfer(
            Direction.DOWNLOAD,
            str(path),
            info.key,
            info.size,
            effective,
            plan(info.size, effective, self._store.limits),
            remote_tag=info.etag or None,
        )
        logger.info(
            f"Queued download {transfer.id}: {info.key} -> {path} "
            f"({info.size} bytes, {transfer.part_count} parts)"
        )
        if launch:
            self._launch(transfer)
        return transfer.id

    # === Control ===

    def pause(self, transfer_id: str) -> Transfer:
        """Pause a transfer; in-flight parts finish, no new part starts.

        Raises:
            InvalidTransitionError: If the transfer cannot be paused.
        """
        transfer = self._state.transition(transfer_id, TransferState.PAUSED)
        with self._lock:
            runner = self._runners.get(transfer_id)
        if runner is not None:
            runner.request_pause()
        self._progress.set_state(transfer_id, TransferState.PAUSED)
        logger.info(f"Paused transfer {transfer_id}")
        return transfer

    def resume(self, transfer_id: str) -> Transfer:
        """Resume a paused transfer from its first non-completed part.

        Returns at once. A runner still draining the parts that were in
        flight at pause time is left to finish; a fresh runner takes over
        when it ends.

        Raises:
            InvalidTransitionError: If the transfer is not paused.
        """
        transfer = self._state.transition(
            transfer_id, TransferState.ACTIVE, expected=TransferState.PAUSED
        )
        logger.info(f"Resuming transfer {transfer_id} ({transfer.bytes_transferred} bytes done)")
        self._launch(transfer, after_current=True)
        return transfer

    def cancel(self, transfer_id: str) -> Transfer:
        """Cancel a transfer, releasing provider-side and local staging data.

        Raises:
            InvalidTransitionError: If the transfer already completed or was cancelled.
        """
        current = self._state.get_transfer(transfer_id)
        if current.state not in CANCELLABLE_STATES:
            raise InvalidTransitionError(current.state, TransferState.CANCELLED)
        with self._lock:
            self._relaunch.discard(transfer_id)
        transfer = self._state.transition(transfer_id, TransferState.CANCELLED)
        with self._lock:
            runner = self._runners.get(transfer_id)
        if runner is not None:
            runner.request_cancel()

        if transfer.direction == Direction.UPLOAD and transfer.session_token:
            self._abort_session(transfer)
        elif transfer.direction == Direction.DOWNLOAD:
            with contextlib.suppress(FileNotFoundError):
                transfer.temp_path.unlink()

        self._state.delete_parts(transfer_id)
        self._progress.set_state(transfer_id, TransferState.CANCELLED)
        logger.info(f"Cancelled transfer {transfer_id}")
        return self._state.get_transfer(transfer_id)

    def _abort_session(self, transfer: Transfer) -> None:
        token = transfer.session_token or ""
        try:
            retry_with_backoff(
                lambda: self._store.abort_multipart(transfer.remote_key, token),
                max_retries=max(self._policy.max_attempts - 1, 0),
                initial_backoff=self._policy.initial_backoff,
                max_backoff=self._policy.max_backoff,
                backoff_multiplier=self._policy.multiplier,
            )
            logger.info(f"Aborted multipart upload {token} for {transfer.remote_key}")
        except SessionNotFoundError:
            logger.debug(f"Multipart upload {token} already gone")
        except ObjectStoreError as e:
            # The provider's lifecycle rules are the last resort for this session
            logger.error(f"Could not abort multipart upload {token}: {e}")
        self._state.set_session_token(transfer.id, None)

    def retry(self, transfer_id: str) -> Transfer:
        """Restart a failed transfer; completed parts are kept.

        An upload whose source changed since it was planned starts over:
        its multipart session is aborted and the file is planned again.

        Raises:
            InvalidTransitionError: If the transfer has not failed.
            OSError: If the upload source can no longer be read.
            PlanningError: If the changed source cannot be planned (now empty).
        """
        transfer = self._state.get_transfer(transfer_id)
        if transfer.state != TransferState.FAILED:
            raise InvalidTransitionError(transfer.state, TransferState.PENDING)
        if transfer.direction == Direction.UPLOAD:
            self._replan_changed_source(transfer)

        transfer = self._state.transition(
            transfer_id, TransferState.PENDING, expected=TransferState.FAILED
        )
        self._state.reset_parts(transfer_id, [PartState.UPLOADING, PartState.FAILED])
        transfer = self._state.get_transfer(transfer_id)
        logger.info(f"Retrying transfer {transfer_id} ({transfer.bytes_transferred} bytes kept)")
        self._launch(transfer, after_current=True)
        return transfer

    def _replan_changed_source(self, transfer: Transfer) -> None:
        stat = Path(transfer.local_path).stat()
        if stat.st_size == transfer.total_size and stat.st_mtime == transfer.source_mtime:
            return
        effective = effective_part_size(stat.st_size, transfer.part_size, self._store.limits)
        parts = plan(stat.st_size, effective, self._store.limits)
        if transfer.session_token:
            self._abort_session(transfer)
        self._state.replan_transfer(
            transfer.id, stat.st_size, effective, parts, source_mtime=stat.st_mtime
        )
        logger.info(
            f"Source of transfer {transfer.id} changed, replanned "
            f"({stat.st_size} bytes, {len(parts)} parts)"
        )

    def remove(self, transfer_id: str) -> None:
        """Cancel a transfer if needed and delete its record.

        A runner still finishing in-flight parts sees the record vanish
        and stops on its own.
        """
        transfer = self._state.get_transfer(transfer_id)
        if transfer.state in CANCELLABLE_STATES:
            self.cancel(transfer_id)
        self._state.delete_transfer(transfer_id)
        self._progress.forget(transfer_id)
        logger.info(f"Removed transfer {transfer_id}")

    def clear_finished(self) -> int:
        """Delete every completed or cancelled record. Returns the count."""
        finished = self._state.list_transfers([s for s in TransferState if s.is_terminal])
        for transfer in finished:
            self._state.delete_transfer(transfer.id)
            self._progress.forget(transfer.id)
        return len(finished)

    # === Observation ===

    def get_transfer(self, transfer_id: str) -> Transfer:
        """Get a transfer record."""
        return self._state.get_transfer(transfer_id)

    def list_transfers(self, states: list[TransferState] | None = None) -> list[Transfer]:
        """List transfer records, oldest first."""
        return self._state.list_transfers(states)

    def list_active_transfers(self) -> list[TransferSummary]:
        """Queue view: every transfer that is not completed or cancelled."""
        return [
            TransferSummary.build(t, self._progress.snapshot(t.id))
            for t in self._state.list_transfers(QUEUE_STATES)
        ]

    def snapshot(self, transfer_id: str) -> ProgressSnapshot:
        """Live progress, or persisted progress for a transfer not running here."""
        live = self._progress.snapshot(transfer_id)
        transfer = self._state.get_transfer(transfer_id)
        if live is not None and live.state == transfer.state:
            return live
        done = transfer.state == TransferState.COMPLETED
        return ProgressSnapshot(
            transfer_id=transfer.id,
            bytes_transferred=max(
                transfer.bytes_transferred, live.bytes_transferred if live else 0
            ),
            total=transfer.total_size,
            speed=0.0,
            eta=0.0 if done else None,
            state=transfer.state,
        )

    def subscribe(self, transfer_id: str, callback: ProgressCallback) -> Subscription:
        """Receive rate-limited snapshots of one transfer."""
        return self._progress.subscribe(transfer_id, callback)

    def has_runner(self, transfer_id: str) -> bool:
        """Check if a runner of this engine is still driving the transfer."""
        with self._lock:
            runner = self._runners.get(transfer_id)
        return runner is not None and runner.is_alive()

    def wait(self, transfer_id: str, timeout: float | None = None) -> Transfer:
        """Block until the transfer's runner stops.

        Returns:
            The transfer record once no runner of this engine drives it
            (completed, failed, cancelled, paused), or when timeout expires.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                runner = self._runners.get(transfer_id)
            if runner is None:
                break
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            runner.join(remaining)
            if runner.is_alive():
                break
        return self._state.get_transfer(transfer_id)

    def wait_all(self, timeout: float | None = None) -> None:
        """Block until every runner of this engine stops."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                runners = list(self._runners.values())
            if not runners:
                return
            for runner in runners:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return
                runner.join(remaining)

    # === Remote objects ===

    def list_remote(self, prefix: str = "") -> list[RemoteObject]:
        """List objects under prefix (always from the store)."""
        objects = self._store.list(prefix)
        self._state.cache_remote_listing(prefix, objects)
        return objects

    def delete_remote(self, key: str) -> None:
        """Delete one object and drop cached listings."""
        self._store.delete(key)
        self._state.invalidate_listing()
        logger.info(f"Deleted remote object {key}")

    def move_remote(self, source_key: str, dest_key: str) -> None:
        """Rename an object with a server-side copy then delete.

        Raises:
            ValueError: If both keys are the same.
            ObjectNotFoundError: If source_key does not exist.
        """
        source = source_key.lstrip("/")
        dest = dest_key.lstrip("/")
        if not source or not dest:
            raise ValueError("Object keys must not be empty")
        if source == dest:
            raise ValueError(f"Source and destination are the same: {source}")
        self._store.copy(source, dest)
        self._store.delete(source)
        self._state.invalidate_listing()
        logger.info(f"Moved remote object {source} -> {dest}")

    def create_remote_folder(self, prefix: str) -> str:
        """Create an empty folder marker object ("prefix/").

        Returns:
            The marker key.
        """
        key = normalize_prefix(prefix)
        if not key:
            raise ValueError("Folder name must not be empty")
        self._store.put(key, b"")
        self._state.invalidate_listing()
        logger.info(f"Created remote folder {key}")
        return key

    def check_connection(self) -> str:
        """Verify the store is reachable with the configured credentials.

        Returns:
            The store location.

        Raises:
            ObjectStoreError: If the bucket cannot be reached.
        """
        self._store.check()
        logger.info(f"Connection to {self._store.location} OK")
        return self._store.location

    # === Folder backup ===

    def add_sync_folder(self, local_path: str | Path, remote_prefix: str) -> SyncFolder:
        """Register a folder for one-way backup under remote_prefix."""
        path = Path(local_path).expanduser().resolve()
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        return self._state.add_sync_folder(str(path), normalize_prefix(remote_prefix))

    def list_sync_folders(self) -> list[SyncFolder]:
        """List registered folders."""
        return self._state.list_sync_folders()

    def remove_sync_folder(self, folder_id: int) -> None:
        """Forget a folder."""
        self._state.remove_sync_folder(folder_id)

    def set_sync_folder_enabled(self, folder_id: int, enabled: bool) -> SyncFolder:
        """Enable or disable a folder."""
        return self._state.set_sync_folder_enabled(folder_id, enabled)

    def reconcile_now(self, folder_id: int, refresh: bool = False) -> ReconcileResult:
        """Run one backup pass for a folder and queue its uploads.

        Args:
            folder_id: Registered folder.
            refresh: Re-list the remote prefix instead of using the cache.

        Returns:
            The pass result, with transfer_ids of the queued uploads.

        Raises:
            SyncFolderNotFoundError: If the folder is not registered.
            SyncFolderDisabledError: If the folder is disabled.
        """
        folder = self._state.get_sync_folder(folder_id)
        if not folder.enabled:
            raise SyncFolderDisabledError(f"Sync folder {folder_id} is disabled")

        result = self._reconciler.reconcile(folder, refresh=refresh)
        if result.uploads:
            self._supersede_failed({(a.local_path, a.remote_key) for a in result.uploads})
        for action in result.uploads:
            try:
                result.transfer_ids.append(self.start_upload(action.local_path, action.remote_key))
            except (ValueError, OSError) as e:
                logger.warning(f"Cannot queue {action.local_path}: {e}")
                result.errors.append(f"{action.local_path}: {e}")
        self._state.mark_folder_synced(folder_id)
        return result

    def _supersede_failed(self, targets: set[tuple[str, str]]) -> None:
        """Cancel failed uploads of files about to be queued again."""
        for transfer in self._state.list_transfers([TransferState.FAILED]):
            if transfer.direction != Direction.UPLOAD:
                continue
            if (transfer.local_path, transfer.remote_key) in targets:
                logger.info(f"Superseding failed upload {transfer.id} of {transfer.remote_key}")
                self.cancel(transfer.id)

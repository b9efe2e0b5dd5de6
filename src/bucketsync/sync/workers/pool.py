"""Per-transfer worker pool.

This module provides:
- TransferRunner: Thread driving one transfer from activation to a final
  (or paused) state with a bounded set of part worker threads

Every runner shares one BoundedSemaphore owned by the engine, which caps
the number of part requests in flight across all transfers.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING

from bucketsync.core.types import Direction, PartState, TransferState
from bucketsync.storage import (
    ObjectStoreError,
    RemoteObject,
    SessionNotFoundError,
    is_md5_etag,
)
from bucketsync.sync.domain import InvalidTransitionError
from bucketsync.sync.retry import ErrorKind, RetryPolicy, classify_error, retry_with_backoff
from bucketsync.sync.types import (
    IntegrityError,
    LocalFileChangedError,
    Part,
    Transfer,
    TransferNotFoundError,
)
from bucketsync.sync.workers.base import CancelledException, PartContext, PartWorker
from bucketsync.sync.workers.download import DownloadPartWorker, file_md5, preallocate
from bucketsync.sync.workers.upload import UploadPartWorker

if TYPE_CHECKING:
    from bucketsync.core.config import EngineConfig
    from bucketsync.state import TransferStateStore
    from bucketsync.storage import ObjectStore
    from bucketsync.sync.progress import ProgressAggregator

logger = logging.getLogger(__name__)

# Seconds between checks of the persisted state (pause/cancel by another process)
STATE_POLL_INTERVAL = 1.0

# Seconds between checks of the stop flags while waiting for a limiter slot
SLOT_WAIT_INTERVAL = 0.2

UNFINISHED_PART_STATES = (PartState.PENDING, PartState.UPLOADING, PartState.FAILED)


class TransferRunner(threading.Thread):
    """Runs one transfer.

    Usage:
        runner = TransferRunner(transfer_id, store, state, progress, limiter, config)
        runner.start()
        runner.request_pause()  # or request_cancel() / request_stop()
        runner.join()

    Pause and cancel are recorded in the state database by the caller
    before the runner is signalled; the runner only stops its threads and
    never downgrades the persisted state. request_stop() stops without any
    state change (shutdown) so the transfer resumes on the next start.

    While it runs, the runner holds the transfer's lease under its owner id
    and renews it every third of lease_ttl. A runner that loses its lease
    stops claiming parts and never finalizes.
    """

    def __init__(
        self,
        transfer_id: str,
        object_store: ObjectStore,
        state_store: TransferStateStore,
        progress: ProgressAggregator,
        limiter: threading.BoundedSemaphore,
        config: EngineConfig,
        on_finished: Callable[[str], None] | None = None,
        owner: str | None = None,
    ) -> None:
        super().__init__(name=f"transfer-{transfer_id[:8]}", daemon=True)
        self.transfer_id = transfer_id
        self._store = object_store
        self._state = state_store
        self._progress = progress
        self._limiter = limiter
        self._config = config
        self._policy = RetryPolicy.from_config(config)
        self._on_finished = on_finished
        self.owner = owner or uuid.uuid4().hex

        self._wake = threading.Event()
        self._stop_requested = False
        self._lock = threading.Lock()
        self._fatal: tuple[int | None, BaseException] | None = None
        self._last_poll = time.monotonic()
        self._external_stop = False
        self._leased = False
        self._lease_lost = False
        self._done = threading.Event()

    # === Signals ===

    def request_pause(self) -> None:
        """Finish in-flight parts and stop claiming new ones."""
        self._wake.set()

    def request_cancel(self) -> None:
        """Stop at the next safe checkpoint."""
        self._wake.set()

    def request_stop(self) -> None:
        """Stop without touching persisted state (engine shutdown)."""
        self._stop_requested = True
        self._wake.set()

    def _set_fatal(self, part_number: int | None, error: BaseException) -> None:
        with self._lock:
            if self._fatal is None:
                self._fatal = (part_number, error)
        self._wake.set()

    def _halted(self) -> bool:
        """Check if part threads must stop claiming work."""
        if self._wake.is_set() or self._external_stop:
            return True
        now = time.monotonic()
        if now - self._last_poll >= STATE_POLL_INTERVAL:
            self._last_poll = now
            if self._state.get_transfer(self.transfer_id).state != TransferState.ACTIVE:
                self._external_stop = True
                self._wake.set()
                return True
        return False

    def _sleep(self, delay: float) -> None:
        """Backoff wait that ends early, with CancelledException, on a stop."""
        if self._wake.wait(delay):
            raise CancelledException("Stop requested during backoff")

    def _retry_call(self, func: Callable[[], object]) -> object:
        """Retry a transfer-level call on transient store errors."""
        return retry_with_backoff(
            func,
            max_retries=max(self._policy.max_attempts - 1, 0),
            initial_backoff=self._policy.initial_backoff,
            max_backoff=self._policy.max_backoff,
            backoff_multiplier=self._policy.multiplier,
            sleep=self._sleep,
        )

    # === Thread body ===

    def run(self) -> None:
        try:
            self._run()
        except TransferNotFoundError:
            logger.info(f"Transfer {self.transfer_id} was removed while running")
        except Exception as e:
            logger.exception(f"Transfer {self.transfer_id}: unexpected runner error")
            self._fail(f"unexpected error: {e}")
        finally:
            self._done.set()
            if self._leased:
                self._state.release_lease(self.transfer_id, self.owner)
            if self._on_finished is not None:
                self._on_finished(self.transfer_id)

    def _heartbeat(self) -> None:
        """Renew the lease until the runner ends."""
        interval = self._config.lease_ttl / 3
        while not self._done.wait(interval):
            try:
                renewed = self._state.renew_lease(
                    self.transfer_id, self.owner, self._config.lease_ttl
                )
            except sqlite3.Error as e:
                logger.warning(f"Transfer {self.transfer_id}: lease renewal failed: {e}")
                continue
            if not renewed:
                logger.warning(
                    f"Transfer {self.transfer_id}: lease taken over by another engine, stopping"
                )
                self._lease_lost = True
                self._external_stop = True
                self._wake.set()
                return

    def _run(self) -> None:
        try:
            transfer = self._activate()
        except (CancelledException, InvalidTransitionError):
            self._publish_state()
            return
        except Exception as e:
            self._handle_fatal(None, e, stage="start")
            return
        if transfer is None:
            return

        worker = self._make_worker(transfer)
        pending = len(self._state.get_parts(self.transfer_id, [PartState.PENDING]))
        count = min(self._config.per_transfer_concurrency, pending)
        threads = [
            threading.Thread(
                target=self._part_loop,
                args=(transfer, worker),
                name=f"{self.name}-part-{i}",
                daemon=True,
            )
            for i in range(count)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self._finish()

    def _make_worker(self, transfer: Transfer) -> PartWorker:
        if transfer.direction == Direction.UPLOAD:
            return UploadPartWorker(self._store, self._config.verify_integrity)
        return DownloadPartWorker(self._store, self._config.verify_integrity)

    def _activate(self) -> Transfer | None:
        """Take the lease, move the transfer to ACTIVE and prepare its session or staging file."""
        leased = self._state.activate(self.transfer_id, self.owner, self._config.lease_ttl)
        if leased is None:
            transfer = self._state.get_transfer(self.transfer_id)
            if transfer.state in (TransferState.PENDING, TransferState.ACTIVE):
                logger.info(f"Transfer {self.transfer_id} is running in another process")
            else:
                logger.debug(f"Transfer {self.transfer_id} is {transfer.state.value}, not running")
            return None
        transfer = leased
        self._leased = True
        threading.Thread(
            target=self._heartbeat, name=f"{self.name}-lease", daemon=True
        ).start()

        logger.info(
            f"Transfer {transfer.id} active: {transfer.direction.value} "
            f"{transfer.local_path} <-> {transfer.remote_key} "
            f"({transfer.bytes_transferred}/{transfer.total_size} bytes)"
        )
        self._progress.track(
            transfer.id, transfer.total_size, transfer.bytes_transferred, TransferState.ACTIVE
        )

        if transfer.direction == Direction.UPLOAD:
            self._check_source(transfer)
            if transfer.is_multipart and not transfer.session_token:
                token = str(
                    self._retry_call(lambda: self._store.initiate_multipart(transfer.remote_key))
                )
                self._state.set_session_token(transfer.id, token)
                logger.info(f"Initiated multipart upload for {transfer.remote_key}: {token}")
                transfer = self._state.get_transfer(transfer.id)
                if transfer.state == TransferState.CANCELLED:
                    # Cancelled before the token was visible to the canceller
                    self._abort_session(transfer.remote_key, token)
                    return None
        else:
            temp = transfer.temp_path
            if not temp.exists() or temp.stat().st_size != transfer.total_size:
                if transfer.bytes_transferred:
                    logger.warning(
                        f"Staging file {temp} missing or truncated, restarting download"
                    )
                self._state.reset_parts(transfer.id)
                preallocate(temp, transfer.total_size)
                transfer = self._state.get_transfer(transfer.id)
                self._progress.track(transfer.id, transfer.total_size, 0, TransferState.ACTIVE)
        return transfer

    def _check_source(self, transfer: Transfer) -> None:
        """Refuse to upload a source that changed since the transfer was created."""
        try:
            stat = os.stat(transfer.local_path)
        except FileNotFoundError as e:
            raise LocalFileChangedError(f"{transfer.local_path} no longer exists") from e
        if stat.st_size != transfer.total_size:
            raise LocalFileChangedError(
                f"{transfer.local_path} size changed ({transfer.total_size} -> {stat.st_size})"
            )
        if transfer.source_mtime is not None and stat.st_mtime != transfer.source_mtime:
            raise LocalFileChangedError(f"{transfer.local_path} was modified")

    # === Part threads ===

    def _acquire_slot(self) -> bool:
        """Wait for a global limiter slot. False if stopped while waiting."""
        while not self._halted():
            if self._limiter.acquire(timeout=SLOT_WAIT_INTERVAL):
                return True
        return False

    def _part_loop(self, transfer: Transfer, worker: PartWorker) -> None:
        try:
            while self._acquire_slot():
                try:
                    part = self._state.claim_next_part(self.transfer_id, owner=self.owner)
                finally:
                    self._limiter.release()
                if part is None:
                    return
                self._drive_part(transfer, worker, part)
        except Exception as e:
            logger.exception(f"Transfer {self.transfer_id}: part thread crashed")
            self._set_fatal(None, e)

    def _drive_part(self, transfer: Transfer, worker: PartWorker, part: Part) -> None:
        """Attempt a claimed part until it completes, is abandoned or fails."""
        number = part.part_number
        while True:
            if not self._acquire_slot():
                self._state.release_part(self.transfer_id, number, count_attempt=False)
                return

            reported = 0

            def on_progress(delta: int) -> None:
                nonlocal reported
                reported += delta
                self._progress.on_part_progress(self.transfer_id, delta)

            ctx = PartContext(
                transfer=transfer, part=part, cancel_check=self._halted, on_progress=on_progress
            )
            try:
                tag = worker.execute(ctx)
            except CancelledException:
                self._limiter.release()
                self._state.release_part(self.transfer_id, number, count_attempt=False)
                return
            except Exception as e:
                self._limiter.release()
                if not self._handle_part_error(number, e):
                    return
                continue

            self._limiter.release()
            total = self._state.complete_part(self.transfer_id, number, tag, owner=self.owner)
            if total is None:
                self._progress.on_part_progress(self.transfer_id, -reported)
                logger.debug(f"Transfer {self.transfer_id}: part {number} result discarded")
            else:
                self._progress.on_part_committed(self.transfer_id, reported, total)
            return

    def _handle_part_error(self, part_number: int, error: Exception) -> bool:
        """Record a part failure. Returns True if the part should be attempted again."""
        kind = classify_error(error)
        if isinstance(error, SessionNotFoundError) or not kind.retryable:
            self._state.release_part(self.transfer_id, part_number, error=str(error))
            self._set_fatal(part_number, error)
            return False

        part = self._state.record_failure(
            self.transfer_id, part_number, str(error), self._policy.max_attempts
        )
        if part is None:
            return False
        if part.state == PartState.FAILED:
            self._set_fatal(part_number, error)
            return False

        delay = self._policy.backoff(part.attempts)
        logger.warning(
            f"Transfer {self.transfer_id}: part {part_number} attempt "
            f"{part.attempts}/{self._policy.max_attempts} failed ({kind.value}): {error}. "
            f"Retrying in {delay:.1f}s..."
        )
        if self._wake.wait(delay) or self._halted():
            self._state.release_part(self.transfer_id, part_number, count_attempt=False)
            return False
        return True

    # === Completion ===

    def _finish(self) -> None:
        """Decide the outcome once every part thread has stopped."""
        if self._fatal is not None:
            part_number, error = self._fatal
            self._handle_fatal(part_number, error)
            return

        transfer = self._state.get_transfer(self.transfer_id)
        if self._lease_lost:
            logger.info(f"Transfer {transfer.id} handed over to another engine")
            return
        if self._stop_requested or transfer.state != TransferState.ACTIVE:
            self._publish_state(transfer)
            logger.info(f"Transfer {transfer.id} stopped ({transfer.state.value})")
            return

        unfinished = self._state.get_parts(self.transfer_id, UNFINISHED_PART_STATES)
        if unfinished:
            logger.debug(f"Transfer {transfer.id}: {len(unfinished)} parts left, not finalizing")
            return

        try:
            if transfer.direction == Direction.UPLOAD:
                self._finalize_upload(transfer)
            else:
                self._finalize_download(transfer)
        except (CancelledException, InvalidTransitionError):
            self._publish_state()
        except Exception as e:
            self._handle_fatal(None, e, stage="complete")

    def _finalize_upload(self, transfer: Transfer) -> None:
        self._check_source(transfer)
        if transfer.is_multipart:
            manifest = self._state.completion_manifest(transfer.id)
            token = transfer.session_token or ""
            etag = str(
                self._retry_call(
                    lambda: self._store.complete_multipart(transfer.remote_key, token, manifest)
                )
            )
            logger.info(
                f"Completed multipart upload of {transfer.remote_key} ({len(manifest)} parts)"
            )
        else:
            etag = self._state.completion_manifest(transfer.id)[0][1]

        self._state.transition(transfer.id, TransferState.COMPLETED)
        self._state.put_cached_object(
            RemoteObject(
                key=transfer.remote_key,
                size=transfer.total_size,
                etag=etag,
                last_modified=time.time(),
            )
        )
        self._publish_state()
        logger.info(f"Upload complete: {transfer.local_path} -> {transfer.remote_key}")

    def _finalize_download(self, transfer: Transfer) -> None:
        temp = transfer.temp_path
        size = temp.stat().st_size
        if size != transfer.total_size:
            raise IntegrityError(f"{temp} has {size} bytes, expected {transfer.total_size}")
        tag = transfer.remote_tag or ""
        if self._config.verify_integrity and self._store.etags_are_md5 and is_md5_etag(tag):
            digest = file_md5(temp)
            if digest != tag:
                raise IntegrityError(f"Downloaded MD5 {digest} does not match etag {tag}")

        os.replace(temp, transfer.local_path)
        self._state.transition(transfer.id, TransferState.COMPLETED)
        self._publish_state()
        logger.info(f"Download complete: {transfer.remote_key} -> {transfer.local_path}")

    # === Failure ===

    def _handle_fatal(
        self, part_number: int | None, error: BaseException, stage: str | None = None
    ) -> None:
        """Fail the transfer, cleaning up whatever the error left unusable."""
        where = f"part {part_number}" if part_number is not None else (stage or "transfer")
        message = f"{where}: {error}"
        transfer = self._state.get_transfer(self.transfer_id)

        if isinstance(error, SessionNotFoundError) and transfer.direction == Direction.UPLOAD:
            # The provider dropped the session; retry must start a new one
            self._state.set_session_token(transfer.id, None)
            self._state.reset_parts(transfer.id)
        elif isinstance(error, LocalFileChangedError) and transfer.direction == Direction.UPLOAD:
            # Parts already sent hold stale bytes; retry replans from the current file
            if transfer.session_token:
                try:
                    self._abort_session(transfer.remote_key, transfer.session_token)
                except ObjectStoreError as e:
                    logger.warning(f"Could not abort session for {transfer.remote_key}: {e}")
                self._state.set_session_token(transfer.id, None)
            self._state.reset_parts(transfer.id)
        elif isinstance(error, IntegrityError) and stage == "complete":
            # Whole-file check failed, every part is suspect
            self._state.reset_parts(transfer.id)

        kind = classify_error(error)
        logger.error(f"Transfer {transfer.id} failed ({kind.value}): {message}")
        if kind == ErrorKind.LOCAL:
            logger.debug("Local error detail", exc_info=error)
        self._fail(message)

    def _fail(self, message: str) -> None:
        try:
            self._state.transition(self.transfer_id, TransferState.FAILED, error=message)
        except InvalidTransitionError as e:
            logger.debug(f"Transfer {self.transfer_id}: not marked failed ({e})")
        except TransferNotFoundError:
            return
        self._publish_state()

    def _publish_state(self, transfer: Transfer | None = None) -> None:
        transfer = transfer or self._state.get_transfer(self.transfer_id)
        self._progress.set_state(transfer.id, transfer.state)

    def _abort_session(self, key: str, token: str) -> None:
        try:
            self._store.abort_multipart(key, token)
            logger.info(f"Aborted multipart upload {token} for {key}")
        except SessionNotFoundError:
            pass

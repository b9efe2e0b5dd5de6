"""One-way folder backup reconciliation.

This module provides:
- SyncReconciler: Compares a local directory with the remote listing under
  a prefix and decides, per file, whether to upload, skip or flag a conflict
- normalize_prefix, remote_key_for: Key mapping helpers

Remote-only keys are never touched and no deletion propagates. The
reconciler moves no bytes itself; upload actions are submitted to the
engine by the caller.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from bucketsync.core.types import ACTIVE_STATES, Direction
from bucketsync.storage import RemoteObject, is_md5_etag
from bucketsync.sync.ignore import IgnorePatterns
from bucketsync.sync.types import ReconcileResult, SyncAction, SyncActionKind, SyncFolder

if TYPE_CHECKING:
    from bucketsync.state import TransferStateStore
    from bucketsync.storage import ObjectStore

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024


def normalize_prefix(prefix: str) -> str:
    """Strip leading slashes and ensure a trailing one ("" stays bucket root)."""
    prefix = prefix.replace("\\", "/").lstrip("/")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return prefix


def remote_key_for(prefix: str, relative_path: str) -> str:
    """Object key of a file relative to its sync folder."""
    return normalize_prefix(prefix) + relative_path.replace("\\", "/")


def _local_md5(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


class SyncReconciler:
    """Computes the action set of one backup pass.

    Usage:
        reconciler = SyncReconciler(store, state)
        result = reconciler.reconcile(folder)
        for action in result.uploads:
            engine.start_upload(action.local_path, action.remote_key)
    """

    def __init__(
        self,
        object_store: ObjectStore,
        state_store: TransferStateStore,
        ignore_patterns: list[str] | None = None,
        listing_ttl: float = 300.0,
    ) -> None:
        """Initialize the reconciler.

        Args:
            object_store: Store to list when the cache is stale.
            state_store: Holds the cached listing and in-progress transfers.
            ignore_patterns: Extra patterns applied to every folder.
            listing_ttl: Seconds a cached listing stays valid.
        """
        self._store = object_store
        self._state = state_store
        self._patterns = ignore_patterns
        self._listing_ttl = listing_ttl

    def remote_index(self, prefix: str, refresh: bool = False) -> dict[str, RemoteObject]:
        """Remote objects under prefix by key, from cache when fresh."""
        listing = None if refresh else self._state.get_cached_listing(prefix, self._listing_ttl)
        if listing is None:
            logger.debug(f"Listing remote prefix {prefix!r}")
            listing = self._store.list(prefix)
            self._state.cache_remote_listing(prefix, listing)
        return {obj.key: obj for obj in listing}

    def reconcile(self, folder: SyncFolder, refresh: bool = False) -> ReconcileResult:
        """Run one reconciliation pass over a folder.

        Args:
            folder: Folder to back up.
            refresh: Ignore the cached listing and list the store again.

        Returns:
            The decided actions, the number of files scanned and the
            per-file errors met during the walk.

        Raises:
            FileNotFoundError: If the folder itself does not exist.
        """
        base = Path(folder.local_path)
        if not base.is_dir():
            raise FileNotFoundError(f"Sync folder does not exist: {base}")

        prefix = normalize_prefix(folder.remote_prefix)
        remote = self.remote_index(prefix, refresh=refresh)
        in_progress = {
            t.remote_key
            for t in self._state.list_transfers(ACTIVE_STATES)
            if t.direction == Direction.UPLOAD
        }
        ignore = IgnorePatterns.for_folder(base, self._patterns)
        result = ReconcileResult(folder_id=folder.id)

        for path in self._walk(base, ignore, result):
            relative = path.relative_to(base).as_posix()
            key = prefix + relative
            try:
                stat = path.stat()
                action = self._decide(path, stat, key, remote.get(key), in_progress)
            except OSError as e:
                # The walk races with the OS: files come and go
                logger.warning(f"Skipping {path}: {e}")
                result.errors.append(f"{path}: {e}")
                continue
            result.scanned += 1
            result.actions.append(action)
            if action.kind == SyncActionKind.CONFLICT:
                logger.warning(f"Conflict on {key}: {action.reason}")

        logger.info(
            f"Reconciled folder {folder.id} ({base}): {result.scanned} files, "
            f"{len(result.uploads)} to upload, {len(result.conflicts)} conflicts, "
            f"{len(result.errors)} errors"
        )
        return result

    def _walk(self, base: Path, ignore: IgnorePatterns, result: ReconcileResult):
        """Yield regular files under base that are not ignored."""

        def on_error(error: OSError) -> None:
            logger.warning(f"Cannot scan {error.filename}: {error}")
            result.errors.append(f"{error.filename}: {error}")

        for root, dirnames, filenames in os.walk(base, onerror=on_error):
            root_path = Path(root)
            dirnames[:] = sorted(
                d for d in dirnames if not ignore.should_ignore(root_path / d, base)
            )
            for name in sorted(filenames):
                path = root_path / name
                if ignore.should_ignore(path, base):
                    continue
                yield path

    def _decide(
        self,
        path: Path,
        stat: os.stat_result,
        key: str,
        remote: RemoteObject | None,
        in_progress: set[str],
    ) -> SyncAction:
        def action(kind: SyncActionKind, reason: str) -> SyncAction:
            return SyncAction(kind=kind, local_path=str(path), remote_key=key, reason=reason)

        if key in in_progress:
            return action(SyncActionKind.SKIP, "in progress")
        if stat.st_size == 0:
            return action(SyncActionKind.SKIP, "empty file")
        if remote is None:
            return action(SyncActionKind.UPLOAD, "new")

        local_newer = stat.st_mtime > remote.last_modified
        if stat.st_size != remote.size:
            if local_newer:
                return action(SyncActionKind.UPLOAD, "modified")
            return action(SyncActionKind.CONFLICT, "changed remotely since last backup")

        if local_newer:
            if self._store.etags_are_md5 and is_md5_etag(remote.etag):
                if _local_md5(path) != remote.etag:
                    return action(SyncActionKind.UPLOAD, "modified")
                return action(SyncActionKind.SKIP, "unchanged")
            return action(SyncActionKind.UPLOAD, "modified")

        return action(SyncActionKind.SKIP, "unchanged")

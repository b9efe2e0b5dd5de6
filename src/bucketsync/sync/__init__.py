"""Transfer engine and folder backup.

Architecture:
    TransferEngine → TransferRunner → PartWorkers → ObjectStore
                          ↓
                  TransferStateStore (sqlite, source of truth for resume)

Components:
- **TransferEngine**: Public API (start/pause/resume/cancel/retry, progress)
- **TransferRunner**: One thread per transfer, bounded part threads, shared
  global limiter
- **PartWorkers**: Stream one part up (UploadPartWorker) or one byte range
  down (DownloadPartWorker)
- **ProgressAggregator**: Monotonic, rate-limited snapshots with speed/ETA
- **SyncReconciler**: One-way local → remote backup decisions
- **FolderWatcher**: watchdog trigger for reconcile_now
"""

from bucketsync.sync.domain import InvalidTransitionError
from bucketsync.sync.engine import TransferEngine
from bucketsync.sync.ignore import IgnorePatterns
from bucketsync.sync.progress import ProgressAggregator, Subscription
from bucketsync.sync.reconciler import SyncReconciler, normalize_prefix, remote_key_for
from bucketsync.sync.retry import ErrorKind, RetryPolicy, classify_error, retry_with_backoff
from bucketsync.sync.types import (
    IntegrityError,
    LocalFileChangedError,
    Part,
    ProgressCallback,
    ProgressSnapshot,
    ReconcileResult,
    SyncAction,
    SyncActionKind,
    SyncFolder,
    SyncFolderDisabledError,
    SyncFolderNotFoundError,
    Transfer,
    TransferError,
    TransferNotFoundError,
    TransferSummary,
)
from bucketsync.sync.watcher import FolderWatcher

__all__ = [
    # Engine
    "TransferEngine",
    # Progress
    "ProgressAggregator",
    "ProgressCallback",
    "ProgressSnapshot",
    "Subscription",
    # Retry
    "ErrorKind",
    "RetryPolicy",
    "classify_error",
    "retry_with_backoff",
    # Folder backup
    "FolderWatcher",
    "IgnorePatterns",
    "ReconcileResult",
    "SyncAction",
    "SyncActionKind",
    "SyncFolder",
    "SyncReconciler",
    "normalize_prefix",
    "remote_key_for",
    # Types
    "Part",
    "Transfer",
    "TransferSummary",
    # Errors
    "IntegrityError",
    "InvalidTransitionError",
    "LocalFileChangedError",
    "SyncFolderDisabledError",
    "SyncFolderNotFoundError",
    "TransferError",
    "TransferNotFoundError",
]

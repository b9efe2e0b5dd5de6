"""Workers for part-level transfer operations.

This package provides the threads that move bytes:
- PartWorker: Abstract base class with cooperative cancellation
- UploadPartWorker: Streams one part (or a whole small file) to the store
- DownloadPartWorker: Writes one ranged GET into the staging file
- TransferRunner: Drives one transfer with bounded part threads

Usage:
    from bucketsync.sync.workers import TransferRunner

    runner = TransferRunner(transfer_id, store, state, progress, limiter, config)
    runner.start()
"""

from bucketsync.sync.workers.base import CancelledException, PartContext, PartWorker
from bucketsync.sync.workers.download import DownloadPartWorker, file_md5, preallocate
from bucketsync.sync.workers.pool import TransferRunner
from bucketsync.sync.workers.upload import PartReader, UploadPartWorker

__all__ = [
    # Base
    "CancelledException",
    "PartContext",
    "PartWorker",
    # Upload
    "PartReader",
    "UploadPartWorker",
    # Download
    "DownloadPartWorker",
    "file_md5",
    "preallocate",
    # Runner
    "TransferRunner",
]

"""Download part worker.

This module provides:
- DownloadPartWorker: Fetches one byte range into the staging file
- preallocate: Creates the sparse staging file a download writes into
- file_md5: Whole-file digest for the final integrity check
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from bucketsync.sync.types import IntegrityError
from bucketsync.sync.workers.base import PartContext, PartWorker

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024


def preallocate(path: Path, size: int) -> None:
    """Create (or truncate) a sparse file of exactly size bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    logger.debug(f"Preallocated {path} ({size} bytes)")


def file_md5(path: Path) -> str:
    """Compute the MD5 hex digest of a file."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


class DownloadPartWorker(PartWorker):
    """Worker for downloading byte ranges with ranged GETs.

    Each range is written at its own offset of the pre-allocated staging
    file, so parts may finish in any order. The part's integrity tag is the
    MD5 of the bytes received.
    """

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "download"

    def _transfer_part(self, ctx: PartContext) -> str:
        transfer, part = ctx.transfer, ctx.part
        digest = hashlib.md5()
        received = 0

        try:
            with open(transfer.temp_path, "r+b") as f:
                f.seek(part.offset)
                for block in self._store.iter_range(
                    transfer.remote_key,
                    part.offset,
                    part.length,
                    if_match=transfer.remote_tag or None,
                ):
                    if received + len(block) > part.length:
                        raise IntegrityError(
                            f"Part {part.part_number} received more than {part.length} bytes"
                        )
                    f.write(block)
                    digest.update(block)
                    received += len(block)
                    ctx.report(len(block))

            if received != part.length:
                raise IntegrityError(
                    f"Part {part.part_number} received {received} of {part.length} bytes"
                )
        except BaseException:
            ctx.report(-received)
            raise

        return digest.hexdigest()

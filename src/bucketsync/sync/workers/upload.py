"""Upload part worker.

This module provides:
- PartReader: Bounded, seekable file-like window over a source file that
  reports forward progress and hashes what it streams
- UploadPartWorker: Uploads one part (or the whole file with a single put)
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import IO

from bucketsync.storage import is_md5_etag
from bucketsync.sync.types import IntegrityError, LocalFileChangedError
from bucketsync.sync.workers.base import PartContext, PartWorker

logger = logging.getLogger(__name__)


class PartReader:
    """Read-only view of [offset, offset + length) of a file.

    The store client may read the body, seek back and read it again (for
    request checksums or a retried send); progress and the MD5 digest only
    advance past the high-water mark, so neither counts a byte twice.
    """

    def __init__(self, path: str, offset: int, length: int, on_progress=None) -> None:
        self._file: IO[bytes] = open(path, "rb")
        try:
            size = os.fstat(self._file.fileno()).st_size
        except OSError:
            self._file.close()
            raise
        if size < offset + length:
            self._file.close()
            raise LocalFileChangedError(
                f"{path} shrank to {size} bytes (part needs {offset + length})"
            )
        self._offset = offset
        self._length = length
        self._pos = 0
        self._high_water = 0
        self._digest = hashlib.md5()
        self._on_progress = on_progress

    def __len__(self) -> int:
        return self._length

    @property
    def reported(self) -> int:
        """Bytes reported as progress so far."""
        return self._high_water

    @property
    def md5(self) -> str | None:
        """Hex digest of the window, once every byte has been read."""
        if self._high_water < self._length:
            return None
        return self._digest.hexdigest()

    def read(self, size: int = -1) -> bytes:
        remaining = self._length - self._pos
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining
        self._file.seek(self._offset + self._pos)
        data = self._file.read(size)
        start = self._pos
        self._pos += len(data)

        if self._pos > self._high_water and start <= self._high_water:
            fresh = data[self._high_water - start :]
            self._digest.update(fresh)
            self._high_water = self._pos
            if self._on_progress is not None:
                self._on_progress(len(fresh))
        return data

    def seek(self, pos: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            target = pos
        elif whence == os.SEEK_CUR:
            target = self._pos + pos
        elif whence == os.SEEK_END:
            target = self._length + pos
        else:
            raise ValueError(f"Invalid whence: {whence}")
        self._pos = max(0, min(target, self._length))
        return self._pos

    def tell(self) -> int:
        return self._pos

    def seekable(self) -> bool:
        return True

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> PartReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class UploadPartWorker(PartWorker):
    """Worker for uploading parts to the object store.

    Single-part transfers are sent with a plain put; no multipart session
    is involved.
    """

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "upload"

    def _transfer_part(self, ctx: PartContext) -> str:
        transfer, part = ctx.transfer, ctx.part
        reader = PartReader(transfer.local_path, part.offset, part.length, ctx.report)
        try:
            with reader:
                if transfer.is_multipart:
                    if not transfer.session_token:
                        raise RuntimeError(f"Transfer {transfer.id} has no multipart session")
                    etag = self._store.upload_part(
                        transfer.remote_key,
                        transfer.session_token,
                        part.part_number,
                        reader,
                    )
                else:
                    etag = self._store.put(transfer.remote_key, reader)
        except BaseException:
            # Bytes of a failed attempt do not count
            ctx.report(-reader.reported)
            raise

        if (
            self._verify
            and self._store.etags_are_md5
            and is_md5_etag(etag)
            and reader.md5
            and etag != reader.md5
        ):
            ctx.report(-reader.reported)
            raise IntegrityError(
                f"Part {part.part_number} etag {etag} does not match MD5 {reader.md5}"
            )
        return etag

"""Tests for part workers."""

import hashlib
import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bucketsync.core.types import Direction
from bucketsync.storage import LocalFSObjectStore, TransientStoreError
from bucketsync.sync.types import IntegrityError, LocalFileChangedError, Part, Transfer
from bucketsync.sync.workers import (
    CancelledException,
    DownloadPartWorker,
    PartContext,
    PartReader,
    UploadPartWorker,
    file_md5,
    preallocate,
)

DATA = b"0123456789abcdefghijklmno"  # 25 bytes


@pytest.fixture
def source(tmp_path: Path) -> Path:
    """Write a 25-byte source file."""
    path = tmp_path / "source.bin"
    path.write_bytes(DATA)
    return path


def _transfer(path: Path, direction: Direction = Direction.UPLOAD, **kwargs) -> Transfer:
    values = {
        "id": "t1",
        "direction": direction,
        "local_path": str(path),
        "remote_key": "backups/source.bin",
        "total_size": len(DATA),
        "part_size": 10,
    }
    values.update(kwargs)
    return Transfer(**values)


class TestPartReader:
    """Tests for PartReader."""

    def test_reads_window_only(self, source: Path) -> None:
        """Should expose exactly the part's byte range."""
        with PartReader(str(source), 10, 10) as reader:
            assert len(reader) == 10
            assert reader.read() == DATA[10:20]
            assert reader.read() == b""

    def test_reports_progress(self, source: Path) -> None:
        """Should report each byte once as it is read."""
        deltas: list[int] = []
        with PartReader(str(source), 0, 10, deltas.append) as reader:
            reader.read(4)
            reader.read(4)
            reader.read()

        assert sum(deltas) == 10
        assert reader.reported == 10

    def test_reread_not_counted_twice(self, source: Path) -> None:
        """Seeking back and re-reading should not double progress or the digest."""
        deltas: list[int] = []
        with PartReader(str(source), 0, 10, deltas.append) as reader:
            reader.read()
            reader.seek(0)
            assert reader.read() == DATA[:10]

        assert sum(deltas) == 10
        assert reader.md5 == hashlib.md5(DATA[:10]).hexdigest()

    def test_md5_needs_full_read(self, source: Path) -> None:
        """md5 is unknown until the window has been read completely."""
        with PartReader(str(source), 0, 10) as reader:
            reader.read(5)
            assert reader.md5 is None

    def test_seek_whence(self, source: Path) -> None:
        """Should support the three seek origins within the window."""
        with PartReader(str(source), 5, 10) as reader:
            assert reader.seek(0, os.SEEK_END) == 10
            assert reader.seek(-3, os.SEEK_CUR) == 7
            assert reader.read() == DATA[12:15]
            assert reader.seek(100) == 10
            assert reader.tell() == 10

    def test_shrunk_file(self, source: Path) -> None:
        """A file shorter than the part should raise LocalFileChangedError."""
        with pytest.raises(LocalFileChangedError):
            PartReader(str(source), 20, 10)

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            PartReader(str(tmp_path / "gone.bin"), 0, 1)


class TestUploadPartWorker:
    """Tests for UploadPartWorker."""

    def test_single_part_uses_put(
        self, source: Path, local_store: LocalFSObjectStore
    ) -> None:
        """A one-part transfer should be stored with a plain put."""
        transfer = _transfer(source, part_size=100)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=len(DATA))

        tag = UploadPartWorker(local_store).execute(PartContext(transfer=transfer, part=part))

        assert tag == hashlib.md5(DATA).hexdigest()
        assert local_store.get_range(transfer.remote_key, 0, len(DATA)) == DATA
        assert local_store.active_sessions() == []

    def test_multipart_part(self, source: Path, local_store: LocalFSObjectStore) -> None:
        """A part of a multipart transfer should go to its session."""
        token = local_store.initiate_multipart("backups/source.bin")
        transfer = _transfer(source, session_token=token)
        part = Part(transfer_id="t1", part_number=2, offset=10, length=10)
        deltas: list[int] = []

        tag = UploadPartWorker(local_store).execute(
            PartContext(transfer=transfer, part=part, on_progress=deltas.append)
        )

        assert tag == hashlib.md5(DATA[10:20]).hexdigest()
        assert sum(deltas) == 10

    def test_multipart_without_session(self, source: Path) -> None:
        """A multipart transfer without a session token is a bug."""
        transfer = _transfer(source)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=10)

        with pytest.raises(RuntimeError, match="no multipart session"):
            UploadPartWorker(MagicMock()).execute(PartContext(transfer=transfer, part=part))

    def test_etag_mismatch(self, source: Path) -> None:
        """A returned MD5 etag that differs from the data should fail the part."""
        store = MagicMock()

        def put(key, body):
            body.read()
            return "0" * 32

        store.put.side_effect = put
        transfer = _transfer(source, part_size=100)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=len(DATA))
        deltas: list[int] = []

        with pytest.raises(IntegrityError):
            UploadPartWorker(store).execute(
                PartContext(transfer=transfer, part=part, on_progress=deltas.append)
            )
        assert sum(deltas) == 0

    def test_opaque_etag_accepted(self, source: Path) -> None:
        """Non-MD5 etags cannot be verified and are accepted."""
        store = MagicMock()
        store.put.return_value = "abc-3"
        transfer = _transfer(source, part_size=100)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=len(DATA))

        assert UploadPartWorker(store).execute(PartContext(transfer=transfer, part=part)) == "abc-3"

    def test_encrypted_store_etag_accepted(self, source: Path) -> None:
        """SSE-KMS etags look like MD5s but are not compared."""
        store = MagicMock()
        store.etags_are_md5 = False

        def put(key, body):
            body.read()
            return "0" * 32

        store.put.side_effect = put
        transfer = _transfer(source, part_size=100)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=len(DATA))

        tag = UploadPartWorker(store).execute(PartContext(transfer=transfer, part=part))

        assert tag == "0" * 32

    def test_failed_attempt_retracts_progress(self, source: Path) -> None:
        """Bytes sent by a failed request should be taken back."""
        store = MagicMock()

        def upload_part(key, token, number, body):
            body.read()
            raise TransientStoreError("connection reset")

        store.upload_part.side_effect = upload_part
        transfer = _transfer(source, session_token="s1")
        part = Part(transfer_id="t1", part_number=1, offset=0, length=10)
        deltas: list[int] = []

        with pytest.raises(TransientStoreError):
            UploadPartWorker(store).execute(
                PartContext(transfer=transfer, part=part, on_progress=deltas.append)
            )
        assert deltas == [10, -10]

    def test_cancelled_before_request(self, source: Path) -> None:
        """A stop requested before the request should skip it."""
        store = MagicMock()
        transfer = _transfer(source, part_size=100)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=len(DATA))

        with pytest.raises(CancelledException):
            UploadPartWorker(store).execute(
                PartContext(transfer=transfer, part=part, cancel_check=lambda: True)
            )
        store.put.assert_not_called()


class TestDownloadPartWorker:
    """Tests for DownloadPartWorker."""

    def test_writes_range_at_offset(self, tmp_path: Path, local_store: LocalFSObjectStore) -> None:
        """Should write the part's bytes at its offset in the staging file."""
        etag = local_store.put("backups/source.bin", DATA)
        transfer = _transfer(
            tmp_path / "out.bin", direction=Direction.DOWNLOAD, remote_tag=etag
        )
        preallocate(transfer.temp_path, transfer.total_size)
        part = Part(transfer_id="t1", part_number=2, offset=10, length=10)
        deltas: list[int] = []

        tag = DownloadPartWorker(local_store).execute(
            PartContext(transfer=transfer, part=part, on_progress=deltas.append)
        )

        assert tag == hashlib.md5(DATA[10:20]).hexdigest()
        assert transfer.temp_path.read_bytes()[10:20] == DATA[10:20]
        assert sum(deltas) == 10

    def test_short_read(self, tmp_path: Path) -> None:
        """Fewer bytes than the part length should fail with IntegrityError."""
        store = MagicMock()
        store.iter_range.return_value = iter([b"abc"])
        transfer = _transfer(tmp_path / "out.bin", direction=Direction.DOWNLOAD)
        preallocate(transfer.temp_path, transfer.total_size)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=10)
        deltas: list[int] = []

        with pytest.raises(IntegrityError, match="received 3 of 10"):
            DownloadPartWorker(store).execute(
                PartContext(transfer=transfer, part=part, on_progress=deltas.append)
            )
        assert sum(deltas) == 0

    def test_long_read(self, tmp_path: Path) -> None:
        """More bytes than requested should fail before being written."""
        store = MagicMock()
        store.iter_range.return_value = iter([b"x" * 8, b"x" * 8])
        transfer = _transfer(tmp_path / "out.bin", direction=Direction.DOWNLOAD)
        preallocate(transfer.temp_path, transfer.total_size)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=10)

        with pytest.raises(IntegrityError, match="more than 10"):
            DownloadPartWorker(store).execute(PartContext(transfer=transfer, part=part))

    def test_if_match_sent(self, tmp_path: Path) -> None:
        """The captured etag should guard every ranged read."""
        store = MagicMock()
        store.iter_range.return_value = iter([b"y" * 10])
        transfer = _transfer(
            tmp_path / "out.bin", direction=Direction.DOWNLOAD, remote_tag="etag-1"
        )
        preallocate(transfer.temp_path, transfer.total_size)
        part = Part(transfer_id="t1", part_number=1, offset=0, length=10)

        DownloadPartWorker(store).execute(PartContext(transfer=transfer, part=part))

        store.iter_range.assert_called_once_with(
            "backups/source.bin", 0, 10, if_match="etag-1"
        )


class TestHelpers:
    """Tests for staging helpers."""

    def test_preallocate(self, tmp_path: Path) -> None:
        """Should create a file of the exact size, with parent dirs."""
        path = tmp_path / "a" / "b" / "file.bsdownload"
        preallocate(path, 1234)
        assert path.stat().st_size == 1234

    def test_file_md5(self, source: Path) -> None:
        """Should hash the whole file."""
        assert file_md5(source) == hashlib.md5(DATA).hexdigest()

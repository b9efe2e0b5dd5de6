"""Tests for object store implementations."""

import hashlib
import io
import shutil
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from bucketsync.core.chunking import MIB, S3_LIMITS
from bucketsync.core.config import EngineConfig, StoreConfig
from bucketsync.storage import (
    LocalFSObjectStore,
    ObjectNotFoundError,
    ObjectStoreError,
    PermanentStoreError,
    PreconditionFailedError,
    S3ObjectStore,
    SessionNotFoundError,
    TransientStoreError,
    create_object_store,
    is_md5_etag,
    multipart_etag,
    normalize_etag,
    translate_error,
)


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": "boom"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "PutObject",
    )


class TestEtagHelpers:
    """Tests for etag helper functions."""

    def test_normalize_strips_quotes(self) -> None:
        """Quotes around etags should be removed."""
        assert normalize_etag('"abc"') == "abc"
        assert normalize_etag(None) == ""

    def test_is_md5_etag(self) -> None:
        """Only 32 hex digit etags are plain MD5 digests."""
        assert is_md5_etag(hashlib.md5(b"x").hexdigest())
        assert not is_md5_etag("d41d8cd98f00b204e9800998ecf8427e-3")
        assert not is_md5_etag("")

    def test_multipart_etag(self) -> None:
        """Multipart etags are md5(concat(part digests))-N."""
        digests = [hashlib.md5(b"a").digest(), hashlib.md5(b"b").digest()]
        expected = hashlib.md5(b"".join(digests)).hexdigest() + "-2"

        assert multipart_etag(digests) == expected


class TestErrorTranslation:
    """Tests for translate_error()."""

    @pytest.mark.parametrize("code", ["SlowDown", "Throttling", "RequestTimeout", "InternalError"])
    def test_throttling_codes_are_transient(self, code: str) -> None:
        """Throttling codes should be retryable."""
        error = translate_error(_client_error(code), "put_object", "k")
        assert isinstance(error, TransientStoreError)
        assert error.retryable is True
        assert error.code == code

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_status_codes_are_transient(self, status: int) -> None:
        """429 and 5xx should be retryable."""
        error = translate_error(_client_error("Whatever", status), "put_object")
        assert isinstance(error, TransientStoreError)

    def test_access_denied_is_permanent(self) -> None:
        """Auth failures should never be retried."""
        error = translate_error(_client_error("AccessDenied", 403), "put_object", "k")
        assert isinstance(error, PermanentStoreError)
        assert error.retryable is False
        assert "put_object(k)" in str(error)

    def test_no_such_key(self) -> None:
        """NoSuchKey should map to ObjectNotFoundError."""
        error = translate_error(_client_error("NoSuchKey", 404), "get_object")
        assert isinstance(error, ObjectNotFoundError)

    def test_no_such_upload(self) -> None:
        """NoSuchUpload should map to SessionNotFoundError."""
        error = translate_error(_client_error("NoSuchUpload", 404), "upload_part")
        assert isinstance(error, SessionNotFoundError)

    def test_precondition_failed(self) -> None:
        """412 should map to PreconditionFailedError."""
        error = translate_error(_client_error("PreconditionFailed", 412), "get_object")
        assert isinstance(error, PreconditionFailedError)
        assert error.retryable is False

    def test_network_errors_are_transient(self) -> None:
        """Connection and read timeouts should be retryable."""
        assert isinstance(
            translate_error(EndpointConnectionError(endpoint_url="http://x"), "list"),
            TransientStoreError,
        )
        assert isinstance(
            translate_error(ReadTimeoutError(endpoint_url="http://x"), "upload_part"),
            TransientStoreError,
        )


class TestLocalFSObjectStore:
    """Tests for LocalFSObjectStore."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> LocalFSObjectStore:
        """Create a store in a temp directory."""
        return LocalFSObjectStore(tmp_path / "store")

    def test_put_and_head(self, store: LocalFSObjectStore) -> None:
        """put() should store the object and return its MD5."""
        etag = store.put("docs/a.txt", b"hello")

        info = store.head("docs/a.txt")
        assert etag == hashlib.md5(b"hello").hexdigest()
        assert info.size == 5
        assert info.etag == etag
        assert not info.is_multipart

    def test_put_stream(self, store: LocalFSObjectStore) -> None:
        """put() should accept a file-like body."""
        store.put("stream.bin", io.BytesIO(b"x" * 3000))
        assert store.head("stream.bin").size == 3000

    def test_head_missing(self, store: LocalFSObjectStore) -> None:
        """head() on a missing key should raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            store.head("missing")

    def test_invalid_key_rejected(self, store: LocalFSObjectStore) -> None:
        """Keys escaping the root should be rejected."""
        with pytest.raises(PermanentStoreError, match="Invalid key"):
            store.put("../escape", b"x")

    def test_list_by_prefix(self, store: LocalFSObjectStore) -> None:
        """list() should filter by prefix and sort by key."""
        store.put("b/2.txt", b"2")
        store.put("b/1.txt", b"1")
        store.put("a/3.txt", b"3")

        keys = [o.key for o in store.list("b/")]

        assert keys == ["b/1.txt", "b/2.txt"]
        assert len(store.list()) == 3

    def test_get_range(self, store: LocalFSObjectStore) -> None:
        """get_range() should return exactly the requested bytes."""
        store.put("data", bytes(range(100)))
        assert store.get_range("data", 10, 5) == bytes(range(10, 15))

    def test_get_range_clamped_at_end(self, store: LocalFSObjectStore) -> None:
        """A range past the end should return the available tail."""
        store.put("data", b"abcdef")
        assert store.get_range("data", 4, 10) == b"ef"

    def test_get_range_invalid(self, store: LocalFSObjectStore) -> None:
        """A range starting past the end should be rejected."""
        store.put("data", b"abc")
        with pytest.raises(PermanentStoreError, match="Invalid range"):
            store.get_range("data", 3, 1)

    def test_if_match_mismatch(self, store: LocalFSObjectStore) -> None:
        """A changed object should fail the conditional read."""
        store.put("data", b"abc")
        with pytest.raises(PreconditionFailedError):
            list(store.iter_range("data", 0, 3, if_match="0" * 32))

    def test_multipart_round_trip(self, store: LocalFSObjectStore) -> None:
        """Parts should be assembled in manifest order with an S3 style etag."""
        token = store.initiate_multipart("big.bin")
        tag2 = store.upload_part("big.bin", token, 2, b"world")
        tag1 = store.upload_part("big.bin", token, 1, b"hello ")

        etag = store.complete_multipart("big.bin", token, [(1, tag1), (2, tag2)])

        assert store.get_range("big.bin", 0, 11) == b"hello world"
        assert etag.endswith("-2")
        assert store.head("big.bin").is_multipart
        assert store.active_sessions() == []

    def test_complete_rejects_unordered_manifest(self, store: LocalFSObjectStore) -> None:
        """The manifest must be sorted by part number."""
        token = store.initiate_multipart("k")
        tag1 = store.upload_part("k", token, 1, b"a")
        tag2 = store.upload_part("k", token, 2, b"b")

        with pytest.raises(PermanentStoreError, match="ascending"):
            store.complete_multipart("k", token, [(2, tag2), (1, tag1)])

    def test_complete_rejects_wrong_etag(self, store: LocalFSObjectStore) -> None:
        """A part etag that does not match the staged part should be rejected."""
        token = store.initiate_multipart("k")
        store.upload_part("k", token, 1, b"a")

        with pytest.raises(PermanentStoreError, match="etag mismatch"):
            store.complete_multipart("k", token, [(1, "0" * 32)])

    def test_abort_removes_session(self, store: LocalFSObjectStore) -> None:
        """abort_multipart() should drop the session."""
        token = store.initiate_multipart("k")
        store.upload_part("k", token, 1, b"a")

        store.abort_multipart("k", token)

        assert store.active_sessions() == []
        with pytest.raises(SessionNotFoundError):
            store.upload_part("k", token, 2, b"b")

    def test_delete_is_idempotent(self, store: LocalFSObjectStore) -> None:
        """delete() should not fail on missing keys."""
        store.put("k", b"x")
        store.delete("k")
        store.delete("k")
        assert store.list() == []

    def test_copy(self, store: LocalFSObjectStore) -> None:
        """copy() should duplicate data and etag."""
        etag = store.put("src", b"payload")
        store.copy("src", "dst/copy")
        assert store.head("dst/copy").etag == etag

    def test_limits_accept_small_parts(self, store: LocalFSObjectStore) -> None:
        """Local limits should allow tiny parts for tests."""
        assert store.limits.min_part_size == 1

    def test_folder_marker(self, store: LocalFSObjectStore) -> None:
        """Keys ending in a slash are empty folder markers listed under their own key."""
        store.put("photos/", b"")
        store.put("photos/a.jpg", b"jpeg")

        assert [o.key for o in store.list("photos/")] == ["photos/", "photos/a.jpg"]
        assert store.head("photos/").size == 0

        store.delete("photos/")

        assert [o.key for o in store.list()] == ["photos/a.jpg"]

    def test_check(self, store: LocalFSObjectStore, tmp_path: Path) -> None:
        """check() fails once the store directories are gone."""
        store.check()
        assert store.etags_are_md5

        shutil.rmtree(tmp_path / "store" / "meta")

        with pytest.raises(PermanentStoreError):
            store.check()


class TestS3ObjectStore:
    """Tests for S3ObjectStore using moto mock."""

    @pytest.fixture
    def mock_s3(self) -> None:
        """Set up moto mock for S3."""
        pytest.importorskip("moto")
        import boto3
        from moto import mock_aws

        with mock_aws():
            client = boto3.client("s3", region_name="us-east-1")
            client.create_bucket(Bucket="test-bucket")
            yield

    @pytest.fixture
    def store(self, mock_s3: None) -> S3ObjectStore:
        """Create an S3ObjectStore instance for testing."""
        return S3ObjectStore(bucket="test-bucket", region="us-east-1")

    def test_put_and_head(self, store: S3ObjectStore) -> None:
        """put() should return the MD5 etag without quotes."""
        etag = store.put("a.txt", b"hello")

        info = store.head("a.txt")
        assert etag == hashlib.md5(b"hello").hexdigest()
        assert info.etag == etag
        assert info.size == 5

    def test_head_missing(self, store: S3ObjectStore) -> None:
        """head() on a missing key should raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            store.head("missing.txt")

    def test_list(self, store: S3ObjectStore) -> None:
        """list() should return objects under the prefix."""
        store.put("p/1", b"1")
        store.put("p/2", b"22")
        store.put("q/3", b"333")

        objects = store.list("p/")

        assert sorted(o.key for o in objects) == ["p/1", "p/2"]
        assert {o.size for o in objects} == {1, 2}

    def test_get_range(self, store: S3ObjectStore) -> None:
        """get_range() should issue a ranged GET."""
        store.put("data", bytes(range(50)))
        assert store.get_range("data", 5, 10) == bytes(range(5, 15))

    def test_get_range_if_match(self, store: S3ObjectStore) -> None:
        """A stale etag should fail with PreconditionFailedError."""
        store.put("data", b"abc")
        with pytest.raises(PreconditionFailedError):
            list(store.iter_range("data", 0, 3, if_match="0" * 32))

    def test_multipart_upload(self, store: S3ObjectStore) -> None:
        """A two part upload should assemble into one object."""
        first = b"a" * (5 * MIB)
        token = store.initiate_multipart("big")
        tag1 = store.upload_part("big", token, 1, first)
        tag2 = store.upload_part("big", token, 2, b"tail")

        etag = store.complete_multipart("big", token, [(1, tag1), (2, tag2)])

        info = store.head("big")
        assert info.size == 5 * MIB + 4
        assert etag.endswith("-2")
        assert store.get_range("big", 5 * MIB, 4) == b"tail"

    def test_missing_session_raises_session_not_found(
        self, store: S3ObjectStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """NoSuchUpload from the provider should raise SessionNotFoundError."""
        token = store.initiate_multipart("gone")

        def upload_part(**kwargs):
            raise _client_error("NoSuchUpload", 404)

        monkeypatch.setattr(store._client, "upload_part", upload_part)

        with pytest.raises(SessionNotFoundError):
            store.upload_part("gone", token, 1, b"x")

    def test_check(self, store: S3ObjectStore) -> None:
        """check() passes for an existing bucket and fails for a missing one."""
        store.check()

        missing = S3ObjectStore(bucket="no-such-bucket", region="us-east-1")
        with pytest.raises(ObjectStoreError):
            missing.check()

    def test_etags_md5_by_default(self, store: S3ObjectStore) -> None:
        """Unencrypted and SSE-S3 objects keep MD5 etags."""
        store.put("a.txt", b"hello")
        assert store.etags_are_md5

    @pytest.mark.parametrize(
        "extra",
        [
            {"ServerSideEncryption": "aws:kms"},
            {"ServerSideEncryption": "aws:kms:dsse"},
            {"SSECustomerAlgorithm": "AES256"},
        ],
    )
    def test_encrypted_bucket_etags_not_md5(
        self, store: S3ObjectStore, monkeypatch: pytest.MonkeyPatch, extra: dict
    ) -> None:
        """SSE-KMS and SSE-C responses mark etags as opaque."""
        opaque = "0123456789abcdef0123456789abcdef"

        def put_object(**kwargs):
            return {"ETag": f'"{opaque}"', **extra}

        monkeypatch.setattr(store._client, "put_object", put_object)

        assert store.put("a.txt", b"hello") == opaque
        assert not store.etags_are_md5

    def test_sse_s3_keeps_md5(self, store: S3ObjectStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """AES256 (SSE-S3) etags are still MD5 digests."""

        def put_object(**kwargs):
            return {"ETag": '"abc"', "ServerSideEncryption": "AES256"}

        monkeypatch.setattr(store._client, "put_object", put_object)

        store.put("a.txt", b"hello")
        assert store.etags_are_md5

    def test_delete_and_copy(self, store: S3ObjectStore) -> None:
        """copy() then delete() should leave only the copy."""
        store.put("src", b"x")
        store.copy("src", "dst")
        store.delete("src")

        assert [o.key for o in store.list()] == ["dst"]

    def test_limits(self, store: S3ObjectStore) -> None:
        """S3 stores use the S3 multipart limits."""
        assert store.limits == S3_LIMITS

    def test_errors_are_store_errors(self, store: S3ObjectStore) -> None:
        """Every failure should surface as an ObjectStoreError."""
        with pytest.raises(ObjectStoreError):
            store.get_range("missing", 0, 1)


class TestCreateObjectStore:
    """Tests for the create_object_store factory function."""

    def test_create_local(self, tmp_path: Path) -> None:
        """Should create LocalFSObjectStore for type='local'."""
        config = StoreConfig(type="local", local_path=str(tmp_path / "objects"))
        assert isinstance(create_object_store(config), LocalFSObjectStore)

    def test_local_requires_path(self) -> None:
        """Local stores need a directory."""
        with pytest.raises(ValueError, match="local_path"):
            create_object_store(StoreConfig(type="local"))

    def test_s3_requires_bucket(self) -> None:
        """S3 stores need a bucket."""
        with pytest.raises(ValueError, match="bucket"):
            create_object_store(StoreConfig(type="s3"))

    def test_create_s3(self) -> None:
        """Should create S3ObjectStore for type='s3'."""
        pytest.importorskip("moto")
        from moto import mock_aws

        with mock_aws():
            store = create_object_store(
                StoreConfig(bucket="my-bucket", endpoint_url="https://r2.example.com/"),
                EngineConfig(),
            )
            assert isinstance(store, S3ObjectStore)
            assert store.location == "S3: https://r2.example.com/my-bucket"

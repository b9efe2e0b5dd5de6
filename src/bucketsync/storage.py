"""Object store abstraction for S3-compatible providers.

This module provides:
- Abstract ObjectStore interface (single-shot and multipart operations)
- LocalFSObjectStore for development/testing
- S3ObjectStore for production (AWS, Cloudflare R2, MinIO, OVH)
- The error taxonomy every store raises (transient vs permanent)

Stores hold no per-transfer state and are shared by every worker thread.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING, Union

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    ResponseStreamingError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError

from bucketsync.core.chunking import GIB, S3_LIMITS, PartLimits

if TYPE_CHECKING:
    from typing import Any

    from bucketsync.core.config import EngineConfig, StoreConfig

logger = logging.getLogger(__name__)

# Request bodies: raw bytes or a readable binary stream
Body = Union[bytes, IO[bytes]]

STREAM_BLOCK_SIZE = 1024 * 1024

# Error codes that mean "slow down and try again"
THROTTLING_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "TooManyRequests",
        "InternalError",
        "ServiceUnavailable",
    }
)

# Server-side encryption modes whose etags are not the MD5 of the content
OPAQUE_ETAG_ENCRYPTION = frozenset({"aws:kms", "aws:kms:dsse"})

# Object standing in for an empty "folder/" key in the local store
FOLDER_MARKER = ".bsfolder"

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
PRECONDITION_CODES = frozenset({"PreconditionFailed", "412"})

# botocore failures that happen before or while talking to the endpoint
NETWORK_ERRORS: tuple[type[Exception], ...] = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ResponseStreamingError,
    BotoConnectionError,
)


class ObjectStoreError(Exception):
    """Base exception for object store failures.

    Attributes:
        retryable: Whether repeating the same request may succeed.
        code: Provider error code, when one was returned.
    """

    retryable = False

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientStoreError(ObjectStoreError):
    """Timeout, connection reset, throttling or 5xx."""

    retryable = True


class PermanentStoreError(ObjectStoreError):
    """Auth, permission or other request errors that will not go away."""


class ObjectNotFoundError(PermanentStoreError):
    """Raised when an object is not found in the bucket."""


class SessionNotFoundError(PermanentStoreError):
    """The multipart session no longer exists on the provider."""


class PreconditionFailedError(PermanentStoreError):
    """The object changed since its etag was captured."""


@dataclass
class RemoteObject:
    """Listing row for one object.

    Attributes:
        key: Object key.
        size: Size in bytes.
        etag: Entity tag without quotes.
        last_modified: Last modification as a POSIX timestamp.
    """

    key: str
    size: int
    etag: str
    last_modified: float

    @property
    def is_multipart(self) -> bool:
        """Check if the etag comes from a multipart upload ("<md5>-<n>")."""
        return "-" in self.etag


def normalize_etag(etag: str | None) -> str:
    """Strip the quotes providers put around entity tags."""
    return (etag or "").strip().strip('"')


def is_md5_etag(etag: str) -> bool:
    """Check if an etag is a plain MD5 hex digest of the content."""
    return len(etag) == 32 and all(c in "0123456789abcdef" for c in etag.lower())


def multipart_etag(part_digests: list[bytes]) -> str:
    """Compute the S3 style etag of a multipart object."""
    combined = hashlib.md5(b"".join(part_digests))
    return f"{combined.hexdigest()}-{len(part_digests)}"


def _iter_body(body: Body) -> Iterator[bytes]:
    if isinstance(body, (bytes, bytearray)):
        yield bytes(body)
        return
    while True:
        block = body.read(STREAM_BLOCK_SIZE)
        if not block:
            return
        yield block


class ObjectStore(ABC):
    """Abstract interface for an S3-compatible object store."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @property
    def limits(self) -> PartLimits:
        """Multipart constraints of this provider."""
        return S3_LIMITS

    @property
    def etags_are_md5(self) -> bool:
        """Check if 32-hex etags returned by this store are content MD5s."""
        return True

    @abstractmethod
    def check(self) -> None:
        """Verify the store is reachable and the bucket exists.

        Raises:
            ObjectStoreError: If it is not.
        """

    @abstractmethod
    def list(self, prefix: str = "") -> list[RemoteObject]:
        """List every object whose key starts with prefix."""

    @abstractmethod
    def head(self, key: str) -> RemoteObject:
        """Get metadata of one object.

        Raises:
            ObjectNotFoundError: If the key doesn't exist.
        """

    @abstractmethod
    def iter_range(
        self,
        key: str,
        offset: int,
        length: int,
        if_match: str | None = None,
    ) -> Iterator[bytes]:
        """Stream bytes [offset, offset + length) of an object.

        Args:
            key: Object key.
            offset: First byte.
            length: Number of bytes.
            if_match: Fail with PreconditionFailedError unless the etag matches.
        """

    def get_range(self, key: str, offset: int, length: int) -> bytes:
        """Read bytes [offset, offset + length) of an object into memory."""
        return b"".join(self.iter_range(key, offset, length))

    @abstractmethod
    def put(self, key: str, body: Body) -> str:
        """Store an object in one request. Returns its etag."""

    @abstractmethod
    def initiate_multipart(self, key: str) -> str:
        """Start a multipart upload. Returns the session token."""

    @abstractmethod
    def upload_part(self, key: str, session_token: str, part_number: int, body: Body) -> str:
        """Upload one part. Returns the part etag.

        Raises:
            SessionNotFoundError: If the session was aborted or expired.
        """

    @abstractmethod
    def complete_multipart(
        self, key: str, session_token: str, manifest: list[tuple[int, str]]
    ) -> str:
        """Finalize a multipart upload from its ordered (part_number, etag) list.

        Returns:
            The etag of the assembled object.
        """

    @abstractmethod
    def abort_multipart(self, key: str, session_token: str) -> None:
        """Abort a multipart upload and release its stored parts."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""

    @abstractmethod
    def copy(self, source_key: str, dest_key: str) -> None:
        """Server-side copy of an object."""


class LocalFSObjectStore(ObjectStore):
    """Local filesystem store for development and testing.

    Objects live under <root>/objects/<key> with a JSON sidecar under
    <root>/meta/<key>.json holding the etag. Multipart sessions are staging
    directories under <root>/multipart/<token>. A key ending in "/" is an
    empty folder marker, stored as <key>/.bsfolder.
    """

    LIMITS = PartLimits(min_part_size=1, max_part_size=5 * GIB, max_part_count=10_000)

    def __init__(self, root: Path | str) -> None:
        """Initialize local storage.

        Args:
            root: Base directory for objects and staging data.
        """
        self._root = Path(root).resolve()
        self._objects = self._root / "objects"
        self._meta = self._root / "meta"
        self._sessions = self._root / "multipart"
        for directory in (self._objects, self._meta, self._sessions):
            directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._root}"

    @property
    def limits(self) -> PartLimits:
        """Local storage accepts parts of any size."""
        return self.LIMITS

    def check(self) -> None:
        """Verify the storage directories exist."""
        for directory in (self._objects, self._meta, self._sessions):
            if not directory.is_dir():
                raise PermanentStoreError(
                    f"Missing store directory: {directory}", code="NoSuchBucket"
                )

    def _object_path(self, key: str) -> Path:
        """Resolve a key to its data file, refusing keys that escape the root."""
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise PermanentStoreError(f"Invalid key: {key!r}", code="InvalidKey")
        if key.endswith("/"):
            return self._objects / key / FOLDER_MARKER
        return self._objects / key

    def _meta_path(self, key: str) -> Path:
        if key.endswith("/"):
            key += FOLDER_MARKER
        return self._meta / f"{key}.json"

    def _session_dir(self, key: str, session_token: str) -> Path:
        session = self._sessions / session_token
        meta = session / "session.json"
        if not meta.exists() or json.loads(meta.read_text())["key"] != key:
            raise SessionNotFoundError(
                f"Multipart upload not found: {session_token}", code="NoSuchUpload"
            )
        return session

    def _write_stream(self, path: Path, body: Body) -> str:
        """Write body to path atomically. Returns the MD5 hex digest."""
        path.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5()
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp, "wb") as f:
            for block in _iter_body(body):
                digest.update(block)
                f.write(block)
        os.replace(tmp, path)
        return digest.hexdigest()

    def _write_meta(self, key: str, etag: str) -> None:
        meta = self._meta_path(key)
        meta.parent.mkdir(parents=True, exist_ok=True)
        meta.write_text(json.dumps({"etag": etag}))

    def _read_meta(self, key: str) -> RemoteObject:
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}", code="NoSuchKey")
        meta = self._meta_path(key)
        etag = json.loads(meta.read_text())["etag"] if meta.exists() else ""
        stat = path.stat()
        return RemoteObject(
            key=key, size=stat.st_size, etag=etag, last_modified=stat.st_mtime
        )

    def list(self, prefix: str = "") -> list[RemoteObject]:
        """List objects under prefix, sorted by key."""
        objects = []
        for path in self._objects.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self._objects).as_posix()
            if path.name == FOLDER_MARKER:
                key = key[: -len(FOLDER_MARKER)]
            if key.startswith(prefix):
                objects.append(self._read_meta(key))
        return sorted(objects, key=lambda o: o.key)

    def head(self, key: str) -> RemoteObject:
        """Get metadata of one object."""
        return self._read_meta(key)

    def iter_range(
        self,
        key: str,
        offset: int,
        length: int,
        if_match: str | None = None,
    ) -> Iterator[bytes]:
        """Stream a byte range of an object."""
        info = self._read_meta(key)
        if if_match is not None and normalize_etag(if_match) != info.etag:
            raise PreconditionFailedError(
                f"Object {key} changed (etag {info.etag} != {if_match})",
                code="PreconditionFailed",
            )
        if offset < 0 or length <= 0 or offset >= info.size:
            raise PermanentStoreError(
                f"Invalid range {offset}+{length} for {key} ({info.size} bytes)",
                code="InvalidRange",
            )
        remaining = min(length, info.size - offset)
        with open(self._object_path(key), "rb") as f:
            f.seek(offset)
            while remaining > 0:
                block = f.read(min(STREAM_BLOCK_SIZE, remaining))
                if not block:
                    return
                remaining -= len(block)
                yield block

    def put(self, key: str, body: Body) -> str:
        """Store an object."""
        etag = self._write_stream(self._object_path(key), body)
        self._write_meta(key, etag)
        return etag

    def initiate_multipart(self, key: str) -> str:
        """Start a multipart upload."""
        self._object_path(key)
        token = uuid.uuid4().hex
        session = self._sessions / token
        session.mkdir(parents=True)
        (session / "session.json").write_text(
            json.dumps({"key": key, "created_at": time.time()})
        )
        return token

    def upload_part(self, key: str, session_token: str, part_number: int, body: Body) -> str:
        """Stage one part of a multipart upload."""
        session = self._session_dir(key, session_token)
        return self._write_stream(session / f"{part_number:05d}.part", body)

    def complete_multipart(
        self, key: str, session_token: str, manifest: list[tuple[int, str]]
    ) -> str:
        """Assemble staged parts in manifest order."""
        with self._lock:
            session = self._session_dir(key, session_token)
            numbers = [number for number, _ in manifest]
            if not manifest or numbers != sorted(set(numbers)):
                raise PermanentStoreError(
                    "Parts must be listed in ascending order", code="InvalidPartOrder"
                )

            digests = []
            for number, etag in manifest:
                part = session / f"{number:05d}.part"
                if not part.exists():
                    raise PermanentStoreError(f"Part {number} not uploaded", code="InvalidPart")
                digest = hashlib.md5(part.read_bytes()).digest()
                if digest.hex() != normalize_etag(etag):
                    raise PermanentStoreError(
                        f"Part {number} etag mismatch", code="InvalidPart"
                    )
                digests.append(digest)

            target = self._object_path(key)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
            with open(tmp, "wb") as out:
                for number, _ in manifest:
                    with open(session / f"{number:05d}.part", "rb") as part_file:
                        shutil.copyfileobj(part_file, out, STREAM_BLOCK_SIZE)
            os.replace(tmp, target)

            etag = multipart_etag(digests)
            self._write_meta(key, etag)
            shutil.rmtree(session)
            return etag

    def abort_multipart(self, key: str, session_token: str) -> None:
        """Drop a multipart session and its staged parts."""
        with self._lock:
            shutil.rmtree(self._session_dir(key, session_token))

    def active_sessions(self) -> list[str]:
        """Tokens of multipart uploads neither completed nor aborted."""
        return sorted(p.name for p in self._sessions.iterdir() if p.is_dir())

    def delete(self, key: str) -> None:
        """Delete an object."""
        path = self._object_path(key)
        if path.exists():
            path.unlink()
        meta = self._meta_path(key)
        if meta.exists():
            meta.unlink()

    def copy(self, source_key: str, dest_key: str) -> None:
        """Copy an object."""
        info = self._read_meta(source_key)
        target = self._object_path(dest_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._object_path(source_key), target)
        self._write_meta(dest_key, info.etag)


def translate_error(error: Exception, operation: str, key: str | None = None) -> ObjectStoreError:
    """Map a botocore exception onto the store error taxonomy.

    Args:
        error: ClientError or BotoCoreError raised by boto3.
        operation: Client method name, for the message.
        key: Object key involved, if any.

    Returns:
        The ObjectStoreError subclass to raise in its place.
    """
    target = f"{operation}({key})" if key else operation

    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = str(err.get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        message = f"{target} failed: {code} {err.get('Message', '')}".strip()

        if code in NOT_FOUND_CODES:
            return ObjectNotFoundError(message, code=code)
        if code == "NoSuchUpload":
            return SessionNotFoundError(message, code=code)
        if code in PRECONDITION_CODES or status == 412:
            return PreconditionFailedError(message, code=code)
        if code in THROTTLING_CODES or status == 429 or status >= 500:
            return TransientStoreError(message, code=code)
        return PermanentStoreError(message, code=code)

    if isinstance(error, NETWORK_ERRORS):
        return TransientStoreError(f"{target} failed: {error}", code=type(error).__name__)

    return PermanentStoreError(f"{target} failed: {error}", code=type(error).__name__)


class S3ObjectStore(ObjectStore):
    """S3-compatible storage (AWS, Cloudflare R2, MinIO, OVH, etc.)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
        max_pool_connections: int = 12,
        limits: PartLimits = S3_LIMITS,
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for R2, OVH, MinIO, etc.).
            access_key: Access key ID. None uses boto3's credential chain.
            secret_key: Secret access key.
            region: Region name (default: us-east-1).
            connect_timeout: Seconds to establish a connection.
            read_timeout: Seconds to wait on a socket read (per part bound).
            max_pool_connections: Connection pool size, shared by all workers.
            limits: Multipart constraints of the provider.
        """
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._limits = limits
        self._etags_are_md5 = True
        # Retries are owned by the engine, not botocore
        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            max_pool_connections=max_pool_connections,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}"
        return f"S3: s3://{self._bucket}"

    @property
    def limits(self) -> PartLimits:
        """Multipart constraints of this provider."""
        return self._limits

    @property
    def etags_are_md5(self) -> bool:
        """False once a response showed SSE-KMS or SSE-C, whose etags are opaque."""
        return self._etags_are_md5

    def _call(self, operation: str, **kwargs: Any) -> Any:
        """Invoke a client method, translating botocore errors."""
        try:
            response = getattr(self._client, operation)(Bucket=self._bucket, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, operation, kwargs.get("Key")) from e
        self._note_encryption(response)
        return response

    def _note_encryption(self, response: Any) -> None:
        if not isinstance(response, dict) or not self._etags_are_md5:
            return
        if (
            response.get("ServerSideEncryption") in OPAQUE_ETAG_ENCRYPTION
            or "SSECustomerAlgorithm" in response
        ):
            self._etags_are_md5 = False
            logger.info(f"Bucket {self._bucket} uses SSE-KMS or SSE-C, etags are not MD5s")

    def check(self) -> None:
        """Verify credentials and that the bucket exists."""
        self._call("head_bucket")

    def list(self, prefix: str = "") -> list[RemoteObject]:
        """List objects under prefix, following continuation tokens."""
        objects = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        RemoteObject(
                            key=item["Key"],
                            size=item["Size"],
                            etag=normalize_etag(item.get("ETag")),
                            last_modified=item["LastModified"].timestamp(),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, "list_objects_v2", prefix) from e
        return objects

    def head(self, key: str) -> RemoteObject:
        """Get metadata of one object."""
        response = self._call("head_object", Key=key)
        return RemoteObject(
            key=key,
            size=response["ContentLength"],
            etag=normalize_etag(response.get("ETag")),
            last_modified=response["LastModified"].timestamp(),
        )

    def iter_range(
        self,
        key: str,
        offset: int,
        length: int,
        if_match: str | None = None,
    ) -> Iterator[bytes]:
        """Stream a byte range with a ranged GET."""
        kwargs: dict[str, Any] = {
            "Key": key,
            "Range": f"bytes={offset}-{offset + length - 1}",
        }
        if if_match is not None:
            kwargs["IfMatch"] = if_match
        response = self._call("get_object", **kwargs)
        body = response["Body"]
        try:
            yield from body.iter_chunks(STREAM_BLOCK_SIZE)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, "get_object", key) from e
        except (ConnectionError, TimeoutError) as e:
            raise TransientStoreError(f"get_object({key}) stream failed: {e}") from e
        finally:
            body.close()

    def put(self, key: str, body: Body) -> str:
        """Store an object in one request."""
        response = self._call("put_object", Key=key, Body=body)
        return normalize_etag(response.get("ETag"))

    def initiate_multipart(self, key: str) -> str:
        """Start a multipart upload."""
        response = self._call("create_multipart_upload", Key=key)
        return str(response["UploadId"])

    def upload_part(self, key: str, session_token: str, part_number: int, body: Body) -> str:
        """Upload one part."""
        response = self._call(
            "upload_part",
            Key=key,
            UploadId=session_token,
            PartNumber=part_number,
            Body=body,
        )
        return normalize_etag(response.get("ETag"))

    def complete_multipart(
        self, key: str, session_token: str, manifest: list[tuple[int, str]]
    ) -> str:
        """Finalize a multipart upload."""
        response = self._call(
            "complete_multipart_upload",
            Key=key,
            UploadId=session_token,
            MultipartUpload={
                "Parts": [{"PartNumber": number, "ETag": etag} for number, etag in manifest]
            },
        )
        return normalize_etag(response.get("ETag"))

    def abort_multipart(self, key: str, session_token: str) -> None:
        """Abort a multipart upload."""
        self._call("abort_multipart_upload", Key=key, UploadId=session_token)

    def delete(self, key: str) -> None:
        """Delete an object."""
        self._call("delete_object", Key=key)

    def copy(self, source_key: str, dest_key: str) -> None:
        """Server-side copy within the bucket."""
        self._call(
            "copy_object",
            Key=dest_key,
            CopySource={"Bucket": self._bucket, "Key": source_key},
        )


def create_object_store(
    config: StoreConfig, engine_config: EngineConfig | None = None
) -> ObjectStore:
    """Factory function to create an object store from configuration.

    Args:
        config: Store connection settings.
        engine_config: Engine settings providing timeouts and pool size.

    Returns:
        Configured ObjectStore instance.

    Raises:
        ValueError: If required settings are missing.
    """
    if config.type == "local":
        if not config.local_path:
            raise ValueError("Local store requires 'local_path' configuration")
        return LocalFSObjectStore(Path(config.local_path).expanduser())

    if not config.bucket:
        raise ValueError("S3 store requires 'bucket' configuration")

    kwargs: dict[str, Any] = {}
    if engine_config is not None:
        kwargs = {
            "connect_timeout": engine_config.connect_timeout,
            "read_timeout": engine_config.part_timeout,
            "max_pool_connections": engine_config.max_concurrent_operations,
        }
    return S3ObjectStore(
        bucket=config.bucket,
        endpoint_url=config.endpoint_url,
        access_key=config.access_key,
        secret_key=config.secret_key,
        region=config.region or "us-east-1",
        **kwargs,
    )

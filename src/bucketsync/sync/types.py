"""Shared types and dataclasses for transfer and sync operations.

This module provides:
- TransferError and subclasses: Exception classes raised by the engine
- Transfer, Part: Persisted records of a file movement and its byte ranges
- TransferSummary: Row shown by list_active_transfers()
- ProgressSnapshot: Coalesced progress published to subscribers
- SyncFolder, SyncAction, ReconcileResult: Folder backup types
- Type aliases for callbacks
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from bucketsync.core.chunking import part_count
from bucketsync.core.formatters import file_name
from bucketsync.core.types import Direction, PartState, TransferState


class TransferError(Exception):
    """Base exception for transfer engine errors."""


class TransferNotFoundError(TransferError):
    """No transfer with this id exists."""

    def __init__(self, transfer_id: str) -> None:
        self.transfer_id = transfer_id
        super().__init__(f"Transfer not found: {transfer_id}")


class IntegrityError(TransferError):
    """Returned checksum or length does not match what was sent/expected."""


class LocalFileChangedError(TransferError):
    """The upload source changed or vanished while it was being transferred."""


class SyncFolderNotFoundError(TransferError):
    """No sync folder with this id exists."""


class SyncFolderDisabledError(TransferError):
    """Reconciliation was requested for a disabled sync folder."""


@dataclass
class Transfer:
    """One logical file movement between local disk and the object store.

    Attributes:
        id: Stable unique identifier.
        direction: Upload or download.
        local_path: Absolute local path.
        remote_key: Object key in the bucket.
        total_size: Size in bytes, fixed at creation.
        part_size: Effective bytes per part, fixed at creation.
        state: Current lifecycle state.
        bytes_transferred: Sum of completed part lengths.
        session_token: Multipart upload id once initiated.
        remote_tag: Object etag captured when a download was created.
        source_mtime: Upload source mtime captured at creation.
        error: Last fatal error, only set while failed.
        runner_id: Engine currently running the transfer, if any.
        lease_expires: When that engine's lease lapses unless renewed.
        created_at: Creation timestamp.
        updated_at: Last state change timestamp.
        completed_at: Completion timestamp.
    """

    id: str
    direction: Direction
    local_path: str
    remote_key: str
    total_size: int
    part_size: int
    state: TransferState = TransferState.PENDING
    bytes_transferred: int = 0
    session_token: str | None = None
    remote_tag: str | None = None
    source_mtime: float | None = None
    error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    completed_at: float | None = None
    runner_id: str | None = None
    lease_expires: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Transfer:
        """Create Transfer from database row."""
        return cls(
            id=row["id"],
            direction=Direction(row["direction"]),
            local_path=row["local_path"],
            remote_key=row["remote_key"],
            total_size=row["total_size"],
            part_size=row["part_size"],
            state=TransferState(row["state"]),
            bytes_transferred=row["bytes_transferred"],
            session_token=row["session_token"],
            remote_tag=row["remote_tag"],
            source_mtime=row["source_mtime"],
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            runner_id=row["runner_id"],
            lease_expires=row["lease_expires"],
        )

    def held_by_other(self, owner: str, now: float | None = None) -> bool:
        """Check if an engine other than owner holds a live lease."""
        if self.runner_id is None or self.runner_id == owner or self.lease_expires is None:
            return False
        return self.lease_expires > (time.time() if now is None else now)

    @property
    def file_name(self) -> str:
        """Name of the file being moved."""
        return file_name(self.local_path)

    @property
    def part_count(self) -> int:
        """Number of parts in the plan."""
        return part_count(self.total_size, self.part_size)

    @property
    def is_multipart(self) -> bool:
        """Check if the upload needs a multipart session."""
        return self.part_count > 1

    @property
    def percent(self) -> float:
        """Completion percentage from persisted bytes."""
        if self.total_size <= 0:
            return 0.0
        return self.bytes_transferred / self.total_size * 100

    @property
    def temp_path(self) -> Path:
        """Staging file a download is written into before the final rename."""
        return Path(self.local_path + ".bsdownload")


@dataclass
class Part:
    """One byte range [offset, offset + length) of a transfer."""

    transfer_id: str
    part_number: int
    offset: int
    length: int
    state: PartState = PartState.PENDING
    integrity_tag: str | None = None
    attempts: int = 0
    last_error: str | None = None
    completed_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Part:
        """Create Part from database row."""
        return cls(
            transfer_id=row["transfer_id"],
            part_number=row["part_number"],
            offset=row["byte_offset"],
            length=row["length"],
            state=PartState(row["state"]),
            integrity_tag=row["integrity_tag"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            completed_at=row["completed_at"],
        )

    @property
    def end(self) -> int:
        """Exclusive end offset."""
        return self.offset + self.length


@dataclass
class ProgressSnapshot:
    """Progress of one transfer at a point in time.

    Attributes:
        transfer_id: Transfer this snapshot belongs to.
        bytes_transferred: Never decreases between snapshots.
        total: Total bytes.
        speed: Bytes/sec over the sliding window.
        eta: Seconds remaining, 0.0 when done, None when unknown.
        state: Transfer state when the snapshot was taken.
    """

    transfer_id: str
    bytes_transferred: int
    total: int
    speed: float
    eta: float | None
    state: TransferState

    @property
    def percent(self) -> float:
        """Get progress percentage."""
        if self.total <= 0:
            return 0.0
        return self.bytes_transferred / self.total * 100


# Type alias for progress subscribers
ProgressCallback = Callable[[ProgressSnapshot], None]


@dataclass
class TransferSummary:
    """What a UI shows for one transfer in the queue."""

    id: str
    direction: Direction
    file_name: str
    local_path: str
    remote_key: str
    total_size: int
    bytes_transferred: int
    percent: float
    speed: float
    eta: float | None
    state: TransferState
    error: str | None = None

    @classmethod
    def build(
        cls, transfer: Transfer, snapshot: ProgressSnapshot | None = None
    ) -> TransferSummary:
        """Merge a persisted record with live progress, if any."""
        transferred = transfer.bytes_transferred
        speed = 0.0
        eta: float | None = None
        if snapshot is not None:
            transferred = max(transferred, snapshot.bytes_transferred)
            speed = snapshot.speed
            eta = snapshot.eta
        percent = transferred / transfer.total_size * 100 if transfer.total_size else 0.0
        return cls(
            id=transfer.id,
            direction=transfer.direction,
            file_name=transfer.file_name,
            local_path=transfer.local_path,
            remote_key=transfer.remote_key,
            total_size=transfer.total_size,
            bytes_transferred=transferred,
            percent=percent,
            speed=speed,
            eta=eta,
            state=transfer.state,
            error=transfer.error,
        )


# =============================================================================
# Folder sync types
# =============================================================================


@dataclass
class SyncFolder:
    """A local directory backed up one-way under a remote prefix."""

    id: int
    local_path: str
    remote_prefix: str
    enabled: bool = True
    last_sync: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncFolder:
        """Create SyncFolder from database row."""
        return cls(
            id=row["id"],
            local_path=row["local_path"],
            remote_prefix=row["remote_prefix"],
            enabled=bool(row["enabled"]),
            last_sync=row["last_sync"],
        )


class SyncActionKind(str, Enum):
    """Outcome of reconciling one local file."""

    UPLOAD = "upload"
    SKIP = "skip"
    CONFLICT = "conflict"


@dataclass
class SyncAction:
    """Decision for one local file."""

    kind: SyncActionKind
    local_path: str
    remote_key: str
    reason: str = ""


@dataclass
class ReconcileResult:
    """Result of one reconciliation pass."""

    folder_id: int
    actions: list[SyncAction] = field(default_factory=list)
    scanned: int = 0
    errors: list[str] = field(default_factory=list)
    transfer_ids: list[str] = field(default_factory=list)

    @property
    def uploads(self) -> list[SyncAction]:
        """Actions that need a transfer."""
        return [a for a in self.actions if a.kind == SyncActionKind.UPLOAD]

    @property
    def conflicts(self) -> list[SyncAction]:
        """Actions the caller must resolve."""
        return [a for a in self.actions if a.kind == SyncActionKind.CONFLICT]

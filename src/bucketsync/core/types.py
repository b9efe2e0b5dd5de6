"""Shared enums for bucketsync.

Transfer and part states are closed enumerations; persisted as their
string values in the state database.
"""

from __future__ import annotations

from enum import Enum


class Direction(str, Enum):
    """Direction of a transfer."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferState(str, Enum):
    """Lifecycle state of a transfer.

    pending -> active <-> paused, active -> completed | failed,
    failed -> pending, any non-terminal state -> cancelled.
    """

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if no further work will happen for this state."""
        return self in (TransferState.COMPLETED, TransferState.CANCELLED)


class PartState(str, Enum):
    """Lifecycle state of a single part.

    UPLOADING marks a part claimed by a worker, for ranged downloads too.
    """

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


# Transfers still owned by the engine (shown in the active list)
ACTIVE_STATES = frozenset(
    {TransferState.PENDING, TransferState.ACTIVE, TransferState.PAUSED}
)

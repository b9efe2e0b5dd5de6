"""Base part worker with cancellation support.

This module provides:
- PartContext: Everything a worker needs to move one part
- PartWorker: Abstract base class for upload and download part workers
- CancelledException: Raised when a stop was requested before a request
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bucketsync.storage import ObjectStore
    from bucketsync.sync.types import Part, Transfer

logger = logging.getLogger(__name__)


class CancelledException(Exception):
    """Raised when a worker operation is cancelled."""


@dataclass
class PartContext:
    """Context passed to worker execution.

    Attributes:
        transfer: Transfer the part belongs to.
        part: The claimed part.
        cancel_check: Returns True once the transfer must stop.
        on_progress: Byte delta callback; negative deltas retract bytes.
    """

    transfer: Transfer
    part: Part
    cancel_check: Callable[[], bool] = field(default=lambda: False)
    on_progress: Callable[[int], None] | None = None

    def report(self, delta: int) -> None:
        """Forward a byte delta to the progress callback, if any."""
        if self.on_progress is not None and delta:
            self.on_progress(delta)


class PartWorker(ABC):
    """Moves one part between local disk and the object store.

    Workers are stateless and shared by every part thread of a runner.
    Cancellation is cooperative and observed between requests only: once
    a request is issued it runs to completion or failure.

    Subclasses must implement:
    - _transfer_part(): The request logic, returning the integrity tag
    - worker_type: Property returning the worker type name
    """

    def __init__(self, object_store: ObjectStore, verify_integrity: bool = True) -> None:
        """Initialize the worker.

        Args:
            object_store: Shared store client.
            verify_integrity: Check returned tags and lengths.
        """
        self._store = object_store
        self._verify = verify_integrity

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Return the worker type name (e.g., 'upload', 'download')."""
        ...

    def execute(self, ctx: PartContext) -> str:
        """Transfer a part.

        Args:
            ctx: Part context.

        Returns:
            The part's integrity tag.

        Raises:
            CancelledException: If a stop was requested before the request.
            Exception: Any failure of the transfer itself.
        """
        if ctx.cancel_check():
            raise CancelledException(
                f"{self.worker_type} of part {ctx.part.part_number} cancelled"
            )

        start = time.monotonic()
        tag = self._transfer_part(ctx)
        logger.debug(
            f"{self.worker_type} part {ctx.part.part_number}/{ctx.transfer.part_count} "
            f"of {ctx.transfer.id} done in {time.monotonic() - start:.2f}s"
        )
        return tag

    @abstractmethod
    def _transfer_part(self, ctx: PartContext) -> str:
        """Perform the request for one part and return its integrity tag."""
        ...

"""Error classification and retry with exponential backoff.

This module provides:
- ErrorKind, classify_error: Map an exception to the failure taxonomy
- RetryPolicy: Per-part attempt budget and backoff schedule
- retry_with_backoff: Simple exponential backoff retry for single calls
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from bucketsync.storage import ObjectStoreError, TransientStoreError
from bucketsync.sync.types import IntegrityError, LocalFileChangedError

if TYPE_CHECKING:
    from bucketsync.core.config import EngineConfig

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Exceptions that indicate connectivity issues below the store client
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)


class ErrorKind(Enum):
    """How the runner reacts to a failure."""

    TRANSIENT = "transient"  # Retry the part with backoff
    INTEGRITY = "integrity"  # Retry the part, bounded like transient
    PERMANENT = "permanent"  # Fail the transfer now
    LOCAL = "local"  # Local filesystem problem, fail the transfer now

    @property
    def retryable(self) -> bool:
        """Check if the failed part may be attempted again."""
        return self in (ErrorKind.TRANSIENT, ErrorKind.INTEGRITY)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception raised while transferring a part.

    Store errors carry their own retryable flag. Socket timeouts and resets
    that escape the store client are transient; any other OSError comes
    from the local filesystem.
    """
    if isinstance(error, ObjectStoreError):
        return ErrorKind.TRANSIENT if error.retryable else ErrorKind.PERMANENT
    if isinstance(error, IntegrityError):
        return ErrorKind.INTEGRITY
    if isinstance(error, LocalFileChangedError):
        return ErrorKind.LOCAL
    if isinstance(error, NETWORK_EXCEPTIONS):
        return ErrorKind.TRANSIENT
    if isinstance(error, OSError):
        return ErrorKind.LOCAL
    return ErrorKind.PERMANENT


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff.

    Attributes:
        max_attempts: Attempts per part before it is marked failed.
        initial_backoff: Delay before the second attempt, in seconds.
        max_backoff: Upper bound of any delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = DEFAULT_MAX_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    @classmethod
    def from_config(cls, config: EngineConfig) -> RetryPolicy:
        """Build the policy from engine settings."""
        return cls(
            max_attempts=config.max_part_attempts,
            initial_backoff=config.initial_backoff,
            max_backoff=config.max_backoff,
            multiplier=config.backoff_multiplier,
        )

    def backoff(self, attempts: int) -> float:
        """Delay to wait after the given number of failed attempts."""
        if attempts <= 0:
            return 0.0
        delay = self.initial_backoff * self.multiplier ** (attempts - 1)
        return min(delay, self.max_backoff)

    def exhausted(self, attempts: int) -> bool:
        """Check if no attempt is left."""
        return attempts >= self.max_attempts


def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientStoreError,),
    sleep: Callable[[float], Any] = time.sleep,
) -> Any:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        sleep: Wait function, replaced in tests.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")

"""Tests for error classification and retry."""

from unittest.mock import MagicMock

import pytest

from bucketsync.core.config import EngineConfig
from bucketsync.storage import (
    ObjectNotFoundError,
    PermanentStoreError,
    SessionNotFoundError,
    TransientStoreError,
)
from bucketsync.sync.retry import ErrorKind, RetryPolicy, classify_error, retry_with_backoff
from bucketsync.sync.types import IntegrityError, LocalFileChangedError


class TestClassifyError:
    """Tests for classify_error()."""

    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (TransientStoreError("slow down"), ErrorKind.TRANSIENT),
            (PermanentStoreError("denied"), ErrorKind.PERMANENT),
            (ObjectNotFoundError("gone"), ErrorKind.PERMANENT),
            (SessionNotFoundError("no upload"), ErrorKind.PERMANENT),
            (IntegrityError("md5 mismatch"), ErrorKind.INTEGRITY),
            (LocalFileChangedError("changed"), ErrorKind.LOCAL),
            (ConnectionResetError("reset"), ErrorKind.TRANSIENT),
            (TimeoutError("timeout"), ErrorKind.TRANSIENT),
            (PermissionError("denied"), ErrorKind.LOCAL),
            (OSError(28, "No space left on device"), ErrorKind.LOCAL),
            (ValueError("bug"), ErrorKind.PERMANENT),
        ],
    )
    def test_classification(self, error: Exception, kind: ErrorKind) -> None:
        """Each failure should map to its kind."""
        assert classify_error(error) == kind

    def test_retryable_kinds(self) -> None:
        """Only transient and integrity failures are retried."""
        assert ErrorKind.TRANSIENT.retryable
        assert ErrorKind.INTEGRITY.retryable
        assert not ErrorKind.PERMANENT.retryable
        assert not ErrorKind.LOCAL.retryable


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_backoff_grows_exponentially(self) -> None:
        """Delays should double up to the maximum."""
        policy = RetryPolicy(max_attempts=5, initial_backoff=1.0, max_backoff=5.0, multiplier=2.0)

        assert [policy.backoff(n) for n in range(6)] == [0.0, 1.0, 2.0, 4.0, 5.0, 5.0]

    def test_exhausted(self) -> None:
        """The budget is spent once attempts reach max_attempts."""
        policy = RetryPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_from_config(self) -> None:
        """The policy should follow the engine settings."""
        config = EngineConfig(max_part_attempts=7, initial_backoff=0.5, max_backoff=9.0)

        policy = RetryPolicy.from_config(config)

        assert policy.max_attempts == 7
        assert policy.initial_backoff == 0.5
        assert policy.max_backoff == 9.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff()."""

    def test_success_first_try(self) -> None:
        """A successful call should not sleep."""
        sleep = MagicMock()
        assert retry_with_backoff(lambda: 42, sleep=sleep) == 42
        sleep.assert_not_called()

    def test_retries_transient(self) -> None:
        """Transient failures should be retried with growing delays."""
        func = MagicMock(side_effect=[TransientStoreError("a"), TransientStoreError("b"), "ok"])
        sleep = MagicMock()

        result = retry_with_backoff(func, initial_backoff=1.0, backoff_multiplier=2.0, sleep=sleep)

        assert result == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_gives_up(self) -> None:
        """The last error should propagate after max_retries."""
        func = MagicMock(side_effect=TransientStoreError("down"))

        with pytest.raises(TransientStoreError):
            retry_with_backoff(func, max_retries=2, sleep=MagicMock())
        assert func.call_count == 3

    def test_permanent_not_retried(self) -> None:
        """Non-retryable errors should propagate at once."""
        func = MagicMock(side_effect=PermanentStoreError("denied"))

        with pytest.raises(PermanentStoreError):
            retry_with_backoff(func, sleep=MagicMock())
        assert func.call_count == 1

    def test_backoff_capped(self) -> None:
        """Delays should never exceed max_backoff."""
        func = MagicMock(side_effect=[TransientStoreError("x")] * 4 + ["ok"])
        sleep = MagicMock()

        retry_with_backoff(func, initial_backoff=4.0, max_backoff=5.0, sleep=sleep)

        assert max(c.args[0] for c in sleep.call_args_list) == 5.0

"""Tests for the transfer state machine."""

import pytest

from bucketsync.core.types import ACTIVE_STATES, TransferState
from bucketsync.sync.domain import (
    CANCELLABLE_STATES,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    can_transition,
    check_transition,
)
from bucketsync.sync.types import TransferError


class TestValidTransitions:
    """Tests for VALID_TRANSITIONS."""

    def test_every_state_has_entry(self) -> None:
        """Every state should appear in the table."""
        assert set(VALID_TRANSITIONS) == set(TransferState)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (TransferState.PENDING, TransferState.ACTIVE),
            (TransferState.ACTIVE, TransferState.PAUSED),
            (TransferState.PAUSED, TransferState.ACTIVE),
            (TransferState.ACTIVE, TransferState.COMPLETED),
            (TransferState.ACTIVE, TransferState.FAILED),
            (TransferState.ACTIVE, TransferState.CANCELLED),
            (TransferState.PAUSED, TransferState.CANCELLED),
            (TransferState.FAILED, TransferState.PENDING),
        ],
    )
    def test_allowed(self, current: TransferState, target: TransferState) -> None:
        """Documented moves should be allowed."""
        assert can_transition(current, target)
        check_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (TransferState.PENDING, TransferState.COMPLETED),
            (TransferState.PAUSED, TransferState.COMPLETED),
            (TransferState.COMPLETED, TransferState.ACTIVE),
            (TransferState.CANCELLED, TransferState.ACTIVE),
            (TransferState.FAILED, TransferState.ACTIVE),
        ],
    )
    def test_refused(self, current: TransferState, target: TransferState) -> None:
        """Other moves should raise InvalidTransitionError."""
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError, match=f"from {current.value}"):
            check_transition(current, target)

    def test_terminal_states(self) -> None:
        """Completed and cancelled are terminal."""
        assert TransferState.COMPLETED.is_terminal
        assert TransferState.CANCELLED.is_terminal
        assert not TransferState.FAILED.is_terminal
        assert VALID_TRANSITIONS[TransferState.COMPLETED] == frozenset()

    def test_cancellable_states(self) -> None:
        """Only non-terminal states can be cancelled."""
        assert CANCELLABLE_STATES == {
            TransferState.PENDING,
            TransferState.ACTIVE,
            TransferState.PAUSED,
            TransferState.FAILED,
        }

    def test_active_states(self) -> None:
        """Failed transfers are not part of the active set."""
        assert TransferState.FAILED not in ACTIVE_STATES

    def test_error_carries_states(self) -> None:
        """The error should expose both states and be a TransferError."""
        error = InvalidTransitionError(TransferState.PAUSED, TransferState.COMPLETED)
        assert error.current == TransferState.PAUSED
        assert error.target == TransferState.COMPLETED
        assert isinstance(error, TransferError)

"""Transfer state machine.

States:
    PENDING -> ACTIVE -> COMPLETED
               ACTIVE <-> PAUSED
               ACTIVE -> FAILED -> PENDING (explicit retry)
    PENDING | ACTIVE | PAUSED | FAILED -> CANCELLED

All state transitions are validated.
"""

from __future__ import annotations

from bucketsync.core.types import TransferState
from bucketsync.sync.types import TransferError

# Valid state transitions
VALID_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.PENDING: frozenset(
        {TransferState.ACTIVE, TransferState.PAUSED, TransferState.CANCELLED}
    ),
    TransferState.ACTIVE: frozenset(
        {
            TransferState.PAUSED,
            TransferState.COMPLETED,
            TransferState.FAILED,
            TransferState.CANCELLED,
        }
    ),
    TransferState.PAUSED: frozenset({TransferState.ACTIVE, TransferState.CANCELLED}),
    TransferState.FAILED: frozenset({TransferState.PENDING, TransferState.CANCELLED}),
    TransferState.COMPLETED: frozenset(),  # Terminal
    TransferState.CANCELLED: frozenset(),  # Terminal
}

# States a cancel request is accepted from
CANCELLABLE_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if TransferState.CANCELLED in targets
)


class InvalidTransitionError(TransferError):
    """Raised when attempting invalid state transition."""

    def __init__(self, current: TransferState, target: TransferState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current.value} to {target.value}")


def can_transition(current: TransferState, target: TransferState) -> bool:
    """Check whether current -> target is allowed."""
    return target in VALID_TRANSITIONS[current]


def check_transition(current: TransferState, target: TransferState) -> None:
    """Validate a transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

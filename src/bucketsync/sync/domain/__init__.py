"""Domain modules for transfer business rules.

domain/ contains pure business logic without external dependencies.
Persistence and network calls stay in state.py and workers/.
"""

from bucketsync.sync.domain.transfers import (
    CANCELLABLE_STATES,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    can_transition,
    check_transition,
)

__all__ = [
    "CANCELLABLE_STATES",
    "InvalidTransitionError",
    "VALID_TRANSITIONS",
    "can_transition",
    "check_transition",
]

"""
Share Phases

Design Decision: Explicit State Machine
=======================================

Options Considered:
1. Nested open/data/close callbacks per connection
   - Natural for event emitters
   - State is implicit and scattered across closures

2. Boolean flags on each object (requested, sending, done...)
   - Easy to add
   - Contradictory combinations are representable

3. One phase enum with an explicit transition table
   - Every object reports exactly one phase
   - Illegal moves are rejected in one place

Decision: Phase enum + transition table
- Sessions use CREATED -> OWNER_ID_KNOWN -> CLOSED
- Receiver entries use CREATED -> DOWNLOAD_REQUESTED -> CLOSED
- Transfers (both ends) use CREATED -> TRANSFERRING -> COMPLETED -> CLOSED
- Re-entering the current phase is a no-op so duplicate notifications are harmless
"""

from enum import Enum
from typing import Dict, FrozenSet

from ..errors import InvalidTransitionError


class SharePhase(Enum):
    """Lifecycle phase of a share session, receiver entry or transfer."""
    CREATED = "created"
    OWNER_ID_KNOWN = "owner_id_known"
    DOWNLOAD_REQUESTED = "download_requested"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    CLOSED = "closed"


TRANSITIONS: Dict[SharePhase, FrozenSet[SharePhase]] = {
    SharePhase.CREATED: frozenset({
        SharePhase.OWNER_ID_KNOWN,
        SharePhase.DOWNLOAD_REQUESTED,
        SharePhase.TRANSFERRING,
        SharePhase.CLOSED,
    }),
    SharePhase.OWNER_ID_KNOWN: frozenset({
        SharePhase.DOWNLOAD_REQUESTED,
        SharePhase.TRANSFERRING,
        SharePhase.CLOSED,
    }),
    SharePhase.DOWNLOAD_REQUESTED: frozenset({
        SharePhase.TRANSFERRING,
        SharePhase.CLOSED,
    }),
    SharePhase.TRANSFERRING: frozenset({
        SharePhase.COMPLETED,
        SharePhase.CLOSED,
    }),
    SharePhase.COMPLETED: frozenset({
        SharePhase.CLOSED,
    }),
    SharePhase.CLOSED: frozenset(),
}


def can_advance(current: SharePhase, target: SharePhase) -> bool:
    """Check whether `target` is reachable from `current` in one step."""
    return target == current or target in TRANSITIONS[current]


def advance(current: SharePhase, target: SharePhase) -> SharePhase:
    """
    Move from one phase to the next.

    Returns:
        The new phase

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_advance(current, target):
        raise InvalidTransitionError(
            f"Cannot move from {current.value} to {target.value}"
        )
    return target

"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    PENDING ──┬──> QUEUED ──┬──> SPAWNING
              │             └──> CANCELLED
              │
              └──> SPAWNING ──┬──> RUNNING ──┬──> COMPLETED
                              │              ├──> FAILED
                              │              └──> CANCELLED
                              ├──> FAILED
                              └──> CANCELLED

    COMPLETED, FAILED and CANCELLED are terminal.
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.PENDING: {
        SessionState.QUEUED,
        SessionState.SPAWNING,
    },
    SessionState.QUEUED: {
        SessionState.SPAWNING,
        SessionState.CANCELLED,
    },
    SessionState.SPAWNING: {
        SessionState.RUNNING,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.RUNNING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
    SessionState.CANCELLED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = (
            ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        )
        raise ValueError(
            f"Invalid session transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())

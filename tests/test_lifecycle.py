"""Tests for the session lifecycle transition table."""
from __future__ import annotations

import pytest

from taskdeck.engine.lifecycle import VALID_TRANSITIONS, can_transition, validate_transition
from taskdeck.engine.models import SessionState, TERMINAL_STATES


def test_happy_path_transitions_are_valid():
    path = [
        SessionState.PENDING,
        SessionState.QUEUED,
        SessionState.SPAWNING,
        SessionState.RUNNING,
        SessionState.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        validate_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (SessionState.QUEUED, SessionState.CANCELLED),
    (SessionState.SPAWNING, SessionState.FAILED),
    (SessionState.SPAWNING, SessionState.CANCELLED),
    (SessionState.RUNNING, SessionState.FAILED),
    (SessionState.RUNNING, SessionState.CANCELLED),
    (SessionState.PENDING, SessionState.SPAWNING),
])
def test_side_exits_are_valid(current, target):
    assert can_transition(current, target)


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert VALID_TRANSITIONS[state] == set()
        assert state.is_terminal
        with pytest.raises(ValueError, match="none \\(terminal\\)"):
            validate_transition(state, SessionState.RUNNING)


def test_queued_cannot_skip_to_running():
    with pytest.raises(ValueError, match="Invalid session transition: queued -> running"):
        validate_transition(SessionState.QUEUED, SessionState.RUNNING)
    assert not can_transition(SessionState.QUEUED, SessionState.COMPLETED)

from __future__ import annotations

import pytest

from pagedpreview.engine.lifecycle import SessionPhase, VALID_TRANSITIONS, validate_transition


@pytest.mark.parametrize(
    "current,target",
    [
        (SessionPhase.IDLE, SessionPhase.STARTING),
        (SessionPhase.STARTING, SessionPhase.ACTIVE),
        (SessionPhase.STARTING, SessionPhase.IDLE),
        (SessionPhase.ACTIVE, SessionPhase.SWITCHING),
        (SessionPhase.SWITCHING, SessionPhase.STARTING),
        (SessionPhase.SWITCHING, SessionPhase.IDLE),
        (SessionPhase.ACTIVE, SessionPhase.STOPPING),
        (SessionPhase.IDLE, SessionPhase.STOPPING),
        (SessionPhase.STOPPING, SessionPhase.STOPPED),
    ],
)
def test_valid_transitions(current: SessionPhase, target: SessionPhase) -> None:
    validate_transition(current, target)


def test_active_cannot_restart_without_switching() -> None:
    with pytest.raises(ValueError, match="active -> starting"):
        validate_transition(SessionPhase.ACTIVE, SessionPhase.STARTING)


def test_stopped_is_terminal() -> None:
    assert VALID_TRANSITIONS[SessionPhase.STOPPED] == set()
    with pytest.raises(ValueError, match="none \\(terminal\\)"):
        validate_transition(SessionPhase.STOPPED, SessionPhase.IDLE)


def test_every_phase_has_transition_entry() -> None:
    assert set(VALID_TRANSITIONS) == set(SessionPhase)

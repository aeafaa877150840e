"""Preview session lifecycle state machine.

Defines valid controller phases and enforces transitions between them.
Invalid transitions raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> STARTING ──> ACTIVE ──> SWITCHING ──> STARTING
      ^          │           │           │
      └──────────┘           │           └──> IDLE   (teardown failed)
      (start failed)         │
                             └──> STOPPING ──> STOPPED

    IDLE ──> STOPPING  (shutdown with no active session)
"""
from __future__ import annotations

import enum


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    SWITCHING = "switching"
    STOPPING = "stopping"
    STOPPED = "stopped"


VALID_TRANSITIONS: dict[SessionPhase, set[SessionPhase]] = {
    SessionPhase.IDLE: {
        SessionPhase.STARTING,
        SessionPhase.STOPPING,
    },
    SessionPhase.STARTING: {
        SessionPhase.ACTIVE,
        SessionPhase.IDLE,
    },
    SessionPhase.ACTIVE: {
        SessionPhase.SWITCHING,
        SessionPhase.STOPPING,
    },
    SessionPhase.SWITCHING: {
        SessionPhase.STARTING,
        SessionPhase.IDLE,
    },
    SessionPhase.STOPPING: {
        SessionPhase.STOPPED,
    },
    SessionPhase.STOPPED: set(),
}


def validate_transition(current: SessionPhase, target: SessionPhase) -> None:
    """Validate a phase transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid session transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )

"""Preview lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> STARTING ──> RUNNING ──> STOPPING ──> STOPPED
                │            │
                └──> FAILED <┘

    STARTING ──> STOPPING  (stop supersedes a start mid-probe)
    STOPPING ──> FAILED    (teardown error)
"""
from __future__ import annotations

from .models import PreviewState

VALID_TRANSITIONS: dict[PreviewState, set[PreviewState]] = {
    PreviewState.IDLE: {
        PreviewState.STARTING,
    },
    PreviewState.STARTING: {
        PreviewState.RUNNING,
        PreviewState.STOPPING,
        PreviewState.FAILED,
    },
    PreviewState.RUNNING: {
        PreviewState.STOPPING,
        PreviewState.FAILED,
    },
    PreviewState.STOPPING: {
        PreviewState.STOPPED,
        PreviewState.FAILED,
    },
    PreviewState.STOPPED: set(),
    PreviewState.FAILED: set(),
}


def validate_transition(current: PreviewState, target: PreviewState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )

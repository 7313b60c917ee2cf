"""Task session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    IDLE ──> AWAITING_MODEL ──> STREAMING_RESPONSE ──┬──> AWAITING_APPROVAL ──> EXECUTING_TOOL
                                                     │
                                                     └──> COMPLETED

    STREAMING_RESPONSE ──> AWAITING_MODEL   (narration only, or retry)
    AWAITING_APPROVAL  ──> AWAITING_MODEL   (denied, or user answered)
    EXECUTING_TOOL     ──> AWAITING_MODEL | COMPLETED
    AWAITING_MODEL     ──> AWAITING_APPROVAL (user input before next request)

    Any non-terminal state ──> ABORTED | FAILED
    COMPLETED, ABORTED, FAILED are final.
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import TaskPhase

_STOP = {TaskPhase.ABORTED, TaskPhase.FAILED}

VALID_TRANSITIONS: dict[TaskPhase, set[TaskPhase]] = {
    TaskPhase.IDLE: {
        TaskPhase.AWAITING_MODEL,
        *_STOP,
    },
    TaskPhase.AWAITING_MODEL: {
        TaskPhase.STREAMING_RESPONSE,
        TaskPhase.AWAITING_APPROVAL,
        *_STOP,
    },
    TaskPhase.STREAMING_RESPONSE: {
        TaskPhase.AWAITING_APPROVAL,
        TaskPhase.AWAITING_MODEL,  # no tool used, or transport retry
        TaskPhase.COMPLETED,
        *_STOP,
    },
    TaskPhase.AWAITING_APPROVAL: {
        TaskPhase.EXECUTING_TOOL,
        TaskPhase.AWAITING_MODEL,  # denied, or user answered
        *_STOP,
    },
    TaskPhase.EXECUTING_TOOL: {
        TaskPhase.AWAITING_MODEL,
        TaskPhase.COMPLETED,
        *_STOP,
    },
    TaskPhase.COMPLETED: set(),
    TaskPhase.ABORTED: set(),
    TaskPhase.FAILED: set(),
}


def validate_transition(current: TaskPhase, target: TaskPhase) -> None:
    """Validate a phase transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            current.value,
            target.value,
            sorted(s.value for s in allowed),
        )

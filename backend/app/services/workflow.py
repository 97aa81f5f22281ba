from __future__ import annotations

from backend.app.models import RunStatus

ALLOWED_RUN_TRANSITIONS = {
    RunStatus.ACTIVE: {RunStatus.ACTIVE, RunStatus.HANDED_OVER, RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.HANDED_OVER: {RunStatus.COMPLETED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_RUN_TRANSITIONS[current]


def is_terminal(status: RunStatus) -> bool:
    return status != RunStatus.ACTIVE

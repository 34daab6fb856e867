from __future__ import annotations

from enum import Enum

from local_workflow_engine.engine.errors import IllegalTransitionError


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    DELAYED = "delayed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.AWAITING_APPROVAL,
        RunStatus.DELAYED,
    },
    RunStatus.AWAITING_APPROVAL: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.DELAYED: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
}

TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED})


def transition(*, current: RunStatus, to: RunStatus) -> RunStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to

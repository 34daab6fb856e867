"""Background inference tasks and their lifecycle.

Priority is an int where lower is more urgent. Tasks become eligible once
``scheduled_time`` has passed.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import Field

from local_workflow_engine.engine.errors import IllegalTransitionError
from local_workflow_engine.engine.storage.json_store import utc_iso_now
from local_workflow_engine.engine.workflow.models import CamelModel

URGENT = 0
HIGH = 1
NORMAL = 2
LOW = 3

PRIORITY_NAMES = {"urgent": URGENT, "high": HIGH, "normal": NORMAL, "low": LOW}


class TaskType(str, Enum):
    CHAT_GENERATION = "chat_generation"
    IMAGE_ANALYSIS = "image_analysis"
    SCHEDULED_GENERATION = "scheduled_generation"
    NOTIFICATION_RESPONSE = "notification_response"
    BATCH_PROCESSING = "batch_processing"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.RETRY,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RETRY: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)
CLAIMABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RETRY})


def transition(*, current: TaskStatus, to: TaskStatus) -> TaskStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal task transition: {current.value} -> {to.value}")
    return to


class BackgroundTask(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: TaskType
    prompt: str
    images: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    session_id: str | None = None
    priority: int = Field(default=NORMAL, ge=URGENT, le=LOW)
    status: TaskStatus = TaskStatus.PENDING
    scheduled_time: str = Field(default_factory=utc_iso_now)
    current_retries: int = 0
    max_retries: int = Field(default=3, ge=0)
    result: str | None = None
    error: str | None = None
    last_error: str | None = None
    final_error: str | None = None
    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


def chat_task(
    prompt: str,
    *,
    images: list[str] | None = None,
    session_id: str | None = None,
    priority: int = NORMAL,
) -> BackgroundTask:
    return BackgroundTask(
        type=TaskType.CHAT_GENERATION,
        prompt=prompt,
        images=list(images or []),
        session_id=session_id,
        priority=priority,
    )


def analysis_task(prompt: str, images: list[str], *, priority: int = HIGH) -> BackgroundTask:
    return BackgroundTask(
        type=TaskType.IMAGE_ANALYSIS, prompt=prompt, images=list(images), priority=priority
    )


def scheduled_task(prompt: str, scheduled_for: datetime, *, priority: int = LOW) -> BackgroundTask:
    return BackgroundTask(
        type=TaskType.SCHEDULED_GENERATION,
        prompt=prompt,
        scheduled_time=scheduled_for.isoformat(),
        priority=priority,
    )

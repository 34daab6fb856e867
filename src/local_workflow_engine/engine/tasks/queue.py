"""Persisted priority queue of background inference tasks.

Every state change goes through :func:`~local_workflow_engine.engine.tasks.models.transition`
under the store lock, so a task is claimed by exactly one consumer and a
terminal task never moves again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path

from local_workflow_engine.engine.errors import ConcurrencyError, NotFoundError
from local_workflow_engine.engine.storage.json_store import (
    JsonListStore,
    parse_iso,
    utc_iso_now,
    utc_now,
)
from local_workflow_engine.engine.tasks.models import (
    CLAIMABLE_TASK_STATUSES,
    BackgroundTask,
    TaskStatus,
    TaskType,
    transition,
)

logger = logging.getLogger(__name__)

INTERRUPTED = "Interrupted before completion"


class TaskQueue(JsonListStore[BackgroundTask]):
    record_type = BackgroundTask

    def __init__(
        self,
        path: Path,
        *,
        retry_backoff_seconds: float = 60.0,
        retry_exponential: bool = False,
        clock: Callable[[], datetime] = utc_now,
        on_cancel_running: Callable[[BackgroundTask], None] | None = None,
    ) -> None:
        super().__init__(path)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_exponential = retry_exponential
        self.clock = clock
        self.on_cancel_running = on_cancel_running

    def enqueue(self, task: BackgroundTask) -> BackgroundTask:
        with self.transaction() as records:
            if any(r.id == task.id for r in records):
                raise ConcurrencyError(f"Task already queued: {task.id}")
            records.append(task)
        logger.info(
            "Task enqueued",
            extra={"task_id": task.id, "task_type": task.type.value, "priority": task.priority},
        )
        return task

    def get(self, task_id: str) -> BackgroundTask:
        task = self.find(lambda t: t.id == task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def pending(self) -> list[BackgroundTask]:
        return self._ordered(t for t in self.list() if t.status in CLAIMABLE_TASK_STATUSES)

    def of_type(self, task_type: TaskType) -> list[BackgroundTask]:
        return [t for t in self.list() if t.type == task_type]

    def dequeue_next(self, now: datetime | None = None) -> BackgroundTask | None:
        """Claim the most urgent eligible task, or return None if nothing is due."""

        now = now or self.clock()
        with self.transaction() as records:
            due = self._ordered(
                t
                for t in records
                if t.status in CLAIMABLE_TASK_STATUSES and parse_iso(t.scheduled_time) <= now
            )
            if not due:
                return None
            return self._update(records, due[0].id, status=TaskStatus.RUNNING)

    def claim(self, task_id: str) -> BackgroundTask:
        """Claim a specific task.

        Raises:
            NotFoundError: If the task does not exist.
            ConcurrencyError: If the task is not pending or waiting to retry.
        """

        with self.transaction() as records:
            task = self._find(records, task_id)
            if task.status not in CLAIMABLE_TASK_STATUSES:
                raise ConcurrencyError(f"Task {task_id} is {task.status.value}; cannot claim")
            return self._update(records, task_id, status=TaskStatus.RUNNING)

    def complete(self, task_id: str, result: str) -> BackgroundTask:
        with self.transaction() as records:
            task = self._find(records, task_id)
            if task.status == TaskStatus.CANCELLED:
                logger.info("Dropping result of cancelled task", extra={"task_id": task_id})
                return task
            updated = self._update(records, task_id, status=TaskStatus.COMPLETED, result=result)
        logger.info("Task completed", extra={"task_id": task_id})
        return updated

    def fail(self, task_id: str, error: str) -> BackgroundTask:
        """Record a failed attempt; retries with backoff until ``max_retries`` is spent."""

        with self.transaction() as records:
            task = self._find(records, task_id)
            if task.status == TaskStatus.CANCELLED:
                logger.info("Dropping failure of cancelled task", extra={"task_id": task_id})
                return task

            if task.current_retries < task.max_retries:
                backoff = self._backoff(task.current_retries)
                updated = self._update(
                    records,
                    task_id,
                    status=TaskStatus.RETRY,
                    current_retries=task.current_retries + 1,
                    scheduled_time=(self.clock() + backoff).isoformat(),
                    error=error,
                    last_error=error,
                )
            else:
                updated = self._update(
                    records, task_id, status=TaskStatus.FAILED, error=error, final_error=error
                )

        logger.warning(
            "Task attempt failed",
            extra={
                "task_id": task_id,
                "status": updated.status.value,
                "retries": updated.current_retries,
                "error": error,
            },
        )
        return updated

    def cancel(self, task_id: str) -> BackgroundTask:
        """Cancel a non-terminal task; a running task's generation is asked to stop.

        Raises:
            NotFoundError: If the task does not exist.
            IllegalTransitionError: If the task already finished.
        """

        with self.transaction() as records:
            task = self._find(records, task_id)
            was_running = task.status == TaskStatus.RUNNING
            updated = self._update(records, task_id, status=TaskStatus.CANCELLED)

        if was_running and self.on_cancel_running is not None:
            self.on_cancel_running(updated)
        logger.info("Task cancelled", extra={"task_id": task_id, "was_running": was_running})
        return updated

    def clear_completed(self) -> int:
        return self.remove_where(
            lambda t: t.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
        )

    def recover_interrupted(self) -> list[BackgroundTask]:
        """Send tasks left running by a previous process through the failure path."""

        stale = [t.id for t in self.list() if t.status == TaskStatus.RUNNING]
        recovered = [self.fail(task_id, INTERRUPTED) for task_id in stale]
        if recovered:
            logger.warning("Recovered interrupted tasks", extra={"count": len(recovered)})
        return recovered

    def _backoff(self, attempt: int) -> timedelta:
        seconds = self.retry_backoff_seconds
        if self.retry_exponential:
            seconds *= 2**attempt
        return timedelta(seconds=seconds)

    @staticmethod
    def _ordered(tasks: Iterable[BackgroundTask]) -> list[BackgroundTask]:
        return sorted(
            tasks,
            key=lambda t: (t.priority, parse_iso(t.scheduled_time), t.created_at),
        )

    @staticmethod
    def _find(records: list[BackgroundTask], task_id: str) -> BackgroundTask:
        for task in records:
            if task.id == task_id:
                return task
        raise NotFoundError(f"Task not found: {task_id}")

    @staticmethod
    def _update(
        records: list[BackgroundTask], task_id: str, *, status: TaskStatus, **updates: object
    ) -> BackgroundTask:
        for idx, task in enumerate(records):
            if task.id != task_id:
                continue
            transition(current=task.status, to=status)
            merged = task.model_copy(
                update={"status": status, "updated_at": utc_iso_now(), **updates}
            )
            records[idx] = merged
            return merged
        raise NotFoundError(f"Task not found: {task_id}")

"""Unit tests for the persisted background task queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

import pytest
from conftest import FakeClock

from local_workflow_engine.engine.errors import (
    ConcurrencyError,
    IllegalTransitionError,
    NotFoundError,
)
from local_workflow_engine.engine.tasks.models import (
    HIGH,
    LOW,
    NORMAL,
    URGENT,
    BackgroundTask,
    TaskStatus,
    TaskType,
    analysis_task,
    chat_task,
    scheduled_task,
)
from local_workflow_engine.engine.tasks.queue import INTERRUPTED, TaskQueue


@pytest.fixture
def queue_clock() -> FakeClock:
    # Ahead of wall time so freshly created tasks are already due.
    return FakeClock(datetime.now(tz=UTC) + timedelta(minutes=1))


@pytest.fixture
def queue(tmp_path: Path, queue_clock: FakeClock) -> TaskQueue:
    return TaskQueue(
        tmp_path / "background_tasks.json", retry_backoff_seconds=30, clock=queue_clock
    )


def _task(prompt: str, *, priority: int = NORMAL, at: datetime | None = None) -> BackgroundTask:
    when = (at or datetime(2026, 3, 2, 8, 0, tzinfo=UTC)).isoformat()
    return BackgroundTask(
        type=TaskType.CHAT_GENERATION, prompt=prompt, priority=priority, scheduled_time=when
    )


def test_priority_one_is_dequeued_before_priority_two(queue: TaskQueue) -> None:
    queue.enqueue(_task("normal", priority=NORMAL))
    queue.enqueue(_task("high", priority=HIGH))

    first = queue.dequeue_next()
    second = queue.dequeue_next()

    assert first is not None and first.prompt == "high"
    assert second is not None and second.prompt == "normal"
    assert queue.dequeue_next() is None


def test_equal_priority_orders_by_scheduled_time(queue: TaskQueue) -> None:
    queue.enqueue(_task("later", at=datetime(2026, 3, 2, 8, 30, tzinfo=UTC)))
    queue.enqueue(_task("earlier", at=datetime(2026, 3, 2, 8, 0, tzinfo=UTC)))

    claimed = queue.dequeue_next()
    assert claimed is not None and claimed.prompt == "earlier"


def test_future_tasks_are_not_eligible(queue: TaskQueue, queue_clock: FakeClock) -> None:
    queue.enqueue(scheduled_task("later", queue_clock.now + timedelta(hours=1)))

    assert queue.dequeue_next() is None
    queue_clock.advance(hours=1)
    claimed = queue.dequeue_next()
    assert claimed is not None and claimed.status == TaskStatus.RUNNING


def test_retry_bound(queue: TaskQueue, queue_clock: FakeClock) -> None:
    task = queue.enqueue(
        BackgroundTask(type=TaskType.CHAT_GENERATION, prompt="flaky", max_retries=2)
    )
    observed: list[tuple[TaskStatus, int]] = []

    for _ in range(3):
        claimed = queue.dequeue_next()
        assert claimed is not None and claimed.id == task.id
        failed = queue.fail(task.id, "boom")
        observed.append((failed.status, failed.current_retries))
        queue_clock.advance(seconds=30)

    assert observed == [
        (TaskStatus.RETRY, 1),
        (TaskStatus.RETRY, 2),
        (TaskStatus.FAILED, 2),
    ]
    final = queue.get(task.id)
    assert final.final_error == "boom"
    assert final.last_error == "boom"
    assert queue.dequeue_next() is None


def test_retry_waits_for_backoff(queue: TaskQueue, queue_clock: FakeClock) -> None:
    task = queue.enqueue(chat_task("hello"))
    queue.dequeue_next()
    retried = queue.fail(task.id, "timeout")

    assert retried.scheduled_time == (queue_clock.now + timedelta(seconds=30)).isoformat()
    assert queue.dequeue_next() is None
    queue_clock.advance(seconds=30)
    assert queue.dequeue_next() is not None


def test_exponential_backoff_doubles(tmp_path: Path, queue_clock: FakeClock) -> None:
    queue = TaskQueue(
        tmp_path / "tasks.json",
        retry_backoff_seconds=10,
        retry_exponential=True,
        clock=queue_clock,
    )
    task = queue.enqueue(chat_task("hello"))
    started = queue_clock.now

    queue.dequeue_next()
    first = queue.fail(task.id, "x")
    queue_clock.advance(seconds=10)
    queue.dequeue_next()
    second = queue.fail(task.id, "x")

    assert first.scheduled_time == (started + timedelta(seconds=10)).isoformat()
    assert second.scheduled_time == (queue_clock.now + timedelta(seconds=20)).isoformat()


def test_claim_is_exclusive(queue: TaskQueue) -> None:
    task = queue.enqueue(chat_task("hello"))
    queue.claim(task.id)

    with pytest.raises(ConcurrencyError):
        queue.claim(task.id)


def test_enqueue_rejects_duplicate_id(queue: TaskQueue) -> None:
    task = queue.enqueue(chat_task("hello"))
    with pytest.raises(ConcurrencyError):
        queue.enqueue(task)


def test_cancel_running_task_requests_generation_stop(
    tmp_path: Path, queue_clock: FakeClock
) -> None:
    on_cancel = Mock()
    queue = TaskQueue(tmp_path / "tasks.json", clock=queue_clock, on_cancel_running=on_cancel)
    task = queue.enqueue(chat_task("long answer"))
    queue.dequeue_next()

    cancelled = queue.cancel(task.id)

    assert cancelled.status == TaskStatus.CANCELLED
    on_cancel.assert_called_once()
    # A result that arrives after cancellation is dropped.
    assert queue.complete(task.id, "late").status == TaskStatus.CANCELLED
    assert queue.fail(task.id, "late").status == TaskStatus.CANCELLED
    assert queue.get(task.id).result is None


def test_cancel_pending_task_does_not_touch_generation(
    tmp_path: Path, queue_clock: FakeClock
) -> None:
    on_cancel = Mock()
    queue = TaskQueue(tmp_path / "tasks.json", clock=queue_clock, on_cancel_running=on_cancel)
    task = queue.enqueue(chat_task("hello"))

    queue.cancel(task.id)

    on_cancel.assert_not_called()
    assert queue.dequeue_next() is None


def test_cancel_terminal_task_is_rejected(queue: TaskQueue) -> None:
    task = queue.enqueue(chat_task("hello"))
    queue.dequeue_next()
    queue.complete(task.id, "done")

    with pytest.raises(IllegalTransitionError):
        queue.cancel(task.id)
    assert queue.get(task.id).status == TaskStatus.COMPLETED


def test_get_unknown_task_raises(queue: TaskQueue) -> None:
    with pytest.raises(NotFoundError):
        queue.get("missing")


def test_recover_interrupted_sends_running_tasks_through_failure(queue: TaskQueue) -> None:
    task = queue.enqueue(chat_task("hello"))
    queue.dequeue_next()

    recovered = queue.recover_interrupted()

    assert [t.id for t in recovered] == [task.id]
    assert queue.get(task.id).status == TaskStatus.RETRY
    assert queue.get(task.id).last_error == INTERRUPTED


def test_clear_completed_removes_finished_tasks(queue: TaskQueue) -> None:
    done = queue.enqueue(chat_task("a"))
    failed = queue.enqueue(BackgroundTask(type=TaskType.CHAT_GENERATION, prompt="b", max_retries=0))
    waiting = queue.enqueue(chat_task("c", priority=LOW))

    queue.claim(done.id)
    queue.complete(done.id, "ok")
    queue.claim(failed.id)
    queue.fail(failed.id, "nope")

    assert queue.clear_completed() == 2
    assert [t.id for t in queue.list()] == [waiting.id]


def test_factory_priorities() -> None:
    assert chat_task("x").priority == NORMAL
    assert analysis_task("x", ["a.png"]).priority == HIGH
    assert scheduled_task("x", datetime(2026, 1, 1, tzinfo=UTC)).priority == LOW
    assert URGENT < HIGH < NORMAL < LOW

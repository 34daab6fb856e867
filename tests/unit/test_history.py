"""Unit tests for execution history records and retention."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from local_workflow_engine.engine.errors import IllegalTransitionError, NotFoundError
from local_workflow_engine.engine.storage.history import ExecutionHistoryStore, StepLog
from local_workflow_engine.engine.workflow.state_machine import RunStatus


def _finished(store: ExecutionHistoryStore, workflow_id: str) -> str:
    record = store.create(
        workflow_id=workflow_id, workflow_name="wf", trigger_user_id="alice", trigger_type="manual"
    )
    store.set_status(record.id, RunStatus.RUNNING)
    store.set_status(record.id, RunStatus.SUCCEEDED, message="done")
    return record.id


def test_status_changes_follow_the_state_table(tmp_path: Path) -> None:
    store = ExecutionHistoryStore(tmp_path / "execution_history.json")
    record = store.create(
        workflow_id="wf-1", workflow_name="wf", trigger_user_id="alice", trigger_type="manual"
    )

    with pytest.raises(IllegalTransitionError):
        store.set_status(record.id, RunStatus.SUCCEEDED)

    store.set_status(record.id, RunStatus.RUNNING)
    store.append_step(record.id, StepLog(index=0, action_type="log", ok=True, message="Logged"))
    done = store.set_status(record.id, RunStatus.SUCCEEDED, message="ok", variables={"a": "1"})

    assert done.finished_at is not None
    assert done.variables == {"a": "1"}
    assert [s.action_type for s in store.get(record.id).steps] == ["log"]

    with pytest.raises(IllegalTransitionError):
        store.set_status(record.id, RunStatus.RUNNING)


def test_get_unknown_execution_raises(tmp_path: Path) -> None:
    store = ExecutionHistoryStore(tmp_path / "execution_history.json")
    with pytest.raises(NotFoundError):
        store.get("nope")


def test_purge_keeps_newest_per_workflow(tmp_path: Path) -> None:
    store = ExecutionHistoryStore(tmp_path / "execution_history.json")
    for _ in range(4):
        _finished(store, "wf-1")
    _finished(store, "wf-2")

    removed = store.purge(older_than_days=30, max_per_workflow=2)

    assert removed == 2
    assert len(store.for_workflow("wf-1")) == 2
    assert len(store.for_workflow("wf-2")) == 1


def test_purge_drops_old_records_but_never_suspended_runs(tmp_path: Path) -> None:
    store = ExecutionHistoryStore(tmp_path / "execution_history.json")
    old_done = _finished(store, "wf-1")
    suspended = store.create(
        workflow_id="wf-1", workflow_name="wf", trigger_user_id="alice", trigger_type="manual"
    )
    store.set_status(suspended.id, RunStatus.RUNNING)
    store.set_status(suspended.id, RunStatus.DELAYED)

    long_ago = (datetime.now(tz=UTC) - timedelta(days=90)).isoformat()
    with store.transaction() as records:
        records[:] = [r.model_copy(update={"started_at": long_ago}) for r in records]

    assert store.purge(older_than_days=30, max_per_workflow=50) == 1
    remaining = [r.id for r in store.list()]
    assert old_done not in remaining
    assert suspended.id in remaining

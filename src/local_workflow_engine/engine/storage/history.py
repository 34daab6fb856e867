"""Execution records: one per workflow run, steps appended as the run progresses."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from pydantic import Field

from local_workflow_engine.engine.errors import NotFoundError
from local_workflow_engine.engine.storage.json_store import (
    JsonListStore,
    parse_iso,
    utc_iso_now,
    utc_now,
)
from local_workflow_engine.engine.workflow.models import CamelModel
from local_workflow_engine.engine.workflow.state_machine import (
    TERMINAL_RUN_STATUSES,
    RunStatus,
    transition,
)

logger = logging.getLogger(__name__)


class StepLog(CamelModel):
    index: int
    action_type: str
    ok: bool
    message: str
    at: str = Field(default_factory=utc_iso_now)
    details: dict[str, object] = Field(default_factory=dict)


class ExecutionRecord(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    workflow_name: str = ""
    trigger_user_id: str
    trigger_type: str = ""
    status: RunStatus = RunStatus.PENDING
    message: str = ""
    steps: list[StepLog] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    started_at: str = Field(default_factory=utc_iso_now)
    finished_at: str | None = None


class ExecutionHistoryStore(JsonListStore[ExecutionRecord]):
    record_type = ExecutionRecord

    def create(
        self,
        *,
        workflow_id: str,
        workflow_name: str,
        trigger_user_id: str,
        trigger_type: str,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            trigger_user_id=trigger_user_id,
            trigger_type=trigger_type,
        )
        with self.transaction() as records:
            records.append(record)
        return record

    def get(self, execution_id: str) -> ExecutionRecord:
        record = self.find(lambda r: r.id == execution_id)
        if record is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return record

    def _update(self, execution_id: str, **updates: object) -> ExecutionRecord:
        with self.transaction() as records:
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                merged = record.model_copy(update=updates)
                records[idx] = merged
                return merged
        raise NotFoundError(f"Execution not found: {execution_id}")

    def append_step(self, execution_id: str, step: StepLog) -> ExecutionRecord:
        with self.transaction() as records:
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                merged = record.model_copy(update={"steps": [*record.steps, step]})
                records[idx] = merged
                return merged
        raise NotFoundError(f"Execution not found: {execution_id}")

    def set_status(
        self,
        execution_id: str,
        to: RunStatus,
        *,
        message: str | None = None,
        variables: dict[str, str] | None = None,
    ) -> ExecutionRecord:
        with self.transaction() as records:
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                updates: dict[str, object] = {
                    "status": transition(current=record.status, to=to)
                }
                if message is not None:
                    updates["message"] = message
                if variables is not None:
                    updates["variables"] = dict(variables)
                if to in TERMINAL_RUN_STATUSES:
                    updates["finished_at"] = utc_iso_now()
                merged = record.model_copy(update=updates)
                records[idx] = merged
                return merged
        raise NotFoundError(f"Execution not found: {execution_id}")

    def for_workflow(self, workflow_id: str, *, limit: int = 50) -> list[ExecutionRecord]:
        """Newest first."""

        records = [r for r in self.list() if r.workflow_id == workflow_id]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records[:limit]

    def recent(self, *, limit: int = 100) -> list[ExecutionRecord]:
        records = self.list()
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records[:limit]

    def purge(self, *, older_than_days: int, max_per_workflow: int) -> int:
        """Apply age and per-workflow count retention; suspended runs are never purged."""

        cutoff = utc_now() - timedelta(days=older_than_days)
        with self.transaction() as records:
            ordered = sorted(records, key=lambda r: r.started_at, reverse=True)
            kept: list[ExecutionRecord] = []
            per_workflow: dict[str, int] = {}
            for record in ordered:
                active = record.status not in TERMINAL_RUN_STATUSES
                count = per_workflow.get(record.workflow_id, 0)
                too_old = parse_iso(record.started_at) < cutoff
                if active or (not too_old and count < max_per_workflow):
                    kept.append(record)
                    per_workflow[record.workflow_id] = count + 1
            removed = len(records) - len(kept)
            records[:] = kept
        if removed:
            logger.info("Purged execution records", extra={"removed": removed})
        return removed

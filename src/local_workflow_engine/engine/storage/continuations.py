"""Persisted suspension points of pipeline runs.

A run suspended by ``delay`` leaves a :class:`RunContinuation`; a run halted by
``require_approval`` leaves a :class:`PendingApproval`. Both carry the variable
context and the index of the next action, so the run resumes after a restart,
and a digest of the workflow's actions so an edited workflow is not resumed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum

from pydantic import Field

from local_workflow_engine.engine.errors import ConcurrencyError, NotFoundError
from local_workflow_engine.engine.storage.json_store import JsonListStore, parse_iso, utc_iso_now
from local_workflow_engine.engine.workflow.models import Action, CamelModel

logger = logging.getLogger(__name__)


class RunContinuation(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    execution_id: str
    workflow_id: str
    trigger_user_id: str
    resume_index: int
    variables: dict[str, str] = Field(default_factory=dict)
    resume_at: str
    # Digest of the workflow's actions when the run suspended; empty for older records.
    actions_digest: str = ""
    created_at: str = Field(default_factory=utc_iso_now)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class PendingApproval(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    execution_id: str
    workflow_id: str
    trigger_user_id: str
    approver_user_id: str
    pending_action: Action
    resume_index: int
    variables: dict[str, str] = Field(default_factory=dict)
    message: str = ""
    deadline: str
    actions_digest: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: str = Field(default_factory=utc_iso_now)
    decided_at: str | None = None


class ContinuationStore(JsonListStore[RunContinuation]):
    record_type = RunContinuation

    def add(self, continuation: RunContinuation) -> RunContinuation:
        with self.transaction() as records:
            records.append(continuation)
        return continuation

    def take_due(self, now: datetime) -> list[RunContinuation]:
        """Remove and return every continuation whose resume time has passed.

        Removal happens under the store lock, so a continuation is handed to
        exactly one caller.
        """

        with self.transaction() as records:
            due = [c for c in records if parse_iso(c.resume_at) <= now]
            due_ids = {c.id for c in due}
            records[:] = [c for c in records if c.id not in due_ids]
        due.sort(key=lambda c: c.resume_at)
        return due


class ApprovalStore(JsonListStore[PendingApproval]):
    record_type = PendingApproval

    def add(self, approval: PendingApproval) -> PendingApproval:
        with self.transaction() as records:
            records.append(approval)
        return approval

    def get(self, approval_id: str) -> PendingApproval:
        record = self.find(lambda r: r.id == approval_id)
        if record is None:
            raise NotFoundError(f"Approval not found: {approval_id}")
        return record

    def pending(self, *, approver_user_id: str | None = None) -> list[PendingApproval]:
        return [
            a
            for a in self.list()
            if a.status == ApprovalStatus.PENDING
            and (approver_user_id is None or a.approver_user_id == approver_user_id)
        ]

    def decide(self, approval_id: str, status: ApprovalStatus) -> PendingApproval:
        """Move a pending approval to a decided state exactly once.

        Raises:
            NotFoundError: If the approval does not exist.
            ConcurrencyError: If it has already been decided.
        """

        with self.transaction() as records:
            for idx, record in enumerate(records):
                if record.id != approval_id:
                    continue
                if record.status != ApprovalStatus.PENDING:
                    raise ConcurrencyError(
                        f"Approval {approval_id} already {record.status.value}"
                    )
                merged = record.model_copy(update={"status": status, "decided_at": utc_iso_now()})
                records[idx] = merged
                return merged
        raise NotFoundError(f"Approval not found: {approval_id}")

    def overdue(self, now: datetime) -> list[PendingApproval]:
        return [
            a
            for a in self.list()
            if a.status == ApprovalStatus.PENDING and parse_iso(a.deadline) <= now
        ]

    def purge_decided(self) -> int:
        return self.remove_where(lambda r: r.status != ApprovalStatus.PENDING)

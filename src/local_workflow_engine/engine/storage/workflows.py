"""Persisted workflow definitions.

Structural validation happens before a workflow reaches this store; the store
itself enforces only what needs a view across all workflows (geofence id
uniqueness) and that a workflow id never changes once assigned.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from local_workflow_engine.engine.errors import (
    NotFoundError,
    ValidationIssue,
    WorkflowValidationError,
)
from local_workflow_engine.engine.storage.json_store import JsonListStore, utc_iso_now
from local_workflow_engine.engine.workflow.models import Workflow, WorkflowType

logger = logging.getLogger(__name__)


class WorkflowStore(JsonListStore[Workflow]):
    record_type = Workflow

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` after every change to the stored workflow set."""

        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            try:
                callback()
            except Exception:
                logger.exception("Workflow change listener failed")

    def get(self, workflow_id: str) -> Workflow:
        workflow = self.find(lambda w: w.id == workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def save(self, workflow: Workflow) -> Workflow:
        """Insert or replace by id; ``created_at`` and ``created_by`` survive updates.

        Raises:
            WorkflowValidationError: If a geofence id is already owned by another workflow.
        """

        with self.transaction() as records:
            claimed = {
                t.geofence_id: w.id
                for w in records
                if w.id != workflow.id
                for t in w.geofence_triggers()
            }
            clashes = [
                t.geofence_id for t in workflow.geofence_triggers() if t.geofence_id in claimed
            ]
            if clashes:
                raise WorkflowValidationError(
                    "Geofence id already in use",
                    [
                        ValidationIssue(
                            code="DUPLICATE_GEOFENCE_ID",
                            message=f"Geofence id {g!r} is used by workflow {claimed[g]}",
                            field="triggers",
                        )
                        for g in clashes
                    ],
                )

            saved = workflow.model_copy(update={"updated_at": utc_iso_now()})
            for idx, existing in enumerate(records):
                if existing.id == workflow.id:
                    saved = saved.model_copy(
                        update={
                            "created_at": existing.created_at,
                            "created_by": existing.created_by,
                        }
                    )
                    records[idx] = saved
                    break
            else:
                records.append(saved)

        logger.info("Workflow saved", extra={"workflow_id": saved.id, "workflow_name": saved.name})
        self._notify()
        return saved

    def delete(self, workflow_id: str) -> None:
        if self.remove_where(lambda w: w.id == workflow_id) == 0:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        logger.info("Workflow deleted", extra={"workflow_id": workflow_id})
        self._notify()

    def set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        return self.save(self.get(workflow_id).model_copy(update={"is_enabled": enabled}))

    def share(self, workflow_id: str, user_ids: list[str]) -> Workflow:
        workflow = self.get(workflow_id)
        shared = list(workflow.shared_with)
        shared.extend(u for u in user_ids if u not in shared and u != workflow.created_by)
        return self.save(workflow.model_copy(update={"shared_with": shared}))

    def unshare(self, workflow_id: str, user_ids: list[str]) -> Workflow:
        workflow = self.get(workflow_id)
        shared = [u for u in workflow.shared_with if u not in user_ids]
        return self.save(workflow.model_copy(update={"shared_with": shared}))

    def enabled(self) -> list[Workflow]:
        return [w for w in self.list() if w.is_enabled]

    def owned_by(self, user_id: str) -> list[Workflow]:
        return [w for w in self.list() if w.created_by == user_id]

    def shared_with_user(self, user_id: str) -> list[Workflow]:
        return [w for w in self.list() if user_id in w.shared_with]

    def visible_to(self, user_id: str) -> list[Workflow]:
        return [
            w
            for w in self.list()
            if w.created_by == user_id or user_id in w.shared_with or w.is_public
        ]

    def public(self) -> list[Workflow]:
        return [w for w in self.list() if w.is_public]

    def of_type(self, workflow_type: WorkflowType) -> list[Workflow]:
        return [w for w in self.list() if w.workflow_type == workflow_type]

    def find_by_name(self, user_id: str, name: str) -> Workflow | None:
        wanted = name.strip().lower()
        return self.find(lambda w: w.created_by == user_id and w.name.strip().lower() == wanted)

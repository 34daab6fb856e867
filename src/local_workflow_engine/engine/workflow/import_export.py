"""Portable ``.workflow.json`` documents for sharing workflows between users.

Exported workflows carry their definition and provenance metadata but no
identity: an import always creates a fresh, private workflow owned by the
importing user.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field

from pydantic import Field, ValidationError

from local_workflow_engine.engine.errors import (
    AutomationError,
    NotFoundError,
    WorkflowValidationError,
)
from local_workflow_engine.engine.storage.json_store import utc_iso_now
from local_workflow_engine.engine.storage.workflows import WorkflowStore
from local_workflow_engine.engine.workflow.models import (
    Action,
    CamelModel,
    Permission,
    Trigger,
    Workflow,
    WorkflowPermissions,
    WorkflowType,
)
from local_workflow_engine.engine.workflow.permissions import has_permission
from local_workflow_engine.engine.workflow.validation import ensure_valid

logger = logging.getLogger(__name__)

WORKFLOW_FILE_VERSION = "1.0"
WORKFLOW_FILE_EXTENSION = ".workflow.json"


class ExportMetadata(CamelModel):
    original_id: str
    original_created_by: str
    original_created_at: str
    exported_at: str = Field(default_factory=utc_iso_now)


class ExportedWorkflow(CamelModel):
    name: str
    description: str = ""
    workflow_type: WorkflowType = WorkflowType.PERSONAL
    triggers: list[Trigger] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    is_public: bool = False
    permissions: WorkflowPermissions = Field(default_factory=WorkflowPermissions)
    metadata: ExportMetadata


class WorkflowExportDocument(CamelModel):
    version: str = WORKFLOW_FILE_VERSION
    exported_at: str = Field(default_factory=utc_iso_now)
    exported_by: str
    workflows: list[ExportedWorkflow] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ImportResult:
    success: bool
    imported_count: int
    skipped_count: int
    errors: list[str] = field(default_factory=list)
    imported_workflows: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExportSummary:
    total_workflows: int
    total_triggers: int
    total_actions: int
    workflow_types: dict[str, int]
    trigger_types: dict[str, int]
    action_types: dict[str, int]


def to_exported(workflow: Workflow) -> ExportedWorkflow:
    return ExportedWorkflow(
        name=workflow.name,
        description=workflow.description,
        workflow_type=workflow.workflow_type,
        triggers=list(workflow.triggers),
        actions=list(workflow.actions),
        variables=dict(workflow.variables),
        is_public=workflow.is_public,
        permissions=workflow.permissions,
        metadata=ExportMetadata(
            original_id=workflow.id,
            original_created_by=workflow.created_by,
            original_created_at=workflow.created_at,
        ),
    )


def build_export(
    store: WorkflowStore, workflow_ids: list[str], *, user_id: str
) -> WorkflowExportDocument:
    """Collect the requested workflows ``user_id`` may view.

    Unknown ids and workflows the user cannot see are skipped with a warning.
    """

    exported: list[ExportedWorkflow] = []
    for workflow_id in workflow_ids:
        try:
            workflow = store.get(workflow_id)
        except NotFoundError:
            workflow = None
        if workflow is None or not has_permission(workflow, user_id, Permission.VIEW):
            logger.warning(
                "Workflow not found or not exportable",
                extra={"workflow_id": workflow_id, "user_id": user_id},
            )
            continue
        exported.append(to_exported(workflow))
    return WorkflowExportDocument(exported_by=user_id, workflows=exported)


def export_to_string(document: WorkflowExportDocument | ExportedWorkflow) -> str:
    payload = document.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, indent=2, ensure_ascii=False)


def parse_document(text: str) -> WorkflowExportDocument:
    """Parse an export document; a bare exported workflow is wrapped into one.

    Raises:
        WorkflowValidationError: If the text is not a readable workflow file.
    """

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise WorkflowValidationError("Invalid workflow file format") from e
    try:
        if isinstance(raw, dict) and "workflows" not in raw and "metadata" in raw:
            single = ExportedWorkflow.model_validate(raw)
            return WorkflowExportDocument(
                exported_by=single.metadata.original_created_by, workflows=[single]
            )
        document = WorkflowExportDocument.model_validate(raw)
    except ValidationError as e:
        raise WorkflowValidationError(
            f"Invalid workflow file format: {e.error_count()} errors"
        ) from e

    if document.version != WORKFLOW_FILE_VERSION:
        logger.warning(
            "Import file version mismatch",
            extra={"version": document.version, "expected": WORKFLOW_FILE_VERSION},
        )
    return document


class _NameTaken(Exception):
    pass


class WorkflowImporter:
    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    def import_document(
        self, document: WorkflowExportDocument, *, user_id: str, overwrite_existing: bool = False
    ) -> ImportResult:
        imported: list[str] = []
        errors: list[str] = []
        skipped = 0

        for idx, entry in enumerate(document.workflows, start=1):
            try:
                imported.append(self._import_one(entry, user_id, overwrite_existing).id)
            except _NameTaken:
                skipped += 1
            except AutomationError as e:
                errors.append(f"Workflow {idx} ({entry.name}): {e.message}")
                logger.warning(
                    "Failed to import workflow",
                    extra={"workflow_name": entry.name, "error": e.message},
                )

        logger.info(
            "Workflow import finished",
            extra={"imported": len(imported), "skipped": skipped, "errors": len(errors)},
        )
        return ImportResult(
            success=not errors,
            imported_count=len(imported),
            skipped_count=skipped,
            errors=errors,
            imported_workflows=imported,
        )

    def _import_one(
        self, entry: ExportedWorkflow, user_id: str, overwrite_existing: bool
    ) -> Workflow:
        name = entry.name
        if self.store.find_by_name(user_id, name) is not None:
            if not overwrite_existing:
                raise _NameTaken(name)
            name = f"{name} (Imported)"

        description = entry.description.rstrip()
        provenance = f"Imported from: {entry.metadata.original_created_by}"
        workflow = Workflow(
            id=f"imported_{uuid.uuid4().hex}",
            name=name,
            description=f"{description}\n\n{provenance}" if description else provenance,
            created_by=user_id,
            workflow_type=entry.workflow_type,
            triggers=list(entry.triggers),
            actions=list(entry.actions),
            variables=dict(entry.variables),
            is_public=False,
            permissions=WorkflowPermissions(),
            shared_with=[],
        )
        ensure_valid(workflow)
        return self.store.save(workflow)


def export_summary(workflows: list[Workflow]) -> ExportSummary:
    return ExportSummary(
        total_workflows=len(workflows),
        total_triggers=sum(len(w.triggers) for w in workflows),
        total_actions=sum(len(w.actions) for w in workflows),
        workflow_types=dict(Counter(w.workflow_type.value for w in workflows)),
        trigger_types=dict(Counter(t.type for w in workflows for t in w.triggers)),
        action_types=dict(Counter(a.type for w in workflows for a in w.actions)),
    )

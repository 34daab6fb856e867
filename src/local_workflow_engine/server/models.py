"""Pydantic models for the REST server.

Stored records (workflows, executions, approvals, tasks) are returned as-is;
the models here cover request bodies and the engine's dataclass results.
"""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import Field

from local_workflow_engine.engine.errors import ValidationIssue
from local_workflow_engine.engine.service import SweepReport
from local_workflow_engine.engine.tasks.models import NORMAL, BackgroundTask, TaskType
from local_workflow_engine.engine.workflow.catalog import WorkflowTemplate
from local_workflow_engine.engine.workflow.import_export import ExportSummary, ImportResult
from local_workflow_engine.engine.workflow.models import (
    Action,
    CamelModel,
    Platform,
    Trigger,
    Workflow,
    WorkflowPermissions,
    WorkflowType,
)
from local_workflow_engine.engine.workflow.pipeline import RunOutcome


class WorkflowDraft(CamelModel):
    """Client-editable workflow fields; ownership and timestamps stay server-side."""

    id: str | None = None
    name: str
    description: str = ""
    workflow_type: WorkflowType = WorkflowType.PERSONAL
    triggers: list[Trigger] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    is_public: bool = False
    is_enabled: bool = True
    permissions: WorkflowPermissions = Field(default_factory=WorkflowPermissions)
    shared_with: list[str] = Field(default_factory=list)

    def to_workflow(self, *, user_id: str, workflow_id: str | None = None) -> Workflow:
        return Workflow(
            id=workflow_id or self.id or uuid.uuid4().hex,
            created_by=user_id,
            name=self.name,
            description=self.description,
            workflow_type=self.workflow_type,
            triggers=list(self.triggers),
            actions=list(self.actions),
            variables=dict(self.variables),
            is_public=self.is_public,
            is_enabled=self.is_enabled,
            permissions=self.permissions,
            shared_with=list(self.shared_with),
        )


class ApiValidationIssue(CamelModel):
    code: str
    message: str
    field: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_issue(cls, issue: ValidationIssue) -> ApiValidationIssue:
        return cls(
            code=issue.code, message=issue.message, field=issue.field, details=issue.details
        )


class SavedWorkflowResponse(CamelModel):
    workflow: Workflow
    warnings: list[ApiValidationIssue] = Field(default_factory=list)


class EnabledRequest(CamelModel):
    enabled: bool


class ShareRequest(CamelModel):
    user_ids: list[str]


class RunRequest(CamelModel):
    variables: dict[str, str] = Field(default_factory=dict)


class ApiRunOutcome(CamelModel):
    execution_id: str
    status: str
    ok: bool
    message: str
    variables: dict[str, str] = Field(default_factory=dict)
    approval_id: str | None = None
    continuation_id: str | None = None

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> ApiRunOutcome:
        return cls(
            execution_id=outcome.execution_id,
            status=outcome.status.value,
            ok=outcome.ok,
            message=outcome.message,
            variables=dict(outcome.variables),
            approval_id=outcome.approval_id,
            continuation_id=outcome.continuation_id,
        )


class TaskCreateRequest(CamelModel):
    type: TaskType = TaskType.CHAT_GENERATION
    prompt: str = Field(min_length=1)
    images: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    session_id: str | None = None
    priority: int = Field(default=NORMAL, ge=0, le=3)
    max_retries: int = Field(default=3, ge=0, le=10)
    scheduled_time: str | None = None

    def to_task(self) -> BackgroundTask:
        extra = {"scheduled_time": self.scheduled_time} if self.scheduled_time else {}
        return BackgroundTask(
            type=self.type,
            prompt=self.prompt,
            images=list(self.images),
            metadata=dict(self.metadata),
            session_id=self.session_id,
            priority=self.priority,
            max_retries=self.max_retries,
            **extra,
        )


class GeofenceTransitionRequest(CamelModel):
    geofence_id: str
    transition: str
    place_id: str | None = None


class GeofenceTransitionResponse(CamelModel):
    matched: int


class ImportRequest(CamelModel):
    document: dict[str, Any] | str
    overwrite_existing: bool = False


class ApiImportResult(CamelModel):
    success: bool
    imported_count: int
    skipped_count: int
    errors: list[str] = Field(default_factory=list)
    imported_workflows: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ImportResult) -> ApiImportResult:
        return cls(
            success=result.success,
            imported_count=result.imported_count,
            skipped_count=result.skipped_count,
            errors=list(result.errors),
            imported_workflows=list(result.imported_workflows),
        )


class ExportRequest(CamelModel):
    workflow_ids: list[str] | None = None


class ApiExportSummary(CamelModel):
    total_workflows: int
    total_triggers: int
    total_actions: int
    workflow_types: dict[str, int]
    trigger_types: dict[str, int]
    action_types: dict[str, int]

    @classmethod
    def from_summary(cls, summary: ExportSummary) -> ApiExportSummary:
        return cls(
            total_workflows=summary.total_workflows,
            total_triggers=summary.total_triggers,
            total_actions=summary.total_actions,
            workflow_types=dict(summary.workflow_types),
            trigger_types=dict(summary.trigger_types),
            action_types=dict(summary.action_types),
        )


class LoadModelRequest(CamelModel):
    path: str = Field(min_length=1)


class ApiSweepReport(CamelModel):
    processed_events: int
    executions: int
    approvals: int
    tasks: int

    @classmethod
    def from_report(cls, report: SweepReport) -> ApiSweepReport:
        return cls(
            processed_events=report.processed_events,
            executions=report.executions,
            approvals=report.approvals,
            tasks=report.tasks,
        )


class ApiWorkflowTemplate(CamelModel):
    id: str
    name: str
    description: str
    category: str
    platforms: list[Platform]
    tags: list[str]
    required_users: int
    parameters: dict[str, str | None]

    @classmethod
    def from_template(cls, template: WorkflowTemplate) -> ApiWorkflowTemplate:
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            category=template.category,
            platforms=list(template.platforms),
            tags=list(template.tags),
            required_users=template.required_users,
            parameters=dict(template.parameters),
        )


class TemplateInstanceRequest(CamelModel):
    target_user_ids: list[str] = Field(default_factory=list)
    params: dict[str, str] = Field(default_factory=dict)

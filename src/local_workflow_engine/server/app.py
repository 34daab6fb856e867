"""FastAPI app factory.

Endpoints are intentionally thin wrappers over :class:`AutomationService`.
The acting user is taken from the ``X-User-Id`` header; authentication is
left to whatever sits in front of this local server.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any, TypeVar

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from local_workflow_engine import __version__
from local_workflow_engine.engine.errors import WorkflowValidationError
from local_workflow_engine.engine.results import Outcome
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.storage.continuations import PendingApproval
from local_workflow_engine.engine.storage.history import ExecutionRecord
from local_workflow_engine.engine.tasks.models import BackgroundTask, TaskStatus
from local_workflow_engine.engine.workflow.models import Workflow
from local_workflow_engine.server.config import ServerSettings
from local_workflow_engine.server.models import (
    ApiExportSummary,
    ApiImportResult,
    ApiRunOutcome,
    ApiSweepReport,
    ApiValidationIssue,
    ApiWorkflowTemplate,
    EnabledRequest,
    ExportRequest,
    GeofenceTransitionRequest,
    GeofenceTransitionResponse,
    ImportRequest,
    LoadModelRequest,
    RunRequest,
    SavedWorkflowResponse,
    ShareRequest,
    TaskCreateRequest,
    TemplateInstanceRequest,
    WorkflowDraft,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

UserId = Annotated[str, Header(alias="X-User-Id", min_length=1)]

STATUS_BY_KIND: dict[str, int] = {
    "validation": 422,
    "not_found": 404,
    "permission_denied": 403,
    "concurrency": 409,
    "external_service": 502,
    "resource_exhausted": 507,
}


def _unwrap(outcome: Outcome[T]) -> T:
    """Return the outcome's value or raise the matching HTTP error."""

    if outcome.ok:
        return outcome.value  # type: ignore[return-value]

    kind = outcome.error_kind or "error"
    detail: dict[str, Any] = {"kind": kind, "message": outcome.message}
    if isinstance(outcome.error, WorkflowValidationError) and outcome.error.issues:
        detail["issues"] = [
            ApiValidationIssue.from_issue(i).model_dump(by_alias=True)
            for i in outcome.error.issues
        ]
    raise HTTPException(status_code=STATUS_BY_KIND.get(kind, 400), detail=detail)


def _service(request: Request) -> AutomationService:
    service = getattr(request.app.state, "service", None)
    if not isinstance(service, AutomationService):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Automation service not configured")
    return service


def create_app(
    service: AutomationService | None = None, *, settings: ServerSettings | None = None
) -> FastAPI:
    """Build the REST app.

    When ``service`` is omitted it is built from the environment, and its
    background loops run for the lifetime of the app (unless disabled via
    ``WORKFLOW_SERVER_RUN_LOOPS``). A caller-supplied service is left alone.
    """

    settings = settings or ServerSettings()
    owns_service = service is None
    if service is None:
        service = AutomationService.from_settings(settings)
    manage_loops = owns_service and settings.run_engine_loops

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_loops:
            app.state.service.start()
        try:
            yield
        finally:
            if manage_loops:
                app.state.service.stop()

    app = FastAPI(
        title="Local Workflow Engine",
        version=__version__,
        description="REST API over the local-first workflow automation engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and the service for request handlers.
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/v1/health")
    def health(request: Request) -> dict[str, object]:
        svc = _service(request)
        return {
            "status": "ok",
            "version": __version__,
            "modelLoaded": svc.engine is not None and svc.engine.is_loaded,
        }

    # Workflows

    @app.get("/api/v1/workflows", response_model=list[Workflow])
    def list_workflows(request: Request, user_id: UserId) -> list[Workflow]:
        return _unwrap(_service(request).list_workflows(user_id=user_id))

    @app.post("/api/v1/workflows", response_model=SavedWorkflowResponse, status_code=201)
    def create_workflow(
        request: Request, draft: WorkflowDraft, user_id: UserId
    ) -> SavedWorkflowResponse:
        svc = _service(request)
        if draft.id is not None and svc.workflows.find(lambda w: w.id == draft.id):
            raise HTTPException(
                status_code=409,
                detail={"kind": "concurrency", "message": f"Workflow exists: {draft.id}"},
            )
        saved = _unwrap(svc.save_workflow(draft.to_workflow(user_id=user_id), user_id=user_id))
        return SavedWorkflowResponse(
            workflow=saved.workflow,
            warnings=[ApiValidationIssue.from_issue(w) for w in saved.validation.warnings],
        )

    @app.get("/api/v1/workflows/{workflow_id}", response_model=Workflow)
    def get_workflow(request: Request, workflow_id: str, user_id: UserId) -> Workflow:
        return _unwrap(_service(request).get_workflow(workflow_id, user_id=user_id))

    @app.put("/api/v1/workflows/{workflow_id}", response_model=SavedWorkflowResponse)
    def update_workflow(
        request: Request, workflow_id: str, draft: WorkflowDraft, user_id: UserId
    ) -> SavedWorkflowResponse:
        svc = _service(request)
        existing = _unwrap(svc.get_workflow(workflow_id, user_id=user_id))
        workflow = draft.to_workflow(user_id=existing.created_by, workflow_id=workflow_id)
        saved = _unwrap(svc.save_workflow(workflow, user_id=user_id))
        return SavedWorkflowResponse(
            workflow=saved.workflow,
            warnings=[ApiValidationIssue.from_issue(w) for w in saved.validation.warnings],
        )

    @app.delete("/api/v1/workflows/{workflow_id}", status_code=204)
    def delete_workflow(request: Request, workflow_id: str, user_id: UserId) -> None:
        _unwrap(_service(request).delete_workflow(workflow_id, user_id=user_id))

    @app.post("/api/v1/workflows/{workflow_id}/enabled", response_model=Workflow)
    def set_enabled(
        request: Request, workflow_id: str, req: EnabledRequest, user_id: UserId
    ) -> Workflow:
        svc = _service(request)
        return _unwrap(svc.set_workflow_enabled(workflow_id, req.enabled, user_id=user_id))

    @app.post("/api/v1/workflows/{workflow_id}/share", response_model=Workflow)
    def share_workflow(
        request: Request, workflow_id: str, req: ShareRequest, user_id: UserId
    ) -> Workflow:
        svc = _service(request)
        return _unwrap(svc.share_workflow(workflow_id, req.user_ids, user_id=user_id))

    @app.post("/api/v1/workflows/{workflow_id}/run", response_model=ApiRunOutcome)
    def run_workflow(
        request: Request, workflow_id: str, req: RunRequest, user_id: UserId
    ) -> ApiRunOutcome:
        svc = _service(request)
        ran = _unwrap(svc.run_workflow(workflow_id, user_id=user_id, variables=req.variables))
        return ApiRunOutcome.from_outcome(ran)

    @app.get(
        "/api/v1/workflows/{workflow_id}/executions", response_model=list[ExecutionRecord]
    )
    def list_executions(
        request: Request, workflow_id: str, user_id: UserId, limit: int = 50
    ) -> list[ExecutionRecord]:
        svc = _service(request)
        return _unwrap(svc.list_executions(workflow_id, user_id=user_id, limit=limit))

    # Templates

    @app.get("/api/v1/templates", response_model=list[ApiWorkflowTemplate])
    def list_templates(request: Request, category: str | None = None) -> list[ApiWorkflowTemplate]:
        templates = _unwrap(_service(request).list_templates(category=category))
        return [ApiWorkflowTemplate.from_template(t) for t in templates]

    @app.post(
        "/api/v1/templates/{template_id}/workflows",
        response_model=SavedWorkflowResponse,
        status_code=201,
    )
    def create_from_template(
        request: Request, template_id: str, req: TemplateInstanceRequest, user_id: UserId
    ) -> SavedWorkflowResponse:
        saved = _unwrap(
            _service(request).create_from_template(
                template_id,
                user_id=user_id,
                target_user_ids=req.target_user_ids,
                params=req.params,
            )
        )
        return SavedWorkflowResponse(
            workflow=saved.workflow,
            warnings=[ApiValidationIssue.from_issue(w) for w in saved.validation.warnings],
        )

    # Approvals

    @app.get("/api/v1/approvals", response_model=list[PendingApproval])
    def list_approvals(request: Request, user_id: UserId) -> list[PendingApproval]:
        return _unwrap(_service(request).list_approvals(user_id=user_id))

    @app.post("/api/v1/approvals/{approval_id}/approve", response_model=ApiRunOutcome)
    def approve(request: Request, approval_id: str, user_id: UserId) -> ApiRunOutcome:
        decided = _unwrap(_service(request).approve(approval_id, user_id=user_id))
        return ApiRunOutcome.from_outcome(decided)

    @app.post("/api/v1/approvals/{approval_id}/deny", response_model=ApiRunOutcome)
    def deny(request: Request, approval_id: str, user_id: UserId) -> ApiRunOutcome:
        decided = _unwrap(_service(request).deny(approval_id, user_id=user_id))
        return ApiRunOutcome.from_outcome(decided)

    # Background tasks

    @app.get("/api/v1/tasks", response_model=list[BackgroundTask])
    def list_tasks(request: Request, status: TaskStatus | None = None) -> list[BackgroundTask]:
        return _unwrap(_service(request).list_tasks(status=status))

    @app.post("/api/v1/tasks", response_model=BackgroundTask, status_code=201)
    def create_task(request: Request, req: TaskCreateRequest) -> BackgroundTask:
        return _unwrap(_service(request).enqueue_task(req.to_task()))

    @app.get("/api/v1/tasks/{task_id}", response_model=BackgroundTask)
    def get_task(request: Request, task_id: str) -> BackgroundTask:
        return _unwrap(_service(request).get_task(task_id))

    @app.post("/api/v1/tasks/{task_id}/cancel", response_model=BackgroundTask)
    def cancel_task(request: Request, task_id: str) -> BackgroundTask:
        return _unwrap(_service(request).cancel_task(task_id))

    # Triggers pushed by the platform

    @app.post("/api/v1/geofence/transitions", response_model=GeofenceTransitionResponse)
    def geofence_transition(
        request: Request, req: GeofenceTransitionRequest
    ) -> GeofenceTransitionResponse:
        matched = _unwrap(
            _service(request).handle_geofence_transition(
                req.geofence_id, req.transition, place_id=req.place_id
            )
        )
        return GeofenceTransitionResponse(matched=matched)

    # Import / export

    @app.post("/api/v1/export")
    def export_workflows(
        request: Request, req: ExportRequest, user_id: UserId
    ) -> dict[str, Any]:
        document = _unwrap(_service(request).export_workflows(req.workflow_ids, user_id=user_id))
        return document.model_dump(mode="json", by_alias=True)

    @app.post("/api/v1/export/summary", response_model=ApiExportSummary)
    def export_summary(request: Request, req: ExportRequest, user_id: UserId) -> ApiExportSummary:
        summary = _unwrap(_service(request).export_summary(req.workflow_ids, user_id=user_id))
        return ApiExportSummary.from_summary(summary)

    @app.post("/api/v1/import", response_model=ApiImportResult)
    def import_workflows(request: Request, req: ImportRequest, user_id: UserId) -> ApiImportResult:
        text = req.document if isinstance(req.document, str) else json.dumps(req.document)
        result = _unwrap(
            _service(request).import_workflows(
                text, user_id=user_id, overwrite_existing=req.overwrite_existing
            )
        )
        return ApiImportResult.from_result(result)

    # Maintenance

    @app.post("/api/v1/model/load")
    def load_model(request: Request, req: LoadModelRequest) -> dict[str, bool]:
        return {"loaded": _unwrap(_service(request).load_model(req.path))}

    @app.post("/api/v1/maintenance/sweep", response_model=ApiSweepReport)
    def sweep(request: Request) -> ApiSweepReport:
        return ApiSweepReport.from_report(_unwrap(_service(request).sweep()))

    logger.info("REST app created", extra={"manage_loops": manage_loops})
    return app

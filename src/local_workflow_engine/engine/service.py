"""Composition root and public facade of the workflow engine.

:class:`AutomationService` builds every store and component once and wires
them together. Its public methods are what the CLI and the REST server call;
each returns an :class:`~local_workflow_engine.engine.results.Outcome` and
never raises for an expected failure.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar

from local_workflow_engine.engine.config import EngineSettings
from local_workflow_engine.engine.errors import (
    AutomationError,
    ConcurrencyError,
    ExternalServiceError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    WorkflowValidationError,
)
from local_workflow_engine.engine.loops import PeriodicLoop
from local_workflow_engine.engine.results import Outcome
from local_workflow_engine.engine.storage.continuations import (
    ApprovalStatus,
    ApprovalStore,
    ContinuationStore,
    PendingApproval,
)
from local_workflow_engine.engine.storage.dedup import DedupStats, ProcessedEventStore
from local_workflow_engine.engine.storage.history import ExecutionHistoryStore, ExecutionRecord
from local_workflow_engine.engine.storage.json_store import utc_now
from local_workflow_engine.engine.storage.markers import MarkerStore
from local_workflow_engine.engine.storage.users import UserStore, WorkflowUser
from local_workflow_engine.engine.storage.workflows import WorkflowStore
from local_workflow_engine.engine.tasks.consumer import SuspensionTicker, TaskConsumer
from local_workflow_engine.engine.tasks.models import BackgroundTask, TaskStatus
from local_workflow_engine.engine.tasks.queue import TaskQueue
from local_workflow_engine.engine.triggers.dispatcher import RunDispatcher
from local_workflow_engine.engine.triggers.evaluator import CycleReport, TriggerEvaluator
from local_workflow_engine.engine.triggers.geofence import GeofenceRegistrar
from local_workflow_engine.engine.workflow.actions import ActionExecutor
from local_workflow_engine.engine.workflow.ai import AIProcessor
from local_workflow_engine.engine.workflow.catalog import (
    WorkflowTemplate,
    create_from_template,
    list_templates,
)
from local_workflow_engine.engine.workflow.events import manual_event
from local_workflow_engine.engine.workflow.import_export import (
    ExportSummary,
    ImportResult,
    WorkflowExportDocument,
    WorkflowImporter,
    build_export,
    export_summary,
    parse_document,
)
from local_workflow_engine.engine.workflow.models import Permission, Workflow
from local_workflow_engine.engine.workflow.permissions import has_permission
from local_workflow_engine.engine.workflow.pipeline import ActionPipeline, RunOutcome
from local_workflow_engine.engine.workflow.validation import ValidationResult, ensure_valid
from local_workflow_engine.integrations.base import AdapterRegistry, GeofencePlatform
from local_workflow_engine.integrations.telegram import TelegramChatAdapter
from local_workflow_engine.llm.engine import InferenceEngine
from local_workflow_engine.llm.factory import EngineFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class SavedWorkflow:
    workflow: Workflow
    validation: ValidationResult


@dataclass(frozen=True, slots=True)
class SweepReport:
    processed_events: int
    executions: int
    approvals: int
    tasks: int


class AutomationService:
    def __init__(
        self,
        settings: EngineSettings,
        *,
        adapters: AdapterRegistry | None = None,
        engine: InferenceEngine | None = None,
        geofence_platform: GeofencePlatform | None = None,
        clock: Callable[[], datetime] = utc_now,
        inline_runs: bool = False,
    ) -> None:
        self.settings = settings
        self.adapters = adapters or AdapterRegistry()
        self.engine = engine
        self.clock = clock

        self.workflows = WorkflowStore(settings.workflows_file)
        self.users = UserStore(settings.users_file)
        self.dedup = ProcessedEventStore(settings.processed_events_file)
        self.history = ExecutionHistoryStore(settings.history_file)
        self.continuations = ContinuationStore(settings.continuations_file)
        self.approvals = ApprovalStore(settings.approvals_file)
        self.markers = MarkerStore(settings.markers_file)
        self.tasks = TaskQueue(
            settings.tasks_file,
            retry_backoff_seconds=settings.task_retry_backoff_seconds,
            retry_exponential=settings.task_retry_exponential,
            clock=clock,
            on_cancel_running=self._cancel_generation,
        )

        self.executor = ActionExecutor(
            adapters=self.adapters, users=self.users, ai=AIProcessor(engine)
        )
        self.pipeline = ActionPipeline(
            executor=self.executor,
            history=self.history,
            continuations=self.continuations,
            approvals=self.approvals,
            users=self.users,
            adapters=self.adapters,
            run_timeout_seconds=settings.run_timeout_seconds,
            clock=clock,
        )
        self.dispatcher = RunDispatcher(
            self.pipeline, max_workers=settings.max_concurrent_runs, inline=inline_runs
        )
        self.evaluator = TriggerEvaluator(
            workflows=self.workflows,
            dedup=self.dedup,
            markers=self.markers,
            adapters=self.adapters,
            dispatcher=self.dispatcher,
            users=self.users,
            tolerance_minutes=settings.schedule_tolerance_minutes,
            clock=clock,
            approval_handler=self._chat_approval,
        )
        self.registrar = GeofenceRegistrar(geofence_platform)
        self.workflows.add_listener(self.refresh_geofences)
        self.importer = WorkflowImporter(self.workflows)

        if engine is not None:
            self.consumer: TaskConsumer | None = TaskConsumer(self.tasks, engine, clock=clock)
        else:
            self.consumer = None
        self.ticker = SuspensionTicker(
            pipeline=self.pipeline,
            workflows=self.workflows,
            continuations=self.continuations,
            approvals=self.approvals,
            clock=clock,
        )

        self._next_sweep_at: datetime | None = None
        self._loops = [
            PeriodicLoop(
                "trigger-evaluator", settings.trigger_interval_seconds, self.evaluator.run_cycle
            ),
            PeriodicLoop("task-consumer", settings.task_poll_interval_seconds, self.task_tick),
        ]

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, *, geofence_platform: GeofencePlatform | None = None
    ) -> AutomationService:
        """Build the service with the adapters and engine the settings describe."""

        chat = (
            TelegramChatAdapter(token=settings.telegram_bot_token)
            if settings.telegram_bot_token.strip()
            else None
        )
        engine = EngineFactory.create(settings.inference)
        return cls(
            settings,
            adapters=AdapterRegistry(default_chat=chat),
            engine=engine,
            geofence_platform=geofence_platform,
        )

    # Lifecycle

    def start(self) -> None:
        inference = self.settings.inference
        model_path: str | Path | None = inference.model_path
        if model_path is None and inference.provider == "openai":
            model_path = inference.openai_model
        if self.engine is not None and model_path is not None and not self.engine.is_loaded:
            loaded = self.load_model(model_path)
            if not loaded.ok:
                logger.warning("Model not loaded at startup", extra={"error": loaded.message})
        self.tasks.recover_interrupted()
        self.refresh_geofences()
        for loop in self._loops:
            loop.start()

    def stop(self) -> None:
        for loop in self._loops:
            loop.stop()
        self.dispatcher.shutdown(wait=True)

    def run_trigger_cycle(self) -> CycleReport:
        return self.evaluator.run_cycle()

    def task_tick(self) -> list[RunOutcome]:
        """One consumer tick: drain due tasks, then resume or expire suspended runs.

        Every ``sweep_interval_seconds`` the tick also purges expired records.
        """

        if self.consumer is not None:
            self.consumer.drain()
        outcomes = self.ticker.tick()

        now = self.clock()
        if self._next_sweep_at is None or now >= self._next_sweep_at:
            self._next_sweep_at = now + timedelta(seconds=self.settings.sweep_interval_seconds)
            self.purge_expired()
        return outcomes

    def refresh_geofences(self) -> None:
        self.registrar.refresh(self.workflows.list())

    # Workflows

    def save_workflow(self, workflow: Workflow, *, user_id: str) -> Outcome[SavedWorkflow]:
        def op() -> SavedWorkflow:
            existing = self._find_workflow(workflow.id)
            if existing is None:
                candidate = workflow.model_copy(update={"created_by": user_id})
            else:
                self._require(existing, user_id, Permission.EDIT)
                candidate = workflow.model_copy(update={"created_by": existing.created_by})
            validation = ensure_valid(candidate)
            return SavedWorkflow(workflow=self.workflows.save(candidate), validation=validation)

        return self._outcome(op)

    def get_workflow(self, workflow_id: str, *, user_id: str) -> Outcome[Workflow]:
        return self._outcome(lambda: self._authorized(workflow_id, user_id, Permission.VIEW))

    def list_workflows(self, *, user_id: str) -> Outcome[list[Workflow]]:
        return self._outcome(lambda: self.workflows.visible_to(user_id))

    def delete_workflow(self, workflow_id: str, *, user_id: str) -> Outcome[None]:
        def op() -> None:
            self._authorized(workflow_id, user_id, Permission.DELETE)
            self.workflows.delete(workflow_id)
            self.dedup.clear_workflow(workflow_id)
            self.markers.clear_workflow(workflow_id)

        return self._outcome(op)

    def set_workflow_enabled(
        self, workflow_id: str, enabled: bool, *, user_id: str
    ) -> Outcome[Workflow]:
        def op() -> Workflow:
            self._authorized(workflow_id, user_id, Permission.EDIT)
            return self.workflows.set_enabled(workflow_id, enabled)

        return self._outcome(op)

    def share_workflow(
        self, workflow_id: str, user_ids: list[str], *, user_id: str
    ) -> Outcome[Workflow]:
        def op() -> Workflow:
            self._authorized(workflow_id, user_id, Permission.SHARE)
            return self.workflows.share(workflow_id, user_ids)

        return self._outcome(op)

    def list_templates(self, *, category: str | None = None) -> Outcome[list[WorkflowTemplate]]:
        return self._outcome(lambda: list_templates(category))

    def create_from_template(
        self,
        template_id: str,
        *,
        user_id: str,
        target_user_ids: list[str] | None = None,
        params: dict[str, str] | None = None,
    ) -> Outcome[SavedWorkflow]:
        """Build a workflow from a catalogue entry and save it for ``user_id``."""

        built = self._outcome(
            lambda: create_from_template(
                template_id, user_id=user_id, target_user_ids=target_user_ids, params=params
            )
        )
        if not built.ok or built.value is None:
            return Outcome.failure(built.error or NotFoundError(template_id))
        saved = self.save_workflow(built.value, user_id=user_id)
        if saved.ok:
            logger.info(
                "Workflow created from template",
                extra={"template_id": template_id, "workflow_id": built.value.id},
            )
        return saved

    def run_workflow(
        self, workflow_id: str, *, user_id: str, variables: dict[str, str] | None = None
    ) -> Outcome[RunOutcome]:
        """Run a workflow synchronously in the caller's thread."""

        def op() -> RunOutcome:
            workflow = self._authorized(workflow_id, user_id, Permission.EXECUTE)
            event = manual_event(timestamp=self.clock(), variables=variables)
            return self.pipeline.start(workflow, event, trigger_user_id=user_id)

        return self._outcome(op)

    def list_executions(
        self, workflow_id: str, *, user_id: str, limit: int = 50
    ) -> Outcome[list[ExecutionRecord]]:
        def op() -> list[ExecutionRecord]:
            self._authorized(workflow_id, user_id, Permission.VIEW)
            return self.history.for_workflow(workflow_id, limit=limit)

        return self._outcome(op)

    # Approvals

    def list_approvals(self, *, user_id: str) -> Outcome[list[PendingApproval]]:
        return self._outcome(lambda: self.approvals.pending(approver_user_id=user_id))

    def approve(self, approval_id: str, *, user_id: str) -> Outcome[RunOutcome]:
        return self._outcome(lambda: self._decide(approval_id, user_id, approve=True))

    def deny(self, approval_id: str, *, user_id: str) -> Outcome[RunOutcome]:
        return self._outcome(lambda: self._decide(approval_id, user_id, approve=False))

    def _decide(self, approval_id: str, user_id: str, *, approve: bool) -> RunOutcome:
        approval = self.approvals.get(approval_id)
        workflow = self._find_workflow(approval.workflow_id)
        if workflow is None:
            if approval.approver_user_id != user_id:
                raise PermissionDeniedError(f"{user_id} is not the approver for {approval_id}")
            self.approvals.decide(approval_id, ApprovalStatus.DENIED)
            self.pipeline.abandon(
                approval.execution_id, "Workflow was deleted", approval.variables
            )
            raise NotFoundError(f"Workflow not found: {approval.workflow_id}")
        return self.pipeline.decide_approval(
            workflow, approval_id=approval_id, user_id=user_id, approve=approve
        )

    def _chat_approval(self, approval_id: str, user_id: str, approve: bool) -> None:
        outcome = self.approve(approval_id, user_id=user_id) if approve else self.deny(
            approval_id, user_id=user_id
        )
        logger.info(
            "Chat approval reply handled",
            extra={"approval_id": approval_id, "ok": outcome.ok, "result": outcome.message},
        )

    # Tasks

    def enqueue_task(self, task: BackgroundTask) -> Outcome[BackgroundTask]:
        return self._outcome(lambda: self.tasks.enqueue(task))

    def get_task(self, task_id: str) -> Outcome[BackgroundTask]:
        return self._outcome(lambda: self.tasks.get(task_id))

    def list_tasks(self, *, status: TaskStatus | None = None) -> Outcome[list[BackgroundTask]]:
        return self._outcome(
            lambda: [t for t in self.tasks.list() if status is None or t.status == status]
        )

    def cancel_task(self, task_id: str) -> Outcome[BackgroundTask]:
        return self._outcome(lambda: self.tasks.cancel(task_id))

    def _cancel_generation(self, task: BackgroundTask) -> None:
        if self.engine is not None:
            self.engine.cancel()

    # Geofences

    def handle_geofence_transition(
        self, geofence_id: str, kind: str, *, place_id: str | None = None
    ) -> Outcome[int]:
        def op() -> int:
            try:
                return self.evaluator.handle_geofence_transition(
                    geofence_id, kind, place_id=place_id
                )
            except ValueError as e:
                raise WorkflowValidationError(str(e)) from e

        return self._outcome(op)

    # Import / export

    def export_workflows(
        self, workflow_ids: list[str] | None = None, *, user_id: str
    ) -> Outcome[WorkflowExportDocument]:
        def op() -> WorkflowExportDocument:
            ids = workflow_ids
            if ids is None:
                ids = [w.id for w in self.workflows.visible_to(user_id)]
            return build_export(self.workflows, ids, user_id=user_id)

        return self._outcome(op)

    def import_workflows(
        self, text: str, *, user_id: str, overwrite_existing: bool = False
    ) -> Outcome[ImportResult]:
        def op() -> ImportResult:
            document = parse_document(text)
            return self.importer.import_document(
                document, user_id=user_id, overwrite_existing=overwrite_existing
            )

        return self._outcome(op)

    def export_summary(
        self, workflow_ids: list[str] | None = None, *, user_id: str
    ) -> Outcome[ExportSummary]:
        def op() -> ExportSummary:
            visible = self.workflows.visible_to(user_id)
            if workflow_ids is not None:
                visible = [w for w in visible if w.id in workflow_ids]
            return export_summary(visible)

        return self._outcome(op)

    # Users, stats and maintenance

    def upsert_user(self, user: WorkflowUser) -> Outcome[WorkflowUser]:
        return self._outcome(lambda: self.users.upsert(user))

    def dedup_stats(self, *, user_id: str) -> Outcome[DedupStats]:
        return self._outcome(lambda: self.dedup.stats(user_id))

    def purge_expired(self) -> Outcome[SweepReport]:
        """Drop processed events and execution records past their retention window.

        Runs periodically from the consumer tick. Finished tasks and decided
        approvals are left for an explicit :meth:`sweep`.
        """

        def op() -> SweepReport:
            report = SweepReport(
                processed_events=self.dedup.purge_older_than(
                    self.settings.dedup_retention_days
                ),
                executions=self.history.purge(
                    older_than_days=self.settings.history_retention_days,
                    max_per_workflow=self.settings.history_max_per_workflow,
                ),
                approvals=0,
                tasks=0,
            )
            logger.debug("Periodic retention purge finished", extra={"report": report})
            return report

        return self._outcome(op)

    def sweep(self) -> Outcome[SweepReport]:
        """Apply retention to processed events, history, decided approvals and tasks."""

        def op() -> SweepReport:
            report = SweepReport(
                processed_events=self.dedup.purge_older_than(
                    self.settings.dedup_retention_days
                ),
                executions=self.history.purge(
                    older_than_days=self.settings.history_retention_days,
                    max_per_workflow=self.settings.history_max_per_workflow,
                ),
                approvals=self.approvals.purge_decided(),
                tasks=self.tasks.clear_completed(),
            )
            logger.info("Retention sweep finished", extra={"report": report})
            return report

        return self._outcome(op)

    def load_model(self, model_path: str | Path) -> Outcome[bool]:
        def op() -> bool:
            if self.engine is None:
                raise ExternalServiceError("No inference engine configured", retryable=False)
            if not self.engine.load(model_path):
                raise ExternalServiceError(f"Failed to load model: {model_path}", retryable=False)
            return True

        return self._outcome(op)

    # Helpers

    def _find_workflow(self, workflow_id: str) -> Workflow | None:
        try:
            return self.workflows.get(workflow_id)
        except NotFoundError:
            return None

    @staticmethod
    def _require(workflow: Workflow, user_id: str, permission: Permission) -> None:
        if not has_permission(workflow, user_id, permission):
            raise PermissionDeniedError(
                f"User {user_id} may not {permission.value} workflow {workflow.id}"
            )

    def _authorized(self, workflow_id: str, user_id: str, permission: Permission) -> Workflow:
        workflow = self.workflows.get(workflow_id)
        self._require(workflow, user_id, permission)
        return workflow

    @staticmethod
    def _outcome(op: Callable[[], T]) -> Outcome[T]:
        try:
            return Outcome.success(op())
        except AutomationError as e:
            logger.info("Operation failed", extra={"kind": e.kind, "error": e.message})
            return Outcome.failure(e)
        except IllegalTransitionError as e:
            return Outcome.failure(ConcurrencyError(str(e)))

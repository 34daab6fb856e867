"""Single-threaded consumer for the background task queue.

The consumer's tick also drives the pipeline's suspended runs: delayed runs
whose resume time has passed are resumed, and approvals past their deadline
are expired.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from local_workflow_engine.engine.errors import AutomationError, NotFoundError
from local_workflow_engine.engine.storage.continuations import ApprovalStore, ContinuationStore
from local_workflow_engine.engine.storage.json_store import utc_now
from local_workflow_engine.engine.storage.workflows import WorkflowStore
from local_workflow_engine.engine.tasks.models import BackgroundTask, TaskStatus, TaskType
from local_workflow_engine.engine.tasks.queue import TaskQueue
from local_workflow_engine.engine.workflow.pipeline import ActionPipeline, RunOutcome
from local_workflow_engine.llm.engine import InferenceEngine

logger = logging.getLogger(__name__)

TaskHandler = Callable[[BackgroundTask], str]

WORKFLOW_DELETED = "Workflow was deleted while the run was suspended"


class TaskConsumer:
    """Claims one task at a time and runs it against the inference engine."""

    def __init__(
        self,
        queue: TaskQueue,
        engine: InferenceEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.clock = clock
        self.handlers: dict[TaskType, TaskHandler] = {
            TaskType.CHAT_GENERATION: self._chat,
            TaskType.IMAGE_ANALYSIS: self._image_analysis,
            TaskType.SCHEDULED_GENERATION: self._chat,
            TaskType.NOTIFICATION_RESPONSE: self._notification_response,
            TaskType.BATCH_PROCESSING: self._batch,
        }

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        self.handlers[task_type] = handler

    def process_next(self) -> BackgroundTask | None:
        """Run the most urgent due task, if any; returns its final stored state."""

        # Cleared before the claim: a cancel for the claimed task may land any time after it.
        self.engine.reset_cancel()
        task = self.queue.dequeue_next(self.clock())
        if task is None:
            return None

        logger.info(
            "Processing task", extra={"task_id": task.id, "task_type": task.type.value}
        )
        try:
            result = self.handlers[task.type](task)
        except AutomationError as e:
            return self.queue.fail(task.id, e.message)
        except Exception as e:
            logger.exception("Task handler crashed", extra={"task_id": task.id})
            return self.queue.fail(task.id, f"{type(e).__name__}: {e}")
        finally:
            self.engine.reset_cancel()
        return self.queue.complete(task.id, result)

    def drain(self, *, limit: int = 50) -> int:
        """Process due tasks until none remain (or ``limit`` is reached)."""

        processed = 0
        while processed < limit and self.process_next() is not None:
            processed += 1
        return processed

    # Handlers

    def _chat(self, task: BackgroundTask) -> str:
        image = Path(task.images[0]) if task.images else None
        return self._generate(task.prompt, image)

    def _image_analysis(self, task: BackgroundTask) -> str:
        images = [Path(p) for p in task.images if Path(p).is_file()]
        if task.images and not images:
            raise AutomationError("Failed to load images")
        prompt = f"Analyze the following image(s): {task.prompt}"
        return self._generate(prompt, images[0] if images else None)

    def _notification_response(self, task: BackgroundTask) -> str:
        return self._generate(f"Responding to notification: {task.prompt}", None)

    def _batch(self, task: BackgroundTask) -> str:
        raw = task.metadata.get("batch_prompts")
        prompts = raw.split("|") if raw else [task.prompt]
        responses: list[str] = []
        for idx, prompt in enumerate(prompts, start=1):
            if self._cancelled(task):
                logger.info(
                    "Batch cancelled",
                    extra={"task_id": task.id, "completed_items": len(responses)},
                )
                break
            logger.debug(
                "Processing batch item",
                extra={"task_id": task.id, "item": idx, "total": len(prompts)},
            )
            try:
                responses.append(f"{idx}: {self._generate(prompt, None)}")
            except AutomationError as e:
                responses.append(f"{idx}: ERROR - {e.message}")
        return "\n\n".join(responses)

    def _cancelled(self, task: BackgroundTask) -> bool:
        if self.engine.cancel_requested:
            return True
        stored = self.queue.find(lambda t: t.id == task.id)
        return stored is None or stored.status == TaskStatus.CANCELLED

    def _generate(self, prompt: str, image: Path | None) -> str:
        text = self.engine.complete(prompt, image=image).strip()
        if not text and not self.engine.last_generation_cancelled:
            raise AutomationError("No response generated")
        return text


class SuspensionTicker:
    """Resumes due delayed runs and expires overdue approvals."""

    def __init__(
        self,
        *,
        pipeline: ActionPipeline,
        workflows: WorkflowStore,
        continuations: ContinuationStore,
        approvals: ApprovalStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pipeline = pipeline
        self.workflows = workflows
        self.continuations = continuations
        self.approvals = approvals
        self.clock = clock

    def tick(self) -> list[RunOutcome]:
        now = self.clock()
        outcomes: list[RunOutcome] = []

        for continuation in self.continuations.take_due(now):
            try:
                try:
                    workflow = self.workflows.get(continuation.workflow_id)
                except NotFoundError:
                    outcomes.append(
                        self.pipeline.abandon(
                            continuation.execution_id, WORKFLOW_DELETED, continuation.variables
                        )
                    )
                    continue
                outcomes.append(self.pipeline.resume_continuation(workflow, continuation))
            except Exception:
                logger.exception(
                    "Resuming delayed run failed",
                    extra={"execution_id": continuation.execution_id},
                )

        for approval in self.approvals.overdue(now):
            try:
                outcomes.append(self.pipeline.expire(approval))
            except Exception:
                logger.exception("Expiring approval failed", extra={"approval_id": approval.id})

        return outcomes

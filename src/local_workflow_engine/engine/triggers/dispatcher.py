"""Background dispatcher for evaluator-fired workflow runs.

Each run is an independent unit on a worker thread. The evaluator skips a
workflow while one of its runs is still in flight, so a stuck run delays only
that workflow.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor

from local_workflow_engine.engine.workflow.events import TriggerEvent
from local_workflow_engine.engine.workflow.models import Workflow
from local_workflow_engine.engine.workflow.pipeline import ActionPipeline, RunOutcome

logger = logging.getLogger(__name__)


class RunDispatcher:
    def __init__(self, pipeline: ActionPipeline, *, max_workers: int, inline: bool = False) -> None:
        self.pipeline = pipeline
        self.inline = inline
        self._executor = (
            None
            if inline
            else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow-run")
        )
        self._lock = threading.Lock()
        self._in_flight: Counter[str] = Counter()

    def is_busy(self, workflow_id: str) -> bool:
        with self._lock:
            return self._in_flight[workflow_id] > 0

    def submit(
        self, workflow: Workflow, event: TriggerEvent, *, trigger_user_id: str
    ) -> Future[RunOutcome | None]:
        with self._lock:
            self._in_flight[workflow.id] += 1

        if self._executor is None:
            future: Future[RunOutcome | None] = Future()
            future.set_result(self._run(workflow, event, trigger_user_id))
            return future
        return self._executor.submit(self._run, workflow, event, trigger_user_id)

    def _run(
        self, workflow: Workflow, event: TriggerEvent, trigger_user_id: str
    ) -> RunOutcome | None:
        try:
            return self.pipeline.start(workflow, event, trigger_user_id=trigger_user_id)
        except Exception:
            logger.exception(
                "Workflow run crashed",
                extra={"workflow_id": workflow.id, "trigger": event.type},
            )
            return None
        finally:
            with self._lock:
                self._in_flight[workflow.id] -= 1
                if self._in_flight[workflow.id] <= 0:
                    del self._in_flight[workflow.id]

    def shutdown(self, *, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

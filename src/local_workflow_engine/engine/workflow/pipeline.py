"""Sequential execution of a workflow's actions against a variable context.

A run moves through :class:`RunStatus` states. ``delay`` and
``require_approval`` suspend the run by persisting the context and the index of
the next action; nothing sleeps in-process, so suspended runs survive restarts.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from local_workflow_engine.engine.errors import ConcurrencyError, PermissionDeniedError
from local_workflow_engine.engine.storage.continuations import (
    ApprovalStatus,
    ApprovalStore,
    ContinuationStore,
    PendingApproval,
    RunContinuation,
)
from local_workflow_engine.engine.storage.history import ExecutionHistoryStore, StepLog
from local_workflow_engine.engine.storage.json_store import parse_iso, utc_now
from local_workflow_engine.engine.storage.users import UserStore
from local_workflow_engine.engine.workflow.actions import ActionExecutor, ActionResult
from local_workflow_engine.engine.workflow.conditions import (
    ConditionSyntaxError,
    evaluate_condition,
)
from local_workflow_engine.engine.workflow.events import TriggerEvent
from local_workflow_engine.engine.workflow.models import (
    Action,
    ConditionalAction,
    DelayAction,
    RequireApprovalAction,
    Workflow,
)
from local_workflow_engine.engine.workflow.state_machine import RunStatus
from local_workflow_engine.engine.workflow.template import resolve_model_strings
from local_workflow_engine.integrations.base import AdapterRegistry

logger = logging.getLogger(__name__)

APPROVAL_TIMED_OUT = "Approval timed out"
APPROVAL_REJECTED = "Action rejected by approver"
RUN_TIMED_OUT = "Run exceeded timeout"
WORKFLOW_CHANGED = "Workflow changed while the run was suspended"
WORKFLOW_DISABLED = "Workflow was disabled while the run was suspended"


def actions_digest(actions: list[Action]) -> str:
    """Stable fingerprint of an action list, used to detect edits across a suspension."""

    payload = json.dumps([a.model_dump(mode="json") for a in actions], sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class RunOutcome:
    execution_id: str
    status: RunStatus
    message: str
    variables: dict[str, str] = field(default_factory=dict)
    approval_id: str | None = None
    continuation_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED


@dataclass(frozen=True, slots=True)
class _Suspension:
    status: RunStatus
    message: str
    approval_id: str | None = None
    continuation_id: str | None = None


@dataclass(slots=True)
class _Run:
    workflow: Workflow
    execution_id: str
    trigger_user_id: str
    context: dict[str, str]
    deadline: datetime


class ActionPipeline:
    def __init__(
        self,
        *,
        executor: ActionExecutor,
        history: ExecutionHistoryStore,
        continuations: ContinuationStore,
        approvals: ApprovalStore,
        users: UserStore,
        adapters: AdapterRegistry,
        run_timeout_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.executor = executor
        self.history = history
        self.continuations = continuations
        self.approvals = approvals
        self.users = users
        self.adapters = adapters
        self.run_timeout = timedelta(seconds=run_timeout_seconds)
        self.clock = clock

    # Entry points

    def start(self, workflow: Workflow, event: TriggerEvent, *, trigger_user_id: str) -> RunOutcome:
        record = self.history.create(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            trigger_user_id=trigger_user_id,
            trigger_type=event.type,
        )
        context = dict(workflow.variables)
        context.update(event.seed_variables())
        context.update(
            {
                "workflow_id": workflow.id,
                "workflow_name": workflow.name,
                "trigger_user_id": trigger_user_id,
            }
        )
        logger.info(
            "Workflow run started",
            extra={"workflow_id": workflow.id, "execution_id": record.id, "trigger": event.type},
        )
        self.history.set_status(record.id, RunStatus.RUNNING)
        run = self._new_run(workflow, record.id, trigger_user_id, context)
        return self._run_from(run, 0)

    def resume_continuation(self, workflow: Workflow, continuation: RunContinuation) -> RunOutcome:
        blocker = self._resume_blocker(workflow, continuation.actions_digest)
        if blocker is not None:
            return self.abandon(continuation.execution_id, blocker, continuation.variables)
        self.history.set_status(continuation.execution_id, RunStatus.RUNNING)
        logger.info(
            "Resuming delayed run",
            extra={"workflow_id": workflow.id, "execution_id": continuation.execution_id},
        )
        run = self._new_run(
            workflow,
            continuation.execution_id,
            continuation.trigger_user_id,
            dict(continuation.variables),
        )
        return self._run_from(run, continuation.resume_index)

    def decide_approval(
        self, workflow: Workflow, *, approval_id: str, user_id: str, approve: bool
    ) -> RunOutcome:
        """Apply an approver's decision to a halted run.

        Raises:
            NotFoundError: If the approval does not exist.
            PermissionDeniedError: If ``user_id`` is not the designated approver.
            ConcurrencyError: If the approval was already decided.
        """

        approval = self.approvals.get(approval_id)
        if approval.approver_user_id != user_id:
            raise PermissionDeniedError(f"{user_id} is not the approver for {approval_id}")
        if approval.status != ApprovalStatus.PENDING:
            raise ConcurrencyError(f"Approval {approval_id} already {approval.status.value}")
        if parse_iso(approval.deadline) <= self.clock():
            return self.expire(approval)

        blocker = self._resume_blocker(workflow, approval.actions_digest) if approve else None
        if blocker is not None:
            self.approvals.decide(approval_id, ApprovalStatus.DENIED)
            self.history.append_step(
                approval.execution_id,
                StepLog(
                    index=approval.resume_index - 1,
                    action_type="require_approval",
                    ok=False,
                    message=blocker,
                ),
            )
            return self._finish_failed(approval.execution_id, blocker, approval.variables)

        if not approve:
            self.approvals.decide(approval_id, ApprovalStatus.DENIED)
            self.history.append_step(
                approval.execution_id,
                StepLog(
                    index=approval.resume_index - 1,
                    action_type="require_approval",
                    ok=False,
                    message=APPROVAL_REJECTED,
                ),
            )
            return self._finish_failed(
                approval.execution_id, APPROVAL_REJECTED, approval.variables
            )

        self.approvals.decide(approval_id, ApprovalStatus.APPROVED)
        self.history.set_status(approval.execution_id, RunStatus.RUNNING)
        logger.info(
            "Approval granted; resuming run",
            extra={"approval_id": approval_id, "execution_id": approval.execution_id},
        )
        run = self._new_run(
            workflow, approval.execution_id, approval.trigger_user_id, dict(approval.variables)
        )
        # The pending action runs as the next single step, then the remaining list.
        step = self._perform_and_record(run, approval.pending_action, approval.resume_index - 1)
        if isinstance(step, _Suspension):
            return self._suspend(run, step)
        if not step.ok:
            return self._fail_step(run, approval.resume_index - 1, approval.pending_action, step)
        return self._run_from(run, approval.resume_index)

    def expire(self, approval: PendingApproval) -> RunOutcome:
        """Auto-deny an approval whose deadline passed."""

        try:
            self.approvals.decide(approval.id, ApprovalStatus.EXPIRED)
        except ConcurrencyError:
            current = self.history.get(approval.execution_id)
            return RunOutcome(
                execution_id=current.id,
                status=current.status,
                message=current.message,
                variables=current.variables,
            )
        logger.warning(
            "Approval timed out; failing run",
            extra={"approval_id": approval.id, "execution_id": approval.execution_id},
        )
        self.history.append_step(
            approval.execution_id,
            StepLog(
                index=approval.resume_index - 1,
                action_type="require_approval",
                ok=False,
                message=APPROVAL_TIMED_OUT,
            ),
        )
        return self._finish_failed(approval.execution_id, APPROVAL_TIMED_OUT, approval.variables)

    def abandon(self, execution_id: str, message: str, variables: dict[str, str]) -> RunOutcome:
        """Fail a suspended run that can no longer resume (e.g. its workflow was deleted)."""

        return self._finish_failed(execution_id, message, variables)

    @staticmethod
    def _resume_blocker(workflow: Workflow, digest: str) -> str | None:
        """Why a suspended run of ``workflow`` must not continue, or None."""

        if not workflow.is_enabled:
            return WORKFLOW_DISABLED
        if digest and digest != actions_digest(workflow.actions):
            return WORKFLOW_CHANGED
        return None

    # Execution

    def _new_run(
        self, workflow: Workflow, execution_id: str, trigger_user_id: str, context: dict[str, str]
    ) -> _Run:
        return _Run(
            workflow=workflow,
            execution_id=execution_id,
            trigger_user_id=trigger_user_id,
            context=context,
            deadline=self.clock() + self.run_timeout,
        )

    def _run_from(self, run: _Run, start_index: int) -> RunOutcome:
        actions = run.workflow.actions
        for index in range(start_index, len(actions)):
            if self.clock() > run.deadline:
                logger.warning(
                    "Run exceeded timeout",
                    extra={"workflow_id": run.workflow.id, "execution_id": run.execution_id},
                )
                return self._finish_failed(run.execution_id, RUN_TIMED_OUT, run.context)

            action = actions[index]
            step = self._perform_and_record(run, action, index)
            if isinstance(step, _Suspension):
                return self._suspend(run, step)
            if not step.ok:
                return self._fail_step(run, index, action, step)

        self.history.set_status(
            run.execution_id,
            RunStatus.SUCCEEDED,
            message="Workflow completed successfully",
            variables=run.context,
        )
        logger.info(
            "Workflow run succeeded",
            extra={"workflow_id": run.workflow.id, "execution_id": run.execution_id},
        )
        return RunOutcome(
            execution_id=run.execution_id,
            status=RunStatus.SUCCEEDED,
            message="Workflow completed successfully",
            variables=dict(run.context),
        )

    def _perform_and_record(
        self, run: _Run, action: Action, index: int
    ) -> ActionResult | _Suspension:
        label, step = self._perform(run, action, index)
        if isinstance(step, _Suspension):
            self.history.append_step(
                run.execution_id,
                StepLog(index=index, action_type=label, ok=True, message=step.message),
            )
            return step
        self.history.append_step(
            run.execution_id,
            StepLog(
                index=index,
                action_type=label,
                ok=step.ok,
                message=step.message,
                details=step.details or {},
            ),
        )
        return step

    def _perform(
        self, run: _Run, action: Action, index: int
    ) -> tuple[str, ActionResult | _Suspension]:
        """Run one action; returns the step label and its result or suspension."""

        match action:
            case ConditionalAction(condition=condition):
                try:
                    matched = evaluate_condition(condition, run.context)
                except ConditionSyntaxError as e:
                    return action.type, ActionResult(ok=False, message=str(e))
                branch = action.true_action if matched else action.false_action
                verdict = "true" if matched else "false"
                if branch is None:
                    return action.type, ActionResult(
                        ok=True, message=f"Condition {verdict}; no action"
                    )
                label, step = self._perform(run, branch, index)
                if isinstance(step, _Suspension):
                    return f"{action.type}:{label}", step
                return f"{action.type}:{label}", ActionResult(
                    ok=step.ok,
                    message=f"Condition {verdict}: {step.message}",
                    details=step.details,
                    output=step.output,
                )

            case DelayAction(minutes=minutes):
                resume_at = self.clock() + timedelta(minutes=minutes)
                continuation = self.continuations.add(
                    RunContinuation(
                        execution_id=run.execution_id,
                        workflow_id=run.workflow.id,
                        trigger_user_id=run.trigger_user_id,
                        resume_index=index + 1,
                        variables=dict(run.context),
                        resume_at=resume_at.isoformat(),
                        actions_digest=actions_digest(run.workflow.actions),
                    )
                )
                return action.type, _Suspension(
                    status=RunStatus.DELAYED,
                    message=f"Delayed {minutes} minutes until {resume_at.isoformat()}",
                    continuation_id=continuation.id,
                )

            case RequireApprovalAction():
                resolved = resolve_model_strings(action, run.context)
                deadline = self.clock() + timedelta(minutes=resolved.timeout_minutes)
                approval = self.approvals.add(
                    PendingApproval(
                        execution_id=run.execution_id,
                        workflow_id=run.workflow.id,
                        trigger_user_id=run.trigger_user_id,
                        approver_user_id=resolved.approver_user_id,
                        pending_action=resolved.pending_action,
                        resume_index=index + 1,
                        variables=dict(run.context),
                        message=resolved.message,
                        deadline=deadline.isoformat(),
                        actions_digest=actions_digest(run.workflow.actions),
                    )
                )
                self._notify_approver(run.workflow, approval)
                return action.type, _Suspension(
                    status=RunStatus.AWAITING_APPROVAL,
                    message=f"Awaiting approval from {resolved.approver_user_id}",
                    approval_id=approval.id,
                )

        resolved_leaf = resolve_model_strings(action, run.context)
        try:
            result = self.executor.execute(resolved_leaf, owner_id=run.workflow.created_by)
        except Exception as e:
            logger.exception(
                "Action raised unexpectedly",
                extra={"execution_id": run.execution_id, "action_type": action.type},
            )
            result = ActionResult(ok=False, message=f"{type(e).__name__}: {e}")

        if result.ok and result.output is not None and resolved_leaf.output_variable:
            run.context[resolved_leaf.output_variable] = result.output
        return action.type, result

    def _notify_approver(self, workflow: Workflow, approval: PendingApproval) -> None:
        text = (
            f"Approval needed for workflow '{workflow.name}': {approval.message}\n"
            f"Pending action: {approval.pending_action.type}\n"
            f"Reply with: /approve {approval.id} or /reject {approval.id}"
        )
        try:
            approver = self.users.get(approval.approver_user_id)
            chat = self.adapters.chat_for(workflow.created_by)
            email = self.adapters.email_for(workflow.created_by)
            if approver.chat_id and chat is not None:
                chat.send_message(approver.chat_id, text)
            elif approver.email and email is not None:
                email.send(approver.email, f"Approval needed: {workflow.name}", text)
            else:
                logger.warning(
                    "No channel to notify approver",
                    extra={"approval_id": approval.id, "approver": approval.approver_user_id},
                )
        except Exception as e:
            # The approval stays pending and can still be decided through the API.
            logger.warning(
                "Approver notification failed",
                extra={"approval_id": approval.id, "error": str(e)},
            )

    # Terminal transitions

    def _suspend(self, run: _Run, suspension: _Suspension) -> RunOutcome:
        self.history.set_status(
            run.execution_id, suspension.status, message=suspension.message, variables=run.context
        )
        logger.info(
            "Workflow run suspended",
            extra={
                "execution_id": run.execution_id,
                "status": suspension.status.value,
                "approval_id": suspension.approval_id,
                "continuation_id": suspension.continuation_id,
            },
        )
        return RunOutcome(
            execution_id=run.execution_id,
            status=suspension.status,
            message=suspension.message,
            variables=dict(run.context),
            approval_id=suspension.approval_id,
            continuation_id=suspension.continuation_id,
        )

    def _fail_step(self, run: _Run, index: int, action: Action, result: ActionResult) -> RunOutcome:
        message = f"Action {index + 1} ({action.type}) failed: {result.message}"
        return self._finish_failed(run.execution_id, message, run.context)

    def _finish_failed(
        self, execution_id: str, message: str, variables: dict[str, str]
    ) -> RunOutcome:
        self.history.set_status(
            execution_id, RunStatus.FAILED, message=message, variables=variables
        )
        logger.warning(
            "Workflow run failed", extra={"execution_id": execution_id, "reason": message}
        )
        return RunOutcome(
            execution_id=execution_id,
            status=RunStatus.FAILED,
            message=message,
            variables=dict(variables),
        )


"""Periodic evaluation of time, email and chat triggers.

One cycle inspects every enabled workflow. Time triggers are gated by their
last-fired marker; email and chat events are gated by the processed-event
store, so an event dispatches a given workflow at most once. Geofence
transitions arrive out-of-band via :meth:`TriggerEvaluator.handle_geofence_transition`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from local_workflow_engine.engine.storage.dedup import ProcessedEventStore
from local_workflow_engine.engine.storage.json_store import parse_iso, utc_now
from local_workflow_engine.engine.storage.markers import (
    MarkerStore,
    chat_offset_key,
    email_checkpoint_key,
    schedule_marker_key,
)
from local_workflow_engine.engine.storage.users import UserStore
from local_workflow_engine.engine.storage.workflows import WorkflowStore
from local_workflow_engine.engine.triggers.dispatcher import RunDispatcher
from local_workflow_engine.engine.triggers.geofence import matching_triggers
from local_workflow_engine.engine.triggers.schedule import match_schedule
from local_workflow_engine.engine.workflow.events import (
    TriggerEvent,
    chat_event,
    email_event,
    geofence_event,
    schedule_event,
)
from local_workflow_engine.engine.workflow.models import (
    ChatCommandTrigger,
    ChatMessageTrigger,
    EmailReceivedTrigger,
    GeofenceTransition,
    TimeScheduleTrigger,
    Workflow,
)
from local_workflow_engine.integrations.base import (
    AdapterRegistry,
    ChatEvent,
    EmailEvent,
    EmailFilter,
)

logger = logging.getLogger(__name__)

# Callback for "/approve <id>" and "/reject <id>" chat replies: (approval_id, user_id, approve).
ApprovalHandler = Callable[[str, str, bool], None]

_TRANSITION_ALIASES = {
    "enter": GeofenceTransition.ENTER,
    "entered": GeofenceTransition.ENTER,
    "exit": GeofenceTransition.EXIT,
    "exited": GeofenceTransition.EXIT,
    "dwell": GeofenceTransition.DWELL,
    "dwelling": GeofenceTransition.DWELL,
    "dwelling_in": GeofenceTransition.DWELL,
}


def parse_transition(kind: str) -> GeofenceTransition:
    try:
        return _TRANSITION_ALIASES[kind.strip().lower()]
    except KeyError as e:
        raise ValueError(f"Unknown geofence transition: {kind!r}") from e


def _contains(haystack: str, needle: str | None) -> bool:
    return not needle or needle.lower() in haystack.lower()


def email_matches(trigger: EmailReceivedTrigger, event: EmailEvent) -> bool:
    return (
        _contains(event.sender, trigger.from_filter)
        and _contains(event.subject, trigger.subject_filter)
        and _contains(event.body, trigger.body_filter)
    )


def match_command(trigger: ChatCommandTrigger, text: str) -> str | None:
    """Return the command arguments if ``text`` invokes the command, else None."""

    parts = text.strip().split(maxsplit=1)
    if not parts:
        return None
    wanted = trigger.command.strip().lstrip("/").lower()
    if parts[0].lstrip("/").lower() != wanted:
        return None
    return parts[1].strip() if len(parts) > 1 else ""


def message_matches(trigger: ChatMessageTrigger, text: str) -> bool:
    condition = trigger.match_condition.strip()
    return condition in ("", "*") or condition.lower() in text.lower()


@dataclass(slots=True)
class CycleReport:
    fired: int = 0
    skipped_busy: list[str] = field(default_factory=list)
    adapter_errors: int = 0


class TriggerEvaluator:
    def __init__(
        self,
        *,
        workflows: WorkflowStore,
        dedup: ProcessedEventStore,
        markers: MarkerStore,
        adapters: AdapterRegistry,
        dispatcher: RunDispatcher,
        users: UserStore,
        tolerance_minutes: int = 1,
        clock: Callable[[], datetime] = utc_now,
        approval_handler: ApprovalHandler | None = None,
    ) -> None:
        self.workflows = workflows
        self.dedup = dedup
        self.markers = markers
        self.adapters = adapters
        self.dispatcher = dispatcher
        self.users = users
        self.tolerance_minutes = tolerance_minutes
        self.clock = clock
        self.approval_handler = approval_handler
        self._cycle_lock = threading.Lock()
        self._approval_replies: set[tuple[str, int]] = set()

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        with self._cycle_lock:
            now = self.clock()
            enabled = self.workflows.enabled()
            for workflow in enabled:
                if self.dispatcher.is_busy(workflow.id):
                    report.skipped_busy.append(workflow.id)
                    continue
                try:
                    self._evaluate_workflow(workflow, now, report)
                except Exception:
                    logger.exception(
                        "Trigger evaluation failed", extra={"workflow_id": workflow.id}
                    )
            self._poll_chat(enabled, report)

        logger.debug(
            "Trigger cycle finished",
            extra={
                "fired": report.fired,
                "skipped_busy": len(report.skipped_busy),
                "adapter_errors": report.adapter_errors,
            },
        )
        return report

    def handle_geofence_transition(
        self, geofence_id: str, kind: str, *, place_id: str | None = None
    ) -> int:
        """Fire every enabled workflow listening for this region and transition.

        Returns:
            Number of runs dispatched.

        Raises:
            ValueError: If ``kind`` is not a known transition name.
        """

        transition = parse_transition(kind)
        matches = matching_triggers(self.workflows.enabled(), geofence_id, transition)
        for workflow, trigger in matches:
            event = geofence_event(
                geofence_id=geofence_id,
                transition=transition.value,
                timestamp=self.clock(),
                place_id=place_id or trigger.place_id,
            )
            self._dispatch(workflow, event)
        logger.info(
            "Geofence transition handled",
            extra={
                "geofence_id": geofence_id,
                "transition": transition.value,
                "matched": len(matches),
            },
        )
        return len(matches)

    # Per-workflow triggers

    def _evaluate_workflow(self, workflow: Workflow, now: datetime, report: CycleReport) -> None:
        for index, trigger in enumerate(workflow.triggers):
            match trigger:
                case TimeScheduleTrigger():
                    if self._check_schedule(workflow, index, trigger, now):
                        report.fired += 1
                case EmailReceivedTrigger():
                    report.fired += self._check_email(workflow, index, trigger, report)

    def _check_schedule(
        self, workflow: Workflow, index: int, trigger: TimeScheduleTrigger, now: datetime
    ) -> bool:
        key = schedule_marker_key(workflow.id, index)
        raw = self.markers.get(key)
        last_fired = parse_iso(raw) if raw else None
        matched = match_schedule(
            trigger, now=now, last_fired=last_fired, tolerance_minutes=self.tolerance_minutes
        )
        if matched is None:
            return False

        # Marker first: a crash mid-run must not fire the same occurrence twice.
        self.markers.set(key, matched.scheduled_for.isoformat())
        event = schedule_event(
            schedule_type=trigger.schedule_type.value,
            scheduled_time=matched.scheduled_time,
            timestamp=now,
        )
        self._dispatch(workflow, event)
        return True

    def _check_email(
        self,
        workflow: Workflow,
        index: int,
        trigger: EmailReceivedTrigger,
        report: CycleReport,
    ) -> int:
        adapter = self.adapters.email_for(workflow.created_by)
        if adapter is None:
            return 0

        key = email_checkpoint_key(workflow.id, index)
        raw = self.markers.get(key)
        email_filter = EmailFilter(
            sender=trigger.from_filter,
            subject=trigger.subject_filter,
            body=trigger.body_filter,
            since=parse_iso(raw) if raw else None,
        )
        try:
            events = adapter.list_new(email_filter)
        except Exception as e:
            report.adapter_errors += 1
            logger.warning(
                "Email adapter failed; retrying next cycle",
                extra={"workflow_id": workflow.id, "error": str(e)},
            )
            return 0

        fired = 0
        newest: datetime | None = None
        for event in events:
            if newest is None or event.timestamp > newest:
                newest = event.timestamp
            if not email_matches(trigger, event):
                continue
            if self.dedup.is_processed(event.id, workflow.id):
                continue
            try:
                self._dispatch(workflow, email_event(event))
                fired += 1
            finally:
                self.dedup.mark_processed(
                    event.id,
                    workflow.id,
                    user_id=workflow.created_by,
                    event_from=event.sender,
                    event_subject=event.subject,
                    original_event_timestamp=event.timestamp.isoformat(),
                )

        if newest is not None:
            self.markers.set(key, newest.isoformat())
        return fired

    # Chat

    def _poll_chat(self, enabled: list[Workflow], report: CycleReport) -> None:
        for name, adapter in self.adapters.chat_adapters():
            key = chat_offset_key(name)
            raw = self.markers.get(key)
            try:
                updates = adapter.poll_updates(int(raw) if raw else None)
            except Exception as e:
                report.adapter_errors += 1
                logger.warning(
                    "Chat adapter failed; retrying next cycle",
                    extra={"adapter": name, "error": str(e)},
                )
                continue
            if not updates:
                continue

            listeners = [w for w in enabled if self.adapters.chat_for(w.created_by) is adapter]
            busy = {w.id for w in listeners if self.dispatcher.is_busy(w.id)}
            held: list[int] = []
            for update in updates:
                try:
                    if self._handle_approval_reply(update):
                        continue
                    fired, deferred = self._route_chat(update, listeners, busy)
                    report.fired += fired
                    if deferred:
                        held.append(update.update_id)
                except Exception:
                    logger.exception(
                        "Chat update handling failed",
                        extra={"adapter": name, "update_id": update.update_id},
                    )

            # Updates a busy workflow still has to see are polled again next cycle;
            # the per-workflow dedup keys keep the other listeners from re-firing.
            if held:
                offset = min(held)
                logger.info(
                    "Chat offset held for busy workflows",
                    extra={"adapter": name, "offset": offset, "busy": sorted(busy)},
                )
            else:
                offset = max(u.update_id for u in updates) + 1
            self.markers.set(key, str(offset))
            self._approval_replies = {r for r in self._approval_replies if r[1] >= offset}

    def _handle_approval_reply(self, update: ChatEvent) -> bool:
        parts = update.text.strip().split()
        if len(parts) != 2 or parts[0].lower() not in ("/approve", "/reject"):
            return False
        if self.approval_handler is None:
            return False
        if (update.chat_id, update.update_id) in self._approval_replies:
            return True
        self._approval_replies.add((update.chat_id, update.update_id))
        user = self.users.find_by_chat_id(update.chat_id)
        if user is None:
            logger.warning(
                "Approval reply from unknown chat", extra={"chat_id": update.chat_id}
            )
            return True
        self.approval_handler(parts[1], user.id, parts[0].lower() == "/approve")
        return True

    def _route_chat(
        self, update: ChatEvent, listeners: list[Workflow], busy: set[str]
    ) -> tuple[int, bool]:
        """Fire idle listeners for ``update``.

        Returns:
            Runs dispatched, and whether a busy listener still has to see the update.
        """

        fired = 0
        deferred = False
        for workflow in listeners:
            event = self._chat_event_for(workflow, update)
            if event is None or event.event_id is None:
                continue
            if self.dedup.is_processed(event.event_id, workflow.id):
                continue
            if workflow.id in busy:
                deferred = True
                continue
            try:
                self._dispatch(workflow, event)
                fired += 1
            finally:
                self.dedup.mark_processed(
                    event.event_id,
                    workflow.id,
                    user_id=workflow.created_by,
                    event_from=update.sender,
                    event_subject=update.text[:80],
                    original_event_timestamp=update.timestamp.isoformat(),
                )
        return fired, deferred

    def _chat_event_for(self, workflow: Workflow, update: ChatEvent) -> TriggerEvent | None:
        for trigger in workflow.triggers:
            match trigger:
                case ChatCommandTrigger():
                    args = match_command(trigger, update.text)
                    if args is not None:
                        return chat_event(update, command_args=args)
                case ChatMessageTrigger():
                    if message_matches(trigger, update.text):
                        return chat_event(update)
        return None

    def _dispatch(self, workflow: Workflow, event: TriggerEvent) -> None:
        logger.info(
            "Trigger fired",
            extra={"workflow_id": workflow.id, "trigger": event.type, "event_id": event.event_id},
        )
        self.dispatcher.submit(workflow, event, trigger_user_id=workflow.created_by)


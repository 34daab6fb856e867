"""Unit tests for periodic trigger evaluation."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import Mock

from conftest import FakeClock

from local_workflow_engine.engine.errors import ExternalServiceError
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.storage.markers import schedule_marker_key
from local_workflow_engine.engine.triggers.dispatcher import RunDispatcher
from local_workflow_engine.engine.triggers.evaluator import (
    TriggerEvaluator,
    match_command,
    message_matches,
    parse_transition,
)
from local_workflow_engine.engine.workflow.models import (
    ChatCommandTrigger,
    ChatMessageTrigger,
    GeofenceTransition,
    Workflow,
)
from local_workflow_engine.engine.workflow.state_machine import RunStatus
from local_workflow_engine.integrations.base import ChatEvent, EmailEvent

SENT_AT = datetime(2026, 3, 2, 8, 15, tzinfo=UTC)


def _save(service: AutomationService, workflow: Workflow) -> Workflow:
    saved = service.save_workflow(workflow, user_id=workflow.created_by)
    assert saved.ok, saved.message
    assert saved.value is not None
    return saved.value.workflow


def _email(event_id: str, subject: str) -> EmailEvent:
    return EmailEvent(
        id=event_id, sender="ann@example.com", subject=subject, body="Total: 12", timestamp=SENT_AT
    )


def _chat(update_id: int, text: str, chat_id: str = "100") -> ChatEvent:
    return ChatEvent(
        update_id=update_id, chat_id=chat_id, sender="alice", text=text, timestamp=SENT_AT
    )


def test_same_email_in_two_cycles_runs_once(
    service: AutomationService,
    make_workflow: Callable[..., Workflow],
    email_adapter: Mock,
    chat_adapter: Mock,
) -> None:
    workflow = _save(
        service,
        make_workflow(
            triggers=[{"type": "email_received", "subjectFilter": "invoice"}],
            actions=[
                {"type": "send_chat", "chatId": "100", "text": "New mail: {{email_subject}}"}
            ],
        ),
    )
    email_adapter.list_new.return_value = [_email("m1", "Invoice 42"), _email("m2", "Lunch?")]

    first = service.run_trigger_cycle()
    second = service.run_trigger_cycle()

    assert first.fired == 1
    assert second.fired == 0
    chat_adapter.send_message.assert_called_once_with("100", "New mail: Invoice 42")
    assert service.dedup.is_processed("m1", workflow.id)
    assert not service.dedup.is_processed("m2", workflow.id)

    runs = service.history.for_workflow(workflow.id)
    assert [r.status for r in runs] == [RunStatus.SUCCEEDED]
    assert runs[0].variables["email_from"] == "ann@example.com"

    # The adapter is asked only for mail newer than what was already seen.
    assert email_adapter.list_new.call_args.args[0].since == SENT_AT


def test_processed_email_does_not_fire_after_restart(
    make_service: Callable[..., AutomationService],
    make_workflow: Callable[..., Workflow],
    email_adapter: Mock,
) -> None:
    service = make_service()
    workflow = _save(service, make_workflow(triggers=[{"type": "email_received"}]))
    email_adapter.list_new.return_value = [_email("m1", "Hello")]
    assert service.run_trigger_cycle().fired == 1

    restarted = make_service()
    assert restarted.run_trigger_cycle().fired == 0
    assert len(restarted.history.for_workflow(workflow.id)) == 1


def test_adapter_errors_are_counted_not_raised(
    service: AutomationService,
    make_workflow: Callable[..., Workflow],
    email_adapter: Mock,
    chat_adapter: Mock,
) -> None:
    _save(service, make_workflow(triggers=[{"type": "email_received"}]))
    email_adapter.list_new.side_effect = ExternalServiceError("IMAP down")
    chat_adapter.poll_updates.side_effect = ExternalServiceError("Bot API down")

    report = service.run_trigger_cycle()

    assert report.fired == 0
    assert report.adapter_errors == 2


def test_schedule_fires_once_per_occurrence(
    service: AutomationService, make_workflow: Callable[..., Workflow], clock: FakeClock
) -> None:
    workflow = _save(service, make_workflow())

    clock.set(datetime(2026, 3, 2, 9, 30, 5, tzinfo=UTC))
    assert service.run_trigger_cycle().fired == 1
    clock.set(datetime(2026, 3, 2, 9, 31, 5, tzinfo=UTC))
    assert service.run_trigger_cycle().fired == 0
    clock.set(datetime(2026, 3, 2, 9, 32, 5, tzinfo=UTC))
    assert service.run_trigger_cycle().fired == 0

    marker = service.markers.get(schedule_marker_key(workflow.id, 0))
    assert marker == datetime(2026, 3, 2, 9, 30, tzinfo=UTC).isoformat()
    run = service.history.for_workflow(workflow.id)[0]
    assert run.trigger_type == "time_schedule"
    assert run.variables["scheduled_time"] == marker


def test_disabled_workflows_are_not_evaluated(
    service: AutomationService, make_workflow: Callable[..., Workflow], clock: FakeClock
) -> None:
    _save(service, make_workflow(is_enabled=False))
    clock.set(datetime(2026, 3, 2, 9, 30, tzinfo=UTC))
    assert service.run_trigger_cycle().fired == 0


def test_busy_workflow_is_skipped(service: AutomationService, make_workflow, clock) -> None:
    workflow = _save(service, make_workflow())
    dispatcher = Mock(spec=RunDispatcher)
    dispatcher.is_busy.return_value = True
    evaluator = TriggerEvaluator(
        workflows=service.workflows,
        dedup=service.dedup,
        markers=service.markers,
        adapters=service.adapters,
        dispatcher=dispatcher,
        users=service.users,
        clock=clock,
    )
    clock.set(datetime(2026, 3, 2, 9, 30, tzinfo=UTC))

    report = evaluator.run_cycle()

    assert report.skipped_busy == [workflow.id]
    dispatcher.submit.assert_not_called()


def test_chat_command_routes_arguments_and_advances_offset(
    service: AutomationService, make_workflow: Callable[..., Workflow], chat_adapter: Mock
) -> None:
    workflow = _save(
        service,
        make_workflow(
            triggers=[{"type": "chat_command", "command": "/weather"}],
            actions=[{"type": "reply_chat", "text": "Weather for {{telegram_command_args}}"}],
        ),
    )
    chat_adapter.poll_updates.return_value = [_chat(5, "/weather Paris"), _chat(6, "hello")]

    assert service.run_trigger_cycle().fired == 1
    chat_adapter.send_message.assert_called_once_with("100", "Weather for Paris")
    assert service.dedup.is_processed("chat:100:5", workflow.id)

    # The same updates redelivered do not fire again; the next poll starts after them.
    assert service.run_trigger_cycle().fired == 0
    assert chat_adapter.poll_updates.call_args.args[0] == 7


def test_busy_chat_listener_sees_updates_once_idle(
    service: AutomationService,
    make_workflow: Callable[..., Workflow],
    chat_adapter: Mock,
    clock: FakeClock,
) -> None:
    busy_one = _save(
        service, make_workflow(name="Echo", triggers=[{"type": "chat_message"}])
    )
    idle_one = _save(
        service, make_workflow(name="Audit", triggers=[{"type": "chat_message"}])
    )
    busy_ids = {busy_one.id}
    dispatcher = Mock(spec=RunDispatcher)
    dispatcher.is_busy.side_effect = lambda workflow_id: workflow_id in busy_ids
    evaluator = TriggerEvaluator(
        workflows=service.workflows,
        dedup=service.dedup,
        markers=service.markers,
        adapters=service.adapters,
        dispatcher=dispatcher,
        users=service.users,
        clock=clock,
    )
    chat_adapter.poll_updates.return_value = [_chat(5, "first"), _chat(6, "second")]

    evaluator.run_cycle()

    fired = [c.args[0].id for c in dispatcher.submit.call_args_list]
    assert fired == [idle_one.id, idle_one.id]
    busy_ids.clear()
    dispatcher.submit.reset_mock()

    evaluator.run_cycle()

    assert chat_adapter.poll_updates.call_args.args[0] == 5
    fired = [c.args[0].id for c in dispatcher.submit.call_args_list]
    assert fired == [busy_one.id, busy_one.id]

    dispatcher.submit.reset_mock()
    evaluator.run_cycle()

    assert chat_adapter.poll_updates.call_args.args[0] == 7
    dispatcher.submit.assert_not_called()


def test_chat_approval_reply_resumes_run(
    service: AutomationService, make_workflow: Callable[..., Workflow], chat_adapter: Mock
) -> None:
    workflow = _save(
        service,
        make_workflow(
            triggers=[{"type": "email_received"}],
            actions=[
                {
                    "type": "require_approval",
                    "approverUserId": "bob",
                    "pendingAction": {"type": "send_chat", "chatId": "300", "text": "approved"},
                }
            ]
        ),
    )
    started = service.run_workflow(workflow.id, user_id="alice")
    assert started.value is not None and started.value.status == RunStatus.AWAITING_APPROVAL
    approval_id = started.value.approval_id
    chat_adapter.send_message.reset_mock()

    chat_adapter.poll_updates.return_value = [_chat(9, f"/approve {approval_id}", chat_id="200")]
    service.run_trigger_cycle()

    chat_adapter.send_message.assert_called_once_with("300", "approved")
    run = service.history.get(started.value.execution_id)
    assert run.status == RunStatus.SUCCEEDED


def test_geofence_transition_fires_matching_workflows(
    service: AutomationService, make_workflow: Callable[..., Workflow]
) -> None:
    region = {"geofenceId": "home", "latitude": 52.5, "longitude": 13.4, "radiusMeters": 100}
    workflow = _save(
        service,
        make_workflow(
            triggers=[{"type": "geofence_enter", **region}],
            actions=[{"type": "log", "message": "arrived at {{geofence_id}}"}],
        ),
    )

    entered = service.handle_geofence_transition("home", "entered", place_id="p-1")
    exited = service.handle_geofence_transition("home", "exit")
    elsewhere = service.handle_geofence_transition("office", "enter")

    assert (entered.value, exited.value, elsewhere.value) == (1, 0, 0)
    run = service.history.for_workflow(workflow.id)[0]
    assert run.variables["geofence_transition"] == "enter"
    assert run.variables["place_id"] == "p-1"


def test_unknown_geofence_transition_is_a_validation_failure(service: AutomationService) -> None:
    outcome = service.handle_geofence_transition("home", "teleport")
    assert not outcome.ok
    assert outcome.error_kind == "validation"


def test_trigger_matching_helpers() -> None:
    command = ChatCommandTrigger(command="/remind")
    assert match_command(command, "/remind me at 5") == "me at 5"
    assert match_command(command, "remind") == ""
    assert match_command(command, "/reminders") is None

    assert message_matches(ChatMessageTrigger(match_condition="*"), "anything")
    assert message_matches(ChatMessageTrigger(match_condition="urgent"), "This is URGENT")
    assert not message_matches(ChatMessageTrigger(match_condition="urgent"), "later")

    assert parse_transition("Dwelling_In") == GeofenceTransition.DWELL

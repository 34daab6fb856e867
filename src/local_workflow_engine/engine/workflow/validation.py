"""Structural validation of workflow definitions.

Errors block saving; warnings are reported alongside a successful save.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import date, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from local_workflow_engine.engine.errors import ValidationIssue, WorkflowValidationError
from local_workflow_engine.engine.workflow.conditions import ConditionSyntaxError, parse_condition
from local_workflow_engine.engine.workflow.events import SEED_VARIABLES
from local_workflow_engine.engine.workflow.models import (
    AI_ACTION_TYPES,
    Action,
    BroadcastAction,
    ChatCommandTrigger,
    ConditionalAction,
    DelayAction,
    ExtractKeywordsAction,
    GeofenceTrigger,
    LeafAction,
    Permission,
    RequireApprovalAction,
    ScheduleType,
    SendChatAction,
    SendEmailAction,
    SummarizeAction,
    TimeScheduleTrigger,
    TranslateAction,
    Workflow,
)
from local_workflow_engine.engine.workflow.template import model_variables

MAX_NAME_LENGTH = 100
LONG_DELAY_MINUTES = 24 * 60
_KNOWN_PERMISSIONS = {p.value for p in Permission}

_Report = Callable[[str, str, str], None]


@dataclass(frozen=True, slots=True)
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def parse_time_of_day(value: str) -> time:
    try:
        hours, minutes = value.strip().split(":")
        return time(hour=int(hours), minute=int(minutes))
    except ValueError as e:
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)") from e


def iter_actions(actions: list[Action]) -> Iterator[tuple[str, Action]]:
    """Yield ``(path, action)`` for every action, descending into nested ones."""

    for idx, action in enumerate(actions):
        yield from _iter_action(f"actions[{idx}]", action)


def _iter_action(path: str, action: Action) -> Iterator[tuple[str, Action]]:
    yield path, action
    match action:
        case ConditionalAction(true_action=true_action, false_action=false_action):
            yield from _iter_action(f"{path}.trueAction", true_action)
            if false_action is not None:
                yield from _iter_action(f"{path}.falseAction", false_action)
        case RequireApprovalAction(pending_action=pending):
            yield from _iter_action(f"{path}.pendingAction", pending)


def validate_workflow(workflow: Workflow) -> ValidationResult:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    def error(code: str, message: str, path: str = "") -> None:
        errors.append(ValidationIssue(code=code, message=message, field=path))

    def warn(code: str, message: str, path: str = "") -> None:
        warnings.append(ValidationIssue(code=code, message=message, field=path))

    # Basics
    if not workflow.name.strip():
        error("EMPTY_NAME", "Workflow name cannot be empty", "name")
    elif len(workflow.name) > MAX_NAME_LENGTH:
        warn("LONG_NAME", f"Workflow name is longer than {MAX_NAME_LENGTH} characters", "name")
    if not workflow.created_by.strip():
        error("INVALID_CREATOR", "Workflow must have an owner", "createdBy")
    if not workflow.description.strip():
        warn("EMPTY_DESCRIPTION", "Adding a description helps others understand the workflow")
    if not workflow.triggers:
        error("NO_TRIGGERS", "Workflow must have at least one trigger", "triggers")
    if not workflow.actions:
        error("NO_ACTIONS", "Workflow must have at least one action", "actions")

    # Permissions
    for name in workflow.permissions.shared_permissions:
        if name not in _KNOWN_PERMISSIONS:
            error("UNKNOWN_PERMISSION", f"Unknown permission: {name!r}", "permissions")
    if workflow.is_public and workflow.shared_with:
        warn(
            "PUBLIC_WITH_SHARED",
            "Workflow is public; explicit sharing only matters for non-view permissions",
        )

    # Triggers
    geofence_ids: set[str] = set()
    for idx, trigger in enumerate(workflow.triggers):
        path = f"triggers[{idx}]"
        match trigger:
            case GeofenceTrigger():
                if not trigger.geofence_id.strip():
                    error("EMPTY_GEOFENCE_ID", "Geofence id cannot be empty", path)
                elif trigger.geofence_id in geofence_ids:
                    error(
                        "DUPLICATE_GEOFENCE_ID",
                        f"Geofence id {trigger.geofence_id!r} is used twice",
                        path,
                    )
                geofence_ids.add(trigger.geofence_id)
                if trigger.radius_meters <= 0:
                    error("INVALID_GEOFENCE_RADIUS", "Geofence radius must be positive", path)
                if not (-90 <= trigger.latitude <= 90 and -180 <= trigger.longitude <= 180):
                    error("INVALID_COORDINATES", "Latitude/longitude out of range", path)
                dwell = trigger.loitering_delay_minutes
                if dwell is not None and dwell <= 0:
                    error("INVALID_DWELL_TIME", "Dwell time must be positive", path)
            case ChatCommandTrigger(command=command):
                if not command.strip().lstrip("/"):
                    error("INVALID_CHAT_COMMAND", "Chat command cannot be empty", path)
            case TimeScheduleTrigger():
                _validate_schedule(trigger, path, error)

    # Actions
    for path, action in iter_actions(workflow.actions):
        _validate_action(action, path, error, warn)

    # Variables
    defined = set(workflow.variables) | SEED_VARIABLES
    outputs = {
        a.output_variable
        for _, a in iter_actions(workflow.actions)
        if isinstance(a, LeafAction) and a.output_variable
    }
    defined |= outputs
    used: set[str] = set()
    for path, action in iter_actions(workflow.actions):
        names = model_variables(action)
        if isinstance(action, ConditionalAction):
            try:
                names.append(parse_condition(action.condition).variable)
            except ConditionSyntaxError:
                pass
        for name in names:
            used.add(name)
            if name not in defined:
                warn("UNDEFINED_VARIABLE", f"Variable {name!r} is never set", path)
    for name in sorted(set(workflow.variables) - used):
        warn("UNUSED_VARIABLE", f"Variable {name!r} is defined but never used", "variables")

    return ValidationResult(errors=errors, warnings=warnings)


def _validate_schedule(trigger: TimeScheduleTrigger, path: str, error: _Report) -> None:
    try:
        parse_time_of_day(trigger.time_of_day)
    except ValueError as e:
        error("INVALID_TIME_OF_DAY", str(e), path)
    try:
        ZoneInfo(trigger.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        error("INVALID_TIMEZONE", f"Unknown timezone: {trigger.timezone!r}", path)

    if trigger.schedule_type == ScheduleType.WEEKLY:
        if not trigger.days_of_week:
            error("INVALID_DAYS_OF_WEEK", "Weekly schedule needs at least one day", path)
    if any(d < 1 or d > 7 for d in trigger.days_of_week):
        error("INVALID_DAYS_OF_WEEK", "Days of week must be 1 (Monday) to 7 (Sunday)", path)
    if trigger.schedule_type == ScheduleType.INTERVAL and (
        trigger.interval_minutes is None or trigger.interval_minutes <= 0
    ):
        error("INVALID_INTERVAL", "Interval schedule needs a positive interval", path)
    if trigger.date is not None:
        try:
            date.fromisoformat(trigger.date)
        except ValueError:
            error("INVALID_DATE", f"Invalid date: {trigger.date!r}", path)


def _validate_action(action: Action, path: str, error: _Report, warn: _Report) -> None:
    if isinstance(action, AI_ACTION_TYPES):
        primary = {
            "ai_analyze_text": "input_text",
            "ai_translate": "text",
            "ai_summarize": "content",
            "ai_extract_keywords": "text",
            "ai_sentiment": "text",
            "ai_generate_response": "prompt",
        }[action.type]
        if not str(getattr(action, primary)).strip():
            error("EMPTY_AI_INPUT", "AI action input cannot be empty", path)

    match action:
        case TranslateAction(target_language=language) if not language.strip():
            error("INVALID_TARGET_LANGUAGE", "Target language cannot be empty", path)
        case SummarizeAction(max_length=max_length) if max_length <= 0:
            error("INVALID_MAX_LENGTH", "Summary length must be positive", path)
        case ExtractKeywordsAction(count=count) if count <= 0:
            error("INVALID_KEYWORD_COUNT", "Keyword count must be positive", path)
        case SendEmailAction(to=to, target_user_id=target) if not (to or target):
            error("MISSING_RECIPIENT", "Email needs a recipient or target user", path)
        case SendChatAction(chat_id=chat_id, target_user_id=target) if not (chat_id or target):
            error("MISSING_RECIPIENT", "Chat message needs a chat id or target user", path)
        case BroadcastAction(target_user_ids=targets, platforms=platforms):
            if not targets:
                error("EMPTY_BROADCAST_TARGETS", "Broadcast needs at least one user", path)
            if not platforms:
                error("EMPTY_BROADCAST_PLATFORMS", "Broadcast needs at least one platform", path)
        case ConditionalAction(condition=condition):
            if not condition.strip():
                error("EMPTY_CONDITION", "Condition cannot be empty", path)
            else:
                try:
                    parse_condition(condition)
                except ConditionSyntaxError as e:
                    error("INVALID_CONDITION", str(e), path)
        case DelayAction(minutes=minutes):
            if minutes <= 0:
                error("INVALID_DELAY", "Delay must be positive", path)
            elif minutes > LONG_DELAY_MINUTES:
                warn("LONG_DELAY", "Delay is longer than 24 hours", path)
        case RequireApprovalAction(approver_user_id=approver, timeout_minutes=timeout):
            if not approver.strip():
                error("APPROVAL_WITHOUT_APPROVER", "Approval needs an approver", path)
            if timeout <= 0:
                error("INVALID_APPROVAL_TIMEOUT", "Approval timeout must be positive", path)


def ensure_valid(workflow: Workflow) -> ValidationResult:
    """Validate and raise on errors; returns the result (with warnings) otherwise.

    Raises:
        WorkflowValidationError: If the workflow has any validation error.
    """

    result = validate_workflow(workflow)
    if not result.is_valid:
        summary = "; ".join(issue.message for issue in result.errors)
        raise WorkflowValidationError(f"Invalid workflow: {summary}", result.errors)
    return result

"""Persisted workflow definitions.

Triggers and actions are closed tagged unions keyed by ``type``. Code that
consumes them dispatches with ``match`` on the concrete class, so adding a new
kind means touching the union here and each ``match`` that handles it.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from local_workflow_engine.engine.storage.json_store import utc_iso_now


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on disk and over the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# Triggers


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


class GeofenceTransition(str, Enum):
    ENTER = "enter"
    EXIT = "exit"
    DWELL = "dwell"


class EmailReceivedTrigger(CamelModel):
    type: Literal["email_received"] = "email_received"
    from_filter: str | None = None
    subject_filter: str | None = None
    body_filter: str | None = None


class ChatCommandTrigger(CamelModel):
    type: Literal["chat_command"] = "chat_command"
    command: str


class ChatMessageTrigger(CamelModel):
    """Fires on any chat message containing ``match_condition`` (empty or ``*`` = all)."""

    type: Literal["chat_message"] = "chat_message"
    match_condition: str = ""


class GeofenceTrigger(CamelModel):
    type: Literal["geofence_enter", "geofence_exit", "geofence_dwell"]
    geofence_id: str
    latitude: float
    longitude: float
    radius_meters: float
    place_id: str | None = None
    loitering_delay_minutes: int | None = None

    @property
    def transition(self) -> GeofenceTransition:
        return GeofenceTransition(self.type.removeprefix("geofence_"))


class TimeScheduleTrigger(CamelModel):
    type: Literal["time_schedule"] = "time_schedule"
    schedule_type: ScheduleType
    time_of_day: str = "09:00"
    days_of_week: list[int] = Field(default_factory=list)
    interval_minutes: int | None = None
    date: str | None = None
    timezone: str = "UTC"


Trigger = Annotated[
    Union[
        EmailReceivedTrigger,
        ChatCommandTrigger,
        ChatMessageTrigger,
        GeofenceTrigger,
        TimeScheduleTrigger,
    ],
    Field(discriminator="type"),
]


# Actions


class Platform(str, Enum):
    EMAIL = "email"
    CHAT = "chat"


class LeafAction(CamelModel):
    output_variable: str | None = None


class AnalyzeTextAction(LeafAction):
    type: Literal["ai_analyze_text"] = "ai_analyze_text"
    input_text: str
    analysis_prompt: str = "Analyze the following text and describe its key points."


class TranslateAction(LeafAction):
    type: Literal["ai_translate"] = "ai_translate"
    text: str
    target_language: str


class SummarizeAction(LeafAction):
    type: Literal["ai_summarize"] = "ai_summarize"
    content: str
    max_length: int = 100


class ExtractKeywordsAction(LeafAction):
    type: Literal["ai_extract_keywords"] = "ai_extract_keywords"
    text: str
    count: int = 5


class SentimentAction(LeafAction):
    type: Literal["ai_sentiment"] = "ai_sentiment"
    text: str


class GenerateResponseAction(LeafAction):
    type: Literal["ai_generate_response"] = "ai_generate_response"
    prompt: str
    context: str = ""


class SendEmailAction(LeafAction):
    """Send an email to ``to`` or, when empty, to ``target_user_id``'s address."""

    type: Literal["send_email"] = "send_email"
    target_user_id: str | None = None
    to: str | None = None
    subject: str
    body: str


class ReplyEmailAction(LeafAction):
    type: Literal["reply_email"] = "reply_email"
    message_id: str = "{{email_id}}"
    body: str


class SendChatAction(LeafAction):
    type: Literal["send_chat"] = "send_chat"
    target_user_id: str | None = None
    chat_id: str | None = None
    text: str


class ReplyChatAction(LeafAction):
    type: Literal["reply_chat"] = "reply_chat"
    chat_id: str = "{{telegram_chat_id}}"
    text: str


class BroadcastAction(LeafAction):
    type: Literal["broadcast"] = "broadcast"
    target_user_ids: list[str]
    platforms: list[Platform] = Field(default_factory=lambda: [Platform.CHAT])
    content: str
    subject: str = "Broadcast Message"


class LogAction(LeafAction):
    type: Literal["log"] = "log"
    message: str
    level: Literal["debug", "info", "warning", "error"] = "info"


class ConditionalAction(CamelModel):
    type: Literal["conditional"] = "conditional"
    condition: str
    true_action: Action
    false_action: Action | None = None


class DelayAction(CamelModel):
    type: Literal["delay"] = "delay"
    minutes: int


class RequireApprovalAction(CamelModel):
    type: Literal["require_approval"] = "require_approval"
    approver_user_id: str
    pending_action: Action
    timeout_minutes: int = 60
    message: str = "Approval required"


Action = Annotated[
    Union[
        AnalyzeTextAction,
        TranslateAction,
        SummarizeAction,
        ExtractKeywordsAction,
        SentimentAction,
        GenerateResponseAction,
        SendEmailAction,
        ReplyEmailAction,
        SendChatAction,
        ReplyChatAction,
        BroadcastAction,
        LogAction,
        ConditionalAction,
        DelayAction,
        RequireApprovalAction,
    ],
    Field(discriminator="type"),
]

ConditionalAction.model_rebuild()
RequireApprovalAction.model_rebuild()

AI_ACTION_TYPES = (
    AnalyzeTextAction,
    TranslateAction,
    SummarizeAction,
    ExtractKeywordsAction,
    SentimentAction,
    GenerateResponseAction,
)


# Workflow


class WorkflowType(str, Enum):
    PERSONAL = "personal"
    TEAM = "team"
    CROSS_USER = "cross_user"


class Permission(str, Enum):
    VIEW = "view"
    EXECUTE = "execute"
    EDIT = "edit"
    DELETE = "delete"
    SHARE = "share"


class WorkflowPermissions(CamelModel):
    """What ``shared_with`` users may do; the owner is never restricted by this."""

    shared_permissions: list[str] = Field(
        default_factory=lambda: [Permission.VIEW.value, Permission.EXECUTE.value]
    )
    can_modify: list[str] = Field(default_factory=list)


class Workflow(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    created_by: str
    workflow_type: WorkflowType = WorkflowType.PERSONAL
    triggers: list[Trigger] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    is_public: bool = False
    is_enabled: bool = True
    permissions: WorkflowPermissions = Field(default_factory=WorkflowPermissions)
    shared_with: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_iso_now)
    updated_at: str = Field(default_factory=utc_iso_now)

    def geofence_triggers(self) -> list[GeofenceTrigger]:
        return [t for t in self.triggers if isinstance(t, GeofenceTrigger)]

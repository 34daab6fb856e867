from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from local_workflow_engine.integrations.base import ChatEvent, EmailEvent


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """A signal emitted by a trigger.

    Triggers detect external facts (mail, chat, location, clock) and emit events.
    Triggers never perform work; ``payload`` becomes the seed of the run's
    variable context.
    """

    type: str
    timestamp: datetime
    payload: dict[str, str] = field(default_factory=dict)
    event_id: str | None = None

    def seed_variables(self) -> dict[str, str]:
        seed = dict(self.payload)
        seed["trigger_type"] = self.type
        seed["trigger_timestamp"] = self.timestamp.isoformat()
        return seed


def email_event(event: EmailEvent) -> TriggerEvent:
    return TriggerEvent(
        type="new_email",
        timestamp=event.timestamp,
        event_id=event.id,
        payload={
            "source": "email",
            "email_id": event.id,
            "trigger_email_id": event.id,
            "email_from": event.sender,
            "email_subject": event.subject,
            "email_body": event.body,
        },
    )


def chat_event(event: ChatEvent, *, command_args: str | None = None) -> TriggerEvent:
    payload = {
        "source": "chat",
        "telegram_message": event.text,
        "telegram_chat_id": event.chat_id,
        "telegram_from": event.sender,
    }
    if command_args is not None:
        payload["telegram_command_args"] = command_args
    return TriggerEvent(
        type="chat_message" if command_args is None else "chat_command",
        timestamp=event.timestamp,
        event_id=f"chat:{event.chat_id}:{event.update_id}",
        payload=payload,
    )


def geofence_event(
    *, geofence_id: str, transition: str, timestamp: datetime, place_id: str | None
) -> TriggerEvent:
    return TriggerEvent(
        type=f"geofence_{transition}",
        timestamp=timestamp,
        payload={
            "source": "geofence",
            "geofence_id": geofence_id,
            "geofence_transition": transition,
            "place_id": place_id or "",
        },
    )


def schedule_event(*, schedule_type: str, scheduled_time: str, timestamp: datetime) -> TriggerEvent:
    return TriggerEvent(
        type="time_schedule",
        timestamp=timestamp,
        payload={
            "source": "schedule",
            "schedule_type": schedule_type,
            "scheduled_time": scheduled_time,
        },
    )


def manual_event(*, timestamp: datetime, variables: dict[str, str] | None = None) -> TriggerEvent:
    payload = {"source": "manual"}
    payload.update(variables or {})
    return TriggerEvent(type="manual", timestamp=timestamp, payload=payload)


# Every name a trigger (or the pipeline itself) may seed into a run's context.
SEED_VARIABLES = frozenset(
    {
        "source",
        "trigger_type",
        "trigger_timestamp",
        "workflow_id",
        "workflow_name",
        "trigger_user_id",
        "email_id",
        "trigger_email_id",
        "email_from",
        "email_subject",
        "email_body",
        "telegram_message",
        "telegram_chat_id",
        "telegram_from",
        "telegram_command_args",
        "geofence_id",
        "geofence_transition",
        "place_id",
        "schedule_type",
        "scheduled_time",
    }
)

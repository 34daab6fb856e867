"""Contracts for the external collaborators the engine consumes.

Adapters are thin and swappable. Each one raises
:class:`~local_workflow_engine.engine.errors.ExternalServiceError` when the
remote side fails; the engine decides whether that is fatal.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True, slots=True)
class EmailEvent:
    id: str
    sender: str
    subject: str
    body: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class EmailFilter:
    """Filter passed to :meth:`EmailAdapter.list_new`; ``None`` fields match anything."""

    sender: str | None = None
    subject: str | None = None
    body: str | None = None
    since: datetime | None = None


@dataclass(frozen=True, slots=True)
class ChatEvent:
    update_id: int
    chat_id: str
    sender: str
    text: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class GeofenceRegion:
    id: str
    latitude: float
    longitude: float
    radius_meters: float
    transition_mask: frozenset[str] = field(default_factory=frozenset)
    loitering_delay_minutes: int | None = None


class EmailAdapter(Protocol):
    def list_new(self, email_filter: EmailFilter) -> list[EmailEvent]: ...

    def send(self, to: str, subject: str, body: str) -> None: ...

    def reply(self, message_id: str, body: str) -> None: ...


class ChatAdapter(Protocol):
    def poll_updates(self, offset: int | None) -> list[ChatEvent]: ...

    def send_message(self, chat_id: str, text: str) -> None: ...


class GeofencePlatform(Protocol):
    """OS geofencing subsystem.

    ``register_regions`` replaces the whole registered set in one call.
    """

    def register_regions(self, regions: Sequence[GeofenceRegion]) -> None: ...


class AdapterRegistry:
    """Per-user email and chat adapters with an optional shared default."""

    def __init__(
        self,
        *,
        default_email: EmailAdapter | None = None,
        default_chat: ChatAdapter | None = None,
    ) -> None:
        self._email: dict[str, EmailAdapter] = {}
        self._chat: dict[str, ChatAdapter] = {}
        self.default_email = default_email
        self.default_chat = default_chat

    def register_email(self, user_id: str, adapter: EmailAdapter) -> None:
        self._email[user_id] = adapter

    def register_chat(self, user_id: str, adapter: ChatAdapter) -> None:
        self._chat[user_id] = adapter

    def email_for(self, user_id: str) -> EmailAdapter | None:
        return self._email.get(user_id, self.default_email)

    def chat_for(self, user_id: str) -> ChatAdapter | None:
        return self._chat.get(user_id, self.default_chat)

    def chat_adapters(self) -> list[tuple[str, ChatAdapter]]:
        """Distinct chat adapters keyed by a stable checkpoint name.

        A chat bot polls one update stream regardless of how many users share it,
        so each adapter instance is polled once per evaluator cycle.
        """

        out: list[tuple[str, ChatAdapter]] = []
        seen: set[int] = set()
        if self.default_chat is not None:
            out.append(("default", self.default_chat))
            seen.add(id(self.default_chat))
        for user_id, adapter in sorted(self._chat.items()):
            if id(adapter) in seen:
                continue
            seen.add(id(adapter))
            out.append((f"user:{user_id}", adapter))
        return out

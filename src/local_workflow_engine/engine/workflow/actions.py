"""Execution of leaf actions.

Leaf actions receive parameters that are already template-resolved and return
an :class:`ActionResult`; they never raise for adapter failures. Control-flow
actions (conditional, delay, approval) are handled by the pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from local_workflow_engine.engine.errors import AutomationError, NotFoundError
from local_workflow_engine.engine.storage.users import UserStore
from local_workflow_engine.engine.workflow.ai import AIProcessor
from local_workflow_engine.engine.workflow.models import (
    AI_ACTION_TYPES,
    BroadcastAction,
    LeafAction,
    LogAction,
    Platform,
    ReplyChatAction,
    ReplyEmailAction,
    SendChatAction,
    SendEmailAction,
)
from local_workflow_engine.integrations.base import AdapterRegistry, ChatAdapter, EmailAdapter

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str
    details: dict[str, object] | None = None
    output: str | None = None


class ActionExecutor:
    """Runs one resolved leaf action on behalf of a workflow owner."""

    def __init__(self, *, adapters: AdapterRegistry, users: UserStore, ai: AIProcessor) -> None:
        self.adapters = adapters
        self.users = users
        self.ai = ai

    def execute(self, action: LeafAction, *, owner_id: str) -> ActionResult:
        try:
            return self._execute(action, owner_id=owner_id)
        except AutomationError as e:
            logger.warning(
                "Action failed",
                extra={"action_type": getattr(action, "type", "?"), "error": str(e)},
            )
            return ActionResult(ok=False, message=str(e), details={"error_kind": e.kind})

    def _execute(self, action: LeafAction, *, owner_id: str) -> ActionResult:
        if isinstance(action, AI_ACTION_TYPES):
            output = self.ai.run(action)
            return ActionResult(ok=True, message=f"{action.type} completed", output=output)

        match action:
            case SendEmailAction(to=to, target_user_id=target, subject=subject, body=body):
                address = to or (self.users.get(target).email if target else None)
                if not address:
                    return ActionResult(ok=False, message="No email recipient")
                self._email(owner_id).send(address, subject, body)
                return ActionResult(ok=True, message=f"Email sent to {address}", output=address)

            case ReplyEmailAction(message_id=message_id, body=body):
                self._email(owner_id).reply(message_id, body)
                return ActionResult(ok=True, message=f"Replied to email {message_id}")

            case SendChatAction(chat_id=chat_id, target_user_id=target, text=text):
                destination = chat_id or (self.users.get(target).chat_id if target else None)
                if not destination:
                    return ActionResult(ok=False, message="No chat recipient")
                self._chat(owner_id).send_message(destination, text)
                return ActionResult(ok=True, message=f"Chat message sent to {destination}")

            case ReplyChatAction(chat_id=chat_id, text=text):
                self._chat(owner_id).send_message(chat_id, text)
                return ActionResult(ok=True, message=f"Replied in chat {chat_id}")

            case BroadcastAction():
                return self._broadcast(action, owner_id=owner_id)

            case LogAction(message=message, level=level):
                logger.log(_LOG_LEVELS[level], message, extra={"owner_id": owner_id})
                return ActionResult(ok=True, message="Logged", output=message)

        return ActionResult(ok=False, message=f"Unsupported action: {type(action).__name__}")

    def _broadcast(self, action: BroadcastAction, *, owner_id: str) -> ActionResult:
        """Deliver to every (user, platform) pair; one failed target never stops the others."""

        delivered: list[str] = []
        failures: dict[str, str] = {}
        for user_id in action.target_user_ids:
            for platform in action.platforms:
                target = f"{user_id}/{platform.value}"
                try:
                    user = self.users.get(user_id)
                    if platform == Platform.EMAIL:
                        if not user.email:
                            raise NotFoundError(f"No email address for {user_id}")
                        self._email(owner_id).send(user.email, action.subject, action.content)
                    else:
                        if not user.chat_id:
                            raise NotFoundError(f"No chat id for {user_id}")
                        self._chat(owner_id).send_message(user.chat_id, action.content)
                    delivered.append(target)
                except AutomationError as e:
                    failures[target] = str(e)
                    logger.warning(
                        "Broadcast target failed", extra={"target": target, "error": str(e)}
                    )

        details: dict[str, object] = {"delivered": delivered, "failed": failures}
        total = len(delivered) + len(failures)
        message = f"Broadcast delivered to {len(delivered)}/{total} targets"
        if failures:
            message += "; failed: " + ", ".join(f"{k} ({v})" for k, v in failures.items())
        return ActionResult(
            ok=bool(delivered) or total == 0,
            message=message,
            details=details,
            output=str(len(delivered)),
        )

    def _email(self, owner_id: str) -> EmailAdapter:
        adapter = self.adapters.email_for(owner_id)
        if adapter is None:
            raise NotFoundError(f"No email adapter configured for {owner_id}")
        return adapter

    def _chat(self, owner_id: str) -> ChatAdapter:
        adapter = self.adapters.chat_for(owner_id)
        if adapter is None:
            raise NotFoundError(f"No chat adapter configured for {owner_id}")
        return adapter

"""Telegram Bot API chat adapter.

Only the two calls the engine needs are implemented: long-poll style
``getUpdates`` (with a zero timeout, the evaluator owns the polling cadence) and
``sendMessage``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import requests

from local_workflow_engine.engine.errors import ExternalServiceError
from local_workflow_engine.integrations.base import ChatEvent

logger = logging.getLogger(__name__)

_AUTH_STATUS_CODES = {401, 403, 404}


class TelegramChatAdapter:
    """Chat adapter backed by a Telegram bot token."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        if not token.strip():
            raise ValueError("Telegram bot token is required")
        self._url = f"{base_url.rstrip('/')}/bot{token}"
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        try:
            resp = self._session.post(
                f"{self._url}/{method}", json=payload, timeout=self._timeout
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"Telegram {method} failed: {e}", retryable=True) from e

        if resp.status_code in _AUTH_STATUS_CODES:
            raise ExternalServiceError(
                f"Telegram {method} rejected the bot token (HTTP {resp.status_code})",
                retryable=False,
            )
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"Telegram {method} failed (HTTP {resp.status_code}): {resp.text[:200]}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )

        body = resp.json()
        if not body.get("ok", False):
            raise ExternalServiceError(
                f"Telegram {method} returned an error: {body.get('description', 'unknown')}",
                retryable=False,
            )
        return body.get("result")

    def poll_updates(self, offset: int | None) -> list[ChatEvent]:
        payload: dict[str, Any] = {"timeout": 0, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset

        events: list[ChatEvent] = []
        for update in self._call("getUpdates", payload) or []:
            message = update.get("message") or {}
            text = message.get("text")
            if not isinstance(text, str):
                continue
            sender = message.get("from") or {}
            events.append(
                ChatEvent(
                    update_id=int(update["update_id"]),
                    chat_id=str((message.get("chat") or {}).get("id", "")),
                    sender=str(sender.get("username") or sender.get("id", "")),
                    text=text,
                    timestamp=datetime.fromtimestamp(int(message.get("date", 0)), tz=UTC),
                )
            )
        logger.debug("Polled Telegram updates", extra={"count": len(events), "offset": offset})
        return events

    def send_message(self, chat_id: str, text: str) -> None:
        self._call("sendMessage", {"chat_id": chat_id, "text": text})

"""Unit tests for the Telegram chat adapter."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock

import pytest
import requests

from local_workflow_engine.engine.errors import ExternalServiceError
from local_workflow_engine.integrations.telegram import TelegramChatAdapter


def _response(status_code: int = 200, body: Any = None, text: str = "") -> Mock:
    resp = Mock(spec=requests.Response)
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = body if body is not None else {"ok": True, "result": []}
    return resp


@pytest.fixture
def session() -> Mock:
    return Mock(spec=requests.Session)


@pytest.fixture
def adapter(session: Mock) -> TelegramChatAdapter:
    return TelegramChatAdapter(token="123:abc", base_url="https://bot.test/", session=session)


def test_token_is_required() -> None:
    with pytest.raises(ValueError, match="token is required"):
        TelegramChatAdapter(token="  ")


def test_poll_updates_parses_text_messages(adapter: TelegramChatAdapter, session: Mock) -> None:
    session.post.return_value = _response(
        body={
            "ok": True,
            "result": [
                {
                    "update_id": 41,
                    "message": {
                        "text": "/weather Paris",
                        "chat": {"id": 100},
                        "from": {"id": 7, "username": "alice"},
                        "date": 1772442000,
                    },
                },
                {"update_id": 42, "message": {"photo": [], "chat": {"id": 100}}},
                {"update_id": 43, "message": {"text": "hi", "chat": {"id": -5}, "from": {"id": 9}}},
            ],
        }
    )

    events = adapter.poll_updates(40)

    assert [(e.update_id, e.chat_id, e.sender, e.text) for e in events] == [
        (41, "100", "alice", "/weather Paris"),
        (43, "-5", "9", "hi"),
    ]
    assert events[0].timestamp == datetime.fromtimestamp(1772442000, tz=UTC)
    url = session.post.call_args.args[0]
    assert url == "https://bot.test/bot123:abc/getUpdates"
    assert session.post.call_args.kwargs["json"]["offset"] == 40


def test_first_poll_sends_no_offset(adapter: TelegramChatAdapter, session: Mock) -> None:
    session.post.return_value = _response()
    assert adapter.poll_updates(None) == []
    assert "offset" not in session.post.call_args.kwargs["json"]


def test_send_message(adapter: TelegramChatAdapter, session: Mock) -> None:
    session.post.return_value = _response(body={"ok": True, "result": {"message_id": 1}})

    adapter.send_message("100", "hello")

    session.post.assert_called_once_with(
        "https://bot.test/bot123:abc/sendMessage",
        json={"chat_id": "100", "text": "hello"},
        timeout=15.0,
    )


@pytest.mark.parametrize(
    ("status_code", "retryable"),
    [(401, False), (404, False), (400, False), (429, True), (502, True)],
)
def test_http_errors_map_to_external_service_errors(
    adapter: TelegramChatAdapter, session: Mock, status_code: int, retryable: bool
) -> None:
    session.post.return_value = _response(status_code=status_code, text="nope")

    with pytest.raises(ExternalServiceError) as excinfo:
        adapter.send_message("100", "hello")

    assert excinfo.value.retryable is retryable
    assert str(status_code) in excinfo.value.message


def test_api_level_error_is_not_retryable(adapter: TelegramChatAdapter, session: Mock) -> None:
    session.post.return_value = _response(
        body={"ok": False, "description": "Bad Request: chat not found"}
    )

    with pytest.raises(ExternalServiceError, match="chat not found") as excinfo:
        adapter.send_message("999", "hello")
    assert not excinfo.value.retryable


def test_network_errors_are_retryable(adapter: TelegramChatAdapter, session: Mock) -> None:
    session.post.side_effect = requests.ConnectionError("connection reset")

    with pytest.raises(ExternalServiceError) as excinfo:
        adapter.poll_updates(None)
    assert excinfo.value.retryable


def test_close_closes_session(adapter: TelegramChatAdapter, session: Mock) -> None:
    adapter.close()
    session.close.assert_called_once()

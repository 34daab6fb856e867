"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from local_workflow_engine.engine.config import EngineSettings
from local_workflow_engine.engine.service import AutomationService
from local_workflow_engine.engine.storage.users import WorkflowUser
from local_workflow_engine.engine.workflow.models import Workflow
from local_workflow_engine.integrations.base import (
    AdapterRegistry,
    ChatAdapter,
    EmailAdapter,
    GeofencePlatform,
)
from local_workflow_engine.llm.engine import InferenceEngine

_ENV_VARS = (
    "LOG_LEVEL",
    "WORKFLOW_STATE_PATH",
    "WORKFLOW_TELEGRAM_BOT_TOKEN",
    "WORKFLOW_INFERENCE_PROVIDER",
    "WORKFLOW_INFERENCE_MODEL_PATH",
    "WORKFLOW_INFERENCE_OPENAI_API_KEY",
    "WORKFLOW_RUN_TIMEOUT_SECONDS",
    "WORKFLOW_TASK_RETRY_BACKOFF_SECONDS",
    "WORKFLOW_CORS_ORIGINS",
    "WORKFLOW_SERVER_RUN_LOOPS",
    "WORKFLOW_SWEEP_INTERVAL_SECONDS",
)


class FakeClock:
    """Mutable clock injected wherever components take ``clock=``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:  # noqa: A003
        self.now = value


class FakeEngine(InferenceEngine):
    """In-memory inference engine.

    ``reply`` maps a prompt to the generated text; the text is streamed word by
    word so cancellation can land between chunks.
    """

    def __init__(self, reply: Callable[[str], str] | None = None, *, loaded: bool = True) -> None:
        super().__init__()
        self.reply = reply or (lambda prompt: "ok")
        self.loaded = loaded
        self.prompts: list[str] = []
        self.images: list[Path] = []
        self.load_calls: list[str] = []

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    def load(self, model_path: str | Path) -> bool:
        self.load_calls.append(str(model_path))
        self.loaded = True
        return True

    def _stream_text(self, prompt: str) -> Iterator[str]:
        self.prompts.append(prompt)
        text = self.reply(prompt)
        words = text.split(" ")
        for idx, word in enumerate(words):
            yield word if idx == len(words) - 1 else word + " "

    def _stream_multimodal(self, prompt: str, image: Path) -> Iterator[str]:
        self.images.append(image)
        return self._stream_text(prompt)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    return tmp_path / "workflow_state"


@pytest.fixture
def settings(
    tmp_path: Path, state_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> EngineSettings:
    """Engine settings isolated from the developer's environment and .env."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WORKFLOW_STATE_PATH", str(state_dir))
    monkeypatch.setenv("WORKFLOW_TASK_RETRY_BACKOFF_SECONDS", "0")
    return EngineSettings()


@pytest.fixture
def clock() -> FakeClock:
    # Slightly ahead of wall time: records stamped with the real time are already due.
    return FakeClock(datetime.now(tz=UTC).replace(microsecond=0) + timedelta(minutes=1))


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def email_adapter() -> Mock:
    adapter = Mock(spec=EmailAdapter)
    adapter.list_new.return_value = []
    return adapter


@pytest.fixture
def chat_adapter() -> Mock:
    adapter = Mock(spec=ChatAdapter)
    adapter.poll_updates.return_value = []
    return adapter


@pytest.fixture
def geofence_platform() -> Mock:
    return Mock(spec=GeofencePlatform)


@pytest.fixture
def make_service(
    settings: EngineSettings,
    email_adapter: Mock,
    chat_adapter: Mock,
    geofence_platform: Mock,
    engine: FakeEngine,
    clock: FakeClock,
) -> Callable[..., AutomationService]:
    """Build services over the same state directory (a second call simulates a restart)."""

    def _make(**overrides: Any) -> AutomationService:
        kwargs: dict[str, Any] = {
            "adapters": AdapterRegistry(default_email=email_adapter, default_chat=chat_adapter),
            "engine": engine,
            "geofence_platform": geofence_platform,
            "clock": clock,
            "inline_runs": True,
        }
        kwargs.update(overrides)
        return AutomationService(settings, **kwargs)

    return _make


@pytest.fixture
def service(make_service: Callable[..., AutomationService]) -> AutomationService:
    svc = make_service()
    svc.users.upsert(WorkflowUser(id="alice", email="alice@example.com", chat_id="100"))
    svc.users.upsert(WorkflowUser(id="bob", email="bob@example.com", chat_id="200"))
    svc.users.upsert(WorkflowUser(id="carol", email=None, chat_id=None))
    return svc


@pytest.fixture
def make_workflow() -> Callable[..., Workflow]:
    """Build a valid workflow; defaults to a daily trigger and a single log action."""

    def _make(**fields: Any) -> Workflow:
        data: dict[str, Any] = {
            "name": "Morning digest",
            "description": "Test workflow",
            "created_by": "alice",
            "triggers": [
                {"type": "time_schedule", "scheduleType": "daily", "timeOfDay": "09:30"}
            ],
            "actions": [{"type": "log", "message": "ran {{workflow_name}}"}],
        }
        data.update(fields)
        return Workflow.model_validate(data)

    return _make

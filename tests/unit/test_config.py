"""Unit tests for configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from local_workflow_engine.engine.config import EngineSettings, InferenceConfig


def test_engine_settings_defaults(settings: EngineSettings, state_dir: Path) -> None:
    """Test engine settings defaults (state path comes from the fixture env)."""
    assert settings.log_level == "INFO"
    assert settings.state_path == state_dir
    assert settings.trigger_interval_seconds == 30.0
    assert settings.run_timeout_seconds == 600.0
    assert settings.schedule_tolerance_minutes == 1
    assert settings.telegram_bot_token == ""
    assert isinstance(settings.inference, InferenceConfig)


def test_state_files_live_under_state_path(settings: EngineSettings, state_dir: Path) -> None:
    files = [
        settings.workflows_file,
        settings.users_file,
        settings.tasks_file,
        settings.processed_events_file,
        settings.history_file,
        settings.continuations_file,
        settings.approvals_file,
        settings.markers_file,
    ]
    assert all(f.parent == state_dir for f in files)
    assert len({f.name for f in files}) == len(files)


def test_environment_overrides(settings: EngineSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("WORKFLOW_RUN_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("WORKFLOW_TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("WORKFLOW_INFERENCE_PROVIDER", "openai")
    monkeypatch.setenv("WORKFLOW_INFERENCE_OPENAI_API_KEY", "sk-test")

    loaded = EngineSettings()

    assert loaded.log_level == "debug"
    assert loaded.run_timeout_seconds == 30.0
    assert loaded.telegram_bot_token == "123:abc"
    assert loaded.inference.provider == "openai"
    assert loaded.inference.openai_api_key == "sk-test"


def test_env_file_is_read(
    settings: EngineSettings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that a local .env file is honoured."""
    monkeypatch.delenv("WORKFLOW_STATE_PATH")
    env_file = tmp_path / "custom.env"
    env_file.write_text("WORKFLOW_STATE_PATH=/var/lib/workflows\n", encoding="utf-8")

    loaded = EngineSettings(_env_file=env_file)

    assert loaded.state_path == Path("/var/lib/workflows")


def test_unknown_log_level_is_rejected(
    settings: EngineSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError, match="Unsupported LOG_LEVEL"):
        EngineSettings()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKFLOW_TRIGGER_INTERVAL_SECONDS", "0"),
        ("WORKFLOW_SCHEDULE_TOLERANCE_MINUTES", "45"),
        ("WORKFLOW_MAX_CONCURRENT_RUNS", "0"),
    ],
)
def test_out_of_range_values_are_rejected(
    settings: EngineSettings, monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        EngineSettings()


def test_inference_config_defaults(settings: EngineSettings) -> None:
    config = InferenceConfig()

    assert config.provider == "llama"
    assert config.model_path is None
    assert config.openai_model == "gpt-4o-mini"
    assert config.n_ctx == 4096
    assert config.max_tokens == 512

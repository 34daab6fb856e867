"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

All persisted state lives under a single directory (`WORKFLOW_STATE_PATH`) so a
restart picks up exactly where the previous process stopped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InferenceConfig(BaseSettings):
    """Configuration for the inference engine adapter."""

    provider: Literal["llama", "openai"] = Field(
        default="llama",
        description="Inference backend to use",
    )

    # On-device (llama.cpp) settings
    model_path: Path | None = Field(
        default=None,
        description="Path to a GGUF model file loaded at startup",
    )
    clip_model_path: Path | None = Field(
        default=None,
        description="Vision projector (mmproj) enabling image analysis with llava-style models",
    )
    n_ctx: int = Field(
        default=4096,
        gt=0,
        description="Context window size",
    )
    n_threads: int | None = Field(
        default=None,
        description="Number of threads (None = auto)",
    )

    # Hosted (OpenAI) settings
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use",
    )

    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature",
    )
    max_tokens: int = Field(
        default=512,
        gt=0,
        description="Maximum tokens generated per call",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_INFERENCE_",
        env_file=".env",
        extra="ignore",
    )


class EngineSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - LOG_LEVEL                              (optional)
    - WORKFLOW_STATE_PATH                    (optional)
    - WORKFLOW_TRIGGER_INTERVAL_SECONDS      (optional)
    - WORKFLOW_TASK_POLL_INTERVAL_SECONDS    (optional)
    - WORKFLOW_TELEGRAM_BOT_TOKEN            (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        validation_alias="WORKFLOW_STATE_PATH",
        description="Directory where workflows, queues and history are persisted",
    )

    trigger_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="WORKFLOW_TRIGGER_INTERVAL_SECONDS",
        description="How often the trigger evaluator polls enabled workflows",
    )
    task_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias="WORKFLOW_TASK_POLL_INTERVAL_SECONDS",
        description=(
            "Scheduler tick for the background task consumer. The same tick resumes "
            "delayed runs and expires overdue approvals."
        ),
    )

    task_retry_backoff_seconds: float = Field(
        default=60.0,
        ge=0,
        validation_alias="WORKFLOW_TASK_RETRY_BACKOFF_SECONDS",
        description="Delay before a failed background task becomes eligible again",
    )
    task_retry_exponential: bool = Field(
        default=False,
        validation_alias="WORKFLOW_TASK_RETRY_EXPONENTIAL",
        description="Double the retry backoff on every attempt",
    )

    dedup_retention_days: int = Field(
        default=30,
        ge=1,
        validation_alias="WORKFLOW_DEDUP_RETENTION_DAYS",
        description="Processed-event records older than this are purged",
    )
    history_retention_days: int = Field(
        default=30,
        ge=1,
        validation_alias="WORKFLOW_HISTORY_RETENTION_DAYS",
        description="Execution records older than this are purged",
    )
    sweep_interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        validation_alias="WORKFLOW_SWEEP_INTERVAL_SECONDS",
        description=(
            "How often the consumer tick purges processed events and execution records "
            "past their retention window"
        ),
    )
    history_max_per_workflow: int = Field(
        default=50,
        ge=1,
        validation_alias="WORKFLOW_HISTORY_MAX_PER_WORKFLOW",
        description="Newest execution records kept per workflow",
    )

    run_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        validation_alias="WORKFLOW_RUN_TIMEOUT_SECONDS",
        description="Upper bound on a single pipeline run, checked between actions",
    )
    max_concurrent_runs: int = Field(
        default=4,
        ge=1,
        validation_alias="WORKFLOW_MAX_CONCURRENT_RUNS",
        description="Worker threads used for evaluator-fired runs",
    )
    schedule_tolerance_minutes: int = Field(
        default=1,
        ge=0,
        le=30,
        validation_alias="WORKFLOW_SCHEDULE_TOLERANCE_MINUTES",
        description="Half-width of the window around a scheduled time-of-day",
    )

    telegram_bot_token: str = Field(
        default="",
        validation_alias="WORKFLOW_TELEGRAM_BOT_TOKEN",
        description="Bot token for the Telegram chat adapter (chat triggers disabled if empty)",
    )

    inference: InferenceConfig = Field(
        default_factory=InferenceConfig,
        description="Inference engine configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_log_level(self) -> EngineSettings:
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {self.log_level}")
        return self

    @property
    def workflows_file(self) -> Path:
        return self.state_path / "workflows.json"

    @property
    def users_file(self) -> Path:
        return self.state_path / "users.json"

    @property
    def tasks_file(self) -> Path:
        return self.state_path / "background_tasks.json"

    @property
    def processed_events_file(self) -> Path:
        return self.state_path / "processed_events.json"

    @property
    def history_file(self) -> Path:
        return self.state_path / "execution_history.json"

    @property
    def continuations_file(self) -> Path:
        return self.state_path / "continuations.json"

    @property
    def approvals_file(self) -> Path:
        return self.state_path / "approvals.json"

    @property
    def markers_file(self) -> Path:
        """Last-fired markers for time triggers and adapter poll checkpoints."""

        return self.state_path / "trigger_markers.json"

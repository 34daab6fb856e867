"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from local_workflow_engine.engine.config import EngineSettings


class ServerSettings(EngineSettings):
    """Engine settings plus the few knobs only the HTTP surface needs."""

    # Dev-friendly CORS. Override via WORKFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="WORKFLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    run_engine_loops: bool = Field(
        default=True,
        validation_alias="WORKFLOW_SERVER_RUN_LOOPS",
        description=(
            "If true, the server starts the trigger evaluator and task consumer loops "
            "on startup and stops them on shutdown."
        ),
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

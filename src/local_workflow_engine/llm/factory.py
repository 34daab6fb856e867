"""Factory for creating inference engines."""

from __future__ import annotations

import logging

from local_workflow_engine.engine.config import InferenceConfig
from local_workflow_engine.llm.engine import InferenceEngine
from local_workflow_engine.llm.llama_engine import LlamaEngine
from local_workflow_engine.llm.openai_engine import OpenAIEngine

logger = logging.getLogger(__name__)


class EngineFactory:
    """Factory for creating inference engine instances."""

    @staticmethod
    def create(config: InferenceConfig) -> InferenceEngine:
        """Create an inference engine based on configuration.

        The engine is returned unloaded; callers decide when to pay for ``load``.

        Args:
            config: Inference configuration specifying the provider.

        Returns:
            Configured inference engine instance.

        Raises:
            ValueError: If provider type is not supported.
        """
        logger.info("Creating inference engine", extra={"provider": config.provider})

        if config.provider == "llama":
            return LlamaEngine(config)
        elif config.provider == "openai":
            return OpenAIEngine(config)
        else:
            raise ValueError(f"Unsupported inference provider: {config.provider}")

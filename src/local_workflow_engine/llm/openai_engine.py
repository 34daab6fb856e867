"""Hosted inference through the OpenAI API."""

from __future__ import annotations

import base64
import logging
import mimetypes
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import openai
from openai import OpenAI

from local_workflow_engine.engine.config import InferenceConfig
from local_workflow_engine.engine.errors import ExternalServiceError
from local_workflow_engine.llm.engine import InferenceEngine

logger = logging.getLogger(__name__)


class OpenAIEngine(InferenceEngine):
    """OpenAI chat-completions backend; ``load`` selects the model name."""

    def __init__(self, config: InferenceConfig, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI engine.

        Args:
            config: Inference configuration.
            client: Pre-built client (tests inject a mock).

        Raises:
            ValueError: If no API key is configured and no client is given.
        """
        super().__init__()
        if client is None and not config.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.config = config
        self.client = client or OpenAI(api_key=config.openai_api_key)
        self.model: str | None = None

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def load(self, model_path: str | Path) -> bool:
        self.model = str(model_path) or self.config.openai_model
        logger.info("OpenAI engine ready", extra={"model": self.model})
        return True

    def _stream_text(self, prompt: str) -> Iterator[str]:
        return self._stream_chat([{"role": "user", "content": prompt}])

    def _stream_multimodal(self, prompt: str, image: Path) -> Iterator[str]:
        mime = mimetypes.guess_type(image.name)[0] or "image/png"
        data = base64.b64encode(image.read_bytes()).decode("ascii")
        return self._stream_chat(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}},
                    ],
                }
            ]
        )

    def _stream_chat(self, messages: list[dict[str, Any]]) -> Iterator[str]:
        try:
            stream = self.client.chat.completions.create(
                model=self.model or self.config.openai_model,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                stream=True,
            )
            for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.AuthenticationError as e:
            raise ExternalServiceError(f"OpenAI rejected the API key: {e}", retryable=False) from e
        except (openai.APIConnectionError, openai.RateLimitError, openai.APITimeoutError) as e:
            raise ExternalServiceError(f"OpenAI request failed: {e}", retryable=True) from e
        except openai.APIStatusError as e:
            raise ExternalServiceError(
                f"OpenAI request failed (HTTP {e.status_code})", retryable=e.status_code >= 500
            ) from e

"""On-device inference through llama.cpp."""

from __future__ import annotations

import base64
import logging
import mimetypes
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from local_workflow_engine.engine.config import InferenceConfig
from local_workflow_engine.engine.errors import ResourceExhaustedError
from local_workflow_engine.llm.engine import InferenceEngine

logger = logging.getLogger(__name__)

_MEMORY_HINTS = ("memory", "alloc", "oom")


class LlamaEngine(InferenceEngine):
    """Local GGUF model served by llama-cpp-python.

    Requires llama-cpp-python to be installed:
        pip install llama-cpp-python
    """

    def __init__(self, config: InferenceConfig) -> None:
        super().__init__()
        self.config = config
        self.llm: Any = None
        self.model_path: Path | None = None

    @property
    def is_loaded(self) -> bool:
        return self.llm is not None

    def load(self, model_path: str | Path) -> bool:
        """Load a GGUF model from disk.

        Args:
            model_path: Path to the model file.

        Returns:
            True once the model is ready, False if the file is missing or unreadable.

        Raises:
            ImportError: If llama-cpp-python is not installed.
            ResourceExhaustedError: If the model does not fit in memory.
        """
        try:
            from llama_cpp import Llama
        except ImportError as e:
            raise ImportError(
                "llama-cpp-python is required for the on-device engine. "
                "Install it with: pip install llama-cpp-python"
            ) from e

        path = Path(model_path)
        if not path.is_file():
            logger.error("Model file not found", extra={"model_path": str(path)})
            return False

        # Only one model fits; release the previous one before allocating.
        self.llm = None
        kwargs: dict[str, Any] = {
            "model_path": str(path),
            "n_ctx": self.config.n_ctx,
            "n_threads": self.config.n_threads,
            "verbose": False,
        }
        if self.config.clip_model_path is not None:
            from llama_cpp.llama_chat_format import Llava15ChatHandler

            kwargs["chat_handler"] = Llava15ChatHandler(
                clip_model_path=str(self.config.clip_model_path), verbose=False
            )

        logger.info("Loading model", extra={"model_path": str(path)})
        try:
            self.llm = Llama(**kwargs)
        except MemoryError as e:
            raise ResourceExhaustedError(f"Not enough memory to load {path.name}.") from e
        except ValueError as e:
            if any(hint in str(e).lower() for hint in _MEMORY_HINTS):
                raise ResourceExhaustedError(f"Not enough memory to load {path.name}.") from e
            logger.error("Model failed to load", extra={"model_path": str(path), "error": str(e)})
            return False

        self.model_path = path
        logger.info("Model loaded", extra={"model_path": str(path)})
        return True

    def _stream_text(self, prompt: str) -> Iterator[str]:
        for chunk in self.llm.create_completion(
            prompt,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            stream=True,
        ):
            text = chunk["choices"][0].get("text") or ""
            if text:
                yield text

    def _stream_multimodal(self, prompt: str, image: Path) -> Iterator[str]:
        if self.config.clip_model_path is None:
            return super()._stream_multimodal(prompt, image)

        mime = mimetypes.guess_type(image.name)[0] or "image/png"
        data = base64.b64encode(image.read_bytes()).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}},
                    {"type": "text", "text": prompt},
                ],
            }
        ]
        return self._stream_chat(messages)

    def _stream_chat(self, messages: list[dict[str, Any]]) -> Iterator[str]:
        for chunk in self.llm.create_chat_completion(
            messages=messages,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            stream=True,
        ):
            delta = chunk["choices"][0].get("delta") or {}
            text = delta.get("content") or ""
            if text:
                yield text


"""Abstract base class for inference engines."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from pathlib import Path

from local_workflow_engine.engine.errors import ExternalServiceError

logger = logging.getLogger(__name__)

NO_MODEL_LOADED = "No AI model loaded. Please load a model first."


class InferenceEngine(ABC):
    """Abstract base class for inference backends.

    One model is held at a time and generation is serialized: a second caller
    blocks until the first stream is exhausted or closed. Cancellation is
    cooperative; :meth:`cancel` sets a flag that the active stream checks between
    chunks, so the caller must tolerate one more chunk of latency.
    """

    def __init__(self) -> None:
        self._generation_lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self.last_generation_cancelled = False

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """Whether a model is ready for generation."""

    @abstractmethod
    def load(self, model_path: str | Path) -> bool:
        """Load a model, replacing any model already held.

        Args:
            model_path: Model file (on-device) or model name (hosted).

        Returns:
            True if the model is ready.

        Raises:
            ResourceExhaustedError: If the model does not fit in available memory.
        """

    @abstractmethod
    def _stream_text(self, prompt: str) -> Iterator[str]:
        """Yield generated text chunks for ``prompt``."""

    def _stream_multimodal(self, prompt: str, image: Path) -> Iterator[str]:
        """Yield generated text chunks for ``prompt`` about ``image``.

        Backends without vision support keep this default.
        """

        raise ExternalServiceError(
            "The loaded model does not support image input", retryable=False
        )

    def generate_text(self, prompt: str) -> Iterator[str]:
        """Stream a completion for ``prompt``.

        Args:
            prompt: The input prompt.

        Returns:
            Iterator over generated text chunks.
        """
        return self._guarded(lambda: self._stream_text(prompt))

    def generate_multimodal(self, prompt: str, image: Path) -> Iterator[str]:
        """Stream a completion for ``prompt`` with ``image`` attached.

        Args:
            prompt: The input prompt.
            image: Path to an image file.

        Returns:
            Iterator over generated text chunks.
        """
        return self._guarded(lambda: self._stream_multimodal(prompt, image))

    def cancel(self) -> None:
        """Ask the active generation to stop at the next chunk boundary.

        The request stays in force, also for streams opened later, until
        :meth:`reset_cancel` is called.
        """

        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def reset_cancel(self) -> None:
        """Clear a pending cancel request before starting a new unit of work."""

        self._cancel_requested.clear()
        self.last_generation_cancelled = False

    def complete(self, prompt: str, *, image: Path | None = None) -> str:
        """Generate and join a full response.

        Returns the partial text if the generation was cancelled.
        """

        if image is None:
            stream = self.generate_text(prompt)
        else:
            stream = self.generate_multimodal(prompt, image)
        return "".join(stream)

    def _guarded(self, open_stream: Callable[[], Iterator[str]]) -> Iterator[str]:
        if not self.is_loaded:
            raise ExternalServiceError(NO_MODEL_LOADED, retryable=False)

        def _run() -> Iterator[str]:
            with self._generation_lock:
                self.last_generation_cancelled = False
                if self._cancel_requested.is_set():
                    self.last_generation_cancelled = True
                    logger.info("Generation cancelled before it started")
                    return
                for chunk in open_stream():
                    if self._cancel_requested.is_set():
                        self.last_generation_cancelled = True
                        logger.info("Generation cancelled")
                        break
                    yield chunk

        return _run()

"""Prompt construction and post-processing for AI actions."""

from __future__ import annotations

import logging
import re

from local_workflow_engine.engine.errors import ExternalServiceError
from local_workflow_engine.engine.workflow.models import (
    AnalyzeTextAction,
    ExtractKeywordsAction,
    GenerateResponseAction,
    SentimentAction,
    SummarizeAction,
    TranslateAction,
)
from local_workflow_engine.llm.engine import NO_MODEL_LOADED, InferenceEngine

logger = logging.getLogger(__name__)

AIAction = (
    AnalyzeTextAction
    | TranslateAction
    | SummarizeAction
    | ExtractKeywordsAction
    | SentimentAction
    | GenerateResponseAction
)


def build_prompt(action: AIAction) -> str:
    match action:
        case AnalyzeTextAction(input_text=text, analysis_prompt=instructions):
            return f"{instructions}\n\nText to analyze: {text}"
        case TranslateAction(text=text, target_language=language):
            return (
                f"Translate the following text to {language}. "
                f"Provide only the translation without any additional text:\n\n{text}"
            )
        case SummarizeAction(content=content, max_length=max_length):
            return (
                f"Summarize the following content in {max_length} words or less. "
                f"Be concise and capture the key points:\n\n{content}"
            )
        case ExtractKeywordsAction(text=text, count=count):
            return (
                f"Extract the {count} most important keywords from the following text. "
                f"Return only the keywords separated by commas:\n\n{text}"
            )
        case SentimentAction(text=text):
            return (
                "Classify the sentiment of the following text. Respond with exactly one word: "
                f"positive, negative, or neutral.\n\n{text}"
            )
        case GenerateResponseAction(prompt=prompt, context=context):
            if not context.strip():
                return prompt
            return f"{prompt}\n\nContext: {context}"


_SENTIMENT_LABEL = re.compile(r"\b(positive|negative|neutral)\b")


def normalize_sentiment(raw: str) -> str:
    """Reduce model output to a single label: the first one it names, else neutral."""

    match = _SENTIMENT_LABEL.search(raw.lower())
    return match.group(1) if match else "neutral"


def normalize_keywords(raw: str, count: int) -> str:
    words = [w.strip().strip(".") for w in raw.replace("\n", ",").split(",")]
    return ", ".join([w for w in words if w][:count])


class AIProcessor:
    """Runs AI actions against the shared inference engine."""

    def __init__(self, engine: InferenceEngine | None) -> None:
        self.engine = engine

    def run(self, action: AIAction) -> str:
        """Return the post-processed model output for ``action``.

        Raises:
            ExternalServiceError: If no model is loaded or the backend fails.
        """

        if self.engine is None or not self.engine.is_loaded:
            raise ExternalServiceError(NO_MODEL_LOADED, retryable=False)

        prompt = build_prompt(action)
        logger.debug("Running AI action", extra={"action_type": action.type, "chars": len(prompt)})
        raw = self.engine.complete(prompt)

        match action:
            case SentimentAction():
                return normalize_sentiment(raw)
            case ExtractKeywordsAction(count=count):
                return normalize_keywords(raw, count)
            case _:
                return raw.strip()

"""Inference engine package initialization."""

from local_workflow_engine.llm.engine import NO_MODEL_LOADED, InferenceEngine
from local_workflow_engine.llm.factory import EngineFactory

__all__ = [
    "NO_MODEL_LOADED",
    "EngineFactory",
    "InferenceEngine",
]

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from .errors import AutomationError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Explicit success/failure result returned by every public operation."""

    ok: bool
    value: T | None = None
    error: AutomationError | None = None
    message: str = ""

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    @classmethod
    def success(cls, value: T | None = None, message: str = "") -> Outcome[T]:
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, error: AutomationError) -> Outcome[T]:
        return cls(ok=False, error=error, message=str(error))

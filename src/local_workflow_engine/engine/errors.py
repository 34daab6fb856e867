"""Error kinds raised by the engine's stores and components.

The public service layer converts these into :class:`Outcome` values; nothing
below the service is expected to swallow them.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass


class AutomationError(Exception):
    """Base class for every expected failure mode."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class WorkflowValidationError(AutomationError):
    """A workflow (or import document) is malformed."""

    kind = "validation"

    def __init__(self, message: str, issues: list[ValidationIssue] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class NotFoundError(AutomationError):
    kind = "not_found"


class PermissionDeniedError(AutomationError):
    kind = "permission_denied"


class ExternalServiceError(AutomationError):
    """An adapter call failed.

    ``retryable`` distinguishes transient failures (network timeouts) from
    terminal ones (auth or consent required).
    """

    kind = "external_service"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConcurrencyError(AutomationError):
    """Double claim of a task or double mark of a processed event."""

    kind = "concurrency"


class ResourceExhaustedError(AutomationError):
    kind = "resource_exhausted"

    def __init__(self, message: str, *, remediation: str = "Try a smaller model.") -> None:
        super().__init__(message)
        self.remediation = remediation

    def __str__(self) -> str:
        return f"{self.message} {self.remediation}"


class IllegalTransitionError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    code: str
    message: str
    field: str = ""
    details: dict[str, object] = dataclasses.field(default_factory=dict)

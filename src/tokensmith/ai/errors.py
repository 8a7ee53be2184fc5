"""Error taxonomy shared by the document engine.

Every failure the engine surfaces derives from :class:`EngineError` so callers
can render a stable affordance per category (retry versus fatal) without
parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

__all__ = [
    "ErrorCategory",
    "EngineError",
    "LoadError",
    "DocumentLoadError",
    "DocumentValidationError",
    "DocumentNotLoadedError",
    "PlanningError",
    "AuthenticationError",
    "ExecutionError",
    "ExecutionCancelled",
    "SaveError",
    "PreviewStateError",
    "PipelineBusyError",
]


class ErrorCategory:
    """Constants for error categories surfaced to callers."""

    LOAD = "load"
    PLANNER = "planner"
    AUTH = "auth"
    EXECUTOR = "executor"
    NETWORK = "network"
    SAVE = "save"
    VALIDATION = "validation"


_SUGGESTIONS: Mapping[str, str] = {
    ErrorCategory.LOAD: "Reload the editor once the design document is reachable and valid",
    ErrorCategory.PLANNER: "Try simplifying your prompt or check planner model",
    ErrorCategory.AUTH: "Please refresh the page and log in again",
    ErrorCategory.EXECUTOR: "Try reducing the scope or switching to single-shot mode",
    ErrorCategory.NETWORK: "Check your internet connection and try again",
    ErrorCategory.SAVE: "Your changes are still in the editor; try saving again",
    ErrorCategory.VALIDATION: "Please try again or contact support",
}


def suggestion_for(category: str) -> str:
    return _SUGGESTIONS.get(category, _SUGGESTIONS[ErrorCategory.VALIDATION])


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass
class EngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        category: Machine-readable error category (see :class:`ErrorCategory`).
        message: Human-readable error description.
        details: Additional structured error information.
        retryable: Whether repeating the same call may succeed.
        suggestion: Actionable guidance for recovery.
    """

    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        if not self.suggestion:
            self.suggestion = suggestion_for(self.category)
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for display layers and logs."""
        result: dict[str, Any] = {
            "type": self.category,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.category}] {self.message}"


# -----------------------------------------------------------------------------
# Load Errors
# -----------------------------------------------------------------------------


@dataclass
class LoadError(EngineError):
    """Base class for failures while loading the editable document."""

    category: str = field(default=ErrorCategory.LOAD)
    message: str = field(default="Failed to load the design document")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=False)
    suggestion: str = field(default="")


@dataclass
class DocumentLoadError(LoadError):
    """Transport, timeout, status or decoding failure while fetching."""

    message: str = field(default="Failed to fetch the design document")
    status_code: int | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass
class DocumentValidationError(LoadError):
    """The fetched body does not pass the partial schema check."""

    message: str = field(default="The design document failed validation")
    issues: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.issues:
            result["issues"] = list(self.issues)
        return result


@dataclass
class DocumentNotLoadedError(LoadError):
    """An operation needed the working copy before a successful load."""

    message: str = field(default="No design document has been loaded")


# -----------------------------------------------------------------------------
# Planning Errors
# -----------------------------------------------------------------------------


@dataclass
class PlanningError(EngineError):
    """The planning request failed; the document was not touched."""

    category: str = field(default=ErrorCategory.PLANNER)
    message: str = field(default="Planner failed")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=True)
    suggestion: str = field(default="")
    reason: str = field(default="failed")
    status_code: int | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass
class AuthenticationError(PlanningError):
    """The AI service rejected the session."""

    category: str = field(default=ErrorCategory.AUTH)
    message: str = field(default="Authentication required")
    retryable: bool = field(default=False)
    reason: str = field(default="unauthorized")
    status_code: int | None = field(default=401)


# -----------------------------------------------------------------------------
# Execution Errors
# -----------------------------------------------------------------------------


@dataclass
class ExecutionError(EngineError):
    """The execution stream failed or ended without a usable result."""

    category: str = field(default=ErrorCategory.EXECUTOR)
    message: str = field(default="Executor failed")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=True)
    suggestion: str = field(default="")
    jobs: tuple[Any, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.jobs:
            result["jobs"] = [job.to_dict() for job in self.jobs]
        return result


@dataclass
class ExecutionCancelled(ExecutionError):
    """The caller cancelled an in-flight execution."""

    message: str = field(default="Execution cancelled")
    reason: str = field(default="cancelled")


# -----------------------------------------------------------------------------
# Save Errors
# -----------------------------------------------------------------------------


@dataclass
class SaveError(EngineError):
    """Persisting the document failed; the baseline is unchanged."""

    category: str = field(default=ErrorCategory.SAVE)
    message: str = field(default="Failed to save changes")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=True)
    suggestion: str = field(default="")
    status_code: int | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


# -----------------------------------------------------------------------------
# State Errors
# -----------------------------------------------------------------------------


@dataclass
class PreviewStateError(EngineError):
    """A preview operation was requested in the wrong state."""

    category: str = field(default=ErrorCategory.VALIDATION)
    message: str = field(default="No preview is pending")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=False)
    suggestion: str = field(default="")
    state: str | None = field(default=None)


@dataclass
class PipelineBusyError(EngineError):
    """Another plan/execute pipeline is already in flight."""

    category: str = field(default=ErrorCategory.VALIDATION)
    message: str = field(default="An AI run is already in progress")
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = field(default=False)
    suggestion: str = field(default="Wait for the current run to finish or cancel it")
    state: str | None = field(default=None)

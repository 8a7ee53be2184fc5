"""AI pipeline: scope index, planner, streaming executor, preview and session.

Only the error types are re-exported here; import the pipeline modules
directly (``tokensmith.ai.session`` etc.) so that ``documents`` can depend on
``ai.errors`` without pulling in the whole pipeline.
"""

from .errors import (
    AuthenticationError,
    DocumentLoadError,
    DocumentNotLoadedError,
    DocumentValidationError,
    EngineError,
    ErrorCategory,
    ExecutionCancelled,
    ExecutionError,
    LoadError,
    PipelineBusyError,
    PlanningError,
    PreviewStateError,
    SaveError,
)

__all__ = [
    "AuthenticationError",
    "DocumentLoadError",
    "DocumentNotLoadedError",
    "DocumentValidationError",
    "EngineError",
    "ErrorCategory",
    "ExecutionCancelled",
    "ExecutionError",
    "LoadError",
    "PipelineBusyError",
    "PlanningError",
    "PreviewStateError",
    "SaveError",
]

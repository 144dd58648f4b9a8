"""Error taxonomy for assist operations and retrieval."""

from __future__ import annotations


class AssistError(Exception):
    """Base class for failures surfaced to clients as ``error`` events."""

    retryable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(AssistError):
    """Missing credentials or invalid settings."""

    retryable = False


class StateConflictError(AssistError):
    """The operation is not valid for the current session state."""

    retryable = False


class CaptureError(AssistError):
    """Audio or screen capture collaborator failure."""


class RetrievalError(AssistError):
    """Index build or query failure; degrades to no augmentation."""


class IndexBuildError(RetrievalError):
    """Source unreadable, network unreachable or credentials rejected."""


class IndexingTimeoutError(RetrievalError):
    """Managed-store indexing or upload exceeded its bound."""


class UpstreamError(AssistError):
    """LLM call failure."""

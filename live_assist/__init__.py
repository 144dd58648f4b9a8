"""live-assist core package: retrieval-augmented context and serialized assist sessions."""

from .config import Settings, load_settings
from .errors import (
    AssistError,
    CaptureError,
    ConfigurationError,
    IndexBuildError,
    IndexingTimeoutError,
    RetrievalError,
    StateConflictError,
    UpstreamError,
)
from .history import HistoryManager
from .index import EmbeddingIndex, LexicalIndex
from .models import HistoryTurn, RagPayload, RetrievalOutcome
from .rag import LocalRagProvider, RagProvider, compose_context
from .session import SessionOrchestrator, SessionState
from .streaming import FramePublisher, FrameSlot

__all__ = [
    "Settings",
    "load_settings",
    "AssistError",
    "CaptureError",
    "ConfigurationError",
    "IndexBuildError",
    "IndexingTimeoutError",
    "RetrievalError",
    "StateConflictError",
    "UpstreamError",
    "HistoryManager",
    "EmbeddingIndex",
    "LexicalIndex",
    "HistoryTurn",
    "RagPayload",
    "RetrievalOutcome",
    "LocalRagProvider",
    "RagProvider",
    "compose_context",
    "SessionOrchestrator",
    "SessionState",
    "FramePublisher",
    "FrameSlot",
]

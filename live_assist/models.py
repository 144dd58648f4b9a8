"""Data models shared by the retrieval engine and the session orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

USER_ROLE = "user"
MODEL_ROLE = "model"


@dataclass(slots=True, frozen=True)
class Chunk:
    """Bounded span of source text stored with its own lexical vector."""

    source: str
    text: str
    term_counts: Mapping[str, int]
    vector: Mapping[str, float] = field(default_factory=dict)
    norm: float = 0.0


@dataclass(slots=True, frozen=True)
class EmbeddedChunk:
    """Chunk paired with a row of a dense embedding matrix."""

    source: str
    text: str
    row: int


@dataclass(slots=True, frozen=True)
class ScoredChunk:
    source: str
    text: str
    score: float


@dataclass(slots=True, frozen=True)
class RagPayload:
    """Retrieval result attached to an LLM call.

    At most one of ``context`` (inline text) or ``tools`` (opaque tool
    descriptors) is populated.
    """

    context: Optional[str] = None
    tools: Optional[List[Dict[str, Any]]] = None

    @property
    def is_empty(self) -> bool:
        return not (self.context and self.context.strip()) and not self.tools


class OutcomeKind(str, Enum):
    FOUND = "found"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RetrievalOutcome:
    """Explicit query result separating "no match" from a hard failure."""

    kind: OutcomeKind
    payload: Optional[RagPayload] = None
    reason: str = ""

    @classmethod
    def found(cls, payload: RagPayload) -> "RetrievalOutcome":
        return cls(kind=OutcomeKind.FOUND, payload=payload)

    @classmethod
    def empty(cls) -> "RetrievalOutcome":
        return cls(kind=OutcomeKind.EMPTY)

    @classmethod
    def failed(cls, reason: str) -> "RetrievalOutcome":
        return cls(kind=OutcomeKind.FAILED, reason=reason)


@dataclass(slots=True, frozen=True)
class RagProgress:
    percent: int
    message: str


@dataclass(slots=True, frozen=True)
class HistoryTurn:
    role: str
    text: str


@dataclass(slots=True, frozen=True)
class AudioCapture:
    """Paths of the two artifacts produced by one recording."""

    mic_path: Path
    system_path: Path


@dataclass(slots=True, frozen=True)
class AudioProbe:
    mic_peak: float
    system_peak: float


@dataclass(slots=True, frozen=True)
class AudioRequest:
    mic_path: Path
    system_path: Path


@dataclass(slots=True, frozen=True)
class ScreenshotRequest:
    path: Path


LastRequest = Union[AudioRequest, ScreenshotRequest]


@dataclass(slots=True, frozen=True)
class Frame:
    """Latest encoded screen frame published by the streaming loop."""

    data: bytes
    frame_id: int
    captured_at: float


@dataclass(slots=True, frozen=True)
class Event:
    """Named outbound event addressed to one connection."""

    name: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.name, **self.payload}

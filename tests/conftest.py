"""Shared fakes for the orchestrator collaborators."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from live_assist.artifacts import ArtifactStore
from live_assist.config import RagSettings, RecordingSettings
from live_assist.errors import CaptureError
from live_assist.history import HistoryManager
from live_assist.models import AudioCapture, AudioProbe, Event, RagPayload
from live_assist.rag import RagProvider
from live_assist.session import SessionOrchestrator, SessionState


class RecordingSink:
    """Event sink that remembers every delivered event."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Event]] = []
        self.gone: set = set()

    async def send(self, connection_id: str, event: Event) -> bool:
        if connection_id in self.gone:
            return False
        self.events.append((connection_id, event))
        return True

    def names(self, connection_id: Optional[str] = None) -> List[str]:
        return [event.name for cid, event in self.events if connection_id is None or cid == connection_id]

    def payloads(self, name: str, connection_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            event.payload
            for cid, event in self.events
            if event.name == name and (connection_id is None or cid == connection_id)
        ]


class FakeRecorder:
    def __init__(self, mic_bytes: int = 16384, system_bytes: int = 16384) -> None:
        self.mic_bytes = mic_bytes
        self.system_bytes = system_bytes
        self.folder: Optional[Path] = None
        self.start_calls = 0
        self.stop_calls = 0
        self.fail_start = False
        self.probe_durations: List[float] = []

    def start(self, session_folder: Path) -> None:
        self.start_calls += 1
        if self.fail_start:
            raise CaptureError("No microphone found.")
        self.folder = Path(session_folder)

    def stop(self) -> AudioCapture:
        self.stop_calls += 1
        assert self.folder is not None
        mic = self.folder / "mic.wav"
        system = self.folder / "system.wav"
        mic.write_bytes(b"\0" * self.mic_bytes)
        system.write_bytes(b"\0" * self.system_bytes)
        return AudioCapture(mic_path=mic, system_path=system)

    def probe(self, duration: float) -> AudioProbe:
        self.probe_durations.append(duration)
        return AudioProbe(mic_peak=0.5, system_peak=0.25)


class FakeCapturer:
    def __init__(self) -> None:
        self.png_calls = 0
        self.jpeg_calls = 0
        self.failures = 0

    def capture_png(self, path: Path) -> Path:
        self.png_calls += 1
        if self.failures:
            self.failures -= 1
            raise CaptureError("Screen capture failed: display unavailable")
        Path(path).write_bytes(b"\x89PNG\r\n\x1a\nfake")
        return Path(path)

    def capture_jpeg(self, quality: int, max_width: int, max_height: int) -> bytes:
        self.jpeg_calls += 1
        if self.failures:
            self.failures -= 1
            raise CaptureError("Screen capture failed: display unavailable")
        return b"\xff\xd8frame%d" % self.jpeg_calls


class FakeLLM:
    def __init__(self, configured: bool = True) -> None:
        self.is_configured = configured
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def _respond(self, kind: str, details: Dict[str, Any]) -> str:
        self.calls.append((kind, details))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return f"{kind} answer {len(self.calls)}"

    async def answer_audio(
        self, mic_path, system_path, history, *, mic_silent, system_silent, rag_context=None, rag_tools=None
    ) -> str:
        return await self._respond(
            "audio",
            {
                "mic_path": mic_path,
                "system_path": system_path,
                "history": list(history),
                "mic_silent": mic_silent,
                "system_silent": system_silent,
                "rag_context": rag_context,
                "rag_tools": rag_tools,
            },
        )

    async def answer_screenshot(self, path, history, *, rag_context=None, rag_tools=None) -> str:
        return await self._respond(
            "screenshot", {"path": path, "history": list(history), "rag_context": rag_context, "rag_tools": rag_tools}
        )

    async def answer_follow_up(self, text, history, *, rag_context=None, rag_tools=None) -> str:
        return await self._respond(
            "follow_up", {"text": text, "history": list(history), "rag_context": rag_context, "rag_tools": rag_tools}
        )


class FakeProvider(RagProvider):
    """Provider returning a canned payload and recording queries."""

    def __init__(self, settings: Optional[RagSettings] = None, payload: Optional[RagPayload] = None) -> None:
        super().__init__(settings or RagSettings(enabled=True))
        self.payload = payload if payload is not None else RagPayload(context="Source: notes.txt (score 0.90)\nfacts")
        self.queries: List[str] = []
        self.error: Optional[Exception] = None
        self.ready = True

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def initialize(self, cancel_event=None) -> None:
        self.status.publish("RAG: ready (1 chunks)")

    async def build_payload(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def capturer() -> FakeCapturer:
    return FakeCapturer()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_orchestrator(tmp_path, sink, recorder, capturer, llm, provider):
    def factory(**overrides) -> SessionOrchestrator:
        options = {
            "recorder": recorder,
            "capturer": capturer,
            "llm": llm,
            "provider": provider,
            "sink": sink,
            "artifacts": ArtifactStore(tmp_path / "artifacts", keep=5),
            "settings": RecordingSettings(),
            "state": SessionState(history=HistoryManager(overrides.pop("max_messages", 0))),
        }
        options.update(overrides)
        return SessionOrchestrator(**options)

    return factory

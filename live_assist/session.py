"""Session orchestration: one assist operation at a time, one active recording."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .artifacts import ArtifactStore
from .config import RecordingSettings
from .errors import AssistError, ConfigurationError, StateConflictError
from .history import HistoryManager
from .llm import MISSING_KEY_MESSAGE
from .models import (
    MODEL_ROLE,
    USER_ROLE,
    AudioCapture,
    AudioProbe,
    AudioRequest,
    Event,
    HistoryTurn,
    LastRequest,
    OutcomeKind,
    RagPayload,
    ScreenshotRequest,
)
from .rag import RagProvider
from .streaming import FrameSlot
from .utils import clamp

logger = logging.getLogger(__name__)

AUDIO_TURN = "Audio call: user requested a live reply based on mic + system audio."
SCREENSHOT_TURN = "Screenshot: user requested a response based on the current screen."
AUTO_STOP_MESSAGE = "Max recording duration reached (auto-stopped)."
FOLLOW_UP_STATUS = "Processing follow-up..."
MEMORY_CLEARED = "Memory cleared."
MIN_PROBE_SECONDS = 0.1
MAX_PROBE_SECONDS = 5.0


class EventSink(Protocol):
    async def send(self, connection_id: str, event: Event) -> bool:
        """Deliver ``event``; ``False`` when the connection is gone."""


class AudioRecorder(Protocol):
    def start(self, session_folder: Path) -> None: ...

    def stop(self) -> AudioCapture: ...

    def probe(self, duration: float) -> AudioProbe: ...


class ScreenCapturer(Protocol):
    def capture_png(self, path: Path) -> Path: ...

    def capture_jpeg(self, quality: int, max_width: int, max_height: int) -> bytes: ...


class AnswerClient(Protocol):
    @property
    def is_configured(self) -> bool: ...

    async def answer_audio(
        self,
        mic_path: Path,
        system_path: Path,
        history: List[HistoryTurn],
        *,
        mic_silent: bool,
        system_silent: bool,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str: ...

    async def answer_screenshot(
        self,
        path: Path,
        history: List[HistoryTurn],
        *,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str: ...

    async def answer_follow_up(
        self,
        text: str,
        history: List[HistoryTurn],
        *,
        rag_context: Optional[str] = None,
        rag_tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str: ...


@dataclass(slots=True)
class SessionState:
    """The single mutable session, owned by :class:`SessionOrchestrator`.

    Everything except ``frames`` is touched only while holding the operation
    lock; ``frames`` carries its own lock for the streaming loop.
    """

    is_recording: bool = False
    active_connection_id: Optional[str] = None
    last_request: Optional[LastRequest] = None
    history: HistoryManager = field(default_factory=HistoryManager)
    frames: FrameSlot = field(default_factory=FrameSlot)


class SessionOrchestrator:
    """Serializes assist operations and routes their events to connections.

    Each public operation holds the operation lock for its whole duration,
    including collaborator calls, and reports every failure as exactly one
    ``error`` event.
    """

    def __init__(
        self,
        *,
        recorder: AudioRecorder,
        capturer: ScreenCapturer,
        llm: AnswerClient,
        provider: Optional[RagProvider],
        sink: EventSink,
        artifacts: ArtifactStore,
        settings: Optional[RecordingSettings] = None,
        state: Optional[SessionState] = None,
    ) -> None:
        self.recorder = recorder
        self.capturer = capturer
        self.llm = llm
        self.provider = provider
        self.sink = sink
        self.artifacts = artifacts
        self.settings = settings or RecordingSettings()
        self.state = state or SessionState()
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None

    @property
    def is_recording(self) -> bool:
        return self.state.is_recording

    @property
    def memory_count(self) -> int:
        return len(self.state.history)

    @property
    def has_key(self) -> bool:
        return bool(self.llm.is_configured)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_recording(self, connection_id: str) -> None:
        async with self._lock:
            try:
                self._require_configured()
                if self.state.is_recording:
                    raise StateConflictError("Recording already in progress.")
                folder = await asyncio.to_thread(self.artifacts.new_session_folder, self._referenced_folders())
                await asyncio.to_thread(self.recorder.start, folder)
                self.state.is_recording = True
                self.state.active_connection_id = connection_id
                self._arm_timer()
                await self._emit(connection_id, "recording", isRecording=True)
                logger.info("Recording started")
            except Exception as exc:
                await self._fail(connection_id, exc, "Recording start", retryable=False)

    async def stop_recording(self, connection_id: str, reason: Optional[str] = None) -> None:
        async with self._lock:
            try:
                if not self.state.is_recording:
                    raise StateConflictError("No active recording.")
                await self._finish_recording(connection_id, reason)
            except Exception as exc:
                await self._fail(connection_id, exc, "Stop/process")

    async def screenshot(self, connection_id: str) -> None:
        async with self._lock:
            try:
                self._require_configured()
                if self.state.is_recording:
                    raise StateConflictError("Stop recording before taking a screenshot.")
                folder = await asyncio.to_thread(self.artifacts.new_session_folder, self._referenced_folders())
                path = folder / "screenshot.png"
                await asyncio.to_thread(self.capturer.capture_png, path)
                request = ScreenshotRequest(path=path)
                self.state.last_request = request
                logger.info("Screenshot captured, analyzing...")
                await self._answer_screenshot(connection_id, request)
            except Exception as exc:
                await self._fail(connection_id, exc, "Screenshot")

    async def follow_up(self, connection_id: str, text: Optional[str]) -> None:
        async with self._lock:
            try:
                self._require_configured()
                if self.state.is_recording:
                    raise StateConflictError("Stop recording before sending a follow-up.")
                if not text or not text.strip():
                    raise StateConflictError("Please enter follow-up text.")
                trimmed = text.strip()
                await self._emit(connection_id, "status", message=FOLLOW_UP_STATUS)
                payload = await self._fetch_payload(trimmed, self._uses("use_for_follow_up"))
                answer = await self.llm.answer_follow_up(
                    trimmed,
                    self.state.history.turns(),
                    rag_context=payload.context,
                    rag_tools=payload.tools,
                )
                self.state.history.append(USER_ROLE, trimmed)
                self.state.history.append(MODEL_ROLE, answer)
                await self._emit(connection_id, "answer", text=answer)
                await self._emit_memory(connection_id)
            except Exception as exc:
                await self._fail(connection_id, exc, "Follow-up")

    async def retry(self, connection_id: str) -> None:
        async with self._lock:
            try:
                self._require_configured()
                request = self.state.last_request
                if request is None:
                    raise StateConflictError("Nothing to retry.")
                if isinstance(request, AudioRequest):
                    logger.info("Retrying audio answer...")
                    await self._answer_audio(connection_id, request)
                else:
                    logger.info("Retrying screenshot analysis...")
                    await self._answer_screenshot(connection_id, request)
            except Exception as exc:
                await self._fail(connection_id, exc, "Retry")

    async def clear_memory(self, connection_id: str) -> None:
        async with self._lock:
            self.state.history.clear()
            await self._emit_memory(connection_id)
            await self._emit(connection_id, "status", message=MEMORY_CLEARED)

    async def auto_stop(self) -> None:
        """Timer callback: stop the recording and answer the active connection."""

        async with self._lock:
            if not self.state.is_recording:
                return
            target = self.state.active_connection_id
            logger.info("Auto-stop triggered, generating answer from audio...")
            try:
                await self._finish_recording(target, AUTO_STOP_MESSAGE)
            except Exception as exc:
                await self._fail(target, exc, "Auto-stop")

    async def probe(self, duration: float = 1.0) -> AudioProbe:
        duration = clamp(duration, MIN_PROBE_SECONDS, MAX_PROBE_SECONDS)
        async with self._lock:
            if self.state.is_recording:
                raise StateConflictError("Stop recording before probing audio.")
            return await asyncio.to_thread(self.recorder.probe, duration)

    async def clear_connection(self, connection_id: str) -> None:
        async with self._lock:
            if self.state.active_connection_id == connection_id:
                self.state.active_connection_id = None

    async def shutdown(self) -> None:
        self._disarm_timer()
        async with self._lock:
            if not self.state.is_recording:
                return
            self.state.is_recording = False
            try:
                await asyncio.to_thread(self.recorder.stop)
            except Exception:
                logger.exception("Stopping the recorder during shutdown failed")

    # ------------------------------------------------------------------
    # Branches shared by the operations and retry
    # ------------------------------------------------------------------

    async def _finish_recording(self, target: Optional[str], reason: Optional[str]) -> None:
        self._disarm_timer()
        self.state.is_recording = False
        capture = await asyncio.to_thread(self.recorder.stop)
        request = AudioRequest(mic_path=capture.mic_path, system_path=capture.system_path)
        self.state.last_request = request
        await self._emit(target, "recording", isRecording=False)
        if reason:
            await self._emit(target, "status", message=reason)
        await self._answer_audio(target, request)

    async def _answer_audio(self, target: Optional[str], request: AudioRequest) -> None:
        mic_silent = self._is_audio_too_small(request.mic_path, "mic")
        system_silent = self._is_audio_too_small(request.system_path, "system")
        payload = await self._fetch_payload(self._history_query(), self._uses("use_for_audio"))
        answer = await self.llm.answer_audio(
            request.mic_path,
            request.system_path,
            self.state.history.turns(),
            mic_silent=mic_silent,
            system_silent=system_silent,
            rag_context=payload.context,
            rag_tools=payload.tools,
        )
        self.state.history.append(USER_ROLE, AUDIO_TURN)
        self.state.history.append(MODEL_ROLE, answer)
        await self._emit(target, "answer", text=answer)
        await self._emit_memory(target)
        logger.info("Answer ready")

    async def _answer_screenshot(self, target: Optional[str], request: ScreenshotRequest) -> None:
        payload = await self._fetch_payload(self._history_query(), self._uses("use_for_screenshot"))
        answer = await self.llm.answer_screenshot(
            request.path,
            self.state.history.turns(),
            rag_context=payload.context,
            rag_tools=payload.tools,
        )
        self.state.history.append(USER_ROLE, SCREENSHOT_TURN)
        self.state.history.append(MODEL_ROLE, answer)
        await self._emit(target, "answer", text=answer)
        await self._emit_memory(target)
        logger.info("Answer ready")

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _uses(self, flag: str) -> bool:
        return self.provider is not None and bool(getattr(self.provider, flag))

    def _history_query(self) -> str:
        if self.provider is None or not self.provider.enabled or not len(self.state.history):
            return ""
        return self.state.history.build_query(self.provider.query_max_chars)

    async def _fetch_payload(self, query: str, use_for_request: bool) -> RagPayload:
        provider = self.provider
        if provider is None or not use_for_request or not provider.enabled or not provider.is_ready:
            return RagPayload()
        effective = query if query and query.strip() else (provider.default_query or "")
        if not effective.strip():
            return RagPayload()
        outcome = await provider.retrieve(effective)
        if outcome.kind is OutcomeKind.FAILED:
            logger.warning("Retrieval failed, answering without reference context: %s", outcome.reason)
            return RagPayload()
        return outcome.payload or RagPayload()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _arm_timer(self) -> None:
        self._disarm_timer()
        self._timer = asyncio.create_task(self._auto_stop_after(self.settings.max_duration_seconds))

    def _disarm_timer(self) -> None:
        timer, self._timer = self._timer, None
        # the timer task itself reaches here through auto_stop
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _auto_stop_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.auto_stop()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_configured(self) -> None:
        if not self.llm.is_configured:
            raise ConfigurationError(MISSING_KEY_MESSAGE)

    def _referenced_folders(self) -> List[Path]:
        request = self.state.last_request
        if isinstance(request, AudioRequest):
            return [request.mic_path.parent, request.system_path.parent]
        if isinstance(request, ScreenshotRequest):
            return [request.path.parent]
        return []

    def _is_audio_too_small(self, path: Path, label: str) -> bool:
        try:
            size = Path(path).stat().st_size
        except OSError as exc:
            logger.warning("%s audio size check failed: %s. Assuming audio is present.", label, exc)
            return False
        if size < self.settings.min_audio_bytes:
            logger.info("%s audio too small (%d bytes). Treating as silence.", label, size)
            return True
        return False

    def _retryable(self, exc: Exception) -> bool:
        if isinstance(exc, AssistError) and not exc.retryable:
            return False
        return self.state.last_request is not None

    async def _emit(self, target: Optional[str], name: str, **payload: Any) -> bool:
        if target is None:
            logger.info("No active connection; dropping %s event", name)
            return False
        delivered = await self.sink.send(target, Event(name=name, payload=payload))
        if not delivered:
            logger.info("Connection %s is gone; %s event not delivered", target, name)
        return delivered

    async def _emit_memory(self, target: Optional[str]) -> None:
        await self._emit(target, "memory", count=len(self.state.history))

    async def _fail(
        self,
        target: Optional[str],
        exc: Exception,
        action: str,
        *,
        retryable: Optional[bool] = None,
    ) -> None:
        if isinstance(exc, (ConfigurationError, StateConflictError)):
            logger.warning("%s rejected: %s", action, exc.message)
        else:
            logger.exception("%s failed", action)
        message = exc.message if isinstance(exc, AssistError) else (str(exc) or type(exc).__name__)
        if retryable is None:
            retryable = self._retryable(exc)
        await self._emit(target, "error", message=message, retryable=retryable)

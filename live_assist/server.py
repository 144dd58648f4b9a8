"""FastAPI host: websocket command hub, frame pull endpoint and startup wiring."""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import secrets
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from .artifacts import ArtifactStore
from .config import Settings
from .errors import AssistError, RetrievalError
from .history import HistoryManager
from .llm import MISSING_KEY_MESSAGE
from .models import Event, RagProgress
from .rag import RagProvider
from .session import AnswerClient, AudioRecorder, ScreenCapturer, SessionOrchestrator, SessionState
from .streaming import FramePublisher
from .utils import generate_id, get_available_port, local_ipv4

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 4403
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class TokenAuth:
    """Single shared opaque token passed as the ``t`` query parameter."""

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token or secrets.token_hex(16)

    def validate(self, candidate: Optional[str]) -> bool:
        if not candidate:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self.token.encode("utf-8"))


class ConnectionManager:
    """Registry of open websockets; delivers events by connection id."""

    def __init__(self) -> None:
        self._sockets: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    def register(self, websocket: WebSocket) -> str:
        connection_id = generate_id("conn")
        self._sockets[connection_id] = websocket
        self._send_locks[connection_id] = asyncio.Lock()
        logger.info("Client connected: %s (%d total)", connection_id, len(self._sockets))
        return connection_id

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        self._send_locks.pop(connection_id, None)
        logger.info("Client disconnected: %s (%d total)", connection_id, len(self._sockets))

    def count(self) -> int:
        return len(self._sockets)

    async def send(self, connection_id: str, event: Event) -> bool:
        websocket = self._sockets.get(connection_id)
        lock = self._send_locks.get(connection_id)
        if websocket is None or lock is None:
            return False
        async with lock:
            try:
                await websocket.send_json(event.to_message())
            except Exception as exc:
                logger.info("Send to %s failed: %s", connection_id, exc)
                return False
        return True

    async def broadcast(self, event: Event) -> None:
        for connection_id in list(self._sockets):
            await self.send(connection_id, event)


@dataclass(slots=True)
class HostRuntime:
    """Everything the routes need, created once per app."""

    settings: Settings
    auth: TokenAuth
    connections: ConnectionManager
    orchestrator: SessionOrchestrator
    publisher: FramePublisher
    provider: RagProvider
    rag_status: str = "RAG: not started"
    _pending: Set[asyncio.Task] = field(default_factory=set)

    def state_payload(self) -> Dict[str, Any]:
        return {
            "isRecording": self.orchestrator.is_recording,
            "hasKey": self.orchestrator.has_key,
            "streamEnabled": self.publisher.enabled,
            "streamFps": self.publisher.fps,
        }

    def on_rag_status(self, message: str) -> None:
        self.rag_status = message
        logger.info("%s", message)
        self._fan_out(Event("ragStatus", {"message": message}))

    def on_rag_progress(self, progress: RagProgress) -> None:
        logger.debug("RAG progress %d%%: %s", progress.percent, progress.message)
        self._fan_out(Event("ragProgress", {"percent": progress.percent, "message": progress.message}))

    def _fan_out(self, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.connections.broadcast(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


async def initialize_rag(runtime: HostRuntime, cancel_event: asyncio.Event) -> None:
    try:
        await runtime.provider.initialize(cancel_event)
    except asyncio.CancelledError:
        logger.info("RAG initialization cancelled")
        raise
    except RetrievalError as exc:
        logger.error("RAG init error: %s", exc.message)
        runtime.provider.status.publish(f"RAG: error - {exc.message}")


def create_app(
    settings: Optional[Settings] = None,
    *,
    recorder: Optional[AudioRecorder] = None,
    capturer: Optional[ScreenCapturer] = None,
    llm: Optional[AnswerClient] = None,
    provider: Optional[RagProvider] = None,
    auth: Optional[TokenAuth] = None,
) -> FastAPI:
    settings = settings or Settings()
    if recorder is None:
        from .audio import SoundDeviceRecorder

        recorder = SoundDeviceRecorder(settings.recording)
    if capturer is None:
        from .screen_capture import ScreenCapturer as DesktopCapturer

        capturer = DesktopCapturer()
    if llm is None:
        from .llm import GeminiClient

        llm = GeminiClient(settings.gemini, settings.logging)
    if provider is None:
        from .providers import create_provider

        provider = create_provider(settings)

    connections = ConnectionManager()
    state = SessionState(history=HistoryManager(settings.memory.max_messages))
    orchestrator = SessionOrchestrator(
        recorder=recorder,
        capturer=capturer,
        llm=llm,
        provider=provider,
        sink=connections,
        artifacts=ArtifactStore(settings.recording.artifacts_root, settings.recording.keep_sessions),
        settings=settings.recording,
        state=state,
    )
    publisher = FramePublisher(capturer, state.frames, settings.stream, connections.count)
    runtime = HostRuntime(
        settings=settings,
        auth=auth or TokenAuth(),
        connections=connections,
        orchestrator=orchestrator,
        publisher=publisher,
        provider=provider,
    )
    provider.status.subscribe(runtime.on_rag_status)
    provider.progress.subscribe(runtime.on_rag_progress)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cancel_event = asyncio.Event()
        rag_task = asyncio.create_task(initialize_rag(runtime, cancel_event))
        publisher.start()
        try:
            yield
        finally:
            cancel_event.set()
            rag_task.cancel()
            with suppress(asyncio.CancelledError):
                await rag_task
            await publisher.stop()
            await orchestrator.shutdown()
            for closer in (getattr(provider, "aclose", None), getattr(llm, "aclose", None)):
                if closer is not None:
                    await closer()

    app = FastAPI(title="live-assist", lifespan=lifespan)
    app.state.runtime = runtime

    @app.get("/")
    async def health(t: Optional[str] = Query(None)):
        if not runtime.auth.validate(t):
            return Response(status_code=403)
        return JSONResponse(
            {
                "status": "ok",
                "isRecording": orchestrator.is_recording,
                "ragEnabled": provider.enabled,
                "ragReady": provider.is_ready,
                "ragStatus": runtime.rag_status,
                "memory": orchestrator.memory_count,
            }
        )

    @app.get("/stream.jpg")
    async def stream_frame(t: Optional[str] = Query(None)):
        if not runtime.auth.validate(t):
            return Response(status_code=403, headers=NO_CACHE_HEADERS)
        frame = state.frames.latest()
        if frame is None:
            return Response(status_code=204, headers=NO_CACHE_HEADERS)
        headers = {**NO_CACHE_HEADERS, "X-Frame-Id": str(frame.frame_id)}
        return Response(content=frame.data, media_type="image/jpeg", headers=headers)

    @app.websocket("/hub")
    async def hub(websocket: WebSocket, t: Optional[str] = Query(None)):
        if not runtime.auth.validate(t):
            logger.warning("WebSocket connection rejected - invalid token")
            await websocket.close(code=POLICY_VIOLATION)
            return
        await websocket.accept()
        connection_id = connections.register(websocket)
        try:
            await connections.send(connection_id, Event("state", runtime.state_payload()))
            await connections.send(connection_id, Event("memory", {"count": orchestrator.memory_count}))
            if not orchestrator.has_key:
                await connections.send(connection_id, Event("error", {"message": MISSING_KEY_MESSAGE, "retryable": False}))
            while True:
                raw = await websocket.receive_text()
                await dispatch(runtime, connection_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            connections.unregister(connection_id)
            await orchestrator.clear_connection(connection_id)

    return app


async def dispatch(runtime: HostRuntime, connection_id: str, raw: str) -> None:
    """Route one inbound ``{"type": <command>, ...}`` message."""

    orchestrator = runtime.orchestrator
    try:
        message = json.loads(raw)
    except ValueError:
        message = None
    if not isinstance(message, dict):
        await _reject(runtime, connection_id, "Invalid message.")
        return

    command = message.get("type")
    if command == "startRecording":
        await orchestrator.start_recording(connection_id)
    elif command == "stopRecording":
        await orchestrator.stop_recording(connection_id)
    elif command == "screenshot":
        await orchestrator.screenshot(connection_id)
    elif command == "followUp":
        await orchestrator.follow_up(connection_id, message.get("text"))
    elif command == "retry":
        await orchestrator.retry(connection_id)
    elif command == "clearMemory":
        await orchestrator.clear_memory(connection_id)
    elif command == "probeAudio":
        try:
            probe = await orchestrator.probe(float(message.get("seconds", 1.0)))
        except (AssistError, TypeError, ValueError) as exc:
            await _reject(runtime, connection_id, getattr(exc, "message", str(exc)))
            return
        await runtime.connections.send(
            connection_id, Event("audioLevels", {"micPeak": probe.mic_peak, "systemPeak": probe.system_peak})
        )
    else:
        await _reject(runtime, connection_id, f"Unknown command: {command!r}")


async def _reject(runtime: HostRuntime, connection_id: str, message: str) -> None:
    await runtime.connections.send(connection_id, Event("error", {"message": message, "retryable": False}))


def serve(settings: Settings, *, host: Optional[str] = None, port: Optional[int] = None, log_level: str = "info") -> None:
    """Run the host with uvicorn, printing the tokenized client URL."""

    auth = TokenAuth()
    app = create_app(settings, auth=auth)
    chosen = get_available_port(port or settings.server.port)
    if chosen != (port or settings.server.port):
        logger.warning("Port %d is busy; using %d", port or settings.server.port, chosen)
    address = local_ipv4() or "127.0.0.1"
    print(f"Open on your phone: http://{address}:{chosen}/?t={auth.token}")
    uvicorn.run(app, host=host or settings.server.host, port=chosen, log_level=log_level.lower())
